"""
Forecast sources.

Every source answers the same question: the forecast window around `as_of`
for a location, oldest day first, with up to `history_days` trailing days and
`days` leading days (as_of included).

- SyntheticForecastSource: deterministic, season- and region-aware data for
  Brazilian farms, used when no provider is configured or reachable
- FallbackForecastSource: primary provider first, synthetic window when the
  provider is unavailable
"""

import random
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Protocol

import structlog

from agroalert.alerting.schemas import ForecastDay, ForecastSourceName
from agroalert.config import Settings
from agroalert.exceptions import ProviderUnavailableError
from agroalert.weather.openweather import OpenWeatherForecastSource

logger = structlog.get_logger(__name__)


class ForecastSource(Protocol):
    name: str

    async def get_forecast(
        self, location: str, as_of: date, days: int, history_days: int
    ) -> list[ForecastDay]: ...

    async def close(self) -> None: ...


# ── Synthetic ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RegionProfile:
    """Base temperatures (winter/summer/other) and rainy days per week."""
    markers: tuple[str, ...]
    temps: tuple[float, float, float]
    rainy_days: tuple[int, int, int]


REGIONS: tuple[RegionProfile, ...] = (
    RegionProfile(("SP", "São Paulo", "Sao Paulo"), (18, 28, 23), (1, 4, 3)),
    RegionProfile(("RS", "Sul"), (12, 24, 18), (2, 3, 4)),
    RegionProfile(("RJ", "Rio"), (22, 32, 27), (2, 5, 3)),
    RegionProfile(("MG", "Minas"), (16, 26, 21), (1, 5, 3)),
)
DEFAULT_REGION = RegionProfile((), (25, 25, 25), (2, 2, 2))


def region_for(location: str) -> RegionProfile:
    for region in REGIONS:
        if any(marker in location for marker in region.markers):
            return region
    return DEFAULT_REGION


def season_index(day: date) -> int:
    """0 = winter (Jun-Aug), 1 = summer (Dec-Feb), 2 = rest of the year."""
    if 6 <= day.month <= 8:
        return 0
    if day.month in (12, 1, 2):
        return 1
    return 2


class SyntheticForecastSource:
    """
    Generates a plausible forecast without any network access.

    Each day is seeded by (location, date), so the same day always looks the
    same no matter which evaluation pass asks for it.
    """

    name = ForecastSourceName.SYNTHETIC.value

    async def get_forecast(
        self, location: str, as_of: date, days: int, history_days: int
    ) -> list[ForecastDay]:
        return [
            self.generate_day(location, as_of + timedelta(days=offset))
            for offset in range(-history_days, days)
        ]

    async def close(self) -> None:
        return None

    def generate_day(self, location: str, day: date) -> ForecastDay:
        rng = random.Random(f"{location.strip().lower()}|{day.isoformat()}")
        region = region_for(location)
        season = season_index(day)
        winter, summer = season == 0, season == 1

        temperature = round(region.temps[season] + rng.uniform(-3, 3))
        temp_min = round(temperature - 4 - rng.uniform(0, 4))
        temp_max = round(temperature + 6 + rng.uniform(0, 4))

        if rng.random() < region.rainy_days[season] / 7:
            condition = "thunderstorm" if summer and rng.random() > 0.7 else "rain"
        else:
            condition = "clear" if rng.random() < (0.7 if winter else 0.5) else "clouds"

        if condition == "rain":
            precipitation = round(rng.uniform(1, 16))
            cloud_cover = 90
        elif condition == "thunderstorm":
            precipitation = round(rng.uniform(5, 30))
            cloud_cover = 90
        elif condition == "clouds":
            precipitation = 0
            cloud_cover = round(rng.uniform(70, 100))
        else:
            precipitation = 0
            cloud_cover = round(rng.uniform(0, 20))

        return ForecastDay(
            date=day,
            temperature=temperature,
            temp_min=temp_min,
            temp_max=temp_max,
            humidity=round(rng.uniform(75, 100)),
            wind_speed=round(rng.uniform(10, 30)),
            precipitation=precipitation,
            cloud_cover=cloud_cover,
            condition=condition,
            source=ForecastSourceName.SYNTHETIC,
        )


# ── Fallback ───────────────────────────────────────────────────────────


class FallbackForecastSource:
    """Primary provider with a synthetic safety net."""

    def __init__(self, primary: ForecastSource, fallback: Optional[ForecastSource] = None):
        self.primary = primary
        self.fallback = fallback or SyntheticForecastSource()
        self.name = f"{primary.name}+{self.fallback.name}"

    async def get_forecast(
        self, location: str, as_of: date, days: int, history_days: int
    ) -> list[ForecastDay]:
        try:
            return await self.primary.get_forecast(location, as_of, days, history_days)
        except ProviderUnavailableError as e:
            logger.warning(
                "forecast_provider_unavailable",
                provider=e.provider,
                location=location,
                fallback=self.fallback.name,
                error=e.message,
            )
            return await self.fallback.get_forecast(location, as_of, days, history_days)

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()


def build_forecast_source(settings: Settings) -> ForecastSource:
    """OpenWeather with synthetic fallback when an API key is set, synthetic otherwise."""
    if settings.openweather_api_key:
        logger.info("forecast_source_selected", source="openweather", fallback="synthetic")
        return FallbackForecastSource(OpenWeatherForecastSource.from_settings(settings))

    logger.info(
        "forecast_source_selected",
        source="synthetic",
        reason="OPENWEATHER_API_KEY not set",
    )
    return SyntheticForecastSource()
