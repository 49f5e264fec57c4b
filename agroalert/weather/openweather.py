"""
OpenWeather forecast client.

Resolves a location with the geocoding API, pulls the 5-day / 3-hour
forecast and folds it into one ForecastDay per UTC date. OpenWeather has no
free history endpoint, so days already served for a location are kept and
replayed as the trailing window.
"""

import re
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from statistics import mean
from typing import Optional

import httpx
import structlog

from agroalert.alerting.schemas import ForecastDay, ForecastSourceName
from agroalert.config import Settings
from agroalert.exceptions import ProviderUnavailableError
from agroalert.services.resilience import CircuitBreaker, retry_with_backoff

logger = structlog.get_logger(__name__)

COORDINATES_PATTERN = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")
MS_TO_KMH = 3.6


class OpenWeatherForecastSource:
    name = ForecastSourceName.OPENWEATHER.value

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openweathermap.org",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_base_delay: float = 0.5,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.retry_base_delay = retry_base_delay
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._breaker = breaker or CircuitBreaker(
            name="openweather", failure_threshold=5, recovery_timeout=120.0
        )
        self._coordinates: dict[str, tuple[float, float]] = {}
        self._served: dict[str, dict[date, ForecastDay]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenWeatherForecastSource":
        return cls(
            api_key=settings.openweather_api_key,
            base_url=settings.openweather_base_url,
            timeout_seconds=settings.forecast_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def get_forecast(
        self, location: str, as_of: date, days: int, history_days: int
    ) -> list[ForecastDay]:
        if not self.api_key:
            raise ProviderUnavailableError(self.name, "OpenWeather API key not configured")
        if not location or not location.strip():
            raise ProviderUnavailableError(self.name, "Farm has no location")

        try:
            items = await self._breaker.call(self._load, location)
            daily = aggregate_daily(items)
        except ProviderUnavailableError:
            raise
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailableError(
                self.name, f"Forecast request failed: {e or type(e).__name__}", cause=e
            ) from e

        leading = [d for d in daily if d.date >= as_of][:days]
        self._remember(location, leading, as_of, history_days)
        return self._history(location, as_of, history_days) + leading

    async def _load(self, location: str) -> list[dict]:
        lat, lon = await self._resolve(location)
        data = await self._get_json(
            "/data/2.5/forecast",
            {"lat": lat, "lon": lon, "appid": self.api_key, "units": "metric"},
        )
        return data["list"]

    async def _resolve(self, location: str) -> tuple[float, float]:
        key = location.strip().lower()
        if key in self._coordinates:
            return self._coordinates[key]

        match = COORDINATES_PATTERN.match(location)
        if match:
            coords = (float(match.group(1)), float(match.group(2)))
        else:
            results = await self._get_json(
                "/geo/1.0/direct", {"q": location, "limit": 1, "appid": self.api_key}
            )
            if not results:
                raise ProviderUnavailableError(self.name, f"Location not found: {location}")
            coords = (float(results[0]["lat"]), float(results[0]["lon"]))

        self._coordinates[key] = coords
        return coords

    async def _get_json(self, path: str, params: dict):
        async def request():
            response = await self._client().get(path, params=params)
            response.raise_for_status()
            return response.json()

        return await retry_with_backoff(
            request,
            attempts=3,
            base_delay=self.retry_base_delay,
            operation=f"openweather{path}",
        )

    # ── Trailing history ──────────────────────────────────────────────

    def _remember(
        self, location: str, days: list[ForecastDay], as_of: date, history_days: int
    ) -> None:
        served = self._served.setdefault(location.strip().lower(), {})
        for day in days:
            served[day.date] = day
        cutoff = as_of - timedelta(days=history_days)
        for stale in [d for d in served if d < cutoff]:
            del served[stale]

    def _history(self, location: str, as_of: date, history_days: int) -> list[ForecastDay]:
        served = self._served.get(location.strip().lower(), {})
        start = as_of - timedelta(days=history_days)
        return [
            served[d].model_copy(update={"source": ForecastSourceName.HISTORY})
            for d in sorted(served)
            if start <= d < as_of
        ]


def aggregate_daily(items: list[dict]) -> list[ForecastDay]:
    """Fold 3-hour forecast entries into one ForecastDay per UTC date."""
    buckets: dict[date, list[dict]] = {}
    for item in items:
        day = datetime.fromtimestamp(item["dt"], tz=timezone.utc).date()
        buckets.setdefault(day, []).append(item)

    days = []
    for day in sorted(buckets):
        entries = buckets[day]
        mains = [e["main"] for e in entries]
        precipitation = sum(
            (e.get("rain") or {}).get("3h", 0.0) + (e.get("snow") or {}).get("3h", 0.0)
            for e in entries
        )
        conditions = Counter(
            e["weather"][0]["main"].lower() for e in entries if e.get("weather")
        )
        days.append(ForecastDay(
            date=day,
            temperature=round(mean(m["temp"] for m in mains), 1),
            temp_min=round(min(m.get("temp_min", m["temp"]) for m in mains), 1),
            temp_max=round(max(m.get("temp_max", m["temp"]) for m in mains), 1),
            humidity=round(mean(m.get("humidity", 0) for m in mains), 1),
            wind_speed=round(
                max((e.get("wind") or {}).get("speed", 0.0) for e in entries) * MS_TO_KMH, 1
            ),
            precipitation=round(precipitation, 1),
            cloud_cover=round(mean((e.get("clouds") or {}).get("all", 0) for e in entries), 1),
            condition=conditions.most_common(1)[0][0] if conditions else "clear",
            source=ForecastSourceName.OPENWEATHER,
        ))
    return days
