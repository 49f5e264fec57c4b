"""Weather forecast sources (OpenWeather, synthetic, fallback)."""

from agroalert.weather.openweather import OpenWeatherForecastSource
from agroalert.weather.sources import (
    FallbackForecastSource,
    ForecastSource,
    SyntheticForecastSource,
    build_forecast_source,
)

__all__ = [
    "FallbackForecastSource",
    "ForecastSource",
    "OpenWeatherForecastSource",
    "SyntheticForecastSource",
    "build_forecast_source",
]
