"""
AgroAlert Configuration.

Pydantic Settings v2 — loads from .env, environment variables.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ──────────────────────────────────────────────────────
    app_name: str = "AgroAlert"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # ── API ───────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8002, alias="API_PORT")
    api_prefix: str = "/api/v1"
    allowed_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        alias="ALLOWED_ORIGINS",
    )
    # Run the scheduler inside the API process. Needed with the in-memory
    # store; with a SQL store the scheduler usually runs as its own process.
    api_embed_scheduler: bool = Field(default=True, alias="API_EMBED_SCHEDULER")

    # ── Alert store ──────────────────────────────────────────────────────
    # Empty → in-memory store. Otherwise a SQLAlchemy URL.
    alert_store_url: str = Field(default="", alias="ALERT_STORE_URL")
    alert_retention_hours: int = Field(default=48, alias="ALERT_RETENTION_HOURS")

    # ── Scheduling ────────────────────────────────────────────────────────
    evaluation_interval_minutes: int = Field(default=30, alias="EVALUATION_INTERVAL_MINUTES")
    dispatch_interval_minutes: int = Field(default=5, alias="DISPATCH_INTERVAL_MINUTES")
    max_concurrent_evaluations: int = Field(default=8, alias="MAX_CONCURRENT_EVALUATIONS")
    max_concurrent_dispatches: int = Field(default=4, alias="MAX_CONCURRENT_DISPATCHES")
    run_evaluation_on_start: bool = Field(default=True, alias="RUN_EVALUATION_ON_START")

    # ── Farm directory ────────────────────────────────────────────────────
    # JSON seed for the in-memory directory; empty → no farms.
    farm_directory_file: str = Field(default="", alias="FARM_DIRECTORY_FILE")

    # ── Weather provider ──────────────────────────────────────────────────
    openweather_api_key: str = Field(default="", alias="OPENWEATHER_API_KEY")
    openweather_base_url: str = Field(
        default="https://api.openweathermap.org", alias="OPENWEATHER_BASE_URL"
    )
    forecast_timeout_seconds: float = Field(default=10.0, alias="FORECAST_TIMEOUT_SECONDS")
    forecast_days: int = Field(default=3, alias="FORECAST_DAYS")
    forecast_history_days: int = Field(default=4, alias="FORECAST_HISTORY_DAYS")

    # ── Messaging channel (Twilio WhatsApp) ──────────────────────────────
    twilio_account_sid: str = Field(default="", alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str = Field(default="", alias="TWILIO_AUTH_TOKEN")
    twilio_whatsapp_number: str = Field(default="", alias="TWILIO_PHONE_NUMBER")
    channel_timeout_seconds: float = Field(default=15.0, alias="CHANNEL_TIMEOUT_SECONDS")
    channel_max_length: int = Field(default=1600, alias="CHANNEL_MAX_LENGTH")

    # ── Rule thresholds ───────────────────────────────────────────────────
    rule_wind_kmh: float = Field(default=40.0, alias="RULE_WIND_KMH")
    rule_wind_high_kmh: float = Field(default=60.0, alias="RULE_WIND_HIGH_KMH")
    rule_rain_mm: float = Field(default=15.0, alias="RULE_RAIN_MM")
    rule_rain_high_mm: float = Field(default=30.0, alias="RULE_RAIN_HIGH_MM")
    rule_frost_c: float = Field(default=5.0, alias="RULE_FROST_C")
    rule_frost_high_c: float = Field(default=2.0, alias="RULE_FROST_HIGH_C")
    rule_disease_a_humidity: float = Field(default=80.0, alias="RULE_DISEASE_A_HUMIDITY")
    rule_disease_a_cloud_cover: float = Field(default=70.0, alias="RULE_DISEASE_A_CLOUD_COVER")
    rule_disease_b_precipitation: float = Field(default=5.0, alias="RULE_DISEASE_B_PRECIPITATION")
    rule_disease_b_wind_kmh: float = Field(default=15.0, alias="RULE_DISEASE_B_WIND_KMH")
    rule_disease_window_days: int = Field(default=5, alias="RULE_DISEASE_WINDOW_DAYS")
    rule_disease_min_days: int = Field(default=2, alias="RULE_DISEASE_MIN_DAYS")
    rule_disease_high_days: int = Field(default=3, alias="RULE_DISEASE_HIGH_DAYS")
    rule_fertilization_rain_mm: float = Field(default=15.0, alias="RULE_FERTILIZATION_RAIN_MM")
    rule_irrigation_heat_c: float = Field(default=30.0, alias="RULE_IRRIGATION_HEAT_C")
    rule_irrigation_dry_humidity: float = Field(default=50.0, alias="RULE_IRRIGATION_DRY_HUMIDITY")
    rule_planting_wind_kmh: float = Field(default=25.0, alias="RULE_PLANTING_WIND_KMH")
    rule_planting_rain_mm: float = Field(default=20.0, alias="RULE_PLANTING_RAIN_MM")
    rule_flowering_wind_kmh: float = Field(default=20.0, alias="RULE_FLOWERING_WIND_KMH")
    rule_harvest_rain_mm: float = Field(default=5.0, alias="RULE_HARVEST_RAIN_MM")
    rule_activity_lookback_days: int = Field(default=7, alias="RULE_ACTIVITY_LOOKBACK_DAYS")
    rule_irrigation_lookback_days: int = Field(default=2, alias="RULE_IRRIGATION_LOOKBACK_DAYS")
    rule_fertilization_lookback_days: int = Field(default=7, alias="RULE_FERTILIZATION_LOOKBACK_DAYS")

    # ── Operational ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="console", alias="LOG_FORMAT")

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_whatsapp_number
        )

    @property
    def async_store_url(self) -> str:
        """Ensure the store URL uses an async driver."""
        url = self.alert_store_url
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url


settings = Settings()
