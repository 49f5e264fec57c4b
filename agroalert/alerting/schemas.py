"""
Alert & Weather Schemas.

Defines farm context, forecast days, risk findings, alert records and the
observability snapshots returned by the scheduler.
"""

from datetime import date, datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


# ── Enums ──────────────────────────────────────────────────────────────


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


class CropStage(StrEnum):
    PLANTING = "planting"
    VEGETATIVE_GROWTH = "vegetative_growth"
    FLOWERING = "flowering"
    FRUITING = "fruiting"
    HARVEST = "harvest"

    @classmethod
    def coerce(cls, value: object) -> "CropStage":
        """Map any input to a stage; unknown or missing → vegetative growth."""
        if isinstance(value, CropStage):
            return value
        if isinstance(value, str):
            key = value.strip().lower().replace(" ", "_").replace("-", "_")
            try:
                return cls(key)
            except ValueError:
                pass
        return DEFAULT_CROP_STAGE


DEFAULT_CROP_STAGE = CropStage.VEGETATIVE_GROWTH


class ActivityType(StrEnum):
    PLANTING = "planting"
    PRUNING = "pruning"
    FERTILIZATION = "fertilization"
    IRRIGATION = "irrigation"
    SPRAYING = "spraying"
    HARVEST = "harvest"
    OTHER = "other"


class RiskKind(StrEnum):
    WIND = "wind"
    RAIN = "rain"
    FROST = "frost"
    FOLIAR_DISEASE_A = "foliar-disease-risk-A"
    FOLIAR_DISEASE_B = "foliar-disease-risk-B"
    COMBINED_DISEASE = "combined-disease-risk"
    # Advisories (not event-anchored, re-evaluated daily)
    FERTILIZATION_WINDOW = "fertilization-window"
    IRRIGATION_ADVISORY = "irrigation-advisory"
    PLANTING_CONDITIONS = "planting-conditions"
    FLOWERING_WIND = "flowering-wind"
    HARVEST_RAIN = "harvest-rain"
    RESUME_MONITORING = "resume-monitoring"


class AlertStatus(StrEnum):
    PENDING = "pending"
    DISPATCHING = "dispatching"     # Claimed by a dispatch tick
    SENT = "sent"                   # Terminal


class ForecastSourceName(StrEnum):
    OPENWEATHER = "openweather"
    SYNTHETIC = "synthetic"
    HISTORY = "history"


# ── Farm context ───────────────────────────────────────────────────────


class ActivityEvent(BaseModel):
    """One farm activity from the activity log."""
    model_config = ConfigDict(frozen=True)

    event_type: ActivityType
    occurred_on: date

    @field_validator("event_type", mode="before")
    @classmethod
    def _coerce_event_type(cls, value):
        if isinstance(value, str):
            try:
                return ActivityType(value.strip().lower())
            except ValueError:
                return ActivityType.OTHER
        return value


class FarmContext(BaseModel):
    """
    Immutable snapshot used for one evaluation pass.

    `as_of` is the evaluation day; the evaluator never reads a clock.
    """
    model_config = ConfigDict(frozen=True)

    as_of: date
    location: str = ""
    crop_type: str = "general crop"
    crop_stage: CropStage = DEFAULT_CROP_STAGE
    recent_activities: tuple[ActivityEvent, ...] = ()

    @field_validator("crop_stage", mode="before")
    @classmethod
    def _coerce_stage(cls, value):
        return CropStage.coerce(value)

    @field_validator("crop_type", mode="before")
    @classmethod
    def _default_crop_type(cls, value):
        if not value or not str(value).strip():
            return "general crop"
        return value

    def days_since_last(self, activity: ActivityType) -> Optional[int]:
        """Days between `as_of` and the most recent activity of this type."""
        dates = [
            e.occurred_on for e in self.recent_activities
            if e.event_type == activity and e.occurred_on <= self.as_of
        ]
        if not dates:
            return None
        return (self.as_of - max(dates)).days

    def activities_within(self, days: int) -> list[ActivityEvent]:
        return [
            e for e in self.recent_activities
            if 0 <= (self.as_of - e.occurred_on).days < days
        ]


# ── Forecast ───────────────────────────────────────────────────────────


class ForecastDay(BaseModel):
    """One day of weather. Units: °C, %, km/h, mm."""
    model_config = ConfigDict(frozen=True)

    date: date
    temperature: float
    temp_min: float
    temp_max: float
    humidity: float = Field(ge=0, le=100)
    wind_speed: float = Field(ge=0)
    precipitation: float = Field(default=0.0, ge=0)
    cloud_cover: float = Field(default=0.0, ge=0, le=100)
    condition: str = "clear"
    source: ForecastSourceName = ForecastSourceName.SYNTHETIC


# ── Findings & alerts ──────────────────────────────────────────────────


class RiskFinding(BaseModel):
    """
    Transient evaluation output describing one detected risk.

    Recreated on every evaluation tick; never persisted directly.
    """
    model_config = ConfigDict(frozen=True)

    kind: RiskKind
    severity: Severity
    trigger_date: date
    explanation: str
    recommended_actions: tuple[str, ...] = ()
    metric_value: Optional[float] = None
    advisory: bool = False


class Alert(BaseModel):
    """
    A scheduled, dedup-checked unit of outbound communication.

    Dedup key: (user_id, kind, trigger_date).
    """
    id: str
    user_id: str
    kind: RiskKind
    severity: Severity
    title: str
    message: str
    channel_message: str
    recipient: Optional[str] = None
    trigger_date: date
    scheduled_for: datetime
    status: AlertStatus = AlertStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime

    @computed_field
    @property
    def sent(self) -> bool:
        return self.status == AlertStatus.SENT

    @property
    def dedup_key(self) -> tuple[str, str, date]:
        return (self.user_id, self.kind.value, self.trigger_date)


class AlertListResponse(BaseModel):
    alerts: list[Alert]
    total: int


class PurgeResult(BaseModel):
    """Alerts removed by one purge pass."""
    purged: int = 0
    expired_unsent: int = 0
    expired_by_kind: dict[str, int] = Field(default_factory=dict)


# ── Observability ──────────────────────────────────────────────────────


class DispatchStats(BaseModel):
    """Observability snapshot of the notification pipeline."""
    total: int = 0                  # Every alert ever created, purged or not
    sent: int = 0
    pending: int = 0                # Live alerts not yet sent
    expired: int = 0                # Purged without ever being sent
    failed_attempts: int = 0
    by_kind: dict[str, int] = Field(default_factory=dict)


class EvaluationSummary(BaseModel):
    users_evaluated: int = 0
    users_skipped: int = 0
    users_failed: int = 0
    findings: int = 0
    alerts_created: int = 0
    alerts_unchanged: int = 0
    findings_dropped: int = 0
    errors: list[str] = Field(default_factory=list)


class DispatchSummary(BaseModel):
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0                # Claimed by a concurrent tick
    purged: int = 0
    expired_unsent: int = 0
    errors: list[str] = Field(default_factory=list)
