"""
Risk Rule Table — declarative thresholds for agronomic alerts.

Each rule is data: a kind, a scope, a predicate, a severity function, a lead
time and the copy used when the finding becomes an alert. Thresholds come from
`RuleThresholds`, which is built from settings so operators tune them through
`RULE_*` environment variables instead of code.

Scopes:
- DAY:     evaluated once per leading forecast day; trigger date = that day
- WINDOW:  evaluated once per pass over the whole window; trigger date = as_of
- DERIVED: evaluated last, sees which kinds already fired
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import Callable, Optional

from pydantic import BaseModel

from agroalert.alerting.schemas import (
    ActivityType,
    CropStage,
    FarmContext,
    ForecastDay,
    RiskKind,
    Severity,
)
from agroalert.config import Settings


class RuleScope(StrEnum):
    DAY = "day"
    WINDOW = "window"
    DERIVED = "derived"


class RuleThresholds(BaseModel):
    """Numeric thresholds used by the default rule table."""
    wind_kmh: float = 40.0
    wind_high_kmh: float = 60.0
    rain_mm: float = 15.0
    rain_high_mm: float = 30.0
    frost_c: float = 5.0
    frost_high_c: float = 2.0

    disease_window_days: int = 5        # as_of plus the 4 days before it
    disease_min_days: int = 2
    disease_high_days: int = 3
    disease_a_humidity: float = 80.0
    disease_a_cloud_cover: float = 70.0
    disease_b_precipitation: float = 5.0
    disease_b_wind_kmh: float = 15.0

    fertilization_rain_mm: float = 15.0
    irrigation_heat_c: float = 30.0
    irrigation_dry_humidity: float = 50.0
    planting_wind_kmh: float = 25.0
    planting_rain_mm: float = 20.0
    flowering_wind_kmh: float = 20.0
    harvest_rain_mm: float = 5.0

    activity_lookback_days: int = 7
    irrigation_lookback_days: int = 2
    fertilization_lookback_days: int = 7

    @classmethod
    def from_settings(cls, settings: Settings) -> "RuleThresholds":
        return cls(
            wind_kmh=settings.rule_wind_kmh,
            wind_high_kmh=settings.rule_wind_high_kmh,
            rain_mm=settings.rule_rain_mm,
            rain_high_mm=settings.rule_rain_high_mm,
            frost_c=settings.rule_frost_c,
            frost_high_c=settings.rule_frost_high_c,
            disease_a_humidity=settings.rule_disease_a_humidity,
            disease_a_cloud_cover=settings.rule_disease_a_cloud_cover,
            disease_b_precipitation=settings.rule_disease_b_precipitation,
            disease_b_wind_kmh=settings.rule_disease_b_wind_kmh,
            disease_window_days=settings.rule_disease_window_days,
            disease_min_days=settings.rule_disease_min_days,
            disease_high_days=settings.rule_disease_high_days,
            fertilization_rain_mm=settings.rule_fertilization_rain_mm,
            irrigation_heat_c=settings.rule_irrigation_heat_c,
            irrigation_dry_humidity=settings.rule_irrigation_dry_humidity,
            planting_wind_kmh=settings.rule_planting_wind_kmh,
            planting_rain_mm=settings.rule_planting_rain_mm,
            flowering_wind_kmh=settings.rule_flowering_wind_kmh,
            harvest_rain_mm=settings.rule_harvest_rain_mm,
            activity_lookback_days=settings.rule_activity_lookback_days,
            irrigation_lookback_days=settings.rule_irrigation_lookback_days,
            fertilization_lookback_days=settings.rule_fertilization_lookback_days,
        )


@dataclass(frozen=True)
class RuleContext:
    """Everything a predicate may look at. Built by the evaluator."""
    farm: FarmContext
    leading: tuple[ForecastDay, ...] = ()
    trailing: tuple[ForecastDay, ...] = ()
    today: Optional[ForecastDay] = None
    day: Optional[ForecastDay] = None
    fired: frozenset = frozenset()


@dataclass(frozen=True)
class RiskRule:
    kind: RiskKind
    scope: RuleScope
    predicate: Callable[[RuleContext], bool]
    severity: Callable[[RuleContext], Severity]
    explain: Callable[[RuleContext], str]
    call_to_action: str
    actions: tuple[str, ...] = ()
    metric: Callable[[RuleContext], Optional[float]] = field(default=lambda ctx: None)
    advisory: bool = False

    @property
    def lead_time(self) -> timedelta:
        return lead_time_for(self.kind)

    @property
    def title(self) -> str:
        return title_for(self.kind)


# ── Per-kind constants ─────────────────────────────────────────────────

LEAD_TIMES: dict[RiskKind, timedelta] = {
    RiskKind.WIND: timedelta(hours=3),
    RiskKind.RAIN: timedelta(hours=2),
    RiskKind.FROST: timedelta(hours=12),
}

TITLES: dict[RiskKind, str] = {
    RiskKind.WIND: "Strong wind forecast",
    RiskKind.RAIN: "Heavy rain forecast",
    RiskKind.FROST: "Frost risk",
    RiskKind.FOLIAR_DISEASE_A: "Foliar disease risk (humid and overcast)",
    RiskKind.FOLIAR_DISEASE_B: "Foliar disease risk (rain and wind)",
    RiskKind.COMBINED_DISEASE: "Combined foliar disease risk",
    RiskKind.FERTILIZATION_WINDOW: "Fertilization window",
    RiskKind.IRRIGATION_ADVISORY: "Irrigation advisory",
    RiskKind.PLANTING_CONDITIONS: "Unfavourable planting conditions",
    RiskKind.FLOWERING_WIND: "Wind during flowering",
    RiskKind.HARVEST_RAIN: "Rain during harvest",
    RiskKind.RESUME_MONITORING: "Resume field monitoring",
}


def lead_time_for(kind: RiskKind) -> timedelta:
    return LEAD_TIMES.get(kind, timedelta(0))


def title_for(kind: RiskKind) -> str:
    return TITLES.get(kind, kind.value.replace("-", " ").capitalize())


# ── Predicate helpers ──────────────────────────────────────────────────


def _done_within(ctx: RuleContext, activity: ActivityType, days: int) -> bool:
    since = ctx.farm.days_since_last(activity)
    return since is not None and since < days


def _max_leading(ctx: RuleContext, attr: str) -> float:
    return max((getattr(d, attr) for d in ctx.leading), default=0.0)


def _count(predicate: Callable[[ForecastDay], bool]) -> Callable[[RuleContext], int]:
    return lambda ctx: sum(1 for d in ctx.trailing if predicate(d))


def _banded(count: Callable[[RuleContext], int], high_at: int) -> Callable[[RuleContext], Severity]:
    return lambda ctx: Severity.HIGH if count(ctx) >= high_at else Severity.MEDIUM


# ── Rule table ─────────────────────────────────────────────────────────


def build_rule_table(t: Optional[RuleThresholds] = None) -> tuple[RiskRule, ...]:
    """Build the default rule table from thresholds."""
    t = t or RuleThresholds()

    humid_overcast = _count(
        lambda d: d.humidity > t.disease_a_humidity and d.cloud_cover > t.disease_a_cloud_cover
    )
    wet_windy = _count(
        lambda d: d.precipitation > t.disease_b_precipitation and d.wind_speed > t.disease_b_wind_kmh
    )

    def irrigation_needed(ctx: RuleContext) -> bool:
        today = ctx.today
        if today is None:
            return False
        if _done_within(ctx, ActivityType.IRRIGATION, t.irrigation_lookback_days):
            return False
        hot = today.temp_max > t.irrigation_heat_c
        dry_flowering = (
            ctx.farm.crop_stage == CropStage.FLOWERING
            and today.humidity < t.irrigation_dry_humidity
        )
        return hot or dry_flowering

    def irrigation_explain(ctx: RuleContext) -> str:
        today = ctx.today
        if today.temp_max > t.irrigation_heat_c:
            return (
                f"Maximum temperature of {today.temp_max:.0f}°C expected today "
                f"and no irrigation recorded in the last {t.irrigation_lookback_days} days."
            )
        return (
            f"Relative humidity of {today.humidity:.0f}% during flowering "
            f"and no irrigation recorded in the last {t.irrigation_lookback_days} days."
        )

    return (
        # ── Weather events ──
        RiskRule(
            kind=RiskKind.WIND,
            scope=RuleScope.DAY,
            predicate=lambda ctx: ctx.day.wind_speed > t.wind_kmh,
            severity=lambda ctx: (
                Severity.HIGH if ctx.day.wind_speed > t.wind_high_kmh else Severity.MEDIUM
            ),
            explain=lambda ctx: f"Winds of {ctx.day.wind_speed:.0f} km/h forecast for {ctx.farm.crop_type}.",
            call_to_action="Postpone spraying and secure loose structures.",
            actions=("Check windbreaks and stakes.",),
            metric=lambda ctx: ctx.day.wind_speed,
        ),
        RiskRule(
            kind=RiskKind.RAIN,
            scope=RuleScope.DAY,
            predicate=lambda ctx: ctx.day.precipitation > t.rain_mm,
            severity=lambda ctx: (
                Severity.HIGH if ctx.day.precipitation > t.rain_high_mm else Severity.MEDIUM
            ),
            explain=lambda ctx: f"{ctx.day.precipitation:.0f} mm of rain forecast.",
            call_to_action="Protect equipment and harvested crops from the rain.",
            actions=("Clear drainage channels.", "Delay fertilizer application."),
            metric=lambda ctx: ctx.day.precipitation,
        ),
        RiskRule(
            kind=RiskKind.FROST,
            scope=RuleScope.DAY,
            predicate=lambda ctx: ctx.day.temp_min < t.frost_c,
            severity=lambda ctx: (
                Severity.HIGH if ctx.day.temp_min < t.frost_high_c else Severity.MEDIUM
            ),
            explain=lambda ctx: f"Minimum temperature of {ctx.day.temp_min:.0f}°C forecast.",
            call_to_action="Cover sensitive crops before nightfall.",
            actions=("Irrigate lightly in the afternoon to retain soil heat.",),
            metric=lambda ctx: ctx.day.temp_min,
        ),
        # ── Disease pressure over the trailing window ──
        RiskRule(
            kind=RiskKind.FOLIAR_DISEASE_A,
            scope=RuleScope.WINDOW,
            predicate=lambda ctx: humid_overcast(ctx) >= t.disease_min_days,
            severity=_banded(humid_overcast, t.disease_high_days),
            explain=lambda ctx: (
                f"{humid_overcast(ctx)} of the last {len(ctx.trailing)} days were humid "
                f"(>{t.disease_a_humidity:.0f}%) and overcast (>{t.disease_a_cloud_cover:.0f}% cloud)."
            ),
            call_to_action="Inspect leaves for spots and apply a preventive fungicide.",
            actions=("Remove infected leaves.", "Improve air circulation between plants."),
            metric=lambda ctx: float(humid_overcast(ctx)),
        ),
        RiskRule(
            kind=RiskKind.FOLIAR_DISEASE_B,
            scope=RuleScope.WINDOW,
            predicate=lambda ctx: wet_windy(ctx) >= t.disease_min_days,
            severity=_banded(wet_windy, t.disease_high_days),
            explain=lambda ctx: (
                f"{wet_windy(ctx)} of the last {len(ctx.trailing)} days combined rain "
                f"(>{t.disease_b_precipitation:.0f} mm) with wind (>{t.disease_b_wind_kmh:.0f} km/h)."
            ),
            call_to_action="Check plants for wilting and avoid moving soil between plots.",
            actions=("Disinfect tools after use.",),
            metric=lambda ctx: float(wet_windy(ctx)),
        ),
        RiskRule(
            kind=RiskKind.COMBINED_DISEASE,
            scope=RuleScope.DERIVED,
            predicate=lambda ctx: (
                RiskKind.FOLIAR_DISEASE_A in ctx.fired and RiskKind.FOLIAR_DISEASE_B in ctx.fired
            ),
            severity=lambda ctx: Severity.HIGH,
            explain=lambda ctx: "Both foliar disease patterns are active at the same time.",
            call_to_action="Schedule an agronomist visit and treat the crop this week.",
            actions=("Increase field inspections to daily.",),
        ),
        # ── Advisories ──
        RiskRule(
            kind=RiskKind.FERTILIZATION_WINDOW,
            scope=RuleScope.WINDOW,
            predicate=lambda ctx: (
                ctx.farm.crop_stage == CropStage.VEGETATIVE_GROWTH
                and _max_leading(ctx, "precipitation") > t.fertilization_rain_mm
                and not _done_within(ctx, ActivityType.FERTILIZATION, t.fertilization_lookback_days)
            ),
            severity=lambda ctx: Severity.LOW,
            explain=lambda ctx: (
                f"Rain of {_max_leading(ctx, 'precipitation'):.0f} mm is coming and no "
                f"fertilization was recorded in the last {t.fertilization_lookback_days} days."
            ),
            call_to_action="Apply fertilizer before the rain so it reaches the roots.",
            metric=lambda ctx: _max_leading(ctx, "precipitation"),
            advisory=True,
        ),
        RiskRule(
            kind=RiskKind.IRRIGATION_ADVISORY,
            scope=RuleScope.WINDOW,
            predicate=irrigation_needed,
            severity=lambda ctx: Severity.LOW,
            explain=irrigation_explain,
            call_to_action="Irrigate early in the morning or late in the afternoon.",
            metric=lambda ctx: ctx.today.temp_max,
            advisory=True,
        ),
        RiskRule(
            kind=RiskKind.PLANTING_CONDITIONS,
            scope=RuleScope.WINDOW,
            predicate=lambda ctx: ctx.farm.crop_stage == CropStage.PLANTING and (
                _max_leading(ctx, "wind_speed") > t.planting_wind_kmh
                or _max_leading(ctx, "precipitation") > t.planting_rain_mm
            ),
            severity=lambda ctx: Severity.LOW,
            explain=lambda ctx: (
                f"Forecast peaks of {_max_leading(ctx, 'wind_speed'):.0f} km/h wind and "
                f"{_max_leading(ctx, 'precipitation'):.0f} mm rain are unfavourable for planting."
            ),
            call_to_action="Postpone planting until the weather settles.",
            advisory=True,
        ),
        RiskRule(
            kind=RiskKind.FLOWERING_WIND,
            scope=RuleScope.WINDOW,
            predicate=lambda ctx: (
                ctx.farm.crop_stage == CropStage.FLOWERING
                and _max_leading(ctx, "wind_speed") > t.flowering_wind_kmh
            ),
            severity=lambda ctx: Severity.LOW,
            explain=lambda ctx: (
                f"Winds up to {_max_leading(ctx, 'wind_speed'):.0f} km/h may damage flowers."
            ),
            call_to_action="Check flower fixing and protect the most exposed rows.",
            metric=lambda ctx: _max_leading(ctx, "wind_speed"),
            advisory=True,
        ),
        RiskRule(
            kind=RiskKind.HARVEST_RAIN,
            scope=RuleScope.WINDOW,
            predicate=lambda ctx: (
                ctx.farm.crop_stage == CropStage.HARVEST
                and _max_leading(ctx, "precipitation") > t.harvest_rain_mm
            ),
            severity=lambda ctx: Severity.LOW,
            explain=lambda ctx: (
                f"{_max_leading(ctx, 'precipitation'):.0f} mm of rain expected during harvest."
            ),
            call_to_action="Bring the harvest forward or prepare covered storage.",
            metric=lambda ctx: _max_leading(ctx, "precipitation"),
            advisory=True,
        ),
        RiskRule(
            kind=RiskKind.RESUME_MONITORING,
            scope=RuleScope.WINDOW,
            predicate=lambda ctx: not ctx.farm.activities_within(t.activity_lookback_days),
            severity=lambda ctx: Severity.LOW,
            explain=lambda ctx: (
                f"No field activity recorded in the last {t.activity_lookback_days} days."
            ),
            call_to_action="Walk the field and log what you find.",
            advisory=True,
        ),
    )
