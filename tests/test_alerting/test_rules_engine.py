"""
Tests for the Condition Evaluator and the default rule table.

Covers:
- Benign weather produces no findings
- Weather events (wind, rain, frost) per leading day with severity bands
- Compound foliar disease windows (2 days → medium, 3+ → high, 1 → none)
- Combined disease finding when both patterns are active
- Stage- and activity-aware advisories
- Output ordering, duplicate dates, faulty rules
- Determinism (property-based)
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest
from hypothesis import given, settings as hyp_settings
from hypothesis import strategies as st

from agroalert.alerting.engine import ConditionEvaluator
from agroalert.alerting.materializer import AlertMaterializer
from agroalert.alerting.rules import (
    RiskRule,
    RuleScope,
    RuleThresholds,
    build_rule_table,
    lead_time_for,
)
from agroalert.alerting.schemas import (
    ActivityEvent,
    ActivityType,
    CropStage,
    FarmContext,
    RiskKind,
    Severity,
)
from agroalert.config import Settings
from tests.conftest import TODAY, benign_day


def _make_farm(
    stage: CropStage = CropStage.VEGETATIVE_GROWTH,
    activities: tuple = None,
    as_of: date = TODAY,
) -> FarmContext:
    if activities is None:
        activities = (ActivityEvent(event_type=ActivityType.SPRAYING, occurred_on=as_of - timedelta(days=1)),)
    return FarmContext(
        as_of=as_of,
        location="Campinas, SP",
        crop_type="coffee",
        crop_stage=stage,
        recent_activities=activities,
    )


def _make_window(overrides: dict = None, history: int = 4, leading: int = 3):
    """Benign days from as_of-history to as_of+leading-1, patched by offset."""
    overrides = overrides or {}
    return [
        benign_day(TODAY + timedelta(days=offset), **overrides.get(offset, {}))
        for offset in range(-history, leading)
    ]


HUMID_OVERCAST = {"humidity": 88.0, "cloud_cover": 85.0}
WET_WINDY = {"precipitation": 8.0, "wind_speed": 20.0}


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


def _kinds(findings):
    return [f.kind for f in findings]


# ── Baseline ──────────────────────────────────────────────────────────


class TestBaseline:
    def test_benign_weather_no_findings(self, evaluator):
        assert evaluator.evaluate(_make_farm(), _make_window()) == []

    def test_empty_forecast_still_evaluates_activity_rules(self, evaluator):
        findings = evaluator.evaluate(_make_farm(activities=()), [])
        assert _kinds(findings) == [RiskKind.RESUME_MONITORING]

    def test_recommended_actions_start_with_call_to_action(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({1: {"temp_min": 1.0}}))
        frost = findings[0]
        assert frost.recommended_actions[0] == "Cover sensitive crops before nightfall."
        assert len(frost.recommended_actions) >= 1


# ── Weather events ────────────────────────────────────────────────────


class TestWeatherEvents:
    def test_wind_tomorrow(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({1: {"wind_speed": 50.0}}))
        assert _kinds(findings) == [RiskKind.WIND]
        assert findings[0].trigger_date == TODAY + timedelta(days=1)
        assert findings[0].severity == Severity.MEDIUM
        assert findings[0].metric_value == 50.0

    def test_wind_tomorrow_high_band_scheduled_three_hours_ahead(self, clock):
        evaluator = ConditionEvaluator(thresholds=RuleThresholds(wind_high_kmh=44.0))
        findings = evaluator.evaluate(
            _make_farm(), _make_window({0: {"wind_speed": 10.0}, 1: {"wind_speed": 45.0}})
        )
        assert _kinds(findings) == [RiskKind.WIND]
        [wind] = findings
        assert wind.severity == Severity.HIGH
        assert wind.trigger_date == TODAY + timedelta(days=1)

        alert = AlertMaterializer(clock=clock).materialize("u1", wind, "+5511999990000")
        tomorrow = datetime.combine(TODAY + timedelta(days=1), time.min, tzinfo=timezone.utc)
        assert alert.scheduled_for == tomorrow - timedelta(hours=3)
        assert alert.channel_message.startswith("[HIGH]")

    def test_wind_45_is_medium_with_default_bands(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({1: {"wind_speed": 45.0}}))
        assert findings[0].severity == Severity.MEDIUM

    def test_wind_high_band(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({1: {"wind_speed": 65.0}}))
        assert findings[0].severity == Severity.HIGH

    def test_wind_at_threshold_does_not_fire(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({1: {"wind_speed": 40.0}}))
        assert findings == []

    def test_rain_today(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(stage=CropStage.FRUITING), _make_window({0: {"precipitation": 35.0}})
        )
        assert _kinds(findings) == [RiskKind.RAIN]
        assert findings[0].severity == Severity.HIGH
        assert findings[0].trigger_date == TODAY

    def test_frost_severity_bands(self, evaluator):
        medium = evaluator.evaluate(_make_farm(), _make_window({2: {"temp_min": 4.0}}))
        high = evaluator.evaluate(_make_farm(), _make_window({2: {"temp_min": 1.0}}))
        assert medium[0].severity == Severity.MEDIUM
        assert high[0].severity == Severity.HIGH

    def test_events_in_past_days_ignored(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({-1: {"wind_speed": 70.0}}))
        assert findings == []

    def test_one_finding_per_day(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(), _make_window({0: {"temp_min": 3.0}, 1: {"temp_min": 3.0}})
        )
        assert _kinds(findings) == [RiskKind.FROST, RiskKind.FROST]
        assert [f.trigger_date for f in findings] == [TODAY, TODAY + timedelta(days=1)]

    def test_lead_times(self):
        assert lead_time_for(RiskKind.FROST) == timedelta(hours=12)
        assert lead_time_for(RiskKind.WIND) == timedelta(hours=3)
        assert lead_time_for(RiskKind.RAIN) == timedelta(hours=2)
        assert lead_time_for(RiskKind.FOLIAR_DISEASE_A) == timedelta(0)


# ── Compound disease ──────────────────────────────────────────────────


class TestCompoundDisease:
    def test_two_humid_days_medium(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(), _make_window({-2: HUMID_OVERCAST, -1: HUMID_OVERCAST})
        )
        assert _kinds(findings) == [RiskKind.FOLIAR_DISEASE_A]
        assert findings[0].severity == Severity.MEDIUM
        assert findings[0].trigger_date == TODAY
        assert findings[0].metric_value == 2.0

    def test_three_humid_days_high(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(),
            _make_window({-2: HUMID_OVERCAST, -1: HUMID_OVERCAST, 0: HUMID_OVERCAST}),
        )
        assert findings[0].kind == RiskKind.FOLIAR_DISEASE_A
        assert findings[0].severity == Severity.HIGH

    def test_single_humid_day_no_finding(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({-1: HUMID_OVERCAST}))
        assert findings == []

    def test_humid_but_clear_does_not_count(self, evaluator):
        humid_clear = {"humidity": 95.0, "cloud_cover": 10.0}
        findings = evaluator.evaluate(
            _make_farm(), _make_window({-2: humid_clear, -1: humid_clear, 0: humid_clear})
        )
        assert findings == []

    def test_days_outside_trailing_window_ignored(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(),
            _make_window({-6: HUMID_OVERCAST, -5: HUMID_OVERCAST}, history=6),
        )
        assert findings == []

    def test_future_days_do_not_count(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(), _make_window({1: HUMID_OVERCAST, 2: HUMID_OVERCAST})
        )
        assert findings == []

    def test_wet_windy_pattern(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(), _make_window({-3: WET_WINDY, -1: WET_WINDY})
        )
        assert _kinds(findings) == [RiskKind.FOLIAR_DISEASE_B]
        assert findings[0].severity == Severity.MEDIUM

    def test_combined_finding_when_both_patterns_active(self, evaluator):
        both = {**HUMID_OVERCAST, **WET_WINDY}
        findings = evaluator.evaluate(_make_farm(), _make_window({-2: both, -1: both}))
        assert _kinds(findings) == [
            RiskKind.COMBINED_DISEASE,
            RiskKind.FOLIAR_DISEASE_A,
            RiskKind.FOLIAR_DISEASE_B,
        ]
        assert findings[0].severity == Severity.HIGH

    def test_no_combined_with_one_pattern(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(), _make_window({-2: HUMID_OVERCAST, -1: HUMID_OVERCAST})
        )
        assert RiskKind.COMBINED_DISEASE not in _kinds(findings)


# ── Advisories ────────────────────────────────────────────────────────


class TestAdvisories:
    def test_irrigation_on_hot_day(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({0: {"temp_max": 34.0}}))
        assert _kinds(findings) == [RiskKind.IRRIGATION_ADVISORY]
        assert findings[0].severity == Severity.LOW
        assert findings[0].advisory is True

    def test_irrigation_suppressed_after_recent_irrigation(self, evaluator):
        farm = _make_farm(activities=(
            ActivityEvent(event_type=ActivityType.IRRIGATION, occurred_on=TODAY - timedelta(days=1)),
        ))
        findings = evaluator.evaluate(farm, _make_window({0: {"temp_max": 34.0}}))
        assert findings == []

    def test_irrigation_dry_flowering(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(stage=CropStage.FLOWERING), _make_window({0: {"humidity": 40.0}})
        )
        assert RiskKind.IRRIGATION_ADVISORY in _kinds(findings)

    def test_fertilization_window_before_rain(self, evaluator):
        findings = evaluator.evaluate(_make_farm(), _make_window({2: {"precipitation": 18.0}}))
        assert RiskKind.FERTILIZATION_WINDOW in _kinds(findings)
        assert RiskKind.RAIN in _kinds(findings)

    def test_fertilization_window_skipped_when_recently_fertilized(self, evaluator):
        farm = _make_farm(activities=(
            ActivityEvent(event_type=ActivityType.FERTILIZATION, occurred_on=TODAY - timedelta(days=3)),
        ))
        findings = evaluator.evaluate(farm, _make_window({2: {"precipitation": 18.0}}))
        assert RiskKind.FERTILIZATION_WINDOW not in _kinds(findings)

    def test_planting_conditions(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(stage=CropStage.PLANTING), _make_window({1: {"wind_speed": 30.0}})
        )
        assert _kinds(findings) == [RiskKind.PLANTING_CONDITIONS]

    def test_flowering_wind(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(stage=CropStage.FLOWERING), _make_window({1: {"wind_speed": 25.0}})
        )
        assert _kinds(findings) == [RiskKind.FLOWERING_WIND]

    def test_harvest_rain(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(stage=CropStage.HARVEST), _make_window({1: {"precipitation": 8.0}})
        )
        assert _kinds(findings) == [RiskKind.HARVEST_RAIN]

    def test_resume_monitoring_without_recent_activity(self, evaluator):
        old = (ActivityEvent(event_type=ActivityType.PRUNING, occurred_on=TODAY - timedelta(days=9)),)
        findings = evaluator.evaluate(_make_farm(activities=old), _make_window())
        assert _kinds(findings) == [RiskKind.RESUME_MONITORING]
        assert findings[0].trigger_date == TODAY


# ── Ordering & robustness ─────────────────────────────────────────────


class TestOrderingAndRobustness:
    def test_sorted_by_severity_then_kind_then_date(self, evaluator):
        findings = evaluator.evaluate(
            _make_farm(),
            _make_window({
                0: {"wind_speed": 45.0},
                1: {"temp_min": 1.0},
                2: {"wind_speed": 45.0, "temp_min": 4.0},
            }),
        )
        assert [(f.kind, f.trigger_date) for f in findings] == [
            (RiskKind.FROST, TODAY + timedelta(days=1)),
            (RiskKind.FROST, TODAY + timedelta(days=2)),
            (RiskKind.WIND, TODAY),
            (RiskKind.WIND, TODAY + timedelta(days=2)),
        ]
        assert findings[0].severity == Severity.HIGH

    def test_duplicate_dates_evaluated_once(self, evaluator):
        window = _make_window({1: {"wind_speed": 50.0}})
        window.append(benign_day(TODAY + timedelta(days=1), wind_speed=55.0))
        findings = evaluator.evaluate(_make_farm(), window)
        assert _kinds(findings) == [RiskKind.WIND]

    def test_faulty_rule_is_skipped(self):
        def explode(ctx):
            raise ZeroDivisionError("bad rule")

        broken = RiskRule(
            kind=RiskKind.HARVEST_RAIN,
            scope=RuleScope.WINDOW,
            predicate=explode,
            severity=lambda ctx: Severity.LOW,
            explain=lambda ctx: "never",
            call_to_action="never",
        )
        evaluator = ConditionEvaluator(rules=[broken, *build_rule_table()])
        findings = evaluator.evaluate(_make_farm(), _make_window({1: {"wind_speed": 50.0}}))
        assert _kinds(findings) == [RiskKind.WIND]

    def test_thresholds_from_settings(self):
        cfg = Settings(rule_wind_kmh=20.0, rule_frost_c=0.0)
        thresholds = RuleThresholds.from_settings(cfg)
        assert thresholds.wind_kmh == 20.0
        evaluator = ConditionEvaluator(thresholds=thresholds)
        findings = evaluator.evaluate(
            _make_farm(), _make_window({1: {"wind_speed": 25.0, "temp_min": 3.0}})
        )
        assert _kinds(findings) == [RiskKind.WIND]

    def test_every_threshold_has_a_setting(self):
        expected = {name: value + 1 for name, value in RuleThresholds().model_dump().items()}
        cfg = Settings(**{f"rule_{name}": value for name, value in expected.items()})
        assert RuleThresholds.from_settings(cfg).model_dump() == expected

    def test_stage_and_window_thresholds_from_env(self, monkeypatch):
        monkeypatch.setenv("RULE_HARVEST_RAIN_MM", "10")
        monkeypatch.setenv("RULE_DISEASE_MIN_DAYS", "3")
        evaluator = ConditionEvaluator(thresholds=RuleThresholds.from_settings(Settings()))

        harvest = evaluator.evaluate(
            _make_farm(stage=CropStage.HARVEST), _make_window({1: {"precipitation": 8.0}})
        )
        humid = evaluator.evaluate(
            _make_farm(), _make_window({-2: HUMID_OVERCAST, -1: HUMID_OVERCAST})
        )
        assert harvest == []
        assert humid == []


class TestCropStageCoercion:
    def test_known_stage_any_case(self):
        assert CropStage.coerce("Flowering") == CropStage.FLOWERING
        assert CropStage.coerce("vegetative growth") == CropStage.VEGETATIVE_GROWTH

    def test_unknown_or_missing_defaults(self):
        assert CropStage.coerce("dormant") == CropStage.VEGETATIVE_GROWTH
        assert CropStage.coerce(None) == CropStage.VEGETATIVE_GROWTH

    def test_farm_context_coerces(self):
        farm = FarmContext(as_of=TODAY, crop_stage="HARVEST", crop_type="  ")
        assert farm.crop_stage == CropStage.HARVEST
        assert farm.crop_type == "general crop"


# ── Property-based ────────────────────────────────────────────────────


day_weather = st.fixed_dictionaries({
    "humidity": st.floats(min_value=0, max_value=100),
    "cloud_cover": st.floats(min_value=0, max_value=100),
    "wind_speed": st.floats(min_value=0, max_value=90),
    "precipitation": st.floats(min_value=0, max_value=60),
    "temp_min": st.floats(min_value=-5, max_value=25),
})


class TestDeterminism:
    @given(weather=st.lists(day_weather, min_size=7, max_size=7))
    @hyp_settings(max_examples=50, deadline=None)
    def test_same_input_same_findings(self, weather):
        window = _make_window({offset: w for offset, w in zip(range(-4, 3), weather)})
        evaluator = ConditionEvaluator()
        first = evaluator.evaluate(_make_farm(), window)
        second = evaluator.evaluate(_make_farm(), list(reversed(window)))
        assert first == second

    @given(weather=st.lists(day_weather, min_size=7, max_size=7))
    @hyp_settings(max_examples=50, deadline=None)
    def test_at_most_one_finding_per_kind_and_date(self, weather):
        window = _make_window({offset: w for offset, w in zip(range(-4, 3), weather)})
        findings = ConditionEvaluator().evaluate(_make_farm(), window)
        keys = [(f.kind, f.trigger_date) for f in findings]
        assert len(keys) == len(set(keys))
