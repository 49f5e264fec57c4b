"""
Condition Evaluator — turns farm context + forecast into risk findings.

Pipeline:
1. Normalise the forecast window (one day per date, oldest first)
2. Split it into leading days (>= as_of) and the trailing window (<= as_of)
3. Run DAY rules per leading day, then WINDOW rules, then DERIVED rules
4. Sort: severity desc, kind, trigger date

Pure and deterministic: same context + same forecast → same findings.
A rule that raises is logged and skipped; evaluation itself never raises.
"""

from dataclasses import replace
from datetime import date
from typing import Iterable, Optional

import structlog

from agroalert.alerting.rules import (
    RiskRule,
    RuleContext,
    RuleScope,
    RuleThresholds,
    build_rule_table,
)
from agroalert.alerting.schemas import FarmContext, ForecastDay, RiskFinding

logger = structlog.get_logger(__name__)


class ConditionEvaluator:
    """Evaluates the rule table against one farm's forecast window."""

    def __init__(
        self,
        rules: Optional[Iterable[RiskRule]] = None,
        thresholds: Optional[RuleThresholds] = None,
    ):
        self.thresholds = thresholds or RuleThresholds()
        self.rules: tuple[RiskRule, ...] = (
            tuple(rules) if rules is not None else build_rule_table(self.thresholds)
        )

    def evaluate(self, farm: FarmContext, forecast: Iterable[ForecastDay]) -> list[RiskFinding]:
        by_date = {day.date: day for day in sorted(forecast, key=lambda d: d.date)}
        days = list(by_date.values())

        leading = tuple(d for d in days if d.date >= farm.as_of)
        trailing = tuple(d for d in days if d.date <= farm.as_of)[-self.thresholds.disease_window_days:]
        today = by_date.get(farm.as_of) or (leading[0] if leading else None)

        base = RuleContext(farm=farm, leading=leading, trailing=trailing, today=today)
        findings: list[RiskFinding] = []

        for rule in self._scoped(RuleScope.DAY):
            for day in leading:
                self._apply(rule, replace(base, day=day), day.date, findings)

        for rule in self._scoped(RuleScope.WINDOW):
            self._apply(rule, base, farm.as_of, findings)

        fired = frozenset(f.kind for f in findings)
        for rule in self._scoped(RuleScope.DERIVED):
            self._apply(rule, replace(base, fired=fired), farm.as_of, findings)

        findings.sort(key=lambda f: (-f.severity.rank, f.kind.value, f.trigger_date))

        logger.debug(
            "farm_evaluated",
            location=farm.location,
            crop_stage=farm.crop_stage.value,
            forecast_days=len(days),
            findings=len(findings),
        )
        return findings

    def _scoped(self, scope: RuleScope) -> list[RiskRule]:
        return [r for r in self.rules if r.scope == scope]

    def _apply(
        self,
        rule: RiskRule,
        ctx: RuleContext,
        trigger_date: date,
        out: list[RiskFinding],
    ) -> None:
        try:
            if not rule.predicate(ctx):
                return
            finding = RiskFinding(
                kind=rule.kind,
                severity=rule.severity(ctx),
                trigger_date=trigger_date,
                explanation=rule.explain(ctx),
                recommended_actions=(rule.call_to_action, *rule.actions),
                metric_value=rule.metric(ctx),
                advisory=rule.advisory,
            )
        except Exception as e:
            logger.warning(
                "rule_evaluation_failed",
                kind=rule.kind.value,
                trigger_date=trigger_date.isoformat(),
                error=str(e),
            )
            return
        out.append(finding)
