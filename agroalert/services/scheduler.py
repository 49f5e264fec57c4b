"""
Alert Scheduler — runs evaluation and dispatch on fixed intervals.

Jobs:
1. Evaluation (every 30 min) — evaluate every eligible farm, upsert alerts
2. Dispatch (every 5 min) — purge expired alerts, then send everything due

Both jobs are max_instances=1 + coalesce, so a slow tick is never stacked.
An ad-hoc `run_evaluation_tick(user_id)` may overlap with either job; the
store's dedup and claim rules keep that safe.

Error isolation: one failing user or alert is logged and counted, the rest
of the tick carries on.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, timezone
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from agroalert.alerting.dispatcher import Dispatcher, DispatchStatus
from agroalert.alerting.engine import ConditionEvaluator
from agroalert.alerting.materializer import AlertMaterializer
from agroalert.alerting.schemas import DispatchSummary, EvaluationSummary, FarmContext
from agroalert.alerting.stats import DispatchStatsRecorder
from agroalert.alerting.store import AlertStore
from agroalert.clock import Clock, utc_now
from agroalert.exceptions import PoisonFindingError
from agroalert.services.directory import ActivityLog, FarmAccount, FarmDirectory
from agroalert.weather.sources import ForecastSource

logger = structlog.get_logger(__name__)


class AlertScheduler:
    """Background scheduler for alert evaluation and dispatch."""

    def __init__(
        self,
        directory: FarmDirectory,
        activity_log: ActivityLog,
        forecast_source: ForecastSource,
        evaluator: ConditionEvaluator,
        materializer: AlertMaterializer,
        store: AlertStore,
        dispatcher: Dispatcher,
        stats: DispatchStatsRecorder,
        clock: Clock = utc_now,
        evaluation_interval_minutes: int = 30,
        dispatch_interval_minutes: int = 5,
        max_concurrent_evaluations: int = 8,
        max_concurrent_dispatches: int = 4,
        forecast_days: int = 3,
        forecast_history_days: int = 4,
        activity_lookback_days: int = 7,
    ):
        self.directory = directory
        self.activity_log = activity_log
        self.forecast_source = forecast_source
        self.evaluator = evaluator
        self.materializer = materializer
        self.store = store
        self.dispatcher = dispatcher
        self.stats = stats
        self.clock = clock
        self.evaluation_interval_minutes = evaluation_interval_minutes
        self.dispatch_interval_minutes = dispatch_interval_minutes
        self.max_concurrent_evaluations = max(1, max_concurrent_evaluations)
        self.max_concurrent_dispatches = max(1, max_concurrent_dispatches)
        self.forecast_days = forecast_days
        self.forecast_history_days = forecast_history_days
        self.activity_lookback_days = activity_lookback_days

        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._in_flight: set[asyncio.Task] = set()

    def start(self):
        """Register and start both jobs."""
        self.scheduler.add_job(
            self.run_evaluation_tick,
            IntervalTrigger(minutes=self.evaluation_interval_minutes),
            id="alert_evaluation",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_dispatch_tick,
            IntervalTrigger(minutes=self.dispatch_interval_minutes),
            id="alert_dispatch",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "alert_scheduler_started",
            evaluation_minutes=self.evaluation_interval_minutes,
            dispatch_minutes=self.dispatch_interval_minutes,
        )

    async def stop(self):
        """Stop scheduling new ticks and wait for in-flight ones to finish."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        pending = [t for t in self._in_flight if t is not asyncio.current_task()]
        if pending:
            logger.info("alert_scheduler_draining", ticks=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("alert_scheduler_stopped")

    @asynccontextmanager
    async def _tracked(self):
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            yield
        finally:
            if task is not None:
                self._in_flight.discard(task)

    # ── Evaluation ────────────────────────────────────────────────────

    async def run_evaluation_tick(self, user_id: Optional[str] = None) -> EvaluationSummary:
        """Evaluate every eligible user (or just `user_id`) and upsert alerts."""
        async with self._tracked():
            summary = EvaluationSummary()
            as_of = self.clock().date()

            accounts = await self.directory.list_eligible_users()
            if user_id is not None:
                accounts = [a for a in accounts if a.user_id == user_id]
                if not accounts:
                    logger.info("evaluation_user_not_eligible", user_id=user_id)

            logger.info("evaluation_tick_started", users=len(accounts), as_of=as_of.isoformat())
            semaphore = asyncio.Semaphore(self.max_concurrent_evaluations)

            async def bounded(account: FarmAccount):
                async with semaphore:
                    await self._evaluate_user(account, as_of, summary)

            results = await asyncio.gather(
                *(bounded(a) for a in accounts), return_exceptions=True
            )
            for account, result in zip(accounts, results):
                if isinstance(result, Exception):
                    summary.users_failed += 1
                    summary.errors.append(f"{account.user_id}: {result}")
                    logger.error(
                        "user_evaluation_failed",
                        user_id=account.user_id,
                        error=str(result),
                    )

            logger.info(
                "evaluation_tick_completed",
                users_evaluated=summary.users_evaluated,
                users_skipped=summary.users_skipped,
                users_failed=summary.users_failed,
                findings=summary.findings,
                alerts_created=summary.alerts_created,
            )
            return summary

    async def _evaluate_user(
        self, account: FarmAccount, as_of: date, summary: EvaluationSummary
    ) -> None:
        if account.farm is None:
            summary.users_skipped += 1
            logger.debug("evaluation_skipped_no_farm", user_id=account.user_id)
            return

        activities = await self.activity_log.recent_activities(
            account.user_id, self.activity_lookback_days
        )
        farm = FarmContext(
            as_of=as_of,
            location=account.farm.location,
            crop_type=account.farm.crop_type,
            crop_stage=account.farm.crop_stage,
            recent_activities=tuple(activities),
        )
        forecast = await self.forecast_source.get_forecast(
            account.farm.location, as_of, self.forecast_days, self.forecast_history_days
        )
        findings = self.evaluator.evaluate(farm, forecast)
        summary.users_evaluated += 1
        summary.findings += len(findings)

        for finding in findings:
            try:
                alert = self.materializer.materialize(account.user_id, finding, account.phone)
            except PoisonFindingError as e:
                summary.findings_dropped += 1
                logger.warning(
                    "poison_finding_dropped",
                    user_id=account.user_id,
                    kind=finding.kind.value,
                    **e.to_dict(),
                )
                continue

            stored, was_new = await self.store.upsert_if_absent(alert)
            if was_new:
                summary.alerts_created += 1
                self.stats.record_created(stored)
                logger.info(
                    "alert_scheduled",
                    alert_id=stored.id,
                    user_id=stored.user_id,
                    kind=stored.kind.value,
                    severity=stored.severity.value,
                    scheduled_for=stored.scheduled_for.isoformat(),
                )
            else:
                summary.alerts_unchanged += 1

    # ── Dispatch ──────────────────────────────────────────────────────

    async def run_dispatch_tick(self) -> DispatchSummary:
        """Purge expired alerts, then dispatch everything that is due."""
        async with self._tracked():
            summary = DispatchSummary()

            purge = await self.store.purge_expired(self.clock())
            self.stats.record_purge(purge)
            summary.purged = purge.purged
            summary.expired_unsent = purge.expired_unsent
            if purge.expired_unsent:
                logger.warning(
                    "alerts_expired_unsent",
                    count=purge.expired_unsent,
                    by_kind=purge.expired_by_kind,
                )

            due = await self.store.due_for_dispatch(self.clock())
            summary.due = len(due)
            semaphore = asyncio.Semaphore(self.max_concurrent_dispatches)

            async def bounded(alert):
                async with semaphore:
                    return await self.dispatcher.dispatch(alert)

            results = await asyncio.gather(*(bounded(a) for a in due), return_exceptions=True)
            for alert, result in zip(due, results):
                if isinstance(result, Exception):
                    summary.failed += 1
                    summary.errors.append(f"{alert.id}: {result}")
                    logger.error("alert_dispatch_error", alert_id=alert.id, error=str(result))
                elif result.status == DispatchStatus.SENT:
                    summary.sent += 1
                elif result.status == DispatchStatus.FAILED:
                    summary.failed += 1
                    summary.errors.append(f"{alert.id}: {result.error}")
                else:
                    summary.skipped += 1

            if due or purge.purged:
                logger.info(
                    "dispatch_tick_completed",
                    due=summary.due,
                    sent=summary.sent,
                    failed=summary.failed,
                    skipped=summary.skipped,
                    purged=summary.purged,
                )
            return summary
