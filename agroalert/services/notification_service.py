"""
Notification Service — the outbound boundary of the alerting core.

Wires directory, forecast source, evaluator, materializer, store, channel,
dispatcher and scheduler together, and exposes the four operations the rest
of the product calls:

- list_alerts_for_user(user_id)
- trigger_evaluation_now(user_id=None)
- get_dispatch_stats()
- send_test_notification(phone)
"""

import asyncio
from datetime import timedelta
from typing import Optional

import structlog

from agroalert.alerting.channels import (
    DeliveryStatus,
    NotificationChannel,
    SendResult,
    build_channel,
)
from agroalert.alerting.dispatcher import Dispatcher
from agroalert.alerting.engine import ConditionEvaluator
from agroalert.alerting.materializer import AlertMaterializer
from agroalert.alerting.rules import RuleThresholds
from agroalert.alerting.schemas import Alert, DispatchStats, EvaluationSummary
from agroalert.alerting.stats import DispatchStatsRecorder
from agroalert.alerting.store import AlertStore, build_alert_store
from agroalert.clock import Clock, utc_now
from agroalert.config import Settings
from agroalert.services.directory import InMemoryFarmDirectory
from agroalert.services.scheduler import AlertScheduler
from agroalert.weather.sources import ForecastSource, build_forecast_source

logger = structlog.get_logger(__name__)

TEST_MESSAGE = (
    "[LOW] AgroAlert test message\n"
    "Your phone is registered for weather alerts.\n"
    "Action: No action needed."
)


class NotificationService:
    def __init__(
        self,
        scheduler: AlertScheduler,
        store: AlertStore,
        channel: NotificationChannel,
        stats: DispatchStatsRecorder,
        send_timeout: float = 15.0,
        forecast_source: Optional[ForecastSource] = None,
        directory: Optional[InMemoryFarmDirectory] = None,
    ):
        self.scheduler = scheduler
        self.directory = directory
        self.store = store
        self.channel = channel
        self.stats = stats
        self.send_timeout = send_timeout
        self.forecast_source = forecast_source

    async def list_alerts_for_user(self, user_id: str) -> list[Alert]:
        """Live alerts for a user, newest first."""
        return await self.store.list_for_user(user_id)

    async def trigger_evaluation_now(self, user_id: Optional[str] = None) -> EvaluationSummary:
        logger.info("evaluation_triggered", user_id=user_id)
        return await self.scheduler.run_evaluation_tick(user_id=user_id)

    async def get_dispatch_stats(self) -> DispatchStats:
        return self.stats.snapshot(await self.store.count_by_status())

    async def send_test_notification(self, phone: str) -> SendResult:
        """Send a fixed test message; never creates an alert."""
        try:
            result = await asyncio.wait_for(
                self.channel.send(phone, TEST_MESSAGE), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            result = SendResult(
                success=False,
                status=DeliveryStatus.FAILED,
                error_code="TIMEOUT",
                error_message=f"No answer within {self.send_timeout:g}s",
            )
        logger.info(
            "test_notification_sent",
            success=result.success,
            simulated=result.simulated,
            message_sid=result.message_sid,
            error_code=result.error_code,
        )
        return result

    def start(self) -> None:
        self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.channel.close()
        if self.forecast_source is not None:
            await self.forecast_source.close()
        await self.store.close()
        logger.info("notification_service_closed")


async def build_notification_service(
    settings: Settings,
    clock: Clock = utc_now,
    directory: Optional[InMemoryFarmDirectory] = None,
    forecast_source: Optional[ForecastSource] = None,
    channel: Optional[NotificationChannel] = None,
    store: Optional[AlertStore] = None,
) -> NotificationService:
    """Assemble the full pipeline from settings; any collaborator can be injected."""
    retention = timedelta(hours=settings.alert_retention_hours)

    if directory is None:
        if settings.farm_directory_file:
            directory = InMemoryFarmDirectory.from_file(settings.farm_directory_file, clock=clock)
        else:
            directory = InMemoryFarmDirectory(clock=clock)
            logger.info("farm_directory_empty", reason="FARM_DIRECTORY_FILE not set")

    forecast_source = forecast_source or build_forecast_source(settings)
    channel = channel or build_channel(settings)
    store = store or await build_alert_store(settings.async_store_url, retention=retention)
    stats = DispatchStatsRecorder()

    evaluator = ConditionEvaluator(thresholds=RuleThresholds.from_settings(settings))
    materializer = AlertMaterializer(
        clock=clock,
        channel_max_length=settings.channel_max_length,
        retention=retention,
    )
    dispatcher = Dispatcher(
        store=store,
        channel=channel,
        clock=clock,
        send_timeout=settings.channel_timeout_seconds,
        stats=stats,
    )
    scheduler = AlertScheduler(
        directory=directory,
        activity_log=directory,
        forecast_source=forecast_source,
        evaluator=evaluator,
        materializer=materializer,
        store=store,
        dispatcher=dispatcher,
        stats=stats,
        clock=clock,
        evaluation_interval_minutes=settings.evaluation_interval_minutes,
        dispatch_interval_minutes=settings.dispatch_interval_minutes,
        max_concurrent_evaluations=settings.max_concurrent_evaluations,
        max_concurrent_dispatches=settings.max_concurrent_dispatches,
        forecast_days=settings.forecast_days,
        forecast_history_days=settings.forecast_history_days,
        activity_lookback_days=settings.rule_activity_lookback_days,
    )
    return NotificationService(
        scheduler=scheduler,
        store=store,
        channel=channel,
        stats=stats,
        send_timeout=settings.channel_timeout_seconds,
        forecast_source=forecast_source,
        directory=directory,
    )
