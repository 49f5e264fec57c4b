"""
Dispatcher — claim, send, record.

Pipeline per alert:
1. Claim (pending → dispatching); lost race → skipped
2. Send through the channel, bounded by a timeout
3. Success → mark sent; anything else → release back to pending

The claim is what makes delivery at-most-once across concurrent ticks; the
release is what makes a failed send retry on a later tick.
"""

import asyncio
from enum import StrEnum
from typing import Optional

import structlog
from pydantic import BaseModel

from agroalert.alerting.channels import NotificationChannel
from agroalert.alerting.schemas import Alert
from agroalert.alerting.stats import DispatchStatsRecorder
from agroalert.alerting.store import AlertStore
from agroalert.clock import Clock, utc_now
from agroalert.exceptions import ErrorCode

logger = structlog.get_logger(__name__)


class DispatchStatus(StrEnum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"             # Claimed by someone else or no longer pending


class DispatchOutcome(BaseModel):
    alert_id: str
    status: DispatchStatus
    message_sid: Optional[str] = None
    simulated: bool = False
    error: Optional[str] = None


class Dispatcher:
    def __init__(
        self,
        store: AlertStore,
        channel: NotificationChannel,
        clock: Clock = utc_now,
        send_timeout: float = 15.0,
        stats: Optional[DispatchStatsRecorder] = None,
    ):
        self.store = store
        self.channel = channel
        self.clock = clock
        self.send_timeout = send_timeout
        self.stats = stats or DispatchStatsRecorder()

    async def dispatch(self, alert: Alert) -> DispatchOutcome:
        claimed = await self.store.claim(alert.id)
        if claimed is None:
            logger.debug("dispatch_skipped", alert_id=alert.id)
            return DispatchOutcome(alert_id=alert.id, status=DispatchStatus.SKIPPED)

        if not claimed.recipient:
            return await self._fail(claimed, f"{ErrorCode.NO_RECIPIENT.value}: alert has no recipient")

        try:
            result = await asyncio.wait_for(
                self.channel.send(claimed.recipient, claimed.channel_message),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            return await self._fail(claimed, f"TIMEOUT: no answer within {self.send_timeout:g}s")
        except asyncio.CancelledError:
            await self.store.release(claimed.id, "CANCELLED: dispatch interrupted")
            raise
        except Exception as e:
            return await self._fail(claimed, f"CHANNEL_EXCEPTION: {e}")

        if not result.success:
            return await self._fail(claimed, f"{result.error_code}: {result.error_message}")

        sent = await self.store.mark_sent(claimed.id, self.clock())
        self.stats.record_sent(sent)
        logger.info(
            "alert_dispatched",
            alert_id=sent.id,
            user_id=sent.user_id,
            kind=sent.kind.value,
            severity=sent.severity.value,
            message_sid=result.message_sid,
            simulated=result.simulated,
            attempts=sent.attempts + 1,
        )
        return DispatchOutcome(
            alert_id=sent.id,
            status=DispatchStatus.SENT,
            message_sid=result.message_sid,
            simulated=result.simulated,
        )

    async def _fail(self, alert: Alert, error: str) -> DispatchOutcome:
        released = await self.store.release(alert.id, error)
        self.stats.record_failed_attempt(alert)
        logger.warning(
            "alert_dispatch_failed",
            alert_id=alert.id,
            user_id=alert.user_id,
            kind=alert.kind.value,
            attempts=released.attempts if released else alert.attempts + 1,
            error=error,
        )
        return DispatchOutcome(alert_id=alert.id, status=DispatchStatus.FAILED, error=error)
