"""
Alert Materializer — turns a RiskFinding into a schedulable Alert.

scheduled_for = 00:00 UTC of the trigger date − lead time(kind), clamped to
now when that instant has already passed.

The channel message is self-contained: severity marker first, the trigger day
relative to now, the explanation, and one concrete action last. Long messages
are cut in the middle so marker and action always survive.
"""

import uuid
from datetime import datetime, time, timedelta, timezone
from typing import Optional

import structlog

from agroalert.alerting.rules import lead_time_for, title_for
from agroalert.alerting.schemas import Alert, AlertStatus, RiskFinding
from agroalert.clock import Clock, utc_now
from agroalert.exceptions import PoisonFindingError

logger = structlog.get_logger(__name__)

ELLIPSIS = "…"
DEFAULT_ACTION = "Check your field and follow local agronomic guidance."


def trigger_instant(finding: RiskFinding) -> datetime:
    return datetime.combine(finding.trigger_date, time(0), tzinfo=timezone.utc)


class AlertMaterializer:
    def __init__(
        self,
        clock: Clock = utc_now,
        channel_max_length: int = 1600,
        retention: timedelta = timedelta(hours=48),
    ):
        self.clock = clock
        self.channel_max_length = max(channel_max_length, 32)
        self.retention = retention

    def materialize(
        self,
        user_id: str,
        finding: RiskFinding,
        recipient: Optional[str] = None,
    ) -> Alert:
        """
        Build an Alert for a finding.

        Raises:
            PoisonFindingError: blank user id, or a trigger date so old that
                the alert would already be past its retention window.
        """
        now = self.clock()
        if not user_id or not user_id.strip():
            raise PoisonFindingError("Finding has no user id", kind=finding.kind.value)
        if finding.trigger_date < (now - self.retention).date():
            raise PoisonFindingError(
                "Finding trigger date is outside the retention window",
                kind=finding.kind.value,
                trigger_date=finding.trigger_date.isoformat(),
            )

        scheduled_for = max(trigger_instant(finding) - lead_time_for(finding.kind), now)
        title = title_for(finding.kind)
        day_label = self._day_label(finding, now)

        return Alert(
            id=f"alert_{uuid.uuid4().hex[:16]}",
            user_id=user_id,
            kind=finding.kind,
            severity=finding.severity,
            title=title,
            message=f"{title} {day_label}: {finding.explanation}",
            channel_message=self.channel_message(finding, now),
            recipient=recipient or None,
            trigger_date=finding.trigger_date,
            scheduled_for=scheduled_for,
            status=AlertStatus.PENDING,
            created_at=now,
        )

    def channel_message(self, finding: RiskFinding, now: datetime) -> str:
        marker = f"[{finding.severity.value.upper()}]"
        head = f"{marker} {title_for(finding.kind)} ({self._day_label(finding, now)})"
        action = finding.recommended_actions[0] if finding.recommended_actions else DEFAULT_ACTION
        tail = f"Action: {action}"
        body = finding.explanation

        text = f"{head}\n{body}\n{tail}"
        limit = self.channel_max_length
        if len(text) <= limit:
            return text

        budget = limit - len(head) - len(tail) - 2 - len(ELLIPSIS)
        if budget >= 0:
            return f"{head}\n{body[:budget]}{ELLIPSIS}\n{tail}"

        # Head and action alone overflow; keep the marker and the end of the action.
        keep_tail = limit - len(marker) - len(ELLIPSIS) - 1
        return f"{marker} {ELLIPSIS}{tail[-keep_tail:]}"

    @staticmethod
    def _day_label(finding: RiskFinding, now: datetime) -> str:
        delta = (finding.trigger_date - now.date()).days
        if delta == 0:
            return "today"
        if delta == 1:
            return "tomorrow"
        return finding.trigger_date.isoformat()
