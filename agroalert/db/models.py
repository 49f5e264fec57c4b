"""
AgroAlert SQLAlchemy Models.

One table: scheduled alerts, unique on the dedup key (user_id, kind, trigger_date).
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import Date, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from agroalert.alerting.schemas import Alert, AlertStatus, RiskKind, Severity
from agroalert.db.compat import UTCDateTime
from agroalert.db.engine import Base


class AlertRow(Base):
    """Persisted alert. At most one live row per dedup key."""

    __tablename__ = "agro_alerts"
    __table_args__ = (
        UniqueConstraint("user_id", "kind", "trigger_date", name="uq_alerts_dedup_key"),
        Index("ix_alerts_status_scheduled", "status", "scheduled_for"),
        Index("ix_alerts_user_id", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_date: Mapped[date] = mapped_column(Date, nullable=False)

    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    severity_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    channel_message: Mapped[str] = mapped_column(Text, nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String(64))

    # Delivery
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertRow":
        return cls(
            id=alert.id,
            user_id=alert.user_id,
            kind=alert.kind.value,
            trigger_date=alert.trigger_date,
            severity=alert.severity.value,
            severity_rank=alert.severity.rank,
            title=alert.title,
            message=alert.message,
            channel_message=alert.channel_message,
            recipient=alert.recipient,
            scheduled_for=alert.scheduled_for,
            status=alert.status.value,
            attempts=alert.attempts,
            last_error=alert.last_error,
            sent_at=alert.sent_at,
            created_at=alert.created_at,
        )

    def to_alert(self) -> Alert:
        return Alert(
            id=self.id,
            user_id=self.user_id,
            kind=RiskKind(self.kind),
            severity=Severity(self.severity),
            title=self.title,
            message=self.message,
            channel_message=self.channel_message,
            recipient=self.recipient,
            trigger_date=self.trigger_date,
            scheduled_for=self.scheduled_for,
            status=AlertStatus(self.status),
            attempts=self.attempts,
            last_error=self.last_error,
            sent_at=self.sent_at,
            created_at=self.created_at,
        )
