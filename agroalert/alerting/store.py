"""
Alert Store — the single source of truth for scheduled alerts.

Guarantees:
1. At most one live alert per dedup key (user_id, kind, trigger_date)
2. A duplicate finding with higher severity upgrades the stored alert, but
   only while it is still pending
3. `claim` is a compare-and-set pending → dispatching, so two concurrent
   dispatch ticks can never both own the same alert
4. `sent` flips false → true exactly once

Two implementations share the contract:
- InMemoryAlertStore: one asyncio.Lock guards every mutation
- SqlAlertStore: unique constraint on the dedup key + conditional UPDATEs
"""

import asyncio
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional, Protocol

import structlog
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from agroalert.alerting.schemas import Alert, AlertStatus, PurgeResult
from agroalert.db.engine import create_store_engine, init_db
from agroalert.db.models import AlertRow
from agroalert.exceptions import StoreError

logger = structlog.get_logger(__name__)

DEFAULT_RETENTION = timedelta(hours=48)


class AlertStore(Protocol):
    """Interface shared by every alert store."""

    async def upsert_if_absent(self, alert: Alert) -> tuple[Alert, bool]: ...
    async def due_for_dispatch(self, now: datetime) -> list[Alert]: ...
    async def claim(self, alert_id: str) -> Optional[Alert]: ...
    async def mark_sent(self, alert_id: str, sent_at: datetime) -> Alert: ...
    async def release(self, alert_id: str, error: str) -> Optional[Alert]: ...
    async def list_for_user(self, user_id: str) -> list[Alert]: ...
    async def purge_expired(self, now: datetime) -> PurgeResult: ...
    async def count_by_status(self) -> dict[str, int]: ...
    async def close(self) -> None: ...


def _upgrade_fields(incoming: Alert) -> dict:
    return {
        "severity": incoming.severity,
        "title": incoming.title,
        "message": incoming.message,
        "channel_message": incoming.channel_message,
        "scheduled_for": incoming.scheduled_for,
    }


def _purge_result(expired: list[Alert]) -> PurgeResult:
    unsent = [a for a in expired if not a.sent]
    return PurgeResult(
        purged=len(expired),
        expired_unsent=len(unsent),
        expired_by_kind=dict(Counter(a.kind.value for a in unsent)),
    )


# ── In-memory ──────────────────────────────────────────────────────────


class InMemoryAlertStore:
    """
    Process-local store for development, demos and tests.

    Every read returns a copy so callers never mutate shared state.
    """

    def __init__(self, retention: timedelta = DEFAULT_RETENTION):
        self.retention = retention
        self._alerts: dict[str, Alert] = {}
        self._by_key: dict[tuple, str] = {}
        self._lock = asyncio.Lock()

    async def upsert_if_absent(self, alert: Alert) -> tuple[Alert, bool]:
        async with self._lock:
            existing_id = self._by_key.get(alert.dedup_key)
            if existing_id is None:
                stored = alert.model_copy()
                self._alerts[stored.id] = stored
                self._by_key[stored.dedup_key] = stored.id
                return stored.model_copy(), True

            existing = self._alerts[existing_id]
            if (
                existing.status == AlertStatus.PENDING
                and alert.severity.rank > existing.severity.rank
            ):
                upgraded = existing.model_copy(update=_upgrade_fields(alert))
                self._alerts[existing_id] = upgraded
                logger.info(
                    "alert_upgraded",
                    alert_id=existing_id,
                    kind=alert.kind.value,
                    from_severity=existing.severity.value,
                    to_severity=alert.severity.value,
                )
                return upgraded.model_copy(), False
            return existing.model_copy(), False

    async def due_for_dispatch(self, now: datetime) -> list[Alert]:
        async with self._lock:
            due = [
                a for a in self._alerts.values()
                if a.status == AlertStatus.PENDING and a.scheduled_for <= now
            ]
        due.sort(key=lambda a: (a.scheduled_for, a.created_at))
        return [a.model_copy() for a in due]

    async def claim(self, alert_id: str) -> Optional[Alert]:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status != AlertStatus.PENDING:
                return None
            claimed = alert.model_copy(update={"status": AlertStatus.DISPATCHING})
            self._alerts[alert_id] = claimed
            return claimed.model_copy()

    async def mark_sent(self, alert_id: str, sent_at: datetime) -> Alert:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status != AlertStatus.DISPATCHING:
                raise StoreError("Alert is not claimed", alert_id=alert_id)
            sent = alert.model_copy(
                update={"status": AlertStatus.SENT, "sent_at": sent_at, "last_error": None}
            )
            self._alerts[alert_id] = sent
            return sent.model_copy()

    async def release(self, alert_id: str, error: str) -> Optional[Alert]:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status != AlertStatus.DISPATCHING:
                return None
            released = alert.model_copy(update={
                "status": AlertStatus.PENDING,
                "attempts": alert.attempts + 1,
                "last_error": error,
            })
            self._alerts[alert_id] = released
            return released.model_copy()

    async def list_for_user(self, user_id: str) -> list[Alert]:
        async with self._lock:
            alerts = [a.model_copy() for a in self._alerts.values() if a.user_id == user_id]
        alerts.sort(key=lambda a: (a.created_at, a.scheduled_for), reverse=True)
        return alerts

    async def purge_expired(self, now: datetime) -> PurgeResult:
        cutoff = now - self.retention
        async with self._lock:
            expired = [
                a for a in self._alerts.values()
                if a.scheduled_for < cutoff and a.status != AlertStatus.DISPATCHING
            ]
            for alert in expired:
                del self._alerts[alert.id]
                self._by_key.pop(alert.dedup_key, None)
        return _purge_result(expired)

    async def count_by_status(self) -> dict[str, int]:
        async with self._lock:
            counts = Counter(a.status.value for a in self._alerts.values())
        return {status.value: counts.get(status.value, 0) for status in AlertStatus}

    async def close(self) -> None:
        return None


# ── SQL ────────────────────────────────────────────────────────────────


class SqlAlertStore:
    """
    Durable store on SQLAlchemy async.

    Dedup relies on the unique constraint; claims and upgrades are conditional
    UPDATEs, so correctness holds across processes sharing the database.
    """

    def __init__(self, engine: AsyncEngine, retention: timedelta = DEFAULT_RETENTION):
        self.engine = engine
        self.retention = retention
        self._session_factory = async_sessionmaker(
            bind=engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self) -> None:
        """Create tables and return claims orphaned by a crashed process to pending."""
        await init_db(self.engine)
        async with self._session_factory() as session:
            result = await session.execute(
                update(AlertRow)
                .where(AlertRow.status == AlertStatus.DISPATCHING.value)
                .values(status=AlertStatus.PENDING.value)
            )
            await session.commit()
        if result.rowcount:
            logger.warning("stale_claims_released", count=result.rowcount)

    async def close(self) -> None:
        await self.engine.dispose()

    @staticmethod
    def _key_clause(alert: Alert):
        return and_(
            AlertRow.user_id == alert.user_id,
            AlertRow.kind == alert.kind.value,
            AlertRow.trigger_date == alert.trigger_date,
        )

    async def upsert_if_absent(self, alert: Alert) -> tuple[Alert, bool]:
        async with self._session_factory() as session:
            session.add(AlertRow.from_alert(alert))
            try:
                await session.commit()
                return alert.model_copy(), True
            except IntegrityError:
                await session.rollback()

            fields = _upgrade_fields(alert)
            result = await session.execute(
                update(AlertRow)
                .where(
                    self._key_clause(alert),
                    AlertRow.status == AlertStatus.PENDING.value,
                    AlertRow.severity_rank < alert.severity.rank,
                )
                .values(
                    severity=alert.severity.value,
                    severity_rank=alert.severity.rank,
                    title=fields["title"],
                    message=fields["message"],
                    channel_message=fields["channel_message"],
                    scheduled_for=fields["scheduled_for"],
                )
            )
            await session.commit()

            row = await session.scalar(select(AlertRow).where(self._key_clause(alert)))
            if row is None:
                raise StoreError("Alert vanished during upsert", kind=alert.kind.value)
            if result.rowcount:
                logger.info(
                    "alert_upgraded",
                    alert_id=row.id,
                    kind=alert.kind.value,
                    to_severity=alert.severity.value,
                )
            return row.to_alert(), False

    async def due_for_dispatch(self, now: datetime) -> list[Alert]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(AlertRow)
                .where(
                    AlertRow.status == AlertStatus.PENDING.value,
                    AlertRow.scheduled_for <= now,
                )
                .order_by(AlertRow.scheduled_for, AlertRow.created_at)
            )
            return [r.to_alert() for r in rows]

    async def _transition(self, alert_id: str, from_status: AlertStatus, **values) -> Optional[Alert]:
        async with self._session_factory() as session:
            result = await session.execute(
                update(AlertRow)
                .where(AlertRow.id == alert_id, AlertRow.status == from_status.value)
                .values(**values)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            row = await session.get(AlertRow, alert_id, populate_existing=True)
            return row.to_alert() if row else None

    async def claim(self, alert_id: str) -> Optional[Alert]:
        return await self._transition(
            alert_id, AlertStatus.PENDING, status=AlertStatus.DISPATCHING.value
        )

    async def mark_sent(self, alert_id: str, sent_at: datetime) -> Alert:
        alert = await self._transition(
            alert_id,
            AlertStatus.DISPATCHING,
            status=AlertStatus.SENT.value,
            sent_at=sent_at,
            last_error=None,
        )
        if alert is None:
            raise StoreError("Alert is not claimed", alert_id=alert_id)
        return alert

    async def release(self, alert_id: str, error: str) -> Optional[Alert]:
        return await self._transition(
            alert_id,
            AlertStatus.DISPATCHING,
            status=AlertStatus.PENDING.value,
            attempts=AlertRow.attempts + 1,
            last_error=error,
        )

    async def list_for_user(self, user_id: str) -> list[Alert]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(AlertRow)
                .where(AlertRow.user_id == user_id)
                .order_by(AlertRow.created_at.desc(), AlertRow.scheduled_for.desc())
            )
            return [r.to_alert() for r in rows]

    async def purge_expired(self, now: datetime) -> PurgeResult:
        cutoff = now - self.retention
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(AlertRow).where(
                    AlertRow.scheduled_for < cutoff,
                    AlertRow.status != AlertStatus.DISPATCHING.value,
                )
            )
            expired = [r.to_alert() for r in rows]
            if expired:
                await session.execute(
                    delete(AlertRow).where(
                        AlertRow.id.in_([a.id for a in expired]),
                        AlertRow.status != AlertStatus.DISPATCHING.value,
                    )
                )
                await session.commit()
        return _purge_result(expired)

    async def count_by_status(self) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(AlertRow.status, func.count()).group_by(AlertRow.status)
            )
            counts = dict(rows.all())
        return {status.value: counts.get(status.value, 0) for status in AlertStatus}


async def build_alert_store(url: str, retention: timedelta = DEFAULT_RETENTION) -> AlertStore:
    """Empty URL → in-memory store; anything else → SQL store on that URL."""
    if not url:
        logger.info("alert_store_selected", backend="memory")
        return InMemoryAlertStore(retention=retention)

    store = SqlAlertStore(create_store_engine(url), retention=retention)
    await store.initialize()
    logger.info("alert_store_selected", backend="sql")
    return store
