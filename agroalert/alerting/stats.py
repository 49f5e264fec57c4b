"""
Dispatch statistics — cumulative counters for the notification pipeline.

The store only holds live alerts, so totals that must survive a purge
(created, sent, expired) are counted here as events happen.
"""

from collections import Counter

from agroalert.alerting.schemas import Alert, AlertStatus, DispatchStats, PurgeResult


class DispatchStatsRecorder:
    def __init__(self):
        self._created = 0
        self._sent = 0
        self._expired = 0
        self._failed_attempts = 0
        self._by_kind: Counter = Counter()

    def record_created(self, alert: Alert) -> None:
        self._created += 1
        self._by_kind[alert.kind.value] += 1

    def record_sent(self, alert: Alert) -> None:
        self._sent += 1

    def record_failed_attempt(self, alert: Alert) -> None:
        self._failed_attempts += 1

    def record_purge(self, result: PurgeResult) -> None:
        self._expired += result.expired_unsent

    def snapshot(self, live_counts: dict[str, int]) -> DispatchStats:
        """Combine cumulative counters with the store's live status counts."""
        pending = (
            live_counts.get(AlertStatus.PENDING.value, 0)
            + live_counts.get(AlertStatus.DISPATCHING.value, 0)
        )
        return DispatchStats(
            total=self._created,
            sent=self._sent,
            pending=pending,
            expired=self._expired,
            failed_attempts=self._failed_attempts,
            by_kind=dict(sorted(self._by_kind.items())),
        )
