"""
Test fixtures for AgroAlert.

Provides:
- FakeClock: a settable, advanceable UTC clock
- FakeChannel: records sends, can fail, hang or raise on demand
- FakeForecastSource: benign weather with per-location overrides
- In-memory and SQLite-backed alert store fixtures
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from agroalert.alerting.channels import DeliveryStatus, SendResult
from agroalert.alerting.schemas import ForecastDay, ForecastSourceName
from agroalert.alerting.store import InMemoryAlertStore, SqlAlertStore
from agroalert.db.engine import create_store_engine

NOW = datetime(2026, 7, 14, 10, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeChannel:
    name = "fake"

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.failures = 0           # Next N sends fail
        self.always_fail = False
        self.delay = 0.0
        self.raises: Optional[Exception] = None
        self.closed = False

    async def send(self, recipient: str, message: str) -> SendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        if self.raises is not None:
            raise self.raises
        if self.always_fail or self.failures > 0:
            self.failures = max(0, self.failures - 1)
            return SendResult(
                success=False,
                status=DeliveryStatus.FAILED,
                error_code="63016",
                error_message="Channel unavailable",
            )
        self.sent.append((recipient, message))
        return SendResult(
            success=True,
            message_sid=f"SM{len(self.sent):04d}",
            status=DeliveryStatus.QUEUED,
        )

    async def close(self) -> None:
        self.closed = True


def benign_day(day: date, **overrides) -> ForecastDay:
    """A day that triggers no rule on its own."""
    values = dict(
        date=day,
        temperature=22.0,
        temp_min=15.0,
        temp_max=26.0,
        humidity=60.0,
        wind_speed=10.0,
        precipitation=0.0,
        cloud_cover=30.0,
        condition="clear",
        source=ForecastSourceName.SYNTHETIC,
    )
    values.update(overrides)
    return ForecastDay(**values)


class FakeForecastSource:
    """
    Benign forecast everywhere; `overrides[location][offset]` patches the day
    at `as_of + offset`. Locations in `broken` raise.
    """

    name = "fake"

    def __init__(self):
        self.overrides: dict[str, dict[int, dict]] = {}
        self.broken: set[str] = set()
        self.calls: list[tuple[str, date]] = []
        self.closed = False

    async def get_forecast(self, location, as_of, days, history_days):
        self.calls.append((location, as_of))
        if location in self.broken:
            raise RuntimeError(f"forecast backend down for {location}")
        patches = self.overrides.get(location, {})
        return [
            benign_day(as_of + timedelta(days=offset), **patches.get(offset, {}))
            for offset in range(-history_days, days)
        ]

    async def close(self) -> None:
        self.closed = True


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def fake_forecast():
    return FakeForecastSource()


@pytest.fixture
def memory_store():
    return InMemoryAlertStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """SQL store on a throwaway SQLite file."""
    store = SqlAlertStore(create_store_engine(f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}"))
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Every store implementation must pass the same contract tests."""
    if request.param == "memory":
        yield InMemoryAlertStore()
        return
    sql = SqlAlertStore(create_store_engine(f"sqlite+aiosqlite:///{tmp_path / 'contract.db'}"))
    await sql.initialize()
    yield sql
    await sql.close()
