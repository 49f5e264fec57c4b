"""
Farm directory and activity log.

The scheduler only needs two questions answered: which users may receive
alerts right now, and what has each farm done recently. Account management
and billing live elsewhere; `plan_eligible` is consumed as an opaque flag.
"""

from datetime import date, timedelta
from pathlib import Path
from typing import Iterable, Optional, Protocol

import structlog
from pydantic import BaseModel, Field, field_validator

from agroalert.alerting.schemas import ActivityEvent, CropStage, DEFAULT_CROP_STAGE
from agroalert.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class FarmProfile(BaseModel):
    location: str = ""
    crop_type: str = "general crop"
    crop_stage: CropStage = DEFAULT_CROP_STAGE

    @field_validator("crop_stage", mode="before")
    @classmethod
    def _coerce_stage(cls, value):
        return CropStage.coerce(value)


class FarmAccount(BaseModel):
    user_id: str
    phone: Optional[str] = None
    plan_eligible: bool = True
    farm: Optional[FarmProfile] = None


class FarmDirectory(Protocol):
    async def list_eligible_users(self) -> list[FarmAccount]: ...

    async def get_account(self, user_id: str) -> Optional[FarmAccount]: ...


class ActivityLog(Protocol):
    async def recent_activities(self, user_id: str, since_days: int) -> list[ActivityEvent]: ...


class DirectoryEntry(FarmAccount):
    activities: list[ActivityEvent] = Field(default_factory=list)


class DirectorySeed(BaseModel):
    """On-disk format for seeding the in-memory directory."""

    farms: list[DirectoryEntry] = Field(default_factory=list)


class InMemoryFarmDirectory:
    """Directory + activity log held in process memory."""

    def __init__(
        self,
        accounts: Iterable[FarmAccount] = (),
        clock: Clock = utc_now,
    ):
        self.clock = clock
        self._accounts: dict[str, FarmAccount] = {a.user_id: a for a in accounts}
        self._activities: dict[str, list[ActivityEvent]] = {}

    @classmethod
    def from_file(cls, path: str | Path, clock: Clock = utc_now) -> "InMemoryFarmDirectory":
        seed = DirectorySeed.model_validate_json(Path(path).read_text(encoding="utf-8"))
        directory = cls(clock=clock)
        for entry in seed.farms:
            directory.upsert(FarmAccount.model_validate(entry.model_dump(exclude={"activities"})))
            for event in entry.activities:
                directory.record_activity(entry.user_id, event)
        logger.info("farm_directory_loaded", path=str(path), farms=len(seed.farms))
        return directory

    def upsert(self, account: FarmAccount) -> None:
        self._accounts[account.user_id] = account

    def record_activity(self, user_id: str, event: ActivityEvent) -> None:
        self._activities.setdefault(user_id, []).append(event)

    async def list_eligible_users(self) -> list[FarmAccount]:
        return [a for a in self._accounts.values() if a.plan_eligible]

    async def get_account(self, user_id: str) -> Optional[FarmAccount]:
        return self._accounts.get(user_id)

    async def recent_activities(self, user_id: str, since_days: int) -> list[ActivityEvent]:
        today: date = self.clock().date()
        since = today - timedelta(days=since_days)
        events = [
            e for e in self._activities.get(user_id, [])
            if since <= e.occurred_on <= today
        ]
        return sorted(events, key=lambda e: e.occurred_on, reverse=True)
