"""
Tests for the in-memory farm directory and activity log.
"""

import json
from datetime import timedelta
from pathlib import Path

import pytest

from agroalert.alerting.schemas import ActivityEvent, ActivityType, CropStage
from agroalert.services.directory import FarmAccount, FarmProfile, InMemoryFarmDirectory
from tests.conftest import TODAY


def _make_account(user_id: str, eligible: bool = True, farm: bool = True) -> FarmAccount:
    return FarmAccount(
        user_id=user_id,
        phone="+5511999990000",
        plan_eligible=eligible,
        farm=FarmProfile(location="Campinas, SP", crop_type="coffee") if farm else None,
    )


class TestEligibility:
    @pytest.mark.asyncio
    async def test_only_eligible_users_listed(self, clock):
        directory = InMemoryFarmDirectory(
            [_make_account("u1"), _make_account("u2", eligible=False), _make_account("u3", farm=False)],
            clock=clock,
        )
        users = await directory.list_eligible_users()
        assert [u.user_id for u in users] == ["u1", "u3"]

    @pytest.mark.asyncio
    async def test_upsert_replaces_account(self, clock):
        directory = InMemoryFarmDirectory([_make_account("u1")], clock=clock)
        directory.upsert(_make_account("u1", eligible=False))
        assert await directory.list_eligible_users() == []
        assert (await directory.get_account("u1")).plan_eligible is False

    def test_profile_stage_coerced(self):
        profile = FarmProfile(location="x", crop_stage="Fruiting")
        assert profile.crop_stage == CropStage.FRUITING
        assert FarmProfile(crop_stage="bogus").crop_stage == CropStage.VEGETATIVE_GROWTH


class TestActivityLog:
    @pytest.mark.asyncio
    async def test_recent_activities_window_newest_first(self, clock):
        directory = InMemoryFarmDirectory([_make_account("u1")], clock=clock)
        for days_ago, kind in [(1, "irrigation"), (5, "pruning"), (10, "planting"), (-1, "harvest")]:
            directory.record_activity(
                "u1", ActivityEvent(event_type=kind, occurred_on=TODAY - timedelta(days=days_ago))
            )
        events = await directory.recent_activities("u1", since_days=7)
        assert [e.event_type for e in events] == [ActivityType.IRRIGATION, ActivityType.PRUNING]

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_activities(self, clock):
        directory = InMemoryFarmDirectory(clock=clock)
        assert await directory.recent_activities("ghost", 7) == []

    def test_unknown_event_type_becomes_other(self):
        event = ActivityEvent(event_type="mulching", occurred_on=TODAY)
        assert event.event_type == ActivityType.OTHER


class TestSeedFile:
    @pytest.mark.asyncio
    async def test_from_file(self, tmp_path, clock):
        seed = {
            "farms": [
                {
                    "user_id": "u1",
                    "phone": "+5511999990000",
                    "farm": {"location": "Campinas, SP", "crop_type": "coffee", "crop_stage": "Flowering"},
                    "activities": [
                        {"event_type": "spraying", "occurred_on": (TODAY - timedelta(days=2)).isoformat()}
                    ],
                },
                {"user_id": "u2", "plan_eligible": False},
            ]
        }
        path = tmp_path / "farms.json"
        path.write_text(json.dumps(seed), encoding="utf-8")

        directory = InMemoryFarmDirectory.from_file(path, clock=clock)
        [account] = await directory.list_eligible_users()
        assert account.user_id == "u1"
        assert account.farm.crop_stage == CropStage.FLOWERING
        [event] = await directory.recent_activities("u1", 7)
        assert event.event_type == ActivityType.SPRAYING

    @pytest.mark.asyncio
    async def test_example_seed_loads(self, clock):
        path = Path(__file__).resolve().parents[2] / "farms.example.json"
        directory = InMemoryFarmDirectory.from_file(path, clock=clock)
        users = await directory.list_eligible_users()
        assert [u.user_id for u in users] == ["demo-coffee", "demo-grapes"]
        assert (await directory.get_account("demo-soy")).plan_eligible is False
