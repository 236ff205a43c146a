"""Tests for the profile store."""

import asyncio

import pytest

from contextual_router.errors import ErrorKind, ProfileNotFound, ProfileStoreUnavailable
from contextual_router.models import ExpertiseLevel, UserPreferences, UserRole, UserTier
from contextual_router.profiles import InMemoryProfileStore


class TestProfileLookup:

    async def test_get_unknown_user_raises(self, profile_store):
        with pytest.raises(ProfileNotFound) as exc_info:
            await profile_store.get("user_missing")
        assert exc_info.value.kind == ErrorKind.PROFILE_NOT_FOUND

    async def test_get_or_create_uses_defaults(self, profile_store):
        profile = await profile_store.get_or_create("user_1")

        assert profile.tier == UserTier.PRO
        assert profile.role == UserRole.END_USER
        assert profile.permissions == ["basic_access"]
        assert profile.preferences.complexity_level == ExpertiseLevel.INTERMEDIATE
        assert profile.history.successful_routes == {}

    async def test_get_or_create_applies_hints_once(self, profile_store):
        created = await profile_store.get_or_create("user_1", {"tier": "Enterprise", "role": "Developer"})
        again = await profile_store.get_or_create("user_1", {"tier": "Free"})

        assert created.tier == UserTier.ENTERPRISE
        assert again.tier == UserTier.ENTERPRISE
        assert again.role == UserRole.DEVELOPER

    async def test_invalid_hints_fall_back_to_defaults(self, profile_store):
        profile = await profile_store.get_or_create("user_1", {"tier": "Platinum"})
        assert profile.tier == UserTier.PRO

    async def test_history_hints_are_ignored(self, profile_store):
        profile = await profile_store.get_or_create(
            "user_1", {"history": {"successful_routes": {"TriageAgent": 99}}}
        )
        assert profile.history.success_count("TriageAgent") == 0

    async def test_returned_profiles_are_copies(self, profile_store):
        profile = await profile_store.get_or_create("user_1")
        profile.permissions.append("admin")
        profile.history.successful_routes["TriageAgent"] = 10

        stored = await profile_store.get("user_1")
        assert stored.permissions == ["basic_access"]
        assert stored.history.success_count("TriageAgent") == 0


class TestRecordOutcome:

    async def test_success_and_failure_counters(self, profile_store):
        await profile_store.record_outcome("user_1", "TriageAgent", True, satisfaction=4.0, intent="support_request")
        await profile_store.record_outcome("user_1", "TriageAgent", False, satisfaction=1.0)
        profile = await profile_store.record_outcome("user_1", "TriageAgent", True)

        assert profile.history.success_count("TriageAgent") == 2
        assert profile.history.failure_count("TriageAgent") == 1
        assert profile.history.satisfaction_scores == [4.0, 1.0]
        assert profile.history.common_intents == ["support_request"]

    async def test_satisfaction_history_is_bounded(self):
        store = InMemoryProfileStore(satisfaction_history_size=3)
        for score in (1.0, 2.0, 3.0, 4.0, 5.0):
            await store.record_outcome("user_1", "TriageAgent", True, satisfaction=score)

        profile = await store.get("user_1")
        assert profile.history.satisfaction_scores == [3.0, 4.0, 5.0]

    async def test_concurrent_updates_are_not_lost(self, profile_store):
        await asyncio.gather(*[
            profile_store.record_outcome("user_1", "TriageAgent", True) for _ in range(50)
        ])

        profile = await profile_store.get("user_1")
        assert profile.history.success_count("TriageAgent") == 50

    async def test_update_identity_keeps_history(self, profile_store):
        await profile_store.record_outcome("user_1", "AuditAgent", True)
        profile = await profile_store.update_identity(
            "user_1",
            tier=UserTier.ENTERPRISE,
            preferences=UserPreferences(complexity_level=ExpertiseLevel.ADVANCED)
        )

        assert profile.tier == UserTier.ENTERPRISE
        assert profile.preferences.complexity_level == ExpertiseLevel.ADVANCED
        assert profile.history.success_count("AuditAgent") == 1


class TestLocking:

    async def test_lock_timeout_raises_retryable_error(self):
        store = InMemoryProfileStore(lock_timeout=0.05)
        await store.get_or_create("user_1")

        async with store._locks.hold("user_1"):
            with pytest.raises(ProfileStoreUnavailable) as exc_info:
                await store.get("user_1")

        assert exc_info.value.retryable is True
        assert exc_info.value.kind == ErrorKind.PROFILE_STORE_UNAVAILABLE

    async def test_other_users_are_not_blocked(self):
        store = InMemoryProfileStore(lock_timeout=0.05)
        await store.get_or_create("user_2")

        async with store._locks.hold("user_1"):
            profile = await store.get("user_2")

        assert profile.id == "user_2"
