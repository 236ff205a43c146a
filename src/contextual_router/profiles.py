"""
Profile Store: per-user tier, role, preferences and routing history.

This module provides:
- The ``ProfileStore`` interface the engine depends on
- ``InMemoryProfileStore``, a process-local implementation

Key Features:
- Read-modify-write of one user record is atomic (per-user asyncio lock)
- Different users never contend for the same lock
- Lock waits are bounded; expiry raises ``ProfileStoreUnavailable``
- Callers receive copies, never the stored objects
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import ProfileNotFound, ProfileStoreUnavailable
from .locking import KeyedLocks
from .models import UserPreferences, UserProfile, UserRole, UserTier, utc_now
from .utils import get_config

# Intents kept per profile for reporting
COMMON_INTENTS_SIZE = 50


class ProfileStore(ABC):
    """Storage contract for user profiles."""

    @abstractmethod
    async def get(self, user_id: str) -> UserProfile:
        """Return the profile or raise ``ProfileNotFound``."""

    @abstractmethod
    async def get_or_create(self, user_id: str, defaults: Optional[Dict[str, Any]] = None) -> UserProfile:
        """Return the profile, creating it with ``defaults`` on first sight."""

    @abstractmethod
    async def record_outcome(
        self,
        user_id: str,
        agent: str,
        success: bool,
        satisfaction: Optional[float] = None,
        intent: Optional[str] = None
    ) -> UserProfile:
        """Atomically count one routing outcome for ``agent``."""

    @abstractmethod
    async def update_identity(
        self,
        user_id: str,
        tier: Optional[UserTier] = None,
        role: Optional[UserRole] = None,
        permissions: Optional[List[str]] = None,
        preferences: Optional[UserPreferences] = None
    ) -> UserProfile:
        """Change identity attributes; history is left untouched."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored profiles."""


class InMemoryProfileStore(ProfileStore):
    """Process-local profile store with per-user locking."""

    def __init__(self, satisfaction_history_size: Optional[int] = None, lock_timeout: Optional[float] = None):
        config = get_config()
        self.satisfaction_history_size = satisfaction_history_size or config["SATISFACTION_HISTORY_SIZE"]
        self._profiles: Dict[str, UserProfile] = {}
        self._locks = KeyedLocks(
            timeout=lock_timeout or config["STORE_LOCK_TIMEOUT_SECONDS"],
            error_cls=ProfileStoreUnavailable
        )

    def _create(self, user_id: str, defaults: Optional[Dict[str, Any]]) -> UserProfile:
        data = dict(defaults or {})
        data.pop("history", None)  # history only ever comes from feedback
        data["id"] = user_id
        try:
            profile = UserProfile(**data)
        except ValueError as e:
            logger.warning("Ignoring invalid profile hints", user_id=user_id, error=str(e))
            profile = UserProfile(id=user_id)
        self._profiles[user_id] = profile
        logger.info("Created user profile", user_id=user_id, tier=profile.tier.value, role=profile.role.value)
        return profile

    async def get(self, user_id: str) -> UserProfile:
        async with self._locks.hold(user_id):
            profile = self._profiles.get(user_id)
            if profile is None:
                raise ProfileNotFound(f"Profile {user_id} not found", details={"user_id": user_id})
            return profile.model_copy(deep=True)

    async def get_or_create(self, user_id: str, defaults: Optional[Dict[str, Any]] = None) -> UserProfile:
        async with self._locks.hold(user_id):
            profile = self._profiles.get(user_id)
            if profile is None:
                profile = self._create(user_id, defaults)
            return profile.model_copy(deep=True)

    async def record_outcome(
        self,
        user_id: str,
        agent: str,
        success: bool,
        satisfaction: Optional[float] = None,
        intent: Optional[str] = None
    ) -> UserProfile:
        async with self._locks.hold(user_id):
            profile = self._profiles.get(user_id)
            if profile is None:
                profile = self._create(user_id, None)

            history = profile.history
            counters = history.successful_routes if success else history.failed_routes
            counters[agent] = counters.get(agent, 0) + 1

            if satisfaction is not None:
                history.satisfaction_scores.append(float(satisfaction))
                del history.satisfaction_scores[:-self.satisfaction_history_size]

            if intent:
                history.common_intents.append(intent)
                del history.common_intents[:-COMMON_INTENTS_SIZE]

            profile.updated_at = utc_now()

            logger.info(
                "Recorded routing outcome",
                user_id=user_id,
                agent=agent,
                success=success,
                successes=history.success_count(agent),
                failures=history.failure_count(agent)
            )
            return profile.model_copy(deep=True)

    async def update_identity(
        self,
        user_id: str,
        tier: Optional[UserTier] = None,
        role: Optional[UserRole] = None,
        permissions: Optional[List[str]] = None,
        preferences: Optional[UserPreferences] = None
    ) -> UserProfile:
        async with self._locks.hold(user_id):
            profile = self._profiles.get(user_id)
            if profile is None:
                profile = self._create(user_id, None)

            if tier is not None:
                profile.tier = tier
            if role is not None:
                profile.role = role
            if permissions is not None:
                profile.permissions = list(permissions)
            if preferences is not None:
                profile.preferences = preferences.model_copy(deep=True)
            profile.updated_at = utc_now()

            logger.info("Updated profile identity", user_id=user_id, tier=profile.tier.value, role=profile.role.value)
            return profile.model_copy(deep=True)

    async def count(self) -> int:
        return len(self._profiles)
