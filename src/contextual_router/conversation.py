"""
Conversation Context Store: per-session history and live conversation state.

This module provides:
- The ``ContextStore`` interface the engine depends on
- ``InMemoryContextStore``, a process-local implementation

Key Features:
- Mutations of one session are serialized in arrival order (FIFO lock)
- Different sessions never block each other
- Lock waits are bounded; expiry raises ``ContextStoreUnavailable``
- TTL based eviction of idle sessions
"""

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, List, Optional

from loguru import logger

from .errors import ContextStoreUnavailable, SessionNotFound
from .locking import KeyedLocks
from .models import ConversationContext, ConversationMessage, Sentiment, Urgency, utc_now
from .utils import get_config

PENDING_ACTIONS_SIZE = 50


class ContextStore(ABC):
    """Storage contract for conversation contexts."""

    @abstractmethod
    async def get(self, session_id: str) -> ConversationContext:
        """Return the context or raise ``SessionNotFound``."""

    @abstractmethod
    async def get_or_create(self, session_id: str, user_id: Optional[str] = None) -> ConversationContext:
        """Return the context, creating an empty one on first sight."""

    @abstractmethod
    async def append_message(self, session_id: str, message: ConversationMessage) -> ConversationContext:
        """Append an immutable message to the session history."""

    @abstractmethod
    async def set_active_intent(self, session_id: str, intent: Optional[str], confidence: float) -> ConversationContext:
        """Set the session's active intent and its confidence."""

    @abstractmethod
    async def adjust_escalation(self, session_id: str, delta: int) -> ConversationContext:
        """Shift the escalation level by ``delta``, never below 0; ``SessionNotFound`` if unknown."""

    @abstractmethod
    async def record_signals(self, session_id: str, sentiment: Sentiment, urgency: Urgency) -> ConversationContext:
        """Store the latest sentiment; raise the stored urgency if ``urgency`` is higher."""

    @abstractmethod
    async def add_pending_action(self, session_id: str, action: str) -> ConversationContext:
        """Append an action awaiting completion."""

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Evict idle sessions; return how many were removed."""

    @abstractmethod
    async def count(self) -> int:
        """Number of live sessions."""


class InMemoryContextStore(ContextStore):
    """Process-local context store with per-session locking."""

    def __init__(self, context_ttl_hours: Optional[int] = None, lock_timeout: Optional[float] = None):
        config = get_config()
        self.context_ttl = timedelta(hours=context_ttl_hours or config["CONTEXT_TTL_HOURS"])
        self._contexts: Dict[str, ConversationContext] = {}
        self._locks = KeyedLocks(
            timeout=lock_timeout or config["STORE_LOCK_TIMEOUT_SECONDS"],
            error_cls=ContextStoreUnavailable
        )

    def _require(self, session_id: str) -> ConversationContext:
        context = self._contexts.get(session_id)
        if context is None:
            raise SessionNotFound(f"Session {session_id} not found", details={"session_id": session_id})
        return context

    def _ensure(self, session_id: str, user_id: Optional[str] = None) -> ConversationContext:
        context = self._contexts.get(session_id)
        if context is None:
            context = ConversationContext(session_id=session_id, user_id=user_id)
            self._contexts[session_id] = context
            logger.info("Created conversation context", session_id=session_id, user_id=user_id)
        return context

    @staticmethod
    def _touch(context: ConversationContext) -> ConversationContext:
        context.last_active = utc_now()
        return context.model_copy(deep=True)

    async def get(self, session_id: str) -> ConversationContext:
        async with self._locks.hold(session_id):
            return self._require(session_id).model_copy(deep=True)

    async def get_or_create(self, session_id: str, user_id: Optional[str] = None) -> ConversationContext:
        async with self._locks.hold(session_id):
            context = self._ensure(session_id, user_id)
            if context.user_id is None and user_id:
                context.user_id = user_id
            return self._touch(context)

    async def append_message(self, session_id: str, message: ConversationMessage) -> ConversationContext:
        async with self._locks.hold(session_id):
            context = self._ensure(session_id)
            context.messages.append(message)
            return self._touch(context)

    async def set_active_intent(self, session_id: str, intent: Optional[str], confidence: float) -> ConversationContext:
        async with self._locks.hold(session_id):
            context = self._ensure(session_id)
            context.active_intent = intent
            context.intent_confidence = min(1.0, max(0.0, confidence))
            return self._touch(context)

    async def adjust_escalation(self, session_id: str, delta: int) -> ConversationContext:
        async with self._locks.hold(session_id):
            context = self._require(session_id)
            previous = context.escalation_level
            context.escalation_level = max(0, previous + delta)
            logger.info(
                "Adjusted escalation level",
                session_id=session_id,
                previous=previous,
                current=context.escalation_level
            )
            return self._touch(context)

    async def record_signals(self, session_id: str, sentiment: Sentiment, urgency: Urgency) -> ConversationContext:
        async with self._locks.hold(session_id):
            context = self._ensure(session_id)
            context.sentiment = sentiment
            # Urgency only rises within a session
            context.urgency = max(context.urgency, urgency)
            return self._touch(context)

    async def add_pending_action(self, session_id: str, action: str) -> ConversationContext:
        async with self._locks.hold(session_id):
            context = self._ensure(session_id)
            context.pending_actions.append(action)
            del context.pending_actions[:-PENDING_ACTIONS_SIZE]
            return self._touch(context)

    async def cleanup_expired(self) -> int:
        cutoff_time = utc_now() - self.context_ttl
        expired: List[str] = [
            session_id for session_id, context in self._contexts.items()
            if context.last_active < cutoff_time
        ]

        removed_count = 0
        for session_id in expired:
            async with self._locks.hold(session_id):
                context = self._contexts.get(session_id)
                if context is not None and context.last_active < cutoff_time:
                    del self._contexts[session_id]
                    removed_count += 1

        if removed_count:
            logger.info("Evicted idle conversation contexts", removed=removed_count)
        return removed_count

    async def count(self) -> int:
        return len(self._contexts)
