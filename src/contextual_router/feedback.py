"""
Feedback loop: routing outcomes flow back into profiles and sessions.

This module provides:
- ``DecisionLog``: bounded, lock-protected log of recent decisions
- ``FeedbackLoop``: applies one outcome report per decision

Key Features:
- Reports are idempotent per decision id (check-and-mark under one lock)
- Success lowers the session escalation level by one (floor 0), failure raises it
- Oldest decisions are evicted once the log reaches its capacity
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .conversation import ContextStore
from .errors import DecisionNotFound, DuplicateFeedback, ServiceUnavailable, SessionNotFound
from .models import FeedbackAck, FeedbackOutcome, RoutingDecision
from .profiles import ProfileStore
from .utils import get_config


@dataclass
class DecisionLogMetrics:
    """Counters tracked by the decision log."""
    stored: int = 0
    evicted: int = 0
    reports: int = 0
    duplicate_reports: int = 0


class DecisionLog:
    """Most recent decisions by id, plus which of them were already reported."""

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size or get_config()["DECISION_LOG_SIZE"]
        self._decisions: "OrderedDict[str, RoutingDecision]" = OrderedDict()
        self._reported: set = set()
        self._lock = asyncio.Lock()
        self.metrics = DecisionLogMetrics()

    async def add(self, decision: RoutingDecision) -> None:
        async with self._lock:
            self._decisions[decision.decision_id] = decision
            self.metrics.stored += 1
            while len(self._decisions) > self.max_size:
                evicted_id, _ = self._decisions.popitem(last=False)
                self._reported.discard(evicted_id)
                self.metrics.evicted += 1

    async def get(self, decision_id: str) -> RoutingDecision:
        async with self._lock:
            decision = self._decisions.get(decision_id)
        if decision is None:
            raise DecisionNotFound(f"Decision {decision_id} not found", details={"decision_id": decision_id})
        return decision

    async def mark_reported(self, decision_id: str) -> RoutingDecision:
        """
        Atomically flag a decision as reported.

        Raises:
            DecisionNotFound: If the decision is unknown or was evicted
            DuplicateFeedback: If the decision was already reported
        """
        async with self._lock:
            decision = self._decisions.get(decision_id)
            if decision is None:
                raise DecisionNotFound(f"Decision {decision_id} not found", details={"decision_id": decision_id})
            if decision_id in self._reported:
                self.metrics.duplicate_reports += 1
                raise DuplicateFeedback(
                    f"Feedback for decision {decision_id} was already recorded",
                    details={"decision_id": decision_id}
                )
            self._reported.add(decision_id)
            self.metrics.reports += 1
            return decision

    async def unmark_reported(self, decision_id: str) -> None:
        """Clear the reported flag so a failed report can be retried."""
        async with self._lock:
            if decision_id in self._reported:
                self._reported.discard(decision_id)
                self.metrics.reports -= 1

    def __len__(self) -> int:
        return len(self._decisions)


class FeedbackLoop:
    """Applies reported outcomes to the profile and context stores."""

    def __init__(self, decisions: DecisionLog, profiles: ProfileStore, contexts: ContextStore):
        self.decisions = decisions
        self.profiles = profiles
        self.contexts = contexts

    async def report(
        self,
        decision_id: str,
        outcome: FeedbackOutcome,
        satisfaction: Optional[float] = None
    ) -> FeedbackAck:
        """
        Record the outcome of a routing decision.

        Args:
            decision_id: Id returned with the decision
            outcome: success or failure
            satisfaction: Optional user satisfaction score (0-5)

        Returns:
            FeedbackAck; ``duplicate=True`` when the decision was already reported

        Raises:
            DecisionNotFound: If the decision is unknown
            ProfileStoreUnavailable: If the profile could not be updated in time;
                the report is not counted and may be retried
        """
        try:
            decision = await self.decisions.mark_reported(decision_id)
        except DuplicateFeedback as e:
            logger.warning("Duplicate feedback ignored", decision_id=decision_id, error=e.message)
            decision = await self.decisions.get(decision_id)
            return FeedbackAck(
                decision_id=decision_id,
                accepted=False,
                duplicate=True,
                agent=decision.primary_agent
            )

        success = outcome == FeedbackOutcome.SUCCESS

        if decision.primary_agent is not None:
            try:
                await self.profiles.record_outcome(
                    decision.user_id,
                    decision.primary_agent,
                    success,
                    satisfaction=satisfaction,
                    intent=decision.intent
                )
            except ServiceUnavailable:
                await self.decisions.unmark_reported(decision_id)
                raise

        escalation_level = None
        try:
            context = await self.contexts.adjust_escalation(decision.session_id, -1 if success else 1)
            escalation_level = context.escalation_level
        except SessionNotFound:
            logger.info(
                "Session expired before feedback, escalation unchanged",
                decision_id=decision_id,
                session_id=decision.session_id
            )

        logger.info(
            "Feedback recorded",
            decision_id=decision_id,
            agent=decision.primary_agent,
            outcome=outcome.value,
            satisfaction=satisfaction,
            escalation_level=escalation_level
        )

        return FeedbackAck(
            decision_id=decision_id,
            accepted=True,
            duplicate=False,
            agent=decision.primary_agent,
            escalation_level=escalation_level
        )
