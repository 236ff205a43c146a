"""
Routing engine: the single entry point that turns a message into a decision.

Pipeline for one request:
1. Validate input
2. Load (or create) the user profile and conversation context
3. Aggregate classifier and heuristic signals
4. Update the context's sentiment, urgency and active intent
5. Evaluate business rules
6. Build and score candidates
7. Record the message and pending action, store the decision

Requests for one session run this pipeline one at a time, in arrival order.

Usage:
    engine = get_routing_engine()
    decision = await engine.route("Our API sync keeps failing", "session_abc12345", "user_42")
    await engine.feedback.report(decision.decision_id, FeedbackOutcome.SUCCESS, satisfaction=4.5)
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import ValidationError

from .agents import AgentRegistry
from .classifiers import Classifier, build_classifiers
from .conversation import ContextStore, InMemoryContextStore
from .errors import ContextStoreUnavailable, InvalidRequest
from .feedback import DecisionLog, FeedbackLoop
from .locking import KeyedLocks
from .models import ConversationMessage, RouteRequest, RoutingDecision, RuleTable
from .profiles import InMemoryProfileStore, ProfileStore
from .rules import BusinessRuleEngine, RuleSource
from .scorer import DecisionScorer, ScoringFactors
from .signals import SignalAggregator
from .utils import get_config, sanitize_for_logging, Timer


class RoutingEngine:
    """Composes the stores, signal aggregator, rule engine and scorer."""

    def __init__(
        self,
        registry: Optional[AgentRegistry] = None,
        profiles: Optional[ProfileStore] = None,
        contexts: Optional[ContextStore] = None,
        classifiers: Optional[Sequence[Classifier]] = None,
        aggregator: Optional[SignalAggregator] = None,
        rules_source: RuleSource = None,
        scorer: Optional[DecisionScorer] = None,
        decisions: Optional[DecisionLog] = None,
        cleanup_interval_minutes: int = 60
    ):
        """
        Args:
            registry: Agents to route to (default agent table when omitted)
            profiles: Profile store (in-memory when omitted)
            contexts: Conversation context store (in-memory when omitted)
            classifiers: External classifiers; built from configuration when omitted
            aggregator: Pre-built signal aggregator, overrides ``classifiers``
            rules_source: Rule table, rule file path or dict; falls back to RULES_PATH
                then to the built-in table

        Raises:
            InvalidRuleConfig: If the rule table is invalid
            ConfigurationError: If scoring weights are invalid
        """
        config = get_config()
        self.registry = registry or AgentRegistry()
        self.profiles = profiles or InMemoryProfileStore()
        self.contexts = contexts or InMemoryContextStore()

        if aggregator is None:
            if classifiers is None:
                routes = {name: self.registry.get(name).route for name in self.registry.names()}
                classifiers = build_classifiers(config, routes)
            aggregator = SignalAggregator(classifiers=classifiers)
        self.aggregator = aggregator

        self.rules_source = rules_source if rules_source is not None else (config["RULES_PATH"] or None)
        self.rules = BusinessRuleEngine(self.registry, self.rules_source)
        self.scorer = scorer or DecisionScorer(self.registry)
        self.decisions = decisions or DecisionLog()
        self.feedback = FeedbackLoop(self.decisions, self.profiles, self.contexts)
        # A queued request waits for at most one in-flight pipeline
        self._session_locks = KeyedLocks(
            timeout=config["STORE_LOCK_TIMEOUT_SECONDS"] + self.aggregator.deadline,
            error_cls=ContextStoreUnavailable
        )

        self.cleanup_interval_minutes = cleanup_interval_minutes
        self._cleanup_task: Optional[asyncio.Task] = None

        logger.info(
            "RoutingEngine initialized",
            agents=len(self.registry),
            rule_table_version=self.rules.version,
            classifier_sources=[c.name for c in self.aggregator.classifiers]
        )

    @staticmethod
    def _validate(message: str, session_id: str, user_id: str, extra: Optional[Dict[str, Any]]) -> RouteRequest:
        try:
            return RouteRequest(message=message, session_id=session_id, user_id=user_id, extra=extra or {})
        except ValidationError as e:
            raise InvalidRequest(
                "Invalid routing request",
                details={"errors": [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]}
            ) from e

    async def route(
        self,
        message: str,
        session_id: str,
        user_id: str,
        extra: Optional[Dict[str, Any]] = None
    ) -> RoutingDecision:
        """
        Route one user message.

        Args:
            message: User message (1-4000 characters)
            session_id: Conversation session id
            user_id: User id
            extra: Optional caller context: ``profile`` (creation hints),
                ``availability`` (agent -> readiness overrides),
                ``authenticated`` (bool)

        Returns:
            RoutingDecision

        Raises:
            InvalidRequest: If the input is malformed
            NoCandidates: If no agent can take the request
            ServiceUnavailable: If a store could not be locked in time (retryable)
        """
        request = self._validate(message, session_id, user_id, extra)

        async with self._session_locks.hold(request.session_id):
            decision, rule_outcome, timer = await self._route_locked(request)

        logger.info(
            "Request routed",
            decision_id=decision.decision_id,
            session_id=request.session_id,
            user_id=request.user_id,
            message_preview=sanitize_for_logging(request.message, 80),
            primary_agent=decision.primary_agent,
            outcome=decision.outcome.value,
            applied_rule=rule_outcome.applied_rule,
            duration_ms=timer.duration_ms
        )
        return decision

    async def _route_locked(self, request: RouteRequest):
        extra = request.extra
        with Timer("route_request") as timer:
            profile_hints = extra.get("profile") if isinstance(extra.get("profile"), dict) else None
            profile = await self.profiles.get_or_create(request.user_id, profile_hints)
            context = await self.contexts.get_or_create(request.session_id, request.user_id)

            signals = await self.aggregator.analyze(request.message, profile, context)

            await self.contexts.record_signals(request.session_id, signals.sentiment, signals.urgency)
            if signals.intent and (
                context.active_intent is None or signals.intent_confidence >= context.intent_confidence
            ):
                await self.contexts.set_active_intent(request.session_id, signals.intent, signals.intent_confidence)
            context = await self.contexts.get(request.session_id)

            rule_outcome = self.rules.evaluate(context, profile, signals)
            candidates = self.scorer.build_candidates(rule_outcome)

            availability = extra.get("availability") if isinstance(extra.get("availability"), dict) else {}
            decision = self.scorer.score(candidates, ScoringFactors(
                profile=profile,
                context=context,
                signals=signals,
                rule_outcome=rule_outcome,
                availability=availability,
                authenticated=bool(extra.get("authenticated", False))
            ))

            await self.contexts.append_message(request.session_id, ConversationMessage(
                content=request.message,
                intent=signals.intent,
                entities=signals.entities,
                sentiment=signals.sentiment,
                handled_by=decision.primary_agent
            ))
            if decision.primary_agent is not None:
                pending = f"routed_to_{decision.primary_agent}"
            else:
                pending = "human_handoff"
            await self.contexts.add_pending_action(request.session_id, pending)

            await self.decisions.add(decision)

        return decision, rule_outcome, timer

    def reload_rules(self, source: RuleSource = None) -> RuleTable:
        """
        Reload the rule table from ``source`` or the configured location.

        Raises:
            InvalidRuleConfig: If the new table is invalid; the active table is kept
        """
        return self.rules.reload(source if source is not None else self.rules_source)

    async def health(self) -> Dict[str, Any]:
        """Sizes of the engine's stores and the active rule table."""
        return {
            "profiles": await self.profiles.count(),
            "sessions": await self.contexts.count(),
            "decisions": len(self.decisions),
            "rule_table_version": self.rules.version,
            "classifier_sources": [c.name for c in self.aggregator.classifiers],
        }

    def start(self) -> None:
        """Start periodic eviction of idle sessions on the running loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return

        async def cleanup_worker():
            while True:
                await asyncio.sleep(self.cleanup_interval_minutes * 60)
                try:
                    await self.contexts.cleanup_expired()
                except Exception as e:
                    logger.error("Session cleanup failed", error=str(e))

        self._cleanup_task = asyncio.get_running_loop().create_task(cleanup_worker())

    async def stop(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
        self._cleanup_task = None


# Global engine instance
_engine_instance: Optional[RoutingEngine] = None


def get_routing_engine() -> RoutingEngine:
    """Get the global routing engine instance, building it on first use."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = RoutingEngine()
    return _engine_instance


def reset_routing_engine() -> None:
    """Drop the global engine so the next access rebuilds it."""
    global _engine_instance
    _engine_instance = None


__all__: List[str] = [
    'RoutingEngine',
    'get_routing_engine',
    'reset_routing_engine'
]
