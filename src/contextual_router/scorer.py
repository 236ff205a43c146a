"""
Decision scorer: candidate agents -> one RoutingDecision.

Each candidate gets five factor scores in [0, 1] combined by configured
weights. The best composite wins unless a business rule mandates the
target, in which case scores are still computed and kept for audit.

Confidence, success probability, recommended approach and expected
resolution time are derived from the same inputs with fixed formulas so two
identical requests always produce identical decisions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from .agents import AgentRegistry
from .errors import NoCandidates
from .models import (
    CandidateFeatures, ComplexityLevel, ContextFactors, ConversationContext, ExpertiseLevel,
    HandlingStyle, RecommendedApproach, RouteOutcome, RoutingCandidate, RoutingDecision,
    RuleAction, RuleOutcome, SignalSet, UserProfile
)
from .utils import ConfigurationError, get_config

PREFERRED_AGENT_BONUS = 0.2
MULTI_AGENT_MARGIN = 0.05
DEGRADED_CONFIDENCE_FACTOR = 0.85
RULE_FORCED_CONFIDENCE = 0.9

FORCING_ACTIONS = (RuleAction.ROUTE_TO, RuleAction.ESCALATE, RuleAction.REDIRECT, RuleAction.REQUIRE_AUTH)

RESOLUTION_TIMES = {
    (RecommendedApproach.DIRECT, ComplexityLevel.LOW): "1-2 minutes",
    (RecommendedApproach.DIRECT, ComplexityLevel.MEDIUM): "2-5 minutes",
    (RecommendedApproach.DIRECT, ComplexityLevel.HIGH): "5-15 minutes",
}
APPROACH_RESOLUTION_TIMES = {
    RecommendedApproach.ESCALATE: "15-60 minutes",
    RecommendedApproach.MULTI_AGENT: "10-30 minutes",
    RecommendedApproach.HUMAN_HANDOFF: "1-4 hours",
}


class ScoringWeights(BaseModel):
    """Relative weight of each scoring factor; non-negative, summing to 1."""
    history: float = Field(default=0.25, ge=0.0)
    context: float = Field(default=0.25, ge=0.0)
    business: float = Field(default=0.20, ge=0.0)
    complexity: float = Field(default=0.15, ge=0.0)
    availability: float = Field(default=0.15, ge=0.0)

    @model_validator(mode="after")
    def check_sum(self):
        total = self.history + self.context + self.business + self.complexity + self.availability
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1, got {total:.4f}")
        return self

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ScoringWeights":
        """
        Raises:
            ConfigurationError: If the configured weights are negative or do not sum to 1
        """
        try:
            return cls(
                history=config["WEIGHT_HISTORY"],
                context=config["WEIGHT_CONTEXT"],
                business=config["WEIGHT_BUSINESS"],
                complexity=config["WEIGHT_COMPLEXITY"],
                availability=config["WEIGHT_AVAILABILITY"]
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid scoring weights: {e.errors()[0]['msg']}") from e


@dataclass
class ScoringFactors:
    """Everything known about one request at scoring time."""
    profile: UserProfile
    context: ConversationContext
    signals: SignalSet
    rule_outcome: RuleOutcome
    availability: Dict[str, float] = field(default_factory=dict)
    authenticated: bool = False


def _clamp(value: float) -> float:
    return round(min(1.0, max(0.0, value)), 4)


class DecisionScorer:
    """Scores candidates and assembles the routing decision."""

    def __init__(
        self,
        registry: AgentRegistry,
        weights: Optional[ScoringWeights] = None,
        business_baseline: Optional[float] = None,
        history_step: Optional[float] = None
    ):
        config = get_config()
        self.registry = registry
        self.weights = weights or ScoringWeights.from_config(config)
        self.business_baseline = config["BUSINESS_BASELINE"] if business_baseline is None else business_baseline
        self.history_step = config["HISTORY_STEP"] if history_step is None else history_step

        logger.info("DecisionScorer initialized", weights=self.weights.model_dump())

    def build_candidates(self, rule_outcome: RuleOutcome) -> List[RoutingCandidate]:
        """
        Routable registry agents plus the rule target, if any.

        Raises:
            NoCandidates: If there is nothing to route to
        """
        candidates = [RoutingCandidate(agent=spec.name, route=spec.route) for spec in self.registry.routable()]

        target = rule_outcome.target
        if target and all(c.agent != target for c in candidates):
            spec = self.registry.get(target)
            if spec is not None:
                candidates.append(RoutingCandidate(agent=spec.name, route=spec.route))

        if not candidates and rule_outcome.primary_action != RuleAction.BLOCK:
            raise NoCandidates("No agents are registered for routing")
        return candidates

    # Factor scores

    def history_score(self, agent: str, profile: UserProfile) -> float:
        score = profile.history.success_count(agent) * self.history_step
        if agent in profile.preferences.preferred_agents:
            score += PREFERRED_AGENT_BONUS
        return _clamp(score)

    def context_score(self, agent: str, context: ConversationContext, signals: SignalSet) -> float:
        score = 0.4 * signals.support_for(agent)

        spec = self.registry.get(agent)
        intent = context.active_intent or signals.intent
        if spec is not None and intent and intent in spec.intents:
            score += 0.3
        if context.last_handling_agent == agent:
            score += 0.1
        if context.escalation_level == 0:
            score += 0.2
        return _clamp(score)

    def business_score(self, agent: str, rule_outcome: RuleOutcome) -> float:
        if rule_outcome.target == agent:
            return 1.0
        return _clamp(self.business_baseline)

    def complexity_score(self, agent: str, profile: UserProfile, signals: SignalSet) -> float:
        expertise = profile.preferences.complexity_level
        if signals.complexity != ComplexityLevel.HIGH:
            return 0.7
        if expertise == ExpertiseLevel.ADVANCED:
            return 1.0
        if expertise == ExpertiseLevel.BASIC:
            spec = self.registry.get(agent)
            terse = spec is not None and spec.handling_style == HandlingStyle.TERSE
            return 0.2 if terse else 0.6
        return 0.7

    def evaluate_candidate(self, candidate: RoutingCandidate, factors: ScoringFactors) -> RoutingCandidate:
        agent = candidate.agent
        features = CandidateFeatures(
            history_score=self.history_score(agent, factors.profile),
            context_score=self.context_score(agent, factors.context, factors.signals),
            business_score=self.business_score(agent, factors.rule_outcome),
            complexity_score=self.complexity_score(agent, factors.profile, factors.signals),
            availability_score=_clamp(self.registry.availability(agent, factors.availability))
        )
        w = self.weights
        composite = (
            w.history * features.history_score
            + w.context * features.context_score
            + w.business * features.business_score
            + w.complexity * features.complexity_score
            + w.availability * features.availability_score
        )

        reasoning = []
        if features.availability_score == 0.0:
            reasoning.append(f"{agent} is unavailable")
        if features.business_score == 1.0:
            reasoning.append(f"{agent} is mandated by business rule {factors.rule_outcome.applied_rule}")

        return candidate.model_copy(update={
            "features": features,
            "score": _clamp(composite),
            "reasoning": reasoning
        })

    # Decision assembly

    def _approach(
        self,
        action: Optional[RuleAction],
        primary: RoutingCandidate,
        runner_up: Optional[RoutingCandidate],
        signals: SignalSet
    ) -> RecommendedApproach:
        spec = self.registry.get(primary.agent)
        if spec is not None and spec.human:
            return RecommendedApproach.HUMAN_HANDOFF
        if action == RuleAction.ESCALATE:
            return RecommendedApproach.ESCALATE
        if (signals.complexity == ComplexityLevel.HIGH and runner_up is not None
                and primary.score - runner_up.score <= MULTI_AGENT_MARGIN):
            return RecommendedApproach.MULTI_AGENT
        return RecommendedApproach.DIRECT

    @staticmethod
    def resolution_time(approach: RecommendedApproach, complexity: ComplexityLevel) -> str:
        if approach == RecommendedApproach.DIRECT:
            return RESOLUTION_TIMES[(approach, complexity)]
        return APPROACH_RESOLUTION_TIMES[approach]

    def _confidence(self, primary: RoutingCandidate, signals: SignalSet, forced: bool) -> float:
        confidence = 0.6 * primary.score + 0.4 * signals.support_for(primary.agent)
        if signals.degraded:
            confidence *= DEGRADED_CONFIDENCE_FACTOR
        if forced:
            confidence = max(confidence, RULE_FORCED_CONFIDENCE)
        return _clamp(confidence)

    @staticmethod
    def _success_probability(primary: RoutingCandidate, profile: UserProfile) -> float:
        successes = profile.history.success_count(primary.agent)
        failures = profile.history.failure_count(primary.agent)
        observed = (successes + 1) / (successes + failures + 2)
        return _clamp(0.5 * observed + 0.5 * primary.score)

    def _blocked(self, scored: List[RoutingCandidate], factors: ScoringFactors) -> RoutingDecision:
        rule_outcome = factors.rule_outcome
        reasoning = list(factors.signals.reasoning)
        reasoning.extend(rule_outcome.descriptions[:1])
        reasoning.append(f"Request blocked by business rule {rule_outcome.applied_rule}; handing off to a human")

        return RoutingDecision(
            outcome=RouteOutcome.BLOCKED,
            session_id=factors.context.session_id,
            user_id=factors.profile.id,
            primary_agent=None,
            primary_route=None,
            fallback_agents=[],
            confidence=RULE_FORCED_CONFIDENCE,
            reasoning=reasoning,
            context_factors=ContextFactors(business_rules=1.0),
            recommended_approach=RecommendedApproach.HUMAN_HANDOFF,
            expected_resolution_time=APPROACH_RESOLUTION_TIMES[RecommendedApproach.HUMAN_HANDOFF],
            success_probability=0.5,
            requires_authentication=False,
            intent=factors.signals.intent,
            rule_outcome=rule_outcome,
            signals=factors.signals,
            candidates=scored
        )

    def score(self, candidates: List[RoutingCandidate], factors: ScoringFactors) -> RoutingDecision:
        """
        Score candidates and produce the decision.

        Args:
            candidates: Agents to consider (see ``build_candidates``)
            factors: Profile, context, signals and rule outcome of the request

        Returns:
            RoutingDecision; ``primary_agent`` is None only for blocked requests

        Raises:
            NoCandidates: If no available agent remains
        """
        rule_outcome = factors.rule_outcome
        action = rule_outcome.primary_action

        scored = [self.evaluate_candidate(c, factors) for c in candidates]
        scored.sort(key=lambda c: (-c.score, c.agent))

        if action == RuleAction.BLOCK:
            decision = self._blocked(scored, factors)
            logger.info("Routing blocked", decision_id=decision.decision_id, rule=rule_outcome.applied_rule)
            return decision

        forced = action in FORCING_ACTIONS and rule_outcome.target is not None
        if forced:
            primary = next((c for c in scored if c.agent == rule_outcome.target), None)
            if primary is None:
                raise NoCandidates(
                    f"Rule target {rule_outcome.target} is not among the candidates",
                    details={"rule_id": rule_outcome.applied_rule}
                )
        else:
            available = [c for c in scored if c.features.availability_score > 0.0]
            if not available:
                raise NoCandidates(
                    "No available agent can take the request",
                    details={"candidates": [c.agent for c in scored]}
                )
            primary = available[0]

        others = [c for c in scored if c.agent != primary.agent and c.features.availability_score > 0.0]
        runner_up = others[0] if others else None

        signals = factors.signals
        approach = self._approach(action, primary, runner_up, signals)
        requires_auth = action == RuleAction.REQUIRE_AUTH and not factors.authenticated

        if action == RuleAction.ESCALATE:
            outcome = RouteOutcome.ESCALATED
        elif action == RuleAction.REDIRECT:
            outcome = RouteOutcome.REDIRECTED
        else:
            outcome = RouteOutcome.ROUTED

        reasoning = list(signals.reasoning)
        if forced:
            reasoning.extend(rule_outcome.descriptions[:1])
            reasoning.append(
                f"{primary.agent} mandated by business rule {rule_outcome.applied_rule} "
                f"({action.value}); composite score {primary.score:.3f}"
            )
        else:
            reasoning.append(f"{primary.agent} selected with composite score {primary.score:.3f}")
        if requires_auth:
            reasoning.append("User authentication is required before handling")
        for candidate in scored:
            if candidate.features.availability_score == 0.0:
                reasoning.extend(candidate.reasoning[:1])

        features = primary.features
        decision = RoutingDecision(
            outcome=outcome,
            session_id=factors.context.session_id,
            user_id=factors.profile.id,
            primary_agent=primary.agent,
            primary_route=primary.route,
            fallback_agents=[c.agent for c in others],
            confidence=self._confidence(primary, signals, forced),
            reasoning=reasoning,
            context_factors=ContextFactors(
                user_history=features.history_score,
                conversation_flow=features.context_score,
                business_rules=features.business_score,
                technical_complexity=features.complexity_score,
                availability=features.availability_score
            ),
            recommended_approach=approach,
            expected_resolution_time=self.resolution_time(approach, signals.complexity),
            success_probability=self._success_probability(primary, factors.profile),
            requires_authentication=requires_auth,
            intent=signals.intent,
            rule_outcome=rule_outcome,
            signals=signals,
            candidates=scored
        )

        logger.info(
            "Routing decision scored",
            decision_id=decision.decision_id,
            primary_agent=decision.primary_agent,
            outcome=decision.outcome.value,
            confidence=decision.confidence,
            approach=decision.recommended_approach.value,
            fallback_count=len(decision.fallback_agents)
        )
        return decision
