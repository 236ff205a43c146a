"""
Pydantic data models for the Contextual Routing Engine.

This module defines all data structures used throughout the engine,
including user profiles, conversation state, business rules, classifier
signals, routing decisions and the request/response models of the HTTP API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import generate_id


# UTC datetime factory function
def utc_now():
    """Factory function to get current UTC datetime."""
    return datetime.now(timezone.utc)


class OrderedStrEnum(str, Enum):
    """String enum whose members compare by declaration order."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.rank >= other.rank

    def __hash__(self):
        return str.__hash__(self)


# Enums for controlled vocabulary
class UserTier(OrderedStrEnum):
    """Subscription tier, ordered Free < Pro < Enterprise."""
    FREE = "Free"
    PRO = "Pro"
    ENTERPRISE = "Enterprise"


class UserRole(str, Enum):
    END_USER = "End User"
    DEVELOPER = "Developer"
    ADMIN = "Admin"
    SUPPORT = "Support"


class CommunicationStyle(str, Enum):
    CASUAL = "casual"
    PROFESSIONAL = "professional"
    TECHNICAL = "technical"


class ExpertiseLevel(OrderedStrEnum):
    """User's stated expertise, used to match message complexity."""
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class ComplexityLevel(OrderedStrEnum):
    """Assessed message complexity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    FRUSTRATED = "frustrated"


class Urgency(OrderedStrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MessageSender(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class HandlingStyle(str, Enum):
    """How an agent phrases its answers; terse agents suit expert users."""
    TERSE = "terse"
    DETAILED = "detailed"


class RuleAction(str, Enum):
    ROUTE_TO = "route_to"
    ESCALATE = "escalate"
    REQUIRE_AUTH = "require_auth"
    BLOCK = "block"
    REDIRECT = "redirect"


class RecommendedApproach(str, Enum):
    DIRECT = "direct"
    ESCALATE = "escalate"
    MULTI_AGENT = "multi_agent"
    HUMAN_HANDOFF = "human_handoff"


class RouteOutcome(str, Enum):
    """Tagged kind of a produced decision."""
    ROUTED = "routed"
    ESCALATED = "escalated"
    REDIRECTED = "redirected"
    BLOCKED = "blocked"


class FeedbackOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# User profile models
class UserPreferences(BaseModel):
    """Communication and expertise preferences for a user."""
    communication_style: CommunicationStyle = Field(default=CommunicationStyle.PROFESSIONAL)
    complexity_level: ExpertiseLevel = Field(default=ExpertiseLevel.INTERMEDIATE)
    preferred_agents: List[str] = Field(default_factory=list)


class RoutingHistory(BaseModel):
    """Running tally of routing outcomes reported for a user."""
    successful_routes: Dict[str, int] = Field(default_factory=dict, description="agent -> success count")
    failed_routes: Dict[str, int] = Field(default_factory=dict, description="agent -> failure count")
    satisfaction_scores: List[float] = Field(default_factory=list, description="Most recent satisfaction scores")
    common_intents: List[str] = Field(default_factory=list, description="Intents of recently reported decisions")

    @field_validator('successful_routes', 'failed_routes')
    @classmethod
    def validate_counts(cls, v):
        for agent, count in v.items():
            if count < 0:
                raise ValueError(f'Route count for {agent} cannot be negative')
        return v

    def success_count(self, agent: str) -> int:
        return self.successful_routes.get(agent, 0)

    def failure_count(self, agent: str) -> int:
        return self.failed_routes.get(agent, 0)


class UserProfile(BaseModel):
    """Per-user identity, preferences and routing history."""
    id: str = Field(..., min_length=1, max_length=128, description="User identifier")
    tier: UserTier = Field(default=UserTier.PRO)
    role: UserRole = Field(default=UserRole.END_USER)
    permissions: List[str] = Field(default_factory=lambda: ["basic_access"])
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    history: RoutingHistory = Field(default_factory=RoutingHistory)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "user_john_doe",
            "tier": "Enterprise",
            "role": "Developer",
            "permissions": ["basic_access", "api_access"],
            "preferences": {
                "communication_style": "technical",
                "complexity_level": "advanced",
                "preferred_agents": ["MCPIntegrationAgent"]
            },
            "history": {
                "successful_routes": {"TriageAgent": 4},
                "failed_routes": {"ContentRouterAgent": 1},
                "satisfaction_scores": [4.0, 5.0],
                "common_intents": ["support_request"]
            }
        }
    })


# Conversation models
class ConversationMessage(BaseModel):
    """A single message in a conversation. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("msg"))
    content: str = Field(..., min_length=1, max_length=4000)
    sender: MessageSender = Field(default=MessageSender.USER)
    timestamp: datetime = Field(default_factory=utc_now)
    intent: Optional[str] = Field(None, description="Intent detected for this message")
    entities: Dict[str, str] = Field(default_factory=dict)
    sentiment: Sentiment = Field(default=Sentiment.NEUTRAL)
    handled_by: Optional[str] = Field(None, description="Agent the message was routed to")
    success: Optional[bool] = Field(None, description="Outcome, unknown until reported")


class ConversationContext(BaseModel):
    """Live state of one conversation session."""
    session_id: str = Field(..., min_length=1, max_length=128)
    user_id: Optional[str] = Field(None)
    messages: List[ConversationMessage] = Field(default_factory=list)
    active_intent: Optional[str] = Field(None)
    intent_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    current_workflow: Optional[str] = Field(None)
    pending_actions: List[str] = Field(default_factory=list)
    escalation_level: int = Field(default=0, ge=0)
    sentiment: Sentiment = Field(default=Sentiment.NEUTRAL)
    urgency: Urgency = Field(default=Urgency.MEDIUM)
    created_at: datetime = Field(default_factory=utc_now)
    last_active: datetime = Field(default_factory=utc_now)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_handling_agent(self) -> Optional[str]:
        """Agent that handled the most recent routed message, if any."""
        for message in reversed(self.messages):
            if message.handled_by:
                return message.handled_by
        return None


# Business rule models
class RuleCondition(BaseModel):
    """One declarative clause of a rule predicate, e.g. profile.tier eq Enterprise."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Dotted path rooted at context, profile or signals")
    op: str = Field(..., description="Comparison operator")
    value: Any = Field(None)


class BusinessRule(BaseModel):
    """Priority-ordered predicate -> action override."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    priority: int = Field(...)
    conditions: List[RuleCondition] = Field(default_factory=list)
    predicate: Optional[Callable[..., bool]] = Field(None, exclude=True, description="Programmatic predicate")
    action: RuleAction = Field(...)
    target: Optional[str] = Field(None)
    description: str = Field(default="")


class RuleTable(BaseModel):
    """Versioned, immutable set of business rules."""
    model_config = ConfigDict(frozen=True)

    version: str = Field(...)
    rules: List[BusinessRule] = Field(default_factory=list)


class RuleOutcome(BaseModel):
    """Result of evaluating the rule table for one request."""
    matched_rules: List[str] = Field(default_factory=list, description="Matching rule ids in applied order")
    applied_rule: Optional[str] = Field(None)
    primary_action: Optional[RuleAction] = Field(None)
    target: Optional[str] = Field(None)
    overrides_default: bool = Field(default=False)
    descriptions: List[str] = Field(default_factory=list)
    table_version: Optional[str] = Field(None)


# Classifier and signal models
class ClassifierResult(BaseModel):
    """Normalized answer of one classifier."""
    agent: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    intent: str = Field(...)
    source: str = Field(...)
    route: Optional[str] = Field(None)
    notes: str = Field(default="")


class SignalSet(BaseModel):
    """Aggregated classifier outputs and local heuristics for one message."""
    classifier_results: List[ClassifierResult] = Field(default_factory=list)
    local_patterns: List[str] = Field(default_factory=list)
    entities: Dict[str, str] = Field(default_factory=dict)
    sentiment: Sentiment = Field(default=Sentiment.NEUTRAL)
    urgency: Urgency = Field(default=Urgency.LOW)
    complexity: ComplexityLevel = Field(default=ComplexityLevel.LOW)
    complexity_reasons: List[str] = Field(default_factory=list)
    intent: Optional[str] = Field(None)
    intent_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    degraded: bool = Field(default=False)
    failed_sources: Dict[str, str] = Field(default_factory=dict, description="source -> error kind")
    reasoning: List[str] = Field(default_factory=list)

    def support_for(self, agent: str) -> float:
        """Highest confidence any classifier placed on ``agent``."""
        return max((r.confidence for r in self.classifier_results if r.agent == agent), default=0.0)


# Scoring and decision models
class CandidateFeatures(BaseModel):
    history_score: float = Field(default=0.0, ge=0.0, le=1.0)
    context_score: float = Field(default=0.0, ge=0.0, le=1.0)
    business_score: float = Field(default=0.0, ge=0.0, le=1.0)
    complexity_score: float = Field(default=0.0, ge=0.0, le=1.0)
    availability_score: float = Field(default=0.0, ge=0.0, le=1.0)


class RoutingCandidate(BaseModel):
    agent: str = Field(...)
    route: str = Field(...)
    features: CandidateFeatures = Field(default_factory=CandidateFeatures)
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: List[str] = Field(default_factory=list)


class ContextFactors(BaseModel):
    """Per-factor scores of the chosen candidate."""
    user_history: float = Field(default=0.0, ge=0.0, le=1.0)
    conversation_flow: float = Field(default=0.0, ge=0.0, le=1.0)
    business_rules: float = Field(default=0.0, ge=0.0, le=1.0)
    technical_complexity: float = Field(default=0.0, ge=0.0, le=1.0)
    availability: float = Field(default=0.0, ge=0.0, le=1.0)


class RoutingDecision(BaseModel):
    """The engine's output. Immutable once produced."""
    model_config = ConfigDict(frozen=True, json_schema_extra={
        "example": {
            "decision_id": "dec_8f14e45fceea167a",
            "outcome": "routed",
            "session_id": "session_abc123def456",
            "user_id": "user_john_doe",
            "primary_agent": "TriageAgent",
            "primary_route": "/triage",
            "fallback_agents": ["ContentRouterAgent", "GeneralSupportAgent"],
            "confidence": 0.78,
            "reasoning": ["TriageAgent selected with composite score 0.742"],
            "context_factors": {
                "user_history": 0.3,
                "conversation_flow": 0.88,
                "business_rules": 0.5,
                "technical_complexity": 0.7,
                "availability": 0.9
            },
            "recommended_approach": "direct",
            "expected_resolution_time": "2-5 minutes",
            "success_probability": 0.71,
            "requires_authentication": False
        }
    })

    decision_id: str = Field(default_factory=lambda: generate_id("dec"))
    outcome: RouteOutcome = Field(...)
    session_id: str = Field(...)
    user_id: str = Field(...)
    primary_agent: Optional[str] = Field(None, description="None only when the request was blocked")
    primary_route: Optional[str] = Field(None)
    fallback_agents: List[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: List[str] = Field(default_factory=list)
    context_factors: ContextFactors = Field(default_factory=ContextFactors)
    recommended_approach: RecommendedApproach = Field(...)
    expected_resolution_time: str = Field(...)
    success_probability: float = Field(..., ge=0.0, le=1.0)
    requires_authentication: bool = Field(default=False)
    intent: Optional[str] = Field(None)
    rule_outcome: RuleOutcome = Field(default_factory=RuleOutcome)
    signals: SignalSet = Field(default_factory=SignalSet)
    candidates: List[RoutingCandidate] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class FeedbackAck(BaseModel):
    decision_id: str = Field(...)
    accepted: bool = Field(...)
    duplicate: bool = Field(default=False)
    agent: Optional[str] = Field(None)
    escalation_level: Optional[int] = Field(None)


# API-specific models
_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{8,64}$')


class RouteRequest(BaseModel):
    """Request model for the route endpoint."""
    message: str = Field(..., max_length=4000, min_length=1, description="User message content")
    session_id: str = Field(..., description="Session identifier for conversation continuity")
    user_id: str = Field(..., min_length=1, max_length=128, description="User identifier")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Caller-supplied context")

    @field_validator('message')
    @classmethod
    def validate_message(cls, v):
        if not v or v.isspace():
            raise ValueError('Message cannot be empty or only whitespace')
        return v.strip()

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, v):
        if not _ID_PATTERN.match(v):
            raise ValueError('Session ID must be 8-64 alphanumeric characters with optional hyphens/underscores')
        return v

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "message": "Our Snowflake integration keeps failing with error E1042",
            "session_id": "session_abc123def456",
            "user_id": "user_john_doe",
            "extra": {"availability": {"TriageAgent": 0.6}}
        }
    })


class FeedbackRequest(BaseModel):
    """Request model for the feedback endpoint."""
    decision_id: str = Field(..., min_length=1)
    outcome: FeedbackOutcome = Field(...)
    satisfaction: Optional[float] = Field(None, ge=0.0, le=5.0, description="Satisfaction score on a 0-5 scale")


class ProfileUpdateRequest(BaseModel):
    """Admin update of a profile's identity attributes."""
    tier: Optional[UserTier] = None
    role: Optional[UserRole] = None
    permissions: Optional[List[str]] = None
    preferences: Optional[UserPreferences] = None


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error kind")
    message: str = Field(..., description="Human-readable error message")
    retryable: bool = Field(default=False)
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    request_id: Optional[str] = Field(None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="healthy | degraded | unhealthy")
    timestamp: str = Field(...)
    version: str = Field(default="1.0.0")
    rule_table_version: Optional[str] = Field(None)
    checks: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
