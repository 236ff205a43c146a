"""
Contextual Routing Engine
Routes support requests to the best-suited agent using user profile,
conversation history, business rules and classifier signals
"""

__version__ = "1.0.0"

# Routing engine entry point
from .engine import (
    RoutingEngine,
    get_routing_engine,
    reset_routing_engine
)

# Stores
from .profiles import ProfileStore, InMemoryProfileStore
from .conversation import ContextStore, InMemoryContextStore

# Signals and classifiers
from .classifiers import (
    Classifier,
    KeywordClassifier,
    LLMClassifier,
    HTTPClassifier,
    build_classifiers
)
from .signals import SignalAggregator, PatternTable, COMPLEXITY_RULES

# Rules, scoring and feedback
from .rules import BusinessRuleEngine, DEFAULT_RULE_TABLE, compile_rule_table, read_rule_table
from .scorer import DecisionScorer, ScoringFactors, ScoringWeights
from .feedback import DecisionLog, FeedbackLoop
from .agents import AgentRegistry, AgentSpec, DEFAULT_AGENTS

from .errors import (
    ErrorKind, RoutingEngineError, ClassifierError, ClassifierTimeout, NoCandidates,
    InvalidRuleConfig, ServiceUnavailable, ProfileStoreUnavailable, ContextStoreUnavailable,
    DuplicateFeedback, DecisionNotFound, ProfileNotFound, SessionNotFound, InvalidRequest
)
from .models import (
    UserTier, UserRole, UserProfile, UserPreferences, RoutingHistory,
    ConversationMessage, ConversationContext, BusinessRule, RuleCondition, RuleTable,
    RuleAction, RuleOutcome, ClassifierResult, SignalSet, RoutingCandidate,
    RoutingDecision, RecommendedApproach, RouteOutcome, FeedbackOutcome, FeedbackAck
)
from .utils import initialize_app, get_config, ConfigurationError

__all__ = [
    # Engine
    "RoutingEngine",
    "get_routing_engine",
    "reset_routing_engine",

    # Stores
    "ProfileStore",
    "InMemoryProfileStore",
    "ContextStore",
    "InMemoryContextStore",

    # Signals
    "Classifier",
    "KeywordClassifier",
    "LLMClassifier",
    "HTTPClassifier",
    "build_classifiers",
    "SignalAggregator",
    "PatternTable",
    "COMPLEXITY_RULES",

    # Rules, scoring, feedback
    "BusinessRuleEngine",
    "DEFAULT_RULE_TABLE",
    "compile_rule_table",
    "read_rule_table",
    "DecisionScorer",
    "ScoringFactors",
    "ScoringWeights",
    "DecisionLog",
    "FeedbackLoop",
    "AgentRegistry",
    "AgentSpec",
    "DEFAULT_AGENTS",

    # Errors
    "ErrorKind",
    "RoutingEngineError",
    "ClassifierError",
    "ClassifierTimeout",
    "NoCandidates",
    "InvalidRuleConfig",
    "ServiceUnavailable",
    "ProfileStoreUnavailable",
    "ContextStoreUnavailable",
    "DuplicateFeedback",
    "DecisionNotFound",
    "ProfileNotFound",
    "SessionNotFound",
    "InvalidRequest",

    # Models and utils
    "UserTier",
    "UserRole",
    "UserProfile",
    "UserPreferences",
    "RoutingHistory",
    "ConversationMessage",
    "ConversationContext",
    "BusinessRule",
    "RuleCondition",
    "RuleTable",
    "RuleAction",
    "RuleOutcome",
    "ClassifierResult",
    "SignalSet",
    "RoutingCandidate",
    "RoutingDecision",
    "RecommendedApproach",
    "RouteOutcome",
    "FeedbackOutcome",
    "FeedbackAck",
    "initialize_app",
    "get_config",
    "ConfigurationError"
]
