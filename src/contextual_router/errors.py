"""
Error taxonomy for the routing engine.

Every error carries an ``ErrorKind`` so callers can branch on it without
parsing messages. Recoverable classifier failures never reach the caller;
they are recorded on the SignalSet instead.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Stable error codes surfaced to callers."""
    CLASSIFIER_TIMEOUT = "classifier_timeout"
    CLASSIFIER_ERROR = "classifier_error"
    NO_CANDIDATES = "no_candidates"
    INVALID_RULE_CONFIG = "invalid_rule_config"
    SERVICE_UNAVAILABLE = "service_unavailable"
    PROFILE_STORE_UNAVAILABLE = "profile_store_unavailable"
    CONTEXT_STORE_UNAVAILABLE = "context_store_unavailable"
    DUPLICATE_FEEDBACK = "duplicate_feedback"
    DECISION_NOT_FOUND = "decision_not_found"
    PROFILE_NOT_FOUND = "profile_not_found"
    SESSION_NOT_FOUND = "session_not_found"
    INVALID_REQUEST = "invalid_request"


class RoutingEngineError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.SERVICE_UNAVAILABLE
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ClassifierError(RoutingEngineError):
    """An external classifier failed or returned an unusable answer."""
    kind = ErrorKind.CLASSIFIER_ERROR


class ClassifierTimeout(ClassifierError):
    """An external classifier did not answer within its timeout."""
    kind = ErrorKind.CLASSIFIER_TIMEOUT


class NoCandidates(RoutingEngineError):
    """No agent is available to receive the request."""
    kind = ErrorKind.NO_CANDIDATES


class InvalidRuleConfig(RoutingEngineError):
    """The business rule table failed validation."""
    kind = ErrorKind.INVALID_RULE_CONFIG


class ServiceUnavailable(RoutingEngineError):
    """A backing store could not serve the request in time; retry with backoff."""
    kind = ErrorKind.SERVICE_UNAVAILABLE
    retryable = True


class ProfileStoreUnavailable(ServiceUnavailable):
    kind = ErrorKind.PROFILE_STORE_UNAVAILABLE


class ContextStoreUnavailable(ServiceUnavailable):
    kind = ErrorKind.CONTEXT_STORE_UNAVAILABLE


class DuplicateFeedback(RoutingEngineError):
    """Feedback for this decision was already recorded."""
    kind = ErrorKind.DUPLICATE_FEEDBACK


class DecisionNotFound(RoutingEngineError):
    kind = ErrorKind.DECISION_NOT_FOUND


class ProfileNotFound(RoutingEngineError):
    kind = ErrorKind.PROFILE_NOT_FOUND


class SessionNotFound(RoutingEngineError):
    kind = ErrorKind.SESSION_NOT_FOUND


class InvalidRequest(RoutingEngineError):
    kind = ErrorKind.INVALID_REQUEST
