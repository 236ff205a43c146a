"""
Signal aggregation for routing decisions.

This module turns one user message into a ``SignalSet``:

CLASSIFIER FAN-OUT:
- Every configured classifier is called concurrently
- Each call runs under its own timeout; the fan-out under the decision deadline
- Failed or timed-out classifiers are excluded and recorded, not fatal
- When no classifier answers, the local keyword heuristic is used and the
  SignalSet is flagged ``degraded``

LOCAL HEURISTICS (explicit tables, no models):
- Named message patterns (human request, critical incident, repeated failure...)
- Entity extraction (components, agents, error codes, emails, URLs, versions)
- Sentiment and urgency assessment
- Complexity from an ordered rule table

Usage:
    aggregator = SignalAggregator(classifiers=[LLMClassifier(...)])
    signals = await aggregator.analyze(message, profile, context)
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from loguru import logger

from .classifiers import Classifier, KeywordClassifier
from .errors import ClassifierTimeout, ErrorKind, RoutingEngineError
from .models import (
    ClassifierResult, ComplexityLevel, ConversationContext, Sentiment,
    SignalSet, Urgency, UserProfile, UserTier
)
from .utils import get_config, sanitize_for_logging, Timer


def _words(*phrases: str) -> Pattern:
    """Case-insensitive word-boundary alternation of ``phrases``."""
    return re.compile(r'\b(?:' + '|'.join(re.escape(p) for p in phrases) + r')\b', re.IGNORECASE)


@dataclass
class PatternTable:
    """Pattern definitions for local message analysis."""

    CRITICAL_INCIDENT = _words(
        "production down", "data loss", "security breach", "system failure",
        "outage", "security incident", "data corruption"
    )

    URGENT = _words("urgent", "critical", "emergency", "immediately", "asap", "broken")

    HUMAN_REQUEST = _words(
        "talk to someone", "speak to human", "speak to a human", "connect me to support",
        "human help", "talk to agent", "talk to an agent", "real person", "speak to manager",
        "speak to a manager", "customer service"
    )

    REPEATED_FAILURE = _words(
        "still not working", "still broken", "tried everything", "nothing works",
        "doesn't help", "does not help", "same problem", "again"
    )

    GREETING = re.compile(r'^\s*(?:hi|hello|hey|greetings|good (?:morning|afternoon|evening))\b', re.IGNORECASE)

    QUESTION = re.compile(
        r'\?|\bhow\s+(?:do|can|to)\b|\bwhat\s+(?:is|are|does)\b|\bcan\s+(?:i|you|we)\b',
        re.IGNORECASE
    )

    MULTI_PART = re.compile(
        r'\band\s+(?:also|how|what|where|when|why|which)\b'
        r'|\b(?:furthermore|moreover|additionally|in addition)\b'
        r'|\b(?:step|part)\s+\d+\b',
        re.IGNORECASE
    )

    HIGH_COMPLEXITY_MARKERS = _words(
        "integration", "integrations", "mcp", "api", "migration", "migrate",
        "sso", "saml", "oauth", "webhook", "webhooks", "schema"
    )

    FRUSTRATED = _words(
        "frustrated", "frustrating", "fed up", "ridiculous", "unacceptable",
        "nothing works", "tried everything", "waste of time"
    )

    NEGATIVE = _words("angry", "broken", "terrible", "hate", "worst", "awful", "bad", "annoyed", "disappointed")

    POSITIVE = _words("great", "love", "excellent", "perfect", "amazing", "wonderful", "thanks", "thank you")

    ENTITY_PATTERNS = {
        "component": re.compile(r'\bcomponent[:\s]+([a-zA-Z0-9_-]+)', re.IGNORECASE),
        "agent": re.compile(r'\bagent[:\s]+([A-Z][a-zA-Z0-9_-]+)'),
        "error_code": re.compile(r'\b(E\d{3,5}|ERR[-_]?\d{2,5})\b'),
        "email": re.compile(r'\b([\w.+-]+@[\w-]+\.[\w.-]+)\b'),
        "url": re.compile(r'(https?://[^\s<>"]+)'),
        "version": re.compile(r'\bv(\d+(?:\.\d+){1,2})\b', re.IGNORECASE),
        "ticket": re.compile(r'#(\d{3,})\b'),
    }


@dataclass(frozen=True)
class ComplexityRule:
    """One row of the complexity table: fires -> at least ``level``."""
    name: str
    level: ComplexityLevel
    description: str
    test: Callable[[str, Dict[str, str]], bool]


COMPLEXITY_RULES: Tuple[ComplexityRule, ...] = (
    ComplexityRule("long_message", ComplexityLevel.MEDIUM, "Message longer than 500 characters",
                   lambda message, entities: len(message) > 500),
    ComplexityRule("many_entities", ComplexityLevel.MEDIUM, "More than two entities referenced",
                   lambda message, entities: len(entities) > 2),
    ComplexityRule("multi_part", ComplexityLevel.MEDIUM, "Multi-part request",
                   lambda message, entities: bool(PatternTable.MULTI_PART.search(message))),
    ComplexityRule("technical_markers", ComplexityLevel.HIGH, "Mentions integration, API or MCP level work",
                   lambda message, entities: bool(PatternTable.HIGH_COMPLEXITY_MARKERS.search(message))),
)


class SignalAggregator:
    """Combines external classifier answers with local heuristics."""

    def __init__(
        self,
        classifiers: Optional[Sequence[Classifier]] = None,
        fallback: Optional[Classifier] = None,
        classifier_timeout: Optional[float] = None,
        deadline: Optional[float] = None,
        complexity_rules: Sequence[ComplexityRule] = COMPLEXITY_RULES
    ):
        config = get_config()
        self.classifiers = list(classifiers or [])
        self.fallback = fallback or KeywordClassifier()
        self.classifier_timeout = classifier_timeout or config["CLASSIFIER_TIMEOUT_SECONDS"]
        self.deadline = deadline or config["ROUTING_DEADLINE_SECONDS"]
        self.complexity_rules = tuple(complexity_rules)
        self.patterns = PatternTable()

        logger.info(
            "SignalAggregator initialized",
            sources=[c.name for c in self.classifiers],
            classifier_timeout=self.classifier_timeout,
            deadline=self.deadline
        )

    async def _call(self, classifier: Classifier, message: str) -> ClassifierResult:
        try:
            return await asyncio.wait_for(
                classifier.classify(message, timeout=self.classifier_timeout),
                timeout=self.classifier_timeout
            )
        except asyncio.TimeoutError as e:
            raise ClassifierTimeout(
                f"{classifier.name} exceeded {self.classifier_timeout}s",
                details={"source": classifier.name}
            ) from e

    async def collect(self, message: str) -> Tuple[List[ClassifierResult], Dict[str, str]]:
        """
        Fan out to all classifiers and gather what answers in time.

        Pending calls are cancelled when the deadline expires or when the
        caller itself is cancelled.

        Returns:
            Tuple of (results sorted by confidence desc then source, failures source -> error kind)
        """
        if not self.classifiers:
            return [], {}

        tasks: Dict[asyncio.Task, Classifier] = {
            asyncio.create_task(self._call(c, message)): c for c in self.classifiers
        }
        try:
            done, pending = await asyncio.wait(tasks.keys(), timeout=self.deadline)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: List[ClassifierResult] = []
        failures: Dict[str, str] = {}

        for task in pending:
            failures[tasks[task].name] = ErrorKind.CLASSIFIER_TIMEOUT.value

        for task in done:
            source = tasks[task].name
            error = task.exception()
            if error is None:
                results.append(task.result())
            elif isinstance(error, RoutingEngineError):
                failures[source] = error.kind.value
            else:
                failures[source] = ErrorKind.CLASSIFIER_ERROR.value

            if error is not None:
                logger.warning("Classifier excluded from aggregate", source=source, error=str(error))

        results.sort(key=lambda r: (-r.confidence, r.source))
        return results, failures

    def detect_patterns(self, message: str) -> List[str]:
        """Names of the local patterns present in ``message``, sorted."""
        table = {
            "critical_incident": self.patterns.CRITICAL_INCIDENT,
            "urgent": self.patterns.URGENT,
            "human_request": self.patterns.HUMAN_REQUEST,
            "repeated_failure": self.patterns.REPEATED_FAILURE,
            "greeting": self.patterns.GREETING,
            "question": self.patterns.QUESTION,
            "multi_part": self.patterns.MULTI_PART,
            "technical": self.patterns.HIGH_COMPLEXITY_MARKERS,
        }
        return sorted(name for name, pattern in table.items() if pattern.search(message))

    def extract_entities(self, message: str) -> Dict[str, str]:
        """First match of every entity pattern."""
        entities = {}
        for name, pattern in self.patterns.ENTITY_PATTERNS.items():
            match = pattern.search(message)
            if match:
                entities[name] = match.group(1)
        return entities

    def analyze_sentiment(self, message: str, context: ConversationContext) -> Sentiment:
        if self.patterns.FRUSTRATED.search(message):
            return Sentiment.FRUSTRATED

        if self.patterns.NEGATIVE.search(message):
            # Negativity that persists across turns reads as frustration
            if context.sentiment in (Sentiment.NEGATIVE, Sentiment.FRUSTRATED) or context.escalation_level >= 2:
                return Sentiment.FRUSTRATED
            return Sentiment.NEGATIVE

        if self.patterns.POSITIVE.search(message):
            return Sentiment.POSITIVE

        return Sentiment.NEUTRAL

    def assess_urgency(self, message: str, context: ConversationContext, profile: UserProfile) -> Urgency:
        if self.patterns.CRITICAL_INCIDENT.search(message):
            return Urgency.CRITICAL
        if self.patterns.URGENT.search(message):
            return Urgency.HIGH
        if context.escalation_level > 1:
            return Urgency.HIGH
        if profile.tier == UserTier.ENTERPRISE:
            return Urgency.MEDIUM
        return Urgency.LOW

    def assess_complexity(self, message: str, entities: Dict[str, str]) -> Tuple[ComplexityLevel, List[str]]:
        """
        Apply the complexity table.

        Returns:
            Tuple of (highest fired level or LOW, descriptions of fired rules)
        """
        level = ComplexityLevel.LOW
        reasons = []
        for rule in self.complexity_rules:
            if rule.test(message, entities):
                reasons.append(rule.description)
                if rule.level > level:
                    level = rule.level
        return level, reasons

    async def analyze(self, message: str, profile: UserProfile, context: ConversationContext) -> SignalSet:
        """
        Produce the SignalSet for one message.

        Args:
            message: Current user message
            profile: Requesting user's profile
            context: Conversation state before this message

        Returns:
            SignalSet with classifier results and local heuristics
        """
        with Timer("signal_analysis"):
            results, failures = await self.collect(message)

            reasoning: List[str] = []
            degraded = not results
            if degraded:
                results = [await self.fallback.classify(message)]
                if self.classifiers:
                    cause = "all external classifiers failed or timed out"
                else:
                    cause = "no external classifiers are configured"
                reasoning.append(f"Degraded mode: fallback heuristic ({self.fallback.name}) used because {cause}")
            elif failures:
                reasoning.append(f"Excluded classifiers: {', '.join(sorted(failures))}")

            entities = self.extract_entities(message)
            complexity, complexity_reasons = self.assess_complexity(message, entities)
            top = results[0]

            signals = SignalSet(
                classifier_results=results,
                local_patterns=self.detect_patterns(message),
                entities=entities,
                sentiment=self.analyze_sentiment(message, context),
                urgency=self.assess_urgency(message, context, profile),
                complexity=complexity,
                complexity_reasons=complexity_reasons,
                intent=top.intent,
                intent_confidence=top.confidence,
                degraded=degraded,
                failed_sources=failures,
                reasoning=reasoning
            )

            logger.info(
                "Signals aggregated",
                message_preview=sanitize_for_logging(message, 80),
                intent=signals.intent,
                degraded=degraded,
                sources=[r.source for r in results],
                failed_sources=failures,
                urgency=signals.urgency.value,
                complexity=complexity.value
            )
            return signals
