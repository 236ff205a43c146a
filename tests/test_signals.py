"""Tests for signal aggregation: classifier fan-out and local heuristics."""

import asyncio

import pytest

from contextual_router.errors import ClassifierError
from contextual_router.models import (
    ComplexityLevel, ConversationContext, Sentiment, Urgency, UserProfile, UserTier
)
from contextual_router.signals import SignalAggregator

from conftest import StubClassifier


@pytest.fixture
def aggregator():
    return SignalAggregator(classifier_timeout=0.5, deadline=1.0)


@pytest.fixture
def profile():
    return UserProfile(id="user_1")


@pytest.fixture
def context():
    return ConversationContext(session_id="session_0001")


class TestLocalHeuristics:

    def test_detect_patterns(self, aggregator):
        patterns = aggregator.detect_patterns("Hi, how do I set up the Snowflake integration?")
        assert patterns == ["greeting", "question", "technical"]

    def test_detect_human_request(self, aggregator):
        assert "human_request" in aggregator.detect_patterns("Please let me talk to a real person")

    def test_extract_entities(self, aggregator):
        entities = aggregator.extract_entities("Sync failed with E1042, contact ops@example.com")
        assert entities["error_code"] == "E1042"
        assert entities["email"] == "ops@example.com"

    def test_complexity_table(self, aggregator):
        assert aggregator.assess_complexity("hello", {}) == (ComplexityLevel.LOW, [])

        level, reasons = aggregator.assess_complexity("How do I migrate our SSO config?", {})
        assert level == ComplexityLevel.HIGH
        assert reasons

        level, _ = aggregator.assess_complexity("a " * 300, {})
        assert level == ComplexityLevel.MEDIUM

    def test_urgency(self, aggregator, profile, context):
        assert aggregator.assess_urgency("production down since noon", context, profile) == Urgency.CRITICAL
        assert aggregator.assess_urgency("this is urgent", context, profile) == Urgency.HIGH
        assert aggregator.assess_urgency("a question", context, profile) == Urgency.LOW

        enterprise = UserProfile(id="user_2", tier=UserTier.ENTERPRISE)
        assert aggregator.assess_urgency("a question", context, enterprise) == Urgency.MEDIUM

        escalated = ConversationContext(session_id="session_0001", escalation_level=2)
        assert aggregator.assess_urgency("a question", escalated, profile) == Urgency.HIGH

    def test_sentiment(self, aggregator, context):
        assert aggregator.analyze_sentiment("this is frustrating", context) == Sentiment.FRUSTRATED
        assert aggregator.analyze_sentiment("this is terrible", context) == Sentiment.NEGATIVE
        assert aggregator.analyze_sentiment("thanks a lot", context) == Sentiment.POSITIVE
        assert aggregator.analyze_sentiment("ok", context) == Sentiment.NEUTRAL

        upset = ConversationContext(session_id="session_0001", sentiment=Sentiment.NEGATIVE)
        assert aggregator.analyze_sentiment("this is terrible", upset) == Sentiment.FRUSTRATED


class TestDegradedMode:

    async def test_no_classifiers_uses_fallback(self, aggregator, profile, context):
        signals = await aggregator.analyze("I need a refund for my invoice", profile, context)

        assert signals.degraded is True
        assert signals.classifier_results[0].source == "local_heuristic"
        assert signals.intent == "billing_inquiry"
        assert any("fallback heuristic" in r for r in signals.reasoning)

    async def test_timed_out_classifier_is_excluded(self, profile, context):
        slow = StubClassifier("slow", "TriageAgent", "support_request", 0.9, delay=1.0)
        aggregator = SignalAggregator(classifiers=[slow], classifier_timeout=0.05, deadline=1.0)

        signals = await aggregator.analyze("the export is broken", profile, context)

        assert signals.degraded is True
        assert signals.failed_sources == {"slow": "classifier_timeout"}
        assert slow.cancelled is True

    async def test_failing_classifier_is_excluded_not_fatal(self, profile, context):
        good = StubClassifier("good", "AuditAgent", "audit_request", 0.9)
        broken = StubClassifier("broken", "TriageAgent", "support_request", 0.9, error=RuntimeError("boom"))
        invalid = StubClassifier("invalid", "TriageAgent", "support_request", 0.9, error=ClassifierError("bad"))
        aggregator = SignalAggregator(classifiers=[good, broken, invalid], classifier_timeout=0.5, deadline=1.0)

        signals = await aggregator.analyze("show me the audit log", profile, context)

        assert signals.degraded is False
        assert [r.source for r in signals.classifier_results] == ["good"]
        assert signals.failed_sources == {"broken": "classifier_error", "invalid": "classifier_error"}
        assert signals.reasoning == ["Excluded classifiers: broken, invalid"]


class TestFanOut:

    async def test_results_sorted_by_confidence(self, profile, context):
        low = StubClassifier("a_low", "TriageAgent", "support_request", 0.6)
        high = StubClassifier("b_high", "AuditAgent", "audit_request", 0.9)
        aggregator = SignalAggregator(classifiers=[low, high], classifier_timeout=0.5, deadline=1.0)

        signals = await aggregator.analyze("check the audit log", profile, context)

        assert [r.source for r in signals.classifier_results] == ["b_high", "a_low"]
        assert signals.intent == "audit_request"
        assert signals.intent_confidence == 0.9

    async def test_classifiers_run_concurrently(self):
        first = StubClassifier("first", "TriageAgent", "support_request", 0.8, delay=0.2)
        second = StubClassifier("second", "AuditAgent", "audit_request", 0.7, delay=0.2)
        aggregator = SignalAggregator(classifiers=[first, second], classifier_timeout=1.0, deadline=0.35)

        results, failures = await aggregator.collect("anything")

        assert len(results) == 2
        assert failures == {}

    async def test_deadline_cancels_pending_calls(self):
        slow = StubClassifier("slow", "TriageAgent", "support_request", 0.9, delay=5.0)
        fast = StubClassifier("fast", "AuditAgent", "audit_request", 0.7)
        aggregator = SignalAggregator(classifiers=[slow, fast], classifier_timeout=10.0, deadline=0.05)

        results, failures = await aggregator.collect("anything")

        assert [r.source for r in results] == ["fast"]
        assert failures == {"slow": "classifier_timeout"}
        assert slow.cancelled is True

    async def test_caller_cancellation_propagates(self):
        slow = StubClassifier("slow", "TriageAgent", "support_request", 0.9, delay=5.0)
        aggregator = SignalAggregator(classifiers=[slow], classifier_timeout=10.0, deadline=10.0)

        task = asyncio.create_task(aggregator.collect("anything"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.05)

        assert slow.cancelled is True
