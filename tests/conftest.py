"""Shared pytest fixtures for routing engine tests.

This module provides:
- Environment isolation (no external classifiers, default rule table)
- ``StubClassifier`` with pinned answers, delays and failures
- Factories for engines and stores wired to stub classifiers
"""

import asyncio
from typing import List, Optional

import pytest

from contextual_router.agents import AgentRegistry
from contextual_router.conversation import InMemoryContextStore
from contextual_router.engine import RoutingEngine, reset_routing_engine
from contextual_router.models import ClassifierResult
from contextual_router.profiles import InMemoryProfileStore
from contextual_router.signals import SignalAggregator
from contextual_router.utils import reset_config

ENV_VARS = (
    "OPENROUTER_API_KEY",
    "CLASSIFIER_ENDPOINTS",
    "RULES_PATH",
    "CLASSIFIER_TIMEOUT_SECONDS",
    "ROUTING_DEADLINE_SECONDS",
    "WEIGHT_HISTORY",
    "WEIGHT_CONTEXT",
    "WEIGHT_BUSINESS",
    "WEIGHT_COMPLEXITY",
    "WEIGHT_AVAILABILITY",
)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Run every test against default configuration and a fresh global engine."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    reset_config()
    reset_routing_engine()
    yield
    reset_config()
    reset_routing_engine()


class StubClassifier:
    """Classifier returning a pinned answer, optionally slow or failing."""

    def __init__(self, name: str, agent: str, intent: str, confidence: float,
                 delay: float = 0.0, error: Optional[Exception] = None):
        self.name = name
        self.agent = agent
        self.intent = intent
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.calls = 0
        self.cancelled = False

    async def classify(self, text: str, timeout: Optional[float] = None) -> ClassifierResult:
        self.calls += 1
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return ClassifierResult(agent=self.agent, intent=self.intent, confidence=self.confidence, source=self.name)


@pytest.fixture
def registry() -> AgentRegistry:
    return AgentRegistry()


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def context_store() -> InMemoryContextStore:
    return InMemoryContextStore()


@pytest.fixture
def make_engine():
    """Build an engine whose aggregator uses the given stub classifiers."""

    def factory(classifiers: Optional[List[StubClassifier]] = None, **kwargs) -> RoutingEngine:
        aggregator = SignalAggregator(
            classifiers=classifiers or [],
            classifier_timeout=kwargs.pop("classifier_timeout", 0.5),
            deadline=kwargs.pop("deadline", 1.0)
        )
        return RoutingEngine(aggregator=aggregator, **kwargs)

    return factory
