"""Tests for classifier adapters."""

from types import SimpleNamespace

import httpx
import pytest

from contextual_router.classifiers import (
    HTTPClassifier, KeywordClassifier, LLMClassifier, build_classifiers, normalize_result
)
from contextual_router.errors import ClassifierError, ClassifierTimeout

AGENTS = {"TriageAgent": "/triage", "AuditAgent": "/audit"}


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(content):
    completions = FakeCompletions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class TestNormalizeResult:

    def test_confidence_is_clamped(self):
        result = normalize_result({"agent": "TriageAgent", "intent": "support_request", "confidence": 1.4}, "svc")
        assert result.confidence == 1.0
        assert result.source == "svc"

    def test_missing_fields_raise(self):
        with pytest.raises(ClassifierError):
            normalize_result({"agent": "TriageAgent"}, "svc")

    def test_unknown_agent_rejected(self):
        with pytest.raises(ClassifierError):
            normalize_result({"agent": "Nobody", "intent": "x", "confidence": 0.5}, "svc", known_agents=AGENTS)

    def test_non_numeric_confidence_rejected(self):
        with pytest.raises(ClassifierError):
            normalize_result({"agent": "TriageAgent", "intent": "x", "confidence": "high"}, "svc")


class TestKeywordClassifier:

    async def test_billing_keywords(self):
        result = await KeywordClassifier().classify("I was charged twice on my invoice")

        assert result.agent == "BillingAgent"
        assert result.intent == "billing_inquiry"
        assert result.confidence == pytest.approx(0.7)

    async def test_no_keywords_falls_back_to_general(self):
        result = await KeywordClassifier().classify("hello there")

        assert result.intent == "general_request"
        assert result.agent == "ContentRouterAgent"
        assert result.confidence == 0.4

    def test_table_order_decides(self):
        row, matched = KeywordClassifier().match("the billing api returns an error")
        assert row.intent == "billing_inquiry"
        assert matched == ["billing"]


class TestLLMClassifier:

    async def test_parses_xml_answer(self):
        client, completions = fake_openai(
            "<agent>AuditAgent</agent><intent>audit_request</intent>"
            "<confidence>0.82</confidence><notes>asks for logs</notes>"
        )
        classifier = LLMClassifier(api_key="test", model="test-model", agents=AGENTS, client=client)

        result = await classifier.classify("show me the access log", timeout=1.5)

        assert result.agent == "AuditAgent"
        assert result.route == "/audit"
        assert result.confidence == pytest.approx(0.82)
        assert result.source == "llm"
        assert completions.kwargs["timeout"] == 1.5
        assert completions.kwargs["temperature"] == 0.0

    async def test_unknown_agent_is_an_error(self):
        client, _ = fake_openai("<agent>MadeUpAgent</agent><intent>x</intent><confidence>0.9</confidence>")
        classifier = LLMClassifier(api_key="test", model="test-model", agents=AGENTS, client=client)

        with pytest.raises(ClassifierError):
            await classifier.classify("anything")

    async def test_missing_agent_tag_is_an_error(self):
        client, _ = fake_openai("I think the triage agent")
        classifier = LLMClassifier(api_key="test", model="test-model", agents=AGENTS, client=client)

        with pytest.raises(ClassifierError):
            await classifier.classify("anything")


class TestHTTPClassifier:

    async def test_posts_text_and_normalizes(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.content
            return httpx.Response(200, json={"agent": "TriageAgent", "intent": "support_request", "confidence": 0.75})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            classifier = HTTPClassifier("http://classifier.local/classify", client=client, known_agents=AGENTS)
            result = await classifier.classify("it is broken", timeout=1.0)

        assert classifier.name == "http:classifier.local"
        assert result.agent == "TriageAgent"
        assert result.confidence == 0.75
        assert b"it is broken" in seen["body"]

    async def test_timeout_maps_to_classifier_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            classifier = HTTPClassifier("http://classifier.local/classify", client=client)
            with pytest.raises(ClassifierTimeout):
                await classifier.classify("anything", timeout=0.1)

    async def test_server_error_maps_to_classifier_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"detail": "down"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            classifier = HTTPClassifier("http://classifier.local/classify", client=client)
            with pytest.raises(ClassifierError):
                await classifier.classify("anything")


def test_build_classifiers_from_config():
    config = {
        "OPENROUTER_API_KEY": "",
        "CLASSIFIER_ENDPOINTS": "http://one.local/classify, http://two.local/classify",
    }
    classifiers = build_classifiers(config, AGENTS)

    assert [c.name for c in classifiers] == ["http:one.local", "http:two.local"]
