"""
Intent classifiers consumed by the Signal Aggregator.

This module provides:
- The ``Classifier`` contract: ``classify(text, timeout) -> ClassifierResult``
- ``LLMClassifier``: OpenRouter-hosted LLM with structured XML output
- ``HTTPClassifier``: any JSON service answering {agent, confidence, intent}
- ``KeywordClassifier``: deterministic keyword table used in degraded mode

Every external classifier honors the caller's timeout and asyncio
cancellation. Failures surface as ``ClassifierError``/``ClassifierTimeout``;
the aggregator decides how to recover.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

import httpx
from loguru import logger
from openai import APITimeoutError, AsyncOpenAI

from .errors import ClassifierError, ClassifierTimeout
from .models import ClassifierResult


@runtime_checkable
class Classifier(Protocol):
    """Contract every classifier collaborator satisfies."""

    name: str

    async def classify(self, text: str, timeout: Optional[float] = None) -> ClassifierResult:
        ...


def normalize_result(raw: Mapping[str, Any], source: str, known_agents: Optional[Iterable[str]] = None) -> ClassifierResult:
    """
    Turn a loosely shaped classifier answer into a ``ClassifierResult``.

    Confidence is clamped into [0, 1]. Unknown agents are rejected when a
    list of known agents is given.

    Raises:
        ClassifierError: If a required field is missing or malformed
    """
    agent = str(raw.get("agent") or "").strip()
    intent = str(raw.get("intent") or "").strip()
    if not agent or not intent:
        raise ClassifierError(f"{source} answer is missing agent or intent", details={"source": source})

    known = set(known_agents) if known_agents is not None else None
    if known is not None and agent not in known:
        raise ClassifierError(f"{source} proposed unknown agent {agent}", details={"source": source, "agent": agent})

    try:
        confidence = float(raw.get("confidence", 0.0))
    except (TypeError, ValueError):
        raise ClassifierError(f"{source} returned a non-numeric confidence", details={"source": source})

    return ClassifierResult(
        agent=agent,
        intent=intent,
        confidence=min(1.0, max(0.0, confidence)),
        source=source,
        route=raw.get("route"),
        notes=str(raw.get("notes") or "")
    )


@dataclass(frozen=True)
class KeywordRoute:
    """One row of the keyword routing table."""
    intent: str
    agent: str
    route: str
    keywords: Tuple[str, ...]


# Evaluated top to bottom; the first row with a match wins.
KEYWORD_ROUTES: Tuple[KeywordRoute, ...] = (
    KeywordRoute("billing_inquiry", "BillingAgent", "/billing",
                 ("billing", "invoice", "payment", "refund", "charged")),
    KeywordRoute("support_request", "TriageAgent", "/triage",
                 ("support", "error", "issue", "bug", "broken", "not working", "fails", "failing")),
    KeywordRoute("analyze_feedback", "FeedbackMinerAgent", "/feedback",
                 ("feedback", "comment", "review", "survey")),
    KeywordRoute("pricing_inquiry", "PricingIntelligenceAgent", "/pricing",
                 ("pricing", "price", "upgrade", "tier", "plan", "cost")),
    KeywordRoute("audit_request", "AuditAgent", "/audit",
                 ("log", "record", "compliance", "audit")),
    KeywordRoute("mcp_operation", "MCPIntegrationAgent", "/mcp",
                 ("mcp", "integration", "webhook", "api")),
    KeywordRoute("content_request", "ContentRouterAgent", "/content",
                 ("blog", "article", "media", "content")),
)

DEFAULT_KEYWORD_ROUTE = KeywordRoute("general_request", "ContentRouterAgent", "/content", ())


@dataclass
class KeywordClassifier:
    """Deterministic keyword matcher; never fails, never waits."""

    name: str = "local_heuristic"
    routes: Tuple[KeywordRoute, ...] = KEYWORD_ROUTES
    default: KeywordRoute = DEFAULT_KEYWORD_ROUTE
    _compiled: List[Tuple[KeywordRoute, List[re.Pattern]]] = field(init=False, repr=False)

    def __post_init__(self):
        self._compiled = [
            (row, [re.compile(rf'\b{re.escape(k)}\b', re.IGNORECASE) for k in row.keywords])
            for row in self.routes
        ]

    def match(self, text: str) -> Tuple[KeywordRoute, List[str]]:
        for row, patterns in self._compiled:
            matched = [k for k, p in zip(row.keywords, patterns) if p.search(text)]
            if matched:
                return row, matched
        return self.default, []

    async def classify(self, text: str, timeout: Optional[float] = None) -> ClassifierResult:
        row, matched = self.match(text)
        if matched:
            confidence = min(0.8, 0.6 + 0.1 * (len(matched) - 1))
            notes = f"Matched keywords: {', '.join(matched)}"
        else:
            confidence = 0.4
            notes = "No routing keywords matched"
        return ClassifierResult(
            agent=row.agent,
            intent=row.intent,
            confidence=confidence,
            source=self.name,
            route=row.route,
            notes=notes
        )


class LLMClassifier:
    """LLM-powered intent classifier served through OpenRouter."""

    def __init__(
        self,
        api_key: str,
        model: str,
        agents: Mapping[str, str],
        name: str = "llm",
        client: Optional[AsyncOpenAI] = None
    ):
        """
        Args:
            api_key: OpenRouter API key
            model: Model identifier
            agents: agent name -> route the model may choose from
            name: Source label recorded on results
            client: Pre-built client (tests inject a fake)
        """
        self.name = name
        self.model = model
        self.agents = dict(agents)
        self.client = client or AsyncOpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key,
            max_retries=0,
            default_headers={"X-Title": "Contextual Routing Engine - Classifier"}
        )

        logger.info("LLM classifier initialized", model=self.model, agent_count=len(self.agents))

    def _build_prompt(self, text: str) -> str:
        agent_lines = "\n".join(f"- {agent} → {route}" for agent, route in sorted(self.agents.items()))
        return f"""# Your role as Request Classifier

Pick the single agent best suited to handle the user's request.

## Agents
{agent_lines}

## Request
"{text}"

## Your answer
<agent>AgentName</agent>
<intent>snake_case_intent</intent>
<confidence>0.0-1.0</confidence>
<notes>Brief explanation</notes>"""

    def _parse_response(self, response: str) -> ClassifierResult:
        """Parse XML-formatted classification from the LLM."""
        fields: Dict[str, str] = {}
        for tag in ("agent", "intent", "confidence", "notes"):
            match = re.search(rf'<{tag}>(.*?)</{tag}>', response, re.IGNORECASE | re.DOTALL)
            if match:
                fields[tag] = match.group(1).strip()

        if "agent" not in fields:
            raise ClassifierError("No agent found in LLM response", details={"source": self.name})

        result = normalize_result(fields, self.name, known_agents=self.agents)
        return result.model_copy(update={"route": self.agents.get(result.agent)})

    async def classify(self, text: str, timeout: Optional[float] = None) -> ClassifierResult:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": self._build_prompt(text)}],
                temperature=0.0,  # Deterministic classification
                max_tokens=150,
                timeout=timeout
            )
        except APITimeoutError as e:
            raise ClassifierTimeout(f"{self.name} timed out", details={"source": self.name}) from e
        except Exception as e:
            raise ClassifierError(f"{self.name} request failed: {e}", details={"source": self.name}) from e

        if not response.choices or not response.choices[0].message.content:
            raise ClassifierError("Empty response from classifier LLM", details={"source": self.name})

        return self._parse_response(response.choices[0].message.content.strip())


class HTTPClassifier:
    """Classifier behind a JSON endpoint: POST {"text"} -> {agent, confidence, intent}."""

    def __init__(self, endpoint: str, name: Optional[str] = None, client: Optional[httpx.AsyncClient] = None,
                 known_agents: Optional[Iterable[str]] = None):
        self.endpoint = endpoint
        self.name = name or f"http:{httpx.URL(endpoint).host}"
        self.known_agents = list(known_agents) if known_agents is not None else None
        self._client = client

    async def classify(self, text: str, timeout: Optional[float] = None) -> ClassifierResult:
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.post(self.endpoint, json={"text": text}, timeout=timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise ClassifierTimeout(f"{self.name} timed out", details={"source": self.name}) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ClassifierError(f"{self.name} request failed: {e}", details={"source": self.name}) from e
        finally:
            if self._client is None:
                await client.aclose()

        if not isinstance(payload, dict):
            raise ClassifierError(f"{self.name} returned a non-object payload", details={"source": self.name})
        return normalize_result(payload, self.name, known_agents=self.known_agents)


def build_classifiers(config: Mapping[str, Any], agents: Mapping[str, str]) -> List[Classifier]:
    """
    Build the external classifiers enabled by configuration.

    Args:
        config: Engine configuration (see ``utils.get_config``)
        agents: agent name -> route of every registered agent

    Returns:
        Classifiers to fan out to; may be empty (degraded mode only)
    """
    classifiers: List[Classifier] = []

    if config.get("OPENROUTER_API_KEY"):
        classifiers.append(LLMClassifier(
            api_key=config["OPENROUTER_API_KEY"],
            model=config.get("CLASSIFIER_MODEL", "anthropic/claude-sonnet-4"),
            agents=agents
        ))

    for endpoint in filter(None, (e.strip() for e in config.get("CLASSIFIER_ENDPOINTS", "").split(","))):
        classifiers.append(HTTPClassifier(endpoint, known_agents=agents.keys()))

    logger.info("Classifiers configured", sources=[c.name for c in classifiers])
    return classifiers
