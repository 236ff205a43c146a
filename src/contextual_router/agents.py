"""
Registry of downstream agents the engine can route to.

Each agent has a route, the intents it handles, a handling style and a
default availability. Agents marked ``rule_only`` are never scored as
ordinary candidates; they are reached only when a business rule targets
them (priority triage, upgrade offers, specialists, human support).
"""

from typing import Dict, Iterable, List, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, Field

from .models import HandlingStyle


class AgentSpec(BaseModel):
    """Static description of one downstream agent."""
    name: str = Field(..., min_length=1)
    route: str = Field(..., description="Logical endpoint, e.g. /triage")
    intents: List[str] = Field(default_factory=list, description="Intents this agent handles")
    handling_style: HandlingStyle = Field(default=HandlingStyle.DETAILED)
    availability: float = Field(default=0.9, ge=0.0, le=1.0, description="Default readiness signal")
    rule_only: bool = Field(default=False)
    human: bool = Field(default=False, description="Agent is staffed by people")


DEFAULT_AGENTS: List[AgentSpec] = [
    AgentSpec(name="ContentRouterAgent", route="/content",
              intents=["general_request", "general_inquiry", "content_request"]),
    AgentSpec(name="TriageAgent", route="/triage",
              intents=["support_request"], handling_style=HandlingStyle.TERSE),
    AgentSpec(name="FeedbackMinerAgent", route="/feedback",
              intents=["analyze_feedback"], handling_style=HandlingStyle.TERSE),
    AgentSpec(name="PricingIntelligenceAgent", route="/pricing",
              intents=["pricing_inquiry"]),
    AgentSpec(name="AuditAgent", route="/audit",
              intents=["audit_request"], handling_style=HandlingStyle.TERSE),
    AgentSpec(name="MCPIntegrationAgent", route="/mcp",
              intents=["mcp_operation"], handling_style=HandlingStyle.TERSE, availability=0.8),
    AgentSpec(name="GeneralSupportAgent", route="/support",
              intents=["general_request", "support_request"], availability=0.95),
    AgentSpec(name="BillingAgent", route="/billing",
              intents=["billing_inquiry"], rule_only=True),
    AgentSpec(name="PriorityTriageAgent", route="/priority",
              intents=["support_request"], rule_only=True, availability=0.95),
    AgentSpec(name="TechnicalSpecialistAgent", route="/specialist",
              intents=["support_request", "mcp_operation"], rule_only=True, availability=0.7),
    AgentSpec(name="UpgradeAgent", route="/upgrade",
              intents=["advanced_features", "pricing_inquiry"], rule_only=True),
    AgentSpec(name="HumanSupportAgent", route="/human",
              intents=["human_request"], rule_only=True, human=True, availability=0.6),
]


class AgentRegistry:
    """Lookup of configured agents and their availability."""

    def __init__(self, agents: Optional[Iterable[AgentSpec]] = None):
        specs = list(DEFAULT_AGENTS if agents is None else agents)
        self._agents: Dict[str, AgentSpec] = {}
        for spec in specs:
            if spec.name in self._agents:
                raise ValueError(f"Duplicate agent name: {spec.name}")
            self._agents[spec.name] = spec

        logger.info("Agent registry initialized", agent_count=len(self._agents))

    def __contains__(self, name: str) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def get(self, name: str) -> Optional[AgentSpec]:
        return self._agents.get(name)

    def names(self) -> List[str]:
        return sorted(self._agents)

    def routable(self) -> List[AgentSpec]:
        """Agents eligible as ordinary scored candidates, sorted by name."""
        return [self._agents[n] for n in sorted(self._agents) if not self._agents[n].rule_only]

    def availability(self, name: str, overrides: Optional[Mapping[str, float]] = None) -> float:
        """
        Current readiness of an agent in [0, 1].

        Caller-supplied overrides (live load signals) take precedence over the
        registry default; out-of-range values are clamped.
        """
        if overrides and name in overrides:
            try:
                return min(1.0, max(0.0, float(overrides[name])))
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid availability override", agent=name, value=overrides[name])
        spec = self._agents.get(name)
        return spec.availability if spec else 0.0
