"""
Business rule engine.

Rules are declarative predicate -> action overrides loaded once from a
versioned table (built-in default or a JSON file). A table is validated
completely before it is accepted: unknown actions, fields or operators,
missing or unregistered targets, duplicate ids and predicates that raise on
probe data are all fatal ``InvalidRuleConfig`` errors.

Evaluation is a pure function of (context, profile, signals): matching rules
are ordered by priority descending, then id ascending; the first supplies the
action and target, all matches are kept for audit.

Rule file format:
    {
      "version": "2024.1",
      "rules": [
        {"id": "enterprise_priority_support", "priority": 10,
         "conditions": [{"field": "profile.tier", "op": "eq", "value": "Enterprise"}],
         "action": "route_to", "target": "PriorityTriageAgent",
         "description": "..."}
      ]
    }
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple, Union

from loguru import logger
from pydantic import ValidationError

from .agents import AgentRegistry
from .errors import InvalidRuleConfig
from .models import (
    BusinessRule, ClassifierResult, ConversationContext, ConversationMessage, OrderedStrEnum,
    RuleAction, RuleCondition, RuleOutcome, RuleTable, SignalSet, Urgency, UserProfile, UserTier
)

Predicate = Callable[[ConversationContext, UserProfile, SignalSet], bool]

ROOTS = ("context", "profile", "signals")


def _coerce(actual: Any, expected: Any) -> Any:
    """Convert ``expected`` to the ordered enum type of ``actual`` so ordering is by rank."""
    if isinstance(actual, OrderedStrEnum) and not isinstance(expected, OrderedStrEnum):
        return type(actual)(expected)
    return expected


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    return expected in actual


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, e: a == e,
    "ne": lambda a, e: a != e,
    "in": lambda a, e: a in e,
    "not_in": lambda a, e: a not in e,
    "contains": _contains,
    "not_contains": lambda a, e: not _contains(a, e),
    "gt": lambda a, e: a is not None and a > _coerce(a, e),
    "gte": lambda a, e: a is not None and a >= _coerce(a, e),
    "lt": lambda a, e: a is not None and a < _coerce(a, e),
    "lte": lambda a, e: a is not None and a <= _coerce(a, e),
    "is_null": lambda a, e: a is None,
    "not_null": lambda a, e: a is not None,
}


def resolve_field(path: str, context: ConversationContext, profile: UserProfile, signals: SignalSet) -> Any:
    """
    Resolve a dotted path such as ``profile.preferences.complexity_level``.

    Dict segments are looked up by key and yield None when absent; any other
    missing attribute raises ``AttributeError``.
    """
    root, _, rest = path.partition(".")
    roots = {"context": context, "profile": profile, "signals": signals}
    if root not in roots:
        raise AttributeError(f"Unknown field root '{root}' in '{path}'")

    value: Any = roots[root]
    for segment in filter(None, rest.split(".")):
        if isinstance(value, dict):
            value = value.get(segment)
        else:
            value = getattr(value, segment)
    return value


def compile_conditions(conditions: List[RuleCondition]) -> Predicate:
    """Build one predicate that holds when every condition holds."""
    compiled = []
    for condition in conditions:
        if condition.op not in OPERATORS:
            raise InvalidRuleConfig(f"Unknown operator '{condition.op}'", details={"field": condition.field})
        if condition.field.partition(".")[0] not in ROOTS:
            raise InvalidRuleConfig(f"Unknown field '{condition.field}'", details={"op": condition.op})
        compiled.append((condition.field, OPERATORS[condition.op], condition.value))

    def predicate(context: ConversationContext, profile: UserProfile, signals: SignalSet) -> bool:
        return all(op(resolve_field(f, context, profile, signals), value) for f, op, value in compiled)

    return predicate


DEFAULT_RULE_TABLE = RuleTable(
    version="2024.1",
    rules=[
        BusinessRule(
            id="suspended_account_block",
            priority=100,
            conditions=[RuleCondition(field="profile.permissions", op="not_contains", value="basic_access")],
            action=RuleAction.BLOCK,
            description="Accounts without basic access are handed to humans, never dispatched"
        ),
        BusinessRule(
            id="enterprise_priority_support",
            priority=10,
            conditions=[
                RuleCondition(field="profile.tier", op="eq", value="Enterprise"),
                RuleCondition(field="context.urgency", op="gte", value="high"),
            ],
            action=RuleAction.ROUTE_TO,
            target="PriorityTriageAgent",
            description="Enterprise users get priority support for high urgency issues"
        ),
        BusinessRule(
            id="billing_requires_auth",
            priority=9,
            conditions=[RuleCondition(field="context.active_intent", op="contains", value="billing")],
            action=RuleAction.REQUIRE_AUTH,
            target="BillingAgent",
            description="Billing inquiries require user authentication"
        ),
        BusinessRule(
            id="technical_complexity_escalation",
            priority=8,
            conditions=[
                RuleCondition(field="context.escalation_level", op="gt", value=2),
                RuleCondition(field="profile.role", op="eq", value="End User"),
            ],
            action=RuleAction.ESCALATE,
            target="TechnicalSpecialistAgent",
            description="Complex technical issues should be escalated for end users"
        ),
        BusinessRule(
            id="free_tier_limitations",
            priority=7,
            conditions=[
                RuleCondition(field="profile.tier", op="eq", value="Free"),
                RuleCondition(field="context.active_intent", op="eq", value="advanced_features"),
            ],
            action=RuleAction.REDIRECT,
            target="UpgradeAgent",
            description="Free tier users requesting advanced features should be shown upgrade options"
        ),
        BusinessRule(
            id="explicit_human_request",
            priority=6,
            conditions=[RuleCondition(field="signals.local_patterns", op="contains", value="human_request")],
            action=RuleAction.ESCALATE,
            target="HumanSupportAgent",
            description="Users asking for a person are escalated to human support"
        ),
    ]
)


def _probe_inputs() -> List[Tuple[ConversationContext, UserProfile, SignalSet]]:
    """Empty and fully populated inputs every predicate must evaluate without raising."""
    empty = (ConversationContext(session_id="probe"), UserProfile(id="probe"), SignalSet())
    populated = (
        ConversationContext(
            session_id="probe",
            user_id="probe",
            messages=[ConversationMessage(content="probe", handled_by="probe_agent", intent="probe_intent")],
            active_intent="probe_intent",
            intent_confidence=0.9,
            current_workflow="probe_workflow",
            pending_actions=["probe_action"],
            escalation_level=3,
            urgency=Urgency.CRITICAL
        ),
        UserProfile(id="probe", tier=UserTier.ENTERPRISE, permissions=[]),
        SignalSet(
            classifier_results=[ClassifierResult(agent="probe_agent", confidence=0.9, intent="probe_intent", source="probe")],
            local_patterns=["question"],
            entities={"component": "probe"},
            intent="probe_intent",
            intent_confidence=0.9
        ),
    )
    return [empty, populated]


@dataclass(frozen=True)
class CompiledRule:
    rule: BusinessRule
    predicate: Predicate


@dataclass(frozen=True)
class CompiledRuleTable:
    version: str
    rules: Tuple[CompiledRule, ...]

    @property
    def source(self) -> RuleTable:
        return RuleTable(version=self.version, rules=[r.rule for r in self.rules])


RuleSource = Union[None, str, Path, Dict[str, Any], RuleTable]


def read_rule_table(source: RuleSource) -> RuleTable:
    """
    Parse a rule table from a JSON file path, a dict, or pass one through.

    Raises:
        InvalidRuleConfig: If the file cannot be read or the schema is violated
    """
    if source is None:
        return DEFAULT_RULE_TABLE
    if isinstance(source, RuleTable):
        return source

    try:
        if isinstance(source, (str, Path)):
            data = json.loads(Path(source).read_text(encoding="utf-8"))
        else:
            data = source
        return RuleTable.model_validate(data)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidRuleConfig(f"Cannot read rule table: {e}", details={"source": str(source)}) from e
    except ValidationError as e:
        raise InvalidRuleConfig(
            "Rule table does not match the rule schema",
            details={"errors": [err["msg"] for err in e.errors()]}
        ) from e


def compile_rule_table(table: RuleTable, registry: AgentRegistry) -> CompiledRuleTable:
    """
    Validate every rule and compile its predicate.

    Raises:
        InvalidRuleConfig: On the first invalid rule
    """
    seen = set()
    compiled: List[CompiledRule] = []
    probes = _probe_inputs()

    for rule in table.rules:
        details = {"rule_id": rule.id, "table_version": table.version}

        if rule.id in seen:
            raise InvalidRuleConfig(f"Duplicate rule id '{rule.id}'", details=details)
        seen.add(rule.id)

        if rule.action != RuleAction.BLOCK:
            if not rule.target:
                raise InvalidRuleConfig(f"Rule '{rule.id}' with action {rule.action.value} needs a target", details=details)
            if rule.target not in registry:
                raise InvalidRuleConfig(f"Rule '{rule.id}' targets unknown agent '{rule.target}'", details=details)

        if not rule.conditions and rule.predicate is None:
            raise InvalidRuleConfig(f"Rule '{rule.id}' has no conditions", details=details)

        try:
            declarative = compile_conditions(rule.conditions)
        except InvalidRuleConfig as e:
            raise InvalidRuleConfig(f"Rule '{rule.id}': {e.message}", details={**details, **e.details}) from e

        if rule.predicate is not None:
            custom = rule.predicate

            def predicate(context, profile, signals, _declarative=declarative, _custom=custom):
                return _declarative(context, profile, signals) and bool(_custom(context, profile, signals))
        else:
            predicate = declarative

        for context, profile, signals in probes:
            try:
                predicate(context, profile, signals)
            except Exception as e:
                raise InvalidRuleConfig(
                    f"Rule '{rule.id}' predicate failed on probe input: {e}",
                    details={**details, "error": type(e).__name__}
                ) from e

        compiled.append(CompiledRule(rule=rule, predicate=predicate))

    compiled.sort(key=lambda r: (-r.rule.priority, r.rule.id))
    return CompiledRuleTable(version=table.version, rules=tuple(compiled))


class BusinessRuleEngine:
    """Evaluates the active rule table; swapped only by ``reload``."""

    def __init__(self, registry: AgentRegistry, source: RuleSource = None):
        self.registry = registry
        self._table = compile_rule_table(read_rule_table(source), registry)

        logger.info("Business rule engine initialized", version=self._table.version, rule_count=len(self._table.rules))

    @property
    def version(self) -> str:
        return self._table.version

    @property
    def table(self) -> RuleTable:
        return self._table.source

    def reload(self, source: RuleSource = None) -> RuleTable:
        """
        Replace the active table with a freshly validated one.

        The previous table stays active when validation fails.

        Raises:
            InvalidRuleConfig: If the new table is invalid
        """
        try:
            table = compile_rule_table(read_rule_table(source), self.registry)
        except InvalidRuleConfig as e:
            logger.error("Rule table reload rejected", error=e.message, active_version=self._table.version)
            raise

        previous = self._table.version
        self._table = table
        logger.info("Rule table reloaded", previous_version=previous, version=table.version, rule_count=len(table.rules))
        return table.source

    def evaluate(self, context: ConversationContext, profile: UserProfile, signals: SignalSet) -> RuleOutcome:
        """
        Evaluate all rules for one request.

        Returns:
            RuleOutcome naming the applied rule (highest priority match) and all matches

        Raises:
            InvalidRuleConfig: If a predicate raises on live data
        """
        table = self._table
        matched: List[BusinessRule] = []
        for compiled in table.rules:
            try:
                fired = compiled.predicate(context, profile, signals)
            except Exception as e:
                logger.error("Rule predicate raised during evaluation", rule_id=compiled.rule.id, error=str(e))
                raise InvalidRuleConfig(
                    f"Rule '{compiled.rule.id}' failed during evaluation: {e}",
                    details={"rule_id": compiled.rule.id, "table_version": table.version}
                ) from e
            if fired:
                matched.append(compiled.rule)

        if not matched:
            return RuleOutcome(table_version=table.version)

        applied = matched[0]
        outcome = RuleOutcome(
            matched_rules=[r.id for r in matched],
            applied_rule=applied.id,
            primary_action=applied.action,
            target=applied.target,
            overrides_default=True,
            descriptions=[r.description for r in matched],
            table_version=table.version
        )

        logger.info(
            "Business rules matched",
            applied_rule=applied.id,
            action=applied.action.value,
            target=applied.target,
            matched=outcome.matched_rules
        )
        return outcome
