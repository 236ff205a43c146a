"""Tests for the business rule engine."""

import json

import pytest

from contextual_router.errors import InvalidRuleConfig
from contextual_router.models import (
    BusinessRule, ConversationContext, RuleAction, RuleCondition, RuleTable,
    SignalSet, Urgency, UserProfile, UserRole, UserTier
)
from contextual_router.rules import DEFAULT_RULE_TABLE, BusinessRuleEngine, resolve_field


def table_with(*rules, version="test.1"):
    return RuleTable(version=version, rules=list(rules))


def rule(rule_id="r1", priority=1, conditions=None, action=RuleAction.ROUTE_TO, target="TriageAgent", **kwargs):
    if conditions is None:
        conditions = [RuleCondition(field="profile.tier", op="eq", value="Free")]
    return BusinessRule(id=rule_id, priority=priority, conditions=conditions, action=action, target=target, **kwargs)


@pytest.fixture
def engine(registry):
    return BusinessRuleEngine(registry)


class TestDefaultTable:

    def test_loads_default_version(self, engine):
        assert engine.version == "2024.1"
        assert {r.id for r in engine.table.rules} == {
            "suspended_account_block",
            "enterprise_priority_support",
            "billing_requires_auth",
            "technical_complexity_escalation",
            "free_tier_limitations",
            "explicit_human_request",
        }

    def test_no_match_does_not_override(self, engine):
        outcome = engine.evaluate(ConversationContext(session_id="s"), UserProfile(id="u"), SignalSet())

        assert outcome.overrides_default is False
        assert outcome.matched_rules == []
        assert outcome.primary_action is None
        assert outcome.table_version == "2024.1"

    def test_priority_precedence(self, engine):
        context = ConversationContext(session_id="s", escalation_level=3, urgency=Urgency.HIGH)
        profile = UserProfile(id="u", tier=UserTier.ENTERPRISE, role=UserRole.END_USER)

        outcome = engine.evaluate(context, profile, SignalSet())

        assert outcome.matched_rules == ["enterprise_priority_support", "technical_complexity_escalation"]
        assert outcome.applied_rule == "enterprise_priority_support"
        assert outcome.primary_action == RuleAction.ROUTE_TO
        assert outcome.target == "PriorityTriageAgent"
        assert len(outcome.descriptions) == 2

    def test_enterprise_rule_needs_high_urgency(self, engine):
        context = ConversationContext(session_id="s", urgency=Urgency.MEDIUM)
        profile = UserProfile(id="u", tier=UserTier.ENTERPRISE)

        assert engine.evaluate(context, profile, SignalSet()).matched_rules == []

    def test_billing_intent_requires_auth(self, engine):
        context = ConversationContext(session_id="s", active_intent="billing_inquiry")

        outcome = engine.evaluate(context, UserProfile(id="u"), SignalSet())

        assert outcome.primary_action == RuleAction.REQUIRE_AUTH
        assert outcome.target == "BillingAgent"

    def test_missing_basic_access_blocks(self, engine):
        profile = UserProfile(id="u", tier=UserTier.ENTERPRISE, permissions=[])
        context = ConversationContext(session_id="s", urgency=Urgency.CRITICAL)

        outcome = engine.evaluate(context, profile, SignalSet())

        assert outcome.applied_rule == "suspended_account_block"
        assert outcome.primary_action == RuleAction.BLOCK
        assert outcome.target is None

    def test_human_request_pattern(self, engine):
        outcome = engine.evaluate(
            ConversationContext(session_id="s"), UserProfile(id="u"), SignalSet(local_patterns=["human_request"])
        )
        assert outcome.target == "HumanSupportAgent"
        assert outcome.primary_action == RuleAction.ESCALATE

    def test_evaluation_is_deterministic(self, engine):
        context = ConversationContext(session_id="s", escalation_level=4, active_intent="billing_inquiry")
        profile = UserProfile(id="u")

        first = engine.evaluate(context, profile, SignalSet())
        second = engine.evaluate(context, profile, SignalSet())

        assert first == second


class TestFieldResolution:

    def test_dict_segments_default_to_none(self):
        profile = UserProfile(id="u")
        value = resolve_field("profile.history.successful_routes.TriageAgent", ConversationContext(session_id="s"),
                              profile, SignalSet())
        assert value is None

    def test_properties_resolve(self):
        value = resolve_field("context.message_count", ConversationContext(session_id="s"), UserProfile(id="u"),
                              SignalSet())
        assert value == 0


class TestValidation:

    @pytest.mark.parametrize("bad_rule", [
        rule(conditions=[RuleCondition(field="profile.tier", op="approximately", value="Free")]),
        rule(conditions=[RuleCondition(field="weather.today", op="eq", value="sunny")]),
        rule(conditions=[RuleCondition(field="profile.shoe_size", op="eq", value=42)]),
        rule(target=None),
        rule(target="GhostAgent"),
        rule(conditions=[]),
    ])
    def test_invalid_rules_rejected(self, registry, bad_rule):
        with pytest.raises(InvalidRuleConfig):
            BusinessRuleEngine(registry, table_with(bad_rule))

    def test_duplicate_ids_rejected(self, registry):
        with pytest.raises(InvalidRuleConfig) as exc_info:
            BusinessRuleEngine(registry, table_with(rule("same"), rule("same", priority=2)))
        assert exc_info.value.details["rule_id"] == "same"

    def test_unknown_action_rejected(self, registry):
        data = {
            "version": "bad.1",
            "rules": [{"id": "r1", "priority": 1, "action": "teleport", "target": "TriageAgent",
                       "conditions": [{"field": "profile.tier", "op": "eq", "value": "Free"}]}]
        }
        with pytest.raises(InvalidRuleConfig):
            BusinessRuleEngine(registry, data)

    def test_raising_predicate_rejected(self, registry):
        def broken(context, profile, signals):
            return 1 / 0

        with pytest.raises(InvalidRuleConfig):
            BusinessRuleEngine(registry, table_with(rule(conditions=[], predicate=broken)))

    def test_block_needs_no_target(self, registry):
        engine = BusinessRuleEngine(registry, table_with(rule(action=RuleAction.BLOCK, target=None)))
        assert engine.version == "test.1"

    def test_programmatic_predicate(self, registry):
        long_conversation = rule(
            "long_conversation",
            conditions=[],
            predicate=lambda context, profile, signals: context.message_count > 10
        )
        engine = BusinessRuleEngine(registry, table_with(long_conversation))

        outcome = engine.evaluate(ConversationContext(session_id="s"), UserProfile(id="u"), SignalSet())
        assert outcome.matched_rules == []


class TestReload:

    def test_reload_from_file(self, registry, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(DEFAULT_RULE_TABLE.model_dump(mode="json")))
        engine = BusinessRuleEngine(registry, path)

        data = json.loads(path.read_text())
        data["version"] = "2024.2"
        data["rules"] = data["rules"][:2]
        path.write_text(json.dumps(data))

        table = engine.reload(path)

        assert table.version == "2024.2"
        assert engine.version == "2024.2"
        assert len(engine.table.rules) == 2

    def test_failed_reload_keeps_previous_table(self, registry, tmp_path):
        engine = BusinessRuleEngine(registry)
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"version": "broken", "rules": [
            {"id": "r1", "priority": 1, "action": "route_to", "target": "GhostAgent",
             "conditions": [{"field": "profile.tier", "op": "eq", "value": "Free"}]}
        ]}))

        with pytest.raises(InvalidRuleConfig):
            engine.reload(path)

        assert engine.version == "2024.1"

    def test_unreadable_file(self, registry, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{not json")

        with pytest.raises(InvalidRuleConfig):
            BusinessRuleEngine(registry, path)
