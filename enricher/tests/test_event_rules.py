"""Tests for the event rule engine — AND/OR logic, purity, annotation shape."""

import copy
from datetime import datetime, timezone

from enricher.event_rules import annotate, apply_event_rules, evaluate_rule
from enricher.rules import Condition, EventRule, RuleOutput

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

LOGIN = Condition("action", "equals", "login")
FAILURE = Condition("outcome", "equals", "failure")


def _rule(rule_id="failed_login", conditions=(LOGIN, FAILURE), logic="AND",
          output=None, enabled=True):
    return EventRule(
        id=rule_id,
        name=rule_id.replace("_", " ").title(),
        conditions=tuple(conditions),
        condition_logic=logic,
        enabled=enabled,
        output=output or RuleOutput(type="risk", severity="medium", text="Failed login"),
    )


# ---------------------------------------------------------------------------
# Condition logic
# ---------------------------------------------------------------------------

class TestConditionLogic:
    def test_and_matches_when_all_hold(self):
        assert evaluate_rule({"action": "login", "outcome": "failure"}, _rule())

    def test_and_rejects_when_one_fails(self):
        assert not evaluate_rule({"action": "login", "outcome": "success"}, _rule())

    def test_or_matches_when_any_holds(self):
        rule = _rule(conditions=(LOGIN, FAILURE, Condition("user_id", "equals", "x")),
                     logic="OR")
        assert evaluate_rule({"action": "login", "outcome": "success"}, rule)

    def test_or_rejects_when_none_hold(self):
        rule = _rule(logic="OR")
        assert not evaluate_rule({"action": "view", "outcome": "success"}, rule)

    def test_disabled_rule_never_matches(self):
        rule = _rule(enabled=False)
        assert not evaluate_rule({"action": "login", "outcome": "failure"}, rule)

    def test_and_with_no_conditions_matches(self):
        assert evaluate_rule({}, _rule(conditions=()))


# ---------------------------------------------------------------------------
# apply_event_rules
# ---------------------------------------------------------------------------

class TestApplyEventRules:
    def setup_method(self):
        self.rules = [
            _rule(),
            _rule("login_seen", conditions=(LOGIN,),
                  output=RuleOutput(type="insight", text="Login observed",
                                    metadata={"category": "auth"})),
            _rule("never", conditions=(Condition("action", "equals", "nope"),)),
        ]
        self.event = {"action": "login", "outcome": "failure", "user_id": "u1"}

    def test_risk_shape(self):
        risks, _ = apply_event_rules(self.event, self.rules, now=NOW)
        assert risks == [{
            "severity": "medium",
            "text": "Failed login",
            "rule_id": "failed_login",
            "rule_name": "Failed Login",
            "triggered_at": "2024-05-01T12:00:00.000+00:00",
        }]

    def test_insight_carries_metadata(self):
        _, insights = apply_event_rules(self.event, self.rules, now=NOW)
        assert len(insights) == 1
        assert insights[0]["rule_id"] == "login_seen"
        assert insights[0]["metadata"] == {"category": "auth"}
        assert "severity" not in insights[0]

    def test_pure_and_order_stable(self):
        before = copy.deepcopy(self.event)
        first = apply_event_rules(self.event, self.rules, now=NOW)
        second = apply_event_rules(self.event, self.rules, now=NOW)
        assert first == second
        assert self.event == before

    def test_rule_order_preserved(self):
        rules = [_rule("b"), _rule("a")]
        risks, _ = apply_event_rules(self.event, rules, now=NOW)
        assert [r["rule_id"] for r in risks] == ["b", "a"]

    def test_shared_triggered_at(self):
        risks, insights = apply_event_rules(self.event, self.rules)
        stamps = {a["triggered_at"] for a in risks + insights}
        assert len(stamps) == 1

    def test_no_rules(self):
        assert apply_event_rules(self.event, []) == ([], [])


class TestAnnotate:
    def test_empty_lists_not_set(self):
        record = {"action": "view"}
        annotate(record, [_rule()])
        assert "risks" not in record
        assert "insights" not in record

    def test_appends_to_existing(self):
        record = {"action": "login", "outcome": "failure",
                  "risks": [{"rule_id": "upstream"}]}
        annotate(record, [_rule()])
        assert [r["rule_id"] for r in record["risks"]] == ["upstream", "failed_login"]
