"""Event rule engine — per-event risk and insight annotations.

Every enabled rule is evaluated once against the event; each match becomes
one Risk or Insight.  Rules never see each other's output within a pass,
and all annotations produced by one call share a single ``triggered_at``.
"""

from datetime import datetime

from enricher.conditions import evaluate_condition
from enricher.records import now_iso
from enricher.rules import EventRule


def evaluate_rule(event: dict, rule: EventRule) -> bool:
    if not rule.enabled:
        return False
    checks = (evaluate_condition(event, c) for c in rule.conditions)
    if rule.condition_logic == "OR":
        return any(checks)
    return all(checks)


def apply_event_rules(
    event: dict,
    rules: list[EventRule],
    now: datetime | None = None,
) -> tuple[list[dict], list[dict]]:
    """Return (risks, insights) for *event*.  Pure: *event* is not modified."""
    risks: list[dict] = []
    insights: list[dict] = []
    triggered_at = now_iso(now)

    for rule in rules:
        if not evaluate_rule(event, rule):
            continue

        out = rule.output
        annotation = {
            "text": out.text,
            "rule_id": rule.id,
            "rule_name": rule.name,
            "triggered_at": triggered_at,
        }
        if out.metadata:
            annotation["metadata"] = dict(out.metadata)

        if out.type == "risk":
            risks.append({"severity": out.severity, **annotation})
        else:
            insights.append(annotation)

    return risks, insights


def annotate(record: dict, rules: list[EventRule]) -> dict:
    """Attach risks/insights to *record* in place.  Empty lists are not set."""
    if not rules:
        return record
    risks, insights = apply_event_rules(record, rules)
    if risks:
        record.setdefault("risks", []).extend(risks)
    if insights:
        record.setdefault("insights", []).extend(insights)
    return record
