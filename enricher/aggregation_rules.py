"""Aggregation rule engine — windowed threshold detection per entity.

Runs after an audit record has been persisted.  For each rule:
  1. Filter — do the rule's conditions match this enriched record?
  2. Route  — which entity value does the record group under?
  3. Window — [now - period, now]
  4. Count  — re-query the audit collection for records with the same
              entity value inside the window, narrowed by the rule's
              conditions translated into store predicates
  5. Alert  — if count >= threshold, persist an aggregation alert

There is no dedup or cooldown: N qualifying events above threshold inside
one window produce N alerts.  The store is re-scanned on every qualifying
event; no incremental counter is kept.
"""

import calendar
import logging
import re
from datetime import datetime, timedelta, timezone

from enricher import metrics
from enricher.conditions import OPERATOR_ALIASES, evaluate_condition, get_field
from enricher.dispatch import report_error
from enricher.records import now_iso
from enricher.rules import DEFAULT_ENTITY_PROPERTY_MAP, AggregationRule, Condition
from enricher.store import Store

logger = logging.getLogger(__name__)

ALERTS_COLLECTION = "alerts"

_PERIOD_DELTAS = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}

_RANGE_OPS = {"gt": "$gt", "gte": "$gte", "lt": "$lt", "lte": "$lte"}


def _one_month_back(now: datetime) -> datetime:
    """Same day-of-month in the previous month, clamped to its length."""
    year, month = (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def get_time_window(period: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return (start, end) for a trailing window ending at *now*."""
    end = now or datetime.now(timezone.utc)
    if period == "month":
        return _one_month_back(end), end
    if period not in _PERIOD_DELTAS:
        raise ValueError(f"Unknown aggregation period: {period}")
    return end - _PERIOD_DELTAS[period], end


def rule_matches(record: dict, rule: AggregationRule) -> bool:
    """Enabled and every condition (AND) holds.  No conditions = match."""
    if not rule.enabled:
        return False
    return all(evaluate_condition(record, c) for c in rule.conditions)


def get_entity_value(record: dict, path: str) -> str | None:
    value = get_field(record, path)
    return str(value) if value else None


def format_output_text(text: str, count: int, entity: str, period: str) -> str:
    return (text.replace("{count}", str(count))
                .replace("{entity}", entity)
                .replace("{period}", period))


def build_alert_output(rule: AggregationRule, count: int, entity_value: str,
                       triggered_at: str) -> dict:
    """Risk or insight annotation carried inside an aggregation alert."""
    out = rule.output
    annotation = {
        "text": format_output_text(out.text, count, entity_value, rule.period),
        "rule_id": rule.id,
        "rule_name": rule.name,
        "triggered_at": triggered_at,
    }
    if out.type == "risk":
        annotation = {"severity": out.severity, **annotation}
        if out.metadata:
            annotation["metadata"] = dict(out.metadata)
    else:
        annotation["metadata"] = {
            **(out.metadata or {}),
            "count": count,
            "entity_value": entity_value,
            "period": rule.period,
        }
    return annotation


def condition_to_predicate(condition: Condition) -> dict | None:
    """Translate one condition to a store predicate; None if untranslatable."""
    op = OPERATOR_ALIASES.get(condition.operator, condition.operator)
    value = condition.value
    field = condition.field

    if op == "equals":
        return {field: value}
    elif op == "exists":
        return {field: {"$exists": True}}
    elif op in _RANGE_OPS:
        return {field: {_RANGE_OPS[op]: value}}
    elif op == "in" and isinstance(value, (list, tuple, set, frozenset)):
        return {field: {"$in": list(value)}}
    elif not isinstance(value, str):
        return None
    elif op == "contains":
        return {field: {"$regex": re.escape(value), "$options": "i"}}
    elif op == "starts_with":
        return {field: {"$regex": "^" + re.escape(value)}}
    elif op == "ends_with":
        return {field: {"$regex": re.escape(value) + "$"}}
    elif op == "regex":
        return {field: {"$regex": value}}
    return None


def build_query(rule: AggregationRule, entity_value: str,
                start: datetime, end: datetime) -> dict:
    query = {
        rule.entity_property: entity_value,
        "occurred_at": {"$gte": now_iso(start), "$lte": now_iso(end)},
    }
    clauses = [p for p in (condition_to_predicate(c) for c in rule.conditions) if p]
    if clauses:
        query["$and"] = clauses
    return query


class AggregationRuleEngine:

    def __init__(self, store: Store, service: str, env: str,
                 audit_collection: str = "auditlogs",
                 entity_property_map: dict[str, str] | None = None,
                 alerts_collection: str = ALERTS_COLLECTION,
                 on_error=None, on_alert=None, clock=None):
        self.store = store
        self.service = service
        self.env = env
        self.audit_collection = audit_collection
        self.entity_property_map = (DEFAULT_ENTITY_PROPERTY_MAP
                                    if entity_property_map is None
                                    else entity_property_map)
        self.alerts_collection = alerts_collection
        self.on_error = on_error
        self.on_alert = on_alert
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(self, record: dict, rules: list[AggregationRule]) -> list[dict]:
        """Evaluate every rule against *record*; return the alerts created.

        Rules are isolated from each other: a failing query or write is
        reported and the next rule still runs.
        """
        alerts = []
        for rule in rules:
            if not rule_matches(record, rule):
                continue
            entity_value = get_entity_value(record, rule.entity_property)
            if not entity_value:
                continue
            try:
                alert = await self._evaluate_rule(rule, entity_value)
            except Exception as err:
                report_error(self.on_error, err,
                             {"rule_id": rule.id, "entity_value": entity_value},
                             component="aggregation_rule")
                continue
            if alert is not None:
                alerts.append(alert)
        return alerts

    async def _evaluate_rule(self, rule: AggregationRule, entity_value: str) -> dict | None:
        start, end = get_time_window(rule.period, self._clock())
        audit = self.store.collection(self.audit_collection)
        matching = await audit.list_by_meta(build_query(rule, entity_value, start, end))
        count = len(matching)
        if count < rule.threshold:
            return None

        triggered_at = now_iso()
        alert = {
            "type": "aggregation-alert",
            "rule_id": rule.id,
            "rule_name": rule.name,
            "entity_property": rule.entity_property,
            "entity_value": entity_value,
            "period": rule.period,
            "count": count,
            "threshold": rule.threshold,
            "output": build_alert_output(rule, count, entity_value, triggered_at),
            "triggered_at": triggered_at,
            "time_window": {"start": now_iso(start), "end": now_iso(end)},
            "service": self.service,
            "env": self.env,
        }
        collection = self.entity_property_map.get(rule.entity_property,
                                                  self.alerts_collection)
        result = await self.store.collection(collection).create(
            alert, self.service, f"aggregation-rule:{rule.output.type}")
        alert["id"] = result.get("id")

        metrics.aggregation_alerts_total.labels(rule_id=rule.id).inc()
        logger.info("aggregation rule %s fired for %s=%s (count=%d, threshold=%d)",
                    rule.id, rule.entity_property, entity_value, count, rule.threshold)
        if self.on_alert is not None:
            self.on_alert(alert)
        return alert
