"""Load event and aggregation rules from YAML files.

One rule per file.  ``kind: event`` files become EventRule, ``kind:
aggregation`` files become AggregationRule.  Field names follow the Python
data model (``condition_logic``, ``entity_property``); the camelCase keys of
older rule packs (``conditionLogic``, ``entityProperty``) are accepted too.
"""

from pathlib import Path

import yaml

from enricher.conditions import OPERATOR_ALIASES, OPERATORS
from enricher.rules import (
    CONDITION_LOGIC,
    OUTPUT_TYPES,
    PERIODS,
    SEVERITIES,
    AggregationRule,
    Condition,
    EventRule,
    RuleOutput,
    RuleSet,
)

_REQUIRED_FIELDS = ("id", "kind", "output")
_REQUIRED_EVENT = ("conditions",)
_REQUIRED_AGGREGATION = ("entity_property", "period", "threshold")
_CAMEL_KEYS = {
    "conditionLogic": "condition_logic",
    "entityProperty": "entity_property",
}


def load_rules(directory: str | Path) -> RuleSet:
    """Glob *.yml in *directory*, parse each, return a RuleSet."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Rule directory not found: {directory}")

    rules = RuleSet()
    for path in sorted(directory.glob("*.yml")):
        rule = load_rule(path)
        if isinstance(rule, EventRule):
            rules.event_rules.append(rule)
        else:
            rules.aggregation_rules.append(rule)
    return rules


def load_rule(path: str | Path) -> EventRule | AggregationRule:
    """Load a single rule file — useful for tests."""
    path = Path(path)
    with open(path) as f:
        definition = yaml.safe_load(f)
    if not isinstance(definition, dict):
        raise ValueError(f"{path.name}: rule file must contain a mapping")
    return parse_rule(definition, source=path.name)


def parse_rule(definition: dict, source: str = "<rule>") -> EventRule | AggregationRule:
    definition = _normalize_keys(definition)
    for field in _REQUIRED_FIELDS:
        if field not in definition:
            raise ValueError(f"{source}: missing required field '{field}'")

    kind = definition["kind"]
    if kind == "event":
        return parse_event_rule(definition, source)
    elif kind == "aggregation":
        return parse_aggregation_rule(definition, source)
    raise ValueError(f"{source}: unknown rule kind '{kind}'")


def parse_event_rule(definition: dict, source: str = "<rule>") -> EventRule:
    definition = _normalize_keys(definition)
    for field in _REQUIRED_EVENT:
        if field not in definition:
            raise ValueError(f"{source}: missing required field '{field}'")

    logic = str(definition.get("condition_logic", "AND")).upper()
    if logic not in CONDITION_LOGIC:
        raise ValueError(f"{source}: condition_logic must be AND or OR, got '{logic}'")

    return EventRule(
        id=str(definition["id"]),
        name=definition.get("name", definition["id"]),
        description=definition.get("description", ""),
        enabled=bool(definition.get("enabled", True)),
        conditions=_parse_conditions(definition["conditions"], source),
        condition_logic=logic,
        output=_parse_output(definition["output"], source),
    )


def parse_aggregation_rule(definition: dict, source: str = "<rule>") -> AggregationRule:
    definition = _normalize_keys(definition)
    for field in _REQUIRED_AGGREGATION:
        if field not in definition:
            raise ValueError(f"{source}: missing required field '{field}'")

    period = definition["period"]
    if period not in PERIODS:
        raise ValueError(f"{source}: period must be one of {PERIODS}, got '{period}'")

    threshold = definition["threshold"]
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
        raise ValueError(f"{source}: threshold must be a positive integer")

    return AggregationRule(
        id=str(definition["id"]),
        name=definition.get("name", definition["id"]),
        description=definition.get("description", ""),
        enabled=bool(definition.get("enabled", True)),
        entity_property=definition["entity_property"],
        period=period,
        threshold=threshold,
        conditions=_parse_conditions(definition.get("conditions") or [], source),
        output=_parse_output(definition["output"], source),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _normalize_keys(definition: dict) -> dict:
    return {_CAMEL_KEYS.get(k, k): v for k, v in definition.items()}


def _parse_conditions(raw, source: str) -> tuple[Condition, ...]:
    if not isinstance(raw, list):
        raise ValueError(f"{source}: conditions must be a list")

    conditions = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict) or "field" not in item or "operator" not in item:
            raise ValueError(f"{source}: condition #{i} needs 'field' and 'operator'")
        op = OPERATOR_ALIASES.get(item["operator"], item["operator"])
        if op not in OPERATORS:
            raise ValueError(f"{source}: condition #{i} has unknown operator '{op}'")
        if op != "exists" and "value" not in item:
            raise ValueError(f"{source}: condition #{i} ('{op}') needs a 'value'")
        value = item.get("value")
        if op == "in" and isinstance(value, list):
            value = tuple(value)
        conditions.append(Condition(field=item["field"], operator=op, value=value))
    return tuple(conditions)


def _parse_output(raw, source: str) -> RuleOutput:
    if not isinstance(raw, dict):
        raise ValueError(f"{source}: output must be a mapping")
    for field in ("type", "text"):
        if field not in raw:
            raise ValueError(f"{source}: output missing required field '{field}'")

    out_type = raw["type"]
    if out_type not in OUTPUT_TYPES:
        raise ValueError(f"{source}: output.type must be risk or insight, got '{out_type}'")

    severity = raw.get("severity")
    if out_type == "risk" and severity not in SEVERITIES:
        raise ValueError(
            f"{source}: risk output needs severity in {SEVERITIES}, got '{severity}'"
        )

    return RuleOutput(
        type=out_type,
        text=raw["text"],
        severity=severity,
        metadata=raw.get("metadata"),
    )
