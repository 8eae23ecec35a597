# Rules are declarative data, not code.
#
# An EventRule or AggregationRule is a plain dataclass that a generic
# interpreter (enricher.conditions / enricher.event_rules /
# enricher.aggregation_rules) evaluates.  Rule files are YAML, one rule per
# file, loaded by enricher.rules.loader; the same structures can be built
# directly in Python for tests and embedding.

from dataclasses import dataclass, field
from typing import Any

SEVERITIES = ("low", "medium", "high", "critical")
OUTPUT_TYPES = ("risk", "insight")
CONDITION_LOGIC = ("AND", "OR")
PERIODS = ("minute", "hour", "day", "week", "month")


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class RuleOutput:
    type: str  # risk | insight
    text: str
    severity: str | None = None  # required when type == "risk"
    metadata: dict | None = None


@dataclass(frozen=True)
class EventRule:
    id: str
    name: str
    conditions: tuple[Condition, ...]
    output: RuleOutput
    enabled: bool = True
    condition_logic: str = "AND"
    description: str = ""


@dataclass(frozen=True)
class AggregationRule:
    id: str
    name: str
    entity_property: str
    period: str
    threshold: int
    output: RuleOutput
    conditions: tuple[Condition, ...] = ()
    enabled: bool = True
    description: str = ""


# Entity property -> collection holding that entity's aggregates.  Alerts for
# an aggregation rule land in the collection of the entity it groups by.
DEFAULT_ENTITY_PROPERTY_MAP = {
    "user_id": "users",
    "app_id": "users",
    "ip": "ips",
    "data.ip": "ips",
    "machine": "machines",
    "data.machine": "machines",
    "domain": "domains",
    "data.domain": "domains",
    "action": "activity_types",
}


@dataclass
class RuleSet:
    event_rules: list[EventRule] = field(default_factory=list)
    aggregation_rules: list[AggregationRule] = field(default_factory=list)
    entity_property_map: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_ENTITY_PROPERTY_MAP)
    )

    def extend(self, other: "RuleSet") -> None:
        self.event_rules.extend(other.event_rules)
        self.aggregation_rules.extend(other.aggregation_rules)
