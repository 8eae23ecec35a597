"""Engine configuration: dataclasses with defaults, loadable from YAML.

Example ``enricher.yml``::

    service: billing-api
    env: production
    collections:
      auditlogs: audit_events
    aggregations:
      enabled: true
      max_set_size: 500
      resolvers:
        ip: request.remote_addr
    activity_linking:
      strategy: job_id
    unbound_response_handling: errors
    max_in_flight: 200
    job_cache:
      capacity: 50000
      ttl_seconds: 3600
    rules_dir: ./rules

``ENRICHER_ENV`` and ``ENRICHER_SERVICE`` override ``env`` and ``service``.
Callables (tenant resolver, resolver functions, transforms, on_error,
on_alert) cannot come from YAML; pass them to the Enricher directly.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from enricher.activities import UNBOUND_POLICIES
from enricher.aggregates import DEFAULT_RESOLVERS
from enricher.linking import STRATEGIES


class ConfigError(ValueError):
    """Invalid or incomplete engine configuration."""


DEFAULT_COLLECTION_NAMES = {
    "logs": "logs",
    "activities": "activities",
    "errors": "errors",
    "auditlogs": "auditlogs",
    "users": "users",
    "ips": "ips",
    "machines": "machines",
    "domains": "domains",
    "activity_types": "activity_types",
    "alerts": "alerts",
}


@dataclass
class AggregationsConfig:
    enabled: bool = True
    max_set_size: int = 1000
    resolvers: dict = field(default_factory=lambda: dict(DEFAULT_RESOLVERS))


@dataclass
class ActivityLinkingConfig:
    enabled: bool = True
    strategy: str = "both"
    job_id_field: str | None = None


@dataclass
class JobCacheConfig:
    capacity: int = 10_000
    ttl_seconds: float | None = 86_400


@dataclass
class EnricherConfig:
    service: str = "enricher"
    env: str = "development"
    collections: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_COLLECTION_NAMES)
    )
    aggregations: AggregationsConfig = field(default_factory=AggregationsConfig)
    activity_linking: ActivityLinkingConfig = field(default_factory=ActivityLinkingConfig)
    unbound_response_handling: str = "both"
    fire_and_forget: bool = True
    max_in_flight: int = 100
    job_cache: JobCacheConfig = field(default_factory=JobCacheConfig)
    rules_dir: str | None = None
    use_default_rules: bool = True
    entity_property_map: dict[str, str] = field(default_factory=dict)


def load_config(path: str | Path | None = None, environ=None) -> EnricherConfig:
    """Read *path* (YAML) into an EnricherConfig, then apply env overrides.

    With no path, defaults plus environment overrides are returned.
    """
    environ = os.environ if environ is None else environ
    if path is None:
        raw, source = {}, "<defaults>"
    else:
        path = Path(path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        source = path.name
        if not isinstance(raw, dict):
            raise ConfigError(f"{source}: config file must contain a mapping")

    config = parse_config(raw, source)
    if environ.get("ENRICHER_ENV"):
        config.env = environ["ENRICHER_ENV"]
    if environ.get("ENRICHER_SERVICE"):
        config.service = environ["ENRICHER_SERVICE"]
    if path is not None and config.rules_dir and not Path(config.rules_dir).is_absolute():
        config.rules_dir = str(path.parent / config.rules_dir)
    return config


def parse_config(raw: dict, source: str = "<config>") -> EnricherConfig:
    unknown = set(raw) - set(EnricherConfig.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"{source}: unknown field(s) {sorted(unknown)}")

    config = EnricherConfig()
    for name in ("service", "env"):
        if name in raw:
            if not isinstance(raw[name], str) or not raw[name]:
                raise ConfigError(f"{source}: '{name}' must be a non-empty string")
            setattr(config, name, raw[name])

    collections = _mapping(raw, "collections", source)
    unknown = set(collections) - set(DEFAULT_COLLECTION_NAMES)
    if unknown:
        raise ConfigError(f"{source}: unknown collection(s) {sorted(unknown)}")
    config.collections.update(collections)

    aggregations = _mapping(raw, "aggregations", source)
    config.aggregations.enabled = bool(aggregations.get("enabled", True))
    config.aggregations.max_set_size = _positive_int(
        aggregations.get("max_set_size", 1000), "aggregations.max_set_size", source)
    config.aggregations.resolvers.update(aggregations.get("resolvers") or {})

    linking = _mapping(raw, "activity_linking", source)
    config.activity_linking.enabled = bool(linking.get("enabled", True))
    config.activity_linking.strategy = _choice(
        linking.get("strategy", "both"), STRATEGIES, "activity_linking.strategy", source)
    config.activity_linking.job_id_field = linking.get("job_id_field")

    config.unbound_response_handling = _choice(
        raw.get("unbound_response_handling", "both"), UNBOUND_POLICIES,
        "unbound_response_handling", source)
    config.fire_and_forget = bool(raw.get("fire_and_forget", True))
    config.max_in_flight = _positive_int(raw.get("max_in_flight", 100),
                                         "max_in_flight", source)

    cache = _mapping(raw, "job_cache", source)
    config.job_cache.capacity = _positive_int(cache.get("capacity", 10_000),
                                              "job_cache.capacity", source)
    ttl = cache.get("ttl_seconds", 86_400)
    if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, (int, float))
                            or ttl <= 0):
        raise ConfigError(f"{source}: job_cache.ttl_seconds must be a positive number")
    config.job_cache.ttl_seconds = ttl

    config.rules_dir = raw.get("rules_dir")
    config.use_default_rules = bool(raw.get("use_default_rules", True))
    config.entity_property_map = dict(_mapping(raw, "entity_property_map", source))
    return config


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mapping(raw: dict, name: str, source: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{source}: '{name}' must be a mapping")
    return value


def _positive_int(value, name: str, source: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{source}: {name} must be a positive integer")
    return value


def _choice(value, choices: tuple, name: str, source: str) -> str:
    if value not in choices:
        raise ConfigError(f"{source}: {name} must be one of {choices}, got '{value}'")
    return value
