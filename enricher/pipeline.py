"""Enricher — the caller-facing facade that wires every component together."""

import logging
from pathlib import Path

from enricher import event_rules
from enricher.activities import ActivityCorrelator, JobCache
from enricher.aggregates import AggregateUpdater
from enricher.aggregation_rules import AggregationRuleEngine
from enricher.audit import AuditPipeline
from enricher.config import ConfigError, EnricherConfig, load_config
from enricher.dispatch import Dispatcher
from enricher.linking import ActivityLinker
from enricher.logs import LogSink, StoreHandler
from enricher.rules import RuleSet
from enricher.rules.loader import load_rules
from enricher.store import Store

logger = logging.getLogger(__name__)

DEFAULT_RULES_DIR = Path(__file__).parent / "rules" / "defaults"

_AGGREGATE_COLLECTIONS = ("users", "ips", "machines", "domains", "activity_types")


def build_rules(config: EnricherConfig) -> RuleSet:
    rules = RuleSet()
    if config.use_default_rules:
        rules.extend(load_rules(DEFAULT_RULES_DIR))
    if config.rules_dir:
        rules.extend(load_rules(config.rules_dir))
    rules.entity_property_map.update(config.entity_property_map)
    return rules


class Enricher:
    """Enrich and persist audit events, activities and logs.

    Synchronous entry points return immediately; persistence happens in
    dispatched units of work (see enricher.dispatch).  Use ``await
    enricher.flush()`` before shutdown to drain outstanding units.

    Hooks:
        tenant_id_resolver  callable(meta) -> tenant id, when meta has none
        resolvers           entity resolvers: dotted path or callable(event, meta)
                            for ip, machine, domain, activity_type, user_key, job_id
        transforms          {"audit"|"activity"|"log": callable(record, meta) -> record}
        on_error            callable(err, record) for persistence failures
        on_alert            callable(alert) after an aggregation alert persists
    """

    def __init__(self, store: Store | None, config: EnricherConfig | None = None,
                 rules: RuleSet | None = None, tenant_id_resolver=None,
                 resolvers: dict | None = None, transforms: dict | None = None,
                 on_error=None, on_alert=None):
        if store is None:
            raise ConfigError("Enricher requires a store")
        self.store = store
        self.config = config or EnricherConfig()
        self.rules = rules if rules is not None else build_rules(self.config)
        transforms = transforms or {}
        cfg = self.config
        names = cfg.collections

        self.dispatcher = Dispatcher(max_in_flight=cfg.max_in_flight,
                                     fire_and_forget=cfg.fire_and_forget,
                                     on_error=on_error)

        resolvers = {**cfg.aggregations.resolvers, **(resolvers or {})}
        aggregates = None
        if cfg.aggregations.enabled:
            aggregates = AggregateUpdater(
                store, cfg.service, cfg.env,
                collections={name: names[name] for name in _AGGREGATE_COLLECTIONS},
                resolvers=resolvers,
                max_set_size=cfg.aggregations.max_set_size,
                on_error=on_error,
            )

        linker = None
        if cfg.activity_linking.enabled:
            linker = ActivityLinker(
                store, cfg.service,
                audit_collection=names["auditlogs"],
                activities_collection=names["activities"],
                strategy=cfg.activity_linking.strategy,
                job_id_from=resolvers.get("job_id") or cfg.activity_linking.job_id_field,
                max_set_size=cfg.aggregations.max_set_size,
                on_error=on_error,
            )

        self.aggregation_engine = AggregationRuleEngine(
            store, cfg.service, cfg.env,
            audit_collection=names["auditlogs"],
            entity_property_map={prop: names.get(coll, coll)
                                 for prop, coll in self.rules.entity_property_map.items()},
            alerts_collection=names["alerts"],
            on_error=on_error,
            on_alert=on_alert,
        )
        self.audit = AuditPipeline(
            store, self.dispatcher, self.rules, cfg.service, cfg.env,
            audit_collection=names["auditlogs"],
            aggregates=aggregates,
            aggregation_engine=self.aggregation_engine,
            linker=linker,
            tenant_id_resolver=tenant_id_resolver,
            transform=transforms.get("audit"),
        )
        self.activities = ActivityCorrelator(
            store, self.dispatcher, cfg.service, cfg.env,
            activities_collection=names["activities"],
            errors_collection=names["errors"],
            unbound_response_handling=cfg.unbound_response_handling,
            cache=JobCache(cfg.job_cache.capacity, cfg.job_cache.ttl_seconds),
            tenant_id_resolver=tenant_id_resolver,
            transform=transforms.get("activity"),
        )
        self.logs = LogSink(
            store, self.dispatcher, self.rules, cfg.service, cfg.env,
            collection=names["logs"],
            tenant_id_resolver=tenant_id_resolver,
            transform=transforms.get("log"),
        )
        logger.info("enricher ready: service=%s env=%s event_rules=%d aggregation_rules=%d",
                    cfg.service, cfg.env, len(self.rules.event_rules),
                    len(self.rules.aggregation_rules))

    @classmethod
    def from_config(cls, path, store: Store, **hooks) -> "Enricher":
        return cls(store, config=load_config(path), **hooks)

    # ------------------------------------------------------------------
    # Caller surface
    # ------------------------------------------------------------------

    def apply_event_rules(self, event: dict) -> tuple[list[dict], list[dict]]:
        return event_rules.apply_event_rules(event, self.rules.event_rules)

    def log_audit(self, event: dict, meta: dict | None = None):
        return self.audit.log_audit(event, meta)

    def log_activity_request(self, req: dict, meta: dict | None = None):
        return self.activities.log_request(req, meta)

    def log_activity_response(self, res: dict, meta: dict | None = None):
        return self.activities.log_response(res, meta)

    def write(self, level: str, message: str, meta: dict | None = None):
        return self.logs.write(level, message, meta)

    async def flush(self, timeout_ms: int = 5000) -> None:
        await self.dispatcher.flush(timeout_ms)

    def logging_handler(self, level=logging.NOTSET) -> StoreHandler:
        """A logging.Handler persisting application log records through this engine."""
        return StoreHandler(self.logs, level)
