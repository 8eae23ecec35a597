"""Audit pipeline — enrich, persist, link, aggregate, detect.

For one audit event, in order:
  1. Annotate — event rules attach risks/insights (synchronously, before
                the caller's call returns)
  2. Persist  — the annotated record is created in the audit collection
  3. Link     — the record is cross-referenced with its activity, if any
  4. Aggregate — per-entity running aggregates are updated
  5. Detect   — aggregation rules count the entity's window and alert

Steps 2–5 run as one dispatched unit of work.  A failure in step 2 aborts
the unit; failures in 3–5 are isolated and reported.
"""

import logging

from enricher import metrics
from enricher.aggregates import AggregateUpdater
from enricher.aggregation_rules import AggregationRuleEngine
from enricher.dispatch import Dispatcher
from enricher.event_rules import annotate
from enricher.linking import ActivityLinker
from enricher.records import common_meta, is_internal, normalize_timestamp, now_iso
from enricher.rules import RuleSet
from enricher.store import Store

logger = logging.getLogger(__name__)


class AuditPipeline:

    def __init__(self, store: Store, dispatcher: Dispatcher, rules: RuleSet,
                 service: str, env: str,
                 audit_collection: str = "auditlogs",
                 aggregates: AggregateUpdater | None = None,
                 aggregation_engine: AggregationRuleEngine | None = None,
                 linker: ActivityLinker | None = None,
                 tenant_id_resolver=None,
                 transform=None):
        self.store = store
        self.dispatcher = dispatcher
        self.rules = rules
        self.service = service
        self.env = env
        self.audit_collection = audit_collection
        self.aggregates = aggregates
        self.aggregation_engine = aggregation_engine
        self.linker = linker
        self.tenant_id_resolver = tenant_id_resolver
        self.transform = transform

    def build_record(self, event: dict, meta: dict | None = None) -> dict:
        record = {
            "type": "audit",
            "app_id": event["app_id"],
            "user_id": event["user_id"],
            "action": event.get("action"),
            "resource": event.get("resource"),
            "target": event.get("target"),
            "outcome": event.get("outcome"),
            "severity": event.get("severity", "info"),
            "tags": list(event.get("tags") or []),
            "context": list(event.get("context") or []),
            "data": event.get("data"),
            "occurred_at": (normalize_timestamp(event["occurred_at"])
                            if event.get("occurred_at") is not None else now_iso()),
            "end_at": event.get("end_at"),
            "duration_ms": event.get("duration_ms"),
            "activity_ref": event.get("activity_ref"),
            **common_meta(self.service, self.env, meta, self.tenant_id_resolver),
        }
        annotate(record, self.rules.event_rules)
        for kind in ("risks", "insights"):
            if record.get(kind):
                metrics.annotations_total.labels(type=kind).inc(len(record[kind]))
        return record

    def log_audit(self, event: dict, meta: dict | None = None):
        """Enrich and persist one audit event.

        Raises ValueError when ``app_id`` or ``user_id`` is missing or
        ``occurred_at`` is not a datetime, epoch seconds or ISO 8601 string; never
        raises for downstream failures.  Events whose meta ``source`` marks
        them as internal are ignored.
        """
        if not event or not event.get("app_id") or not event.get("user_id"):
            raise ValueError("audit event requires app_id and user_id")
        if is_internal(meta):
            logger.debug("ignoring audit event from internal source %s", meta["source"])
            return None

        record = self.build_record(event, meta)

        async def exec_():
            final = self.transform(record, meta) if self.transform else record
            coll = self.store.collection(self.audit_collection)
            result = await coll.create(final, final.get("source") or self.service,
                                       "audit:create")
            audit_id = (result or {}).get("id")

            if self.linker is not None and audit_id:
                await self.linker.link(event, meta, audit_id)
            if self.aggregates is not None:
                await self.aggregates.update_all(event, meta, final)
            if self.aggregation_engine is not None and self.rules.aggregation_rules:
                await self.aggregation_engine.evaluate(final, self.rules.aggregation_rules)

        return self.dispatcher.submit(exec_, record, component="audit")
