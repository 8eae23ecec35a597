"""Link persisted audit records to the activity that produced them."""

import logging

from enricher.conditions import get_field
from enricher.dispatch import report_error
from enricher.records import bounded_union
from enricher.store import Store

logger = logging.getLogger(__name__)

STRATEGIES = ("job_id", "correlation_id", "both", "none")


class ActivityLinker:

    def __init__(self, store: Store, service: str,
                 audit_collection: str = "auditlogs",
                 activities_collection: str = "activities",
                 strategy: str = "both",
                 job_id_from=None,
                 max_set_size: int = 1000,
                 on_error=None):
        if strategy not in STRATEGIES:
            raise ValueError(f"activity linking strategy must be one of {STRATEGIES}")
        self.store = store
        self.service = service
        self.audit_collection = audit_collection
        self.activities_collection = activities_collection
        self.strategy = strategy
        self.job_id_from = job_id_from
        self.max_set_size = max_set_size
        self.on_error = on_error

    def _job_id(self, event: dict, meta: dict | None):
        job_id = get_field(event, "activity_ref.job_id")
        if not job_id and self.job_id_from is not None:
            if callable(self.job_id_from):
                job_id = self.job_id_from(event, meta)
            else:
                job_id = get_field(event, self.job_id_from)
        return job_id or get_field(event, "data.job_id")

    async def _find(self, query: dict) -> dict | None:
        try:
            found = await self.store.collection(self.activities_collection).list_by_meta(
                query, limit=1)
        except Exception:
            logger.debug("activity lookup %s failed", query, exc_info=True)
            return None
        return found[0] if found else None

    async def link(self, event: dict, meta: dict | None, audit_id: str) -> dict | None:
        """Cross-reference *audit_id* with its activity.  Returns the activity."""
        if self.strategy == "none":
            return None
        try:
            activity = None
            if self.strategy in ("job_id", "both"):
                job_id = self._job_id(event, meta)
                if job_id:
                    activity = await self._find({"job_id": job_id})
            if activity is None and self.strategy in ("correlation_id", "both"):
                correlation_id = (meta or {}).get("correlation_id")
                if correlation_id:
                    activity = await self._find({"correlation_id": correlation_id})
            if activity is None:
                return None

            await self.store.collection(self.audit_collection).enrich(
                audit_id,
                {"activity_ref": {"id": activity["id"], "job_id": activity.get("job_id")}},
                function_id="enricher@audit-linking", actor=self.service,
                reason="audit:link-activity",
            )
            refs = bounded_union(activity.get("audit_refs"), [{"id": audit_id}],
                                 self.max_set_size)
            await self.store.collection(self.activities_collection).enrich(
                activity["id"], {"audit_refs": refs},
                function_id="enricher@audit-linking", actor=self.service,
                reason="activity:link-audit",
            )
            return activity
        except Exception as err:
            report_error(self.on_error, err, {"audit_id": audit_id, "event": event},
                         component="audit_linking")
            return None
