"""Activity correlator — links asynchronous request/response pairs by job_id.

Lifecycle of one activity record:

  request   -> created "in-progress", job_id cached with its start time
  response  -> cache hit:   enrich the cached record, evict the entry
               cache miss:  look the job up in the store (restart, eviction)
               not found:   unbound, handled per unbound_response_handling

Unbound policies: ``errors`` writes only an error record, ``activities``
writes only a best-effort activity flagged ``missing_start``, ``both`` writes
both, ``drop`` writes nothing.
"""

import logging
import time
from collections import OrderedDict

from enricher import metrics
from enricher.dispatch import Dispatcher, report_error
from enricher.records import common_meta, is_internal, now_iso
from enricher.store import Store

logger = logging.getLogger(__name__)

UNBOUND_POLICIES = ("errors", "activities", "both", "drop")


class JobCache:
    """jobId -> (record_id, start_ms), bounded by capacity and age.

    Entries leave on successful correlation, on LRU eviction once
    ``capacity`` is reached, or when older than ``ttl_seconds``.  A missing
    entry is not an error: the correlator falls back to a store query.
    """

    __slots__ = ("capacity", "ttl_seconds", "_entries")

    def __init__(self, capacity: int = 10_000, ttl_seconds: float | None = 86_400):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._entries: OrderedDict[str, tuple[str, int, float]] = OrderedDict()

    def put(self, job_id: str, record_id: str, start_ms: int) -> None:
        self._entries[job_id] = (record_id, start_ms, time.time())
        self._entries.move_to_end(job_id)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def get(self, job_id: str) -> tuple[str, int] | None:
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        record_id, start_ms, cached_at = entry
        if self.ttl_seconds is not None and time.time() - cached_at > self.ttl_seconds:
            del self._entries[job_id]
            return None
        return record_id, start_ms

    def pop(self, job_id: str) -> None:
        self._entries.pop(job_id, None)

    def __contains__(self, job_id: str) -> bool:
        return self.get(job_id) is not None

    def __len__(self) -> int:
        return len(self._entries)


class ActivityCorrelator:

    def __init__(self, store: Store, dispatcher: Dispatcher, service: str, env: str,
                 activities_collection: str = "activities",
                 errors_collection: str = "errors",
                 unbound_response_handling: str = "both",
                 cache: JobCache | None = None,
                 tenant_id_resolver=None,
                 transform=None):
        if unbound_response_handling not in UNBOUND_POLICIES:
            raise ValueError(
                f"unbound_response_handling must be one of {UNBOUND_POLICIES}"
            )
        self.store = store
        self.dispatcher = dispatcher
        self.service = service
        self.env = env
        self.activities_collection = activities_collection
        self.errors_collection = errors_collection
        self.unbound = unbound_response_handling
        self.cache = cache or JobCache()
        self.tenant_id_resolver = tenant_id_resolver
        self.transform = transform

    def _meta(self, meta):
        return common_meta(self.service, self.env, meta, self.tenant_id_resolver)

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def log_request(self, req: dict, meta: dict | None = None):
        """Record the start of an activity.  Raises ValueError without job_id."""
        job_id = req.get("job_id")
        if not job_id:
            raise ValueError("activity request requires a job_id")
        if is_internal(meta):
            return None

        start_ms = int(time.time() * 1000)
        record = {
            "type": "ai-activity",
            "job_id": job_id,
            "status": "in-progress",
            "request_status": req.get("request_status", "accepted"),
            "response_status": "pending",
            "start_ts": now_iso(),
            "start_ms": start_ms,
            "request": req.get("request"),
            "context": req.get("context"),
            "activity_meta": req.get("activity_meta"),
            "model": req.get("model"),
            "provider": req.get("provider"),
            "user_id": req.get("user_id"),
            **self._meta(meta),
        }
        if self.transform is not None:
            record = self.transform(record, meta)

        async def exec_():
            coll = self.store.collection(self.activities_collection)
            result = await coll.create(record, record.get("source") or self.service,
                                       "ai:request")
            if result and result.get("id"):
                self.cache.put(job_id, result["id"], start_ms)

        return self.dispatcher.submit(exec_, record, component="activity_request")

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def log_response(self, res: dict, meta: dict | None = None):
        """Correlate a response with its request.  Raises ValueError without job_id."""
        job_id = res.get("job_id")
        if not job_id:
            raise ValueError("activity response requires a job_id")
        if is_internal(meta):
            return None

        end_ms = int(time.time() * 1000)
        ctx = {
            "job_id": job_id,
            "end_ms": end_ms,
            "end_ts": now_iso(),
            "response_status": res.get("response_status")
            or ("failed" if res.get("error") else "completed"),
            "status": "failed" if res.get("error") else "completed",
            "response": res.get("response"),
            "cost": res.get("cost"),
            "error": res.get("error"),
        }
        record = {"job_id": job_id, "response": res.get("response")}

        async def exec_():
            cached = self.cache.get(job_id)
            if cached is not None:
                record_id, start_ms = cached
                await self._complete(record_id, start_ms, ctx, record)
                self.cache.pop(job_id)
                return

            activity = await self._lookup(job_id, record)
            if activity is not None:
                await self._complete(activity["id"], activity.get("start_ms"), ctx, record)
                # The request's unit may have cached the job while we were
                # looking it up.
                self.cache.pop(job_id)
                return

            await self._unbound(ctx, meta, record)

        return self.dispatcher.submit(exec_, record, component="activity_response")

    async def _lookup(self, job_id: str, record: dict) -> dict | None:
        coll = self.store.collection(self.activities_collection)
        try:
            found = await coll.list_by_meta({"job_id": job_id}, limit=1)
        except Exception as err:
            # A failed lookup is treated as "not found".
            report_error(self.dispatcher.on_error, err, record, "activity_lookup")
            return None
        return found[0] if found else None

    async def _complete(self, record_id: str, start_ms, ctx: dict, record: dict) -> None:
        duration_ms = None
        if isinstance(start_ms, (int, float)):
            duration_ms = max(ctx["end_ms"] - start_ms, 0)

        update = {
            "end_ts": ctx["end_ts"],
            "end_ms": ctx["end_ms"],
            "duration_ms": duration_ms,
            "status": ctx["status"],
            "response_status": ctx["response_status"],
            "response": ctx["response"],
            "cost": ctx["cost"],
            "error": ctx["error"],
        }
        coll = self.store.collection(self.activities_collection)
        try:
            await coll.enrich(record_id, update, function_id="enricher@ai-activities",
                              actor=self.service, reason="ai:response")
        except Exception as err:
            report_error(self.dispatcher.on_error, err, record, "activity_response")
            return
        if duration_ms is not None:
            metrics.activity_duration.observe(duration_ms)

    async def _unbound(self, ctx: dict, meta: dict | None, record: dict) -> None:
        metrics.unbound_responses_total.labels(policy=self.unbound).inc()
        logger.info("unbound response for job %s (policy=%s)", ctx["job_id"], self.unbound)

        if self.unbound in ("activities", "both"):
            doc = {
                "type": "ai-activity",
                "job_id": ctx["job_id"],
                "status": ctx["status"],
                "request_status": "unknown",
                "response_status": ctx["response_status"],
                "end_ts": ctx["end_ts"],
                "end_ms": ctx["end_ms"],
                "duration_ms": None,
                "missing_start": True,
                "response": ctx["response"],
                "cost": ctx["cost"],
                "error": ctx["error"],
                **self._meta(meta),
            }
            try:
                await self.store.collection(self.activities_collection).create(
                    doc, self.service, "ai:response-unbound")
            except Exception as err:
                report_error(self.dispatcher.on_error, err, record, "activity_unbound")

        if self.unbound in ("errors", "both"):
            doc = {
                "type": "ai-activity-error",
                "reason": "unbound-response",
                "job_id": ctx["job_id"],
                "response_status": ctx["response_status"],
                "end_ts": ctx["end_ts"],
                "end_ms": ctx["end_ms"],
                "response": ctx["response"],
                "cost": ctx["cost"],
                "error": ctx["error"],
                **self._meta(meta),
            }
            try:
                await self.store.collection(self.errors_collection).create(
                    doc, self.service, "ai:response-unbound")
            except Exception as err:
                report_error(self.dispatcher.on_error, err, record, "activity_unbound")
