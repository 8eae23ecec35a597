"""Entity aggregate updater — running per-entity summaries.

One document per (entity kind, entity value, tenant), located by a composite
``key`` and updated with read-modify-write on every qualifying audit event:

  user           key = "<app_id>:<user_id>:<tenant>"   sets: tags, context, ips, machines
  ip             key = "<ip>:<tenant>"                 sets: users, apps
  machine        key = "<machine>:<tenant>"            sets: users, apps
  domain         key = "<domain>:<tenant>"             sets: users, apps
  activity_type  key = "<action>:<tenant>"             sets: users, apps

There is no compare-and-swap at the store boundary: two concurrent events
for the same key can both read the same ``total_events`` and one increment
is lost.  Callers that need exact counts must serialize per key themselves.
"""

import logging
from dataclasses import dataclass

from enricher.conditions import get_field
from enricher.dispatch import report_error
from enricher.records import bounded_union, common_meta, now_iso
from enricher.store import Store

logger = logging.getLogger(__name__)

DEFAULT_COLLECTIONS = {
    "users": "users",
    "ips": "ips",
    "machines": "machines",
    "domains": "domains",
    "activity_types": "activity_types",
}

DEFAULT_RESOLVERS = {
    "ip": "data.ip",
    "machine": "data.machine",
    "domain": "data.domain",
    "activity_type": "action",
}


@dataclass(frozen=True)
class AggregateKind:
    name: str
    collection: str  # key into the collections mapping
    value_field: str
    counter: str  # by_action | by_app


KINDS = {
    "user": AggregateKind("user", "users", "user_id", "by_action"),
    "ip": AggregateKind("ip", "ips", "ip", "by_action"),
    "machine": AggregateKind("machine", "machines", "machine", "by_action"),
    "domain": AggregateKind("domain", "domains", "domain", "by_action"),
    "activity_type": AggregateKind("activity_type", "activity_types", "activity_type", "by_app"),
}


def _tenant(tenant_id) -> str:
    return "-" if tenant_id is None else str(tenant_id)


def aggregate_key(kind: str, value, tenant_id) -> str:
    if kind == "user":
        app_id, user_id = value
        return f"{app_id}:{user_id}:{_tenant(tenant_id)}"
    return f"{value}:{_tenant(tenant_id)}"


def resolve(resolver, event: dict, meta: dict | None):
    """A resolver is a dotted path into the event or a callable(event, meta)."""
    if resolver is None:
        return None
    if callable(resolver):
        return resolver(event, meta)
    return get_field(event, resolver)


class AggregateUpdater:

    def __init__(self, store: Store, service: str, env: str,
                 collections: dict[str, str] | None = None,
                 resolvers: dict | None = None,
                 max_set_size: int = 1000,
                 on_error=None):
        if max_set_size < 1:
            raise ValueError("max_set_size must be >= 1")
        self.store = store
        self.service = service
        self.env = env
        self.collections = {**DEFAULT_COLLECTIONS, **(collections or {})}
        self.resolvers = {**DEFAULT_RESOLVERS, **(resolvers or {})}
        self.max_set_size = max_set_size
        self.on_error = on_error

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def update_all(self, event: dict, meta: dict | None, record: dict) -> None:
        """Update every aggregate the event resolves to.

        Each kind is isolated: a failure is reported and the next kind is
        still updated.
        """
        try:
            user_key = self._user_key(event, meta)
        except ValueError as err:
            report_error(self.on_error, err, {"kind": "user", "event": event},
                         component="aggregate:user")
            user_key = None

        ip = resolve(self.resolvers.get("ip"), event, meta)
        machine = resolve(self.resolvers.get("machine"), event, meta)
        activity_type = (resolve(self.resolvers.get("activity_type"), event, meta)
                         or event.get("action"))
        targets = [
            ("user", user_key),
            ("ip", ip),
            ("machine", machine),
            ("domain", resolve(self.resolvers.get("domain"), event, meta)),
            ("activity_type", activity_type),
        ]
        observed = {"ip": ip, "machine": machine}

        for kind, value in targets:
            if not value:
                continue
            try:
                await self.upsert(kind, value, event, record.get("tenant_id"), observed)
            except Exception as err:
                report_error(self.on_error, err, {"kind": kind, "value": value,
                                                  "event": event},
                             component=f"aggregate:{kind}")

    async def upsert(self, kind: str, value, event: dict, tenant_id=None,
                     observed: dict | None = None) -> None:
        """Read-modify-write the aggregate for one entity."""
        kind_def = KINDS[kind]
        coll = self.store.collection(self.collections[kind_def.collection])
        key = aggregate_key(kind, value, tenant_id)
        sets = self._observation(kind, event, observed or {})
        label = self._counter_label(kind_def, event)
        now = now_iso()

        existing = await coll.list_by_meta({"key": key}, limit=1)
        if existing:
            doc = existing[0]
            current = (doc.get("counts") or {}).get(kind_def.counter) or {}
            updates = {
                "total_events": (doc.get("total_events") or 0) + 1,
                "last_seen": now,
                f"counts.{kind_def.counter}.{label}": current.get(label, 0) + 1,
            }
            for name, values in sets.items():
                if values:
                    updates[name] = bounded_union(doc.get(name), values, self.max_set_size)
            await coll.enrich(doc["id"], updates,
                              function_id=f"enricher@{kind}-aggregate",
                              actor=self.service, reason=f"{kind}:update")
            return

        doc = {
            "type": f"{kind}-aggregate",
            "key": key,
            "tenant_id": tenant_id,
            "total_events": 1,
            "first_seen": now,
            "last_seen": now,
            "counts": {kind_def.counter: {label: 1}},
        }
        if kind == "user":
            doc["app_id"], doc["user_id"] = value
        else:
            doc[kind_def.value_field] = value
        for name, values in sets.items():
            doc[name] = bounded_union([], values, self.max_set_size)
        doc.update({k: v for k, v in common_meta(self.service, self.env).items()
                    if k not in doc})
        await coll.create(doc, self.service, f"{kind}:create")
        logger.debug("created %s aggregate %s", kind, key)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _user_key(self, event: dict, meta: dict | None) -> tuple:
        """(app_id, user) pair.  A resolver may return the pair or just the user."""
        value = resolve(self.resolvers.get("user_key"), event, meta)
        if not value:
            return event["app_id"], event["user_id"]
        if isinstance(value, (list, tuple)):
            if len(value) != 2:
                raise ValueError(f"user_key resolver must return (app_id, user), got {value!r}")
            return tuple(value)
        return event["app_id"], value

    @staticmethod
    def _counter_label(kind_def: AggregateKind, event: dict) -> str:
        if kind_def.counter == "by_app":
            label = event.get("app_id")
        else:
            label = event.get("action")
        # Dots would be read as nested paths by enrich().
        return str(label or "unknown").replace(".", "_")

    @staticmethod
    def _observation(kind: str, event: dict, observed: dict) -> dict[str, list]:
        if kind == "user":
            return {
                "tags": list(event.get("tags") or []),
                "context": list(event.get("context") or []),
                "ips": [observed["ip"]] if observed.get("ip") else [],
                "machines": [observed["machine"]] if observed.get("machine") else [],
            }
        return {
            "users": [f"{event.get('app_id')}:{event.get('user_id')}"],
            "apps": [event.get("app_id")],
        }
