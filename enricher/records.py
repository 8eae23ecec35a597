"""Shared record shaping: timestamps, common metadata, bounded sets."""

from datetime import datetime, timezone

# Sources that must never be fed back into the pipeline: the store's own
# internal logging and the engine's internal logger.
STORE_SOURCE = "store"
INTERNAL_SOURCE = "enricher-internal"
INTERNAL_SOURCES = frozenset({STORE_SOURCE, INTERNAL_SOURCE})

DEFAULT_SOURCE = "application"


def now_iso(now: datetime | None = None) -> str:
    """UTC timestamp with fixed millisecond precision (sortable as text)."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def normalize_timestamp(value) -> str:
    """Render a caller timestamp in the now_iso() format.

    Accepts a datetime, epoch seconds, or an ISO 8601 string (``Z`` suffix
    allowed).  Naive values are taken as UTC.  Raises ValueError otherwise.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value, timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"unparseable timestamp {value!r}") from None
    else:
        raise ValueError(f"unsupported timestamp {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return now_iso(parsed)


def is_internal(meta: dict | None) -> bool:
    return bool(meta) and meta.get("source") in INTERNAL_SOURCES


def sanitize_meta(meta: dict | None) -> dict | None:
    """Drop routing hints; None if nothing is left."""
    if not meta:
        return None
    rest = {k: v for k, v in meta.items() if k != "_routing"}
    return rest or None


def common_meta(service: str, env: str, meta: dict | None = None,
                tenant_id_resolver=None) -> dict:
    """Top-level indexing fields shared by every persisted record."""
    meta = meta or {}
    tenant_id = meta.get("tenant_id")
    if tenant_id is None and tenant_id_resolver is not None:
        tenant_id = tenant_id_resolver(meta)
    return {
        "service": service,
        "env": env,
        "source": meta.get("source", DEFAULT_SOURCE),
        "correlation_id": meta.get("correlation_id"),
        "tenant_id": tenant_id,
        "meta": sanitize_meta(meta),
    }


def bounded_union(existing, incoming, max_size: int) -> list:
    """Merge *incoming* into *existing*, dedupe in first-seen order, truncate.

    Truncation keeps the earliest entries: once a set is full, new values are
    not recorded.
    """
    merged = []
    seen = set()
    for item in list(existing or []) + list(incoming or []):
        try:
            if item in seen:
                continue
            seen.add(item)
        except TypeError:
            # unhashable (e.g. {"id": ...} refs)
            if item in merged:
                continue
        merged.append(item)
    return merged[:max_size]
