"""Document store interface and an in-memory reference implementation.

The engine only needs three operations per collection: ``create``,
``enrich`` (partial update, attributed for audit) and ``list_by_meta``
(predicate query).  Durable backends implement Store/Collection; the
MemoryStore here backs tests, the demo service and single-process use.

Query predicates use a small Mongo-style vocabulary:
  {"field": value}                    exact match (array fields match any element)
  {"field": None}                     field missing or null
  {"a.b": {"$exists": True}}          field present
  {"n": {"$gt": 1, "$lte": 9}}        range, numbers or ISO strings
  {"s": {"$regex": "x", "$options": "i"}}
  {"s": {"$in": [..]}}
  {"$and": [query, query, ...]}
Dotted paths fan out across lists, so ``risks.severity`` matches any risk.
"""

import asyncio
import copy
import re
import uuid
from numbers import Real


class StoreError(Exception):
    """Raised by a store when an operation cannot be applied."""


class Collection:
    """One named collection.  Subclass and implement the three coroutines."""

    name: str

    async def create(self, record: dict, actor: str, reason: str) -> dict:
        """Append *record*; return ``{"id": <new id>}``."""
        raise NotImplementedError

    async def enrich(self, record_id: str, update: dict, *,
                     function_id: str, actor: str, reason: str) -> None:
        """Apply a partial update.  Keys may be dotted paths."""
        raise NotImplementedError

    async def list_by_meta(self, query: dict, limit: int | None = None) -> list[dict]:
        """Return documents matching *query* in insertion order."""
        raise NotImplementedError


class Store:
    def collection(self, name: str) -> Collection:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class MemoryCollection(Collection):
    def __init__(self, name: str):
        self.name = name
        self._docs: dict[str, dict] = {}
        # (operation, record_id, actor, reason) for every write
        self.history: list[tuple[str, str, str, str]] = []

    async def create(self, record, actor, reason):
        await asyncio.sleep(0)
        record_id = uuid.uuid4().hex
        doc = copy.deepcopy(record)
        doc["id"] = record_id
        self._docs[record_id] = doc
        self.history.append(("create", record_id, actor, reason))
        return {"id": record_id}

    async def enrich(self, record_id, update, *, function_id, actor, reason):
        await asyncio.sleep(0)
        doc = self._docs.get(record_id)
        if doc is None:
            raise StoreError(f"{self.name}: no document with id {record_id!r}")
        for path, value in update.items():
            _set_path(doc, path, copy.deepcopy(value))
        self.history.append(("enrich", record_id, actor, reason))

    async def list_by_meta(self, query, limit=None):
        await asyncio.sleep(0)
        results = []
        for doc in self._docs.values():
            if matches(doc, query):
                results.append(copy.deepcopy(doc))
                if limit is not None and len(results) >= limit:
                    break
        return results

    def all(self) -> list[dict]:
        return [copy.deepcopy(d) for d in self._docs.values()]

    def __len__(self) -> int:
        return len(self._docs)


class MemoryStore(Store):
    def __init__(self):
        self._collections: dict[str, MemoryCollection] = {}

    def collection(self, name: str) -> MemoryCollection:
        if name not in self._collections:
            self._collections[name] = MemoryCollection(name)
        return self._collections[name]

    def count(self) -> int:
        """Total documents across all collections."""
        return sum(len(c) for c in self._collections.values())


# ---------------------------------------------------------------------------
# Query matching
# ---------------------------------------------------------------------------

def _set_path(doc: dict, path: str, value) -> None:
    keys = path.split(".")
    current = doc
    for key in keys[:-1]:
        nxt = current.get(key)
        if not isinstance(nxt, dict):
            nxt = {}
            current[key] = nxt
        current = nxt
    current[keys[-1]] = value


def _resolve(value, keys: list[str]) -> list:
    """All values reachable along *keys*, fanning out over lists."""
    if not keys:
        return [value]
    key, rest = keys[0], keys[1:]
    if isinstance(value, dict):
        if key not in value:
            return []
        return _resolve(value[key], rest)
    if isinstance(value, list):
        if key.isdigit():
            index = int(key)
            return _resolve(value[index], rest) if index < len(value) else []
        found = []
        for item in value:
            found.extend(_resolve(item, keys))
        return found
    return []


def _candidates(values: list) -> list:
    """Values plus the elements of any array value."""
    out = []
    for v in values:
        out.append(v)
        if isinstance(v, list):
            out.extend(v)
    return out


def _comparable(a, b) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return False
    if isinstance(a, Real) and isinstance(b, Real):
        return True
    return isinstance(a, str) and isinstance(b, str)


_RANGE_OPS = {
    "$gt": lambda a, b: a > b,
    "$gte": lambda a, b: a >= b,
    "$lt": lambda a, b: a < b,
    "$lte": lambda a, b: a <= b,
}


def _match_operators(values: list, spec: dict) -> bool:
    candidates = _candidates(values)
    for op, operand in spec.items():
        if op == "$exists":
            if bool(values) != bool(operand):
                return False
        elif op in _RANGE_OPS:
            fn = _RANGE_OPS[op]
            if not any(_comparable(v, operand) and fn(v, operand) for v in candidates):
                return False
        elif op == "$in":
            if not any(v in operand for v in candidates if not isinstance(v, (dict, list))):
                return False
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in spec.get("$options", "") else 0
            pattern = re.compile(operand, flags)
            if not any(isinstance(v, str) and pattern.search(v) for v in candidates):
                return False
        elif op == "$options":
            continue
        else:
            raise StoreError(f"unsupported query operator {op!r}")
    return True


def _is_operator_spec(value) -> bool:
    return isinstance(value, dict) and value and all(k.startswith("$") for k in value)


def matches(doc: dict, query: dict) -> bool:
    for field, expected in query.items():
        if field == "$and":
            if not all(matches(doc, sub) for sub in expected):
                return False
            continue

        values = _resolve(doc, field.split("."))
        if _is_operator_spec(expected):
            if not _match_operators(values, expected):
                return False
        elif expected is None:
            # null matches a missing field as well as an explicit null
            if values and not any(v is None for v in values):
                return False
        elif not any(v == expected for v in _candidates(values)):
            return False
    return True
