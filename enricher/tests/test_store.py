"""Tests for MemoryStore — create/enrich/list_by_meta and the query vocabulary."""

import asyncio

import pytest

from enricher.store import MemoryStore, StoreError, matches

DOC = {
    "user_id": "u1",
    "action": "login",
    "attempts": 3,
    "occurred_at": "2024-05-01T12:00:30.000+00:00",
    "tags": ["vpn", "mobile"],
    "data": {"ip": "10.0.0.1"},
    "risks": [{"severity": "high"}, {"severity": "low"}],
}


class TestMatches:
    def test_exact(self):
        assert matches(DOC, {"user_id": "u1", "action": "login"})
        assert not matches(DOC, {"user_id": "u2"})

    def test_dotted(self):
        assert matches(DOC, {"data.ip": "10.0.0.1"})

    def test_array_field_matches_element(self):
        assert matches(DOC, {"tags": "vpn"})

    def test_fan_out_over_list_of_documents(self):
        assert matches(DOC, {"risks.severity": "low"})
        assert not matches(DOC, {"risks.severity": "critical"})

    def test_exists(self):
        assert matches(DOC, {"risks": {"$exists": True}})
        assert matches(DOC, {"insights": {"$exists": False}})
        assert not matches(DOC, {"insights": {"$exists": True}})

    def test_numeric_range(self):
        assert matches(DOC, {"attempts": {"$gt": 2, "$lte": 3}})
        assert not matches(DOC, {"attempts": {"$lt": 3}})

    def test_iso_string_range(self):
        assert matches(DOC, {"occurred_at": {
            "$gte": "2024-05-01T12:00:00.000+00:00",
            "$lte": "2024-05-01T12:01:00.000+00:00",
        }})
        assert not matches(DOC, {"occurred_at": {"$gte": "2024-05-01T12:01:00.000+00:00"}})

    def test_range_across_types_never_matches(self):
        assert not matches(DOC, {"attempts": {"$gt": "1"}})

    def test_in(self):
        assert matches(DOC, {"action": {"$in": ["login", "logout"]}})
        assert not matches(DOC, {"action": {"$in": ["view"]}})

    def test_regex_with_options(self):
        assert matches(DOC, {"action": {"$regex": "LOG", "$options": "i"}})
        assert not matches(DOC, {"action": {"$regex": "LOG"}})

    def test_and(self):
        assert matches(DOC, {"$and": [{"action": "login"}, {"tags": "mobile"}]})
        assert not matches(DOC, {"$and": [{"action": "login"}, {"tags": "desktop"}]})

    def test_null_matches_missing_or_null_field(self):
        assert matches(DOC, {"target": None})
        assert matches({**DOC, "target": None}, {"target": None})
        assert not matches({**DOC, "target": "db-1"}, {"target": None})
        assert matches(DOC, {"data.host": None})
        assert not matches(DOC, {"data.ip": None})

    def test_unknown_operator_raises(self):
        with pytest.raises(StoreError):
            matches(DOC, {"action": {"$near": 1}})


class TestMemoryCollection:
    def setup_method(self):
        self.store = MemoryStore()
        self.coll = self.store.collection("auditlogs")

    def test_create_assigns_id_and_copies(self):
        record = {"user_id": "u1"}
        result = asyncio.run(self.coll.create(record, "svc", "audit:create"))
        assert result["id"]
        assert "id" not in record
        assert self.coll.all()[0]["id"] == result["id"]
        assert self.coll.history == [("create", result["id"], "svc", "audit:create")]

    def test_enrich_dotted_paths(self):
        async def scenario():
            created = await self.coll.create({"counts": {"by_action": {"login": 1}}},
                                             "svc", "r")
            await self.coll.enrich(created["id"], {"counts.by_action.login": 2,
                                                   "counts.by_action.view": 1,
                                                   "last_seen": "t"},
                                   function_id="f", actor="svc", reason="update")
            return (await self.coll.list_by_meta({"id": created["id"]}))[0]

        doc = asyncio.run(scenario())
        assert doc["counts"]["by_action"] == {"login": 2, "view": 1}
        assert doc["last_seen"] == "t"

    def test_enrich_unknown_id_raises(self):
        with pytest.raises(StoreError):
            asyncio.run(self.coll.enrich("missing", {"a": 1}, function_id="f",
                                         actor="svc", reason="r"))

    def test_list_by_meta_limit_and_order(self):
        async def scenario():
            for i in range(5):
                await self.coll.create({"user_id": "u1", "n": i}, "svc", "r")
            return await self.coll.list_by_meta({"user_id": "u1"}, limit=2)

        found = asyncio.run(scenario())
        assert [d["n"] for d in found] == [0, 1]

    def test_results_are_copies(self):
        async def scenario():
            await self.coll.create({"user_id": "u1"}, "svc", "r")
            found = await self.coll.list_by_meta({"user_id": "u1"})
            found[0]["user_id"] = "changed"
            return await self.coll.list_by_meta({"user_id": "u1"})

        assert len(asyncio.run(scenario())) == 1

    def test_store_count(self):
        asyncio.run(self.coll.create({}, "svc", "r"))
        asyncio.run(self.store.collection("logs").create({}, "svc", "r"))
        assert self.store.count() == 2
