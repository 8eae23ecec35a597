"""Tests for the activity correlator — round trip, store fallback, unbound policies."""

import asyncio
from unittest.mock import patch

import pytest

from enricher.activities import ActivityCorrelator, JobCache
from enricher.dispatch import Dispatcher
from enricher.store import MemoryStore


def _correlator(store, policy="both", cache=None):
    return ActivityCorrelator(store, Dispatcher(), "svc", "test",
                              unbound_response_handling=policy, cache=cache)


# ---------------------------------------------------------------------------
# JobCache
# ---------------------------------------------------------------------------

class TestJobCache:
    def test_put_get(self):
        cache = JobCache()
        cache.put("j1", "r1", 1000)
        assert cache.get("j1") == ("r1", 1000)
        assert "j1" in cache

    def test_lru_eviction(self):
        cache = JobCache(capacity=2)
        cache.put("j1", "r1", 0)
        cache.put("j2", "r2", 0)
        cache.put("j3", "r3", 0)
        assert cache.get("j1") is None
        assert len(cache) == 2

    def test_ttl_expiry(self):
        cache = JobCache(ttl_seconds=60)
        with patch("enricher.activities.time") as mock_time:
            mock_time.time.return_value = 1000.0
            cache.put("j1", "r1", 0)
            mock_time.time.return_value = 1059.0
            assert cache.get("j1") == ("r1", 0)
            mock_time.time.return_value = 1061.0
            assert cache.get("j1") is None
        assert len(cache) == 0

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            JobCache(capacity=0)


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------

class TestRoundTrip:
    def setup_method(self):
        self.store = MemoryStore()
        self.correlator = _correlator(self.store)

    def test_request_creates_in_progress_record(self):
        self.correlator.log_request({"job_id": "j1", "model": "m", "user_id": "u1"},
                                    {"correlation_id": "c1"})
        records = self.store.collection("activities").all()
        assert len(records) == 1
        record = records[0]
        assert record["status"] == "in-progress"
        assert record["response_status"] == "pending"
        assert record["request_status"] == "accepted"
        assert record["correlation_id"] == "c1"
        assert "j1" in self.correlator.cache

    def test_response_enriches_same_record(self):
        self.correlator.log_request({"job_id": "j1"})
        request_id = self.store.collection("activities").all()[0]["id"]
        self.correlator.log_response({"job_id": "j1", "response": {"ok": True},
                                      "cost": 0.01})
        records = self.store.collection("activities").all()
        assert len(records) == 1
        record = records[0]
        assert record["id"] == request_id
        assert record["status"] == "completed"
        assert record["response_status"] == "completed"
        assert record["duration_ms"] >= 0
        assert record["cost"] == 0.01
        assert "j1" not in self.correlator.cache

    def test_duration_from_clock(self):
        with patch("enricher.activities.time") as mock_time:
            mock_time.time.return_value = 1000.0
            self.correlator.log_request({"job_id": "j1"})
            mock_time.time.return_value = 1002.5
            self.correlator.log_response({"job_id": "j1"})
        assert self.store.collection("activities").all()[0]["duration_ms"] == 2500

    def test_error_marks_failed(self):
        self.correlator.log_request({"job_id": "j1"})
        self.correlator.log_response({"job_id": "j1", "error": {"message": "timeout"}})
        record = self.store.collection("activities").all()[0]
        assert record["status"] == "failed"
        assert record["response_status"] == "failed"
        assert record["error"] == {"message": "timeout"}

    def test_cache_miss_falls_back_to_store(self):
        self.correlator.log_request({"job_id": "j1"})
        # a fresh correlator has an empty cache, as after a restart
        restarted = _correlator(self.store)
        restarted.log_response({"job_id": "j1"})
        records = self.store.collection("activities").all()
        assert len(records) == 1
        assert records[0]["status"] == "completed"
        assert len(self.store.collection("errors")) == 0

    def test_missing_job_id_raises(self):
        with pytest.raises(ValueError):
            self.correlator.log_request({"model": "m"})
        with pytest.raises(ValueError):
            self.correlator.log_response({})

    def test_internal_source_ignored(self):
        self.correlator.log_request({"job_id": "j1"}, {"source": "store"})
        assert self.store.count() == 0


class TestUnbound:
    def test_drop_creates_nothing(self):
        store = MemoryStore()
        _correlator(store, "drop").log_response({"job_id": "ghost"})
        assert store.count() == 0

    def test_both_creates_activity_and_error(self):
        store = MemoryStore()
        _correlator(store, "both").log_response({"job_id": "ghost"})
        activities = store.collection("activities").all()
        errors = store.collection("errors").all()
        assert len(activities) == 1
        assert len(errors) == 1
        assert activities[0]["missing_start"] is True
        assert activities[0]["job_id"] == "ghost"
        assert errors[0]["reason"] == "unbound-response"

    def test_errors_only(self):
        store = MemoryStore()
        _correlator(store, "errors").log_response({"job_id": "ghost"})
        assert len(store.collection("activities")) == 0
        assert len(store.collection("errors")) == 1

    def test_activities_only(self):
        store = MemoryStore()
        _correlator(store, "activities").log_response({"job_id": "ghost"})
        assert len(store.collection("activities")) == 1
        assert len(store.collection("errors")) == 0

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            _correlator(MemoryStore(), "retry")


class TestConcurrentLoop:
    def test_round_trip_inside_running_loop(self):
        store = MemoryStore()
        correlator = _correlator(store)

        async def scenario():
            correlator.log_request({"job_id": "j1"})
            await correlator.dispatcher.flush()
            correlator.log_response({"job_id": "j1"})
            await correlator.dispatcher.flush()

        asyncio.run(scenario())
        records = store.collection("activities").all()
        assert len(records) == 1
        assert records[0]["status"] == "completed"

    def test_response_racing_request_leaves_no_cache_entry(self):
        store = MemoryStore()
        correlator = _correlator(store)

        async def scenario():
            correlator.log_request({"job_id": "j1"})
            correlator.log_response({"job_id": "j1"})
            await correlator.dispatcher.flush()

        asyncio.run(scenario())
        records = store.collection("activities").all()
        assert len(records) == 1
        assert records[0]["status"] == "completed"
        assert len(store.collection("errors")) == 0
        assert "j1" not in correlator.cache
        assert len(correlator.cache) == 0
