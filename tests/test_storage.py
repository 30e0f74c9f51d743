"""Tests for the safe autonomy entity store and per-key locks."""

import sqlite3
import threading
from dataclasses import dataclass, field

import pytest

from src.core.safe_autonomy.models import ProposedAction, new_id
from src.core.safe_autonomy.storage import InMemoryStore, KeyedLocks, snapshot


@dataclass
class Record:
    action: ProposedAction
    tags: list = field(default_factory=list)
    result: object = None
    id: str = field(default_factory=new_id)


def _record(**context):
    return Record(action=ProposedAction(action_type="document_publish", actor="agent-1",
                                        context=dict(context)))


# ── Snapshots ────────────────────────────────────────────────────

class TestInMemoryStore:
    def test_live_objects_survive_a_round_trip(self):
        store = InMemoryStore()
        guard = threading.Lock()
        record = store.create(_record(lock=guard))
        assert store.get(record.id).action.context["lock"] is guard

    def test_uncopyable_result_is_stored_by_reference(self):
        store = InMemoryStore()
        conn = sqlite3.connect(":memory:")
        try:
            record = store.create(_record())
            record.result = conn
            store.update(record)
            assert store.get(record.id).result is conn
        finally:
            conn.close()

    def test_containers_and_nested_records_are_isolated(self):
        store = InMemoryStore()
        record = store.create(_record(title="a"))
        record.tags.append("x")
        record.action.context["title"] = "changed"
        record.action.actor = "someone-else"
        stored = store.get(record.id)
        assert stored.tags == []
        assert stored.action.context["title"] == "a"
        assert stored.action.actor == "agent-1"

    def test_snapshot_leaves_plain_values_alone(self):
        conn = sqlite3.connect(":memory:")
        try:
            assert snapshot(conn) is conn
        finally:
            conn.close()

    def test_duplicate_create_and_unknown_update(self):
        store = InMemoryStore()
        record = store.create(_record())
        with pytest.raises(KeyError):
            store.create(record)
        with pytest.raises(KeyError):
            store.update(_record())

    def test_empty_store_has_zero_length(self):
        assert len(InMemoryStore()) == 0


# ── Keyed Locks ──────────────────────────────────────────────────

class TestKeyedLocks:
    def test_lock_released_after_use(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_reentrant_hold(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            with locks.hold("a"):
                assert len(locks) == 1
            assert len(locks) == 1
        assert len(locks) == 0

    def test_released_when_body_raises(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0

    def test_many_keys_do_not_accumulate(self):
        locks = KeyedLocks()
        for i in range(500):
            with locks.hold(f"task-{i}"):
                pass
        assert len(locks) == 0

    def test_contended_key_stays_exclusive(self):
        locks = KeyedLocks()
        counter = {"value": 0, "inside": 0, "max_inside": 0}
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(200):
                with locks.hold("shared"):
                    counter["inside"] += 1
                    counter["max_inside"] = max(counter["max_inside"], counter["inside"])
                    counter["value"] += 1
                    counter["inside"] -= 1

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter["value"] == 1600
        assert counter["max_inside"] == 1
        assert len(locks) == 0
