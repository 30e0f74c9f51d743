"""Tests for the safe autonomy AuditTrail and EventBus."""

import json
import logging
from datetime import datetime, timedelta, timezone

from src.core.safe_autonomy.audit import AuditTrail
from src.core.safe_autonomy.config import AuditConfig
from src.core.safe_autonomy.event_bus import Event, EventBus


# ── Event Bus ────────────────────────────────────────────────────

class TestEventBus:
    def test_typed_subscription_only_sees_its_type(self, bus):
        seen = []
        bus.subscribe("lock.unlocked", seen.append)
        bus.emit("lock.locked", entity_id="l1")
        bus.emit("lock.unlocked", entity_id="l1")
        assert [e.type for e in seen] == ["lock.unlocked"]

    def test_subscribe_all_sees_everything(self, bus, events):
        bus.emit("lock.locked")
        bus.emit("task.retry")
        assert [e.type for e in events] == ["lock.locked", "task.retry"]

    def test_unsubscribe(self, bus):
        seen = []
        bus.subscribe_all(seen.append)
        bus.unsubscribe(seen.append)
        bus.emit("lock.locked")
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self, bus, caplog):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe_all(broken)
        bus.subscribe_all(seen.append)
        with caplog.at_level(logging.ERROR):
            bus.emit("lock.locked")
        assert len(seen) == 1
        assert "boom" in caplog.text

    def test_event_kind_and_transition(self):
        event = Event(type="consensus.escalation_failed")
        assert event.kind == "consensus"
        assert event.transition == "escalation_failed"
        assert event.to_dict()["type"] == "consensus.escalation_failed"


# ── Audit Trail ──────────────────────────────────────────────────

class TestAuditTrail:
    def test_event_becomes_entry(self, bus, audit):
        bus.emit("lock.approved", entity_id="lock-1", actor="alice", reviewer_id="alice")
        entries = audit.query(entity_id="lock-1")
        assert len(entries) == 1
        entry = entries[0]
        assert entry.entity_kind == "lock"
        assert entry.transition == "approved"
        assert entry.actor == "alice"
        assert entry.details == {"reviewer_id": "alice"}

    def test_missing_actor_defaults_to_system(self, bus, audit):
        bus.emit("task.created", entity_id="t1")
        assert audit.query(entity_id="t1")[0].actor == "system"

    def test_query_filters_combine(self, bus, audit):
        bus.emit("lock.locked", entity_id="l1")
        bus.emit("lock.unlocked", entity_id="l1")
        bus.emit("lock.locked", entity_id="l2")
        bus.emit("task.created", entity_id="t1")
        assert len(audit.query(entity_kind="lock")) == 3
        assert len(audit.query(entity_kind="lock", transition="locked")) == 2
        assert len(audit.query(entity_id="l1", transition="unlocked")) == 1

    def test_query_since(self, audit):
        old = datetime(2025, 1, 1, tzinfo=timezone.utc)
        audit.record("l1", "lock", "locked", timestamp=old)
        audit.record("l1", "lock", "unlocked")
        recent = audit.query(since=old + timedelta(days=1))
        assert [e.transition for e in recent] == ["unlocked"]

    def test_get_recent_newest_first(self, audit):
        for i in range(5):
            audit.record(f"t{i}", "task", "created")
        assert [e.entity_id for e in audit.get_recent(2)] == ["t4", "t3"]
        assert audit.total_entries == 5

    def test_disabled_trail_records_nothing(self, bus):
        trail = AuditTrail(AuditConfig(enabled=False))
        trail.attach(bus)
        bus.emit("lock.locked", entity_id="l1")
        assert trail.total_entries == 0

    def test_detach_stops_recording(self, bus, audit):
        audit.detach(bus)
        bus.emit("lock.locked", entity_id="l1")
        assert audit.total_entries == 0

    def test_persists_jsonl_and_reloads(self, tmp_data_dir):
        path = tmp_data_dir / "audit.jsonl"
        trail = AuditTrail(AuditConfig(path=str(path)))
        first = trail.record("l1", "lock", "locked", actor="agent-1", details={"risk": "high"})
        trail.record("l1", "lock", "rejected", actor="carol")

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["transition"] == "locked"

        reloaded = AuditTrail(AuditConfig(path=str(path)))
        entries = reloaded.query(entity_id="l1")
        assert [e.transition for e in entries] == ["locked", "rejected"]
        assert entries[0].id == first.id
        assert entries[0].details == {"risk": "high"}
        assert entries[0].timestamp == first.timestamp

    def test_reload_appends_without_rewriting(self, tmp_data_dir):
        path = tmp_data_dir / "audit.jsonl"
        AuditTrail(AuditConfig(path=str(path))).record("l1", "lock", "locked")
        AuditTrail(AuditConfig(path=str(path))).record("l1", "lock", "unlocked")
        assert len(path.read_text(encoding="utf-8").splitlines()) == 2
