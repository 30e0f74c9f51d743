"""Tests for the safe autonomy LockManager."""

import threading

import pytest

from src.core.safe_autonomy.errors import (
    AlreadyLockedError,
    DuplicateApprovalError,
    LockClosedError,
    NotFoundError,
    ValidationError,
)
from src.core.safe_autonomy.lock_manager import LockManager
from src.core.safe_autonomy.models import (
    LockStatus,
    ProposedAction,
    ReviewDecision,
    RiskLevel,
    UnlockOutcome,
)
from src.core.safe_autonomy.risk_classifier import RiskClassifier
from src.core.safe_autonomy.storage import InMemoryStore


ROLES = {
    "alice": {"senior_reviewer"},
    "bob": {"director"},
    "carol": {"senior_reviewer"},
    "dave": {"reviewer"},
}


@pytest.fixture
def classifier():
    return RiskClassifier()


@pytest.fixture
def manager(bus, audit):
    return LockManager(bus=bus, role_resolver=lambda rid: ROLES.get(rid, set()))


def _lock(manager, classifier, action_type="fund_transfer", action_id=None):
    action = ProposedAction(action_type=action_type, actor="agent-1")
    if action_id:
        action.action_id = action_id
    return manager.create_lock(action, classifier.classify(action_type))


# ── Creation ─────────────────────────────────────────────────────

class TestCreateLock:
    def test_critical_requires_three_senior_approvals(self, manager, classifier):
        lock = _lock(manager, classifier)
        assert lock.status == LockStatus.LOCKED
        assert lock.risk_level == RiskLevel.CRITICAL
        assert lock.requirement.count == 3
        assert set(lock.requirement.roles) == {"senior_reviewer", "director"}

    def test_high_requires_two(self, manager, classifier):
        lock = _lock(manager, classifier, "partnership_commit")
        assert lock.requirement.count == 2

    def test_unconfigured_level_uses_fallback(self, manager):
        assert manager.requirement_for(RiskLevel.LOW).count == 1
        assert manager.requirement_for(RiskLevel.LOW).roles == ()

    def test_second_open_lock_for_same_action_rejected(self, manager, classifier):
        lock = _lock(manager, classifier, action_id="act-1")
        with pytest.raises(AlreadyLockedError) as exc:
            _lock(manager, classifier, action_id="act-1")
        assert exc.value.lock_id == lock.id

    def test_new_lock_allowed_after_previous_closed(self, manager, classifier):
        first = _lock(manager, classifier, action_id="act-1")
        manager.record_approval(first.id, "alice", "reject")
        second = _lock(manager, classifier, action_id="act-1")
        assert second.id != first.id

    def test_locks_for_different_actions_are_independent(self, manager, classifier):
        a = _lock(manager, classifier)
        b = _lock(manager, classifier)
        manager.record_approval(a.id, "alice", "reject")
        assert manager.get(b.id).status == LockStatus.LOCKED

    def test_locked_event_is_audited(self, manager, classifier, audit):
        lock = _lock(manager, classifier)
        entries = audit.query(entity_id=lock.id)
        assert [e.transition for e in entries] == ["locked"]
        assert entries[0].entity_kind == "lock"
        assert entries[0].actor == "agent-1"


# ── Approvals ────────────────────────────────────────────────────

class TestRecordApproval:
    def test_approval_is_recorded_with_roles(self, manager, classifier):
        lock = _lock(manager, classifier)
        lock = manager.record_approval(lock.id, "alice", ReviewDecision.APPROVE, "looks fine")
        assert len(lock.approvals) == 1
        assert lock.approvals[0].reviewer_roles == ("senior_reviewer",)
        assert lock.approvals[0].comment == "looks fine"
        assert lock.status == LockStatus.LOCKED

    def test_duplicate_decision_rejected(self, manager, classifier):
        lock = _lock(manager, classifier)
        manager.record_approval(lock.id, "alice", "approve")
        with pytest.raises(DuplicateApprovalError):
            manager.record_approval(lock.id, "alice", "approve")

    def test_reject_closes_lock_immediately(self, manager, classifier):
        lock = _lock(manager, classifier)
        manager.record_approval(lock.id, "alice", "approve")
        lock = manager.record_approval(lock.id, "bob", "reject")
        assert lock.status == LockStatus.REJECTED
        assert lock.closed_at is not None

    def test_decision_on_closed_lock_rejected(self, manager, classifier):
        lock = _lock(manager, classifier)
        manager.record_approval(lock.id, "alice", "reject")
        with pytest.raises(LockClosedError):
            manager.record_approval(lock.id, "bob", "approve")

    def test_unknown_decision_rejected(self, manager, classifier):
        lock = _lock(manager, classifier)
        with pytest.raises(ValidationError):
            manager.record_approval(lock.id, "alice", "maybe")

    def test_unknown_lock(self, manager):
        with pytest.raises(NotFoundError):
            manager.record_approval("nope", "alice", "approve")


# ── Unlock ───────────────────────────────────────────────────────

class TestAttemptUnlock:
    def test_insufficient_approvals(self, manager, classifier):
        lock = _lock(manager, classifier)
        manager.record_approval(lock.id, "alice", "approve")
        result = manager.attempt_unlock(lock.id)
        assert result.outcome == UnlockOutcome.INSUFFICIENT_APPROVALS
        assert result.approvals_counted == 1
        assert result.approvals_required == 3
        assert not result.unlocked
        assert manager.is_cleared(lock.id) is False

    def test_unlocks_when_requirement_met(self, manager, classifier):
        lock = _lock(manager, classifier, "partnership_commit")
        manager.record_approval(lock.id, "alice", "approve")
        manager.record_approval(lock.id, "bob", "approve")
        result = manager.attempt_unlock(lock.id)
        assert result.outcome == UnlockOutcome.UNLOCKED
        assert result.lock.status == LockStatus.UNLOCKED
        assert manager.is_cleared(lock.id) is True

    def test_second_unlock_reports_already_unlocked(self, manager, classifier):
        lock = _lock(manager, classifier, "partnership_commit")
        manager.record_approval(lock.id, "alice", "approve")
        manager.record_approval(lock.id, "bob", "approve")
        manager.attempt_unlock(lock.id)
        result = manager.attempt_unlock(lock.id)
        assert result.outcome == UnlockOutcome.ALREADY_UNLOCKED
        assert result.unlocked

    def test_approvals_without_required_role_do_not_count(self, manager, classifier):
        lock = _lock(manager, classifier, "partnership_commit")
        manager.record_approval(lock.id, "dave", "approve")
        manager.record_approval(lock.id, "alice", "approve")
        result = manager.attempt_unlock(lock.id)
        assert result.outcome == UnlockOutcome.INSUFFICIENT_APPROVALS
        assert result.approvals_counted == 1

    def test_roles_not_enforced_without_resolver(self, bus, classifier):
        manager = LockManager(bus=bus)
        lock = _lock(manager, classifier, "partnership_commit")
        manager.record_approval(lock.id, "anyone", "approve")
        manager.record_approval(lock.id, "someone", "approve")
        assert manager.attempt_unlock(lock.id).outcome == UnlockOutcome.UNLOCKED

    def test_critical_two_approvals_then_reject_never_unlocks(self, manager, classifier, audit):
        lock = _lock(manager, classifier)
        manager.record_approval(lock.id, "alice", "approve")
        manager.record_approval(lock.id, "bob", "approve")
        manager.record_approval(lock.id, "carol", "reject")

        result = manager.attempt_unlock(lock.id)
        assert result.outcome == UnlockOutcome.REJECTED
        assert "carol" in result.reason
        assert manager.get(lock.id).status == LockStatus.REJECTED
        transitions = [e.transition for e in audit.query(entity_id=lock.id)]
        assert transitions == ["locked", "approved", "approved", "rejected"]
        assert "unlocked" not in transitions

    def test_snapshots_are_isolated(self, manager, classifier):
        lock = _lock(manager, classifier)
        lock.status = LockStatus.UNLOCKED
        assert manager.get(lock.id).status == LockStatus.LOCKED


# ── Concurrency ──────────────────────────────────────────────────

class TestConcurrency:
    def test_concurrent_approvals_unlock_exactly_once(self, bus, classifier, audit):
        manager = LockManager(bus=bus)
        for _ in range(20):
            lock = _lock(manager, classifier, "partnership_commit")
            barrier = threading.Barrier(4)
            outcomes = []

            def worker(reviewer):
                barrier.wait()
                try:
                    manager.record_approval(lock.id, reviewer, "approve")
                except LockClosedError:
                    pass
                outcomes.append(manager.attempt_unlock(lock.id).outcome)

            threads = [threading.Thread(target=worker, args=(f"r{i}",)) for i in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert outcomes.count(UnlockOutcome.UNLOCKED) == 1
            assert len(audit.query(entity_id=lock.id, transition="unlocked")) == 1

    def test_reject_racing_approvals_never_unlocks_below_requirement(self, bus, classifier):
        manager = LockManager(bus=bus)
        for _ in range(20):
            lock = _lock(manager, classifier)
            barrier = threading.Barrier(3)

            def worker(reviewer, decision):
                barrier.wait()
                try:
                    manager.record_approval(lock.id, reviewer, decision)
                except LockClosedError:
                    pass
                manager.attempt_unlock(lock.id)

            threads = [
                threading.Thread(target=worker, args=("r1", "approve")),
                threading.Thread(target=worker, args=("r2", "approve")),
                threading.Thread(target=worker, args=("r3", "reject")),
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            final = manager.get(lock.id)
            assert final.status == LockStatus.REJECTED


# ── Refusals & Wiring ────────────────────────────────────────────

class TestRefusals:
    def test_second_lock_refusal_is_audited(self, manager, classifier, audit):
        lock = _lock(manager, classifier, action_id="act-1")
        with pytest.raises(AlreadyLockedError):
            _lock(manager, classifier, action_id="act-1")
        refused = audit.query(entity_id=lock.id, transition="create_refused")
        assert len(refused) == 1
        assert refused[0].details["action_id"] == "act-1"
        assert len(manager.list_locks()) == 1

    def test_injected_empty_store_is_used(self, bus, classifier):
        store = InMemoryStore()
        manager = LockManager(bus=bus, store=store)
        lock = _lock(manager, classifier)
        assert len(store) == 1
        assert store.get(lock.id).status == LockStatus.LOCKED
