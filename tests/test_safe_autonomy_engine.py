"""End-to-end tests for the SafeAutonomyEngine."""

import threading
import time

import pytest

from src.core.safe_autonomy.config import (
    PassiveConsensusConfig,
    RetryConfig,
    SafeAutonomyConfig,
)
from src.core.safe_autonomy.engine import SafeAutonomyEngine
from src.core.safe_autonomy.errors import (
    NoReviewersAvailableError,
    ReviewAlreadyResolvedError,
    TransientError,
    ValidationError,
)
from src.core.safe_autonomy.models import (
    ConsensusStatus,
    LockStatus,
    RetryStatus,
    SubmissionOutcome,
    UnlockOutcome,
)
from src.core.safe_autonomy.storage import InMemoryStore


def _config(**overrides):
    values = dict(
        retry=RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False),
        passive_consensus=PassiveConsensusConfig(auto_resolve=False),
    )
    values.update(overrides)
    return SafeAutonomyConfig(**values)


@pytest.fixture
def engine():
    eng = SafeAutonomyEngine(_config())
    yield eng
    eng.stop()


@pytest.fixture
def staffed(engine):
    """Engine with a full reviewer bench."""
    engine.register_reviewer("rita", ["reviewer"])
    engine.register_reviewer("sam", ["senior_reviewer"])
    engine.register_reviewer("sue", ["senior_reviewer"])
    engine.register_reviewer("dana", ["director"])
    return engine


# ── Submission ───────────────────────────────────────────────────

class TestSubmitAction:
    def test_ambient_action_is_allowed(self, engine):
        result = engine.submit_action("agent-1", "agent_chatter")
        assert result.outcome == SubmissionOutcome.ALLOWED
        assert result.classification.level.label == "none"
        entries = engine.audit_entries(entity_id=result.action_id)
        assert [e.transition for e in entries] == ["allowed"]

    def test_low_risk_goes_to_passive_consensus(self, engine):
        result = engine.submit_action("agent-1", "document_publish", {"title": "Weekly digest"})
        assert result.outcome == SubmissionOutcome.PENDING_CONSENSUS
        assert result.item_id is not None
        pending = engine.consensus_items(ConsensusStatus.PENDING)
        assert [i.id for i in pending] == [result.item_id]

    def test_critical_action_is_locked_and_routed(self, staffed):
        result = staffed.submit_action("agent-1", "fund_transfer", {"amount": 500})
        assert result.outcome == SubmissionOutcome.LOCKED
        assert result.lock_id and result.review_id
        review = staffed.router.get(result.review_id)
        assert set(review.assigned_reviewers) == {"sam", "sue", "dana"}
        assert [r.id for r in staffed.pending_reviews()] == [result.review_id]
        assert staffed.locks(LockStatus.LOCKED)[0].id == result.lock_id

    def test_large_amount_escalates_low_risk_action_to_lock(self, staffed):
        result = staffed.submit_action("agent-1", "document_publish", {"amount": 250_000})
        assert result.outcome == SubmissionOutcome.LOCKED
        assert result.classification.locked

    def test_blocked_actor_is_denied(self, engine):
        engine.guard.block_actor("spammer")
        result = engine.submit_action("spammer", "agent_chatter")
        assert result.outcome == SubmissionOutcome.DENIED
        assert "blocked" in result.reason
        assert result.classification is None

    def test_repeated_content_is_flagged_into_review(self, staffed):
        outcomes = [
            staffed.submit_action("agent-1", "document_publish", {"content": "Same pitch"}).outcome
            for _ in range(3)
        ]
        assert outcomes == [
            SubmissionOutcome.PENDING_CONSENSUS,
            SubmissionOutcome.PENDING_CONSENSUS,
            SubmissionOutcome.LOCKED,
        ]
        flagged = staffed.locks(LockStatus.LOCKED)
        assert len(flagged) == 1

    def test_invalid_input_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.submit_action("", "agent_chatter")
        with pytest.raises(ValidationError):
            engine.submit_action("agent-1", "  ")
        with pytest.raises(ValidationError):
            engine.submit_action("agent-1", "agent_chatter", context=["not", "a", "mapping"])

    def test_no_reviewers_leaves_lock_open_until_one_registers(self, engine):
        with pytest.raises(NoReviewersAvailableError):
            engine.submit_action("agent-1", "fund_transfer")
        locks = engine.locks(LockStatus.LOCKED)
        assert len(locks) == 1
        assert engine.pending_reviews() == []

        engine.register_reviewer("dana", ["director"])
        reviews = engine.pending_reviews()
        assert len(reviews) == 1
        assert reviews[0].item_id == locks[0].id
        assert reviews[0].assigned_reviewers == ("dana",)


# ── Review Decisions ─────────────────────────────────────────────

class TestReviewDecisions:
    def test_required_approvals_unlock_and_close_review(self, staffed):
        result = staffed.submit_action("agent-1", "fund_transfer")
        first = staffed.record_review_decision(result.review_id, "sam", "approve")
        assert first.outcome == UnlockOutcome.INSUFFICIENT_APPROVALS
        staffed.record_review_decision(result.review_id, "sue", "approve")
        final = staffed.record_review_decision(result.review_id, "dana", "approve", "ok")

        assert final.outcome == UnlockOutcome.UNLOCKED
        assert staffed.pending_reviews() == []
        assert staffed.router.get(result.review_id).resolution == "unlocked"
        transitions = [e.transition for e in staffed.audit_entries(entity_id=result.lock_id)]
        assert transitions[0] == "locked"
        assert transitions.count("approved") == 3
        assert transitions[-1] == "unlocked"

    def test_reject_after_two_approvals_closes_review(self, staffed):
        result = staffed.submit_action("agent-1", "fund_transfer")
        staffed.record_review_decision(result.review_id, "sam", "approve")
        staffed.record_review_decision(result.review_id, "sue", "approve")
        final = staffed.record_review_decision(result.review_id, "dana", "reject", "too big")

        assert final.outcome == UnlockOutcome.REJECTED
        assert staffed.lock_manager.get(result.lock_id).status == LockStatus.REJECTED
        assert staffed.router.get(result.review_id).resolution == "rejected"
        with pytest.raises(ReviewAlreadyResolvedError):
            staffed.record_review_decision(result.review_id, "rita", "approve")

    def test_reviewer_outside_group_is_refused(self, staffed):
        result = staffed.submit_action("agent-1", "fund_transfer")
        with pytest.raises(ValidationError):
            staffed.record_review_decision(result.review_id, "rita", "approve")
        assert staffed.lock_manager.get(result.lock_id).approvals == []


# ── Passive Consensus ────────────────────────────────────────────

class TestConsensusFlow:
    def test_veto_escalates_to_lock_and_review(self, staffed):
        submitted = staffed.submit_action("agent-1", "document_publish", {"title": "Draft"})
        vetoed = staffed.veto(submitted.item_id, "human-1", "not ready")

        assert vetoed.status == ConsensusStatus.ESCALATED
        lock_id = vetoed.item.escalated_lock_id
        assert staffed.lock_manager.get(lock_id).status == LockStatus.LOCKED
        review = staffed.router.open_review_for(lock_id)
        assert review is not None
        assert "human-1" in review.summary

        unlocked = staffed.record_review_decision(review.id, "rita", "approve")
        assert unlocked.outcome == UnlockOutcome.UNLOCKED

    def test_explicit_approval(self, engine):
        submitted = engine.submit_action("agent-1", "proposal_create")
        result = engine.approve_consensus(submitted.item_id, "human-1")
        assert result.is_approved
        assert engine.consensus_items(ConsensusStatus.APPROVED)[0].id == submitted.item_id


# ── Retry ────────────────────────────────────────────────────────

class TestRetry:
    def test_execute_with_retry_uses_engine_config(self, engine):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise TransientError("storage timeout")
            return "stored"

        result = engine.execute_with_retry(flaky, name="persist")
        assert result.success
        assert result.result == "stored"
        assert [t.name for t in engine.retry_tasks(RetryStatus.SUCCEEDED)] == ["persist"]

    def test_exhausted_task_is_visible(self, engine):
        def always_fails():
            raise TransientError("down")

        result = engine.execute_with_retry(always_fails)
        assert result.status == RetryStatus.EXHAUSTED
        assert len(engine.retry_tasks(RetryStatus.EXHAUSTED)) == 1


# ── Maintenance & Observers ──────────────────────────────────────

class TestMaintenance:
    def test_sweep_approves_expired_consensus(self):
        config = _config(passive_consensus=PassiveConsensusConfig(
            auto_resolve=False, window_seconds_by_level={"low": 0, "medium": 0},
        ))
        engine = SafeAutonomyEngine(config)
        try:
            submitted = engine.submit_action("agent-1", "document_publish")
            summary = engine.sweep()
            assert summary["consensus_approved"] == 1
            assert summary["reviews_escalated"] == 0
            item = engine.consensus.get(submitted.item_id)
            assert item.status == ConsensusStatus.APPROVED
            assert engine.consensus.unreviewed_label(item) != ""
        finally:
            engine.stop()

    def test_background_sweeper(self):
        config = _config(passive_consensus=PassiveConsensusConfig(
            auto_resolve=False, window_seconds_by_level={"low": 0, "medium": 0},
        ))
        engine = SafeAutonomyEngine(config)
        try:
            submitted = engine.submit_action("agent-1", "document_publish")
            engine.start_sweeper(interval=0.01)
            deadline = time.time() + 2.0
            while time.time() < deadline:
                if engine.consensus.get(submitted.item_id).status == ConsensusStatus.APPROVED:
                    break
                time.sleep(0.01)
            assert engine.consensus.get(submitted.item_id).status == ConsensusStatus.APPROVED
        finally:
            engine.stop()

    def test_subscribe_to_one_event_type(self, engine):
        seen = []
        engine.subscribe(seen.append, "action.allowed")
        engine.submit_action("agent-1", "agent_chatter")
        engine.submit_action("agent-1", "document_publish")
        assert [e.type for e in seen] == ["action.allowed"]

    def test_deregister_reviewer(self, staffed):
        assert staffed.deregister_reviewer("rita") is True
        assert staffed.deregister_reviewer("rita") is False
        assert staffed.audit_entries(entity_id="rita", transition="deregistered")


# ── Wiring ───────────────────────────────────────────────────────

class TestWiring:
    def test_router_shares_the_engine_registry(self, engine):
        assert engine.router.registry is engine.registry
        engine.register_reviewer("sam", ["senior_reviewer"])
        assert engine.router.registry.get("sam") is not None

    def test_injected_empty_stores_are_used(self):
        stores = {name: InMemoryStore() for name in ("lock", "review", "consensus", "task")}
        eng = SafeAutonomyEngine(
            _config(),
            lock_store=stores["lock"],
            review_store=stores["review"],
            consensus_store=stores["consensus"],
            task_store=stores["task"],
        )
        try:
            eng.register_reviewer("sam", ["senior_reviewer"])
            eng.register_reviewer("dana", ["director"])
            locked = eng.submit_action("agent-1", "fund_transfer", {"amount": 500})
            pending = eng.submit_action("agent-1", "document_publish")
            task = eng.execute_with_retry(lambda: "ok")

            assert stores["lock"].get(locked.lock_id) is not None
            assert stores["review"].get(locked.review_id) is not None
            assert stores["consensus"].get(pending.item_id) is not None
            assert stores["task"].get(task.task_id) is not None
        finally:
            eng.stop()

    def test_live_context_values_are_accepted(self, engine):
        result = engine.submit_action("agent-1", "document_publish", {"lock": threading.Lock()})
        assert result.outcome == SubmissionOutcome.PENDING_CONSENSUS
        assert engine.consensus.get(result.item_id).action.context["lock"] is not None
