"""
Safe Autonomy: Engine

Composes the guard, classifier, lock manager, router, passive consensus and
retry handler behind the entry points an agent platform calls.

submit_action pipeline:
    AntiAbuseGuard -> RiskClassifier ->
        locked or flagged      -> LockManager + ApprovalRouter
        eligible for consensus -> PassiveConsensusManager
        otherwise              -> allowed

Every component publishes on one EventBus; the AuditTrail records all of it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any, Callable, Iterable, List, Optional

from .anti_abuse import AntiAbuseGuard
from .approval_router import ApprovalRouter, ReviewerRegistry
from .audit import AuditTrail
from .config import RetryConfig, SafeAutonomyConfig
from .errors import (
    NoReviewersAvailableError,
    NotFoundError,
    ReviewAlreadyResolvedError,
    ValidationError,
)
from .event_bus import EventBus, Subscriber
from .lock_manager import LockManager
from .models import (
    AbuseDecision,
    AuditEntry,
    ConsensusCheckResult,
    ConsensusStatus,
    LockedAction,
    LockStatus,
    PassiveConsensusItem,
    PendingReview,
    ProposedAction,
    Reviewer,
    ReviewDecision,
    ReviewItem,
    RetryStatus,
    RiskClassification,
    Signal,
    SubmissionOutcome,
    SubmissionResult,
    UnlockOutcome,
    UnlockResult,
    VetoRecord,
)
from .passive_consensus import PassiveConsensusManager
from .retry_handler import RetryableTask, RetryHandler, RetryResult
from .risk_classifier import RiskClassifier
from .storage import EntityStore

logger = logging.getLogger(__name__)

# Context keys that carry the human-readable body of an action
_CONTENT_KEYS = ("content", "summary", "title")


class SafeAutonomyEngine:
    """Single entry point for gating agent actions."""

    def __init__(
        self,
        config: Optional[SafeAutonomyConfig] = None,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditTrail] = None,
        lock_store: Optional[EntityStore[LockedAction]] = None,
        review_store: Optional[EntityStore[PendingReview]] = None,
        consensus_store: Optional[EntityStore[PassiveConsensusItem]] = None,
        task_store: Optional[EntityStore[RetryableTask]] = None,
    ):
        self._config = config or SafeAutonomyConfig()
        self._bus = bus or EventBus()
        self._audit = audit or AuditTrail(self._config.audit)
        self._audit.attach(self._bus)

        self._classifier = RiskClassifier(self._config.risk_classification)
        self._registry = ReviewerRegistry()
        self._guard = AntiAbuseGuard(self._config.anti_abuse, self._bus)
        self._locks = LockManager(
            self._config.locks, self._bus, lock_store,
            role_resolver=self._registry.roles_of,
        )
        self._router = ApprovalRouter(self._config.routing, self._registry, self._bus, review_store)
        self._consensus = PassiveConsensusManager(
            self._config.passive_consensus,
            lock_threshold=self._classifier.lock_threshold,
            bus=self._bus,
            store=consensus_store,
            escalation_handler=self._escalate_vetoed,
        )
        self._retry = RetryHandler(self._config.retry, self._bus, task_store)

        self._sweep_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ── Components ───────────────────────────────────────────────

    @property
    def config(self) -> SafeAutonomyConfig:
        return self._config

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def audit(self) -> AuditTrail:
        return self._audit

    @property
    def classifier(self) -> RiskClassifier:
        return self._classifier

    @property
    def guard(self) -> AntiAbuseGuard:
        return self._guard

    @property
    def lock_manager(self) -> LockManager:
        return self._locks

    @property
    def router(self) -> ApprovalRouter:
        return self._router

    @property
    def registry(self) -> ReviewerRegistry:
        return self._registry

    @property
    def consensus(self) -> PassiveConsensusManager:
        return self._consensus

    @property
    def retry_handler(self) -> RetryHandler:
        return self._retry

    # ── Actions ──────────────────────────────────────────────────

    def submit_action(
        self,
        actor: str,
        action_type: str,
        context: Optional[Mapping[str, Any]] = None,
        action_id: Optional[str] = None,
    ) -> SubmissionResult:
        """Gate one proposed action.

        Returns:
            SubmissionResult with outcome allowed, locked (lock_id, review_id),
            pending_consensus (item_id) or denied (reason).

        Raises:
            ValidationError: Malformed actor, action type or context.
            AlreadyLockedError: The action id already has an open lock.
            NoReviewersAvailableError: Locked, but nobody can review it yet.
                The lock stays open and is routed once a matching reviewer
                registers.
        """
        if not actor:
            raise ValidationError("actor must be non-empty")
        if not isinstance(action_type, str) or not action_type.strip():
            raise ValidationError("action_type must be a non-empty string")
        if context is not None and not isinstance(context, Mapping):
            raise ValidationError(f"context must be a mapping, got {type(context).__name__}")

        action = ProposedAction(action_type=action_type, actor=actor, context=dict(context or {}))
        if action_id:
            action.action_id = action_id

        signal = Signal(
            actor=actor,
            kind=action_type,
            content=_signal_content(action.context),
            id=action.action_id,
        )
        verdict = self._guard.validate(actor, signal)
        if verdict.decision == AbuseDecision.DENY:
            logger.info("Action %s from %s denied: %s", action.action_id, actor, verdict.reason)
            return SubmissionResult(
                outcome=SubmissionOutcome.DENIED,
                action_id=action.action_id,
                reason=verdict.reason,
            )

        classification = self._classifier.classify(action_type, action.context)
        burst = self._guard.record_risk(actor, signal.id, classification.level)
        flagged = verdict.flagged or burst

        if classification.locked or flagged:
            reason = classification.rationale
            if flagged:
                reason = f"{reason}; flagged for review: {verdict.reason or 'high-risk burst'}"
            return self._lock_and_route(action, classification, reason, flagged)

        if (
            self._consensus.can_auto_approve(classification)
            and classification.level >= self._consensus.min_level
        ):
            item = self._consensus.propose(action, classification)
            return SubmissionResult(
                outcome=SubmissionOutcome.PENDING_CONSENSUS,
                action_id=action.action_id,
                reason=f"{classification.rationale}; approved at {item.deadline.isoformat()} unless vetoed",
                classification=classification,
                item_id=item.id,
            )

        self._bus.emit(
            "action.allowed",
            entity_id=action.action_id,
            actor=actor,
            action_type=action_type,
            risk_level=classification.level.label,
        )
        return SubmissionResult(
            outcome=SubmissionOutcome.ALLOWED,
            action_id=action.action_id,
            reason=classification.rationale,
            classification=classification,
        )

    def record_review_decision(
        self,
        review_id: str,
        reviewer_id: str,
        decision: ReviewDecision | str,
        comment: str = "",
    ) -> UnlockResult:
        """Apply a reviewer's decision to the lock behind a review.

        The review is closed once the lock reaches unlocked or rejected.
        """
        review = self._router.get(review_id)
        if review is None:
            raise NotFoundError("review", review_id)
        if not review.is_open:
            raise ReviewAlreadyResolvedError(review_id, review.resolution)
        if review.item_kind != "lock":
            raise ValidationError(f"Review {review_id} is not a lock review")
        self._router.check_reviewer(review, reviewer_id)

        self._locks.record_approval(review.item_id, reviewer_id, decision, comment)
        result = self._locks.attempt_unlock(review.item_id, actor=reviewer_id)

        if result.outcome in (UnlockOutcome.UNLOCKED, UnlockOutcome.REJECTED):
            try:
                self._router.resolve(review_id, result.outcome.value, actor=reviewer_id)
            except ReviewAlreadyResolvedError:
                # A concurrent decision closed it first
                logger.debug("Review %s already resolved", review_id)
        return result

    def veto(self, item_id: str, actor: str, reason: str = "") -> ConsensusCheckResult:
        """Veto a passive-consensus item, escalating it to lock-and-review."""
        return self._consensus.veto(item_id, actor, reason)

    def approve_consensus(self, item_id: str, actor: str) -> ConsensusCheckResult:
        return self._consensus.approve(item_id, actor)

    # ── Reviewers ────────────────────────────────────────────────

    def register_reviewer(
        self,
        reviewer_id: str,
        roles: Iterable[str],
        available: bool = True,
    ) -> Reviewer:
        """Register a reviewer and route any locks that were waiting for one."""
        reviewer = self._registry.add(reviewer_id, roles, available)
        self._bus.emit(
            "reviewer.registered",
            entity_id=reviewer_id,
            actor="system",
            roles=sorted(reviewer.roles),
            available=available,
        )
        if available:
            self._route_unassigned_locks()
        return reviewer

    def deregister_reviewer(self, reviewer_id: str) -> bool:
        removed = self._registry.remove(reviewer_id)
        if removed:
            self._bus.emit("reviewer.deregistered", entity_id=reviewer_id, actor="system")
        return removed

    # ── Retry ────────────────────────────────────────────────────

    def execute_with_retry(
        self,
        fn: Callable[[], Any],
        config: Optional[RetryConfig] = None,
        name: str = "task",
    ) -> RetryResult:
        return self._retry.execute_with_retry(fn, config, name=name)

    # ── Observer Surface ─────────────────────────────────────────

    def audit_entries(self, **filters: Any) -> List[AuditEntry]:
        """Audit entries filtered by entity_id, entity_kind, transition or since."""
        return self._audit.query(**filters)

    def locks(self, status: Optional[LockStatus] = None) -> List[LockedAction]:
        return self._locks.list_locks(status)

    def pending_reviews(self) -> List[PendingReview]:
        return self._router.list_reviews(open_only=True)

    def consensus_items(self, status: Optional[ConsensusStatus] = None) -> List[PassiveConsensusItem]:
        return self._consensus.list_items(status)

    def retry_tasks(self, status: Optional[RetryStatus] = None) -> List[RetryableTask]:
        return self._retry.list_tasks(status)

    def subscribe(self, callback: Subscriber, event_type: Optional[str] = None) -> None:
        """Receive every event, or only events of one type."""
        if event_type is None:
            self._bus.subscribe_all(callback)
        else:
            self._bus.subscribe(event_type, callback)

    # ── Maintenance ──────────────────────────────────────────────

    def sweep(self) -> dict:
        """Resolve expired consensus items, escalate overdue reviews, prune abuse history."""
        approved = self._consensus.sweep()
        escalated = self._router.escalate_overdue()
        pruned = self._guard.cleanup()
        summary = {
            "consensus_approved": len(approved),
            "reviews_escalated": len(escalated),
            "actors_pruned": pruned,
        }
        if approved or escalated:
            logger.info("Sweep: %s", summary)
        return summary

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        """Run sweep() on a background daemon thread."""
        if self._sweep_thread and self._sweep_thread.is_alive():
            logger.warning("Sweeper already running")
            return
        interval = interval if interval is not None else self._config.sweep_interval_seconds
        self._stop_event.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop, args=(interval,), daemon=True, name="safe-autonomy-sweep"
        )
        self._sweep_thread.start()
        logger.info("Safe autonomy sweeper started (%ss interval)", interval)

    def stop(self) -> None:
        """Stop the sweeper and cancel consensus timers."""
        self._stop_event.set()
        if self._sweep_thread:
            self._sweep_thread.join(timeout=5)
            self._sweep_thread = None
        self._consensus.close()
        logger.info("Safe autonomy sweeper stopped")

    # ── Internals ────────────────────────────────────────────────

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Safe autonomy sweep error")
            self._stop_event.wait(interval)

    def _lock_and_route(
        self,
        action: ProposedAction,
        classification: RiskClassification,
        reason: str,
        flagged: bool,
    ) -> SubmissionResult:
        lock = self._locks.create_lock(action, classification)
        review = self._router.route(ReviewItem(
            item_id=lock.id,
            item_kind="lock",
            action_type=action.action_type,
            risk_level=lock.risk_level,
            summary=reason,
        ))
        return SubmissionResult(
            outcome=SubmissionOutcome.LOCKED,
            action_id=action.action_id,
            reason=reason,
            classification=classification,
            lock_id=lock.id,
            review_id=review.id,
            flagged=flagged,
        )

    def _escalate_vetoed(self, item: PassiveConsensusItem, veto: VetoRecord) -> str:
        """Turn a vetoed consensus item into a lock with a routed review."""
        lock = self._locks.create_lock(item.action, item.classification)
        self._router.route(ReviewItem(
            item_id=lock.id,
            item_kind="lock",
            action_type=item.action.action_type,
            risk_level=lock.risk_level,
            summary=f"Vetoed by {veto.actor_id}: {veto.reason}" if veto.reason else f"Vetoed by {veto.actor_id}",
        ))
        return lock.id

    def _route_unassigned_locks(self) -> None:
        for lock in self._locks.list_locks(LockStatus.LOCKED):
            if self._router.open_review_for(lock.id) is not None:
                continue
            try:
                self._router.route(ReviewItem(
                    item_id=lock.id,
                    item_kind="lock",
                    action_type=lock.action_type,
                    risk_level=lock.risk_level,
                    summary=lock.rationale,
                ))
            except NoReviewersAvailableError:
                logger.debug("Lock %s still has no available reviewers", lock.id)


def _signal_content(context: Mapping[str, Any]) -> str:
    for key in _CONTENT_KEYS:
        value = context.get(key)
        if value:
            return str(value)
    return ""
