"""
Safe Autonomy: Passive Consensus

Opt-out approval for actions below the lock threshold: a proposal is
approved when its review window closes without a veto.

    pending -> approved    (deadline passed, or explicit approval)
    pending -> vetoed      (veto before the deadline)
    vetoed  -> escalated   (handed to full lock-and-review)

Resolution of one item runs under that item's lock and only ever starts
from pending, so a veto racing the deadline timer produces exactly one
terminal state. The loser of the race sees the winner's result.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .config import PassiveConsensusConfig
from .errors import (
    ConsensusAlreadyResolvedError,
    NotFoundError,
    PassiveConsensusNotAllowedError,
    ValidationError,
)
from .event_bus import EventBus
from .models import (
    ConsensusCheckResult,
    ConsensusStatus,
    EscalationRecord,
    PassiveConsensusItem,
    ProposedAction,
    RiskClassification,
    RiskLevel,
    VetoRecord,
    utcnow,
)
from .storage import EntityStore, InMemoryStore, KeyedLocks

logger = logging.getLogger(__name__)

# Called with the vetoed item and the winning veto; returns the id of
# whatever now carries the review (the engine returns a lock id).
EscalationHandler = Callable[[PassiveConsensusItem, VetoRecord], Optional[str]]

UNREVIEWED_LABEL = "[UNREVIEWED BY HUMAN]"


class PassiveConsensusManager:
    """Owns PassiveConsensusItem records, their deadline timers and resolution."""

    def __init__(
        self,
        config: Optional[PassiveConsensusConfig] = None,
        lock_threshold: RiskLevel = RiskLevel.HIGH,
        bus: Optional[EventBus] = None,
        store: Optional[EntityStore[PassiveConsensusItem]] = None,
        escalation_handler: Optional[EscalationHandler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config or PassiveConsensusConfig()
        self._lock_threshold = lock_threshold
        self._min_level = RiskLevel.parse(self._config.min_level)
        self._bus = bus or EventBus()
        self._store: EntityStore[PassiveConsensusItem] = store if store is not None else InMemoryStore()
        self._escalation_handler = escalation_handler
        self._clock = clock
        self._item_locks = KeyedLocks()
        self._action_locks = KeyedLocks()
        self._timers: Dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()

    def set_escalation_handler(self, handler: Optional[EscalationHandler]) -> None:
        self._escalation_handler = handler

    @property
    def min_level(self) -> RiskLevel:
        return self._min_level

    # ── Eligibility ──────────────────────────────────────────────

    def can_auto_approve(self, classification: RiskClassification) -> bool:
        """Only enabled, unlocked classifications below the lock threshold qualify."""
        return (
            self._config.enabled
            and not classification.locked
            and classification.level < self._lock_threshold
        )

    def window_for(self, level: RiskLevel) -> float:
        return self._config.window_seconds_by_level.get(
            level.label, self._config.default_window_seconds
        )

    # ── Lifecycle ────────────────────────────────────────────────

    def propose(
        self,
        action: ProposedAction,
        classification: RiskClassification,
        window_seconds: Optional[float] = None,
    ) -> PassiveConsensusItem:
        """Open a review window for an action.

        A second proposal for an action with a pending item returns that item.

        Raises:
            PassiveConsensusNotAllowedError: The classification is not eligible.
            ValidationError: Negative window.
        """
        if not self.can_auto_approve(classification):
            error = PassiveConsensusNotAllowedError(action.action_id, classification.level.label)
            logger.warning("Refused passive consensus for %s: %s", action.action_id, error.rationale)
            self._bus.emit(
                "consensus.propose_refused",
                entity_id=action.action_id,
                actor=action.actor,
                action_type=action.action_type,
                risk_level=classification.level.label,
                reason=error.rationale,
            )
            raise error
        if window_seconds is None:
            window_seconds = self.window_for(classification.level)
        if window_seconds < 0:
            raise ValidationError(f"window_seconds must be >= 0, got {window_seconds}")

        with self._action_locks.hold(action.action_id):
            existing = self.get_for_action(action.action_id)
            if existing is not None and existing.status == ConsensusStatus.PENDING:
                return existing

            now = self._clock()
            item = PassiveConsensusItem(
                action=action,
                classification=classification,
                opened_at=now,
                deadline=now + timedelta(seconds=window_seconds),
            )
            item = self._store.create(item)
            logger.info(
                "Proposed %s (%s) for passive consensus, deadline %s",
                action.action_id, action.action_type, item.deadline.isoformat(),
            )
            self._bus.emit(
                "consensus.proposed",
                entity_id=item.id,
                actor=action.actor,
                action_id=action.action_id,
                action_type=action.action_type,
                risk_level=classification.level.label,
                deadline=item.deadline.isoformat(),
                window_seconds=window_seconds,
            )

        if self._config.auto_resolve and window_seconds > 0:
            self._schedule(item.id, window_seconds)
        return item

    def veto(self, item_id: str, actor: str, reason: str = "") -> ConsensusCheckResult:
        """Veto a pending item and hand it to escalation.

        A veto that arrives after the deadline resolves the item approved.
        A veto on an already-resolved item is a no-op (resolved_now=False).
        If the escalation handler fails the item stays vetoed and the
        handler's error propagates.
        """
        if not actor:
            raise ValidationError("actor must be non-empty")

        with self._item_locks.hold(item_id):
            item = self._require(item_id)
            now = self._clock()
            try:
                self._check_pending(item)
            except ConsensusAlreadyResolvedError:
                logger.debug("Veto on %s ignored, already %s", item_id, item.status.value)
                return ConsensusCheckResult(item, resolved_now=False, seconds_remaining=0.0)

            if now >= item.deadline:
                item = self._mark_approved(item, now, actor="system", via="deadline")
                return ConsensusCheckResult(item, resolved_now=True, seconds_remaining=0.0)

            veto = VetoRecord(actor_id=actor, reason=reason, timestamp=now)
            item.vetoes.append(veto)
            item.status = ConsensusStatus.VETOED
            item.resolved_at = now
            item = self._store.update(item)
            self._cancel_timer(item_id)
            logger.info("Consensus item %s vetoed by %s: %s", item_id, actor, reason)
            self._bus.emit(
                "consensus.vetoed",
                entity_id=item.id,
                actor=actor,
                action_id=item.action_id,
                reason=reason,
            )

            item = self._escalate(item, veto)
            return ConsensusCheckResult(item, resolved_now=True, seconds_remaining=0.0)

    def check_and_resolve(self, item_id: str) -> ConsensusCheckResult:
        """Resolve a pending item whose deadline has passed. Idempotent."""
        with self._item_locks.hold(item_id):
            item = self._require(item_id)
            now = self._clock()
            try:
                self._check_pending(item)
            except ConsensusAlreadyResolvedError:
                return ConsensusCheckResult(item, resolved_now=False, seconds_remaining=0.0)

            remaining = (item.deadline - now).total_seconds()
            if remaining > 0:
                return ConsensusCheckResult(item, resolved_now=False, seconds_remaining=remaining)

            item = self._mark_approved(item, now, actor="system", via="deadline")
            return ConsensusCheckResult(item, resolved_now=True, seconds_remaining=0.0)

    def approve(self, item_id: str, actor: str) -> ConsensusCheckResult:
        """Approve a pending item early. Clears the unreviewed-by-human flag."""
        if not actor:
            raise ValidationError("actor must be non-empty")

        with self._item_locks.hold(item_id):
            item = self._require(item_id)
            try:
                self._check_pending(item)
            except ConsensusAlreadyResolvedError:
                return ConsensusCheckResult(item, resolved_now=False, seconds_remaining=0.0)

            item.unreviewed_by_human = False
            item = self._mark_approved(item, self._clock(), actor=actor, via="explicit")
            return ConsensusCheckResult(item, resolved_now=True, seconds_remaining=0.0)

    def sweep(self) -> List[PassiveConsensusItem]:
        """Resolve every expired pending item. Returns the items resolved by this call."""
        now = self._clock()
        expired = self._store.list(
            lambda i: i.status == ConsensusStatus.PENDING and i.deadline <= now
        )
        resolved = []
        for item in expired:
            result = self.check_and_resolve(item.id)
            if result.resolved_now:
                resolved.append(result.item)
        if resolved:
            logger.info("Consensus sweep approved %d item(s)", len(resolved))
        return resolved

    def unreviewed_label(self, item: PassiveConsensusItem) -> str:
        """Label for items approved without anyone looking at them, else ''."""
        if not item.unreviewed_by_human or item.status != ConsensusStatus.APPROVED:
            return ""
        if not item.vetoes and not item.escalations:
            history = "None"
        else:
            history = f"{len(item.vetoes)} vetoes, {len(item.escalations)} escalations"
        return (
            f"{UNREVIEWED_LABEL} This action was auto-approved via passive consensus.\n"
            f"Review history: {history}"
        )

    def close(self) -> None:
        """Cancel all outstanding deadline timers."""
        with self._timers_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    # ── Queries ──────────────────────────────────────────────────

    def get(self, item_id: str) -> Optional[PassiveConsensusItem]:
        return self._store.get(item_id)

    def get_for_action(self, action_id: str) -> Optional[PassiveConsensusItem]:
        """Most recent item for an action."""
        items = self._store.list(lambda i: i.action_id == action_id)
        return items[-1] if items else None

    def list_items(self, status: Optional[ConsensusStatus] = None) -> List[PassiveConsensusItem]:
        if status is None:
            return self._store.list()
        return self._store.list(lambda i: i.status == status)

    # ── Internals ────────────────────────────────────────────────

    def _require(self, item_id: str) -> PassiveConsensusItem:
        item = self._store.get(item_id)
        if item is None:
            raise NotFoundError("consensus item", item_id)
        return item

    @staticmethod
    def _check_pending(item: PassiveConsensusItem) -> None:
        if item.status != ConsensusStatus.PENDING:
            raise ConsensusAlreadyResolvedError(item.id, item.status.value)

    def _mark_approved(
        self,
        item: PassiveConsensusItem,
        now: datetime,
        actor: str,
        via: str,
    ) -> PassiveConsensusItem:
        item.status = ConsensusStatus.APPROVED
        item.resolved_at = now
        item = self._store.update(item)
        self._cancel_timer(item.id)
        logger.info("Consensus item %s approved (%s)", item.id, via)
        self._bus.emit(
            "consensus.approved",
            entity_id=item.id,
            actor=actor,
            action_id=item.action_id,
            via=via,
            unreviewed_by_human=item.unreviewed_by_human,
        )
        return item

    def _escalate(self, item: PassiveConsensusItem, veto: VetoRecord) -> PassiveConsensusItem:
        if self._escalation_handler is None:
            return item

        try:
            escalated_to = self._escalation_handler(item, veto)
        except Exception as e:
            logger.error("Escalation of consensus item %s failed: %s", item.id, e)
            self._bus.emit(
                "consensus.escalation_failed",
                entity_id=item.id,
                actor=veto.actor_id,
                action_id=item.action_id,
                error=str(e),
            )
            raise

        item.escalations.append(EscalationRecord(
            actor_id=veto.actor_id,
            reason=veto.reason,
            escalated_to=escalated_to or "",
        ))
        item.status = ConsensusStatus.ESCALATED
        item.escalated_lock_id = escalated_to
        item = self._store.update(item)
        logger.info("Consensus item %s escalated to %s", item.id, escalated_to)
        self._bus.emit(
            "consensus.escalated",
            entity_id=item.id,
            actor=veto.actor_id,
            action_id=item.action_id,
            escalated_to=escalated_to,
        )
        return item

    def _schedule(self, item_id: str, delay: float) -> None:
        timer = threading.Timer(delay, self._on_deadline, args=(item_id,))
        timer.daemon = True
        with self._timers_lock:
            self._timers[item_id] = timer
        timer.start()

    def _cancel_timer(self, item_id: str) -> None:
        with self._timers_lock:
            timer = self._timers.pop(item_id, None)
        if timer is not None:
            timer.cancel()

    def _on_deadline(self, item_id: str) -> None:
        with self._timers_lock:
            self._timers.pop(item_id, None)
        try:
            result = self.check_and_resolve(item_id)
        except Exception as e:
            logger.error("Deadline resolution failed for %s: %s", item_id, e)
            return
        # Timer woke marginally before the wall-clock deadline
        if result.is_pending and result.seconds_remaining > 0:
            self._schedule(item_id, result.seconds_remaining)
