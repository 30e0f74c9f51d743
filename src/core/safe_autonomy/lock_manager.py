"""
Safe Autonomy: Lock Manager

Holds dangerous actions until enough reviewers approve them.

Valid transitions:
    locked -> unlocked   (qualifying approvals >= requirement, terminal)
    locked -> rejected   (any single reject, terminal, never auto-executed)

All mutations of one lock run under that lock id's own re-entrant lock, so
two approvals arriving together are applied one after the other and can
never both observe "requirement not yet met".
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from .config import LockConfig
from .errors import (
    AlreadyLockedError,
    DuplicateApprovalError,
    LockClosedError,
    NotFoundError,
    ValidationError,
)
from .event_bus import EventBus
from .models import (
    ApprovalRecord,
    ApprovalRequirement,
    LockedAction,
    LockStatus,
    ProposedAction,
    ReviewDecision,
    RiskClassification,
    RiskLevel,
    UnlockOutcome,
    UnlockResult,
)
from .storage import EntityStore, InMemoryStore, KeyedLocks

logger = logging.getLogger(__name__)

RoleResolver = Callable[[str], Iterable[str]]


class LockManager:
    """Owns LockedAction records and their lock/approve/unlock lifecycle."""

    def __init__(
        self,
        config: Optional[LockConfig] = None,
        bus: Optional[EventBus] = None,
        store: Optional[EntityStore[LockedAction]] = None,
        role_resolver: Optional[RoleResolver] = None,
    ):
        """
        Args:
            config: Approval requirements per risk level.
            bus: Event bus for lock.* events. A private bus is used if None.
            store: Storage for LockedAction records. In-memory if None.
            role_resolver: Callable(reviewer_id) -> roles. When set, approvals
                only count toward a requirement that lists roles if the
                reviewer holds one of them.
        """
        self._config = config or LockConfig()
        self._bus = bus or EventBus()
        self._store: EntityStore[LockedAction] = store if store is not None else InMemoryStore()
        self._role_resolver = role_resolver
        self._action_locks = KeyedLocks()
        self._lock_locks = KeyedLocks()

    def set_role_resolver(self, resolver: Optional[RoleResolver]) -> None:
        self._role_resolver = resolver

    # ── Lifecycle ────────────────────────────────────────────────

    def requirement_for(self, level: RiskLevel) -> ApprovalRequirement:
        """Derive the approval requirement for a risk level."""
        rule = self._config.requirements.get(level.label, self._config.fallback_requirement)
        return ApprovalRequirement(count=rule.count, roles=tuple(rule.roles))

    def create_lock(
        self,
        action: ProposedAction,
        classification: RiskClassification,
    ) -> LockedAction:
        """Lock an action until its approval requirement is met.

        Raises:
            AlreadyLockedError: If an open lock already exists for action.action_id.
        """
        with self._action_locks.hold(action.action_id):
            existing = self.get_open_for_action(action.action_id)
            if existing is not None:
                logger.warning(
                    "Refused second lock for action %s, open lock %s",
                    action.action_id, existing.id,
                )
                self._emit(
                    "lock.create_refused", existing, actor=action.actor,
                    action_id=action.action_id,
                    reason="action already has an open lock",
                )
                raise AlreadyLockedError(action.action_id, existing.id)

            lock = LockedAction(
                action_id=action.action_id,
                action_type=action.action_type,
                actor=action.actor,
                risk_level=classification.level,
                requirement=self.requirement_for(classification.level),
                rationale=classification.rationale,
            )
            lock = self._store.create(lock)
            logger.info(
                "Locked action %s (%s, %s): needs %d approval(s)",
                action.action_id, action.action_type,
                classification.level.label, lock.requirement.count,
            )
            self._emit(
                "lock.locked", lock, actor=action.actor,
                action_id=action.action_id,
                action_type=action.action_type,
                risk_level=lock.risk_level.label,
                required=lock.requirement.count,
                roles=list(lock.requirement.roles),
                rationale=lock.rationale,
            )
            return lock

    def record_approval(
        self,
        lock_id: str,
        reviewer_id: str,
        decision: ReviewDecision | str,
        comment: str = "",
    ) -> LockedAction:
        """Record one reviewer's decision. A reject closes the lock immediately.

        Raises:
            NotFoundError: Unknown lock id.
            ValidationError: Unknown decision or empty reviewer id.
            LockClosedError: The lock is already unlocked or rejected.
            DuplicateApprovalError: The reviewer already decided on this lock.
        """
        decision = self._parse_decision(decision)
        if not reviewer_id:
            raise ValidationError("reviewer_id must be non-empty")

        with self._lock_locks.hold(lock_id):
            lock = self._require(lock_id)

            if not lock.is_open:
                self._emit(
                    "lock.decision_refused", lock, actor=reviewer_id,
                    decision=decision.value, reason=f"lock is {lock.status.value}",
                )
                raise LockClosedError(lock_id, lock.status.value)

            if lock.decision_by(reviewer_id) is not None:
                self._emit(
                    "lock.decision_refused", lock, actor=reviewer_id,
                    decision=decision.value, reason="duplicate decision",
                )
                raise DuplicateApprovalError(lock_id, reviewer_id)

            roles: tuple[str, ...] = ()
            if self._role_resolver is not None:
                roles = tuple(sorted(self._role_resolver(reviewer_id)))

            lock.approvals.append(ApprovalRecord(
                reviewer_id=reviewer_id,
                decision=decision,
                reviewer_roles=roles,
                comment=comment,
            ))

            if decision == ReviewDecision.REJECT:
                lock.status = LockStatus.REJECTED
                lock.closed_at = datetime.now(timezone.utc)
                lock = self._store.update(lock)
                logger.info("Lock %s rejected by %s", lock_id, reviewer_id)
                self._emit(
                    "lock.rejected", lock, actor=reviewer_id,
                    comment=comment,
                    approvals=self.count_qualifying(lock),
                )
            else:
                lock = self._store.update(lock)
                logger.info(
                    "Lock %s approved by %s (%d/%d)",
                    lock_id, reviewer_id,
                    self.count_qualifying(lock), lock.requirement.count,
                )
                self._emit(
                    "lock.approved", lock, actor=reviewer_id,
                    comment=comment,
                    approvals=self.count_qualifying(lock),
                    required=lock.requirement.count,
                )
            return lock

    def attempt_unlock(self, lock_id: str, actor: str = "system") -> UnlockResult:
        """Unlock if enough qualifying approvals have accumulated."""
        with self._lock_locks.hold(lock_id):
            lock = self._require(lock_id)
            counted = self.count_qualifying(lock)
            required = lock.requirement.count

            if lock.status == LockStatus.UNLOCKED:
                return UnlockResult(lock, UnlockOutcome.ALREADY_UNLOCKED, counted, required,
                                    reason="Lock was already unlocked")
            if lock.status == LockStatus.REJECTED:
                rejecter = next(
                    (a.reviewer_id for a in lock.approvals if a.decision == ReviewDecision.REJECT),
                    "unknown",
                )
                return UnlockResult(lock, UnlockOutcome.REJECTED, counted, required,
                                    reason=f"Lock was rejected by {rejecter}")
            if counted < required:
                return UnlockResult(
                    lock, UnlockOutcome.INSUFFICIENT_APPROVALS, counted, required,
                    reason=f"{counted} of {required} required approvals"
                    + (f" from roles {', '.join(lock.requirement.roles)}" if lock.requirement.roles else ""),
                )

            lock.status = LockStatus.UNLOCKED
            lock.closed_at = datetime.now(timezone.utc)
            lock = self._store.update(lock)
            logger.info("Lock %s unlocked (%d/%d approvals)", lock_id, counted, required)
            self._emit("lock.unlocked", lock, actor=actor, approvals=counted, required=required)
            return UnlockResult(lock, UnlockOutcome.UNLOCKED, counted, required,
                                reason=f"{counted} of {required} required approvals")

    def count_qualifying(self, lock: LockedAction) -> int:
        """Number of approvals that count toward the lock's requirement."""
        required_roles = set(lock.requirement.roles)
        enforce_roles = bool(required_roles) and self._role_resolver is not None
        return sum(
            1 for a in lock.approvals
            if a.decision == ReviewDecision.APPROVE
            and (not enforce_roles or required_roles.intersection(a.reviewer_roles))
        )

    # ── Queries ──────────────────────────────────────────────────

    def get(self, lock_id: str) -> Optional[LockedAction]:
        return self._store.get(lock_id)

    def get_open_for_action(self, action_id: str) -> Optional[LockedAction]:
        return self._store.find_one(lambda l: l.action_id == action_id and l.is_open)

    def list_locks(self, status: Optional[LockStatus] = None) -> List[LockedAction]:
        if status is None:
            return self._store.list()
        return self._store.list(lambda l: l.status == status)

    def is_cleared(self, lock_id: str) -> bool:
        """True only once the lock has been unlocked."""
        lock = self._store.get(lock_id)
        return lock is not None and lock.status == LockStatus.UNLOCKED

    # ── Internals ────────────────────────────────────────────────

    def _require(self, lock_id: str) -> LockedAction:
        lock = self._store.get(lock_id)
        if lock is None:
            raise NotFoundError("lock", lock_id)
        return lock

    @staticmethod
    def _parse_decision(decision: ReviewDecision | str) -> ReviewDecision:
        try:
            return ReviewDecision(decision)
        except ValueError:
            raise ValidationError(
                f"decision must be one of {[d.value for d in ReviewDecision]}, got {decision!r}"
            ) from None

    def _emit(self, event_type: str, lock: LockedAction, actor: str, **details) -> None:
        self._bus.emit(
            event_type,
            entity_id=lock.id,
            actor=actor,
            status=lock.status.value,
            **details,
        )
