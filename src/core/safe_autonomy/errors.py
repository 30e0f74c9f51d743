"""
Safe Autonomy: Error Taxonomy

Every error carries a human-readable ``rationale`` so that denials and
conflicts can be shown to operators without decoding an error code.

    SafeAutonomyError
    ├── ValidationError                 malformed input
    │   └── PassiveConsensusNotAllowedError
    ├── NotFoundError
    ├── StateConflictError              re-query state, do not retry blindly
    │   ├── AlreadyLockedError
    │   ├── DuplicateApprovalError
    │   ├── LockClosedError
    │   ├── ReviewAlreadyResolvedError
    │   ├── TaskStateError
    │   └── ConsensusAlreadyResolvedError   race loser, a no-op for callers
    ├── NoReviewersAvailableError       configuration gap, never retried
    ├── RetryExhaustedError
    ├── RetryCancelledError
    ├── AbuseError                      surfaced as denial, never retried
    │   ├── RateLimitExceededError
    │   └── AbuseDeniedError
    └── TransientError                  retryable marker
"""

from __future__ import annotations

from typing import Optional


class SafeAutonomyError(Exception):
    """Base class for all safe-autonomy errors."""

    def __init__(self, rationale: str):
        self.rationale = rationale
        super().__init__(rationale)


class ValidationError(SafeAutonomyError):
    """Raised for malformed input."""


class PassiveConsensusNotAllowedError(ValidationError):
    """Raised when an action above the lock threshold is proposed for passive consensus."""

    def __init__(self, action_id: str, level_label: str):
        self.action_id = action_id
        super().__init__(
            f"Action {action_id} is {level_label} risk and must go through "
            f"lock and approval, not passive consensus"
        )


class NotFoundError(SafeAutonomyError):
    """Raised when an entity id does not exist."""

    def __init__(self, entity_kind: str, entity_id: str):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        super().__init__(f"{entity_kind} not found: {entity_id}")


class StateConflictError(SafeAutonomyError):
    """The entity is not in a state that allows the operation."""


class AlreadyLockedError(StateConflictError):
    def __init__(self, action_id: str, lock_id: str):
        self.action_id = action_id
        self.lock_id = lock_id
        super().__init__(f"Action {action_id} already has an open lock ({lock_id})")


class DuplicateApprovalError(StateConflictError):
    def __init__(self, lock_id: str, reviewer_id: str):
        self.lock_id = lock_id
        self.reviewer_id = reviewer_id
        super().__init__(f"Reviewer {reviewer_id} already recorded a decision on lock {lock_id}")


class LockClosedError(StateConflictError):
    def __init__(self, lock_id: str, status: str):
        self.lock_id = lock_id
        self.status = status
        super().__init__(f"Lock {lock_id} is {status} and no longer accepts decisions")


class ReviewAlreadyResolvedError(StateConflictError):
    def __init__(self, review_id: str, resolution: str):
        self.review_id = review_id
        self.resolution = resolution
        super().__init__(f"Review {review_id} was already resolved ({resolution})")


class TaskStateError(StateConflictError):
    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} cannot be started from status {status}")


class ConsensusAlreadyResolvedError(StateConflictError):
    def __init__(self, item_id: str, status: str):
        self.item_id = item_id
        self.status = status
        super().__init__(f"Consensus item {item_id} already resolved as {status}")


class NoReviewersAvailableError(SafeAutonomyError):
    """The routing policy resolved to a reviewer group with no available members."""

    def __init__(self, item_id: str, roles: tuple[str, ...]):
        self.item_id = item_id
        self.roles = roles
        super().__init__(
            f"No available reviewers for {item_id} "
            f"(roles: {', '.join(roles) if roles else 'none configured'})"
        )


class RetryExhaustedError(SafeAutonomyError):
    def __init__(self, task_id: str, attempts: int, last_error: str = ""):
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Task {task_id} exhausted after {attempts} attempt(s)"
            + (f": {last_error}" if last_error else "")
        )


class RetryCancelledError(SafeAutonomyError):
    def __init__(self, task_id: str, attempts: int):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(f"Task {task_id} cancelled after {attempts} attempt(s)")


class AbuseError(SafeAutonomyError):
    """A policy denial from the anti-abuse guard."""

    def __init__(self, actor: str, rationale: str, retry_after: Optional[float] = None):
        self.actor = actor
        self.retry_after = retry_after
        super().__init__(rationale)


class RateLimitExceededError(AbuseError):
    pass


class AbuseDeniedError(AbuseError):
    pass


class TransientError(SafeAutonomyError):
    """An infrastructure hiccup (storage timeout, flaky dependency) worth retrying."""
