"""
Safe Autonomy: Retry Handler

Bounded exponential backoff for transient failures.

    pending -> running -> succeeded | failed | exhausted | cancelled

Only errors classified as transient are retried, and never more than the
task's max_attempts. Backoff waits are interruptible: cancel() wakes the
wait and the task settles cancelled. An attempt already in flight is never
aborted.
"""

from __future__ import annotations

import logging
import random
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from .config import RetryConfig
from .errors import (
    AbuseError,
    NotFoundError,
    RetryCancelledError,
    RetryExhaustedError,
    StateConflictError,
    TaskStateError,
    TransientError,
    ValidationError,
)
from .event_bus import EventBus
from .models import RetryStatus, new_id, utcnow
from .storage import EntityStore, InMemoryStore, KeyedLocks

logger = logging.getLogger(__name__)


# ── Models ───────────────────────────────────────────────────────

@dataclass
class RetryableTask:
    name: str
    config: RetryConfig
    max_attempts: int
    attempt_count: int = 0
    status: RetryStatus = RetryStatus.PENDING
    last_error: str = ""
    result: Any = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class RetryResult:
    task_id: str
    status: RetryStatus
    attempts: int
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def success(self) -> bool:
        return self.status == RetryStatus.SUCCEEDED

    def raise_for_status(self) -> None:
        """Raise if the task did not succeed.

        Raises:
            RetryExhaustedError: All attempts failed with transient errors.
            RetryCancelledError: The task was cancelled.
            Exception: The original error of a fatal failure.
        """
        if self.status == RetryStatus.EXHAUSTED:
            raise RetryExhaustedError(
                self.task_id, self.attempts, str(self.error) if self.error else ""
            ) from self.error
        if self.status == RetryStatus.CANCELLED:
            raise RetryCancelledError(self.task_id, self.attempts)
        if self.status == RetryStatus.FAILED and self.error is not None:
            raise self.error


# ── Classification & Backoff ─────────────────────────────────────

# Never retried, even when the message looks transient
_FATAL_TYPES = (
    ValidationError,
    AbuseError,
    StateConflictError,
    PermissionError,
    ValueError,
    TypeError,
)

_RETRYABLE_TYPES = (TransientError, TimeoutError, ConnectionError)

_RETRYABLE_MESSAGE = re.compile(
    r"ECONNRESET|ETIMEDOUT|ECONNREFUSED|timed? ?out|timeout|rate limit"
    r"|temporarily|try again|\b(?:429|500|502|503|504)\b",
    re.IGNORECASE,
)


def is_retryable_error(error: BaseException) -> bool:
    """True for transient infrastructure failures worth another attempt."""
    if isinstance(error, _FATAL_TYPES):
        return False
    if isinstance(error, _RETRYABLE_TYPES):
        return True
    return bool(_RETRYABLE_MESSAGE.search(str(error)))


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay in seconds before retry number ``attempt`` (0-based).

    min(base_delay * multiplier ** attempt, max_delay), jittered uniformly
    in [0, computed] when config.jitter is set.
    """
    if attempt < 0:
        raise ValidationError(f"attempt must be >= 0, got {attempt}")
    try:
        delay = config.base_delay * (config.multiplier ** attempt)
    except OverflowError:
        delay = config.max_delay
    delay = min(delay, config.max_delay)
    if config.jitter:
        delay = (rng or random).uniform(0, delay)
    return delay


# ── Handler ──────────────────────────────────────────────────────

class RetryHandler:
    """Runs callables under a bounded retry policy and tracks each run as a task."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        bus: Optional[EventBus] = None,
        store: Optional[EntityStore[RetryableTask]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._config = config or RetryConfig()
        self._bus = bus or EventBus()
        self._store: EntityStore[RetryableTask] = store if store is not None else InMemoryStore()
        self._rng = rng
        self._task_locks = KeyedLocks()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._events_lock = threading.Lock()

    def create_task(self, name: str, config: Optional[RetryConfig] = None) -> RetryableTask:
        cfg = config or self._config
        task = self._store.create(RetryableTask(
            name=name,
            config=cfg,
            max_attempts=cfg.max_attempts,
        ))
        with self._events_lock:
            self._cancel_events[task.id] = threading.Event()
        logger.debug("Created retry task %s (%s)", task.id, name)
        self._emit("task.created", task, max_attempts=task.max_attempts)
        return task

    def with_retry(
        self,
        task: Union[RetryableTask, str],
        fn: Callable[[], Any],
        config: Optional[RetryConfig] = None,
    ) -> RetryResult:
        """Run fn until it succeeds, fails fatally, runs out of attempts or is cancelled.

        Raises:
            NotFoundError: Unknown task.
            TaskStateError: The task is not pending.
        """
        task_id = task.id if isinstance(task, RetryableTask) else task

        with self._task_locks.hold(task_id):
            current = self._require(task_id)
            if current.status != RetryStatus.PENDING:
                raise TaskStateError(task_id, current.status.value)
            if config is not None:
                current.config = config
                current.max_attempts = config.max_attempts
            current.status = RetryStatus.RUNNING
            current.started_at = datetime.now(timezone.utc)
            current = self._store.update(current)
            self._emit("task.started", current)

        cfg = current.config
        cancelled = self._cancel_event(task_id)

        while True:
            if cancelled.is_set():
                return self._finish(task_id, RetryStatus.CANCELLED)

            attempt = self._begin_attempt(task_id)
            try:
                value = fn()
            except Exception as e:
                self._record_error(task_id, e)
                if cancelled.is_set():
                    return self._finish(task_id, RetryStatus.CANCELLED, error=e)
                if not is_retryable_error(e):
                    logger.warning("Task %s failed with non-retryable error: %s", task_id, e)
                    return self._finish(task_id, RetryStatus.FAILED, error=e)
                if attempt >= current.max_attempts:
                    logger.warning("Task %s exhausted after %d attempt(s): %s", task_id, attempt, e)
                    return self._finish(task_id, RetryStatus.EXHAUSTED, error=e)

                delay = calculate_backoff(attempt - 1, cfg, self._rng)
                self._schedule_retry(task_id, attempt, delay, e)
                if cancelled.wait(delay):
                    return self._finish(task_id, RetryStatus.CANCELLED, error=e)
                continue

            return self._finish(task_id, RetryStatus.SUCCEEDED, result=value)

    def execute_with_retry(
        self,
        fn: Callable[[], Any],
        config: Optional[RetryConfig] = None,
        name: str = "task",
    ) -> RetryResult:
        """Create a task and run it in one call."""
        task = self.create_task(name, config)
        return self.with_retry(task, fn)

    def cancel(self, task_id: str, actor: str = "system") -> RetryableTask:
        """Request cancellation. Pending tasks are cancelled at once; a running
        task settles cancelled after its in-flight attempt, unless that attempt
        succeeds."""
        with self._task_locks.hold(task_id):
            task = self._require(task_id)
            if task.status.is_terminal:
                return task
            self._cancel_event(task_id).set()
            if task.status == RetryStatus.PENDING:
                task.status = RetryStatus.CANCELLED
                task.completed_at = datetime.now(timezone.utc)
                task = self._store.update(task)
                logger.info("Cancelled pending task %s", task_id)
                self._emit("task.cancelled", task, actor=actor)
            else:
                logger.info("Cancellation requested for running task %s", task_id)
                self._emit("task.cancel_requested", task, actor=actor)
            return task

    # ── Queries ──────────────────────────────────────────────────

    def get(self, task_id: str) -> Optional[RetryableTask]:
        return self._store.get(task_id)

    def list_tasks(self, status: Optional[RetryStatus] = None) -> List[RetryableTask]:
        if status is None:
            return self._store.list()
        return self._store.list(lambda t: t.status == status)

    # ── Internals ────────────────────────────────────────────────

    def _require(self, task_id: str) -> RetryableTask:
        task = self._store.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def _cancel_event(self, task_id: str) -> threading.Event:
        with self._events_lock:
            return self._cancel_events.setdefault(task_id, threading.Event())

    def _begin_attempt(self, task_id: str) -> int:
        with self._task_locks.hold(task_id):
            task = self._require(task_id)
            task.attempt_count += 1
            task.next_attempt_at = None
            self._store.update(task)
            return task.attempt_count

    def _record_error(self, task_id: str, error: Exception) -> None:
        with self._task_locks.hold(task_id):
            task = self._require(task_id)
            task.last_error = f"{type(error).__name__}: {error}"
            self._store.update(task)

    def _schedule_retry(self, task_id: str, attempt: int, delay: float, error: Exception) -> None:
        with self._task_locks.hold(task_id):
            task = self._require(task_id)
            task.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
            task = self._store.update(task)
            logger.info(
                "Task %s attempt %d/%d failed (%s), retrying in %.2fs",
                task_id, attempt, task.max_attempts, error, delay,
            )
            self._emit(
                "task.retry", task,
                attempt=attempt,
                delay_seconds=delay,
                error=task.last_error,
            )

    def _finish(
        self,
        task_id: str,
        status: RetryStatus,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> RetryResult:
        with self._task_locks.hold(task_id):
            task = self._require(task_id)
            task.status = status
            task.result = result
            task.next_attempt_at = None
            task.completed_at = datetime.now(timezone.utc)
            task = self._store.update(task)
            self._emit(f"task.{status.value}", task, attempts=task.attempt_count, error=task.last_error)
        with self._events_lock:
            self._cancel_events.pop(task_id, None)
        if status == RetryStatus.SUCCEEDED:
            logger.info("Task %s succeeded after %d attempt(s)", task_id, task.attempt_count)
        return RetryResult(
            task_id=task_id,
            status=status,
            attempts=task.attempt_count,
            result=result,
            error=error,
        )

    def _emit(self, event_type: str, task: RetryableTask, actor: str = "system", **details) -> None:
        self._bus.emit(
            event_type,
            entity_id=task.id,
            actor=actor,
            name=task.name,
            status=task.status.value,
            **details,
        )
