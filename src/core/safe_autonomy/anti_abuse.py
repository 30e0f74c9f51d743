"""
Safe Autonomy: Anti-Abuse Guard

Throttles and screens actor signals before they reach the risk classifier.

Each actor gets a sliding-window history of accepted signals plus a token
bucket (tokens refill at refill_per_second, capped at bucket_capacity).
History older than history_horizon_seconds is pruned lazily on access.
Validation for one actor is serialized; different actors run in parallel.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from typing import Callable, Dict, Optional

from .config import AntiAbuseConfig
from .errors import AbuseDeniedError, RateLimitExceededError, ValidationError
from .event_bus import EventBus
from .models import (
    AbuseDecision,
    RateLimitState,
    RiskLevel,
    Signal,
    SignalEntry,
    SignalHistory,
    ValidationResult,
)
from .storage import KeyedLocks

logger = logging.getLogger(__name__)

# Denial rules that mean "slow down" rather than "never"
RATE_RULES = frozenset({"window", "rate_limit"})


def content_hash(content: str) -> str:
    """Stable hash of signal content, insensitive to case and whitespace.

    Empty content hashes to "" and never counts as a duplicate or topic.
    """
    normalized = " ".join(content.lower().split())
    if not normalized:
        return ""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


class AntiAbuseGuard:
    """Per-actor rate limiting, blocklists, cooldowns and burst detection."""

    def __init__(
        self,
        config: Optional[AntiAbuseConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config or AntiAbuseConfig()
        self._bus = bus or EventBus()
        self._clock = clock
        self._high_risk_level = RiskLevel.parse(self._config.high_risk_level)

        self._histories: Dict[str, SignalHistory] = {}
        self._buckets: Dict[str, RateLimitState] = {}
        self._state_lock = threading.Lock()
        self._actor_locks = KeyedLocks()

        self._blocked_actors: set[str] = set(self._config.blocked_actors)
        self._blocked_patterns: list[re.Pattern] = [
            re.compile(p) for p in self._config.blocked_patterns
        ]
        self._rejected_topics: Dict[str, float] = {}
        self._policy_lock = threading.Lock()

    # ── Validation ───────────────────────────────────────────────

    def validate(self, actor: str, signal: Signal) -> ValidationResult:
        """Decide allow / deny / flag for one signal.

        Denied signals are not recorded, so an actor that backs off is
        allowed again as soon as its window clears.
        """
        if not actor:
            raise ValidationError("actor must be non-empty")

        now = self._clock()
        digest = content_hash(signal.content)

        with self._actor_locks.hold(actor):
            history, bucket = self._state_for(actor, now)
            self._prune(history, now)

            denial = self._check_denials(actor, signal, digest, history, bucket, now)
            if denial is not None:
                history.denied_count += 1
                logger.warning(
                    "Denied signal %s from %s (%s): %s",
                    signal.id, actor, denial.rule, denial.reason,
                )
                self._bus.emit(
                    "abuse.denied",
                    entity_id=actor,
                    actor=actor,
                    signal_id=signal.id,
                    kind=signal.kind,
                    rule=denial.rule,
                    reason=denial.reason,
                    retry_after=denial.retry_after,
                )
                return denial

            bucket.tokens -= 1.0
            history.entries.append(SignalEntry(
                signal_id=signal.id,
                timestamp=now,
                kind=signal.kind,
                content_hash=digest,
            ))

            warnings = []
            duplicates = sum(1 for e in history.entries if e.content_hash == digest) if digest else 0
            if digest and duplicates >= self._config.duplicate_flag_threshold:
                warnings.append(f"Similar signals threshold reached: {duplicates}")
            high_risk = self._high_risk_count(history, now)
            if high_risk >= self._config.high_risk_burst_threshold:
                warnings.append(f"High-risk burst: {high_risk} in {self._config.window_seconds:g}s")

            if not warnings:
                return ValidationResult(decision=AbuseDecision.ALLOW)

            result = ValidationResult(
                decision=AbuseDecision.FLAG,
                reason="; ".join(warnings),
                warnings=warnings,
                rule="escalate",
            )
            logger.info("Flagged signal %s from %s: %s", signal.id, actor, result.reason)
            self._bus.emit(
                "abuse.flagged",
                entity_id=actor,
                actor=actor,
                signal_id=signal.id,
                kind=signal.kind,
                reason=result.reason,
            )
            return result

    def enforce(self, actor: str, signal: Signal) -> ValidationResult:
        """Validate and raise on deny.

        Raises:
            RateLimitExceededError: Window or token bucket exhausted.
            AbuseDeniedError: Blocked actor, blocked content or topic cooldown.
        """
        result = self.validate(actor, signal)
        if result.decision != AbuseDecision.DENY:
            return result
        if result.rule in RATE_RULES:
            raise RateLimitExceededError(actor, result.reason, retry_after=result.retry_after)
        raise AbuseDeniedError(actor, result.reason, retry_after=result.retry_after)

    def record_risk(self, actor: str, signal_id: str, level: RiskLevel) -> bool:
        """Annotate an accepted signal with its classified risk level.

        Returns True when the actor's high-risk signals in the current window
        reach the burst threshold.
        """
        now = self._clock()
        with self._actor_locks.hold(actor):
            history, _ = self._state_for(actor, now)
            for entry in history.entries:
                if entry.signal_id == signal_id:
                    entry.risk_level = level
                    break
            else:
                return False

            if level < self._high_risk_level:
                return False
            count = self._high_risk_count(history, now)
            if count < self._config.high_risk_burst_threshold:
                return False

            reason = f"High-risk burst: {count} in {self._config.window_seconds:g}s"
            logger.info("Flagged %s: %s", actor, reason)
            self._bus.emit(
                "abuse.flagged",
                entity_id=actor,
                actor=actor,
                signal_id=signal_id,
                risk_level=level.label,
                reason=reason,
            )
            return True

    # ── Policy ───────────────────────────────────────────────────

    def block_actor(self, actor: str, by: str = "system") -> None:
        with self._policy_lock:
            self._blocked_actors.add(actor)
        logger.info("Blocked actor %s", actor)
        self._bus.emit("abuse.actor_blocked", entity_id=actor, actor=by)

    def unblock_actor(self, actor: str, by: str = "system") -> None:
        with self._policy_lock:
            self._blocked_actors.discard(actor)
        logger.info("Unblocked actor %s", actor)
        self._bus.emit("abuse.actor_unblocked", entity_id=actor, actor=by)

    def block_pattern(self, pattern: str) -> None:
        """Deny any signal whose content matches the regex."""
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            raise ValidationError(f"Invalid blocked pattern {pattern!r}: {e}") from None
        with self._policy_lock:
            self._blocked_patterns.append(compiled)

    def reject_topic(self, content: str) -> str:
        """Start a cooldown for signals with the same content. Returns the topic hash."""
        digest = content_hash(content)
        if not digest:
            raise ValidationError("cannot reject an empty topic")
        with self._policy_lock:
            self._rejected_topics[digest] = self._clock()
        logger.info("Rejected topic %s (cooldown %ss)", digest,
                    self._config.rejected_topic_cooldown_seconds)
        return digest

    # ── Maintenance ──────────────────────────────────────────────

    def cleanup(self) -> int:
        """Prune histories and expired cooldowns. Returns number of actors dropped.

        An actor is dropped only when it has no entries left and a full
        bucket, which is indistinguishable from a fresh actor.
        """
        now = self._clock()
        with self._state_lock:
            actors = list(self._histories)

        dropped = 0
        for actor in actors:
            with self._actor_locks.hold(actor):
                history, bucket = self._state_for(actor, now)
                self._prune(history, now)
                self._refill(bucket, now)
                if not history.entries and bucket.tokens >= self._config.bucket_capacity:
                    with self._state_lock:
                        self._histories.pop(actor, None)
                        self._buckets.pop(actor, None)
                    dropped += 1

        cooldown = self._config.rejected_topic_cooldown_seconds
        with self._policy_lock:
            expired = [h for h, t in self._rejected_topics.items() if now - t >= cooldown]
            for digest in expired:
                del self._rejected_topics[digest]

        if dropped or expired:
            logger.debug("Anti-abuse cleanup: %d actors, %d topics", dropped, len(expired))
        return dropped

    def get_stats(self, actor: Optional[str] = None) -> dict:
        """Counters for one actor, or totals across all actors."""
        now = self._clock()
        if actor is not None:
            with self._policy_lock:
                blocked = actor in self._blocked_actors
            with self._actor_locks.hold(actor):
                with self._state_lock:
                    history = self._histories.get(actor)
                    bucket = self._buckets.get(actor)
                if history is None or bucket is None:
                    return {
                        "actor": actor,
                        "signals_in_window": 0,
                        "signals_in_history": 0,
                        "denied": 0,
                        "tokens": float(self._config.bucket_capacity),
                        "blocked": blocked,
                    }
                horizon = now - max(self._config.history_horizon_seconds, self._config.window_seconds)
                elapsed = max(0.0, now - bucket.last_refill)
                return {
                    "actor": actor,
                    "signals_in_window": self._in_window(history, now),
                    "signals_in_history": sum(1 for e in history.entries if e.timestamp > horizon),
                    "denied": history.denied_count,
                    "tokens": min(
                        float(self._config.bucket_capacity),
                        bucket.tokens + elapsed * self._config.refill_per_second,
                    ),
                    "blocked": blocked,
                }

        with self._state_lock:
            histories = list(self._histories.values())
        with self._policy_lock:
            return {
                "actors": len(histories),
                "denied": sum(h.denied_count for h in histories),
                "blocked_actors": sorted(self._blocked_actors),
                "blocked_patterns": len(self._blocked_patterns),
                "rejected_topics": len(self._rejected_topics),
            }

    # ── Internals ────────────────────────────────────────────────

    def _check_denials(
        self,
        actor: str,
        signal: Signal,
        digest: str,
        history: SignalHistory,
        bucket: RateLimitState,
        now: float,
    ) -> Optional[ValidationResult]:
        with self._policy_lock:
            blocked = actor in self._blocked_actors
            pattern = next((p for p in self._blocked_patterns if p.search(signal.content)), None)
            rejected_at = self._rejected_topics.get(digest) if digest else None

        if blocked:
            return self._deny(f"Actor blocked: {actor}", "blocked_actor")
        if pattern is not None:
            return self._deny("Content matches blocked pattern", "blocked_pattern")

        if rejected_at is not None:
            remaining = rejected_at + self._config.rejected_topic_cooldown_seconds - now
            if remaining > 0:
                return self._deny(
                    "Topic recently rejected, in cooldown period", "topic_cooldown",
                    retry_after=remaining,
                )

        window_start = now - self._config.window_seconds
        in_window = [e for e in history.entries if e.timestamp > window_start]
        if len(in_window) >= self._config.max_signals_per_window:
            oldest = min(e.timestamp for e in in_window)
            return self._deny(
                f"Rate limit exceeded: {len(in_window)} signals in "
                f"{self._config.window_seconds:g}s (max {self._config.max_signals_per_window})",
                "window",
                retry_after=max(0.0, oldest + self._config.window_seconds - now),
            )

        self._refill(bucket, now)
        if bucket.tokens < 1.0:
            rate = self._config.refill_per_second
            return self._deny(
                "Rate limit exceeded: token bucket empty",
                "rate_limit",
                retry_after=(1.0 - bucket.tokens) / rate if rate > 0 else None,
            )
        return None

    @staticmethod
    def _deny(reason: str, rule: str, retry_after: Optional[float] = None) -> ValidationResult:
        return ValidationResult(
            decision=AbuseDecision.DENY,
            reason=reason,
            retry_after=retry_after,
            rule=rule,
        )

    def _state_for(self, actor: str, now: float) -> tuple[SignalHistory, RateLimitState]:
        with self._state_lock:
            history = self._histories.get(actor)
            if history is None:
                history = self._histories[actor] = SignalHistory(actor=actor)
            bucket = self._buckets.get(actor)
            if bucket is None:
                bucket = self._buckets[actor] = RateLimitState(
                    actor=actor,
                    tokens=float(self._config.bucket_capacity),
                    last_refill=now,
                )
            return history, bucket

    def _refill(self, bucket: RateLimitState, now: float) -> None:
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(
            float(self._config.bucket_capacity),
            bucket.tokens + elapsed * self._config.refill_per_second,
        )
        bucket.last_refill = now

    def _prune(self, history: SignalHistory, now: float) -> None:
        horizon = now - max(self._config.history_horizon_seconds, self._config.window_seconds)
        if history.entries and history.entries[0].timestamp <= horizon:
            history.entries = [e for e in history.entries if e.timestamp > horizon]

    def _in_window(self, history: SignalHistory, now: float) -> int:
        window_start = now - self._config.window_seconds
        return sum(1 for e in history.entries if e.timestamp > window_start)

    def _high_risk_count(self, history: SignalHistory, now: float) -> int:
        window_start = now - self._config.window_seconds
        return sum(
            1 for e in history.entries
            if e.timestamp > window_start
            and e.risk_level is not None
            and e.risk_level >= self._high_risk_level
        )
