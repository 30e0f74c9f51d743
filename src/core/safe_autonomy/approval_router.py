"""
Safe Autonomy: Approval Router

Decides who reviews a locked action or vetoed consensus item, and when.

Routing is a static, ordered rule table from config: the first rule whose
action type pattern and risk level match wins, falling back to the
catch-all default rule. The router publishes ``review.routed`` and
``review.reminder`` as notification events; delivery is someone else's job.
"""

from __future__ import annotations

import dataclasses
import fnmatch
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .config import RoutingConfig, RoutingRule
from .errors import (
    NoReviewersAvailableError,
    NotFoundError,
    ReviewAlreadyResolvedError,
    ValidationError,
)
from .event_bus import EventBus
from .models import PendingReview, Reviewer, ReviewItem, RiskLevel, utcnow
from .storage import EntityStore, InMemoryStore, KeyedLocks

logger = logging.getLogger(__name__)

ESCALATED_PRIORITY = 100

_PRIORITY = {
    RiskLevel.CRITICAL: 100,
    RiskLevel.HIGH: 75,
    RiskLevel.MEDIUM: 50,
    RiskLevel.LOW: 10,
    RiskLevel.NONE: 0,
}


def review_priority(level: RiskLevel) -> int:
    return _PRIORITY[level]


# ── Reviewer Registry ────────────────────────────────────────────

class ReviewerRegistry:
    """Known human reviewers and their roles. Thread-safe."""

    def __init__(self) -> None:
        self._reviewers: Dict[str, Reviewer] = {}
        self._lock = threading.Lock()

    def add(self, reviewer_id: str, roles: Iterable[str], available: bool = True) -> Reviewer:
        """Register a reviewer, replacing any previous registration."""
        if not reviewer_id:
            raise ValidationError("reviewer_id must be non-empty")
        reviewer = Reviewer(reviewer_id=reviewer_id, roles=frozenset(roles), available=available)
        with self._lock:
            self._reviewers[reviewer_id] = reviewer
        logger.info("Registered reviewer %s with roles %s", reviewer_id, sorted(reviewer.roles))
        return dataclasses.replace(reviewer)

    def remove(self, reviewer_id: str) -> bool:
        with self._lock:
            removed = self._reviewers.pop(reviewer_id, None)
        if removed is not None:
            logger.info("Removed reviewer %s", reviewer_id)
        return removed is not None

    def get(self, reviewer_id: str) -> Optional[Reviewer]:
        with self._lock:
            reviewer = self._reviewers.get(reviewer_id)
            return dataclasses.replace(reviewer) if reviewer else None

    def set_available(self, reviewer_id: str, available: bool) -> Reviewer:
        with self._lock:
            reviewer = self._reviewers.get(reviewer_id)
            if reviewer is None:
                raise NotFoundError("reviewer", reviewer_id)
            reviewer.available = available
            return dataclasses.replace(reviewer)

    def roles_of(self, reviewer_id: str) -> frozenset[str]:
        with self._lock:
            reviewer = self._reviewers.get(reviewer_id)
            return reviewer.roles if reviewer else frozenset()

    def query_by_role(self, role: str) -> List[Reviewer]:
        """All reviewers holding a role, available or not."""
        with self._lock:
            matches = [r for r in self._reviewers.values() if role in r.roles]
        return [dataclasses.replace(r) for r in sorted(matches, key=lambda r: r.reviewer_id)]

    def members(self, roles: Iterable[str]) -> List[Reviewer]:
        """Available reviewers holding at least one of the roles."""
        wanted = set(roles)
        with self._lock:
            matches = [
                r for r in self._reviewers.values()
                if r.available and wanted & r.roles
            ]
        return [dataclasses.replace(r) for r in sorted(matches, key=lambda r: r.reviewer_id)]

    def list_reviewers(self) -> List[Reviewer]:
        with self._lock:
            reviewers = list(self._reviewers.values())
        return [dataclasses.replace(r) for r in sorted(reviewers, key=lambda r: r.reviewer_id)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._reviewers)


# ── Router ───────────────────────────────────────────────────────

class ApprovalRouter:
    """Routes review items to reviewer groups and escalates overdue reviews."""

    def __init__(
        self,
        config: Optional[RoutingConfig] = None,
        registry: Optional[ReviewerRegistry] = None,
        bus: Optional[EventBus] = None,
        store: Optional[EntityStore[PendingReview]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config or RoutingConfig()
        self._registry = registry if registry is not None else ReviewerRegistry()
        self._bus = bus or EventBus()
        self._store: EntityStore[PendingReview] = store if store is not None else InMemoryStore()
        self._clock = clock
        # Keyed by item id so route/resolve/escalate of one item are serialized
        self._item_locks = KeyedLocks()

    @property
    def registry(self) -> ReviewerRegistry:
        return self._registry

    def policy_for(self, action_type: str, level: RiskLevel) -> RoutingRule:
        """First matching rule, else the default rule."""
        for rule in self._config.rules:
            if not fnmatch.fnmatchcase(action_type, rule.action_type):
                continue
            if rule.risk_level != "*" and RiskLevel.parse(rule.risk_level) != level:
                continue
            return rule
        return self._config.default_rule

    def route(self, item: ReviewItem, policy: Optional[RoutingRule] = None) -> PendingReview:
        """Create a pending review for an item, or return its open one.

        Raises:
            NoReviewersAvailableError: The resolved reviewer group is empty.
        """
        with self._item_locks.hold(item.item_id):
            existing = self.open_review_for(item.item_id)
            if existing is not None:
                logger.debug("Item %s already has open review %s", item.item_id, existing.id)
                return existing

            rule = policy or self.policy_for(item.action_type, item.risk_level)
            roles = tuple(rule.reviewer_roles)
            reviewers = self._registry.members(roles)
            if not reviewers:
                logger.error(
                    "No available reviewers for %s %s (roles %s)",
                    item.item_kind, item.item_id, list(roles),
                )
                self._bus.emit(
                    "review.routing_failed",
                    entity_id=item.item_id,
                    actor="system",
                    item_kind=item.item_kind,
                    action_type=item.action_type,
                    roles=list(roles),
                )
                raise NoReviewersAvailableError(item.item_id, roles)

            now = self._clock()
            review = PendingReview(
                item_id=item.item_id,
                item_kind=item.item_kind,
                action_type=item.action_type,
                risk_level=item.risk_level,
                reviewer_group=roles,
                assigned_reviewers=tuple(r.reviewer_id for r in reviewers),
                due_at=now + timedelta(seconds=self._timeout(rule)),
                summary=item.summary,
                priority=review_priority(item.risk_level),
                created_at=now,
            )
            review = self._store.create(review)
            logger.info(
                "Routed %s %s to %s (due %s)",
                item.item_kind, item.item_id, list(review.assigned_reviewers),
                review.due_at.isoformat(),
            )
            self._bus.emit(
                "review.routed",
                entity_id=review.id,
                actor="system",
                item_id=item.item_id,
                item_kind=item.item_kind,
                reviewer_group=list(roles),
                assigned_reviewers=list(review.assigned_reviewers),
                priority=review.priority,
                due_at=review.due_at.isoformat(),
                summary=review.summary,
            )
            return review

    def resolve(self, review_id: str, resolution: str, actor: str = "system") -> PendingReview:
        """Close a review.

        Raises:
            NotFoundError: Unknown review id.
            ReviewAlreadyResolvedError: The review was already closed.
        """
        review = self._require(review_id)
        with self._item_locks.hold(review.item_id):
            review = self._require(review_id)
            if not review.is_open:
                raise ReviewAlreadyResolvedError(review_id, review.resolution)
            review.resolved_at = self._clock()
            review.resolution = resolution
            review = self._store.update(review)
            logger.info("Resolved review %s: %s", review_id, resolution)
            self._bus.emit(
                "review.resolved",
                entity_id=review.id,
                actor=actor,
                item_id=review.item_id,
                resolution=resolution,
            )
            return review

    def escalate_overdue(self, now: Optional[datetime] = None) -> List[PendingReview]:
        """Re-route open reviews past their due time to the escalation group.

        Returns the reviews that were escalated. Reviews that already reached
        max_reroutes are left alone.
        """
        now = now or self._clock()
        escalated = []
        for candidate in self._store.list(lambda r: r.is_open and r.due_at <= now):
            if candidate.reroute_count >= self._config.max_reroutes:
                continue
            with self._item_locks.hold(candidate.item_id):
                review = self._store.get(candidate.id)
                if review is None or not review.is_open:
                    continue
                if review.reroute_count >= self._config.max_reroutes:
                    continue

                rule = self.policy_for(review.action_type, review.risk_level)
                roles = tuple(rule.escalation_roles or self._config.escalation_roles)
                reviewers = self._registry.members(roles)
                if not reviewers:
                    logger.warning(
                        "Cannot escalate overdue review %s: no available reviewers for %s",
                        review.id, list(roles),
                    )
                    self._bus.emit(
                        "review.escalation_failed",
                        entity_id=review.id,
                        actor="system",
                        item_id=review.item_id,
                        roles=list(roles),
                    )
                    continue

                previous = list(review.assigned_reviewers)
                review.reviewer_group = roles
                review.assigned_reviewers = tuple(r.reviewer_id for r in reviewers)
                review.reroute_count += 1
                review.priority = ESCALATED_PRIORITY
                review.due_at = now + timedelta(seconds=self._timeout(rule))
                review = self._store.update(review)
                logger.info(
                    "Escalated overdue review %s from %s to %s",
                    review.id, previous, list(review.assigned_reviewers),
                )
                self._bus.emit(
                    "review.escalated",
                    entity_id=review.id,
                    actor="system",
                    item_id=review.item_id,
                    previous_reviewers=previous,
                    assigned_reviewers=list(review.assigned_reviewers),
                    reviewer_group=list(roles),
                    reroute_count=review.reroute_count,
                    due_at=review.due_at.isoformat(),
                )
                escalated.append(review)
        return escalated

    def send_reminders(
        self,
        within_seconds: float = 24 * 3600,
        now: Optional[datetime] = None,
    ) -> List[PendingReview]:
        """Publish review.reminder for open reviews due within the horizon."""
        now = now or self._clock()
        horizon = now + timedelta(seconds=within_seconds)
        due_soon = self._store.list(lambda r: r.is_open and now < r.due_at <= horizon)
        for review in due_soon:
            self._bus.emit(
                "review.reminder",
                entity_id=review.id,
                actor="system",
                item_id=review.item_id,
                assigned_reviewers=list(review.assigned_reviewers),
                priority=review.priority,
                due_at=review.due_at.isoformat(),
            )
        if due_soon:
            logger.info("Sent reminders for %d review(s)", len(due_soon))
        return due_soon

    def check_reviewer(self, review: PendingReview, reviewer_id: str) -> None:
        """Raise ValidationError unless the reviewer may decide on this review.

        Members of the review's group qualify, as do holders of the global
        escalation roles.
        """
        reviewer = self._registry.get(reviewer_id)
        if reviewer is None:
            raise ValidationError(f"Unknown reviewer: {reviewer_id}")
        allowed = set(review.reviewer_group) | set(self._config.escalation_roles)
        if allowed and not allowed & reviewer.roles:
            raise ValidationError(
                f"Reviewer {reviewer_id} holds none of the roles "
                f"{sorted(allowed)} required for review {review.id}"
            )

    # ── Queries ──────────────────────────────────────────────────

    def get(self, review_id: str) -> Optional[PendingReview]:
        return self._store.get(review_id)

    def open_review_for(self, item_id: str) -> Optional[PendingReview]:
        return self._store.find_one(lambda r: r.item_id == item_id and r.is_open)

    def list_reviews(self, open_only: bool = False) -> List[PendingReview]:
        reviews = self._store.list(lambda r: r.is_open) if open_only else self._store.list()
        return sorted(reviews, key=lambda r: (-r.priority, r.created_at))

    def reviews_for_reviewer(self, reviewer_id: str) -> List[PendingReview]:
        """Open reviews assigned to a reviewer, highest priority first."""
        reviews = self._store.list(
            lambda r: r.is_open and reviewer_id in r.assigned_reviewers
        )
        return sorted(reviews, key=lambda r: (-r.priority, r.created_at))

    # ── Internals ────────────────────────────────────────────────

    def _timeout(self, rule: RoutingRule) -> float:
        if rule.timeout_seconds is not None:
            return rule.timeout_seconds
        return self._config.review_timeout_seconds

    def _require(self, review_id: str) -> PendingReview:
        review = self._store.get(review_id)
        if review is None:
            raise NotFoundError("review", review_id)
        return review
