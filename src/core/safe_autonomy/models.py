"""
Safe Autonomy: Shared Data Models

Core data types for risk classification, locks, reviews, passive
consensus, retries, anti-abuse tracking and the audit trail. These models
have zero external dependencies beyond stdlib.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ── Risk Level Enum ──────────────────────────────────────────────

class RiskLevel(IntEnum):
    """Risk levels for proposed agent actions.

    NONE:     no side effects worth gating
    LOW:      side effects, trivially reversible
    MEDIUM:   side effects, may need a second look
    HIGH:     hard to undo, locked until approved
    CRITICAL: irreversible or external, locked and needs senior approval
    """
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> RiskLevel:
        """Accept a RiskLevel, an int, or a level name ("high", "HIGH")."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid risk level: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Invalid risk level: {value!r}") from None
        raise ValueError(f"Invalid risk level: {value!r}")


# ── Status Enums ─────────────────────────────────────────────────

class LockStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class UnlockOutcome(str, Enum):
    UNLOCKED = "unlocked"
    ALREADY_UNLOCKED = "already_unlocked"
    INSUFFICIENT_APPROVALS = "insufficient_approvals"
    REJECTED = "rejected"


class ConsensusStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    VETOED = "vetoed"
    ESCALATED = "escalated"


class RetryStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RetryStatus.PENDING, RetryStatus.RUNNING)


class AbuseDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    FLAG = "flag"


class SubmissionOutcome(str, Enum):
    ALLOWED = "allowed"
    LOCKED = "locked"
    PENDING_CONSENSUS = "pending_consensus"
    DENIED = "denied"


# ── Risk Classification ──────────────────────────────────────────

@dataclass(frozen=True)
class RiskClassification:
    """Verdict for one proposed action.

    Contains no timestamps so that identical inputs compare equal.
    """
    action_type: str
    level: RiskLevel
    penalty: int
    locked: bool
    rationale: str
    factors: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "action_type": self.action_type,
            "level": self.level.label,
            "penalty": self.penalty,
            "locked": self.locked,
            "rationale": self.rationale,
            "factors": list(self.factors),
        }


@dataclass
class ProposedAction:
    """An action an agent wants to perform."""
    action_type: str
    actor: str
    context: dict = field(default_factory=dict)
    action_id: str = field(default_factory=new_id)


# ── Locks ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ApprovalRequirement:
    """How many qualifying approvals a lock needs, and from which roles."""
    count: int
    roles: tuple[str, ...] = ()


@dataclass
class ApprovalRecord:
    """One reviewer's decision on one lock."""
    reviewer_id: str
    decision: ReviewDecision
    reviewer_roles: tuple[str, ...] = ()
    comment: str = ""
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class LockedAction:
    """A dangerous action held until it has enough approvals."""
    action_id: str
    action_type: str
    actor: str
    risk_level: RiskLevel
    requirement: ApprovalRequirement
    rationale: str = ""
    status: LockStatus = LockStatus.LOCKED
    approvals: list[ApprovalRecord] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == LockStatus.LOCKED

    def decision_by(self, reviewer_id: str) -> Optional[ApprovalRecord]:
        for record in self.approvals:
            if record.reviewer_id == reviewer_id:
                return record
        return None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["risk_level"] = self.risk_level.label
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["closed_at"] = self.closed_at.isoformat() if self.closed_at else None
        data["approvals"] = [
            {
                "reviewer_id": a.reviewer_id,
                "decision": a.decision.value,
                "reviewer_roles": list(a.reviewer_roles),
                "comment": a.comment,
                "timestamp": a.timestamp.isoformat(),
            }
            for a in self.approvals
        ]
        return data


@dataclass
class UnlockResult:
    """Result of attempting to unlock a LockedAction."""
    lock: LockedAction
    outcome: UnlockOutcome
    approvals_counted: int
    approvals_required: int
    reason: str = ""

    @property
    def unlocked(self) -> bool:
        return self.outcome in (UnlockOutcome.UNLOCKED, UnlockOutcome.ALREADY_UNLOCKED)


# ── Reviews ──────────────────────────────────────────────────────

@dataclass
class Reviewer:
    reviewer_id: str
    roles: frozenset[str] = frozenset()
    available: bool = True


@dataclass(frozen=True)
class ReviewItem:
    """Something that needs human review: a lock or a consensus item."""
    item_id: str
    item_kind: str
    action_type: str
    risk_level: RiskLevel
    summary: str = ""


@dataclass
class PendingReview:
    """A review task routed to a reviewer group."""
    item_id: str
    item_kind: str
    action_type: str
    risk_level: RiskLevel
    reviewer_group: tuple[str, ...]
    assigned_reviewers: tuple[str, ...]
    due_at: datetime
    summary: str = ""
    priority: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolution: str = ""
    reroute_count: int = 0

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "item_kind": self.item_kind,
            "action_type": self.action_type,
            "risk_level": self.risk_level.label,
            "reviewer_group": list(self.reviewer_group),
            "assigned_reviewers": list(self.assigned_reviewers),
            "summary": self.summary,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
            "due_at": self.due_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
            "reroute_count": self.reroute_count,
        }


# ── Passive Consensus ────────────────────────────────────────────

@dataclass(frozen=True)
class VetoRecord:
    actor_id: str
    reason: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class EscalationRecord:
    actor_id: str
    reason: str
    escalated_to: str = ""
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class PassiveConsensusItem:
    """An opt-out proposal: approved at its deadline unless vetoed."""
    action: ProposedAction
    classification: RiskClassification
    opened_at: datetime
    deadline: datetime
    status: ConsensusStatus = ConsensusStatus.PENDING
    vetoes: list[VetoRecord] = field(default_factory=list)
    escalations: list[EscalationRecord] = field(default_factory=list)
    unreviewed_by_human: bool = True
    resolved_at: Optional[datetime] = None
    escalated_lock_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    @property
    def action_id(self) -> str:
        return self.action.action_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action_id": self.action.action_id,
            "action_type": self.action.action_type,
            "actor": self.action.actor,
            "risk_level": self.classification.level.label,
            "opened_at": self.opened_at.isoformat(),
            "deadline": self.deadline.isoformat(),
            "status": self.status.value,
            "vetoes": [
                {"actor_id": v.actor_id, "reason": v.reason, "timestamp": v.timestamp.isoformat()}
                for v in self.vetoes
            ],
            "escalations": [
                {
                    "actor_id": e.actor_id,
                    "reason": e.reason,
                    "escalated_to": e.escalated_to,
                    "timestamp": e.timestamp.isoformat(),
                }
                for e in self.escalations
            ],
            "unreviewed_by_human": self.unreviewed_by_human,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "escalated_lock_id": self.escalated_lock_id,
        }


@dataclass
class ConsensusCheckResult:
    item: PassiveConsensusItem
    resolved_now: bool
    seconds_remaining: float

    @property
    def status(self) -> ConsensusStatus:
        return self.item.status

    @property
    def is_pending(self) -> bool:
        return self.item.status == ConsensusStatus.PENDING

    @property
    def is_approved(self) -> bool:
        return self.item.status == ConsensusStatus.APPROVED


# ── Anti-Abuse ───────────────────────────────────────────────────

@dataclass
class Signal:
    """An observed actor behaviour event."""
    actor: str
    kind: str
    content: str = ""
    id: str = field(default_factory=new_id)


@dataclass
class SignalEntry:
    """One accepted signal inside an actor's sliding window."""
    signal_id: str
    timestamp: float
    kind: str
    content_hash: str
    risk_level: Optional[RiskLevel] = None


@dataclass
class SignalHistory:
    actor: str
    entries: list[SignalEntry] = field(default_factory=list)
    denied_count: int = 0


@dataclass
class RateLimitState:
    actor: str
    tokens: float
    last_refill: float


@dataclass
class ValidationResult:
    decision: AbuseDecision
    reason: str = ""
    warnings: list[str] = field(default_factory=list)
    retry_after: Optional[float] = None
    rule: str = ""

    @property
    def allowed(self) -> bool:
        return self.decision != AbuseDecision.DENY

    @property
    def flagged(self) -> bool:
        return self.decision == AbuseDecision.FLAG


# ── Audit ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one state transition."""
    entity_id: str
    entity_kind: str
    transition: str
    actor: str
    timestamp: datetime = field(default_factory=utcnow)
    details: dict = field(default_factory=dict, hash=False, compare=False)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "entity_kind": self.entity_kind,
            "transition": self.transition,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AuditEntry:
        return cls(
            id=data["id"],
            entity_id=data["entity_id"],
            entity_kind=data["entity_kind"],
            transition=data["transition"],
            actor=data.get("actor", "system"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            details=data.get("details", {}),
        )


# ── Engine Result ────────────────────────────────────────────────

@dataclass
class SubmissionResult:
    """What happened to an action handed to the engine."""
    outcome: SubmissionOutcome
    action_id: str
    reason: str = ""
    classification: Optional[RiskClassification] = None
    lock_id: Optional[str] = None
    review_id: Optional[str] = None
    item_id: Optional[str] = None
    flagged: bool = False
