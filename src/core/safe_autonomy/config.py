"""
Safe Autonomy: Configuration Loader

Loads and validates safe_autonomy.yaml using Pydantic v2.
Provides sensible defaults when config file is missing.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Optional

import yaml
from pydantic import BaseModel, ValidationInfo, field_validator

from .models import RiskLevel

logger = logging.getLogger(__name__)


def _check_level(v: str) -> str:
    try:
        RiskLevel.parse(v)
    except ValueError:
        raise ValueError(
            f"risk level must be one of {[lvl.label for lvl in RiskLevel]}, got {v!r}"
        ) from None
    return v.lower()


# ── Risk Classification ──────────────────────────────────────────

_DEFAULT_ACTION_LEVELS = {
    "fund_transfer": "critical",
    "contract_deploy": "critical",
    "partnership_commit": "high",
    "external_communication": "high",
    "proposal_create": "medium",
    "working_group_create": "medium",
    "grant_proposal": "medium",
    "milestone_report": "medium",
    "document_publish": "low",
    "research_digest": "low",
    "agent_chatter": "none",
    "signal_process": "none",
}

_DEFAULT_ACTION_REASONS = {
    "fund_transfer": "Fund transfers can result in irreversible financial loss",
    "contract_deploy": "Contract deployments are immutable and have security implications",
    "partnership_commit": "Partnership commitments create binding obligations with external parties",
    "external_communication": "External communications speak for the organisation",
    "proposal_create": "Proposals can lead to governance changes if approved",
    "working_group_create": "Working groups receive publishing authority and may have budgets",
    "grant_proposal": "Grant proposals can result in fund allocation if approved",
    "milestone_report": "Milestone reports can trigger fund disbursements",
    "document_publish": "Published documents become part of the official record",
    "research_digest": "Research digests are informational with no binding authority",
    "agent_chatter": "Agent chatter is ambient activity with no governance authority",
    "signal_process": "Signal processing is internal data handling",
}


class AmountPenalty(BaseModel):
    """Penalty added when a context amount reaches min_amount."""
    min_amount: float
    penalty: int

    @field_validator("penalty")
    @classmethod
    def validate_penalty(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"penalty must be >= 0, got {v}")
        return v


class PenaltyEscalation(BaseModel):
    """Raise the risk level to escalate_to once the penalty reaches min_penalty."""
    min_penalty: int
    escalate_to: str

    @field_validator("escalate_to")
    @classmethod
    def validate_escalate_to(cls, v: str) -> str:
        return _check_level(v)


class RiskClassificationConfig(BaseModel):
    """Static lookup and penalty tables for the risk classifier."""
    action_levels: dict[str, str] = dict(_DEFAULT_ACTION_LEVELS)
    action_reasons: dict[str, str] = dict(_DEFAULT_ACTION_REASONS)
    unknown_action_level: str = "high"
    lock_threshold: str = "high"
    scope_penalties: dict[str, int] = {
        "workspace": 0,
        "internal": 5,
        "external": 20,
        "public": 30,
    }
    unknown_scope_penalty: int = 20
    irreversible_penalty: int = 25
    amount_penalties: list[AmountPenalty] = [
        AmountPenalty(min_amount=1_000, penalty=10),
        AmountPenalty(min_amount=10_000, penalty=25),
        AmountPenalty(min_amount=100_000, penalty=50),
    ]
    penalty_escalations: list[PenaltyEscalation] = [
        PenaltyEscalation(min_penalty=30, escalate_to="medium"),
        PenaltyEscalation(min_penalty=50, escalate_to="high"),
        PenaltyEscalation(min_penalty=80, escalate_to="critical"),
    ]

    @field_validator("action_levels")
    @classmethod
    def validate_action_levels(cls, v: dict[str, str]) -> dict[str, str]:
        return {action: _check_level(level) for action, level in v.items()}

    @field_validator("unknown_action_level", "lock_threshold")
    @classmethod
    def validate_level(cls, v: str) -> str:
        return _check_level(v)

    @field_validator("scope_penalties")
    @classmethod
    def validate_scope_penalties(cls, v: dict[str, int]) -> dict[str, int]:
        for scope, penalty in v.items():
            if penalty < 0:
                raise ValueError(f"scope penalty for {scope} must be >= 0, got {penalty}")
        return v

    @field_validator("unknown_scope_penalty", "irreversible_penalty")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"penalty must be >= 0, got {v}")
        return v


# ── Locks ────────────────────────────────────────────────────────

class ApprovalRequirementRule(BaseModel):
    """Approvals needed to unlock an action at a given risk level."""
    count: int = 1
    roles: list[str] = []

    @field_validator("count")
    @classmethod
    def validate_count(cls, v: int) -> int:
        if v < 1 or v > 20:
            raise ValueError(f"count must be 1-20, got {v}")
        return v


class LockConfig(BaseModel):
    requirements: dict[str, ApprovalRequirementRule] = {
        "medium": ApprovalRequirementRule(count=1, roles=["reviewer", "senior_reviewer", "director"]),
        "high": ApprovalRequirementRule(count=2, roles=["senior_reviewer", "director"]),
        "critical": ApprovalRequirementRule(count=3, roles=["senior_reviewer", "director"]),
    }
    fallback_requirement: ApprovalRequirementRule = ApprovalRequirementRule(count=1)

    @field_validator("requirements")
    @classmethod
    def validate_requirement_levels(
        cls, v: dict[str, ApprovalRequirementRule]
    ) -> dict[str, ApprovalRequirementRule]:
        return {_check_level(level): rule for level, rule in v.items()}


# ── Routing ──────────────────────────────────────────────────────

class RoutingRule(BaseModel):
    """Maps (action type pattern, risk level) to a reviewer group.

    action_type is an fnmatch pattern; risk_level "*" matches any level.
    """
    action_type: str = "*"
    risk_level: str = "*"
    reviewer_roles: list[str] = []
    escalation_roles: list[str] = []
    timeout_seconds: Optional[float] = None

    @field_validator("risk_level")
    @classmethod
    def validate_risk_level(cls, v: str) -> str:
        if v == "*":
            return v
        return _check_level(v)

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError(f"timeout_seconds must be >= 0, got {v}")
        return v


class RoutingConfig(BaseModel):
    rules: list[RoutingRule] = [
        RoutingRule(risk_level="critical", reviewer_roles=["director", "senior_reviewer"],
                    escalation_roles=["director"], timeout_seconds=72 * 3600),
        RoutingRule(risk_level="high", reviewer_roles=["senior_reviewer"],
                    escalation_roles=["director"], timeout_seconds=72 * 3600),
        RoutingRule(risk_level="medium", reviewer_roles=["reviewer"],
                    escalation_roles=["senior_reviewer"], timeout_seconds=48 * 3600),
    ]
    default_rule: RoutingRule = RoutingRule(
        reviewer_roles=["reviewer"], escalation_roles=["senior_reviewer"]
    )
    escalation_roles: list[str] = ["director"]
    review_timeout_seconds: float = 24 * 3600
    max_reroutes: int = 1

    @field_validator("max_reroutes")
    @classmethod
    def validate_max_reroutes(cls, v: int) -> int:
        if v < 0 or v > 5:
            raise ValueError(f"max_reroutes must be 0-5, got {v}")
        return v


# ── Passive Consensus ────────────────────────────────────────────

class PassiveConsensusConfig(BaseModel):
    enabled: bool = True
    default_window_seconds: float = 24 * 3600
    window_seconds_by_level: dict[str, float] = {
        "low": 24 * 3600,
        "medium": 48 * 3600,
    }
    min_level: str = "low"
    auto_resolve: bool = True

    @field_validator("min_level")
    @classmethod
    def validate_min_level(cls, v: str) -> str:
        return _check_level(v)

    @field_validator("default_window_seconds")
    @classmethod
    def validate_window(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"default_window_seconds must be >= 0, got {v}")
        return v

    @field_validator("window_seconds_by_level")
    @classmethod
    def validate_windows(cls, v: dict[str, float]) -> dict[str, float]:
        for seconds in v.values():
            if seconds < 0:
                raise ValueError(f"window seconds must be >= 0, got {seconds}")
        return {_check_level(level): seconds for level, seconds in v.items()}


# ── Retry ────────────────────────────────────────────────────────

class RetryConfig(BaseModel):
    """Bounded exponential backoff. Delays are in seconds."""
    max_attempts: int = 10
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 3600.0
    jitter: bool = True

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1 or v > 100:
            raise ValueError(f"max_attempts must be 1-100, got {v}")
        return v

    @field_validator("base_delay")
    @classmethod
    def validate_base_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"base_delay must be >= 0, got {v}")
        return v

    @field_validator("multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {v}")
        return v

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        base = info.data.get("base_delay", 0.0)
        if v < base:
            raise ValueError(f"max_delay must be >= base_delay ({base}), got {v}")
        return v


# ── Anti-Abuse ───────────────────────────────────────────────────

class AntiAbuseConfig(BaseModel):
    window_seconds: float = 60.0
    max_signals_per_window: int = 30
    bucket_capacity: int = 10
    refill_per_second: float = 1.0
    history_horizon_seconds: float = 3600.0
    high_risk_level: str = "high"
    high_risk_burst_threshold: int = 5
    duplicate_flag_threshold: int = 3
    rejected_topic_cooldown_seconds: float = 30 * 24 * 3600
    blocked_actors: list[str] = []
    blocked_patterns: list[str] = []

    @field_validator("window_seconds", "history_horizon_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be > 0, got {v}")
        return v

    @field_validator("max_signals_per_window", "bucket_capacity")
    @classmethod
    def validate_limits(cls, v: int) -> int:
        if v < 1 or v > 100_000:
            raise ValueError(f"must be 1-100000, got {v}")
        return v

    @field_validator("high_risk_level")
    @classmethod
    def validate_high_risk_level(cls, v: str) -> str:
        return _check_level(v)

    @field_validator("blocked_patterns")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid blocked pattern {pattern!r}: {e}") from None
        return v


# ── Audit ────────────────────────────────────────────────────────

class AuditConfig(BaseModel):
    enabled: bool = True
    path: Optional[str] = None


class SafeAutonomyConfig(BaseModel):
    """Top-level safe-autonomy configuration."""
    version: str = "1.0"
    risk_classification: RiskClassificationConfig = RiskClassificationConfig()
    locks: LockConfig = LockConfig()
    routing: RoutingConfig = RoutingConfig()
    passive_consensus: PassiveConsensusConfig = PassiveConsensusConfig()
    retry: RetryConfig = RetryConfig()
    anti_abuse: AntiAbuseConfig = AntiAbuseConfig()
    audit: AuditConfig = AuditConfig()
    sweep_interval_seconds: float = 60.0


# ── Loader ───────────────────────────────────────────────────────

def load_safe_autonomy_config(config_path: Optional[str] = None) -> SafeAutonomyConfig:
    """Load safe-autonomy config from YAML.

    Args:
        config_path: Path to safe_autonomy.yaml. If None, searches standard locations.

    Returns:
        Parsed SafeAutonomyConfig. Returns defaults if file is missing.
    """
    if config_path is None:
        candidates = [
            os.environ.get("SAFE_AUTONOMY_CONFIG", ""),
            "config/safe_autonomy.yaml",
            os.path.join(os.path.dirname(__file__), "../../../config/safe_autonomy.yaml"),
        ]
        for candidate in candidates:
            if candidate and os.path.exists(candidate):
                config_path = candidate
                break

    if config_path is None or not os.path.exists(config_path):
        logger.warning("Safe autonomy config not found, using defaults")
        return SafeAutonomyConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            logger.warning("Safe autonomy config is empty, using defaults")
            return SafeAutonomyConfig()

        return SafeAutonomyConfig.model_validate(raw)
    except Exception as e:
        logger.error("Failed to load safe autonomy config: %s", e)
        return SafeAutonomyConfig()
