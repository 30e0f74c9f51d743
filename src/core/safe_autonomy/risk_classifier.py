"""
Safe Autonomy: Risk Classifier

Classifies proposed actions into risk levels (none..critical) from a static
action table plus penalties accumulated from the action's context (scope,
reversibility, amount, explicit risk factors).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

from .config import RiskClassificationConfig
from .errors import ValidationError
from .models import RiskClassification, RiskLevel

logger = logging.getLogger(__name__)


class RiskClassifier:
    """Pure classifier: the same (action_type, context) always yields the same verdict.

    Classification algorithm:
    1. Look up action type in action_levels → base level
    2. Accumulate penalty from scope, reversibility, amount, explicit factors
    3. Escalate the level through penalty_escalations (can only raise)
    4. Unknown action types default to unknown_action_level (unknown = dangerous)
    5. locked = level >= lock_threshold
    """

    def __init__(self, config: Optional[RiskClassificationConfig] = None):
        config = config or RiskClassificationConfig()
        self._levels: dict[str, RiskLevel] = {
            action: RiskLevel.parse(level) for action, level in config.action_levels.items()
        }
        self._reasons: dict[str, str] = dict(config.action_reasons)
        self._unknown_level = RiskLevel.parse(config.unknown_action_level)
        self._lock_threshold = RiskLevel.parse(config.lock_threshold)
        self._scope_penalties: dict[str, int] = dict(config.scope_penalties)
        self._unknown_scope_penalty = config.unknown_scope_penalty
        self._irreversible_penalty = config.irreversible_penalty
        # Highest tiers first so the first match wins
        self._amount_tiers: tuple[tuple[float, int], ...] = tuple(
            sorted(((t.min_amount, t.penalty) for t in config.amount_penalties), reverse=True)
        )
        self._escalations: tuple[tuple[int, RiskLevel], ...] = tuple(
            sorted(
                ((e.min_penalty, RiskLevel.parse(e.escalate_to)) for e in config.penalty_escalations),
                reverse=True,
            )
        )

    @property
    def lock_threshold(self) -> RiskLevel:
        return self._lock_threshold

    @property
    def known_action_types(self) -> list[str]:
        """Return sorted list of all action types with configured levels."""
        return sorted(self._levels.keys())

    def base_level(self, action_type: str) -> RiskLevel:
        return self._levels.get(action_type, self._unknown_level)

    def is_locked(self, classification: RiskClassification) -> bool:
        return classification.level >= self._lock_threshold

    def classify(
        self,
        action_type: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> RiskClassification:
        """Classify an action.

        Args:
            action_type: The action identifier (e.g., "fund_transfer")
            context: Optional signals: "scope" (str), "reversible" (bool),
                "amount" (number), "penalties" (mapping of factor -> int)

        Returns:
            RiskClassification with level, penalty, lock flag and rationale

        Raises:
            ValidationError: If the action type or context is malformed
        """
        if not isinstance(action_type, str) or not action_type.strip():
            raise ValidationError("action_type must be a non-empty string")
        if context is None:
            context = {}
        if not isinstance(context, Mapping):
            raise ValidationError(f"context must be a mapping, got {type(context).__name__}")

        known = action_type in self._levels
        base = self.base_level(action_type)
        penalty = 0
        factors: list[str] = []

        # Scope penalty
        scope = context.get("scope")
        if scope is not None:
            scope_penalty = self._scope_penalties.get(str(scope), self._unknown_scope_penalty)
            if scope_penalty:
                penalty += scope_penalty
                factors.append(f"scope {scope} (+{scope_penalty})")

        # Reversibility penalty
        if context.get("reversible") is False and self._irreversible_penalty:
            penalty += self._irreversible_penalty
            factors.append(f"irreversible (+{self._irreversible_penalty})")

        # Amount penalty (largest matching tier only)
        amount = context.get("amount")
        if amount is not None:
            if isinstance(amount, bool) or not isinstance(amount, (int, float)):
                raise ValidationError(f"amount must be numeric, got {amount!r}")
            for min_amount, tier_penalty in self._amount_tiers:
                if abs(amount) >= min_amount:
                    penalty += tier_penalty
                    factors.append(f"amount {amount:g} (+{tier_penalty})")
                    break

        # Explicit risk factors (security, compliance, reputational, ...)
        explicit = context.get("penalties") or {}
        if not isinstance(explicit, Mapping):
            raise ValidationError("penalties must be a mapping of factor -> int")
        for factor in sorted(explicit):
            value = explicit[factor]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"penalty {factor} must be a non-negative int, got {value!r}")
            if value:
                penalty += value
                factors.append(f"{factor} risk (+{value})")

        # Penalty escalation (can only raise)
        level = base
        for min_penalty, escalate_to in self._escalations:
            if penalty >= min_penalty:
                if escalate_to > level:
                    level = escalate_to
                break

        locked = level >= self._lock_threshold
        return RiskClassification(
            action_type=action_type,
            level=level,
            penalty=penalty,
            locked=locked,
            rationale=self._rationale(action_type, known, base, level, penalty, factors, locked),
            factors=tuple(factors),
        )

    def _rationale(
        self,
        action_type: str,
        known: bool,
        base: RiskLevel,
        level: RiskLevel,
        penalty: int,
        factors: list[str],
        locked: bool,
    ) -> str:
        if known:
            parts = [self._reasons.get(action_type, f"{action_type} is {base.label} risk")]
        else:
            parts = [f"Unknown action type {action_type} treated as {base.label} risk"]
        if factors:
            parts.append(f"penalty {penalty} from " + ", ".join(factors))
        if level > base:
            parts.append(f"escalated {base.label} -> {level.label}")
        if locked:
            parts.append(f"locked at {level.label} (threshold {self._lock_threshold.label})")
        return "; ".join(parts)
