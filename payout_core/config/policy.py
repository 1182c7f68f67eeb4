"""
Versioned scoring and refund policies.

A policy is published as an immutable snapshot. Evaluations fetch the
current snapshot once and use it for the whole decision, so a policy
change never affects a decision half way through.
"""
from typing import Dict, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = structlog.get_logger(__name__)

SIGNAL_GROUPS: Tuple[str, ...] = ("device", "network", "payment", "behavioral", "platform")


class GroupWeights(BaseModel):
    """Weights of each signal group in the combined trust score."""

    model_config = ConfigDict(frozen=True)

    device: float = 0.25
    network: float = 0.20
    payment: float = 0.15
    behavioral: float = 0.30
    platform: float = 0.10

    @field_validator("*")
    @classmethod
    def validate_weight(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("Weight must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def validate_total(self) -> "GroupWeights":
        total = sum(self.as_dict().values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Group weights must sum to 1.0, got {total:.4f}")
        return self

    def as_dict(self) -> Dict[str, float]:
        return {group: getattr(self, group) for group in SIGNAL_GROUPS}


class EntityWeights(BaseModel):
    """Group weights per scored entity type."""

    model_config = ConfigDict(frozen=True)

    by_entity: Dict[str, GroupWeights] = Field(default_factory=dict)
    default: GroupWeights = Field(default_factory=GroupWeights)

    def for_entity(self, entity_type: str) -> GroupWeights:
        return self.by_entity.get(entity_type, self.default)


class DecisionThresholds(BaseModel):
    """Trust score thresholds. A score equal to a threshold satisfies it."""

    model_config = ConfigDict(frozen=True)

    auto_approve: int = Field(default=80, ge=0, le=100)
    auto_reject: int = Field(default=40, ge=0, le=100)

    @model_validator(mode="after")
    def validate_order(self) -> "DecisionThresholds":
        if self.auto_reject >= self.auto_approve:
            raise ValueError("auto_reject threshold must be below auto_approve threshold")
        return self


class ScoringPolicy(BaseModel):
    """Everything the trust scoring engine needs to produce a decision."""

    model_config = ConfigDict(frozen=True)

    version: str
    thresholds: DecisionThresholds = Field(default_factory=DecisionThresholds)
    weights: EntityWeights = Field(default_factory=EntityWeights)
    max_transactions_per_hour: int = 10
    high_risk_countries: Tuple[str, ...] = ("CN", "RU", "KP", "IR")
    required_groups: Tuple[str, ...] = SIGNAL_GROUPS
    low_confidence_below: int = 50

    @field_validator("required_groups")
    @classmethod
    def validate_groups(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        unknown = set(v) - set(SIGNAL_GROUPS)
        if unknown:
            raise ValueError(f"Unknown signal groups: {sorted(unknown)}")
        return v


class RefundPolicy(BaseModel):
    """Refund automation rules."""

    model_config = ConfigDict(frozen=True)

    instant_window_minutes: int = 60
    max_refunds_per_window: int = 3
    abuse_window_hours: int = 24
    review_sla_hours: int = 24


class PolicySnapshot(BaseModel):
    """One published version of the scoring and refund policies."""

    model_config = ConfigDict(frozen=True)

    version: str
    scoring: ScoringPolicy
    refunds: RefundPolicy = Field(default_factory=RefundPolicy)


class PolicyStore:
    """Holds the active policy snapshot and swaps it atomically on publish."""

    def __init__(self, initial: PolicySnapshot):
        self._current = initial

    def current(self) -> PolicySnapshot:
        return self._current

    def publish(self, snapshot: PolicySnapshot) -> PolicySnapshot:
        """
        Make a new policy version active.

        Args:
            snapshot: New policy version

        Returns:
            PolicySnapshot: The previously active version
        """
        previous = self._current
        self._current = snapshot
        logger.info(
            "policy_published",
            previous_version=previous.version,
            version=snapshot.version,
        )
        return previous
