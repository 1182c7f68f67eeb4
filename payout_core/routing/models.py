"""
Data models for charge routing.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from payout_core.domain.models import RiskTier
from payout_core.routing.predicates import ROUTING_FIELDS, Predicate, is_catch_all


class ApprovalStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RouteTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    processor_id: str
    merchant_account_id: str


class CanaryConfig(BaseModel):
    """Send a stable share of matching traffic to a canary target first."""

    model_config = ConfigDict(frozen=True)

    percentage: float = Field(ge=0, le=100)
    target: RouteTarget
    bucket_attribute: str = "payer_id"

    @field_validator("bucket_attribute")
    @classmethod
    def validate_bucket_attribute(cls, v: str) -> str:
        if v not in ROUTING_FIELDS:
            raise ValueError(f"Unknown routing field '{v}'")
        return v


class RoutingRule(BaseModel):
    """A prioritized routing rule. Lower priority numbers are evaluated first."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    name: str = ""
    priority: int
    predicate: Predicate
    targets: Tuple[RouteTarget, ...]
    canary: Optional[CanaryConfig] = None
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    is_active: bool = True

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, v: Tuple[RouteTarget, ...]) -> Tuple[RouteTarget, ...]:
        if not v:
            raise ValueError("A routing rule needs at least one target")
        return v

    @property
    def is_catch_all(self) -> bool:
        return is_catch_all(self.predicate)

    @property
    def is_live(self) -> bool:
        return self.is_active and self.approval_status == ApprovalStatus.APPROVED


class RuleSet(BaseModel):
    """
    Immutable, versioned snapshot of routing rules.

    A snapshot always contains a live catch-all rule so every request
    routes somewhere.
    """

    model_config = ConfigDict(frozen=True)

    version: int
    rules: Tuple[RoutingRule, ...]

    @model_validator(mode="after")
    def validate_rules(self) -> "RuleSet":
        ids = [rule.rule_id for rule in self.rules]
        if len(ids) != len(set(ids)):
            raise ValueError("Rule ids must be unique within a rule set")
        if not any(rule.is_live and rule.is_catch_all for rule in self.rules):
            raise ValueError("Rule set must contain an approved, active catch-all rule")
        return self

    def get(self, rule_id: str) -> Optional[RoutingRule]:
        for rule in self.rules:
            if rule.rule_id == rule_id:
                return rule
        return None


class RoutingRequest(BaseModel):
    platform: str
    amount_cents: int
    currency: str
    risk_tier: RiskTier = RiskTier.MEDIUM
    payer_id: Optional[str] = None
    payment_method: Optional[str] = None
    region: Optional[str] = None
    processor_hint: Optional[str] = None

    def attributes(self) -> Dict[str, Any]:
        """Attributes predicates are evaluated against."""
        return {
            "platform": self.platform,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "risk_tier": self.risk_tier.value,
            "payer_id": self.payer_id,
            "payment_method": self.payment_method,
            "region": self.region,
        }


class RouteCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    processor_id: str
    merchant_account_id: str
    canary: bool = False
    fallback: bool = False


class RoutingDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_set_version: int
    candidates: List[RouteCandidate]
    canary_bucket: Optional[int] = None
