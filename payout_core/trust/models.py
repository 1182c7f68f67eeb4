"""
Data models for trust scoring.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from payout_core.config.policy import SIGNAL_GROUPS
from payout_core.domain.models import EntityType, utc_now

# Keys a fully populated group carries; used for completeness / confidence.
GROUP_KEYS: Dict[str, Tuple[str, ...]] = {
    "device": ("fingerprint", "reputation", "velocity", "new_device", "suspicious_patterns"),
    "network": (
        "ip_reputation",
        "geo_velocity",
        "tor_vpn",
        "suspicious_isp",
        "country",
        "country_risk",
    ),
    "payment": ("avs_match", "cvv_match", "bin_country", "prepaid"),
    "behavioral": (
        "account_age_days",
        "spending_consistency",
        "refund_rate",
        "velocity_score",
    ),
    "platform": ("risk_level", "content_type", "creator_tier"),
}


class SignalContext(BaseModel):
    """What the collector knows about the entity being scored."""

    entity_type: EntityType
    entity_id: str
    payer_id: Optional[str] = None
    payee_id: Optional[str] = None
    platform: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    raw_signals: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)


class SignalBag(BaseModel):
    """
    Flat key-value bag of signals.

    Keys are ``"<group>.<name>"``. A group is available when at least one
    of its keys is present.
    """

    values: Dict[str, Any] = Field(default_factory=dict)
    failed_groups: List[str] = Field(default_factory=list)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def group(self, name: str) -> Dict[str, Any]:
        prefix = f"{name}."
        return {
            key[len(prefix):]: value
            for key, value in self.values.items()
            if key.startswith(prefix)
        }

    def has_group(self, name: str) -> bool:
        prefix = f"{name}."
        return any(key.startswith(prefix) for key in self.values)

    def available_groups(self) -> List[str]:
        return [group for group in SIGNAL_GROUPS if self.has_group(group)]

    def completeness(self, name: str) -> float:
        """Share of the group's expected keys that are present."""
        expected = GROUP_KEYS[name]
        present = self.group(name)
        return sum(1 for key in expected if key in present) / len(expected)

    def merged(self, values: Dict[str, Any]) -> "SignalBag":
        combined = dict(self.values)
        combined.update(values)
        return SignalBag(values=combined, failed_groups=list(self.failed_groups))
