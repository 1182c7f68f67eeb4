"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from payout_core.config.policy import (
    DecisionThresholds,
    EntityWeights,
    GroupWeights,
    PolicySnapshot,
    RefundPolicy,
    ScoringPolicy,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="payout-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Storage Configuration
    storage_backend: str = Field(default="memory", description="Repository backend (memory/sql)")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payout_core.db", description="SQLAlchemy async database URL"
    )
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    lock_backend: str = Field(default="memory", description="Per-transaction lock backend (memory/redis)")
    idempotency_backend: str = Field(
        default="memory", description="Processed event registry backend (memory/redis)"
    )
    redis_lock_timeout: int = Field(default=30, description="Distributed lock timeout (seconds)")
    event_dedup_ttl: int = Field(
        default=7 * 86400, description="How long processed event ids are remembered (seconds)"
    )

    # Processor Calls
    processor_call_timeout: float = Field(
        default=10.0, description="Timeout for a single processor call (seconds)"
    )
    processor_retry_max_attempts: int = Field(
        default=3, description="Attempts per candidate for transient failures"
    )
    processor_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )
    processor_retry_max_delay: float = Field(
        default=8.0, description="Maximum delay between retries (seconds)"
    )
    decline_reason_codes: List[str] = Field(
        default=[
            "card_declined",
            "insufficient_funds",
            "do_not_honor",
            "expired_card",
            "incorrect_cvc",
            "fraudulent",
            "lost_card",
            "stolen_card",
        ],
        description="Payer-level declines that end the charge",
    )
    retryable_reason_codes: List[str] = Field(
        default=["processor_error", "processor_unavailable", "rate_limited"],
        description="Reason codes treated as transient",
    )
    stripe_secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")

    # Ledger
    ledger_base_url: Optional[str] = Field(default=None, description="Bookkeeping service base URL")
    ledger_timeout: float = Field(default=5.0, description="Ledger request timeout (seconds)")

    # Platforms
    known_platforms: List[str] = Field(
        default_factory=list, description="Platform allow-list (empty accepts any platform)"
    )

    # Trust Scoring
    policy_version: str = Field(default="2024.1", description="Scoring policy version label")
    auto_approve_threshold: int = Field(default=80, description="Score at or above which to allow")
    auto_reject_threshold: int = Field(default=40, description="Score at or below which to block")
    max_transactions_per_hour: int = Field(default=10, description="Device velocity limit")
    high_risk_countries: List[str] = Field(
        default=["CN", "RU", "KP", "IR"], description="Countries scored as high risk"
    )
    required_signal_groups: List[str] = Field(
        default=["device", "network", "payment", "behavioral", "platform"],
        description="Groups whose absence marks a score as partial",
    )
    signal_provider_timeout: float = Field(
        default=2.0, description="Timeout for each signal provider (seconds)"
    )

    # Refunds
    instant_refund_window_minutes: int = Field(
        default=60, description="Purchases younger than this may be auto-approved"
    )
    max_refunds_per_window: int = Field(
        default=3, description="Refund requests allowed per payer in the rolling window"
    )
    refund_abuse_window_hours: int = Field(default=24, description="Rolling window for refund counts")
    refund_review_sla_hours: int = Field(default=24, description="Manual review SLA (hours)")

    # Disputes
    dispute_response_window_days: int = Field(
        default=7, description="Days allowed to respond at each dispute stage"
    )
    default_dispute_fee_cents: int = Field(
        default=2500, description="Dispute fee when the processor defines none"
    )

    # Reconciliation
    settlement_tolerance_cents: int = Field(
        default=1, description="Allowed net difference per transaction (cents)"
    )
    reconciliation_interval: int = Field(
        default=300, description="Background sweep interval (seconds)"
    )

    # Workers
    event_workers: int = Field(default=8, description="Inbound event worker count")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Validate repository backend."""
        if v not in ("memory", "sql"):
            raise ValueError("storage_backend must be 'memory' or 'sql'")
        return v

    @field_validator("lock_backend", "idempotency_backend")
    @classmethod
    def validate_redis_backed(cls, v: str) -> str:
        """Validate backends that may live in Redis."""
        if v not in ("memory", "redis"):
            raise ValueError("backend must be 'memory' or 'redis'")
        return v

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate Stripe secret key format when one is configured."""
        if v is not None and not v.startswith(("sk_test_", "sk_live_")):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    def build_policy(self) -> PolicySnapshot:
        """
        Build the immutable scoring and refund policy from settings.

        Returns:
            PolicySnapshot: Policy version used by scoring and refund decisions
        """
        default_weights = GroupWeights()
        refund_weights = GroupWeights(
            device=0.20, network=0.15, payment=0.10, behavioral=0.45, platform=0.10
        )
        weights: Dict[str, GroupWeights] = {
            "transaction": default_weights,
            "user": default_weights,
            "refund_request": refund_weights,
        }
        scoring = ScoringPolicy(
            version=self.policy_version,
            thresholds=DecisionThresholds(
                auto_approve=self.auto_approve_threshold,
                auto_reject=self.auto_reject_threshold,
            ),
            weights=EntityWeights(by_entity=weights),
            max_transactions_per_hour=self.max_transactions_per_hour,
            high_risk_countries=tuple(self.high_risk_countries),
            required_groups=tuple(self.required_signal_groups),
        )
        refunds = RefundPolicy(
            instant_window_minutes=self.instant_refund_window_minutes,
            max_refunds_per_window=self.max_refunds_per_window,
            abuse_window_hours=self.refund_abuse_window_hours,
            review_sla_hours=self.refund_review_sla_hours,
        )
        return PolicySnapshot(version=self.policy_version, scoring=scoring, refunds=refunds)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
