"""
Domain models for the payout core.

All amounts are integer minor units (cents) and all timestamps are
timezone-aware UTC.
"""
import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def fingerprint(payload: Dict[str, Any]) -> str:
    """Stable hash of a JSON-compatible payload (key order independent)."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


class TransactionStatus(str, Enum):
    """Charge lifecycle states."""

    INITIATED = "initiated"
    ROUTED = "routed"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    SETTLED = "settled"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    TIP = "tip"
    PURCHASE = "purchase"
    PPV = "ppv"
    OTHER = "other"


class TransactionEventType(str, Enum):
    """Kinds of entries in a transaction's event history."""

    INITIATED = "initiated"
    ROUTED = "routed"
    AUTH_ATTEMPT = "auth_attempt"
    AUTHORIZED = "authorized"
    SCORED = "scored"
    CAPTURE_ATTEMPT = "capture_attempt"
    CAPTURED = "captured"
    FAILED = "failed"
    SETTLED = "settled"
    REFUND = "refund"
    DISPUTE = "dispute"
    LEDGER_POSTING = "ledger_posting"
    REVIEW_RELEASED = "review_released"


class EventSource(str, Enum):
    INTERNAL = "internal"
    PROCESSOR = "processor"
    WEBHOOK = "webhook"
    SETTLEMENT = "settlement"
    REVIEWER = "reviewer"


class EntityType(str, Enum):
    """Entities the trust engine scores."""

    TRANSACTION = "transaction"
    REFUND_REQUEST = "refund_request"
    USER = "user"


class TrustDecision(str, Enum):
    ALLOW = "allow"
    CHALLENGE = "challenge"
    BLOCK = "block"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    PROCESSED = "processed"
    FAILED = "failed"


class RefundDecision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    AUTO_REJECT = "auto_reject"


class RefundOrigin(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    DISPUTE = "dispute"


class DisputeType(str, Enum):
    CHARGEBACK = "chargeback"
    RETRIEVAL = "retrieval"
    FRAUD_CLAIM = "fraud_claim"


class DisputeStage(str, Enum):
    """Dispute stages in the order processors move through them."""

    OPEN = "open"
    RESPONSE_DUE = "response_due"
    PRE_ARBITRATION = "pre_arbitration"
    ARBITRATION = "arbitration"
    CLOSED = "closed"


class DisputeOutcome(str, Enum):
    WON = "won"
    LOST = "lost"
    ACCEPTED = "accepted"
    PARTIAL = "partial"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    RECONCILED = "reconciled"
    DISPUTED = "disputed"


class LedgerEntryKind(str, Enum):
    CAPTURE = "capture"
    REFUND = "refund"
    DISPUTE_LOSS = "dispute_loss"
    SETTLEMENT = "settlement"


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class ChargeRequest(BaseModel):
    """Incoming request to charge a payer."""

    platform: str = Field(min_length=1)
    payer_id: str = Field(min_length=1)
    payee_id: str = Field(min_length=1)
    amount_cents: int
    currency: str = "USD"
    transaction_type: TransactionType = TransactionType.PURCHASE
    payment_method: str = "card"
    payment_token: Optional[str] = None
    region: Optional[str] = None
    risk_tier: Optional[RiskTier] = None
    processor_hint: Optional[str] = None
    idempotency_key: Optional[str] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    signals: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    def request_fingerprint(self) -> str:
        return fingerprint(self.model_dump(mode="json", exclude={"idempotency_key"}))


class Transaction(BaseModel):
    """A single charge and its lifecycle."""

    id: str = Field(default_factory=lambda: new_id("txn"))
    platform: str
    payer_id: str
    payee_id: str
    amount_cents: int
    currency: str
    transaction_type: TransactionType = TransactionType.PURCHASE
    payment_method: str = "card"
    status: TransactionStatus = TransactionStatus.INITIATED
    status_reason: Optional[str] = None
    fee_cents: int = 0
    net_cents: int = 0
    captured_cents: int = 0
    refunded_cents: int = 0
    processor_id: Optional[str] = None
    merchant_account_id: Optional[str] = None
    external_id: Optional[str] = None
    routing_rule_id: Optional[str] = None
    rule_set_version: Optional[int] = None
    trust_score: Optional[int] = None
    trust_decision: Optional[TrustDecision] = None
    trust_score_id: Optional[str] = None
    risk_flags: List[str] = Field(default_factory=list)
    event_sequence: int = 0
    idempotency_key: Optional[str] = None
    request_fingerprint: Optional[str] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    refund_ids: List[str] = Field(default_factory=list)
    dispute_ids: List[str] = Field(default_factory=list)
    settlement_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    authorized_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def refundable_cents(self) -> int:
        return max(0, self.captured_cents - self.refunded_cents)

    def add_flag(self, flag: str) -> None:
        if flag not in self.risk_flags:
            self.risk_flags.append(flag)


class TransactionEvent(BaseModel):
    """Append-only record of something that happened to a transaction."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("evt"))
    transaction_id: str
    sequence: int
    event_type: TransactionEventType
    source: EventSource = EventSource.INTERNAL
    success: bool = True
    resulting_status: Optional[TransactionStatus] = None
    processor_id: Optional[str] = None
    merchant_account_id: Optional[str] = None
    attempt: Optional[int] = None
    amount_cents: Optional[int] = None
    external_event_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Trust scores
# ---------------------------------------------------------------------------


class GroupContribution(BaseModel):
    """How one signal group contributed to a combined score."""

    model_config = ConfigDict(frozen=True)

    group: str
    available: bool
    score: Optional[float] = None
    weight: float
    effective_weight: float = 0.0
    contribution: float = 0.0
    completeness: float = 0.0
    reason_codes: List[str] = Field(default_factory=list)


class ScoreExplanation(BaseModel):
    model_config = ConfigDict(frozen=True)

    contributions: List[GroupContribution] = Field(default_factory=list)
    missing_groups: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)
    protective_factors: List[str] = Field(default_factory=list)


class TrustScoreRecord(BaseModel):
    """Immutable outcome of one scoring call."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("tsr"))
    entity_type: EntityType
    entity_id: str
    score: int = Field(ge=0, le=100)
    confidence: int = Field(ge=0, le=100)
    decision: TrustDecision
    reason_codes: List[str] = Field(default_factory=list)
    explanation: ScoreExplanation = Field(default_factory=ScoreExplanation)
    signals: Dict[str, Any] = Field(default_factory=dict)
    policy_version: str
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Refunds and disputes
# ---------------------------------------------------------------------------


class RefundEvidence(BaseModel):
    """Facts a payer or support agent supplies with a refund request."""

    minutes_since_purchase: Optional[float] = None
    content_accessed: bool = False
    access_duration_seconds: Optional[int] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    prior_refund_count: int = 0
    signals: Dict[str, Any] = Field(default_factory=dict)


class Refund(BaseModel):
    id: str = Field(default_factory=lambda: new_id("rfd"))
    transaction_id: str
    payer_id: str
    payee_id: str
    amount_cents: int
    currency: str
    reason: str
    origin: RefundOrigin = RefundOrigin.AUTO
    status: RefundStatus = RefundStatus.PENDING
    decision: Optional[RefundDecision] = None
    decision_reason: Optional[str] = None
    trust_score_id: Optional[str] = None
    trust_score: Optional[int] = None
    evidence: RefundEvidence = Field(default_factory=RefundEvidence)
    external_refund_id: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    failure_reason: Optional[str] = None
    creator_notified: bool = False
    idempotency_key: Optional[str] = None
    reviewed_by: Optional[str] = None
    sla_due_at: Optional[datetime] = None
    escalated: bool = False
    requested_at: datetime = Field(default_factory=utc_now)
    decided_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class Dispute(BaseModel):
    id: str = Field(default_factory=lambda: new_id("dsp"))
    transaction_id: str
    external_dispute_id: str
    processor_id: str
    dispute_type: DisputeType = DisputeType.CHARGEBACK
    stage: DisputeStage = DisputeStage.OPEN
    amount_cents: int
    currency: str
    reason_code: Optional[str] = None
    deadline_at: datetime
    response_submitted: bool = False
    outcome: Optional[DisputeOutcome] = None
    recovered_cents: int = 0
    alerts: List[str] = Field(default_factory=list)
    ledger_entry_id: Optional[str] = None
    opened_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    closed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Settlements
# ---------------------------------------------------------------------------


class SettlementLine(BaseModel):
    """One transaction as reported in a processor settlement file."""

    transaction_id: Optional[str] = None
    external_id: Optional[str] = None
    kind: str = "charge"
    gross_cents: int = 0
    fee_cents: int = 0
    net_cents: int
    currency: Optional[str] = None
    external_dispute_id: Optional[str] = None
    reason_code: Optional[str] = None

    @property
    def reference(self) -> str:
        return self.transaction_id or self.external_id or "unknown"


class SettlementBatch(BaseModel):
    """Settlement file imported from a processor."""

    processor_id: str
    batch_id: str
    settlement_date: datetime
    currency: str = "USD"
    gross_cents: int
    fee_cents: int = 0
    chargeback_cents: int = 0
    refund_cents: int = 0
    net_cents: int
    transaction_count: int
    lines: List[SettlementLine] = Field(default_factory=list)

    def payload_fingerprint(self) -> str:
        return fingerprint(self.model_dump(mode="json"))


class Discrepancy(BaseModel):
    kind: str
    reference: Optional[str] = None
    expected: Optional[Any] = None
    actual: Optional[Any] = None
    message: str = ""


class Settlement(BaseModel):
    id: str = Field(default_factory=lambda: new_id("stl"))
    processor_id: str
    batch_id: str
    settlement_date: datetime
    currency: str
    gross_cents: int
    fee_cents: int
    chargeback_cents: int
    refund_cents: int
    net_cents: int
    transaction_count: int
    status: SettlementStatus = SettlementStatus.PENDING
    discrepancy_cents: int = 0
    mismatched_transaction_ids: List[str] = Field(default_factory=list)
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    payload_fingerprint: str
    ledger_entry_id: Optional[str] = None
    import_count: int = 1
    created_at: datetime = Field(default_factory=utc_now)
    reconciled_at: Optional[datetime] = None


class ProcessorSummary(BaseModel):
    processor_id: str
    transactions: int = 0
    gross_cents: int = 0
    fee_cents: int = 0


class PlatformSummary(BaseModel):
    platform: str
    transactions: int = 0
    gross_cents: int = 0


class SettlementSummary(BaseModel):
    """Captured volume over a date range, net of fees, refunds and dispute losses."""

    id: str = Field(default_factory=lambda: new_id("sum"))
    date_from: datetime
    date_to: datetime
    currency: str
    processor_ids: Optional[List[str]] = None
    transaction_count: int = 0
    gross_cents: int = 0
    fee_cents: int = 0
    refund_cents: int = 0
    chargeback_cents: int = 0
    net_cents: int = 0
    by_processor: List[ProcessorSummary] = Field(default_factory=list)
    by_platform: List[PlatformSummary] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)


class IntegrityFlag(BaseModel):
    """Data-integrity problem held for manual review."""

    id: str = Field(default_factory=lambda: new_id("flg"))
    kind: str
    reference: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


class InboundEvent(BaseModel):
    """Verified processor event handed over by the webhook receiver."""

    event_id: str
    processor: str
    event_type: str
    transaction_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utc_now)

    @property
    def dedup_key(self) -> str:
        return f"{self.processor}:{self.event_id}"

    def payload_fingerprint(self) -> str:
        return fingerprint(
            {
                "event_type": self.event_type,
                "transaction_id": self.transaction_id,
                "payload": self.payload,
            }
        )

    @property
    def routing_key(self) -> str:
        """Key whose events must be processed in order by one worker."""
        if self.transaction_id:
            return self.transaction_id
        for field in ("dispute_id", "batch_id"):
            value = self.payload.get(field)
            if value:
                return str(value)
        return self.event_id


# ---------------------------------------------------------------------------
# Processors and merchant accounts
# ---------------------------------------------------------------------------


class PaymentProcessor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    supported_currencies: List[str] = Field(default_factory=lambda: ["USD"])
    fee_bps: int = 0
    fixed_fee_cents: int = 0
    dispute_fee_cents: Optional[int] = None
    is_active: bool = True

    def fee_for(self, amount_cents: int) -> int:
        """Processing fee, rounded half up to the cent."""
        return (amount_cents * self.fee_bps + 5000) // 10000 + self.fixed_fee_cents


class MerchantAccount(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    processor_id: str
    descriptor: str = ""
    region: Optional[str] = None
    currencies: List[str] = Field(default_factory=lambda: ["USD"])
    min_amount_cents: int = 50
    max_amount_cents: Optional[int] = None
    risk_profile: RiskTier = RiskTier.MEDIUM
    platform_restrictions: List[str] = Field(default_factory=list)
    is_active: bool = True


class MerchantCatalog(BaseModel):
    """Static processor and merchant account configuration."""

    model_config = ConfigDict(frozen=True)

    processors: Dict[str, PaymentProcessor] = Field(default_factory=dict)
    merchant_accounts: Dict[str, MerchantAccount] = Field(default_factory=dict)

    def processor(self, processor_id: str) -> Optional[PaymentProcessor]:
        return self.processors.get(processor_id)

    def merchant_account(self, account_id: str) -> Optional[MerchantAccount]:
        return self.merchant_accounts.get(account_id)

    def accepts(
        self,
        processor_id: str,
        merchant_account_id: str,
        platform: str,
        amount_cents: int,
        currency: str,
    ) -> bool:
        """Check whether a processor / merchant account pair can take a charge."""
        processor = self.processors.get(processor_id)
        account = self.merchant_accounts.get(merchant_account_id)
        if processor is None or account is None:
            return False
        if not (processor.is_active and account.is_active):
            return False
        if account.processor_id != processor_id:
            return False
        if currency not in processor.supported_currencies or currency not in account.currencies:
            return False
        if amount_cents < account.min_amount_cents:
            return False
        if account.max_amount_cents is not None and amount_cents > account.max_amount_cents:
            return False
        if account.platform_restrictions and platform not in account.platform_restrictions:
            return False
        return True
