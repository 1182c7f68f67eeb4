"""
Pydantic schemas for API request/response models.

Domain models (ChargeRequest, Transaction, Refund, TrustScoreRecord,
SettlementBatch, Settlement, InboundEvent) are used directly where they
already are the wire format.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from payout_core.domain.models import RefundEvidence, Transaction, TransactionEvent


class CreateRefundRequest(BaseModel):
    """Request schema for a refund."""

    transaction_id: str = Field(..., description="Transaction to refund")
    amount_cents: int = Field(..., description="Refund amount in cents")
    reason: str = Field(..., min_length=1, description="Payer supplied reason")
    evidence: RefundEvidence = Field(default_factory=RefundEvidence)
    idempotency_key: Optional[str] = Field(default=None, description="Client idempotency key")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "transaction_id": "txn_0f4c...",
                    "amount_cents": 2000,
                    "reason": "accidental_purchase",
                    "evidence": {
                        "minutes_since_purchase": 10,
                        "content_accessed": False,
                        "device_fingerprint": "dev_123",
                        "ip_address": "203.0.113.7",
                    },
                }
            ]
        }
    }


class ReviewRequest(BaseModel):
    """Reviewer action on a refund held for manual review."""

    reviewer: str = Field(..., min_length=1, description="Reviewer identifier")
    reason: Optional[str] = Field(default=None, description="Reason (required to deny)")


class TransactionDetailResponse(BaseModel):
    transaction: Transaction
    events: List[TransactionEvent]


class EventResponse(BaseModel):
    status: str = Field(..., description="processed, duplicate, conflict or no_handler")
    event_id: str
    event_type: str
    result: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    status: str
    version: str
    environment: str
    storage_backend: str
    rule_set_version: int
    policy_version: str


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
