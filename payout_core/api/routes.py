"""
API routes for charges, refunds, trust scores, settlements and inbound events.

Domain errors are raised as ``PayoutCoreError`` and turned into responses
by the exception handler in ``api.main``.
"""
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, status

from payout_core import __version__
from payout_core.container import Container
from payout_core.domain.exceptions import ValidationError
from payout_core.domain.models import (
    ChargeRequest,
    EntityType,
    InboundEvent,
    Refund,
    Settlement,
    SettlementBatch,
    SettlementSummary,
    Transaction,
    TrustScoreRecord,
)

from .schemas import (
    CreateRefundRequest,
    EventResponse,
    HealthCheckResponse,
    ReviewRequest,
    TransactionDetailResponse,
)

logger = structlog.get_logger(__name__)

charge_router = APIRouter(tags=["charges"])
refund_router = APIRouter(prefix="/refunds", tags=["refunds"])
trust_router = APIRouter(prefix="/trust-scores", tags=["trust"])
settlement_router = APIRouter(prefix="/settlements", tags=["settlements"])
event_router = APIRouter(prefix="/events", tags=["events"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_container(request: Request) -> Container:
    return request.app.state.container


@charge_router.post(
    "/charges",
    response_model=Transaction,
    status_code=status.HTTP_201_CREATED,
    summary="Route and charge",
    description="Route a charge to a processor, authorize, score and capture it",
)
async def create_charge(
    request: ChargeRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    container: Container = Depends(get_container),
) -> Transaction:
    """
    Create a charge. Repeating a request with the same idempotency key
    returns the original transaction.
    """
    if idempotency_key is not None:
        request = request.model_copy(update={"idempotency_key": idempotency_key})
    logger.info(
        "api_create_charge_request",
        platform=request.platform,
        amount_cents=request.amount_cents,
        currency=request.currency,
    )
    transaction = await container.orchestrator.route_and_charge(request)
    logger.info(
        "api_create_charge_completed",
        transaction_id=transaction.id,
        status=transaction.status.value,
        status_reason=transaction.status_reason,
    )
    return transaction


@charge_router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionDetailResponse,
    summary="Get transaction",
)
async def get_transaction(
    transaction_id: str, container: Container = Depends(get_container)
) -> Dict[str, Any]:
    transaction = await container.orchestrator.get_transaction(transaction_id)
    events = await container.repository.list_events(transaction_id)
    return {"transaction": transaction, "events": events}


@charge_router.post(
    "/transactions/{transaction_id}/release",
    response_model=Transaction,
    summary="Release a charge held for review",
)
async def release_held_charge(
    transaction_id: str,
    review: ReviewRequest,
    container: Container = Depends(get_container),
) -> Transaction:
    return await container.orchestrator.approve_held_charge(transaction_id, review.reviewer)


@refund_router.post(
    "",
    response_model=Refund,
    status_code=status.HTTP_201_CREATED,
    summary="Request a refund",
)
async def create_refund(
    request: CreateRefundRequest, container: Container = Depends(get_container)
) -> Refund:
    """Score and decide a refund request. The response always carries a decision."""
    refund = await container.refunds.request_refund(
        transaction_id=request.transaction_id,
        amount_cents=request.amount_cents,
        reason=request.reason,
        evidence=request.evidence,
        idempotency_key=request.idempotency_key,
    )
    logger.info(
        "api_refund_decided",
        refund_id=refund.id,
        decision=refund.decision.value if refund.decision else None,
        status=refund.status.value,
    )
    return refund


@refund_router.post("/{refund_id}/approve", response_model=Refund, summary="Approve a refund")
async def approve_refund(
    refund_id: str, review: ReviewRequest, container: Container = Depends(get_container)
) -> Refund:
    return await container.refunds.approve_manual(refund_id, review.reviewer)


@refund_router.post("/{refund_id}/deny", response_model=Refund, summary="Deny a refund")
async def deny_refund(
    refund_id: str, review: ReviewRequest, container: Container = Depends(get_container)
) -> Refund:
    if not review.reason:
        raise ValidationError("A reason is required to deny a refund", code="missing_reason")
    return await container.refunds.deny_manual(refund_id, review.reviewer, review.reason)


@trust_router.get(
    "/{entity_type}/{entity_id}",
    response_model=TrustScoreRecord,
    summary="Latest trust score",
)
async def get_trust_score(
    entity_type: EntityType,
    entity_id: str,
    container: Container = Depends(get_container),
) -> TrustScoreRecord:
    return await container.trust_service.get_trust_score(entity_type, entity_id)


@settlement_router.post("", response_model=Settlement, summary="Import a settlement batch")
async def import_settlement(
    batch: SettlementBatch, container: Container = Depends(get_container)
) -> Settlement:
    settlement = await container.reconciliation.import_settlement(batch)
    logger.info(
        "api_settlement_imported",
        settlement_id=settlement.id,
        status=settlement.status.value,
    )
    return settlement


@settlement_router.get(
    "/summary",
    response_model=SettlementSummary,
    summary="Settlement summary",
    description="Gross, fees, refunds and dispute losses for charges created in a date range",
)
async def get_settlement_summary(
    date_from: datetime,
    date_to: datetime,
    processors: Optional[str] = Query(default=None, description="Comma-separated processor ids"),
    currency: str = "USD",
    container: Container = Depends(get_container),
) -> SettlementSummary:
    processor_ids = [p.strip() for p in processors.split(",") if p.strip()] if processors else None
    return await container.reconciliation.settlement_summary(
        date_from, date_to, processors=processor_ids, currency=currency
    )


@event_router.post("", response_model=EventResponse, summary="Accept a verified processor event")
async def receive_event(
    event: InboundEvent, container: Container = Depends(get_container)
) -> Dict[str, Any]:
    if container.workers.running:
        return await container.workers.process(event)
    return await container.dispatcher.dispatch(event)


@monitoring_router.get("/health", response_model=HealthCheckResponse, summary="Health check")
async def health(container: Container = Depends(get_container)) -> Dict[str, Any]:
    settings = container.settings
    return {
        "status": "healthy",
        "version": __version__,
        "environment": settings.app_env,
        "storage_backend": settings.storage_backend,
        "rule_set_version": container.rule_store.version,
        "policy_version": container.policy_store.current().version,
    }
