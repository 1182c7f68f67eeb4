"""
Money orchestrator: drives a charge from request to ledger posting.

Flow for a new charge:
1. Validate and deduplicate the request
2. Route it to ordered processor / merchant account candidates
3. Authorize, trying candidates in order (transient failures are retried by
   the gateway, payer declines end the charge, merchant rejections move on)
4. Score the authorized transaction
5. Capture and post to the ledger exactly once
"""
import re
from typing import Iterable, Optional

import structlog
from redis.exceptions import RedisError

from payout_core.config.policy import PolicyStore
from payout_core.core.journal import TransactionJournal
from payout_core.core.locks import TransactionLock
from payout_core.database.repository import Repository
from payout_core.domain.exceptions import (
    ConflictingDuplicateError,
    InvalidTransitionError,
    NoRouteAvailableError,
    NotFoundError,
    ValidationError,
)
from payout_core.domain.models import (
    ChargeRequest,
    EntityType,
    EventSource,
    InboundEvent,
    IntegrityFlag,
    LedgerEntryKind,
    MerchantCatalog,
    RiskTier,
    Transaction,
    TransactionEventType,
    TransactionStatus,
    TrustDecision,
)
from payout_core.integrations.ledger import LedgerClient, LedgerResult
from payout_core.integrations.processors import (
    AttemptRecord,
    AuthorizationRequest,
    FailureKind,
    ProcessorGateway,
)
from payout_core.routing.engine import RoutingRuleEngine
from payout_core.routing.models import RoutingRequest
from payout_core.routing.rule_store import RuleSetStore
from payout_core.trust.models import SignalContext
from payout_core.trust.scorer import risk_tier_for
from payout_core.trust.service import TrustService
from payout_core.trust.velocity_tracker import VelocityTracker

logger = structlog.get_logger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

CAPTURED_OR_LATER = frozenset(
    {
        TransactionStatus.CAPTURED,
        TransactionStatus.SETTLED,
        TransactionStatus.PARTIALLY_REFUNDED,
        TransactionStatus.REFUNDED,
    }
)

MANUAL_REVIEW_FLAG = "manual_review"


class MoneyOrchestrator:
    """
    Owns the charge lifecycle.

    All changes to a transaction happen under its lock and go through the
    transaction journal.
    """

    def __init__(
        self,
        repository: Repository,
        rule_store: RuleSetStore,
        gateway: ProcessorGateway,
        trust_service: TrustService,
        ledger: LedgerClient,
        locks: TransactionLock,
        policy_store: PolicyStore,
        catalog: Optional[MerchantCatalog] = None,
        known_platforms: Optional[Iterable[str]] = None,
        routing_engine: Optional[RoutingRuleEngine] = None,
        velocity_tracker: Optional[VelocityTracker] = None,
    ):
        self.repository = repository
        self.rule_store = rule_store
        self.gateway = gateway
        self.trust_service = trust_service
        self.ledger = ledger
        self.locks = locks
        self.policy_store = policy_store
        self.catalog = catalog
        self.known_platforms = frozenset(known_platforms or ())
        self.routing_engine = routing_engine or RoutingRuleEngine()
        self.velocity_tracker = velocity_tracker
        self.journal = TransactionJournal(repository)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def route_and_charge(self, request: ChargeRequest) -> Transaction:
        """
        Route and charge a payer.

        Args:
            request: Charge request

        Returns:
            Transaction: Final state with a human readable ``status_reason``
                when the charge did not complete

        Raises:
            ValidationError: If the request is invalid
            ConflictingDuplicateError: If the idempotency key was used for a
                different request
        """
        self._validate(request)
        request_fingerprint = request.request_fingerprint()

        if request.idempotency_key is None:
            transaction = self._new_transaction(request, request_fingerprint)
            async with self.locks.hold(transaction.id):
                await self.journal.open(transaction)
                return await self._charge(transaction, request)

        # Duplicates of an in-flight request wait here and then see its result
        async with self.locks.hold(f"charge:{request.idempotency_key}"):
            existing = await self.repository.get_transaction_by_idempotency_key(
                request.idempotency_key
            )
            if existing is not None:
                return await self._replay(existing, request_fingerprint)

            transaction = self._new_transaction(request, request_fingerprint)
            async with self.locks.hold(transaction.id):
                await self.journal.open(transaction)
                return await self._charge(transaction, request)

    async def apply_processor_event(self, event: InboundEvent) -> Transaction:
        """
        Apply a verified processor event to its transaction.

        Events that describe a state the transaction already reached are
        acknowledged without changes.

        Raises:
            NotFoundError: If the transaction is unknown
            InvalidTransitionError: If the event contradicts the transaction state
        """
        transaction_id = await self._resolve_transaction_id(event)
        async with self.locks.hold(transaction_id):
            transaction = await self.get_transaction(transaction_id)
            status = transaction.status
            payload = event.payload

            if event.event_type == "charge.authorized":
                if status == TransactionStatus.ROUTED:
                    transaction.processor_id = transaction.processor_id or event.processor
                    transaction.external_id = payload.get("external_id", transaction.external_id)
                    await self.journal.record(
                        transaction,
                        TransactionEventType.AUTHORIZED,
                        status=TransactionStatus.AUTHORIZED,
                        source=EventSource.WEBHOOK,
                        processor_id=event.processor,
                        external_event_id=event.event_id,
                    )
                elif status == TransactionStatus.FAILED:
                    raise InvalidTransitionError(
                        "Authorization reported for a failed transaction",
                        details={"transaction_id": transaction_id},
                    )
                else:
                    self._already_applied(transaction, event)

            elif event.event_type == "charge.captured":
                if status == TransactionStatus.AUTHORIZED:
                    await self._mark_captured(transaction, EventSource.WEBHOOK, event.event_id)
                elif status in CAPTURED_OR_LATER:
                    self._already_applied(transaction, event)
                else:
                    raise InvalidTransitionError(
                        f"Capture reported for a {status.value} transaction",
                        details={"transaction_id": transaction_id, "status": status.value},
                    )

            elif event.event_type == "charge.failed":
                if status in (TransactionStatus.ROUTED, TransactionStatus.AUTHORIZED):
                    await self._fail(
                        transaction,
                        payload.get("reason_code", "processor_failed"),
                        source=EventSource.WEBHOOK,
                        external_event_id=event.event_id,
                    )
                elif status == TransactionStatus.FAILED:
                    self._already_applied(transaction, event)
                else:
                    raise InvalidTransitionError(
                        f"Failure reported for a {status.value} transaction",
                        details={"transaction_id": transaction_id, "status": status.value},
                    )

            elif event.event_type == "charge.settled":
                if status == TransactionStatus.SETTLED:
                    self._already_applied(transaction, event)
                else:
                    await self._settle(
                        transaction, payload.get("settlement_id"), EventSource.WEBHOOK, event.event_id
                    )

            elif event.event_type == "charge.refunded":
                await self._apply_external_refund(transaction, event)

            else:
                raise ValidationError(
                    f"Unsupported charge event type {event.event_type}",
                    code="unsupported_event_type",
                )

            return transaction

    async def approve_held_charge(self, transaction_id: str, reviewer: str) -> Transaction:
        """
        Release a charge held for manual review and capture it.

        Raises:
            NotFoundError: If the transaction is unknown
            InvalidTransitionError: If the transaction is not held for review
        """
        async with self.locks.hold(transaction_id):
            transaction = await self.get_transaction(transaction_id)
            if (
                transaction.status != TransactionStatus.AUTHORIZED
                or MANUAL_REVIEW_FLAG not in transaction.risk_flags
            ):
                raise InvalidTransitionError(
                    "Transaction is not held for review",
                    details={"transaction_id": transaction_id, "status": transaction.status.value},
                )
            transaction.risk_flags.remove(MANUAL_REVIEW_FLAG)
            transaction.status_reason = None
            await self.journal.record(
                transaction,
                TransactionEventType.REVIEW_RELEASED,
                source=EventSource.REVIEWER,
                data={"reviewer": reviewer},
            )
            await self._capture(transaction)
            return transaction

    async def decline_held_charge(self, transaction_id: str, reviewer: str) -> Transaction:
        """Fail a charge held for manual review."""
        async with self.locks.hold(transaction_id):
            transaction = await self.get_transaction(transaction_id)
            if MANUAL_REVIEW_FLAG not in transaction.risk_flags:
                raise InvalidTransitionError(
                    "Transaction is not held for review",
                    details={"transaction_id": transaction_id},
                )
            transaction.risk_flags.remove(MANUAL_REVIEW_FLAG)
            await self._fail(
                transaction, "review_declined", source=EventSource.REVIEWER, data={"reviewer": reviewer}
            )
            return transaction

    async def mark_settled(
        self, transaction_id: str, settlement_id: Optional[str] = None
    ) -> Transaction:
        """Move a captured transaction to settled after reconciliation."""
        async with self.locks.hold(transaction_id):
            transaction = await self.get_transaction(transaction_id)
            if transaction.status != TransactionStatus.SETTLED:
                await self._settle(transaction, settlement_id, EventSource.SETTLEMENT)
            return transaction

    async def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = await self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found",
                details={"transaction_id": transaction_id},
            )
        return transaction

    async def post_ledger(
        self,
        transaction: Transaction,
        amount_cents: int,
        kind: LedgerEntryKind,
        idempotency_key: str,
        reference: Optional[str] = None,
    ) -> LedgerResult:
        """
        Post to the ledger and record the outcome on the transaction.

        A failed posting is recorded as an unsuccessful ``ledger_posting``
        event and flags the transaction; the idempotency key makes a later
        retry safe. Caller must hold the transaction lock.
        """
        result = await self.ledger.post(
            transaction_id=transaction.id,
            amount_cents=amount_cents,
            currency=transaction.currency,
            kind=kind,
            idempotency_key=idempotency_key,
            reference=reference,
        )
        if not result.ok:
            transaction.add_flag("ledger_post_failed")
            logger.error(
                "ledger_posting_failed",
                transaction_id=transaction.id,
                kind=kind.value,
                idempotency_key=idempotency_key,
                error=result.error,
            )
        await self.journal.record(
            transaction,
            TransactionEventType.LEDGER_POSTING,
            success=result.ok,
            amount_cents=amount_cents,
            error_code=None if result.ok else "ledger_post_failed",
            error_message=result.error,
            data={
                "kind": kind.value,
                "idempotency_key": idempotency_key,
                "entry_id": result.entry_id,
                "duplicate": result.duplicate,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Charge flow
    # ------------------------------------------------------------------

    def _validate(self, request: ChargeRequest) -> None:
        if request.amount_cents <= 0:
            raise ValidationError(
                "Amount must be positive",
                code="invalid_amount",
                details={"amount_cents": request.amount_cents},
            )
        if not CURRENCY_PATTERN.match(request.currency):
            raise ValidationError(
                "Currency must be a three letter ISO code",
                code="invalid_currency",
                details={"currency": request.currency},
            )
        if self.known_platforms and request.platform not in self.known_platforms:
            raise ValidationError(
                f"Unknown platform {request.platform}",
                code="unknown_platform",
                details={"platform": request.platform},
            )

    def _new_transaction(self, request: ChargeRequest, request_fingerprint: str) -> Transaction:
        return Transaction(
            platform=request.platform,
            payer_id=request.payer_id,
            payee_id=request.payee_id,
            amount_cents=request.amount_cents,
            currency=request.currency,
            transaction_type=request.transaction_type,
            payment_method=request.payment_method,
            idempotency_key=request.idempotency_key,
            request_fingerprint=request_fingerprint,
            device_fingerprint=request.device_fingerprint,
            ip_address=request.ip_address,
            metadata=request.metadata,
        )

    async def _replay(self, existing: Transaction, request_fingerprint: str) -> Transaction:
        if existing.request_fingerprint != request_fingerprint:
            await self.repository.save_flag(
                IntegrityFlag(
                    kind="conflicting_charge_request",
                    reference=existing.idempotency_key or existing.id,
                    details={"transaction_id": existing.id},
                )
            )
            raise ConflictingDuplicateError(
                "Idempotency key reused with a different request",
                details={"idempotency_key": existing.idempotency_key},
            )
        logger.info(
            "charge_request_replayed",
            transaction_id=existing.id,
            idempotency_key=existing.idempotency_key,
        )
        return existing

    async def _charge(self, transaction: Transaction, request: ChargeRequest) -> Transaction:
        await self._track_velocity(transaction)

        risk_tier = await self._risk_tier(request)
        routing_request = RoutingRequest(
            platform=request.platform,
            amount_cents=request.amount_cents,
            currency=request.currency,
            risk_tier=risk_tier,
            payer_id=request.payer_id,
            payment_method=request.payment_method,
            region=request.region,
            processor_hint=request.processor_hint,
        )
        rule_set = self.rule_store.snapshot()
        try:
            decision = self.routing_engine.route(routing_request, rule_set, self.catalog)
        except NoRouteAvailableError as e:
            await self._fail(transaction, e.code, data=e.details)
            return transaction

        transaction.routing_rule_id = decision.rule_id
        transaction.rule_set_version = decision.rule_set_version
        await self.journal.record(
            transaction,
            TransactionEventType.ROUTED,
            status=TransactionStatus.ROUTED,
            data={
                "rule_id": decision.rule_id,
                "rule_set_version": decision.rule_set_version,
                "risk_tier": risk_tier.value,
                "candidates": [c.model_dump() for c in decision.candidates],
                "canary_bucket": decision.canary_bucket,
            },
        )

        authorized = False
        for candidate in decision.candidates:
            outcome = await self.gateway.authorize(
                candidate.processor_id,
                AuthorizationRequest(
                    transaction_id=transaction.id,
                    merchant_account_id=candidate.merchant_account_id,
                    amount_cents=transaction.amount_cents,
                    currency=transaction.currency,
                    payer_id=transaction.payer_id,
                    payment_token=request.payment_token,
                    idempotency_key=f"{transaction.id}:{candidate.processor_id}:authorize",
                ),
                on_attempt=self._attempt_recorder(
                    transaction, TransactionEventType.AUTH_ATTEMPT, candidate.merchant_account_id
                ),
            )
            if outcome.success:
                transaction.processor_id = candidate.processor_id
                transaction.merchant_account_id = candidate.merchant_account_id
                transaction.external_id = outcome.response.external_id
                await self.journal.record(
                    transaction,
                    TransactionEventType.AUTHORIZED,
                    status=TransactionStatus.AUTHORIZED,
                    processor_id=candidate.processor_id,
                    merchant_account_id=candidate.merchant_account_id,
                    data={"external_id": transaction.external_id, "canary": candidate.canary},
                )
                authorized = True
                break

            if outcome.kind == FailureKind.DECLINED:
                await self._fail(
                    transaction,
                    outcome.reason_code or "card_declined",
                    processor_id=candidate.processor_id,
                    merchant_account_id=candidate.merchant_account_id,
                )
                return transaction

            logger.warning(
                "candidate_failed_trying_next",
                transaction_id=transaction.id,
                processor_id=candidate.processor_id,
                outcome=outcome.kind.value,
                reason_code=outcome.reason_code,
            )

        if not authorized:
            await self._fail(transaction, "processor_exhausted")
            return transaction

        record = await self.trust_service.score_entity(
            SignalContext(
                entity_type=EntityType.TRANSACTION,
                entity_id=transaction.id,
                payer_id=transaction.payer_id,
                payee_id=transaction.payee_id,
                platform=transaction.platform,
                amount_cents=transaction.amount_cents,
                currency=transaction.currency,
                device_fingerprint=request.device_fingerprint,
                ip_address=request.ip_address,
                raw_signals=request.signals,
            )
        )
        transaction.trust_score = record.score
        transaction.trust_decision = record.decision
        transaction.trust_score_id = record.id
        await self.journal.record(
            transaction,
            TransactionEventType.SCORED,
            data={
                "trust_score_id": record.id,
                "score": record.score,
                "confidence": record.confidence,
                "decision": record.decision.value,
                "reason_codes": record.reason_codes,
            },
        )

        if record.decision == TrustDecision.BLOCK:
            await self._fail(transaction, "trust_block", data={"reason_codes": record.reason_codes})
            return transaction

        if record.decision == TrustDecision.CHALLENGE:
            transaction.add_flag(MANUAL_REVIEW_FLAG)
            transaction.status_reason = "held_for_review"
            await self.repository.save_transaction(transaction)
            logger.info(
                "charge_held_for_review",
                transaction_id=transaction.id,
                score=record.score,
            )
            return transaction

        await self._capture(transaction)
        return transaction

    async def _capture(self, transaction: Transaction) -> None:
        outcome = await self.gateway.capture(
            transaction.processor_id,
            transaction.external_id,
            transaction.amount_cents,
            transaction.currency,
            idempotency_key=f"{transaction.id}:capture",
            on_attempt=self._attempt_recorder(
                transaction, TransactionEventType.CAPTURE_ATTEMPT, transaction.merchant_account_id
            ),
        )
        if not outcome.success:
            await self._fail(
                transaction,
                "capture_failed",
                processor_id=transaction.processor_id,
                data={"reason_code": outcome.reason_code, "outcome": outcome.kind.value},
            )
            return
        await self._mark_captured(transaction, EventSource.PROCESSOR)

    async def _mark_captured(
        self,
        transaction: Transaction,
        source: EventSource,
        external_event_id: Optional[str] = None,
    ) -> None:
        fee_cents = 0
        processor = self.catalog.processor(transaction.processor_id) if self.catalog else None
        if processor is not None:
            fee_cents = processor.fee_for(transaction.amount_cents)
        transaction.fee_cents = fee_cents
        transaction.net_cents = transaction.amount_cents - fee_cents
        transaction.captured_cents = transaction.amount_cents
        transaction.status_reason = None

        await self.journal.record(
            transaction,
            TransactionEventType.CAPTURED,
            status=TransactionStatus.CAPTURED,
            source=source,
            processor_id=transaction.processor_id,
            amount_cents=transaction.amount_cents,
            external_event_id=external_event_id,
            data={"fee_cents": fee_cents, "net_cents": transaction.net_cents},
        )
        # Key is the transaction id: a capture posts once however it is reported
        await self.post_ledger(
            transaction, transaction.amount_cents, LedgerEntryKind.CAPTURE, transaction.id
        )

    async def _settle(
        self,
        transaction: Transaction,
        settlement_id: Optional[str],
        source: EventSource,
        external_event_id: Optional[str] = None,
    ) -> None:
        transaction.settlement_id = settlement_id or transaction.settlement_id
        await self.journal.record(
            transaction,
            TransactionEventType.SETTLED,
            status=TransactionStatus.SETTLED,
            source=source,
            external_event_id=external_event_id,
            data={"settlement_id": settlement_id},
        )

    async def _fail(
        self,
        transaction: Transaction,
        reason: str,
        source: EventSource = EventSource.INTERNAL,
        **fields,
    ) -> None:
        transaction.status_reason = reason
        await self.journal.record(
            transaction,
            TransactionEventType.FAILED,
            status=TransactionStatus.FAILED,
            source=source,
            success=False,
            error_code=reason,
            **fields,
        )
        logger.warning("charge_failed", transaction_id=transaction.id, reason=reason)

    async def _apply_external_refund(self, transaction: Transaction, event: InboundEvent) -> None:
        """
        Apply a ``charge.refunded`` webhook.

        The processor echoes refunds the refund engine issued; those are
        matched by the processor refund id and only acknowledged. Anything
        else was issued directly at the processor and is recorded here.
        """
        external_refund_id = event.payload.get("refund_id")
        if external_refund_id:
            issued = await self.repository.get_refund_by_external_id(
                transaction.id, external_refund_id
            )
            if issued is not None or await self._refund_recorded(transaction, external_refund_id):
                logger.info(
                    "refund_webhook_matched",
                    transaction_id=transaction.id,
                    event_id=event.event_id,
                    external_refund_id=external_refund_id,
                    refund_id=issued.id if issued else None,
                )
                return

        amount = int(event.payload.get("amount_cents", transaction.refundable_cents))
        if amount > transaction.refundable_cents:
            await self.repository.save_flag(
                IntegrityFlag(
                    kind="refund_exceeds_captured",
                    reference=transaction.id,
                    details={"event_id": event.event_id, "amount_cents": amount},
                )
            )
            amount = transaction.refundable_cents
        if amount <= 0:
            self._already_applied(transaction, event)
            return
        transaction.refunded_cents += amount
        await self.record_refund(
            transaction,
            amount,
            refund_id=None,
            source=EventSource.WEBHOOK,
            external_event_id=event.event_id,
            external_refund_id=external_refund_id,
        )
        ledger_key = (
            f"refund:{transaction.processor_id}:{external_refund_id}"
            if external_refund_id
            else f"refund:{event.dedup_key}"
        )
        await self.post_ledger(transaction, -amount, LedgerEntryKind.REFUND, ledger_key)

    async def _refund_recorded(self, transaction: Transaction, external_refund_id: str) -> bool:
        events = await self.repository.list_events(transaction.id)
        return any(
            e.event_type == TransactionEventType.REFUND
            and e.success
            and e.data.get("external_refund_id") == external_refund_id
            for e in events
        )

    async def record_refund(
        self,
        transaction: Transaction,
        amount_cents: int,
        refund_id: Optional[str],
        source: EventSource = EventSource.INTERNAL,
        external_event_id: Optional[str] = None,
        external_refund_id: Optional[str] = None,
    ) -> None:
        """
        Record a completed refund. ``refunded_cents`` must already include it.
        Caller must hold the transaction lock.
        """
        status = (
            TransactionStatus.REFUNDED
            if transaction.refunded_cents >= transaction.captured_cents
            else TransactionStatus.PARTIALLY_REFUNDED
        )
        if refund_id and refund_id not in transaction.refund_ids:
            transaction.refund_ids.append(refund_id)
        await self.journal.record(
            transaction,
            TransactionEventType.REFUND,
            status=status,
            source=source,
            amount_cents=amount_cents,
            external_event_id=external_event_id,
            data={
                "refund_id": refund_id,
                "external_refund_id": external_refund_id,
                "refunded_cents": transaction.refunded_cents,
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _attempt_recorder(
        self,
        transaction: Transaction,
        event_type: TransactionEventType,
        merchant_account_id: Optional[str],
    ):
        async def record(attempt: AttemptRecord) -> None:
            await self.journal.record(
                transaction,
                event_type,
                source=EventSource.PROCESSOR,
                success=attempt.success,
                processor_id=attempt.processor_id,
                merchant_account_id=merchant_account_id,
                attempt=attempt.attempt,
                error_code=attempt.reason_code if not attempt.success else None,
                error_message=attempt.message if not attempt.success else None,
                data={"outcome": attempt.kind.value, "duration_ms": attempt.duration_ms},
            )

        return record

    async def _risk_tier(self, request: ChargeRequest) -> RiskTier:
        if request.risk_tier is not None:
            return request.risk_tier
        latest = await self.trust_service.latest_user_score(request.payer_id)
        if latest is not None:
            return risk_tier_for(latest)
        return RiskTier.MEDIUM

    async def _track_velocity(self, transaction: Transaction) -> None:
        if self.velocity_tracker is None:
            return
        try:
            await self.velocity_tracker.track_charge(
                transaction.amount_cents,
                device_fingerprint=transaction.device_fingerprint,
                payer_id=transaction.payer_id,
                ip_address=transaction.ip_address,
            )
        except RedisError as e:
            # Charges proceed without velocity counters
            logger.warning("velocity_tracking_failed", transaction_id=transaction.id, error=str(e))

    async def _resolve_transaction_id(self, event: InboundEvent) -> str:
        if event.transaction_id:
            return event.transaction_id
        external_id = event.payload.get("external_id")
        if external_id:
            transaction = await self.repository.get_transaction_by_external_id(
                event.processor, external_id
            )
            if transaction is not None:
                return transaction.id
        raise NotFoundError(
            "Event does not reference a known transaction",
            details={"event_id": event.event_id, "external_id": external_id},
        )

    def _already_applied(self, transaction: Transaction, event: InboundEvent) -> None:
        logger.info(
            "processor_event_already_applied",
            transaction_id=transaction.id,
            event_id=event.event_id,
            event_type=event.event_type,
            status=transaction.status.value,
        )
