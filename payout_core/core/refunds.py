"""
Refund automation.

Every refund request is scored by the trust engine and then decided by
the refund policy:
- auto-reject: low trust score or too many refund requests in the window
- auto-approve: recent purchase, content never accessed, same device and
  IP as the purchase, high trust score
- anything else waits for a reviewer within the review SLA

Approved refunds are reserved against the transaction's refundable balance
before the processor is called, so concurrent refunds can never exceed the
captured amount.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import structlog

from payout_core.config.policy import PolicyStore, RefundPolicy
from payout_core.core.orchestrator import MoneyOrchestrator
from payout_core.database.repository import Repository
from payout_core.domain.exceptions import (
    ConflictingDuplicateError,
    InvalidTransitionError,
    NotFoundError,
    RefundValidationError,
)
from payout_core.domain.models import (
    EntityType,
    EventSource,
    IntegrityFlag,
    LedgerEntryKind,
    Refund,
    RefundDecision,
    RefundEvidence,
    RefundOrigin,
    RefundStatus,
    Transaction,
    TransactionEventType,
    TransactionStatus,
    TrustScoreRecord,
    utc_now,
)
from payout_core.domain.state_machine import REFUNDABLE_STATUSES
from payout_core.integrations.notifications import Notifier
from payout_core.trust.models import SignalContext
from payout_core.trust.service import TrustService

logger = structlog.get_logger(__name__)


class RefundAutomationEngine:
    """Decides and executes refund requests."""

    def __init__(
        self,
        repository: Repository,
        orchestrator: MoneyOrchestrator,
        trust_service: TrustService,
        notifier: Notifier,
        policy_store: PolicyStore,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.trust_service = trust_service
        self.notifier = notifier
        self.policy_store = policy_store

    async def request_refund(
        self,
        transaction_id: str,
        amount_cents: int,
        reason: str,
        evidence: Optional[RefundEvidence] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        """
        Decide a refund request and execute it when auto-approved.

        Args:
            transaction_id: Transaction to refund
            amount_cents: Amount to refund
            reason: Payer supplied reason
            evidence: Facts supporting the request
            idempotency_key: Optional client key; a repeat returns the stored refund

        Returns:
            Refund: The refund with its decision. Always carries a decision,
                even when the processor call fails.

        Raises:
            RefundValidationError: Unknown transaction, non-refundable status,
                non-positive amount, or amount above the refundable balance
            ConflictingDuplicateError: Idempotency key reused for another request
        """
        evidence = evidence or RefundEvidence()

        async with self.orchestrator.locks.hold(transaction_id):
            if idempotency_key is not None:
                existing = await self.repository.get_refund_by_idempotency_key(idempotency_key)
                if existing is not None:
                    return await self._replay(existing, transaction_id, amount_cents)

            transaction = await self._load_transaction(transaction_id)
            self._validate(transaction, amount_cents)

            # One snapshot for the whole decision
            snapshot = self.policy_store.current()
            refund_policy = snapshot.refunds
            thresholds = snapshot.scoring.thresholds

            refund = Refund(
                transaction_id=transaction.id,
                payer_id=transaction.payer_id,
                payee_id=transaction.payee_id,
                amount_cents=amount_cents,
                currency=transaction.currency,
                reason=reason,
                evidence=evidence,
                idempotency_key=idempotency_key,
            )

            record = await self._score(refund, transaction, evidence)
            refund.trust_score_id = record.id
            refund.trust_score = record.score

            recent_requests = await self._recent_request_count(transaction.payer_id, refund_policy)
            decision, decision_reason = self.decide(
                transaction,
                evidence,
                record,
                recent_requests,
                refund_policy,
                thresholds.auto_approve,
                thresholds.auto_reject,
            )
            refund.decision = decision
            refund.decision_reason = decision_reason
            refund.decided_at = utc_now()

            if decision == RefundDecision.AUTO_REJECT:
                refund.status = RefundStatus.DENIED
                await self.repository.save_refund(refund)
            elif decision == RefundDecision.MANUAL_REVIEW:
                refund.origin = RefundOrigin.MANUAL
                refund.sla_due_at = refund.requested_at + timedelta(
                    hours=refund_policy.review_sla_hours
                )
                await self.repository.save_refund(refund)
            else:
                refund.status = RefundStatus.APPROVED
                await self.repository.save_refund(refund)
                await self._execute(transaction, refund)

            logger.info(
                "refund_decided",
                refund_id=refund.id,
                transaction_id=transaction.id,
                decision=decision.value,
                decision_reason=decision_reason,
                trust_score=record.score,
                status=refund.status.value,
            )

        await self._notify(refund)
        return refund

    def decide(
        self,
        transaction: Transaction,
        evidence: RefundEvidence,
        record: TrustScoreRecord,
        recent_requests: int,
        policy: RefundPolicy,
        approve_threshold: int,
        reject_threshold: int,
    ) -> Tuple[RefundDecision, str]:
        """
        Apply the refund policy. Rejection criteria are checked first.

        Args:
            transaction: Transaction being refunded
            evidence: Request evidence
            record: Fresh trust score of the refund request
            recent_requests: Payer's refund requests in the window, this one included
            policy: Refund policy
            approve_threshold: Minimum score for auto-approval
            reject_threshold: Score at or below which requests are rejected

        Returns:
            Tuple of decision and a short reason code
        """
        if record.score <= reject_threshold:
            return RefundDecision.AUTO_REJECT, "low_trust_score"
        if recent_requests > policy.max_refunds_per_window:
            return RefundDecision.AUTO_REJECT, "refund_velocity_exceeded"

        minutes = self._minutes_since_purchase(transaction, evidence)
        if minutes >= policy.instant_window_minutes:
            return RefundDecision.MANUAL_REVIEW, "outside_instant_window"
        if evidence.content_accessed:
            return RefundDecision.MANUAL_REVIEW, "content_accessed"
        if not self._same_origin(transaction, evidence):
            return RefundDecision.MANUAL_REVIEW, "device_or_ip_mismatch"
        if record.score < approve_threshold:
            return RefundDecision.MANUAL_REVIEW, "score_below_auto_approve"
        return RefundDecision.AUTO_APPROVE, "meets_auto_approval_criteria"

    async def approve_manual(self, refund_id: str, reviewer: str) -> Refund:
        """
        Approve a refund waiting for review and execute it.

        Raises:
            NotFoundError: If the refund is unknown
            InvalidTransitionError: If the refund is not pending
            RefundValidationError: If the balance no longer covers the refund
        """
        refund = await self._load_refund(refund_id)
        async with self.orchestrator.locks.hold(refund.transaction_id):
            refund = await self._load_refund(refund_id)
            self._ensure_pending(refund)
            transaction = await self._load_transaction(refund.transaction_id)
            self._validate(transaction, refund.amount_cents)

            refund.status = RefundStatus.APPROVED
            refund.reviewed_by = reviewer
            refund.decided_at = utc_now()
            await self.repository.save_refund(refund)
            logger.info("refund_approved_by_reviewer", refund_id=refund.id, reviewer=reviewer)
            await self._execute(transaction, refund)

        await self._notify(refund)
        return refund

    async def deny_manual(self, refund_id: str, reviewer: str, reason: str) -> Refund:
        """Deny a refund waiting for review."""
        refund = await self._load_refund(refund_id)
        async with self.orchestrator.locks.hold(refund.transaction_id):
            refund = await self._load_refund(refund_id)
            self._ensure_pending(refund)
            refund.status = RefundStatus.DENIED
            refund.reviewed_by = reviewer
            refund.decision_reason = reason
            refund.decided_at = utc_now()
            await self.repository.save_refund(refund)
            logger.info("refund_denied_by_reviewer", refund_id=refund.id, reviewer=reviewer)

        await self._notify(refund)
        return refund

    async def escalate_overdue(self, now: Optional[datetime] = None) -> List[Refund]:
        """
        Alert on refunds waiting for review past their SLA.

        Each refund is escalated once.

        Returns:
            List of refunds escalated by this call
        """
        now = now or utc_now()
        escalated = []
        for refund in await self.repository.list_refunds_by_status(RefundStatus.PENDING):
            if refund.escalated or refund.sla_due_at is None or refund.sla_due_at > now:
                continue
            refund.escalated = True
            await self.repository.save_refund(refund)
            await self.notifier.alert(
                "refund_review_overdue",
                {
                    "refund_id": refund.id,
                    "transaction_id": refund.transaction_id,
                    "sla_due_at": refund.sla_due_at.isoformat(),
                },
            )
            escalated.append(refund)
        return escalated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _execute(self, transaction: Transaction, refund: Refund) -> None:
        """Reserve, refund at the processor and post. Caller holds the transaction lock."""
        transaction.refunded_cents += refund.amount_cents
        await self.repository.save_transaction(transaction)

        outcome = await self.orchestrator.gateway.refund(
            transaction.processor_id,
            transaction.external_id,
            refund.amount_cents,
            refund.currency,
            idempotency_key=f"refund:{refund.id}",
        )

        if not outcome.success:
            transaction.refunded_cents -= refund.amount_cents
            refund.status = RefundStatus.FAILED
            refund.failure_reason = outcome.reason_code or outcome.kind.value
            await self.orchestrator.journal.record(
                transaction,
                TransactionEventType.REFUND,
                source=EventSource.PROCESSOR,
                success=False,
                processor_id=transaction.processor_id,
                amount_cents=refund.amount_cents,
                error_code=refund.failure_reason,
                data={"refund_id": refund.id, "outcome": outcome.kind.value},
            )
            await self.repository.save_refund(refund)
            logger.error(
                "refund_processor_failed",
                refund_id=refund.id,
                transaction_id=transaction.id,
                reason_code=refund.failure_reason,
            )
            return

        refund.status = RefundStatus.PROCESSED
        refund.external_refund_id = outcome.response.external_id
        refund.processed_at = utc_now()
        await self.orchestrator.record_refund(
            transaction,
            refund.amount_cents,
            refund.id,
            source=EventSource.PROCESSOR,
            external_refund_id=refund.external_refund_id,
        )
        result = await self.orchestrator.post_ledger(
            transaction,
            -refund.amount_cents,
            LedgerEntryKind.REFUND,
            f"refund:{refund.id}",
            reference=refund.id,
        )
        refund.ledger_entry_id = result.entry_id
        await self.repository.save_refund(refund)
        logger.info(
            "refund_processed",
            refund_id=refund.id,
            transaction_id=transaction.id,
            amount_cents=refund.amount_cents,
        )

    async def _score(
        self, refund: Refund, transaction: Transaction, evidence: RefundEvidence
    ) -> TrustScoreRecord:
        raw_signals = dict(evidence.signals)
        raw_signals.setdefault("platform.content_accessed", evidence.content_accessed)
        return await self.trust_service.score_entity(
            SignalContext(
                entity_type=EntityType.REFUND_REQUEST,
                entity_id=refund.id,
                payer_id=transaction.payer_id,
                payee_id=transaction.payee_id,
                platform=transaction.platform,
                amount_cents=refund.amount_cents,
                currency=transaction.currency,
                device_fingerprint=evidence.device_fingerprint,
                ip_address=evidence.ip_address,
                raw_signals=raw_signals,
            )
        )

    async def _recent_request_count(self, payer_id: str, policy: RefundPolicy) -> int:
        since = utc_now() - timedelta(hours=policy.abuse_window_hours)
        recent = await self.repository.list_refunds_for_payer(payer_id, since=since)
        return len(recent) + 1

    def _validate(self, transaction: Transaction, amount_cents: int) -> None:
        if amount_cents <= 0:
            raise RefundValidationError(
                "Refund amount must be positive",
                code="invalid_amount",
                details={"amount_cents": amount_cents},
            )
        # A fully refunded transaction fails the balance check below
        if (
            transaction.status not in REFUNDABLE_STATUSES
            and transaction.status != TransactionStatus.REFUNDED
        ):
            raise RefundValidationError(
                f"Transaction in status {transaction.status.value} cannot be refunded",
                code="transaction_not_refundable",
                details={"transaction_id": transaction.id, "status": transaction.status.value},
            )
        if amount_cents > transaction.refundable_cents:
            raise RefundValidationError(
                "Refund amount exceeds the refundable balance",
                code="amount_exceeds_refundable_balance",
                details={
                    "transaction_id": transaction.id,
                    "amount_cents": amount_cents,
                    "refundable_cents": transaction.refundable_cents,
                },
            )

    async def _load_transaction(self, transaction_id: str) -> Transaction:
        try:
            return await self.orchestrator.get_transaction(transaction_id)
        except NotFoundError as e:
            raise RefundValidationError(
                f"Transaction {transaction_id} not found",
                code="unknown_transaction",
                details={"transaction_id": transaction_id},
            ) from e

    async def _load_refund(self, refund_id: str) -> Refund:
        refund = await self.repository.get_refund(refund_id)
        if refund is None:
            raise NotFoundError(f"Refund {refund_id} not found", details={"refund_id": refund_id})
        return refund

    def _ensure_pending(self, refund: Refund) -> None:
        if refund.status != RefundStatus.PENDING:
            raise InvalidTransitionError(
                f"Refund is {refund.status.value}, not pending review",
                details={"refund_id": refund.id, "status": refund.status.value},
            )

    async def _replay(self, existing: Refund, transaction_id: str, amount_cents: int) -> Refund:
        if existing.transaction_id != transaction_id or existing.amount_cents != amount_cents:
            await self.repository.save_flag(
                IntegrityFlag(
                    kind="conflicting_refund_request",
                    reference=existing.idempotency_key or existing.id,
                    details={"refund_id": existing.id, "transaction_id": transaction_id},
                )
            )
            raise ConflictingDuplicateError(
                "Idempotency key reused with a different refund request",
                details={"idempotency_key": existing.idempotency_key},
            )
        logger.info("refund_request_replayed", refund_id=existing.id)
        return existing

    async def _notify(self, refund: Refund) -> None:
        await self.notifier.notify_creator(refund.payee_id, refund)
        if not refund.creator_notified:
            refund.creator_notified = True
            await self.repository.save_refund(refund)

    @staticmethod
    def _minutes_since_purchase(transaction: Transaction, evidence: RefundEvidence) -> float:
        if evidence.minutes_since_purchase is not None:
            return evidence.minutes_since_purchase
        purchased_at = transaction.captured_at or transaction.created_at
        return (utc_now() - purchased_at).total_seconds() / 60

    @staticmethod
    def _same_origin(transaction: Transaction, evidence: RefundEvidence) -> bool:
        """Device and IP of the request match the purchase. Unknown values never match."""
        return (
            transaction.device_fingerprint is not None
            and transaction.ip_address is not None
            and evidence.device_fingerprint == transaction.device_fingerprint
            and evidence.ip_address == transaction.ip_address
        )
