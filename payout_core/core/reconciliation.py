"""
Settlement reconciliation.

Matches a processor settlement file against recorded transactions. A batch
with any discrepancy is marked ``disputed`` with the specific transactions
involved; a clean batch is posted to the ledger once and its transactions
are marked settled. A batch never fails as a whole.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

import structlog

from payout_core.core.disputes import DisputeStateMachine
from payout_core.core.orchestrator import CAPTURED_OR_LATER, MoneyOrchestrator
from payout_core.database.repository import Repository
from payout_core.domain.exceptions import ConflictingDuplicateError, ValidationError
from payout_core.domain.models import (
    Discrepancy,
    DisputeStage,
    IntegrityFlag,
    LedgerEntryKind,
    PlatformSummary,
    ProcessorSummary,
    Settlement,
    SettlementBatch,
    SettlementLine,
    SettlementStatus,
    SettlementSummary,
    Transaction,
    TransactionStatus,
    utc_now,
)
from payout_core.domain.state_machine import can_transition
from payout_core.integrations.notifications import Notifier

logger = structlog.get_logger(__name__)

CHARGE_LINE = "charge"
CHARGEBACK_LINE = "chargeback"


class SettlementReconciliationService:
    def __init__(
        self,
        repository: Repository,
        orchestrator: MoneyOrchestrator,
        disputes: DisputeStateMachine,
        notifier: Notifier,
        tolerance_cents: int = 1,
    ):
        """
        Initialize service.

        Args:
            repository: Storage
            orchestrator: Used for ledger posting and marking transactions settled
            disputes: Opens disputes for chargeback lines
            notifier: Receives alerts for disputed batches
            tolerance_cents: Allowed net difference per transaction
        """
        self.repository = repository
        self.orchestrator = orchestrator
        self.disputes = disputes
        self.notifier = notifier
        self.tolerance_cents = tolerance_cents

    async def import_settlement(self, batch: SettlementBatch) -> Settlement:
        """
        Import and reconcile a settlement batch.

        Args:
            batch: Settlement file from a processor

        Returns:
            Settlement: Reconciled or disputed settlement

        Raises:
            ConflictingDuplicateError: If a reconciled batch is re-imported
                with a different payload
        """
        payload_fingerprint = batch.payload_fingerprint()
        lock_key = f"settlement:{batch.processor_id}:{batch.batch_id}"

        async with self.orchestrator.locks.hold(lock_key):
            existing = await self.repository.get_settlement(batch.processor_id, batch.batch_id)
            if existing is not None and existing.status == SettlementStatus.RECONCILED:
                if existing.payload_fingerprint == payload_fingerprint:
                    logger.info(
                        "settlement_reimport_ignored",
                        settlement_id=existing.id,
                        batch_id=batch.batch_id,
                    )
                    return existing
                await self.repository.save_flag(
                    IntegrityFlag(
                        kind="conflicting_settlement_batch",
                        reference=lock_key,
                        details={
                            "settlement_id": existing.id,
                            "stored_fingerprint": existing.payload_fingerprint,
                            "incoming_fingerprint": payload_fingerprint,
                        },
                    )
                )
                raise ConflictingDuplicateError(
                    "Reconciled settlement batch re-imported with a different payload",
                    details={"processor_id": batch.processor_id, "batch_id": batch.batch_id},
                )

            settlement = Settlement(
                processor_id=batch.processor_id,
                batch_id=batch.batch_id,
                settlement_date=batch.settlement_date,
                currency=batch.currency,
                gross_cents=batch.gross_cents,
                fee_cents=batch.fee_cents,
                chargeback_cents=batch.chargeback_cents,
                refund_cents=batch.refund_cents,
                net_cents=batch.net_cents,
                transaction_count=batch.transaction_count,
                payload_fingerprint=payload_fingerprint,
            )
            if existing is not None:
                settlement.id = existing.id
                settlement.created_at = existing.created_at
                settlement.import_count = existing.import_count + 1

            matched, chargebacks, discrepancies = await self._match_lines(batch)
            discrepancies.extend(self._check_totals(batch))

            settlement.discrepancies = discrepancies
            settlement.discrepancy_cents = sum(line.net_cents for line in batch.lines) - batch.net_cents
            settlement.mismatched_transaction_ids = _unique(
                d.reference for d in discrepancies if d.reference is not None
            )
            settlement.status = (
                SettlementStatus.DISPUTED if discrepancies else SettlementStatus.RECONCILED
            )
            await self.repository.save_settlement(settlement)

            if settlement.status == SettlementStatus.RECONCILED:
                await self._finalize(settlement, matched)
            else:
                logger.warning(
                    "settlement_disputed",
                    settlement_id=settlement.id,
                    batch_id=batch.batch_id,
                    discrepancies=len(discrepancies),
                    mismatched_transaction_ids=settlement.mismatched_transaction_ids,
                )
                await self.notifier.alert(
                    "settlement_disputed",
                    {
                        "settlement_id": settlement.id,
                        "processor_id": batch.processor_id,
                        "batch_id": batch.batch_id,
                        "mismatched_transaction_ids": settlement.mismatched_transaction_ids,
                        "discrepancy_cents": settlement.discrepancy_cents,
                    },
                )

        for line in chargebacks:
            await self.disputes.open_from_settlement(batch.processor_id, batch.batch_id, line)

        return settlement

    async def settlement_summary(
        self,
        date_from: datetime,
        date_to: datetime,
        processors: Optional[List[str]] = None,
        currency: str = "USD",
    ) -> SettlementSummary:
        """
        Summarize captured volume for transactions created in a date range.

        Gross is the captured amount. Refunds are the amounts refunded so far
        and chargebacks are the losses of closed disputes, both on the same
        transactions. Transactions in other currencies are left out.

        Args:
            date_from: Inclusive start of the range
            date_to: Exclusive end of the range
            processors: Only count these processors (all when omitted)
            currency: Currency to summarize

        Returns:
            SettlementSummary: Totals with per-processor and per-platform breakdowns

        Raises:
            ValidationError: If the range is empty
        """
        date_from, date_to = _as_utc(date_from), _as_utc(date_to)
        if date_from >= date_to:
            raise ValidationError(
                "date_from must be before date_to",
                code="invalid_date_range",
                details={"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
            )
        currency = currency.upper()

        summary = SettlementSummary(
            date_from=date_from,
            date_to=date_to,
            currency=currency,
            processor_ids=processors,
        )
        by_processor: Dict[str, ProcessorSummary] = {}
        by_platform: Dict[str, PlatformSummary] = {}

        transactions = await self.repository.list_transactions_created_between(
            date_from, date_to, processors
        )
        for transaction in transactions:
            if transaction.status not in CAPTURED_OR_LATER or transaction.currency != currency:
                continue

            summary.transaction_count += 1
            summary.gross_cents += transaction.captured_cents
            summary.fee_cents += transaction.fee_cents
            summary.refund_cents += transaction.refunded_cents
            summary.chargeback_cents += await self._chargeback_loss(transaction)

            processor = by_processor.setdefault(
                transaction.processor_id, ProcessorSummary(processor_id=transaction.processor_id)
            )
            processor.transactions += 1
            processor.gross_cents += transaction.captured_cents
            processor.fee_cents += transaction.fee_cents

            platform = by_platform.setdefault(
                transaction.platform, PlatformSummary(platform=transaction.platform)
            )
            platform.transactions += 1
            platform.gross_cents += transaction.captured_cents

        summary.net_cents = (
            summary.gross_cents
            - summary.fee_cents
            - summary.refund_cents
            - summary.chargeback_cents
        )
        summary.by_processor = sorted(by_processor.values(), key=lambda p: p.processor_id)
        summary.by_platform = sorted(by_platform.values(), key=lambda p: p.platform)

        logger.info(
            "settlement_summary_generated",
            summary_id=summary.id,
            transactions=summary.transaction_count,
            net_cents=summary.net_cents,
            processors=processors,
        )
        return summary

    async def _chargeback_loss(self, transaction: Transaction) -> int:
        loss = 0
        for dispute_id in transaction.dispute_ids:
            dispute = await self.repository.get_dispute(dispute_id)
            if dispute is None or dispute.stage != DisputeStage.CLOSED:
                continue
            loss += self.disputes.loss_amount(
                dispute, self.disputes.dispute_fee(dispute.processor_id)
            )
        return loss

    async def _match_lines(
        self, batch: SettlementBatch
    ) -> Tuple[List[Transaction], List[SettlementLine], List[Discrepancy]]:
        matched: List[Transaction] = []
        chargebacks: List[SettlementLine] = []
        discrepancies: List[Discrepancy] = []
        seen: Set[Tuple[str, str]] = set()

        for line in batch.lines:
            transaction = await self._find_transaction(batch.processor_id, line)
            if transaction is None:
                discrepancies.append(
                    Discrepancy(
                        kind="unknown_transaction",
                        reference=line.reference,
                        message="Settlement line does not match a recorded transaction",
                    )
                )
                continue

            line_key = (line.kind, transaction.id)
            if line_key in seen:
                discrepancies.append(
                    Discrepancy(
                        kind="duplicate_line",
                        reference=transaction.id,
                        message=f"Transaction appears more than once as {line.kind}",
                    )
                )
                continue
            seen.add(line_key)

            if line.kind == CHARGEBACK_LINE:
                chargebacks.append(line.model_copy(update={"transaction_id": transaction.id}))
                continue
            if line.kind != CHARGE_LINE:
                continue

            line_discrepancies = self._check_line(batch, line, transaction)
            if line_discrepancies:
                discrepancies.extend(line_discrepancies)
            else:
                matched.append(transaction)

        return matched, chargebacks, discrepancies

    def _check_line(
        self, batch: SettlementBatch, line: SettlementLine, transaction: Transaction
    ) -> List[Discrepancy]:
        found = []
        if transaction.processor_id != batch.processor_id:
            found.append(
                Discrepancy(
                    kind="processor_mismatch",
                    reference=transaction.id,
                    expected=transaction.processor_id,
                    actual=batch.processor_id,
                )
            )
        currency = line.currency or batch.currency
        if currency != transaction.currency:
            found.append(
                Discrepancy(
                    kind="currency_mismatch",
                    reference=transaction.id,
                    expected=transaction.currency,
                    actual=currency,
                )
            )
        if transaction.status in (
            TransactionStatus.INITIATED,
            TransactionStatus.ROUTED,
            TransactionStatus.AUTHORIZED,
            TransactionStatus.FAILED,
        ):
            found.append(
                Discrepancy(
                    kind="status_mismatch",
                    reference=transaction.id,
                    expected="captured",
                    actual=transaction.status.value,
                )
            )
        if abs(line.net_cents - transaction.net_cents) > self.tolerance_cents:
            found.append(
                Discrepancy(
                    kind="net_mismatch",
                    reference=transaction.id,
                    expected=transaction.net_cents,
                    actual=line.net_cents,
                    message=f"Net differs by {line.net_cents - transaction.net_cents} cents",
                )
            )
        return found

    def _check_totals(self, batch: SettlementBatch) -> List[Discrepancy]:
        found = []
        line_net = sum(line.net_cents for line in batch.lines)
        allowed = self.tolerance_cents * max(batch.transaction_count, len(batch.lines), 1)
        if abs(line_net - batch.net_cents) > allowed:
            found.append(
                Discrepancy(
                    kind="batch_net_mismatch",
                    expected=batch.net_cents,
                    actual=line_net,
                    message=f"Line nets differ from the reported net by {line_net - batch.net_cents} cents",
                )
            )
        if len(batch.lines) != batch.transaction_count:
            found.append(
                Discrepancy(
                    kind="line_count_mismatch",
                    expected=batch.transaction_count,
                    actual=len(batch.lines),
                )
            )
        return found

    async def _finalize(self, settlement: Settlement, matched: List[Transaction]) -> None:
        result = await self.orchestrator.ledger.post(
            transaction_id=None,
            amount_cents=settlement.net_cents,
            currency=settlement.currency,
            kind=LedgerEntryKind.SETTLEMENT,
            idempotency_key=f"settlement:{settlement.processor_id}:{settlement.batch_id}",
            reference=settlement.id,
        )
        if result.ok:
            settlement.ledger_entry_id = result.entry_id
        else:
            await self.repository.save_flag(
                IntegrityFlag(
                    kind="settlement_ledger_post_failed",
                    reference=settlement.id,
                    details={"batch_id": settlement.batch_id, "error": result.error},
                )
            )
            logger.error(
                "settlement_ledger_post_failed",
                settlement_id=settlement.id,
                error=result.error,
            )

        for transaction in matched:
            if transaction.status == TransactionStatus.SETTLED:
                continue
            if not can_transition(transaction.status, TransactionStatus.SETTLED):
                logger.info(
                    "settlement_status_kept",
                    transaction_id=transaction.id,
                    status=transaction.status.value,
                )
                continue
            await self.orchestrator.mark_settled(transaction.id, settlement.id)

        settlement.reconciled_at = utc_now()
        await self.repository.save_settlement(settlement)
        logger.info(
            "settlement_reconciled",
            settlement_id=settlement.id,
            batch_id=settlement.batch_id,
            transactions=len(matched),
            net_cents=settlement.net_cents,
        )

    async def _find_transaction(
        self, processor_id: str, line: SettlementLine
    ) -> Optional[Transaction]:
        if line.transaction_id:
            return await self.repository.get_transaction(line.transaction_id)
        if line.external_id:
            return await self.repository.get_transaction_by_external_id(processor_id, line.external_id)
        return None


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _unique(values) -> List[str]:
    ordered: Dict[str, None] = {}
    for value in values:
        ordered.setdefault(value, None)
    return list(ordered)
