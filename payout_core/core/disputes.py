"""
Dispute lifecycle driven by processor events.

Stages only move forward: open -> response_due -> pre_arbitration ->
arbitration -> closed. The one transition taken without a processor event
is the deadline sweep, which advances an unanswered dispute by one stage.
Closing always needs a processor outcome.
"""
from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from payout_core.core.orchestrator import MoneyOrchestrator
from payout_core.database.repository import Repository
from payout_core.domain.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from payout_core.domain.models import (
    Dispute,
    DisputeOutcome,
    DisputeStage,
    DisputeType,
    EventSource,
    InboundEvent,
    LedgerEntryKind,
    SettlementLine,
    Transaction,
    TransactionEventType,
    utc_now,
)
from payout_core.domain.state_machine import ensure_dispute_advance, next_dispute_stage
from payout_core.integrations.notifications import Notifier

logger = structlog.get_logger(__name__)

DISPUTE_EVENT_TYPES = (
    "dispute.opened",
    "dispute.stage_changed",
    "dispute.response_submitted",
    "dispute.closed",
)


class DisputeStateMachine:
    """Applies dispute events and posts dispute losses to the ledger."""

    def __init__(
        self,
        repository: Repository,
        orchestrator: MoneyOrchestrator,
        notifier: Notifier,
        response_window_days: int = 7,
        default_fee_cents: int = 2500,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.response_window = timedelta(days=response_window_days)
        self.default_fee_cents = default_fee_cents

    async def handle_event(self, event: InboundEvent) -> Dispute:
        """
        Apply a verified dispute event.

        Args:
            event: Event whose payload carries ``dispute_id`` (the processor's
                dispute id) and, depending on the type, ``stage``, ``outcome``,
                ``amount_cents`` or ``recovered_cents``

        Returns:
            Dispute: Updated dispute

        Raises:
            NotFoundError: Unknown transaction or dispute
            InvalidTransitionError: Backwards stage change or change to a closed dispute
            ValidationError: Missing or unsupported payload fields
        """
        external_dispute_id = event.payload.get("dispute_id")
        if not external_dispute_id:
            raise ValidationError(
                "Dispute event without dispute_id",
                code="missing_dispute_id",
                details={"event_id": event.event_id},
            )

        transaction_id = await self._resolve_transaction_id(event)
        async with self.orchestrator.locks.hold(transaction_id):
            transaction = await self.orchestrator.get_transaction(transaction_id)
            dispute = await self.repository.get_dispute_by_external_id(
                event.processor, external_dispute_id
            )

            if event.event_type == "dispute.opened":
                if dispute is not None:
                    logger.info("dispute_already_open", dispute_id=dispute.id)
                    return dispute
                return await self._open(transaction, event, external_dispute_id)

            if dispute is None:
                raise NotFoundError(
                    f"Dispute {external_dispute_id} not found",
                    details={"processor": event.processor, "dispute_id": external_dispute_id},
                )

            if event.event_type == "dispute.stage_changed":
                target = self._parse_stage(event.payload.get("stage"))
                if target == DisputeStage.CLOSED:
                    return await self._close(transaction, dispute, event)
                ensure_dispute_advance(dispute.stage, target)
                await self._move(transaction, dispute, target, EventSource.WEBHOOK, event.event_id)
                return dispute

            if event.event_type == "dispute.response_submitted":
                if dispute.stage == DisputeStage.CLOSED:
                    raise InvalidTransitionError(
                        "Dispute is closed", details={"dispute_id": dispute.id}
                    )
                dispute.response_submitted = True
                dispute.updated_at = utc_now()
                await self.repository.save_dispute(dispute)
                await self._record(
                    transaction, dispute, "response_submitted", EventSource.WEBHOOK, event.event_id
                )
                return dispute

            if event.event_type == "dispute.closed":
                return await self._close(transaction, dispute, event)

        raise ValidationError(
            f"Unsupported dispute event type {event.event_type}",
            code="unsupported_event_type",
        )

    async def advance_overdue(self, now: Optional[datetime] = None) -> List[Dispute]:
        """
        Advance unanswered disputes past their deadline by one stage.

        Overdue disputes already in arbitration only raise an alert (once).

        Returns:
            List of disputes changed by this sweep
        """
        now = now or utc_now()
        changed = []
        for candidate in await self.repository.list_open_disputes():
            if candidate.response_submitted or candidate.deadline_at > now:
                continue

            async with self.orchestrator.locks.hold(candidate.transaction_id):
                dispute = await self.repository.get_dispute(candidate.id)
                if (
                    dispute is None
                    or dispute.stage == DisputeStage.CLOSED
                    or dispute.response_submitted
                    or dispute.deadline_at > now
                ):
                    continue

                if dispute.stage == DisputeStage.ARBITRATION:
                    alert = "arbitration_overdue"
                    if alert in dispute.alerts:
                        continue
                    dispute.alerts.append(alert)
                    dispute.updated_at = now
                    await self.repository.save_dispute(dispute)
                    await self.notifier.alert(
                        "dispute_arbitration_overdue",
                        {"dispute_id": dispute.id, "transaction_id": dispute.transaction_id},
                    )
                    changed.append(dispute)
                    continue

                previous = dispute.stage
                target = next_dispute_stage(previous)
                transaction = await self.orchestrator.get_transaction(dispute.transaction_id)
                dispute.alerts.append(f"{previous.value}_deadline_missed")
                await self._move(transaction, dispute, target, EventSource.INTERNAL, None, now=now)
                await self.notifier.alert(
                    "dispute_deadline_missed",
                    {
                        "dispute_id": dispute.id,
                        "transaction_id": dispute.transaction_id,
                        "from_stage": previous.value,
                        "to_stage": target.value,
                        "deadline_at": dispute.deadline_at.isoformat(),
                    },
                )
                changed.append(dispute)
        return changed

    async def open_from_settlement(
        self, processor_id: str, batch_id: str, line: SettlementLine
    ) -> Dispute:
        """Open a dispute for a chargeback line found in a settlement file."""
        external_dispute_id = line.external_dispute_id or f"{batch_id}:{line.reference}"
        event = InboundEvent(
            event_id=f"settlement:{batch_id}:{external_dispute_id}",
            processor=processor_id,
            event_type="dispute.opened",
            transaction_id=line.transaction_id,
            payload={
                "dispute_id": external_dispute_id,
                "external_id": line.external_id,
                "amount_cents": abs(line.gross_cents or line.net_cents),
                "currency": line.currency,
                "reason_code": line.reason_code,
                "dispute_type": DisputeType.CHARGEBACK.value,
                "source": "settlement",
            },
        )
        return await self.handle_event(event)

    def dispute_fee(self, processor_id: str) -> int:
        catalog = self.orchestrator.catalog
        processor = catalog.processor(processor_id) if catalog else None
        if processor is not None and processor.dispute_fee_cents is not None:
            return processor.dispute_fee_cents
        return self.default_fee_cents

    @staticmethod
    def loss_amount(dispute: Dispute, fee_cents: int) -> int:
        """Amount the platform loses on a closed dispute (0 when won)."""
        if dispute.outcome in (DisputeOutcome.LOST, DisputeOutcome.ACCEPTED):
            return dispute.amount_cents + fee_cents
        if dispute.outcome == DisputeOutcome.PARTIAL:
            return dispute.amount_cents - dispute.recovered_cents + fee_cents
        return 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _open(
        self, transaction: Transaction, event: InboundEvent, external_dispute_id: str
    ) -> Dispute:
        payload = event.payload
        now = utc_now()
        dispute = Dispute(
            transaction_id=transaction.id,
            external_dispute_id=external_dispute_id,
            processor_id=event.processor,
            dispute_type=self._parse_type(payload.get("dispute_type", DisputeType.CHARGEBACK.value)),
            amount_cents=int(payload.get("amount_cents", transaction.amount_cents)),
            currency=payload.get("currency") or transaction.currency,
            reason_code=payload.get("reason_code"),
            deadline_at=now + self.response_window,
            opened_at=now,
            updated_at=now,
        )
        await self.repository.save_dispute(dispute)
        if dispute.id not in transaction.dispute_ids:
            transaction.dispute_ids.append(dispute.id)
        await self._record(transaction, dispute, "opened", EventSource.WEBHOOK, event.event_id)
        logger.warning(
            "dispute_opened",
            dispute_id=dispute.id,
            transaction_id=transaction.id,
            amount_cents=dispute.amount_cents,
            reason_code=dispute.reason_code,
        )
        return dispute

    async def _move(
        self,
        transaction: Transaction,
        dispute: Dispute,
        target: DisputeStage,
        source: EventSource,
        external_event_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utc_now()
        previous = dispute.stage
        dispute.stage = target
        dispute.response_submitted = False
        dispute.deadline_at = now + self.response_window
        dispute.updated_at = now
        await self.repository.save_dispute(dispute)
        await self._record(
            transaction,
            dispute,
            "stage_changed",
            source,
            external_event_id,
            from_stage=previous.value,
        )
        logger.info(
            "dispute_stage_changed",
            dispute_id=dispute.id,
            from_stage=previous.value,
            to_stage=target.value,
        )

    async def _close(self, transaction: Transaction, dispute: Dispute, event: InboundEvent) -> Dispute:
        outcome_value = event.payload.get("outcome")
        if outcome_value is None:
            raise ValidationError(
                "Closing a dispute requires an outcome",
                code="missing_dispute_outcome",
                details={"dispute_id": dispute.id},
            )
        outcome = self._parse_outcome(outcome_value)

        if dispute.stage == DisputeStage.CLOSED:
            if dispute.outcome == outcome:
                logger.info("dispute_already_closed", dispute_id=dispute.id)
                return dispute
            raise InvalidTransitionError(
                "Dispute already closed with a different outcome",
                details={"dispute_id": dispute.id, "outcome": dispute.outcome.value},
            )

        now = utc_now()
        dispute.stage = DisputeStage.CLOSED
        dispute.outcome = outcome
        dispute.recovered_cents = int(event.payload.get("recovered_cents", 0))
        dispute.closed_at = now
        dispute.updated_at = now

        loss = self.loss_amount(dispute, self.dispute_fee(dispute.processor_id))
        if loss > 0:
            result = await self.orchestrator.post_ledger(
                transaction,
                -loss,
                LedgerEntryKind.DISPUTE_LOSS,
                f"dispute:{dispute.id}:loss",
                reference=dispute.id,
            )
            dispute.ledger_entry_id = result.entry_id

        await self.repository.save_dispute(dispute)
        await self._record(
            transaction,
            dispute,
            "closed",
            EventSource.WEBHOOK,
            event.event_id,
            outcome=outcome.value,
            loss_cents=loss,
        )
        logger.info(
            "dispute_closed",
            dispute_id=dispute.id,
            transaction_id=transaction.id,
            outcome=outcome.value,
            loss_cents=loss,
        )
        return dispute

    async def _record(
        self,
        transaction: Transaction,
        dispute: Dispute,
        action: str,
        source: EventSource,
        external_event_id: Optional[str],
        **data,
    ) -> None:
        await self.orchestrator.journal.record(
            transaction,
            TransactionEventType.DISPUTE,
            source=source,
            amount_cents=dispute.amount_cents,
            external_event_id=external_event_id,
            data={
                "dispute_id": dispute.id,
                "external_dispute_id": dispute.external_dispute_id,
                "action": action,
                "stage": dispute.stage.value,
                **data,
            },
        )

    @staticmethod
    def _parse_stage(value: Optional[str]) -> DisputeStage:
        try:
            return DisputeStage(value)
        except ValueError as e:
            raise ValidationError(
                f"Unknown dispute stage {value}", code="invalid_dispute_stage"
            ) from e

    @staticmethod
    def _parse_outcome(value: str) -> DisputeOutcome:
        try:
            return DisputeOutcome(value)
        except ValueError as e:
            raise ValidationError(
                f"Unknown dispute outcome {value}", code="invalid_dispute_outcome"
            ) from e

    @staticmethod
    def _parse_type(value: str) -> DisputeType:
        try:
            return DisputeType(value)
        except ValueError as e:
            raise ValidationError(
                f"Unknown dispute type {value}", code="invalid_dispute_type"
            ) from e

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
        existing = await self.repository.get_dispute_by_external_id(
            event.processor, event.payload.get("dispute_id")
        )
        if existing is not None:
            return existing.transaction_id
        raise NotFoundError(
            "Dispute event does not reference a known transaction",
            details={"event_id": event.event_id},
        )
