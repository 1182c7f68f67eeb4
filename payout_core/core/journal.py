"""
Transaction journal: the only place transaction status changes.

Every status change is appended as a TransactionEvent first and then
reflected on the stored transaction, so the stored status always equals
the fold of the event history. Callers must hold the transaction lock.
"""
from typing import Any, Optional

import structlog

from payout_core.database.repository import Repository
from payout_core.domain.models import (
    EventSource,
    Transaction,
    TransactionEvent,
    TransactionEventType,
    TransactionStatus,
    utc_now,
)
from payout_core.domain.state_machine import ensure_transition

logger = structlog.get_logger(__name__)

STATUS_TIMESTAMPS = {
    TransactionStatus.AUTHORIZED: "authorized_at",
    TransactionStatus.CAPTURED: "captured_at",
    TransactionStatus.SETTLED: "settled_at",
    TransactionStatus.FAILED: "failed_at",
}


class TransactionJournal:
    def __init__(self, repository: Repository):
        self.repository = repository

    async def open(self, transaction: Transaction, **fields: Any) -> TransactionEvent:
        """Persist a new transaction together with its ``initiated`` event."""
        transaction.status = TransactionStatus.INITIATED
        transaction.event_sequence = 1
        event = TransactionEvent(
            transaction_id=transaction.id,
            sequence=1,
            event_type=TransactionEventType.INITIATED,
            resulting_status=TransactionStatus.INITIATED,
            amount_cents=transaction.amount_cents,
            **fields,
        )
        await self.repository.save_transaction(transaction)
        await self.repository.append_event(event)
        logger.info(
            "transaction_initiated",
            transaction_id=transaction.id,
            platform=transaction.platform,
            amount_cents=transaction.amount_cents,
            currency=transaction.currency,
        )
        return event

    async def record(
        self,
        transaction: Transaction,
        event_type: TransactionEventType,
        status: Optional[TransactionStatus] = None,
        source: EventSource = EventSource.INTERNAL,
        success: bool = True,
        **fields: Any,
    ) -> TransactionEvent:
        """
        Append an event and apply its resulting status.

        Args:
            transaction: Transaction being changed (updated in place and saved)
            event_type: Kind of event
            status: Resulting status, or None when the status does not change
            source: Where the event came from
            success: Whether the recorded step succeeded
            **fields: Extra TransactionEvent fields

        Returns:
            TransactionEvent: The appended event

        Raises:
            InvalidTransitionError: If the status change is not allowed
        """
        if status is not None:
            ensure_transition(transaction.status, status)

        event = TransactionEvent(
            transaction_id=transaction.id,
            sequence=transaction.event_sequence + 1,
            event_type=event_type,
            source=source,
            success=success,
            resulting_status=status,
            **fields,
        )
        await self.repository.append_event(event)

        transaction.event_sequence = event.sequence
        now = utc_now()
        if status is not None:
            transaction.status = status
            timestamp_field = STATUS_TIMESTAMPS.get(status)
            if timestamp_field:
                setattr(transaction, timestamp_field, now)
        transaction.updated_at = now
        await self.repository.save_transaction(transaction)

        logger.info(
            "transaction_event_recorded",
            transaction_id=transaction.id,
            sequence=event.sequence,
            event_type=event_type.value,
            success=success,
            status=transaction.status.value,
        )
        return event
