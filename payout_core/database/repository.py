"""
Repository interface and in-memory implementation.

Services only talk to ``Repository``. The in-memory store backs tests and
single-process deployments; ``SqlAlchemyRepository`` backs everything else.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from payout_core.domain.exceptions import DataIntegrityError
from payout_core.domain.models import (
    Dispute,
    DisputeStage,
    EntityType,
    IntegrityFlag,
    Refund,
    RefundStatus,
    Settlement,
    Transaction,
    TransactionEvent,
    TrustScoreRecord,
)


class Repository(ABC):
    """Persistence operations used by the payout core."""

    # Transactions

    @abstractmethod
    async def save_transaction(self, transaction: Transaction) -> None: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def get_transaction_by_idempotency_key(self, key: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def get_transaction_by_external_id(
        self, processor_id: str, external_id: str
    ) -> Optional[Transaction]: ...

    @abstractmethod
    async def list_transactions_for_payer(self, payer_id: str) -> List[Transaction]: ...

    @abstractmethod
    async def list_transactions_created_between(
        self,
        date_from: datetime,
        date_to: datetime,
        processor_ids: Optional[List[str]] = None,
    ) -> List[Transaction]:
        """Transactions created in ``[date_from, date_to)``, oldest first."""

    # Transaction events

    @abstractmethod
    async def append_event(self, event: TransactionEvent) -> None:
        """
        Append an event to a transaction's history.

        Raises:
            DataIntegrityError: If the sequence number is already taken
        """

    @abstractmethod
    async def list_events(self, transaction_id: str) -> List[TransactionEvent]: ...

    # Trust scores

    @abstractmethod
    async def save_trust_score(self, record: TrustScoreRecord) -> None: ...

    @abstractmethod
    async def latest_trust_score(
        self, entity_type: EntityType, entity_id: str
    ) -> Optional[TrustScoreRecord]: ...

    # Refunds

    @abstractmethod
    async def save_refund(self, refund: Refund) -> None: ...

    @abstractmethod
    async def get_refund(self, refund_id: str) -> Optional[Refund]: ...

    @abstractmethod
    async def get_refund_by_idempotency_key(self, key: str) -> Optional[Refund]: ...

    @abstractmethod
    async def get_refund_by_external_id(
        self, transaction_id: str, external_refund_id: str
    ) -> Optional[Refund]:
        """Refund of a transaction by the id the processor assigned to it."""

    @abstractmethod
    async def list_refunds_for_transaction(self, transaction_id: str) -> List[Refund]: ...

    @abstractmethod
    async def list_refunds_for_payer(
        self, payer_id: str, since: Optional[datetime] = None
    ) -> List[Refund]: ...

    @abstractmethod
    async def list_refunds_by_status(self, status: RefundStatus) -> List[Refund]: ...

    # Disputes

    @abstractmethod
    async def save_dispute(self, dispute: Dispute) -> None: ...

    @abstractmethod
    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]: ...

    @abstractmethod
    async def get_dispute_by_external_id(
        self, processor_id: str, external_dispute_id: str
    ) -> Optional[Dispute]: ...

    @abstractmethod
    async def list_open_disputes(self) -> List[Dispute]: ...

    # Settlements

    @abstractmethod
    async def save_settlement(self, settlement: Settlement) -> None: ...

    @abstractmethod
    async def get_settlement(self, processor_id: str, batch_id: str) -> Optional[Settlement]: ...

    # Integrity flags

    @abstractmethod
    async def save_flag(self, flag: IntegrityFlag) -> None: ...

    @abstractmethod
    async def list_flags(self) -> List[IntegrityFlag]: ...


class InMemoryRepository(Repository):
    """
    Dictionary-backed repository.

    Models are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self.transactions: Dict[str, Transaction] = {}
        self.events: Dict[str, List[TransactionEvent]] = {}
        self.trust_scores: List[TrustScoreRecord] = []
        self.refunds: Dict[str, Refund] = {}
        self.disputes: Dict[str, Dispute] = {}
        self.settlements: Dict[Tuple[str, str], Settlement] = {}
        self.flags: List[IntegrityFlag] = []

    async def save_transaction(self, transaction: Transaction) -> None:
        self.transactions[transaction.id] = transaction.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        stored = self.transactions.get(transaction_id)
        return stored.model_copy(deep=True) if stored else None

    async def get_transaction_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        for stored in self.transactions.values():
            if stored.idempotency_key == key:
                return stored.model_copy(deep=True)
        return None

    async def get_transaction_by_external_id(
        self, processor_id: str, external_id: str
    ) -> Optional[Transaction]:
        for stored in self.transactions.values():
            if stored.processor_id == processor_id and stored.external_id == external_id:
                return stored.model_copy(deep=True)
        return None

    async def list_transactions_for_payer(self, payer_id: str) -> List[Transaction]:
        matches = [t for t in self.transactions.values() if t.payer_id == payer_id]
        return [t.model_copy(deep=True) for t in sorted(matches, key=lambda t: t.created_at)]

    async def list_transactions_created_between(
        self,
        date_from: datetime,
        date_to: datetime,
        processor_ids: Optional[List[str]] = None,
    ) -> List[Transaction]:
        matches = [
            t
            for t in self.transactions.values()
            if date_from <= t.created_at < date_to
            and (processor_ids is None or t.processor_id in processor_ids)
        ]
        return [t.model_copy(deep=True) for t in sorted(matches, key=lambda t: t.created_at)]

    async def append_event(self, event: TransactionEvent) -> None:
        history = self.events.setdefault(event.transaction_id, [])
        if any(existing.sequence == event.sequence for existing in history):
            raise DataIntegrityError(
                "Transaction event sequence already used",
                details={"transaction_id": event.transaction_id, "sequence": event.sequence},
            )
        history.append(event)

    async def list_events(self, transaction_id: str) -> List[TransactionEvent]:
        return sorted(self.events.get(transaction_id, []), key=lambda e: e.sequence)

    async def save_trust_score(self, record: TrustScoreRecord) -> None:
        self.trust_scores.append(record)

    async def latest_trust_score(
        self, entity_type: EntityType, entity_id: str
    ) -> Optional[TrustScoreRecord]:
        for record in reversed(self.trust_scores):
            if record.entity_type == entity_type and record.entity_id == entity_id:
                return record
        return None

    async def save_refund(self, refund: Refund) -> None:
        self.refunds[refund.id] = refund.model_copy(deep=True)

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        stored = self.refunds.get(refund_id)
        return stored.model_copy(deep=True) if stored else None

    async def get_refund_by_idempotency_key(self, key: str) -> Optional[Refund]:
        for stored in self.refunds.values():
            if stored.idempotency_key == key:
                return stored.model_copy(deep=True)
        return None

    async def get_refund_by_external_id(
        self, transaction_id: str, external_refund_id: str
    ) -> Optional[Refund]:
        for stored in self.refunds.values():
            if (
                stored.transaction_id == transaction_id
                and stored.external_refund_id == external_refund_id
            ):
                return stored.model_copy(deep=True)
        return None


    async def list_refunds_for_transaction(self, transaction_id: str) -> List[Refund]:
        matches = [r for r in self.refunds.values() if r.transaction_id == transaction_id]
        return [r.model_copy(deep=True) for r in sorted(matches, key=lambda r: r.requested_at)]

    async def list_refunds_for_payer(
        self, payer_id: str, since: Optional[datetime] = None
    ) -> List[Refund]:
        matches = [
            r
            for r in self.refunds.values()
            if r.payer_id == payer_id and (since is None or r.requested_at >= since)
        ]
        return [r.model_copy(deep=True) for r in sorted(matches, key=lambda r: r.requested_at)]

    async def list_refunds_by_status(self, status: RefundStatus) -> List[Refund]:
        return [r.model_copy(deep=True) for r in self.refunds.values() if r.status == status]

    async def save_dispute(self, dispute: Dispute) -> None:
        self.disputes[dispute.id] = dispute.model_copy(deep=True)

    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        stored = self.disputes.get(dispute_id)
        return stored.model_copy(deep=True) if stored else None

    async def get_dispute_by_external_id(
        self, processor_id: str, external_dispute_id: str
    ) -> Optional[Dispute]:
        for stored in self.disputes.values():
            if (
                stored.processor_id == processor_id
                and stored.external_dispute_id == external_dispute_id
            ):
                return stored.model_copy(deep=True)
        return None

    async def list_open_disputes(self) -> List[Dispute]:
        return [
            d.model_copy(deep=True)
            for d in self.disputes.values()
            if d.stage != DisputeStage.CLOSED
        ]

    async def save_settlement(self, settlement: Settlement) -> None:
        key = (settlement.processor_id, settlement.batch_id)
        self.settlements[key] = settlement.model_copy(deep=True)

    async def get_settlement(self, processor_id: str, batch_id: str) -> Optional[Settlement]:
        stored = self.settlements.get((processor_id, batch_id))
        return stored.model_copy(deep=True) if stored else None

    async def save_flag(self, flag: IntegrityFlag) -> None:
        self.flags.append(flag)

    async def list_flags(self) -> List[IntegrityFlag]:
        return list(self.flags)
