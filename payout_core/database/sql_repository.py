"""SQLAlchemy-backed repository."""
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payout_core.database.models import (
    DisputeRow,
    IntegrityFlagRow,
    RefundRow,
    SettlementRow,
    TransactionEventRow,
    TransactionRow,
    TrustScoreRow,
)
from payout_core.database.repository import Repository
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

logger = structlog.get_logger(__name__)


class SqlAlchemyRepository(Repository):
    """
    Repository over an async SQLAlchemy session factory.

    Every call runs in its own session and commits before returning.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize repository.

        Args:
            session_factory: Factory producing async sessions
        """
        self.session_factory = session_factory

    async def _merge(self, row: object) -> None:
        async with self.session_factory() as session:
            await session.merge(row)
            await session.commit()

    # Transactions

    async def save_transaction(self, transaction: Transaction) -> None:
        await self._merge(
            TransactionRow(
                id=transaction.id,
                idempotency_key=transaction.idempotency_key,
                payer_id=transaction.payer_id,
                processor_id=transaction.processor_id,
                external_id=transaction.external_id,
                status=transaction.status.value,
                amount_cents=transaction.amount_cents,
                created_at=transaction.created_at,
                document=transaction.model_dump(mode="json"),
            )
        )

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        async with self.session_factory() as session:
            row = await session.get(TransactionRow, transaction_id)
            return Transaction.model_validate(row.document) if row else None

    async def get_transaction_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        stmt = select(TransactionRow).where(TransactionRow.idempotency_key == key)
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return Transaction.model_validate(row.document) if row else None

    async def get_transaction_by_external_id(
        self, processor_id: str, external_id: str
    ) -> Optional[Transaction]:
        stmt = select(TransactionRow).where(
            TransactionRow.processor_id == processor_id,
            TransactionRow.external_id == external_id,
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            return Transaction.model_validate(row.document) if row else None

    async def list_transactions_for_payer(self, payer_id: str) -> List[Transaction]:
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.payer_id == payer_id)
            .order_by(TransactionRow.created_at)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Transaction.model_validate(row.document) for row in rows]

    async def list_transactions_created_between(
        self,
        date_from: datetime,
        date_to: datetime,
        processor_ids: Optional[List[str]] = None,
    ) -> List[Transaction]:
        stmt = select(TransactionRow).where(
            TransactionRow.created_at >= date_from, TransactionRow.created_at < date_to
        )
        if processor_ids is not None:
            stmt = stmt.where(TransactionRow.processor_id.in_(processor_ids))
        async with self.session_factory() as session:
            rows = (await session.execute(stmt.order_by(TransactionRow.created_at))).scalars().all()
            return [Transaction.model_validate(row.document) for row in rows]

    # Transaction events

    async def append_event(self, event: TransactionEvent) -> None:
        row = TransactionEventRow(
            id=event.id,
            transaction_id=event.transaction_id,
            sequence=event.sequence,
            event_type=event.event_type.value,
            success=event.success,
            created_at=event.created_at,
            document=event.model_dump(mode="json"),
        )
        async with self.session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.error(
                    "transaction_event_conflict",
                    transaction_id=event.transaction_id,
                    sequence=event.sequence,
                )
                raise DataIntegrityError(
                    "Transaction event sequence already used",
                    details={
                        "transaction_id": event.transaction_id,
                        "sequence": event.sequence,
                    },
                ) from e

    async def list_events(self, transaction_id: str) -> List[TransactionEvent]:
        stmt = (
            select(TransactionEventRow)
            .where(TransactionEventRow.transaction_id == transaction_id)
            .order_by(TransactionEventRow.sequence)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [TransactionEvent.model_validate(row.document) for row in rows]

    # Trust scores

    async def save_trust_score(self, record: TrustScoreRecord) -> None:
        async with self.session_factory() as session:
            session.add(
                TrustScoreRow(
                    id=record.id,
                    entity_type=record.entity_type.value,
                    entity_id=record.entity_id,
                    score=record.score,
                    created_at=record.created_at,
                    document=record.model_dump(mode="json"),
                )
            )
            await session.commit()

    async def latest_trust_score(
        self, entity_type: EntityType, entity_id: str
    ) -> Optional[TrustScoreRecord]:
        stmt = (
            select(TrustScoreRow)
            .where(
                TrustScoreRow.entity_type == entity_type.value,
                TrustScoreRow.entity_id == entity_id,
            )
            .order_by(TrustScoreRow.seq.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return TrustScoreRecord.model_validate(row.document) if row else None

    # Refunds

    async def save_refund(self, refund: Refund) -> None:
        await self._merge(
            RefundRow(
                id=refund.id,
                transaction_id=refund.transaction_id,
                payer_id=refund.payer_id,
                status=refund.status.value,
                idempotency_key=refund.idempotency_key,
                external_refund_id=refund.external_refund_id,
                requested_at=refund.requested_at,
                document=refund.model_dump(mode="json"),
            )
        )

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        async with self.session_factory() as session:
            row = await session.get(RefundRow, refund_id)
            return Refund.model_validate(row.document) if row else None

    async def get_refund_by_idempotency_key(self, key: str) -> Optional[Refund]:
        stmt = select(RefundRow).where(RefundRow.idempotency_key == key)
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return Refund.model_validate(row.document) if row else None

    async def get_refund_by_external_id(
        self, transaction_id: str, external_refund_id: str
    ) -> Optional[Refund]:
        stmt = select(RefundRow).where(
            RefundRow.transaction_id == transaction_id,
            RefundRow.external_refund_id == external_refund_id,
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return Refund.model_validate(row.document) if row else None

    async def list_refunds_for_transaction(self, transaction_id: str) -> List[Refund]:
        stmt = (
            select(RefundRow)
            .where(RefundRow.transaction_id == transaction_id)
            .order_by(RefundRow.requested_at)
        )
        return await self._refunds(stmt)

    async def list_refunds_for_payer(
        self, payer_id: str, since: Optional[datetime] = None
    ) -> List[Refund]:
        stmt = select(RefundRow).where(RefundRow.payer_id == payer_id)
        if since is not None:
            stmt = stmt.where(RefundRow.requested_at >= since)
        return await self._refunds(stmt.order_by(RefundRow.requested_at))

    async def list_refunds_by_status(self, status: RefundStatus) -> List[Refund]:
        stmt = select(RefundRow).where(RefundRow.status == status.value)
        return await self._refunds(stmt)

    async def _refunds(self, stmt) -> List[Refund]:
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Refund.model_validate(row.document) for row in rows]

    # Disputes

    async def save_dispute(self, dispute: Dispute) -> None:
        await self._merge(
            DisputeRow(
                id=dispute.id,
                processor_id=dispute.processor_id,
                external_dispute_id=dispute.external_dispute_id,
                transaction_id=dispute.transaction_id,
                stage=dispute.stage.value,
                document=dispute.model_dump(mode="json"),
            )
        )

    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        async with self.session_factory() as session:
            row = await session.get(DisputeRow, dispute_id)
            return Dispute.model_validate(row.document) if row else None

    async def get_dispute_by_external_id(
        self, processor_id: str, external_dispute_id: str
    ) -> Optional[Dispute]:
        stmt = select(DisputeRow).where(
            DisputeRow.processor_id == processor_id,
            DisputeRow.external_dispute_id == external_dispute_id,
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return Dispute.model_validate(row.document) if row else None

    async def list_open_disputes(self) -> List[Dispute]:
        stmt = select(DisputeRow).where(DisputeRow.stage != DisputeStage.CLOSED.value)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Dispute.model_validate(row.document) for row in rows]

    # Settlements

    async def save_settlement(self, settlement: Settlement) -> None:
        await self._merge(
            SettlementRow(
                id=settlement.id,
                processor_id=settlement.processor_id,
                batch_id=settlement.batch_id,
                status=settlement.status.value,
                document=settlement.model_dump(mode="json"),
            )
        )

    async def get_settlement(self, processor_id: str, batch_id: str) -> Optional[Settlement]:
        stmt = select(SettlementRow).where(
            SettlementRow.processor_id == processor_id,
            SettlementRow.batch_id == batch_id,
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return Settlement.model_validate(row.document) if row else None

    # Integrity flags

    async def save_flag(self, flag: IntegrityFlag) -> None:
        async with self.session_factory() as session:
            session.add(
                IntegrityFlagRow(
                    id=flag.id,
                    kind=flag.kind,
                    reference=flag.reference,
                    created_at=flag.created_at,
                    document=flag.model_dump(mode="json"),
                )
            )
            await session.commit()

    async def list_flags(self) -> List[IntegrityFlag]:
        stmt = select(IntegrityFlagRow).order_by(IntegrityFlagRow.created_at)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [IntegrityFlag.model_validate(row.document) for row in rows]
