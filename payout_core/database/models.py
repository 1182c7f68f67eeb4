"""
SQLAlchemy database models for the payout core.

Each row keeps the columns the repository filters on plus a ``document``
column holding the full domain model, so the domain model stays the single
source of truth for field shapes.
"""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

Document = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TransactionRow(Base):
    """Charges and their current status."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True, index=True
    )
    payer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    processor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    document: Mapped[Dict[str, Any]] = mapped_column(Document, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_amount"),
        Index("idx_transactions_processor_external", "processor_id", "external_id"),
    )

    def __repr__(self) -> str:
        return f"<TransactionRow(id={self.id}, status={self.status})>"


class TransactionEventRow(Base):
    """Append-only transaction history."""

    __tablename__ = "transaction_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    document: Mapped[Dict[str, Any]] = mapped_column(Document, nullable=False)

    __table_args__ = (
        UniqueConstraint("transaction_id", "sequence", name="uq_transaction_event_sequence"),
    )


class TrustScoreRow(Base):
    """Trust score records, written once per scoring call."""

    __tablename__ = "trust_scores"

    # Insert order; created_at can tie within a clock tick
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    document: Mapped[Dict[str, Any]] = mapped_column(Document, nullable=False)

    __table_args__ = (
        CheckConstraint("score >= 0 AND score <= 100", name="score_range"),
        Index("idx_trust_scores_entity", "entity_type", "entity_id"),
    )


class RefundRow(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    external_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    document: Mapped[Dict[str, Any]] = mapped_column(Document, nullable=False)


class DisputeRow(Base):
    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    processor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_dispute_id: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    document: Mapped[Dict[str, Any]] = mapped_column(Document, nullable=False)

    __table_args__ = (
        UniqueConstraint("processor_id", "external_dispute_id", name="uq_dispute_external"),
    )


class SettlementRow(Base):
    __tablename__ = "settlements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    processor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    document: Mapped[Dict[str, Any]] = mapped_column(Document, nullable=False)

    __table_args__ = (
        UniqueConstraint("processor_id", "batch_id", name="uq_settlement_batch"),
    )


class IntegrityFlagRow(Base):
    __tablename__ = "integrity_flags"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    reference: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    document: Mapped[Dict[str, Any]] = mapped_column(Document, nullable=False)
