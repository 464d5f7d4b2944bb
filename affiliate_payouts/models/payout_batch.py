"""Payout batches and their items.

A batch groups withdrawals for one (provider, currency) pair, since a
provider's bulk-transfer payload is single-currency. Each item tracks one
withdrawal's outcome within the batch.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from affiliate_payouts.database import Base
from affiliate_payouts.db_types import UUIDType, Money
from affiliate_payouts.core.state_machine import BatchStatus, BatchItemStatus


class PayoutBatch(Base):
    __tablename__ = "payout_batches"
    __table_args__ = (
        Index('ix_payout_batches_status', 'status'),
        Index('ix_payout_batches_provider_currency', 'provider', 'currency'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    batch_reference: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="BATCH-YYYYMMDD-XXXX"
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(
        String(50),
        default=BatchStatus.DRAFT.value,
        nullable=False,
        comment="DRAFT, READY, PROCESSING, COMPLETED, PARTIALLY_COMPLETED, FAILED"
    )

    # Totals (recomputed from items)
    total_withdrawals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount_usd: Mapped[Decimal] = mapped_column(Money(), default=Decimal("0.00"), nullable=False)
    total_amount_local: Mapped[Decimal] = mapped_column(Money(), default=Decimal("0.00"), nullable=False)
    successful_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Export artifact
    csv_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    csv_generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    items: Mapped[List["BatchItem"]] = relationship(
        "BatchItem",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="BatchItem.created_at",
    )

    def __repr__(self) -> str:
        return f"<PayoutBatch(reference='{self.batch_reference}', status='{self.status}')>"


class BatchItem(Base):
    """One withdrawal's slot in a batch."""
    __tablename__ = "payout_batch_items"
    __table_args__ = (
        UniqueConstraint("batch_id", "withdrawal_id", name="uq_batch_item_withdrawal"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("payout_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    # Lookup only, the withdrawal outlives the batch attempt
    withdrawal_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("withdrawal_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    reference: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Withdrawal reference, the idempotency key sent to the provider"
    )
    amount: Mapped[Decimal] = mapped_column(Money(), nullable=False, comment="USD")
    amount_local: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    item_status: Mapped[str] = mapped_column(
        String(20),
        default=BatchItemStatus.PENDING.value,
        nullable=False,
        comment="PENDING, SUCCESS, FAILED"
    )
    provider_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    batch: Mapped["PayoutBatch"] = relationship("PayoutBatch", back_populates="items")

    def __repr__(self) -> str:
        return f"<BatchItem(reference='{self.reference}', status='{self.item_status}')>"
