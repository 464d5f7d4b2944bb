import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from affiliate_payouts.database import Base
from affiliate_payouts.db_types import UUIDType, JSONType, Money, Rate
from affiliate_payouts.core.state_machine import WithdrawalStatus

if TYPE_CHECKING:
    from affiliate_payouts.models.affiliate import AffiliateAccount
    from affiliate_payouts.models.payout_batch import PayoutBatch


class PayoutChannel(str, Enum):
    BANK = "bank"
    MOBILE_MONEY = "mobile_money"


class WithdrawalRequest(Base):
    """
    An affiliate's instruction to turn available balance into a payout.

    PENDING/APPROVED/PROCESSING requests reserve amount_usd against the
    affiliate's balance. The reference is the idempotency key sent to the
    payout provider and is stable across re-batching.
    """
    __tablename__ = "withdrawal_requests"
    __table_args__ = (
        Index('ix_withdrawal_requests_status', 'status'),
        Index('ix_withdrawal_requests_user_status', 'user_id', 'status'),
        Index('ix_withdrawal_requests_created', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    reference: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="WD-YYYYMMDD-XXXXXX"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Amounts
    amount_usd: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="GHS",
        comment="Payout currency"
    )
    amount_local: Mapped[Optional[Decimal]] = mapped_column(
        Money(),
        nullable=True,
        comment="Amount to transfer in the payout currency"
    )
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(
        Rate(),
        nullable=True,
        comment="Units of payout currency per USD at request time"
    )

    # Destination
    payout_channel: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="bank, mobile_money"
    )
    account_details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        String(50),
        default=WithdrawalStatus.PENDING.value,
        nullable=False,
        comment="PENDING, APPROVED, REJECTED, PROCESSING, PAID, FAILED"
    )

    # Provider / batch assignment
    provider: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="PAYSTACK, KORA. Assigned when batched if not chosen up front"
    )
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("payout_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    provider_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    attempt_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Provider submissions made for this request"
    )

    # Review
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Outcome
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

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

    # Relationships
    affiliate: Mapped["AffiliateAccount"] = relationship(
        "AffiliateAccount",
        back_populates="withdrawals"
    )
    batch: Mapped[Optional["PayoutBatch"]] = relationship(
        "PayoutBatch",
        foreign_keys=[batch_id]
    )

    def __repr__(self) -> str:
        return f"<WithdrawalRequest(reference='{self.reference}', amount_usd={self.amount_usd}, status='{self.status}')>"
