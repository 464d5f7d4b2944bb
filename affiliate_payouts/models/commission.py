"""Commission ledger entries.

A commission is money owed to an affiliate for one qualifying sale. The USD
value is fixed when the row is created and never recomputed, so later
rate-table changes cannot alter historical totals.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, DateTime, ForeignKey, Text, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from affiliate_payouts.database import Base
from affiliate_payouts.db_types import UUIDType, Money, Rate
from affiliate_payouts.core.state_machine import CommissionStatus

if TYPE_CHECKING:
    from affiliate_payouts.models.affiliate import AffiliateAccount


class CommissionSource(str, Enum):
    """Origin of a commission, decided once by the sale event."""
    REFERRAL_MEMBERSHIP = "referral_membership"
    LEARNER_RENEWAL = "learner_renewal"
    DCS_ADDON = "dcs_addon"
    AFFILIATE_REFERRAL = "affiliate_referral"


class Commission(Base):
    """
    Commission record for each attributed sale.

    Lifecycle: pending -> available | rejected; available -> paid.
    """
    __tablename__ = "commissions"
    __table_args__ = (
        # NULL linked_payment_id never collides, so manual entries are not deduplicated
        UniqueConstraint(
            "affiliate_id", "source", "linked_payment_id",
            name="uq_commission_affiliate_source_payment"
        ),
        Index('ix_commissions_status', 'status'),
        Index('ix_commissions_created', 'created_at'),
        Index('ix_commissions_affiliate_status', 'affiliate_id', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    source: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="referral_membership, learner_renewal, dcs_addon, affiliate_referral"
    )

    # Amounts as received
    amount: Mapped[Decimal] = mapped_column(
        Money(),
        nullable=False,
        comment="Commission amount in the sale currency"
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    rate: Mapped[Decimal] = mapped_column(
        Rate(),
        nullable=False,
        default=Decimal("0"),
        comment="Commission rate as a fraction (0.25 = 25%)"
    )
    sale_amount: Mapped[Decimal] = mapped_column(
        Money(),
        nullable=False,
        comment="Sale amount in the sale currency"
    )

    # Normalized once at creation, never recomputed
    amount_usd: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    sale_amount_usd: Mapped[Decimal] = mapped_column(Money(), nullable=False)

    # Portion of amount_usd already paid out through withdrawals
    settled_usd: Mapped[Decimal] = mapped_column(
        Money(),
        nullable=False,
        default=Decimal("0.00")
    )

    status: Mapped[str] = mapped_column(
        String(50),
        default=CommissionStatus.PENDING.value,
        nullable=False,
        comment="pending, available, rejected, paid"
    )

    linked_payment_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Payment that produced this commission, used for dedup"
    )

    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Batch item reference that settled this commission"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
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
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    affiliate: Mapped["AffiliateAccount"] = relationship(
        "AffiliateAccount",
        back_populates="commissions"
    )

    @property
    def unsettled_usd(self) -> Decimal:
        return self.amount_usd - (self.settled_usd or Decimal("0.00"))

    def __repr__(self) -> str:
        return f"<Commission(id='{self.id}', amount_usd={self.amount_usd}, status='{self.status}')>"
