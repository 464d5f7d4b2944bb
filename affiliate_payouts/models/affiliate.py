import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship

from affiliate_payouts.database import Base
from affiliate_payouts.db_types import UUIDType

if TYPE_CHECKING:
    from affiliate_payouts.models.commission import Commission
    from affiliate_payouts.models.withdrawal import WithdrawalRequest


class AffiliateAccount(Base):
    """
    One row per affiliate.

    The row is locked with SELECT ... FOR UPDATE around every balance
    check-and-mutate, and supplies the name/email columns of the
    commission report. Created on demand the first time it is locked.
    """
    __tablename__ = "affiliate_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    full_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

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
    commissions: Mapped[List["Commission"]] = relationship(
        "Commission",
        back_populates="affiliate",
        passive_deletes=True,
    )
    withdrawals: Mapped[List["WithdrawalRequest"]] = relationship(
        "WithdrawalRequest",
        back_populates="affiliate",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<AffiliateAccount(id='{self.id}', email='{self.email}')>"
