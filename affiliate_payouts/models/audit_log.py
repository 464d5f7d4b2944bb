import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_payouts.database import Base
from affiliate_payouts.db_types import UUIDType, JSONType


class PayoutAuditAction(str, Enum):
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ADDED_TO_BATCH = "ADDED_TO_BATCH"
    REMOVED_FROM_BATCH = "REMOVED_FROM_BATCH"
    BATCH_CREATED = "BATCH_CREATED"
    BATCH_DELETED = "BATCH_DELETED"
    BATCH_PROCESSED = "BATCH_PROCESSED"
    BATCH_COMPLETED = "BATCH_COMPLETED"
    BATCH_REPROCESSED = "BATCH_REPROCESSED"
    MARKED_PAID = "MARKED_PAID"
    MARKED_FAILED = "MARKED_FAILED"


class PayoutAuditLog(Base):
    """
    Append-only trail of withdrawal and batch actions.
    Rows are never updated or deleted.
    """
    __tablename__ = "payout_audit_logs"
    __table_args__ = (
        Index('ix_payout_audit_logs_withdrawal', 'withdrawal_id'),
        Index('ix_payout_audit_logs_batch', 'batch_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    # Plain columns, not foreign keys: entries outlive deleted batches
    withdrawal_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    # Who performed the action (None for system actions)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    previous_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<PayoutAuditLog(action='{self.action}', withdrawal='{self.withdrawal_id}', batch='{self.batch_id}')>"
