from typing import Optional, Dict, Any, List
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_payouts.models.audit_log import PayoutAuditLog, PayoutAuditAction


class PayoutAuditService:
    """
    Audit trail for withdrawal and batch actions.

    Entries are added to the caller's session and flushed, so they commit
    or roll back together with the action they describe.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: PayoutAuditAction,
        withdrawal_id: Optional[uuid.UUID] = None,
        batch_id: Optional[uuid.UUID] = None,
        actor_id: Optional[uuid.UUID] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> PayoutAuditLog:
        """
        Create an audit log entry.

        Args:
            action: The action performed
            withdrawal_id: Affected withdrawal, if any
            batch_id: Affected batch, if any
            actor_id: Admin performing the action (None for system actions)
            previous_status: Status before the action
            new_status: Status after the action
            details: Extra context (amounts, references)
            reason: Free-text reason (rejections, failures)

        Returns:
            The created PayoutAuditLog entry
        """
        entry = PayoutAuditLog(
            action=action.value,
            withdrawal_id=withdrawal_id,
            batch_id=batch_id,
            actor_id=actor_id,
            previous_status=previous_status,
            new_status=new_status,
            details=details,
            reason=reason,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_withdrawal_trail(self, withdrawal_id: uuid.UUID) -> List[PayoutAuditLog]:
        """All entries for a withdrawal, oldest first."""
        result = await self.db.execute(
            select(PayoutAuditLog)
            .where(PayoutAuditLog.withdrawal_id == withdrawal_id)
            .order_by(PayoutAuditLog.created_at, PayoutAuditLog.id)
        )
        return list(result.scalars().all())

    async def get_batch_trail(self, batch_id: uuid.UUID, include_items: bool = True) -> List[PayoutAuditLog]:
        """Entries for a batch. Item-level entries carry the batch id too."""
        query = select(PayoutAuditLog).where(PayoutAuditLog.batch_id == batch_id)
        if not include_items:
            query = query.where(PayoutAuditLog.withdrawal_id.is_(None))
        result = await self.db.execute(
            query.order_by(PayoutAuditLog.created_at, PayoutAuditLog.id)
        )
        return list(result.scalars().all())
