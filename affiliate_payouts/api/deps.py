from typing import Annotated, Optional
import uuid

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_payouts.database import get_db
from affiliate_payouts.services.batch_orchestrator import BatchOrchestrator
from affiliate_payouts.services.commission_ledger import CommissionLedger
from affiliate_payouts.services.withdrawal_service import WithdrawalRequestManager


# Type alias for database dependency
DB = Annotated[AsyncSession, Depends(get_db)]


async def get_actor_id(
    x_actor_id: Annotated[Optional[uuid.UUID], Header()] = None,
) -> Optional[uuid.UUID]:
    """
    Admin performing the action, recorded in the audit trail.

    Authentication happens upstream; the gateway forwards the admin id
    in the X-Actor-Id header.
    """
    return x_actor_id


ActorId = Annotated[Optional[uuid.UUID], Depends(get_actor_id)]


def get_ledger(db: DB) -> CommissionLedger:
    return CommissionLedger(db)


def get_withdrawal_manager(db: DB) -> WithdrawalRequestManager:
    return WithdrawalRequestManager(db)


def get_orchestrator(db: DB) -> BatchOrchestrator:
    return BatchOrchestrator(db)


Ledger = Annotated[CommissionLedger, Depends(get_ledger)]
Withdrawals = Annotated[WithdrawalRequestManager, Depends(get_withdrawal_manager)]
Orchestrator = Annotated[BatchOrchestrator, Depends(get_orchestrator)]
