"""API endpoints for affiliate withdrawal requests."""
from typing import Optional, List
from uuid import UUID

from fastapi import APIRouter, Query, status

from affiliate_payouts.api.deps import ActorId, Withdrawals, Orchestrator
from affiliate_payouts.core.state_machine import WithdrawalStatus
from affiliate_payouts.schemas.base import page_count
from affiliate_payouts.schemas.withdrawal import (
    WithdrawalCreate,
    WithdrawalReject,
    WithdrawalResponse,
    WithdrawalListResponse,
    WithdrawalStats,
    MarkPaidRequest,
    MarkFailedRequest,
    AuditLogResponse,
)

router = APIRouter()


@router.post("", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED)
async def create_withdrawal(body: WithdrawalCreate, withdrawals: Withdrawals):
    """Request a payout of part of the affiliate's available balance."""
    return await withdrawals.create_request(
        user_id=body.user_id,
        amount_usd=body.amount_usd,
        payout_channel=body.payout_channel,
        account_details=body.account_details,
        currency=body.currency,
        provider=body.provider,
        notes=body.notes,
    )


@router.get("", response_model=WithdrawalListResponse)
async def list_withdrawals(
    withdrawals: Withdrawals,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[WithdrawalStatus] = None,
    user_id: Optional[UUID] = None,
    provider: Optional[str] = None,
    currency: Optional[str] = None,
    batch_id: Optional[UUID] = None,
    unbatched: bool = False,
):
    items, total = await withdrawals.list(
        status=status.value if status else None,
        user_id=user_id,
        provider=provider,
        currency=currency,
        batch_id=batch_id,
        unbatched=unbatched,
        page=page,
        page_size=size,
    )
    return WithdrawalListResponse(
        items=[WithdrawalResponse.model_validate(w) for w in items],
        total=total,
        page=page,
        size=size,
        pages=page_count(total, size),
    )


@router.get("/stats", response_model=WithdrawalStats)
async def withdrawal_stats(withdrawals: Withdrawals):
    """Dashboard counters."""
    return await withdrawals.stats()


@router.get("/{withdrawal_id}", response_model=WithdrawalResponse)
async def get_withdrawal(withdrawal_id: UUID, withdrawals: Withdrawals):
    return await withdrawals.get(withdrawal_id)


@router.post("/{withdrawal_id}/approve", response_model=WithdrawalResponse)
async def approve_withdrawal(withdrawal_id: UUID, withdrawals: Withdrawals, actor_id: ActorId):
    """Approve a pending request. The balance is checked again."""
    return await withdrawals.approve(withdrawal_id, actor_id=actor_id)


@router.post("/{withdrawal_id}/reject", response_model=WithdrawalResponse)
async def reject_withdrawal(
    withdrawal_id: UUID,
    body: WithdrawalReject,
    withdrawals: Withdrawals,
    actor_id: ActorId,
):
    return await withdrawals.reject(withdrawal_id, body.reason, actor_id=actor_id)


@router.post("/{withdrawal_id}/mark-paid", response_model=WithdrawalResponse)
async def mark_withdrawal_paid(
    withdrawal_id: UUID,
    body: MarkPaidRequest,
    orchestrator: Orchestrator,
    actor_id: ActorId,
):
    """Record a transfer completed through the provider's bulk upload."""
    return await orchestrator.record_item_outcome(
        withdrawal_id,
        success=True,
        provider_reference=body.provider_reference,
        actor_id=actor_id,
    )


@router.post("/{withdrawal_id}/mark-failed", response_model=WithdrawalResponse)
async def mark_withdrawal_failed(
    withdrawal_id: UUID,
    body: MarkFailedRequest,
    orchestrator: Orchestrator,
    actor_id: ActorId,
):
    return await orchestrator.record_item_outcome(
        withdrawal_id,
        success=False,
        provider_reference=body.provider_reference,
        failure_reason=body.failure_reason,
        actor_id=actor_id,
    )


@router.get("/{withdrawal_id}/audit", response_model=List[AuditLogResponse])
async def withdrawal_audit_trail(withdrawal_id: UUID, withdrawals: Withdrawals):
    return await withdrawals.get_audit_trail(withdrawal_id)
