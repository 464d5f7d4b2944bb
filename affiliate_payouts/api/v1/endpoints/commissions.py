"""API endpoints for the affiliate commission ledger."""
from typing import Optional
from uuid import UUID
from datetime import datetime, timezone

from fastapi import APIRouter, Query
from fastapi.responses import Response
from sqlalchemy import select

from affiliate_payouts.api.deps import DB, Ledger
from affiliate_payouts.core.state_machine import CommissionStatus
from affiliate_payouts.models.affiliate import AffiliateAccount
from affiliate_payouts.schemas.base import page_count
from affiliate_payouts.schemas.commission import (
    CommissionResponse,
    CommissionListResponse,
    CommissionReject,
    CommissionStats,
)
from affiliate_payouts.services.csv_export import render_commission_csv

router = APIRouter()


@router.get("", response_model=CommissionListResponse)
async def list_commissions(
    ledger: Ledger,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[CommissionStatus] = None,
    affiliate_id: Optional[UUID] = None,
    source: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    """List commissions (newest first) with aggregate stats."""
    items, total = await ledger.list(
        status=status.value if status else None,
        affiliate_id=affiliate_id,
        source=source,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=size,
    )
    stats = await ledger.summary(affiliate_id=affiliate_id)

    return CommissionListResponse(
        items=[CommissionResponse.model_validate(c) for c in items],
        total=total,
        page=page,
        size=size,
        pages=page_count(total, size),
        stats=CommissionStats(**stats),
    )


@router.get("/export")
async def export_commissions(
    db: DB,
    ledger: Ledger,
    status: Optional[CommissionStatus] = None,
    affiliate_id: Optional[UUID] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    """Export commissions as CSV. All amounts are in USD."""
    commissions = await ledger.list_all(
        status=status.value if status else None,
        affiliate_id=affiliate_id,
        date_from=date_from,
        date_to=date_to,
    )

    affiliate_ids = {c.affiliate_id for c in commissions}
    affiliates = {}
    if affiliate_ids:
        result = await db.execute(
            select(AffiliateAccount).where(AffiliateAccount.id.in_(affiliate_ids))
        )
        affiliates = {a.id: a for a in result.scalars().all()}

    content = render_commission_csv((c, affiliates.get(c.affiliate_id)) for c in commissions)
    filename = f"commissions_{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.csv"

    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/{commission_id}", response_model=CommissionResponse)
async def get_commission(commission_id: UUID, ledger: Ledger):
    """Get commission by ID."""
    return await ledger.get(commission_id)


@router.post("/{commission_id}/approve", response_model=CommissionResponse)
async def approve_commission(commission_id: UUID, ledger: Ledger):
    """Approve a pending commission; it becomes withdrawable."""
    return await ledger.approve(commission_id)


@router.post("/{commission_id}/reject", response_model=CommissionResponse)
async def reject_commission(commission_id: UUID, body: CommissionReject, ledger: Ledger):
    return await ledger.reject(commission_id, body.reason)
