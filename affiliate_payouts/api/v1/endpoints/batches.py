"""API endpoints for payout batches."""
from typing import Optional, List
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import Response

from affiliate_payouts.api.deps import ActorId, Orchestrator
from affiliate_payouts.core.state_machine import BatchStatus
from affiliate_payouts.schemas.base import page_count
from affiliate_payouts.schemas.batch import (
    BatchCreate,
    AddWithdrawalsRequest,
    BatchResponse,
    BatchDetailResponse,
    BatchItemResponse,
    BatchListResponse,
)
from affiliate_payouts.schemas.withdrawal import AuditLogResponse
from affiliate_payouts.services.csv_export import ExportLayout

router = APIRouter()


async def _detail(orchestrator, batch_id: UUID) -> BatchDetailResponse:
    batch = await orchestrator.get(batch_id)
    items = await orchestrator.items(batch_id)
    # Items come from an explicit query; the relationship is never lazy-loaded
    return BatchDetailResponse(
        **BatchResponse.model_validate(batch).model_dump(),
        items=[BatchItemResponse.model_validate(i) for i in items],
    )


@router.post("", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
async def create_batch(body: BatchCreate, orchestrator: Orchestrator, actor_id: ActorId):
    """Create an empty DRAFT batch for one provider and currency."""
    return await orchestrator.create_batch(
        provider=body.provider,
        currency=body.currency,
        notes=body.notes,
        actor_id=actor_id,
    )


@router.get("", response_model=BatchListResponse)
async def list_batches(
    orchestrator: Orchestrator,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[BatchStatus] = None,
    provider: Optional[str] = None,
    currency: Optional[str] = None,
):
    items, total = await orchestrator.list(
        status=status.value if status else None,
        provider=provider,
        currency=currency,
        page=page,
        page_size=size,
    )
    return BatchListResponse(
        items=[BatchResponse.model_validate(b) for b in items],
        total=total,
        page=page,
        size=size,
        pages=page_count(total, size),
    )


@router.get("/{batch_id}", response_model=BatchDetailResponse)
async def get_batch(batch_id: UUID, orchestrator: Orchestrator):
    """Batch with its items."""
    return await _detail(orchestrator, batch_id)


@router.post("/{batch_id}/withdrawals", response_model=BatchDetailResponse)
async def add_withdrawals(
    batch_id: UUID,
    body: AddWithdrawalsRequest,
    orchestrator: Orchestrator,
    actor_id: ActorId,
):
    """Attach approved withdrawals matching the batch's provider and currency."""
    await orchestrator.add_approved_withdrawals(batch_id, body.withdrawal_ids, actor_id=actor_id)
    return await _detail(orchestrator, batch_id)


@router.delete("/{batch_id}/withdrawals/{withdrawal_id}", response_model=BatchDetailResponse)
async def remove_withdrawal(
    batch_id: UUID,
    withdrawal_id: UUID,
    orchestrator: Orchestrator,
    actor_id: ActorId,
):
    await orchestrator.remove_withdrawal(batch_id, withdrawal_id, actor_id=actor_id)
    return await _detail(orchestrator, batch_id)


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch(batch_id: UUID, orchestrator: Orchestrator, actor_id: ActorId):
    """Delete a DRAFT/READY batch; its withdrawals return to APPROVED."""
    await orchestrator.delete_batch(batch_id, actor_id=actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{batch_id}/submit", response_model=BatchDetailResponse)
async def submit_batch(batch_id: UUID, orchestrator: Orchestrator, actor_id: ActorId):
    """Send every item to the provider and settle the outcomes."""
    await orchestrator.submit_batch(batch_id, actor_id=actor_id)
    return await _detail(orchestrator, batch_id)


@router.post("/{batch_id}/reprocess", response_model=BatchDetailResponse)
async def reprocess_batch(batch_id: UUID, orchestrator: Orchestrator, actor_id: ActorId):
    """Retry the failed items of a partially completed batch."""
    await orchestrator.reprocess(batch_id, actor_id=actor_id)
    return await _detail(orchestrator, batch_id)


@router.get("/{batch_id}/export")
async def export_batch(
    batch_id: UUID,
    orchestrator: Orchestrator,
    layout: str = Query(ExportLayout.RECONCILIATION),
):
    """CSV of the batch items, as a reconciliation sheet or a provider upload file."""
    export = await orchestrator.export(batch_id, layout)
    headers = {"Content-Disposition": f"attachment; filename={export.filename}"}
    if export.errors:
        headers["X-Export-Skipped"] = str(len(export.errors))
    return Response(content=export.csv, media_type="text/csv", headers=headers)


@router.get("/{batch_id}/audit", response_model=List[AuditLogResponse])
async def batch_audit_trail(batch_id: UUID, orchestrator: Orchestrator, include_items: bool = True):
    await orchestrator.get(batch_id)
    return await orchestrator.audit.get_batch_trail(batch_id, include_items=include_items)
