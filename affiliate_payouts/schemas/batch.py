"""Pydantic schemas for payout batches."""
from datetime import datetime
from typing import Optional, List
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from affiliate_payouts.schemas.base import BaseResponseSchema, BaseCreateSchema


class BatchCreate(BaseCreateSchema):
    provider: str = Field(..., min_length=1, max_length=20)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    notes: Optional[str] = None


class AddWithdrawalsRequest(BaseModel):
    """Leave ``withdrawal_ids`` empty to attach every matching withdrawal."""
    withdrawal_ids: Optional[List[UUID]] = None


class BatchItemResponse(BaseResponseSchema):
    id: UUID
    batch_id: UUID
    withdrawal_id: UUID
    reference: str
    amount: Decimal
    amount_local: Decimal
    currency: str
    item_status: str
    provider_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int
    created_at: datetime
    processed_at: Optional[datetime] = None


class BatchResponse(BaseResponseSchema):
    id: UUID
    batch_reference: str
    provider: str
    currency: str
    status: str
    total_withdrawals: int
    total_amount_usd: Decimal
    total_amount_local: Decimal
    successful_count: int
    failed_count: int
    csv_generated_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BatchDetailResponse(BatchResponse):
    items: List[BatchItemResponse] = []


class BatchListResponse(BaseModel):
    items: List[BatchResponse]
    total: int
    page: int = 1
    size: int = 20
    pages: int = 1
