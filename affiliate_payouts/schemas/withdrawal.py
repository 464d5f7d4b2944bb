"""Pydantic schemas for withdrawal requests."""
from datetime import datetime
from typing import Optional, List, Dict, Any
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from affiliate_payouts.schemas.base import BaseResponseSchema, BaseCreateSchema
from affiliate_payouts.models.withdrawal import PayoutChannel


class WithdrawalCreate(BaseCreateSchema):
    user_id: UUID
    amount_usd: Decimal = Field(..., gt=0)
    payout_channel: PayoutChannel
    account_details: Dict[str, Any]
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    provider: Optional[str] = None
    notes: Optional[str] = None


class WithdrawalReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class MarkPaidRequest(BaseModel):
    provider_reference: Optional[str] = Field(None, max_length=100)


class MarkFailedRequest(BaseModel):
    failure_reason: str = Field(..., min_length=1, max_length=500)
    provider_reference: Optional[str] = Field(None, max_length=100)


class WithdrawalResponse(BaseResponseSchema):
    id: UUID
    reference: str
    user_id: UUID
    amount_usd: Decimal
    currency: str
    amount_local: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    payout_channel: str
    account_details: Dict[str, Any]
    status: str
    provider: Optional[str] = None
    batch_id: Optional[UUID] = None
    provider_reference: Optional[str] = None
    attempt_count: int
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[UUID] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class WithdrawalListResponse(BaseModel):
    items: List[WithdrawalResponse]
    total: int
    page: int = 1
    size: int = 20
    pages: int = 1


class WithdrawalStats(BaseModel):
    pending_count: int
    pending_amount_usd: Decimal
    approved_count: int
    approved_amount_usd: Decimal
    processing_count: int
    processing_amount_usd: Decimal
    failed_count: int
    failed_amount_usd: Decimal
    paid_this_week: int
    paid_amount_this_week_usd: Decimal


class AuditLogResponse(BaseResponseSchema):
    id: UUID
    withdrawal_id: Optional[UUID] = None
    batch_id: Optional[UUID] = None
    actor_id: Optional[UUID] = None
    action: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    created_at: datetime
