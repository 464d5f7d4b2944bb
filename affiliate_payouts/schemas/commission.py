"""Pydantic schemas for the commission ledger."""
from datetime import datetime
from typing import Optional, List, Dict
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from affiliate_payouts.schemas.base import BaseResponseSchema, BaseCreateSchema
from affiliate_payouts.models.commission import CommissionSource


# ==================== Sale Events ====================

class SaleEvent(BaseCreateSchema):
    """A completed sale or payment that earns an affiliate commission."""
    affiliate_id: UUID
    source_type: CommissionSource
    amount: Decimal = Field(..., gt=0, description="Commission amount in the sale currency")
    currency: str = Field(..., min_length=3, max_length=3)
    rate: Decimal = Field(..., ge=0, le=1)
    linked_payment_id: Optional[str] = Field(None, max_length=100)
    sale_amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class CommissionReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ==================== Responses ====================

class CommissionResponse(BaseResponseSchema):
    id: UUID
    affiliate_id: UUID
    source: str
    amount: Decimal
    currency: str
    rate: Decimal
    sale_amount: Decimal
    amount_usd: Decimal
    sale_amount_usd: Decimal
    settled_usd: Decimal
    status: str
    linked_payment_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    paid_reference: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class SaleEventResponse(BaseModel):
    """Result of recording a sale event. ``created`` is false for a duplicate."""
    created: bool
    commission: CommissionResponse


class StatusTotals(BaseModel):
    count: int
    amount_usd: Decimal


class CommissionStats(BaseModel):
    total_count: int
    total_amount_usd: Decimal
    by_status: Dict[str, StatusTotals]


class CommissionListResponse(BaseModel):
    items: List[CommissionResponse]
    total: int
    page: int = 1
    size: int = 20
    pages: int = 1
    stats: Optional[CommissionStats] = None
