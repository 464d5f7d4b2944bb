"""Pydantic schemas for affiliate accounts."""
from datetime import datetime
from typing import Optional
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from affiliate_payouts.schemas.base import BaseResponseSchema, BaseCreateSchema


class AffiliateUpsert(BaseCreateSchema):
    full_name: Optional[str] = Field(None, max_length=200)
    email: Optional[str] = Field(None, max_length=255)


class AffiliateResponse(BaseResponseSchema):
    id: UUID
    full_name: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BalanceResponse(BaseModel):
    affiliate_id: UUID
    available_balance_usd: Decimal
    pending_commissions_usd: Decimal
    available_commissions_usd: Decimal
    paid_commissions_usd: Decimal
    rejected_commissions_usd: Decimal
    reserved_withdrawals_usd: Decimal
