"""API endpoints for affiliate accounts and balances."""
from uuid import UUID

from fastapi import APIRouter
from sqlalchemy import select

from affiliate_payouts.api.deps import DB, Ledger
from affiliate_payouts.core.locks import affiliate_locks
from affiliate_payouts.models.affiliate import AffiliateAccount
from affiliate_payouts.schemas.affiliate import AffiliateUpsert, AffiliateResponse, BalanceResponse
from affiliate_payouts.core.exceptions import NotFoundError

router = APIRouter()


@router.put("/{affiliate_id}", response_model=AffiliateResponse)
async def upsert_affiliate(affiliate_id: UUID, body: AffiliateUpsert, db: DB):
    """Create or update the affiliate's display profile."""
    async with affiliate_locks.hold(db, affiliate_id):
        result = await db.execute(
            select(AffiliateAccount).where(AffiliateAccount.id == affiliate_id)
        )
        account = result.scalar_one()
        for field, value in body.model_dump(exclude_unset=True).items():
            setattr(account, field, value)

    return account


@router.get("/{affiliate_id}", response_model=AffiliateResponse)
async def get_affiliate(affiliate_id: UUID, db: DB):
    result = await db.execute(
        select(AffiliateAccount).where(AffiliateAccount.id == affiliate_id)
    )
    account = result.scalar_one_or_none()
    if not account:
        raise NotFoundError("Affiliate not found", {"affiliate_id": str(affiliate_id)})
    return account


@router.get("/{affiliate_id}/balance", response_model=BalanceResponse)
async def get_balance(affiliate_id: UUID, ledger: Ledger):
    """Available balance and commission totals, in USD."""
    return await ledger.get_balance_summary(affiliate_id)
