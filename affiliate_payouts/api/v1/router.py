from fastapi import APIRouter

from affiliate_payouts.api.v1.endpoints import (
    # Inbound billing events
    events,
    # Ledger
    affiliates,
    commissions,
    # Payouts
    withdrawals,
    batches,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Sale Events ====================
api_router.include_router(
    events.router,
    prefix="/events",
    tags=["Events"]
)

# ==================== Affiliates ====================
api_router.include_router(
    affiliates.router,
    prefix="/affiliates",
    tags=["Affiliates"]
)

# ==================== Commissions ====================
api_router.include_router(
    commissions.router,
    prefix="/commissions",
    tags=["Commissions"]
)

# ==================== Withdrawals ====================
api_router.include_router(
    withdrawals.router,
    prefix="/withdrawals",
    tags=["Withdrawals"]
)

# ==================== Payout Batches ====================
api_router.include_router(
    batches.router,
    prefix="/batches",
    tags=["Payout Batches"]
)
