from affiliate_payouts.models.affiliate import AffiliateAccount
from affiliate_payouts.models.commission import Commission, CommissionSource
from affiliate_payouts.models.withdrawal import WithdrawalRequest, PayoutChannel
from affiliate_payouts.models.payout_batch import PayoutBatch, BatchItem
from affiliate_payouts.models.audit_log import PayoutAuditLog, PayoutAuditAction

__all__ = [
    "AffiliateAccount",
    "Commission",
    "CommissionSource",
    "WithdrawalRequest",
    "PayoutChannel",
    "PayoutBatch",
    "BatchItem",
    "PayoutAuditLog",
    "PayoutAuditAction",
]
