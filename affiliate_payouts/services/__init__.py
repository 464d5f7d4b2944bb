# Services module
from affiliate_payouts.services.currency_normalizer import CurrencyNormalizer, RateTable
from affiliate_payouts.services.commission_ledger import CommissionLedger
from affiliate_payouts.services.withdrawal_service import WithdrawalRequestManager
from affiliate_payouts.services.audit_service import PayoutAuditService

# Payout rails
from affiliate_payouts.services.providers import ProviderAdapter, ProviderRegistry, TransferResult
from affiliate_payouts.services.batch_orchestrator import BatchOrchestrator

__all__ = [
    "CurrencyNormalizer",
    "RateTable",
    "CommissionLedger",
    "WithdrawalRequestManager",
    "PayoutAuditService",
    # Payout rails
    "ProviderAdapter",
    "ProviderRegistry",
    "TransferResult",
    "BatchOrchestrator",
]
