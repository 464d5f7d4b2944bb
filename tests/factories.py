"""Test data and an in-process payout provider."""
import asyncio
from decimal import Decimal
from typing import Dict, Optional, Set

from affiliate_payouts.core.exceptions import ProviderError
from affiliate_payouts.services.providers import ProviderAdapter, TransferResult

TEST_RATES = {
    "GHS": Decimal("14"),
    "NGN": Decimal("1600"),
    "KES": Decimal("129.44"),
    "EUR": Decimal("0.92"),
}

BANK_DETAILS = {
    "bank_code": "058",
    "account_number": "0123456789",
    "account_name": "Ama Mensah",
    "recipient_code": "RCP_test123",
}

MOMO_DETAILS = {
    "network_code": "MTN",
    "mobile_number": "0241234567",
    "account_name": "Kofi Boateng",
}


class FakeTransferAdapter(ProviderAdapter):
    """
    In-process provider. Succeeds unless the reference is configured to
    fail, hang past the timeout, raise a ProviderError or blow up.
    """

    def __init__(
        self,
        fail: Optional[Set[str]] = None,
        hang: Optional[Set[str]] = None,
        provider_error: Optional[Set[str]] = None,
        crash: Optional[Set[str]] = None,
    ):
        self.fail = fail or set()
        self.hang = hang or set()
        self.provider_error = provider_error or set()
        self.crash = crash or set()
        self.calls = []
        self.transfers: Dict[str, TransferResult] = {}

    async def submit_transfer(self, reference, amount, currency, account_details):
        self.calls.append((reference, amount, currency))
        if reference in self.transfers:
            return self.transfers[reference]
        if reference in self.hang:
            await asyncio.sleep(5)
        if reference in self.provider_error:
            raise ProviderError("Provider returned 503")
        if reference in self.crash:
            raise RuntimeError("connection reset")
        if reference in self.fail:
            return TransferResult.failed("Account name mismatch")

        result = TransferResult.ok(f"TRF_{reference}")
        self.transfers[reference] = result
        return result

    def heal(self):
        """Clear every configured failure."""
        self.fail.clear()
        self.hang.clear()
        self.provider_error.clear()
        self.crash.clear()

