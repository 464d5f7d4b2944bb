"""
Payout provider adapters.

The engine never speaks a provider's wire protocol. Each rail (Paystack,
Kora, ...) is an externally implemented ``ProviderAdapter`` registered by
provider code:

    registry = ProviderRegistry()
    registry.register("PAYSTACK", PaystackTransferAdapter(secret_key))

``submit_transfer`` must be idempotent on ``reference``: calling it again
with a reference the provider has already seen returns the original
outcome instead of instructing a second transfer.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from affiliate_payouts.core.exceptions import ValidationError


@dataclass
class TransferResult:
    """Outcome of one transfer instruction."""
    success: bool
    provider_reference: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def ok(cls, provider_reference: str) -> "TransferResult":
        return cls(success=True, provider_reference=provider_reference)

    @classmethod
    def failed(cls, reason: str, provider_reference: Optional[str] = None) -> "TransferResult":
        return cls(success=False, provider_reference=provider_reference, failure_reason=reason)


class ProviderAdapter(ABC):
    """Abstract base class for payout rails."""

    code: str = ""

    @abstractmethod
    async def submit_transfer(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        account_details: Dict[str, Any],
    ) -> TransferResult:
        """
        Instruct one transfer.

        Args:
            reference: Withdrawal reference, the idempotency key
            amount: Amount in the payout currency (major units)
            currency: ISO currency code
            account_details: Channel-specific destination (bank or mobile money)

        Returns:
            TransferResult. Adapters may also raise ProviderError; the
            orchestrator records either as a failed item.
        """
        pass


class ProviderRegistry:
    """Provider code -> adapter."""

    def __init__(self, adapters: Optional[Dict[str, ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for code, adapter in (adapters or {}).items():
            self.register(code, adapter)

    def register(self, code: str, adapter: ProviderAdapter) -> None:
        self._adapters[code.strip().upper()] = adapter

    def unregister(self, code: str) -> None:
        self._adapters.pop(code.strip().upper(), None)

    def get(self, code: str) -> ProviderAdapter:
        adapter = self._adapters.get(code.strip().upper())
        if adapter is None:
            raise ValidationError(
                f"No payout adapter registered for provider {code}",
                {"provider": code, "registered": sorted(self._adapters)},
            )
        return adapter


# Process-wide registry; deployments register their adapters at start-up
provider_registry = ProviderRegistry()
