"""
Currency normalization to USD.

All ledger math runs in USD. Amounts are converted exactly once, when a
commission is recorded, using a rate table loaded from settings at
start-up:

    rates = RateTable.from_settings()
    normalizer = CurrencyNormalizer(rates)
    normalizer.normalize(Decimal("1400"), "GHS")   # Decimal("100.00")

Rates are units of local currency per 1 USD.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from affiliate_payouts.config import settings
from affiliate_payouts.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"
CENT = Decimal("0.01")


def quantize_money(value) -> Decimal:
    """Round to cents, half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_code(currency: Optional[str]) -> str:
    if not currency or not str(currency).strip():
        raise ValidationError("Currency code is required")
    return str(currency).strip().upper()


class UnknownCurrencyPolicy:
    REJECT = "reject"
    PASS_THROUGH = "pass_through"


class RateTable:
    """Immutable ISO code -> units-per-USD mapping."""

    def __init__(self, rates: Mapping[str, Decimal]):
        cleaned = {}
        for code, rate in rates.items():
            rate = Decimal(str(rate))
            if rate <= 0:
                raise ValueError(f"Exchange rate for {code} must be positive, got {rate}")
            cleaned[normalize_code(code)] = rate
        cleaned.pop(BASE_CURRENCY, None)
        self._rates = MappingProxyType(cleaned)

    @classmethod
    def from_settings(cls) -> "RateTable":
        return cls(settings.CURRENCY_RATES)

    def get(self, currency: str) -> Optional[Decimal]:
        if currency == BASE_CURRENCY:
            return Decimal("1")
        return self._rates.get(currency)

    def supports(self, currency: str) -> bool:
        return currency == BASE_CURRENCY or currency in self._rates

    @property
    def currencies(self) -> list[str]:
        return [BASE_CURRENCY] + sorted(self._rates)

    def as_dict(self) -> dict[str, Decimal]:
        return dict(self._rates)


class CurrencyNormalizer:
    """Pure conversion between local currencies and USD."""

    def __init__(self, rates: Optional[RateTable] = None, unknown_policy: Optional[str] = None):
        self.rates = rates or default_rate_table()
        self.unknown_policy = unknown_policy or settings.UNKNOWN_CURRENCY_POLICY

    def normalize(self, amount, currency: str) -> Decimal:
        """Convert an amount in ``currency`` to USD, rounded to cents."""
        code = normalize_code(currency)
        amount = Decimal(str(amount))

        rate = self.rates.get(code)
        if rate is None:
            if self.unknown_policy == UnknownCurrencyPolicy.PASS_THROUGH:
                logger.warning(f"Unknown currency {code}, treating amount {amount} as USD")
                return quantize_money(amount)
            raise ValidationError(
                f"Unsupported currency: {code}",
                {"currency": code, "supported": self.rates.currencies},
            )

        return quantize_money(amount / rate)

    def to_local(self, amount_usd, currency: str) -> Tuple[Decimal, Decimal]:
        """Convert USD to ``currency``. Returns (amount_local, exchange_rate)."""
        code = normalize_code(currency)
        rate = self.rates.get(code)
        if rate is None:
            raise ValidationError(
                f"Unsupported payout currency: {code}",
                {"currency": code, "supported": self.rates.currencies},
            )
        return quantize_money(Decimal(str(amount_usd)) * rate), rate

    def validate_currency(self, currency: str) -> str:
        """Return the normalized code if it is in the rate table."""
        code = normalize_code(currency)
        if not self.rates.supports(code):
            raise ValidationError(
                f"Unsupported currency: {code}",
                {"currency": code, "supported": self.rates.currencies},
            )
        return code


_default_rates: Optional[RateTable] = None


def default_rate_table() -> RateTable:
    """Rate table built once from settings."""
    global _default_rates
    if _default_rates is None:
        _default_rates = RateTable.from_settings()
    return _default_rates
