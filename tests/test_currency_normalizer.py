from decimal import Decimal

import pytest

from affiliate_payouts.core.exceptions import ValidationError
from affiliate_payouts.services.currency_normalizer import (
    CurrencyNormalizer,
    RateTable,
    UnknownCurrencyPolicy,
    quantize_money,
)


@pytest.fixture
def rates():
    return RateTable({"GHS": "14", "NGN": "1600", "kes": "129.44", "USD": "1"})


class TestRateTable:

    def test_codes_are_normalized_and_usd_is_implicit(self, rates):
        assert rates.get("KES") == Decimal("129.44")
        assert rates.get("USD") == Decimal("1")
        assert "USD" not in rates.as_dict()
        assert rates.currencies == ["USD", "GHS", "KES", "NGN"]

    def test_non_positive_rate_rejected(self):
        with pytest.raises(ValueError):
            RateTable({"GHS": "0"})

    def test_table_is_read_only(self, rates):
        with pytest.raises(TypeError):
            rates._rates["EUR"] = Decimal("0.92")


class TestNormalize:

    def test_usd_passes_through(self, rates):
        normalizer = CurrencyNormalizer(rates)
        assert normalizer.normalize(Decimal("12.50"), "USD") == Decimal("12.50")

    def test_known_currency_divides_by_rate(self, rates):
        normalizer = CurrencyNormalizer(rates)
        assert normalizer.normalize(1400, "GHS") == Decimal("100.00")
        assert normalizer.normalize(Decimal("1000"), " ngn ") == Decimal("0.63")

    def test_rounds_half_up_to_cents(self):
        assert quantize_money("0.125") == Decimal("0.13")
        assert quantize_money("2.344") == Decimal("2.34")

    def test_unknown_currency_rejected_by_default(self, rates):
        normalizer = CurrencyNormalizer(rates, unknown_policy=UnknownCurrencyPolicy.REJECT)
        with pytest.raises(ValidationError) as exc_info:
            normalizer.normalize(100, "JPY")
        assert exc_info.value.details["currency"] == "JPY"

    def test_unknown_currency_pass_through(self, rates):
        normalizer = CurrencyNormalizer(rates, unknown_policy=UnknownCurrencyPolicy.PASS_THROUGH)
        assert normalizer.normalize(Decimal("42"), "JPY") == Decimal("42.00")

    def test_blank_currency_rejected(self, rates):
        with pytest.raises(ValidationError):
            CurrencyNormalizer(rates).normalize(10, "  ")


class TestToLocal:

    def test_converts_usd_to_payout_currency(self, rates):
        amount_local, rate = CurrencyNormalizer(rates).to_local(Decimal("100"), "GHS")
        assert amount_local == Decimal("1400.00")
        assert rate == Decimal("14")

    def test_unknown_payout_currency_always_rejected(self, rates):
        normalizer = CurrencyNormalizer(rates, unknown_policy=UnknownCurrencyPolicy.PASS_THROUGH)
        with pytest.raises(ValidationError):
            normalizer.to_local(Decimal("10"), "JPY")
