"""Withdrawal request creation and admin review."""
import asyncio
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from affiliate_payouts.config import settings
from affiliate_payouts.core.exceptions import (
    InsufficientBalanceError,
    StateConflictError,
    ValidationError,
)
from affiliate_payouts.services.commission_ledger import CommissionLedger
from affiliate_payouts.services.withdrawal_service import (
    WithdrawalRequestManager,
    mask_account,
    validate_account_details,
)

from tests.factories import BANK_DETAILS, MOMO_DETAILS


async def _request(withdrawals, affiliate_id, amount, **kwargs):
    return await withdrawals.create_request(
        user_id=affiliate_id,
        amount_usd=Decimal(str(amount)),
        payout_channel=kwargs.pop("channel", "bank"),
        account_details=kwargs.pop("details", BANK_DETAILS),
        **kwargs,
    )


class TestCreateRequest:

    async def test_ghs_commission_funds_withdrawal(self, ledger, withdrawals):
        """1400 GHS at 14/USD funds a $100 withdrawal; a further $50 is refused."""
        affiliate_id = uuid.uuid4()
        commission, _ = await ledger.record_commission(
            affiliate_id=affiliate_id,
            source="referral_membership",
            amount=Decimal("1400"),
            currency="GHS",
            rate=Decimal("0.25"),
            linked_payment_id="pay_ghs_1",
        )
        assert commission.amount_usd == Decimal("100.00")
        await ledger.approve(commission.id)

        withdrawal = await _request(withdrawals, affiliate_id, 100)
        assert withdrawal.status == "PENDING"
        assert re.fullmatch(r"WD-\d{8}-[A-Z0-9]{6}", withdrawal.reference)
        assert withdrawal.currency == "GHS"
        assert withdrawal.amount_local == Decimal("1400.00")
        assert withdrawal.exchange_rate == Decimal("14")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await _request(withdrawals, affiliate_id, 50)
        assert exc_info.value.details["available_usd"] == "0.00"

    async def test_below_minimum_rejected(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)

        with pytest.raises(ValidationError) as exc_info:
            await _request(withdrawals, affiliate_id, "7.99")
        assert exc_info.value.details["minimum_usd"] == "8.00"

    async def test_duplicate_open_request_rejected(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        first = await _request(withdrawals, affiliate_id, 20)
        first_reference = first.reference

        with pytest.raises(StateConflictError) as exc_info:
            await _request(withdrawals, affiliate_id, 20)
        assert exc_info.value.details["reference"] == first_reference

    async def test_same_amount_allowed_after_rejection(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        first = await _request(withdrawals, affiliate_id, 20)
        await withdrawals.reject(first.id, "Wrong account")

        second = await _request(withdrawals, affiliate_id, 20)
        assert second.id != first.id

    async def test_missing_account_details(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)

        with pytest.raises(ValidationError) as exc_info:
            await _request(withdrawals, affiliate_id, 20, channel="mobile_money", details={"network_code": "MTN"})
        assert exc_info.value.details["missing_fields"] == ["mobile_number"]

    async def test_unknown_channel_provider_and_currency(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)

        with pytest.raises(ValidationError):
            await _request(withdrawals, affiliate_id, 20, channel="crypto")
        with pytest.raises(ValidationError):
            await _request(withdrawals, affiliate_id, 20, provider="PAYPAL")
        with pytest.raises(ValidationError):
            await _request(withdrawals, affiliate_id, 20, currency="JPY")

    async def test_provider_code_normalized(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)

        withdrawal = await _request(withdrawals, affiliate_id, 20, provider="kora", details=MOMO_DETAILS,
                                    channel="mobile_money")
        assert withdrawal.provider == "KORA"

    async def test_withdrawal_window(self, withdrawals, fund, monkeypatch):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        other_day = (datetime.now(timezone.utc).weekday() + 1) % 7
        monkeypatch.setattr(settings, "WITHDRAWAL_WEEKDAY", other_day)

        with pytest.raises(ValidationError) as exc_info:
            await _request(withdrawals, affiliate_id, 20)
        assert exc_info.value.details["withdrawal_weekday"] == other_day

    async def test_concurrent_requests_cannot_overdraw(self, session_factory, normalizer, bus, locks, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)

        async def request(amount):
            async with session_factory() as session:
                ledger = CommissionLedger(session, normalizer=normalizer, events=bus, locks=locks)
                manager = WithdrawalRequestManager(session, ledger=ledger, normalizer=normalizer,
                                                   events=bus, locks=locks)
                withdrawal = await _request(manager, affiliate_id, amount)
                return withdrawal.reference

        results = await asyncio.gather(request(60), request(70), return_exceptions=True)

        succeeded = [r for r in results if isinstance(r, str)]
        refused = [r for r in results if isinstance(r, InsufficientBalanceError)]
        assert len(succeeded) == 1
        assert len(refused) == 1

        async with session_factory() as session:
            ledger = CommissionLedger(session, normalizer=normalizer, events=bus, locks=locks)
            assert await ledger.available_balance(affiliate_id) >= Decimal("0")


class TestReview:

    async def test_approve_records_actor(self, withdrawals, fund):
        affiliate_id, admin_id = uuid.uuid4(), uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await _request(withdrawals, affiliate_id, 40)

        withdrawal = await withdrawals.approve(withdrawal.id, actor_id=admin_id)

        assert withdrawal.status == "APPROVED"
        assert withdrawal.approved_by == admin_id
        trail = await withdrawals.get_audit_trail(withdrawal.id)
        assert [entry.action for entry in trail] == ["CREATED", "APPROVED"]
        assert trail[1].actor_id == admin_id

    async def test_approve_rechecks_balance(self, ledger, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 30, payment_id="keep")
        pending, _ = await ledger.record_commission(
            affiliate_id=affiliate_id,
            source="learner_renewal",
            amount=Decimal("70"),
            currency="USD",
            rate=Decimal("0.1"),
            linked_payment_id="later_refunded",
        )
        await ledger.approve(pending.id)
        withdrawal = await _request(withdrawals, affiliate_id, 90)
        withdrawal_id = withdrawal.id

        # No engine operation withdraws an available commission, so a refund
        # clawback applied directly to the table stands in for it here
        refunded = await ledger.get(pending.id)
        refunded.status = "rejected"
        await withdrawals.db.commit()

        with pytest.raises(InsufficientBalanceError):
            await withdrawals.approve(withdrawal_id)
        withdrawal = await withdrawals.get(withdrawal_id)
        assert withdrawal.status == "PENDING"

    async def test_approve_excludes_own_reservation(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        withdrawal = await _request(withdrawals, affiliate_id, 50)

        withdrawal = await withdrawals.approve(withdrawal.id)
        assert withdrawal.status == "APPROVED"

    async def test_reject_releases_balance(self, ledger, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await _request(withdrawals, affiliate_id, 60)
        assert await ledger.available_balance(affiliate_id) == Decimal("40.00")

        withdrawal = await withdrawals.reject(withdrawal.id, "Suspicious activity")

        assert withdrawal.status == "REJECTED"
        assert withdrawal.rejection_reason == "Suspicious activity"
        assert await ledger.available_balance(affiliate_id) == Decimal("100.00")

    async def test_reject_requires_reason(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await _request(withdrawals, affiliate_id, 60)

        with pytest.raises(ValidationError):
            await withdrawals.reject(withdrawal.id, "  ")

    async def test_rejected_request_is_terminal(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await _request(withdrawals, affiliate_id, 60)
        await withdrawals.reject(withdrawal.id, "Duplicate")

        with pytest.raises(StateConflictError):
            await withdrawals.approve(withdrawal.id)


class TestQueries:

    async def test_stats(self, withdrawals, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        await _request(withdrawals, affiliate_id, 10)
        await approved_withdrawal(affiliate_id, 25)

        stats = await withdrawals.stats()

        assert stats["pending_count"] == 1
        assert stats["pending_amount_usd"] == Decimal("10.00")
        assert stats["approved_count"] == 1
        assert stats["approved_amount_usd"] == Decimal("25.00")
        assert stats["paid_this_week"] == 0

    async def test_list_by_status(self, withdrawals, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        await _request(withdrawals, affiliate_id, 10)
        approved = await approved_withdrawal(affiliate_id, 25)

        items, total = await withdrawals.list(status="APPROVED", unbatched=True)

        assert total == 1
        assert items[0].id == approved.id

    async def test_get_by_reference(self, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await _request(withdrawals, affiliate_id, 10)

        found = await withdrawals.get_by_reference(withdrawal.reference)
        assert found.id == withdrawal.id


class TestHelpers:

    def test_mask_account(self):
        assert mask_account({"account_number": "0123456789"}) == "****6789"
        assert mask_account({"mobile_number": "024"}) == "****"
        assert mask_account(None) == "****"

    def test_validate_account_details(self):
        assert validate_account_details("bank", BANK_DETAILS) == []
        assert validate_account_details("bank", {"bank_code": "058", "account_number": " "}) == [
            "account_number", "account_name",
        ]
