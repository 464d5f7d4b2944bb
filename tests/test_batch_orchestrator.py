"""Batch assembly, submission, retry and manual reconciliation."""
import re
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from affiliate_payouts.core.events import EventType
from affiliate_payouts.core.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from affiliate_payouts.models.audit_log import PayoutAuditAction
from affiliate_payouts.services.batch_orchestrator import BatchOrchestrator

from tests.factories import MOMO_DETAILS


async def _batch_with(orchestrator, *withdrawals, provider="PAYSTACK", currency="USD"):
    batch = await orchestrator.create_batch(provider, currency)
    await orchestrator.add_approved_withdrawals(batch.id, [w.id for w in withdrawals])
    return await orchestrator.get(batch.id)


class TestAssembly:

    async def test_new_batch_is_draft(self, orchestrator):
        batch = await orchestrator.create_batch("paystack", "usd")

        assert batch.status == "DRAFT"
        assert batch.provider == "PAYSTACK"
        assert batch.currency == "USD"
        assert re.fullmatch(r"BATCH-\d{8}-[A-Z0-9]{4}", batch.batch_reference)
        assert batch.total_withdrawals == 0

    async def test_unknown_provider_or_currency(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.create_batch("PAYPAL", "USD")
        with pytest.raises(ValidationError):
            await orchestrator.create_batch("PAYSTACK", "JPY")

    async def test_adding_withdrawals_makes_batch_ready(self, orchestrator, withdrawals, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await approved_withdrawal(affiliate_id, 40)
        batch = await orchestrator.create_batch("PAYSTACK", "USD")

        items = await orchestrator.add_approved_withdrawals(batch.id)

        assert len(items) == 1
        assert items[0].item_status == "PENDING"
        assert items[0].reference == withdrawal.reference
        batch = await orchestrator.get(batch.id)
        assert batch.status == "READY"
        assert batch.total_withdrawals == 1
        assert batch.total_amount_usd == Decimal("40.00")

        withdrawal = await withdrawals.get(withdrawal.id)
        assert withdrawal.status == "PROCESSING"
        assert withdrawal.batch_id == batch.id
        assert withdrawal.provider == "PAYSTACK"

    async def test_batches_are_single_provider_and_currency(self, orchestrator, withdrawals, fund,
                                                            approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 200)
        usd = await approved_withdrawal(affiliate_id, 20)
        ghs = await approved_withdrawal(affiliate_id, 30, currency="GHS")
        kora = await approved_withdrawal(affiliate_id, 40, provider="KORA")
        batch = await orchestrator.create_batch("PAYSTACK", "USD")

        items = await orchestrator.add_approved_withdrawals(batch.id)

        assert [item.withdrawal_id for item in items] == [usd.id]
        assert (await withdrawals.get(ghs.id)).status == "APPROVED"
        assert (await withdrawals.get(kora.id)).status == "APPROVED"

    async def test_explicit_ineligible_id_changes_nothing(self, orchestrator, withdrawals, fund,
                                                          approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 200)
        eligible = await approved_withdrawal(affiliate_id, 20)
        other_currency = await approved_withdrawal(affiliate_id, 30, currency="GHS")
        batch = await orchestrator.create_batch("PAYSTACK", "USD")

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.add_approved_withdrawals(batch.id, [eligible.id, other_currency.id])

        assert exc_info.value.details["withdrawal_ids"] == [str(other_currency.id)]
        assert (await orchestrator.get(batch.id)).status == "DRAFT"
        assert (await withdrawals.get(eligible.id)).status == "APPROVED"

    async def test_pending_withdrawals_are_not_batched(self, orchestrator, withdrawals, fund):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        await withdrawals.create_request(
            user_id=affiliate_id,
            amount_usd=Decimal("20"),
            payout_channel="mobile_money",
            account_details=MOMO_DETAILS,
            currency="USD",
        )
        batch = await orchestrator.create_batch("PAYSTACK", "USD")

        assert await orchestrator.add_approved_withdrawals(batch.id) == []
        assert (await orchestrator.get(batch.id)).status == "DRAFT"

    async def test_local_amount_is_carried_onto_item(self, orchestrator, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await approved_withdrawal(affiliate_id, 50, currency="GHS")

        batch = await _batch_with(orchestrator, withdrawal, currency="GHS")
        [item] = await orchestrator.items(batch.id)

        assert item.amount == Decimal("50.00")
        assert item.amount_local == Decimal("700.00")
        assert item.currency == "GHS"
        assert batch.total_amount_local == Decimal("700.00")

    async def test_remove_withdrawal_returns_it_to_approved(self, orchestrator, withdrawals, fund,
                                                            approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await approved_withdrawal(affiliate_id, 40)
        batch = await _batch_with(orchestrator, withdrawal)

        batch = await orchestrator.remove_withdrawal(batch.id, withdrawal.id)

        assert batch.status == "DRAFT"
        assert batch.total_withdrawals == 0
        assert batch.total_amount_usd == Decimal("0.00")
        withdrawal = await withdrawals.get(withdrawal.id)
        assert withdrawal.status == "APPROVED"
        assert withdrawal.batch_id is None
        trail = await withdrawals.get_audit_trail(withdrawal.id)
        assert trail[-1].action == PayoutAuditAction.REMOVED_FROM_BATCH

    async def test_remove_unknown_withdrawal(self, orchestrator):
        batch = await orchestrator.create_batch("PAYSTACK", "USD")
        with pytest.raises(NotFoundError):
            await orchestrator.remove_withdrawal(batch.id, uuid.uuid4())

    async def test_delete_batch_releases_withdrawals(self, orchestrator, withdrawals, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        first = await approved_withdrawal(affiliate_id, 20)
        second = await approved_withdrawal(affiliate_id, 30)
        batch = await _batch_with(orchestrator, first, second)

        await orchestrator.delete_batch(batch.id)

        with pytest.raises(NotFoundError):
            await orchestrator.get(batch.id)
        for withdrawal_id in (first.id, second.id):
            withdrawal = await withdrawals.get(withdrawal_id)
            assert withdrawal.status == "APPROVED"
            assert withdrawal.batch_id is None

        replacement = await orchestrator.create_batch("PAYSTACK", "USD")
        assert len(await orchestrator.add_approved_withdrawals(replacement.id)) == 2

    async def test_submitted_batch_is_not_editable(self, orchestrator, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await approved_withdrawal(affiliate_id, 40)
        batch = await _batch_with(orchestrator, withdrawal)
        await orchestrator.submit_batch(batch.id)

        with pytest.raises(StateConflictError):
            await orchestrator.remove_withdrawal(batch.id, withdrawal.id)
        with pytest.raises(StateConflictError):
            await orchestrator.delete_batch(batch.id)
        with pytest.raises(StateConflictError):
            await orchestrator.add_approved_withdrawals(batch.id)


class TestSubmission:

    async def test_successful_payout(self, orchestrator, ledger, withdrawals, adapter, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        commission = await fund(affiliate_id, 50)
        withdrawal = await approved_withdrawal(affiliate_id, 50)
        batch = await _batch_with(orchestrator, withdrawal)

        batch = await orchestrator.submit_batch(batch.id)

        assert batch.status == "COMPLETED"
        assert batch.successful_count == 1
        assert batch.failed_count == 0
        assert batch.completed_at is not None

        withdrawal = await withdrawals.get(withdrawal.id)
        assert withdrawal.status == "PAID"
        assert withdrawal.provider_reference == f"TRF_{withdrawal.reference}"
        assert withdrawal.attempt_count == 1
        assert withdrawal.paid_at is not None

        commission = await ledger.get(commission.id)
        assert commission.status == "paid"
        assert await ledger.available_balance(affiliate_id) == Decimal("0.00")
        assert adapter.calls == [(withdrawal.reference, Decimal("50.00"), "USD")]

    async def test_draft_batch_cannot_be_submitted(self, orchestrator):
        batch = await orchestrator.create_batch("PAYSTACK", "USD")
        with pytest.raises(StateConflictError):
            await orchestrator.submit_batch(batch.id)

    async def test_completed_batch_cannot_be_resubmitted(self, orchestrator, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        batch = await _batch_with(orchestrator, await approved_withdrawal(affiliate_id, 50))
        await orchestrator.submit_batch(batch.id)

        with pytest.raises(StateConflictError):
            await orchestrator.submit_batch(batch.id)
        with pytest.raises(StateConflictError):
            await orchestrator.reprocess(batch.id)

    async def test_partially_completed_batch_cannot_be_resubmitted(self, orchestrator, adapter, fund,
                                                                   approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        failing = await approved_withdrawal(affiliate_id, 20)
        paid = await approved_withdrawal(affiliate_id, 30)
        adapter.fail = {failing.reference}
        batch = await _batch_with(orchestrator, failing, paid)
        batch = await orchestrator.submit_batch(batch.id)
        batch_id, completed_at = batch.id, batch.completed_at
        assert batch.status == "PARTIALLY_COMPLETED"
        calls_before = len(adapter.calls)

        status_events = AsyncMock()
        orchestrator.events.subscribe(EventType.BATCH_STATUS_CHANGED, status_events)
        with pytest.raises(StateConflictError) as exc_info:
            await orchestrator.submit_batch(batch_id)

        assert exc_info.value.details["current_status"] == "PARTIALLY_COMPLETED"
        status_events.assert_not_awaited()
        assert len(adapter.calls) == calls_before
        batch = await orchestrator.get(batch_id)
        assert batch.status == "PARTIALLY_COMPLETED"
        assert batch.completed_at == completed_at
        trail = await orchestrator.audit.get_batch_trail(batch_id, include_items=False)
        assert [entry.action for entry in trail].count(PayoutAuditAction.BATCH_PROCESSED) == 1

    async def test_unregistered_provider_leaves_batch_ready(self, orchestrator, registry, fund,
                                                            approved_withdrawal):
        registry.unregister("KORA")
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        batch = await _batch_with(orchestrator, await approved_withdrawal(affiliate_id, 20), provider="KORA")

        with pytest.raises(ValidationError):
            await orchestrator.submit_batch(batch.id)
        assert (await orchestrator.get(batch.id)).status == "READY"

    async def test_timeout_then_reprocess(self, orchestrator, ledger, withdrawals, adapter, fund,
                                          approved_withdrawal):
        """One of three transfers times out; reprocessing pays it without touching the others."""
        affiliates = [uuid.uuid4() for _ in range(3)]
        batch_withdrawals = []
        for affiliate_id in affiliates:
            await fund(affiliate_id, 20)
            batch_withdrawals.append(await approved_withdrawal(affiliate_id, 20))
        w1, w2, w3 = batch_withdrawals
        adapter.hang = {w2.reference}
        batch = await _batch_with(orchestrator, w1, w2, w3)

        batch = await orchestrator.submit_batch(batch.id)

        assert batch.status == "PARTIALLY_COMPLETED"
        assert batch.successful_count == 2
        assert batch.failed_count == 1
        w2 = await withdrawals.get(w2.id)
        assert w2.status == "FAILED"
        assert w2.failure_reason == "Provider timed out after 0.2s"
        assert await ledger.available_balance(affiliates[1]) == Decimal("20.00")

        adapter.heal()
        batch = await orchestrator.reprocess(batch.id)

        assert batch.status == "COMPLETED"
        assert batch.successful_count == 3
        assert batch.failed_count == 0
        items = {item.withdrawal_id: item for item in await orchestrator.items(batch.id)}
        assert items[w2.id].attempts == 2
        assert items[w1.id].attempts == 1
        assert [call[0] for call in adapter.calls].count(w1.reference) == 1
        assert (await withdrawals.get(w2.id)).status == "PAID"
        for affiliate_id in affiliates:
            assert await ledger.available_balance(affiliate_id) == Decimal("0.00")

    async def test_all_items_failing_fails_batch(self, orchestrator, adapter, withdrawals, fund,
                                                 approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        withdrawal = await approved_withdrawal(affiliate_id, 50)
        adapter.fail = {withdrawal.reference}
        batch = await _batch_with(orchestrator, withdrawal)

        batch = await orchestrator.submit_batch(batch.id)

        assert batch.status == "FAILED"
        assert batch.failed_count == 1
        withdrawal = await withdrawals.get(withdrawal.id)
        assert withdrawal.status == "FAILED"
        assert withdrawal.failure_reason == "Account name mismatch"
        with pytest.raises(StateConflictError):
            await orchestrator.reprocess(batch.id)

    async def test_failed_withdrawal_is_rebatched(self, orchestrator, ledger, adapter, withdrawals, fund,
                                                  approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        withdrawal = await approved_withdrawal(affiliate_id, 50)
        adapter.fail = {withdrawal.reference}
        first = await _batch_with(orchestrator, withdrawal)
        await orchestrator.submit_batch(first.id)

        adapter.heal()
        second = await orchestrator.create_batch("PAYSTACK", "USD")
        items = await orchestrator.add_approved_withdrawals(second.id)
        assert [item.withdrawal_id for item in items] == [withdrawal.id]

        second = await orchestrator.submit_batch(second.id)

        assert second.status == "COMPLETED"
        withdrawal = await withdrawals.get(withdrawal.id)
        assert withdrawal.status == "PAID"
        assert withdrawal.batch_id == second.id
        assert withdrawal.attempt_count == 2
        assert await ledger.available_balance(affiliate_id) == Decimal("0.00")
        assert (await orchestrator.get(first.id)).status == "FAILED"

    async def test_failed_withdrawal_not_rebatched_without_balance(self, orchestrator, ledger, adapter,
                                                                   withdrawals, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        withdrawal = await approved_withdrawal(affiliate_id, 50)
        adapter.fail = {withdrawal.reference}
        await orchestrator.submit_batch((await _batch_with(orchestrator, withdrawal)).id)

        # The released balance is spent by a new request
        await approved_withdrawal(affiliate_id, 45, currency="GHS")
        second = await orchestrator.create_batch("PAYSTACK", "USD")

        assert await orchestrator.add_approved_withdrawals(second.id) == []
        assert (await withdrawals.get(withdrawal.id)).status == "FAILED"

    async def test_explicit_rebatch_without_balance_changes_nothing(self, orchestrator, ledger, adapter,
                                                                    withdrawals, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        failed = await approved_withdrawal(affiliate_id, 50)
        adapter.fail = {failed.reference}
        await orchestrator.submit_batch((await _batch_with(orchestrator, failed)).id)

        other_id = uuid.uuid4()
        await fund(other_id, 30)
        ready = await approved_withdrawal(other_id, 30)
        await approved_withdrawal(affiliate_id, 45)
        second = await orchestrator.create_batch("PAYSTACK", "USD")
        failed_id, ready_id, second_id = failed.id, ready.id, second.id

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await orchestrator.add_approved_withdrawals(second_id, [ready_id, failed_id])

        assert exc_info.value.details["available_usd"] == "5.00"
        assert exc_info.value.details["withdrawal_ids"] == [str(failed_id)]
        assert await orchestrator.items(second_id) == []
        second = await orchestrator.get(second_id)
        assert second.status == "DRAFT"
        assert second.total_withdrawals == 0
        assert (await withdrawals.get(ready_id)).status == "APPROVED"
        assert (await withdrawals.get(failed_id)).status == "FAILED"

    async def test_failed_item_of_partial_batch_stays_with_it(self, orchestrator, adapter, withdrawals, fund,
                                                              approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        failing = await approved_withdrawal(affiliate_id, 20)
        paid = await approved_withdrawal(affiliate_id, 30)
        adapter.fail = {failing.reference}
        first = await orchestrator.submit_batch((await _batch_with(orchestrator, failing, paid)).id)
        assert first.status == "PARTIALLY_COMPLETED"

        adapter.heal()
        second = await orchestrator.create_batch("PAYSTACK", "USD")
        failing_id, first_id, second_id = failing.id, first.id, second.id

        assert await orchestrator.add_approved_withdrawals(second_id) == []
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.add_approved_withdrawals(second_id, [failing_id])

        assert exc_info.value.details["withdrawal_ids"] == [str(failing_id)]
        failing = await withdrawals.get(failing_id)
        assert failing.status == "FAILED"
        assert failing.batch_id == first_id
        assert await orchestrator.items(second_id) == []

    async def test_totals_committed_with_each_item(self, orchestrator, session_factory, fund,
                                                   approved_withdrawal, monkeypatch):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        first = await approved_withdrawal(affiliate_id, "12.34")
        second = await approved_withdrawal(affiliate_id, "20.01")
        batch = await orchestrator.create_batch("PAYSTACK", "USD")
        batch_id, ids = batch.id, [first.id, second.id]

        log = orchestrator.audit.log
        attached = []

        async def flaky_log(action, **kwargs):
            if action == PayoutAuditAction.ADDED_TO_BATCH:
                attached.append(kwargs["withdrawal_id"])
                if len(attached) == 2:
                    raise RuntimeError("audit store unavailable")
            return await log(action, **kwargs)

        monkeypatch.setattr(orchestrator.audit, "log", flaky_log)
        with pytest.raises(RuntimeError):
            await orchestrator.add_approved_withdrawals(batch_id, ids)

        async with session_factory() as session:
            fresh = BatchOrchestrator(session)
            items = await fresh.items(batch_id)
            stored = await fresh.get(batch_id)
            assert [item.withdrawal_id for item in items] == attached[:1]
            assert stored.total_withdrawals == 1
            assert stored.total_amount_usd == items[0].amount

    async def test_provider_errors_are_recorded_per_item(self, orchestrator, adapter, withdrawals, fund,
                                                         approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        rejected = await approved_withdrawal(affiliate_id, 20)
        crashed = await approved_withdrawal(affiliate_id, 30)
        paid = await approved_withdrawal(affiliate_id, 40)
        adapter.provider_error = {rejected.reference}
        adapter.crash = {crashed.reference}
        batch = await _batch_with(orchestrator, rejected, crashed, paid)

        batch = await orchestrator.submit_batch(batch.id)

        assert batch.status == "PARTIALLY_COMPLETED"
        assert (await withdrawals.get(rejected.id)).failure_reason == "Provider returned 503"
        assert (await withdrawals.get(crashed.id)).failure_reason == "Unexpected provider error: connection reset"
        assert (await withdrawals.get(paid.id)).status == "PAID"

    async def test_reprocess_respects_attempt_limit(self, orchestrator, adapter, withdrawals, fund,
                                                    approved_withdrawal):
        orchestrator.max_attempts = 1
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        failing = await approved_withdrawal(affiliate_id, 20)
        ok = await approved_withdrawal(affiliate_id, 30)
        adapter.fail = {failing.reference}
        batch = await _batch_with(orchestrator, failing, ok)
        await orchestrator.submit_batch(batch.id)
        adapter.heal()

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.reprocess(batch.id)

        assert exc_info.value.details["max_attempts"] == 1
        assert (await orchestrator.get(batch.id)).status == "PARTIALLY_COMPLETED"
        assert (await withdrawals.get(failing.id)).status == "FAILED"

    async def test_totals_match_items(self, orchestrator, adapter, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        first = await approved_withdrawal(affiliate_id, "12.34")
        second = await approved_withdrawal(affiliate_id, "20.01")
        adapter.fail = {second.reference}
        batch = await _batch_with(orchestrator, first, second)

        batch = await orchestrator.submit_batch(batch.id)
        items = await orchestrator.items(batch.id)

        assert batch.total_amount_usd == sum(item.amount for item in items) == Decimal("32.35")
        assert batch.successful_count + batch.failed_count == batch.total_withdrawals == len(items)


class TestManualReconciliation:

    async def test_recording_outcomes_finalizes_batch(self, orchestrator, ledger, withdrawals, adapter, fund,
                                                      approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        first = await approved_withdrawal(affiliate_id, 20)
        second = await approved_withdrawal(affiliate_id, 30)
        batch = await _batch_with(orchestrator, first, second)

        first = await orchestrator.record_item_outcome(first.id, True, provider_reference="BULK-001")

        assert first.status == "PAID"
        assert first.provider_reference == "BULK-001"
        assert (await orchestrator.get(batch.id)).status == "PROCESSING"

        second = await orchestrator.record_item_outcome(second.id, False, failure_reason="Invalid account")

        assert second.status == "FAILED"
        batch = await orchestrator.get(batch.id)
        assert batch.status == "PARTIALLY_COMPLETED"
        assert batch.successful_count == 1
        assert adapter.calls == []
        assert await ledger.available_balance(affiliate_id) == Decimal("80.00")

    async def test_failure_requires_reason(self, orchestrator, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await approved_withdrawal(affiliate_id, 20)
        await _batch_with(orchestrator, withdrawal)

        with pytest.raises(ValidationError):
            await orchestrator.record_item_outcome(withdrawal.id, False, failure_reason=" ")

    async def test_unbatched_withdrawal_is_conflict(self, orchestrator, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        withdrawal = await approved_withdrawal(affiliate_id, 20)

        with pytest.raises(StateConflictError):
            await orchestrator.record_item_outcome(withdrawal.id, True, provider_reference="X")

    async def test_outcome_recorded_once(self, orchestrator, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        first = await approved_withdrawal(affiliate_id, 20)
        second = await approved_withdrawal(affiliate_id, 30)
        await _batch_with(orchestrator, first, second)
        await orchestrator.record_item_outcome(first.id, True, provider_reference="BULK-001")

        with pytest.raises(StateConflictError):
            await orchestrator.record_item_outcome(first.id, True, provider_reference="BULK-002")


class TestExport:

    async def test_export_stores_snapshot(self, orchestrator, fund, approved_withdrawal):
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 100)
        batch = await _batch_with(orchestrator, await approved_withdrawal(affiliate_id, 50, currency="GHS"),
                                  currency="GHS")

        export = await orchestrator.export(batch.id, layout="provider")

        assert export.row_count == 1
        assert export.errors == []
        assert "70000,RCP_test123," in export.csv
        batch = await orchestrator.get(batch.id)
        assert batch.csv_content == export.csv
        assert batch.csv_generated_at is not None

    async def test_unknown_layout(self, orchestrator):
        batch = await orchestrator.create_batch("PAYSTACK", "USD")
        with pytest.raises(ValidationError):
            await orchestrator.export(batch.id, layout="xlsx")


class TestEvents:

    async def test_batch_status_sequence(self, orchestrator, bus, fund, approved_withdrawal):
        seen = []
        bus.subscribe(EventType.BATCH_STATUS_CHANGED,
                      lambda event: seen.append((event.data["previous_status"], event.data["status"])))
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        batch = await _batch_with(orchestrator, await approved_withdrawal(affiliate_id, 50))

        await orchestrator.submit_batch(batch.id)

        assert seen == [
            (None, "DRAFT"),
            ("DRAFT", "READY"),
            ("READY", "PROCESSING"),
            ("PROCESSING", "COMPLETED"),
        ]

    async def test_payout_emits_balance_change(self, orchestrator, bus, fund, approved_withdrawal):
        handler = AsyncMock()
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        batch = await _batch_with(orchestrator, await approved_withdrawal(affiliate_id, 50))
        bus.subscribe(EventType.BALANCE_CHANGED, handler)

        await orchestrator.submit_batch(batch.id)

        reasons = [call.args[0].data["reason"] for call in handler.await_args_list]
        assert reasons == ["withdrawal_paid"]

    async def test_failing_subscriber_does_not_break_submission(self, orchestrator, bus, fund,
                                                                approved_withdrawal):
        def broken(event):
            raise RuntimeError("dashboard offline")

        bus.subscribe(EventType.BATCH_STATUS_CHANGED, broken)
        bus.subscribe(EventType.BALANCE_CHANGED, AsyncMock(side_effect=RuntimeError("socket closed")))
        affiliate_id = uuid.uuid4()
        await fund(affiliate_id, 50)
        batch = await _batch_with(orchestrator, await approved_withdrawal(affiliate_id, 50))

        batch = await orchestrator.submit_batch(batch.id)

        assert batch.status == "COMPLETED"
