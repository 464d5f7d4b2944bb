"""
Batch Orchestrator

Groups approved withdrawals into single-(provider, currency) batches,
submits them to the provider one item at a time, and reconciles each
item's outcome:

    DRAFT --attach--> READY --submit--> PROCESSING --> COMPLETED
                                                   --> PARTIALLY_COMPLETED --reprocess--> PROCESSING
                                                   --> FAILED

A failed item never aborts the rest of the batch. The affiliate lock is
taken only while an item's outcome is applied, never across the provider
call. The in-process batch lock is held for the whole pass so that manual
reconciliation cannot interleave with a submission.
"""

import asyncio
import logging
import random
import string
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Tuple, Sequence

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_payouts.config import settings
from affiliate_payouts.core.events import EventBus, EventType, event_bus
from affiliate_payouts.core.exceptions import (
    ValidationError,
    NotFoundError,
    StateConflictError,
    InsufficientBalanceError,
    ProviderError,
)
from affiliate_payouts.core.locks import AffiliateLocks, KeyedLocks, affiliate_locks, batch_locks
from affiliate_payouts.core.state_machine import (
    BatchStatus,
    BatchItemStatus,
    WithdrawalStatus,
    transition,
)
from affiliate_payouts.models.audit_log import PayoutAuditAction
from affiliate_payouts.models.payout_batch import PayoutBatch, BatchItem
from affiliate_payouts.models.withdrawal import WithdrawalRequest
from affiliate_payouts.services.audit_service import PayoutAuditService
from affiliate_payouts.services.commission_ledger import CommissionLedger
from affiliate_payouts.services.csv_export import (
    ExportLayout,
    ExportResult,
    PROVIDER_RENDERERS,
    render_reconciliation_csv,
)
from affiliate_payouts.services.currency_normalizer import CurrencyNormalizer, quantize_money
from affiliate_payouts.services.providers import (
    ProviderAdapter,
    ProviderRegistry,
    TransferResult,
    provider_registry,
)
from affiliate_payouts.services.withdrawal_service import WithdrawalRequestManager, mask_account

logger = logging.getLogger(__name__)

EDITABLE_BATCH_STATUSES = [BatchStatus.DRAFT.value, BatchStatus.READY.value]


class BatchOrchestrator:
    """Service for payout batch lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[ProviderRegistry] = None,
        ledger: Optional[CommissionLedger] = None,
        normalizer: Optional[CurrencyNormalizer] = None,
        events: Optional[EventBus] = None,
        locks: Optional[AffiliateLocks] = None,
        batch_lock_registry: Optional[KeyedLocks] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.registry = registry or provider_registry
        self.events = events or event_bus
        self.locks = locks or affiliate_locks
        self.batch_locks = batch_lock_registry or batch_locks
        self.normalizer = normalizer or (ledger.normalizer if ledger else CurrencyNormalizer())
        self.ledger = ledger or CommissionLedger(
            db, normalizer=self.normalizer, events=self.events, locks=self.locks
        )
        self.withdrawals = WithdrawalRequestManager(
            db, ledger=self.ledger, normalizer=self.normalizer, events=self.events, locks=self.locks
        )
        self.audit = PayoutAuditService(db)
        self.timeout_seconds = timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.MAX_PAYOUT_ATTEMPTS

    # ========================================================================
    # Reference Generation
    # ========================================================================

    async def generate_batch_reference(self) -> str:
        """
        Generate unique batch reference: BATCH-YYYYMMDD-XXXX
        Example: BATCH-20260116-7QXM
        """
        date_str = datetime.now(timezone.utc).strftime("%Y%m%d")
        while True:
            suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=4))
            reference = f"BATCH-{date_str}-{suffix}"

            result = await self.db.execute(
                select(PayoutBatch.id).where(PayoutBatch.batch_reference == reference)
            )
            if not result.scalar_one_or_none():
                return reference

    # ========================================================================
    # Batch Assembly
    # ========================================================================

    async def create_batch(
        self,
        provider: str,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> PayoutBatch:
        """Create an empty DRAFT batch for one (provider, currency) pair."""
        provider = (provider or "").strip().upper()
        if provider not in settings.PAYOUT_PROVIDERS:
            raise ValidationError(
                f"Unknown payout provider: {provider}",
                {"allowed": settings.PAYOUT_PROVIDERS},
            )
        currency = self.normalizer.validate_currency(currency or settings.DEFAULT_PAYOUT_CURRENCY)

        batch = PayoutBatch(
            batch_reference=await self.generate_batch_reference(),
            provider=provider,
            currency=currency,
            status=BatchStatus.DRAFT.value,
            total_withdrawals=0,
            total_amount_usd=Decimal("0.00"),
            total_amount_local=Decimal("0.00"),
            successful_count=0,
            failed_count=0,
            notes=notes,
            created_by=actor_id,
        )
        self.db.add(batch)
        await self.db.flush()

        await self.audit.log(
            PayoutAuditAction.BATCH_CREATED,
            batch_id=batch.id,
            actor_id=actor_id,
            new_status=batch.status,
            details={"batch_reference": batch.batch_reference, "provider": provider, "currency": currency},
        )
        await self.db.commit()

        logger.info(f"Batch {batch.batch_reference} created for {provider}/{currency}")
        await self._batch_status_changed(batch, None)
        return batch

    async def add_approved_withdrawals(
        self,
        batch_id: uuid.UUID,
        withdrawal_ids: Optional[Sequence[uuid.UUID]] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> List[BatchItem]:
        """
        Attach matching APPROVED withdrawals (and retryable FAILED ones) to
        a DRAFT/READY batch. Returns the items created.

        With ``withdrawal_ids`` only those withdrawals are considered, and
        the call fails without changes if any of them is not eligible.
        """
        async with self.batch_locks.lock(batch_id):
            batch = await self._get_batch_for_update(batch_id)
            self._require_editable(batch, "add withdrawals to")

            candidates = await self._find_candidates(batch, withdrawal_ids)
            if withdrawal_ids:
                found = {w.id for w in candidates}
                missing = [str(i) for i in withdrawal_ids if i not in found]
                if missing:
                    raise ValidationError(
                        "Some withdrawals cannot be added to this batch",
                        {
                            "withdrawal_ids": missing,
                            "provider": batch.provider,
                            "currency": batch.currency,
                        },
                    )
                await self._check_retry_balances(candidates)

            items: List[BatchItem] = []
            rebatched: List[WithdrawalRequest] = []
            for candidate in candidates:
                item, retried = await self._attach(batch, candidate.id, actor_id, strict=bool(withdrawal_ids))
                if item is None:
                    continue
                items.append(item)
                if retried:
                    rebatched.append(candidate)

            batch = await self._get_batch_for_update(batch_id)
            await self._recompute_totals(batch)
            previous = batch.status
            if batch.total_withdrawals > 0 and batch.status == BatchStatus.DRAFT.value:
                transition(batch, BatchStatus, BatchStatus.READY, "batch")
            await self.db.commit()

        logger.info(
            f"Added {len(items)} withdrawals to batch {batch.batch_reference} "
            f"(total ${batch.total_amount_usd})"
        )
        if batch.status != previous:
            await self._batch_status_changed(batch, previous)
        for withdrawal in rebatched:
            await self._balance_changed(withdrawal, "withdrawal_rebatched")
        return items

    async def _find_candidates(
        self,
        batch: PayoutBatch,
        withdrawal_ids: Optional[Sequence[uuid.UUID]],
    ) -> List[WithdrawalRequest]:
        failed_batches = select(PayoutBatch.id).where(PayoutBatch.status == BatchStatus.FAILED.value)
        approved = and_(
            WithdrawalRequest.status == WithdrawalStatus.APPROVED.value,
            WithdrawalRequest.batch_id.is_(None),
        )
        retryable = and_(
            WithdrawalRequest.status == WithdrawalStatus.FAILED.value,
            WithdrawalRequest.attempt_count < self.max_attempts,
            or_(
                WithdrawalRequest.batch_id.is_(None),
                WithdrawalRequest.batch_id.in_(failed_batches),
            ),
        )
        query = select(WithdrawalRequest).where(
            or_(approved, retryable),
            WithdrawalRequest.currency == batch.currency,
            or_(
                WithdrawalRequest.provider == batch.provider,
                WithdrawalRequest.provider.is_(None),
            ),
        )
        if withdrawal_ids:
            query = query.where(WithdrawalRequest.id.in_(list(withdrawal_ids)))

        result = await self.db.execute(
            query.order_by(WithdrawalRequest.created_at, WithdrawalRequest.id)
        )
        return list(result.scalars().all())

    async def _check_retry_balances(self, candidates: Sequence[WithdrawalRequest]) -> None:
        """Every explicitly requested FAILED withdrawal must still be covered by its balance."""
        retry_totals = {}
        for candidate in candidates:
            if candidate.status == WithdrawalStatus.FAILED.value:
                retry_totals[candidate.user_id] = retry_totals.get(candidate.user_id, Decimal("0")) + candidate.amount_usd

        for user_id, requested in retry_totals.items():
            available = await self.ledger.available_balance(user_id)
            if requested > available:
                raise InsufficientBalanceError(
                    requested,
                    available,
                    {
                        "affiliate_id": str(user_id),
                        "withdrawal_ids": [
                            str(c.id) for c in candidates
                            if c.user_id == user_id and c.status == WithdrawalStatus.FAILED.value
                        ],
                    },
                )

    async def _attach(
        self,
        batch: PayoutBatch,
        withdrawal_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        strict: bool = False,
    ) -> Tuple[Optional[BatchItem], bool]:
        """
        Attach one withdrawal. Returns the new item (or None) and whether it was a retry.

        With ``strict`` a retry the balance no longer covers raises instead of
        being skipped.
        """
        withdrawal = await self.withdrawals.get(withdrawal_id)

        async with self.locks.hold(self.db, withdrawal.user_id):
            withdrawal = await self.withdrawals.get_for_update(withdrawal_id)
            retried = withdrawal.status == WithdrawalStatus.FAILED.value

            if withdrawal.status == WithdrawalStatus.APPROVED.value:
                if withdrawal.batch_id is not None:
                    return None, False
            elif retried:
                # FAILED amounts are not reserved, so the balance must still cover it
                available = await self.ledger.available_balance(withdrawal.user_id)
                if withdrawal.amount_usd > available:
                    if strict:
                        raise InsufficientBalanceError(
                            withdrawal.amount_usd,
                            available,
                            {"withdrawal_id": str(withdrawal.id), "reference": withdrawal.reference},
                        )
                    logger.warning(
                        f"Skipping re-batch of {withdrawal.reference}: "
                        f"${withdrawal.amount_usd} exceeds available ${available}"
                    )
                    return None, False
            else:
                return None, False

            previous = transition(withdrawal, WithdrawalStatus, WithdrawalStatus.PROCESSING, "withdrawal")
            withdrawal.provider = withdrawal.provider or batch.provider
            withdrawal.batch_id = batch.id
            withdrawal.failure_reason = None

            amount_local = withdrawal.amount_local
            if amount_local is None:
                amount_local, withdrawal.exchange_rate = self.normalizer.to_local(
                    withdrawal.amount_usd, withdrawal.currency
                )
                withdrawal.amount_local = amount_local

            item = BatchItem(
                batch_id=batch.id,
                withdrawal_id=withdrawal.id,
                reference=withdrawal.reference,
                amount=withdrawal.amount_usd,
                amount_local=amount_local,
                currency=withdrawal.currency,
                item_status=BatchItemStatus.PENDING.value,
                attempts=0,
            )
            self.db.add(item)
            await self._recompute_totals(batch)

            await self.audit.log(
                PayoutAuditAction.ADDED_TO_BATCH,
                withdrawal_id=withdrawal.id,
                batch_id=batch.id,
                actor_id=actor_id,
                previous_status=previous,
                new_status=withdrawal.status,
                details={"batch_reference": batch.batch_reference, "retry": retried},
            )

        return item, retried

    async def remove_withdrawal(
        self,
        batch_id: uuid.UUID,
        withdrawal_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
    ) -> PayoutBatch:
        """Detach a withdrawal from a DRAFT/READY batch; it returns to APPROVED."""
        async with self.batch_locks.lock(batch_id):
            batch = await self._get_batch_for_update(batch_id)
            self._require_editable(batch, "remove withdrawals from")

            item = await self._get_item(batch_id, withdrawal_id)
            await self._detach(batch, item, actor_id)

            batch = await self._get_batch_for_update(batch_id)
            await self._recompute_totals(batch)
            previous = batch.status
            if batch.total_withdrawals == 0 and batch.status == BatchStatus.READY.value:
                transition(batch, BatchStatus, BatchStatus.DRAFT, "batch")
            await self.db.commit()

        logger.info(f"Removed withdrawal {withdrawal_id} from batch {batch.batch_reference}")
        if batch.status != previous:
            await self._batch_status_changed(batch, previous)
        return batch

    async def delete_batch(self, batch_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> None:
        """Delete a DRAFT/READY batch, returning its withdrawals to APPROVED."""
        async with self.batch_locks.lock(batch_id):
            batch = await self._get_batch_for_update(batch_id)
            self._require_editable(batch, "delete")

            for item in await self._get_items(batch_id):
                await self._detach(batch, item, actor_id)

            batch = await self._get_batch_for_update(batch_id)
            reference, previous = batch.batch_reference, batch.status
            await self.audit.log(
                PayoutAuditAction.BATCH_DELETED,
                batch_id=batch.id,
                actor_id=actor_id,
                previous_status=previous,
                details={"batch_reference": reference},
            )
            await self.db.delete(batch)
            await self.db.commit()

        logger.info(f"Batch {reference} deleted")

    async def _detach(self, batch: PayoutBatch, item: BatchItem, actor_id: Optional[uuid.UUID]) -> None:
        withdrawal = await self.withdrawals.get(item.withdrawal_id)

        async with self.locks.hold(self.db, withdrawal.user_id):
            withdrawal = await self.withdrawals.get_for_update(item.withdrawal_id)
            previous = transition(withdrawal, WithdrawalStatus, WithdrawalStatus.APPROVED, "withdrawal")
            withdrawal.batch_id = None
            await self.db.delete(item)

            await self.audit.log(
                PayoutAuditAction.REMOVED_FROM_BATCH,
                withdrawal_id=withdrawal.id,
                batch_id=batch.id,
                actor_id=actor_id,
                previous_status=previous,
                new_status=withdrawal.status,
                details={"batch_reference": batch.batch_reference},
            )

    # ========================================================================
    # Submission
    # ========================================================================

    async def submit_batch(self, batch_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> PayoutBatch:
        """
        READY -> PROCESSING, then dispatch every item sequentially and
        derive the final status from the item outcomes.
        """
        batch = await self.get(batch_id)
        adapter = self.registry.get(batch.provider)

        async with self.batch_locks.lock(batch_id):
            batch = await self._get_batch_for_update(batch_id)
            if batch.status != BatchStatus.READY.value:
                raise StateConflictError(
                    f"Only READY batches can be submitted (batch is {batch.status})",
                    {"current_status": batch.status, "requested_status": BatchStatus.PROCESSING.value},
                )
            previous = transition(batch, BatchStatus, BatchStatus.PROCESSING, "batch")
            batch.processed_at = datetime.now(timezone.utc)
            await self.audit.log(
                PayoutAuditAction.BATCH_PROCESSED,
                batch_id=batch.id,
                actor_id=actor_id,
                previous_status=previous,
                new_status=batch.status,
                details={"total_withdrawals": batch.total_withdrawals},
            )
            await self.db.commit()
            await self._batch_status_changed(batch, previous)

            logger.info(
                f"Submitting batch {batch.batch_reference}: {batch.total_withdrawals} transfers "
                f"via {batch.provider}"
            )
            items = await self._get_items(batch_id, item_status=BatchItemStatus.PENDING.value)
            await self._dispatch(batch, adapter, items, actor_id)
            batch = await self._finalize(batch_id, actor_id)

        return batch

    async def reprocess(self, batch_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> PayoutBatch:
        """
        Retry the FAILED items of a PARTIALLY_COMPLETED batch. SUCCESS items
        are never resubmitted. Items over the attempt limit or no longer
        covered by the balance stay FAILED.
        """
        batch = await self.get(batch_id)
        adapter = self.registry.get(batch.provider)

        async with self.batch_locks.lock(batch_id):
            batch = await self._get_batch_for_update(batch_id)
            if batch.status != BatchStatus.PARTIALLY_COMPLETED.value:
                raise StateConflictError(
                    f"Only partially completed batches can be reprocessed (batch is {batch.status})",
                    {"current_status": batch.status},
                )

            failed_items = await self._get_items(batch_id, item_status=BatchItemStatus.FAILED.value)
            eligible = [item for item in failed_items if await self._retry_blocker(batch, item) is None]
            if not eligible:
                raise ValidationError(
                    "No failed items are eligible for reprocessing",
                    {"failed_items": len(failed_items), "max_attempts": self.max_attempts},
                )

            rearmed: List[BatchItem] = []
            for item in eligible:
                if await self._rearm(batch, item):
                    rearmed.append(item)
            if not rearmed:
                raise ValidationError("No failed items are eligible for reprocessing")

            batch = await self._get_batch_for_update(batch_id)
            previous = transition(batch, BatchStatus, BatchStatus.PROCESSING, "batch")
            batch.processed_at = datetime.now(timezone.utc)
            batch.completed_at = None
            await self.audit.log(
                PayoutAuditAction.BATCH_REPROCESSED,
                batch_id=batch.id,
                actor_id=actor_id,
                previous_status=previous,
                new_status=batch.status,
                details={
                    "retried": [item.reference for item in rearmed],
                    "skipped": len(failed_items) - len(rearmed),
                },
            )
            await self._recompute_totals(batch)
            await self.db.commit()
            await self._batch_status_changed(batch, previous)

            logger.info(f"Reprocessing {len(rearmed)} failed items of batch {batch.batch_reference}")
            await self._dispatch(batch, adapter, rearmed, actor_id)
            batch = await self._finalize(batch_id, actor_id)

        return batch

    async def _retry_blocker(self, batch: PayoutBatch, item: BatchItem) -> Optional[str]:
        """Why a failed item cannot be retried, or None if it can."""
        withdrawal = await self.withdrawals.get(item.withdrawal_id)
        if withdrawal.status != WithdrawalStatus.FAILED.value or withdrawal.batch_id != batch.id:
            return f"withdrawal is {withdrawal.status}"
        if withdrawal.attempt_count >= self.max_attempts:
            return f"attempt limit {self.max_attempts} reached"
        available = await self.ledger.available_balance(withdrawal.user_id)
        if withdrawal.amount_usd > available:
            return f"available balance ${available} below ${withdrawal.amount_usd}"
        return None

    async def _rearm(self, batch: PayoutBatch, item: BatchItem) -> bool:
        withdrawal = await self.withdrawals.get(item.withdrawal_id)

        async with self.locks.hold(self.db, withdrawal.user_id):
            withdrawal = await self.withdrawals.get_for_update(item.withdrawal_id)
            blocker = await self._retry_blocker(batch, item)
            if blocker:
                logger.warning(f"Not retrying {item.reference}: {blocker}")
                return False

            transition(withdrawal, WithdrawalStatus, WithdrawalStatus.PROCESSING, "withdrawal")
            withdrawal.failure_reason = None
            item.item_status = BatchItemStatus.PENDING.value
            item.failure_reason = None

        await self._balance_changed(withdrawal, "withdrawal_retried")
        return True

    async def _dispatch(
        self,
        batch: PayoutBatch,
        adapter: ProviderAdapter,
        items: Sequence[BatchItem],
        actor_id: Optional[uuid.UUID],
    ) -> None:
        """Submit items one at a time. Each outcome is applied before the next call."""
        for item in items:
            withdrawal = await self.withdrawals.get(item.withdrawal_id)
            result = await self._submit_one(adapter, item, withdrawal)
            await self._apply_outcome(batch, item, result, actor_id)

    async def _submit_one(
        self,
        adapter: ProviderAdapter,
        item: BatchItem,
        withdrawal: WithdrawalRequest,
    ) -> TransferResult:
        try:
            return await asyncio.wait_for(
                adapter.submit_transfer(
                    item.reference,
                    item.amount_local,
                    item.currency,
                    dict(withdrawal.account_details or {}),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Transfer {item.reference} timed out after {self.timeout_seconds}s")
            return TransferResult.failed(f"Provider timed out after {self.timeout_seconds}s")
        except ProviderError as e:
            logger.warning(f"Transfer {item.reference} rejected by provider: {e.message}")
            return TransferResult.failed(e.message)
        except Exception as e:
            logger.exception(
                f"Unexpected error submitting {item.reference} to {mask_account(withdrawal.account_details)}"
            )
            return TransferResult.failed(f"Unexpected provider error: {e}")

    async def _apply_outcome(
        self,
        batch: PayoutBatch,
        item: BatchItem,
        result: TransferResult,
        actor_id: Optional[uuid.UUID],
    ) -> WithdrawalRequest:
        """Record one item's outcome on the item, its withdrawal and the ledger."""
        withdrawal = await self.withdrawals.get(item.withdrawal_id)

        async with self.locks.hold(self.db, withdrawal.user_id):
            withdrawal = await self.withdrawals.get_for_update(item.withdrawal_id)
            now = datetime.now(timezone.utc)
            item.attempts = (item.attempts or 0) + 1
            item.processed_at = now
            withdrawal.attempt_count = (withdrawal.attempt_count or 0) + 1
            withdrawal.processed_at = now

            if result.success:
                item.item_status = BatchItemStatus.SUCCESS.value
                item.provider_reference = result.provider_reference
                item.failure_reason = None
                previous = transition(withdrawal, WithdrawalStatus, WithdrawalStatus.PAID, "withdrawal")
                withdrawal.paid_at = now
                withdrawal.provider_reference = result.provider_reference
                withdrawal.failure_reason = None

                paid = await self.ledger.settle_withdrawal(withdrawal, item.reference)
                await self.audit.log(
                    PayoutAuditAction.MARKED_PAID,
                    withdrawal_id=withdrawal.id,
                    batch_id=batch.id,
                    actor_id=actor_id,
                    previous_status=previous,
                    new_status=withdrawal.status,
                    details={
                        "provider_reference": result.provider_reference,
                        "commissions_paid": [str(c.id) for c in paid],
                    },
                )
            else:
                reason = result.failure_reason or "Transfer failed"
                item.item_status = BatchItemStatus.FAILED.value
                item.failure_reason = reason
                if result.provider_reference:
                    item.provider_reference = result.provider_reference
                previous = transition(withdrawal, WithdrawalStatus, WithdrawalStatus.FAILED, "withdrawal")
                withdrawal.failed_at = now
                withdrawal.failure_reason = reason
                await self.audit.log(
                    PayoutAuditAction.MARKED_FAILED,
                    withdrawal_id=withdrawal.id,
                    batch_id=batch.id,
                    actor_id=actor_id,
                    previous_status=previous,
                    new_status=withdrawal.status,
                    reason=reason,
                )

            await self._recompute_totals(batch)

        logger.info(f"Item {item.reference} -> {item.item_status}")
        await self._balance_changed(withdrawal, "withdrawal_paid" if result.success else "withdrawal_failed")
        return withdrawal

    async def _finalize(self, batch_id: uuid.UUID, actor_id: Optional[uuid.UUID]) -> PayoutBatch:
        """Derive the terminal status once no item is PENDING."""
        batch = await self._get_batch_for_update(batch_id)
        await self._recompute_totals(batch)

        pending = batch.total_withdrawals - batch.successful_count - batch.failed_count
        if pending > 0 or batch.status != BatchStatus.PROCESSING.value:
            await self.db.commit()
            return batch

        if batch.failed_count == 0:
            final = BatchStatus.COMPLETED
        elif batch.successful_count == 0:
            final = BatchStatus.FAILED
        else:
            final = BatchStatus.PARTIALLY_COMPLETED

        previous = transition(batch, BatchStatus, final, "batch")
        batch.completed_at = datetime.now(timezone.utc)
        await self.audit.log(
            PayoutAuditAction.BATCH_COMPLETED,
            batch_id=batch.id,
            actor_id=actor_id,
            previous_status=previous,
            new_status=batch.status,
            details={
                "successful_count": batch.successful_count,
                "failed_count": batch.failed_count,
                "total_amount_usd": str(batch.total_amount_usd),
            },
        )
        await self.db.commit()

        logger.info(
            f"Batch {batch.batch_reference} finished {batch.status}: "
            f"{batch.successful_count} paid, {batch.failed_count} failed"
        )
        await self._batch_status_changed(batch, previous)
        return batch

    # ========================================================================
    # Manual Reconciliation
    # ========================================================================

    async def record_item_outcome(
        self,
        withdrawal_id: uuid.UUID,
        success: bool,
        provider_reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> WithdrawalRequest:
        """
        Record the outcome of a transfer made off-platform (bulk upload).

        The withdrawal's item must be PENDING in a READY or PROCESSING
        batch. A READY batch moves to PROCESSING first; the batch is
        finalized once no PENDING item remains.
        """
        if not success and not (failure_reason or "").strip():
            raise ValidationError("A failure reason is required")

        withdrawal = await self.withdrawals.get(withdrawal_id)
        if withdrawal.batch_id is None:
            raise StateConflictError(
                f"Withdrawal {withdrawal.reference} is not assigned to a batch",
                {"current_status": withdrawal.status},
            )
        batch_id = withdrawal.batch_id

        async with self.batch_locks.lock(batch_id):
            batch = await self._get_batch_for_update(batch_id)
            if batch.status not in (BatchStatus.READY.value, BatchStatus.PROCESSING.value):
                raise StateConflictError(
                    f"Cannot record outcomes for a batch in '{batch.status}' status",
                    {"current_status": batch.status},
                )
            item = await self._get_item(batch_id, withdrawal_id)
            if item.item_status != BatchItemStatus.PENDING.value:
                raise StateConflictError(
                    f"Item {item.reference} is already {item.item_status}",
                    {"current_status": item.item_status},
                )

            previous = None
            if batch.status == BatchStatus.READY.value:
                previous = transition(batch, BatchStatus, BatchStatus.PROCESSING, "batch")
                batch.processed_at = datetime.now(timezone.utc)
                await self.audit.log(
                    PayoutAuditAction.BATCH_PROCESSED,
                    batch_id=batch.id,
                    actor_id=actor_id,
                    previous_status=previous,
                    new_status=batch.status,
                    details={"manual": True},
                )
                await self.db.commit()

            result = (
                TransferResult.ok(provider_reference)
                if success
                else TransferResult.failed(failure_reason.strip(), provider_reference)
            )
            withdrawal = await self._apply_outcome(batch, item, result, actor_id)
            if previous is not None:
                await self._batch_status_changed(batch, previous)
            await self._finalize(batch_id, actor_id)

        return withdrawal

    # ========================================================================
    # Export
    # ========================================================================

    async def export(self, batch_id: uuid.UUID, layout: str = ExportLayout.RECONCILIATION) -> ExportResult:
        """Render the batch as CSV and keep the snapshot on the batch."""
        async with self.batch_locks.lock(batch_id):
            batch = await self._get_batch_for_update(batch_id)
            rows = await self.get_items_with_withdrawals(batch_id)

            if layout == ExportLayout.RECONCILIATION:
                export = render_reconciliation_csv(batch, rows)
            elif layout == ExportLayout.PROVIDER:
                renderer = PROVIDER_RENDERERS.get(batch.provider)
                if renderer is None:
                    raise ValidationError(f"No bulk-transfer template for provider {batch.provider}")
                export = renderer(batch, rows)
            else:
                raise ValidationError(
                    f"Unknown export layout: {layout}",
                    {"allowed": [ExportLayout.RECONCILIATION, ExportLayout.PROVIDER]},
                )

            batch.csv_content = export.csv
            batch.csv_generated_at = datetime.now(timezone.utc)
            await self.db.commit()

        if export.errors:
            logger.warning(f"Batch {batch.batch_reference} export skipped {len(export.errors)} items")
        return export

    # ========================================================================
    # Queries
    # ========================================================================

    async def get(self, batch_id: uuid.UUID) -> PayoutBatch:
        result = await self.db.execute(
            select(PayoutBatch).where(PayoutBatch.id == batch_id)
        )
        batch = result.scalar_one_or_none()
        if not batch:
            raise NotFoundError("Batch not found", {"batch_id": str(batch_id)})
        return batch

    async def list(
        self,
        status: Optional[str] = None,
        provider: Optional[str] = None,
        currency: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[PayoutBatch], int]:
        filters = []
        if status:
            filters.append(PayoutBatch.status == status)
        if provider:
            filters.append(PayoutBatch.provider == provider.upper())
        if currency:
            filters.append(PayoutBatch.currency == currency.upper())

        query = select(PayoutBatch)
        count_query = select(func.count(PayoutBatch.id))
        if filters:
            query = query.where(and_(*filters))
            count_query = count_query.where(and_(*filters))

        total_result = await self.db.execute(count_query)
        total = total_result.scalar()

        query = query.order_by(PayoutBatch.created_at.desc(), PayoutBatch.id)
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def items(self, batch_id: uuid.UUID) -> List[BatchItem]:
        await self.get(batch_id)
        return await self._get_items(batch_id)

    async def get_items_with_withdrawals(self, batch_id: uuid.UUID) -> List[Tuple[BatchItem, WithdrawalRequest]]:
        result = await self.db.execute(
            select(BatchItem, WithdrawalRequest)
            .join(WithdrawalRequest, WithdrawalRequest.id == BatchItem.withdrawal_id)
            .where(BatchItem.batch_id == batch_id)
            .order_by(BatchItem.created_at, BatchItem.id)
        )
        return [(item, withdrawal) for item, withdrawal in result.all()]

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _get_batch_for_update(self, batch_id: uuid.UUID) -> PayoutBatch:
        await self.db.flush()
        result = await self.db.execute(
            select(PayoutBatch)
            .where(PayoutBatch.id == batch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        batch = result.scalar_one_or_none()
        if not batch:
            raise NotFoundError("Batch not found", {"batch_id": str(batch_id)})
        return batch

    async def _get_items(self, batch_id: uuid.UUID, item_status: Optional[str] = None) -> List[BatchItem]:
        query = select(BatchItem).where(BatchItem.batch_id == batch_id)
        if item_status:
            query = query.where(BatchItem.item_status == item_status)
        result = await self.db.execute(query.order_by(BatchItem.created_at, BatchItem.id))
        return list(result.scalars().all())

    async def _get_item(self, batch_id: uuid.UUID, withdrawal_id: uuid.UUID) -> BatchItem:
        result = await self.db.execute(
            select(BatchItem).where(
                BatchItem.batch_id == batch_id,
                BatchItem.withdrawal_id == withdrawal_id,
            )
        )
        item = result.scalar_one_or_none()
        if not item:
            raise NotFoundError(
                "Withdrawal is not in this batch",
                {"batch_id": str(batch_id), "withdrawal_id": str(withdrawal_id)},
            )
        return item

    async def _recompute_totals(self, batch: PayoutBatch) -> None:
        """Totals and counts are always derived from the items."""
        await self.db.flush()
        result = await self.db.execute(
            select(
                func.count(BatchItem.id),
                func.coalesce(func.sum(BatchItem.amount), 0),
                func.coalesce(func.sum(BatchItem.amount_local), 0),
            ).where(BatchItem.batch_id == batch.id)
        )
        count, amount_usd, amount_local = result.one()

        status_result = await self.db.execute(
            select(BatchItem.item_status, func.count(BatchItem.id))
            .where(BatchItem.batch_id == batch.id)
            .group_by(BatchItem.item_status)
        )
        by_status = dict(status_result.all())

        batch.total_withdrawals = count
        batch.total_amount_usd = quantize_money(amount_usd or 0)
        batch.total_amount_local = quantize_money(amount_local or 0)
        batch.successful_count = by_status.get(BatchItemStatus.SUCCESS.value, 0)
        batch.failed_count = by_status.get(BatchItemStatus.FAILED.value, 0)

    @staticmethod
    def _require_editable(batch: PayoutBatch, action: str) -> None:
        if batch.status not in EDITABLE_BATCH_STATUSES:
            raise StateConflictError(
                f"Cannot {action} a batch in '{batch.status}' status",
                {"current_status": batch.status, "allowed": EDITABLE_BATCH_STATUSES},
            )

    async def _batch_status_changed(self, batch: PayoutBatch, previous: Optional[str]) -> None:
        await self.events.emit(EventType.BATCH_STATUS_CHANGED, {
            "batch_id": str(batch.id),
            "batch_reference": batch.batch_reference,
            "previous_status": previous,
            "status": batch.status,
            "successful_count": batch.successful_count,
            "failed_count": batch.failed_count,
        })

    async def _balance_changed(self, withdrawal: WithdrawalRequest, reason: str) -> None:
        await self.events.emit(EventType.BALANCE_CHANGED, {
            "affiliate_id": str(withdrawal.user_id),
            "reason": reason,
            "withdrawal_id": str(withdrawal.id),
            "reference": withdrawal.reference,
        })
