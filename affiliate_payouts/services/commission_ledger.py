"""
Commission Ledger

Records commissions from sale events, moves them through review and
payment, and computes each affiliate's available balance:

    available = sum(unsettled USD of available commissions)
              - sum(USD of PENDING/APPROVED/PROCESSING withdrawals)

Every balance-affecting mutation runs inside the affiliate's lock section
(see core.locks), which commits on success.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_payouts.core.events import EventBus, EventType, event_bus
from affiliate_payouts.core.exceptions import ValidationError, NotFoundError
from affiliate_payouts.core.locks import AffiliateLocks, affiliate_locks
from affiliate_payouts.core.state_machine import (
    CommissionStatus,
    RESERVED_WITHDRAWAL_STATUSES,
    transition,
)
from affiliate_payouts.models.commission import Commission, CommissionSource
from affiliate_payouts.models.withdrawal import WithdrawalRequest
from affiliate_payouts.services.currency_normalizer import CurrencyNormalizer, quantize_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class CommissionLedger:
    """Service for commission entries and affiliate balances."""

    def __init__(
        self,
        db: AsyncSession,
        normalizer: Optional[CurrencyNormalizer] = None,
        events: Optional[EventBus] = None,
        locks: Optional[AffiliateLocks] = None,
    ):
        self.db = db
        self.normalizer = normalizer or CurrencyNormalizer()
        self.events = events or event_bus
        self.locks = locks or affiliate_locks

    # ========================================================================
    # Recording
    # ========================================================================

    async def record_commission(
        self,
        affiliate_id: uuid.UUID,
        source: str,
        amount,
        currency: str,
        rate,
        linked_payment_id: Optional[str] = None,
        sale_amount=None,
        notes: Optional[str] = None,
    ) -> Tuple[Commission, bool]:
        """
        Create a pending commission.

        Idempotent on (affiliate_id, source, linked_payment_id): a redelivered
        sale event returns the existing row. Returns (commission, created).
        """
        source = self._validate_source(source)
        amount = self._to_decimal(amount, "amount")
        rate = self._to_decimal(rate, "rate")
        if amount <= 0:
            raise ValidationError("Commission amount must be greater than zero", {"amount": str(amount)})
        if rate < 0 or rate > 1:
            raise ValidationError("Commission rate must be between 0 and 1", {"rate": str(rate)})

        if sale_amount is None:
            sale_amount = amount / rate if rate > 0 else amount
        else:
            sale_amount = self._to_decimal(sale_amount, "sale_amount")
            if sale_amount < 0:
                raise ValidationError("Sale amount cannot be negative")

        currency = (currency or "").strip().upper()
        # Normalized exactly once, here
        amount_usd = self.normalizer.normalize(amount, currency)
        sale_amount_usd = self.normalizer.normalize(sale_amount, currency)

        try:
            async with self.locks.hold(self.db, affiliate_id):
                existing = await self._find_duplicate(affiliate_id, source, linked_payment_id)
                if existing:
                    logger.info(
                        f"Duplicate sale event for affiliate {affiliate_id}, "
                        f"payment {linked_payment_id}; returning commission {existing.id}"
                    )
                    return existing, False

                commission = Commission(
                    affiliate_id=affiliate_id,
                    source=source,
                    amount=quantize_money(amount),
                    currency=currency,
                    rate=rate,
                    sale_amount=quantize_money(sale_amount),
                    amount_usd=amount_usd,
                    sale_amount_usd=sale_amount_usd,
                    settled_usd=ZERO,
                    status=CommissionStatus.PENDING.value,
                    linked_payment_id=linked_payment_id,
                    notes=notes,
                )
                self.db.add(commission)
                await self.db.flush()
        except IntegrityError:
            # Lost an insert race with a concurrent delivery of the same event
            existing = await self._find_duplicate(affiliate_id, source, linked_payment_id)
            if existing is None:
                raise
            return existing, False

        logger.info(
            f"Recorded {source} commission {commission.id} for affiliate {affiliate_id}: "
            f"{commission.amount} {currency} = ${amount_usd}"
        )
        return commission, True

    async def _find_duplicate(
        self,
        affiliate_id: uuid.UUID,
        source: str,
        linked_payment_id: Optional[str],
    ) -> Optional[Commission]:
        if not linked_payment_id:
            return None
        result = await self.db.execute(
            select(Commission).where(
                Commission.affiliate_id == affiliate_id,
                Commission.source == source,
                Commission.linked_payment_id == linked_payment_id,
            )
        )
        return result.scalar_one_or_none()

    # ========================================================================
    # Review
    # ========================================================================

    async def approve(self, commission_id: uuid.UUID) -> Commission:
        """pending -> available"""
        commission = await self.get(commission_id)

        async with self.locks.hold(self.db, commission.affiliate_id):
            commission = await self._get_for_update(commission_id)
            transition(commission, CommissionStatus, CommissionStatus.AVAILABLE, "commission")
            commission.approved_at = datetime.now(timezone.utc)

        logger.info(f"Commission {commission_id} approved (${commission.amount_usd})")
        await self._balance_changed(commission.affiliate_id, "commission_approved", commission.id)
        return commission

    async def reject(self, commission_id: uuid.UUID, reason: Optional[str] = None) -> Commission:
        """pending -> rejected"""
        commission = await self.get(commission_id)

        async with self.locks.hold(self.db, commission.affiliate_id):
            commission = await self._get_for_update(commission_id)
            transition(commission, CommissionStatus, CommissionStatus.REJECTED, "commission")
            commission.rejected_at = datetime.now(timezone.utc)
            commission.rejection_reason = reason

        logger.info(f"Commission {commission_id} rejected: {reason}")
        return commission

    # ========================================================================
    # Payment
    # ========================================================================

    async def mark_paid(self, commission_id: uuid.UUID, batch_item_ref: str) -> Commission:
        """
        available -> paid

        Only the batch orchestrator calls this, after a confirmed transfer.
        """
        commission = await self.get(commission_id)

        async with self.locks.hold(self.db, commission.affiliate_id):
            commission = await self._get_for_update(commission_id)
            transition(commission, CommissionStatus, CommissionStatus.PAID, "commission")
            commission.settled_usd = commission.amount_usd
            commission.paid_at = datetime.now(timezone.utc)
            commission.paid_reference = batch_item_ref

        logger.info(f"Commission {commission_id} paid via {batch_item_ref}")
        return commission

    async def settle_withdrawal(self, withdrawal: WithdrawalRequest, batch_item_ref: str) -> List[Commission]:
        """
        Allocate a paid withdrawal over the affiliate's available commissions,
        oldest first. Commissions that become fully settled are marked paid.

        Returns the commissions marked paid.
        """
        paid: List[Commission] = []
        async with self.locks.hold(self.db, withdrawal.user_id):
            await self.db.flush()
            result = await self.db.execute(
                select(Commission)
                .where(
                    Commission.affiliate_id == withdrawal.user_id,
                    Commission.status == CommissionStatus.AVAILABLE.value,
                )
                .order_by(Commission.created_at, Commission.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            remaining = quantize_money(withdrawal.amount_usd)

            for commission in result.scalars().all():
                if remaining <= 0:
                    break
                unsettled = quantize_money(commission.unsettled_usd)
                if unsettled <= 0:
                    continue
                take = min(unsettled, remaining)
                remaining = quantize_money(remaining - take)

                if take == unsettled:
                    await self.mark_paid(commission.id, batch_item_ref)
                    paid.append(commission)
                else:
                    commission.settled_usd = quantize_money(commission.settled_usd + take)

            if remaining > 0:
                logger.warning(
                    f"Withdrawal {withdrawal.reference} settled with ${remaining} "
                    f"not covered by available commissions"
                )

        return paid

    # ========================================================================
    # Balance
    # ========================================================================

    async def available_balance(self, affiliate_id: uuid.UUID) -> Decimal:
        """Unsettled available commissions minus reserved withdrawals, in USD."""
        await self.db.flush()
        earned_result = await self.db.execute(
            select(func.coalesce(func.sum(Commission.amount_usd - Commission.settled_usd), 0))
            .where(
                Commission.affiliate_id == affiliate_id,
                Commission.status == CommissionStatus.AVAILABLE.value,
            )
        )
        earned = earned_result.scalar() or 0

        reserved_result = await self.db.execute(
            select(func.coalesce(func.sum(WithdrawalRequest.amount_usd), 0))
            .where(
                WithdrawalRequest.user_id == affiliate_id,
                WithdrawalRequest.status.in_(RESERVED_WITHDRAWAL_STATUSES),
            )
        )
        reserved = reserved_result.scalar() or 0

        return quantize_money(Decimal(str(earned)) - Decimal(str(reserved)))

    async def get_balance_summary(self, affiliate_id: uuid.UUID) -> dict:
        """Balance breakdown for the affiliate balance endpoint."""
        totals = {}
        for status in CommissionStatus:
            result = await self.db.execute(
                select(func.coalesce(func.sum(Commission.amount_usd), 0))
                .where(
                    Commission.affiliate_id == affiliate_id,
                    Commission.status == status.value,
                )
            )
            totals[status.value] = quantize_money(result.scalar() or 0)

        reserved_result = await self.db.execute(
            select(func.coalesce(func.sum(WithdrawalRequest.amount_usd), 0))
            .where(
                WithdrawalRequest.user_id == affiliate_id,
                WithdrawalRequest.status.in_(RESERVED_WITHDRAWAL_STATUSES),
            )
        )

        return {
            "affiliate_id": affiliate_id,
            "available_balance_usd": await self.available_balance(affiliate_id),
            "pending_commissions_usd": totals[CommissionStatus.PENDING.value],
            "available_commissions_usd": totals[CommissionStatus.AVAILABLE.value],
            "paid_commissions_usd": totals[CommissionStatus.PAID.value],
            "rejected_commissions_usd": totals[CommissionStatus.REJECTED.value],
            "reserved_withdrawals_usd": quantize_money(reserved_result.scalar() or 0),
        }

    # ========================================================================
    # Queries
    # ========================================================================

    async def get(self, commission_id: uuid.UUID) -> Commission:
        result = await self.db.execute(
            select(Commission).where(Commission.id == commission_id)
        )
        commission = result.scalar_one_or_none()
        if not commission:
            raise NotFoundError("Commission not found", {"commission_id": str(commission_id)})
        return commission

    async def list(
        self,
        status: Optional[str] = None,
        affiliate_id: Optional[uuid.UUID] = None,
        source: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Commission], int]:
        """List commissions with filters and pagination, newest first."""
        filters = self._filters(status, affiliate_id, source, date_from, date_to)

        query = select(Commission)
        count_query = select(func.count(Commission.id))
        if filters:
            query = query.where(and_(*filters))
            count_query = count_query.where(and_(*filters))

        total_result = await self.db.execute(count_query)
        total = total_result.scalar()

        query = query.order_by(Commission.created_at.desc(), Commission.id)
        query = query.offset((page - 1) * page_size).limit(page_size)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_all(self, **filters) -> List[Commission]:
        """Unpaged variant used by the CSV export."""
        conditions = self._filters(**filters)
        query = select(Commission)
        if conditions:
            query = query.where(and_(*conditions))
        result = await self.db.execute(query.order_by(Commission.created_at.desc(), Commission.id))
        return list(result.scalars().all())

    async def summary(self, affiliate_id: Optional[uuid.UUID] = None) -> dict:
        """Per-status counts and USD totals."""
        query = select(
            Commission.status,
            func.count(Commission.id),
            func.coalesce(func.sum(Commission.amount_usd), 0),
        ).group_by(Commission.status)
        if affiliate_id:
            query = query.where(Commission.affiliate_id == affiliate_id)

        result = await self.db.execute(query)
        by_status = {
            s.value: {"count": 0, "amount_usd": ZERO} for s in CommissionStatus
        }
        for status, count, amount in result.all():
            by_status[status] = {"count": count, "amount_usd": quantize_money(amount)}

        return {
            "total_count": sum(v["count"] for v in by_status.values()),
            "total_amount_usd": quantize_money(sum(v["amount_usd"] for v in by_status.values())),
            "by_status": by_status,
        }

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _get_for_update(self, commission_id: uuid.UUID) -> Commission:
        await self.db.flush()
        result = await self.db.execute(
            select(Commission)
            .where(Commission.id == commission_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        commission = result.scalar_one_or_none()
        if not commission:
            raise NotFoundError("Commission not found", {"commission_id": str(commission_id)})
        return commission

    async def _balance_changed(self, affiliate_id: uuid.UUID, reason: str, commission_id: uuid.UUID) -> None:
        await self.events.emit(EventType.BALANCE_CHANGED, {
            "affiliate_id": str(affiliate_id),
            "reason": reason,
            "commission_id": str(commission_id),
        })

    @staticmethod
    def _filters(status=None, affiliate_id=None, source=None, date_from=None, date_to=None) -> List:
        filters = []
        if status:
            filters.append(Commission.status == status)
        if affiliate_id:
            filters.append(Commission.affiliate_id == affiliate_id)
        if source:
            filters.append(Commission.source == source)
        if date_from:
            filters.append(Commission.created_at >= date_from)
        if date_to:
            filters.append(Commission.created_at <= date_to)
        return filters

    @staticmethod
    def _validate_source(source) -> str:
        value = getattr(source, "value", source)
        try:
            return CommissionSource(value).value
        except ValueError:
            raise ValidationError(
                f"Unknown commission source: {value}",
                {"allowed": [s.value for s in CommissionSource]},
            )

    @staticmethod
    def _to_decimal(value, field: str) -> Decimal:
        try:
            return Decimal(str(value))
        except (ArithmeticError, ValueError, TypeError):
            raise ValidationError(f"Invalid {field}: {value}")
