"""
Withdrawal Request Manager

Affiliates request withdrawals against their available balance; admins
approve or reject them. A request reserves its amount from creation until
it is rejected, paid or failed, so two concurrent requests cannot both
spend the same balance.
"""

import logging
import random
import string
import uuid
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Optional, List, Tuple, Dict, Any

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_payouts.config import settings
from affiliate_payouts.core.events import EventBus, EventType, event_bus
from affiliate_payouts.core.exceptions import (
    ValidationError,
    NotFoundError,
    StateConflictError,
    InsufficientBalanceError,
)
from affiliate_payouts.core.locks import AffiliateLocks, affiliate_locks
from affiliate_payouts.core.state_machine import (
    WithdrawalStatus,
    OPEN_WITHDRAWAL_STATUSES,
    transition,
    validate_transition,
)
from affiliate_payouts.models.audit_log import PayoutAuditAction
from affiliate_payouts.models.withdrawal import WithdrawalRequest, PayoutChannel
from affiliate_payouts.services.audit_service import PayoutAuditService
from affiliate_payouts.services.commission_ledger import CommissionLedger
from affiliate_payouts.services.currency_normalizer import CurrencyNormalizer, quantize_money

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

REQUIRED_ACCOUNT_FIELDS = {
    PayoutChannel.BANK.value: ("bank_code", "account_number", "account_name"),
    PayoutChannel.MOBILE_MONEY.value: ("network_code", "mobile_number"),
}


def mask_account(account_details: Optional[Dict[str, Any]]) -> str:
    """Last four digits of the destination, for log lines."""
    details = account_details or {}
    number = str(details.get("account_number") or details.get("mobile_number") or "")
    if len(number) <= 4:
        return "****"
    return f"****{number[-4:]}"


def validate_account_details(payout_channel: str, account_details: Optional[Dict[str, Any]]) -> List[str]:
    """Return the names of required fields that are missing or blank."""
    details = account_details or {}
    required = REQUIRED_ACCOUNT_FIELDS.get(payout_channel, ())
    return [f for f in required if not str(details.get(f) or "").strip()]


class WithdrawalRequestManager:
    """Service for affiliate withdrawal requests."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[CommissionLedger] = None,
        normalizer: Optional[CurrencyNormalizer] = None,
        events: Optional[EventBus] = None,
        locks: Optional[AffiliateLocks] = None,
    ):
        self.db = db
        self.events = events or event_bus
        self.locks = locks or affiliate_locks
        self.normalizer = normalizer or (ledger.normalizer if ledger else CurrencyNormalizer())
        self.ledger = ledger or CommissionLedger(
            db, normalizer=self.normalizer, events=self.events, locks=self.locks
        )
        self.audit = PayoutAuditService(db)

    # ========================================================================
    # Reference Generation
    # ========================================================================

    async def generate_reference(self) -> str:
        """
        Generate unique withdrawal reference: WD-YYYYMMDD-XXXXXX
        Example: WD-20260116-K7R2XM
        """
        date_str = datetime.now(timezone.utc).strftime("%Y%m%d")
        while True:
            suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
            reference = f"WD-{date_str}-{suffix}"

            result = await self.db.execute(
                select(WithdrawalRequest.id).where(WithdrawalRequest.reference == reference)
            )
            if not result.scalar_one_or_none():
                return reference

    # ========================================================================
    # Affiliate Actions
    # ========================================================================

    async def create_request(
        self,
        user_id: uuid.UUID,
        amount_usd,
        payout_channel: str,
        account_details: Dict[str, Any],
        currency: Optional[str] = None,
        provider: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> WithdrawalRequest:
        """
        Create a PENDING withdrawal request.

        Raises:
            ValidationError: bad amount, channel, account details, currency,
                provider, or outside the withdrawal window
            StateConflictError: an identical open request already exists
            InsufficientBalanceError: amount exceeds the available balance
        """
        amount = self._validate_amount(amount_usd)
        channel = self._validate_channel(payout_channel)
        missing = validate_account_details(channel, account_details)
        if missing:
            raise ValidationError(
                f"Missing {channel} account details: {', '.join(missing)}",
                {"missing_fields": missing},
            )
        currency = currency or settings.DEFAULT_PAYOUT_CURRENCY
        amount_local, exchange_rate = self.normalizer.to_local(amount, currency)
        currency = currency.strip().upper()
        provider = self._validate_provider(provider) if provider else None
        self._check_withdrawal_window()

        async with self.locks.hold(self.db, user_id):
            duplicate = await self.db.execute(
                select(WithdrawalRequest.reference).where(
                    WithdrawalRequest.user_id == user_id,
                    WithdrawalRequest.amount_usd == amount,
                    WithdrawalRequest.status.in_(OPEN_WITHDRAWAL_STATUSES),
                )
            )
            existing_reference = duplicate.scalars().first()
            if existing_reference:
                raise StateConflictError(
                    f"An open withdrawal request for ${amount} already exists ({existing_reference})",
                    {"reference": existing_reference},
                )

            available = await self.ledger.available_balance(user_id)
            if amount > available:
                raise InsufficientBalanceError(amount, available)

            withdrawal = WithdrawalRequest(
                reference=await self.generate_reference(),
                user_id=user_id,
                amount_usd=amount,
                currency=currency,
                amount_local=amount_local,
                exchange_rate=exchange_rate,
                payout_channel=channel,
                account_details=dict(account_details),
                provider=provider,
                status=WithdrawalStatus.PENDING.value,
                attempt_count=0,
                notes=notes,
            )
            self.db.add(withdrawal)
            await self.db.flush()

            await self.audit.log(
                PayoutAuditAction.CREATED,
                withdrawal_id=withdrawal.id,
                actor_id=user_id,
                new_status=withdrawal.status,
                details={
                    "reference": withdrawal.reference,
                    "amount_usd": str(amount),
                    "amount_local": str(amount_local),
                    "currency": currency,
                },
            )

        logger.info(
            f"Withdrawal {withdrawal.reference} created for affiliate {user_id}: "
            f"${amount} -> {amount_local} {currency} via {channel} {mask_account(account_details)}"
        )
        await self._balance_changed(user_id, "withdrawal_requested", withdrawal)
        return withdrawal

    # ========================================================================
    # Admin Actions
    # ========================================================================

    async def approve(self, withdrawal_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> WithdrawalRequest:
        """
        PENDING -> APPROVED

        The balance may have shrunk since the request was made (a backing
        commission rejected), so it is checked again, excluding this
        request's own reservation.
        """
        withdrawal = await self.get(withdrawal_id)

        async with self.locks.hold(self.db, withdrawal.user_id):
            withdrawal = await self.get_for_update(withdrawal_id)
            validate_transition(
                WithdrawalStatus, withdrawal.status, WithdrawalStatus.APPROVED.value, "withdrawal"
            )

            available = await self.ledger.available_balance(withdrawal.user_id)
            available_for_this = quantize_money(available + withdrawal.amount_usd)
            if withdrawal.amount_usd > available_for_this:
                raise InsufficientBalanceError(
                    withdrawal.amount_usd,
                    available_for_this,
                    {"reference": withdrawal.reference},
                )

            previous = transition(withdrawal, WithdrawalStatus, WithdrawalStatus.APPROVED, "withdrawal")
            withdrawal.approved_at = datetime.now(timezone.utc)
            withdrawal.approved_by = actor_id

            await self.audit.log(
                PayoutAuditAction.APPROVED,
                withdrawal_id=withdrawal.id,
                actor_id=actor_id,
                previous_status=previous,
                new_status=withdrawal.status,
            )

        logger.info(f"Withdrawal {withdrawal.reference} approved by {actor_id}")
        return withdrawal

    async def reject(
        self,
        withdrawal_id: uuid.UUID,
        reason: str,
        actor_id: Optional[uuid.UUID] = None,
    ) -> WithdrawalRequest:
        """PENDING/APPROVED -> REJECTED. Releases the reserved amount."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        withdrawal = await self.get(withdrawal_id)

        async with self.locks.hold(self.db, withdrawal.user_id):
            withdrawal = await self.get_for_update(withdrawal_id)
            previous = transition(withdrawal, WithdrawalStatus, WithdrawalStatus.REJECTED, "withdrawal")
            now = datetime.now(timezone.utc)
            withdrawal.rejected_at = now
            withdrawal.rejected_by = actor_id
            withdrawal.rejection_reason = reason.strip()
            withdrawal.processed_at = now

            await self.audit.log(
                PayoutAuditAction.REJECTED,
                withdrawal_id=withdrawal.id,
                actor_id=actor_id,
                previous_status=previous,
                new_status=withdrawal.status,
                reason=withdrawal.rejection_reason,
            )

        logger.info(f"Withdrawal {withdrawal.reference} rejected: {withdrawal.rejection_reason}")
        await self._balance_changed(withdrawal.user_id, "withdrawal_rejected", withdrawal)
        return withdrawal

    # ========================================================================
    # Queries
    # ========================================================================

    async def get(self, withdrawal_id: uuid.UUID) -> WithdrawalRequest:
        result = await self.db.execute(
            select(WithdrawalRequest).where(WithdrawalRequest.id == withdrawal_id)
        )
        withdrawal = result.scalar_one_or_none()
        if not withdrawal:
            raise NotFoundError("Withdrawal not found", {"withdrawal_id": str(withdrawal_id)})
        return withdrawal

    async def get_for_update(self, withdrawal_id: uuid.UUID) -> WithdrawalRequest:
        """Reload and row-lock a withdrawal. Call inside the affiliate's section."""
        await self.db.flush()
        result = await self.db.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.id == withdrawal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        withdrawal = result.scalar_one_or_none()
        if not withdrawal:
            raise NotFoundError("Withdrawal not found", {"withdrawal_id": str(withdrawal_id)})
        return withdrawal

    async def get_by_reference(self, reference: str) -> WithdrawalRequest:
        result = await self.db.execute(
            select(WithdrawalRequest).where(WithdrawalRequest.reference == reference)
        )
        withdrawal = result.scalar_one_or_none()
        if not withdrawal:
            raise NotFoundError("Withdrawal not found", {"reference": reference})
        return withdrawal

    async def list(
        self,
        status: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
        provider: Optional[str] = None,
        currency: Optional[str] = None,
        batch_id: Optional[uuid.UUID] = None,
        unbatched: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[WithdrawalRequest], int]:
        """List withdrawals with filters and pagination, newest first."""
        filters = []
        if status:
            filters.append(WithdrawalRequest.status == status)
        if user_id:
            filters.append(WithdrawalRequest.user_id == user_id)
        if provider:
            filters.append(WithdrawalRequest.provider == provider.upper())
        if currency:
            filters.append(WithdrawalRequest.currency == currency.upper())
        if batch_id:
            filters.append(WithdrawalRequest.batch_id == batch_id)
        if unbatched:
            filters.append(WithdrawalRequest.batch_id.is_(None))

        query = select(WithdrawalRequest)
        count_query = select(func.count(WithdrawalRequest.id))
        if filters:
            query = query.where(and_(*filters))
            count_query = count_query.where(and_(*filters))

        total_result = await self.db.execute(count_query)
        total = total_result.scalar()

        query = query.order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id)
        query = query.offset((page - 1) * page_size).limit(page_size)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def stats(self) -> dict:
        """Dashboard counters for the admin surface."""
        pending_count, pending_amount = await self._count_and_sum(
            WithdrawalRequest.status == WithdrawalStatus.PENDING.value
        )
        approved_count, approved_amount = await self._count_and_sum(
            WithdrawalRequest.status == WithdrawalStatus.APPROVED.value,
            WithdrawalRequest.batch_id.is_(None),
        )
        processing_count, processing_amount = await self._count_and_sum(
            WithdrawalRequest.status == WithdrawalStatus.PROCESSING.value
        )
        failed_count, failed_amount = await self._count_and_sum(
            WithdrawalRequest.status == WithdrawalStatus.FAILED.value
        )
        week_ago = datetime.now(timezone.utc) - timedelta(days=7)
        paid_count, paid_amount = await self._count_and_sum(
            WithdrawalRequest.status == WithdrawalStatus.PAID.value,
            WithdrawalRequest.paid_at >= week_ago,
        )

        return {
            "pending_count": pending_count,
            "pending_amount_usd": pending_amount,
            "approved_count": approved_count,
            "approved_amount_usd": approved_amount,
            "processing_count": processing_count,
            "processing_amount_usd": processing_amount,
            "failed_count": failed_count,
            "failed_amount_usd": failed_amount,
            "paid_this_week": paid_count,
            "paid_amount_this_week_usd": paid_amount,
        }

    async def get_audit_trail(self, withdrawal_id: uuid.UUID):
        await self.get(withdrawal_id)
        return await self.audit.get_withdrawal_trail(withdrawal_id)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _count_and_sum(self, *conditions) -> Tuple[int, Decimal]:
        result = await self.db.execute(
            select(
                func.count(WithdrawalRequest.id),
                func.coalesce(func.sum(WithdrawalRequest.amount_usd), 0),
            ).where(and_(*conditions))
        )
        count, amount = result.one()
        return count, quantize_money(amount or 0)

    async def _balance_changed(self, user_id: uuid.UUID, reason: str, withdrawal: WithdrawalRequest) -> None:
        await self.events.emit(EventType.BALANCE_CHANGED, {
            "affiliate_id": str(user_id),
            "reason": reason,
            "withdrawal_id": str(withdrawal.id),
            "reference": withdrawal.reference,
        })

    @staticmethod
    def _validate_amount(amount_usd) -> Decimal:
        try:
            amount = quantize_money(amount_usd)
        except (ArithmeticError, ValueError, TypeError):
            raise ValidationError(f"Invalid withdrawal amount: {amount_usd}")
        minimum = quantize_money(settings.MINIMUM_WITHDRAWAL_USD)
        if amount < minimum:
            raise ValidationError(
                f"Minimum withdrawal amount is ${minimum} USD",
                {"amount_usd": str(amount), "minimum_usd": str(minimum)},
            )
        return amount

    @staticmethod
    def _validate_channel(payout_channel) -> str:
        value = getattr(payout_channel, "value", payout_channel)
        try:
            return PayoutChannel(value).value
        except ValueError:
            raise ValidationError(
                f"Unknown payout channel: {value}",
                {"allowed": [c.value for c in PayoutChannel]},
            )

    @staticmethod
    def _validate_provider(provider: str) -> str:
        code = provider.strip().upper()
        if code not in settings.PAYOUT_PROVIDERS:
            raise ValidationError(
                f"Unknown payout provider: {provider}",
                {"allowed": settings.PAYOUT_PROVIDERS},
            )
        return code

    @staticmethod
    def _check_withdrawal_window(now: Optional[datetime] = None) -> None:
        weekday = settings.WITHDRAWAL_WEEKDAY
        if weekday is None:
            return
        now = now or datetime.now(timezone.utc)
        if now.weekday() != weekday:
            raise ValidationError(
                f"Withdrawals can only be submitted on {WEEKDAY_NAMES[weekday]}s",
                {"withdrawal_weekday": weekday},
            )
