"""
Shared fixtures for the payout engine tests.

Every test gets its own SQLite file (aiosqlite), a fresh EventBus, fresh
lock registries and a ProviderRegistry holding in-process fake adapters,
so no state leaks between tests.
"""
import uuid
from decimal import Decimal
from typing import Optional

import pytest

from affiliate_payouts.core.events import EventBus
from affiliate_payouts.core.locks import AffiliateLocks, KeyedLocks
from affiliate_payouts.database import build_engine, build_session_factory, init_db
from affiliate_payouts.services.batch_orchestrator import BatchOrchestrator
from affiliate_payouts.services.commission_ledger import CommissionLedger
from affiliate_payouts.services.currency_normalizer import CurrencyNormalizer, RateTable
from affiliate_payouts.services.providers import ProviderRegistry
from affiliate_payouts.services.withdrawal_service import WithdrawalRequestManager

from tests.factories import BANK_DETAILS, TEST_RATES, FakeTransferAdapter


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payouts.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def locks():
    return AffiliateLocks()


@pytest.fixture
def normalizer():
    return CurrencyNormalizer(RateTable(TEST_RATES), unknown_policy="reject")


@pytest.fixture
def adapter():
    return FakeTransferAdapter()


@pytest.fixture
def registry(adapter):
    return ProviderRegistry({"PAYSTACK": adapter, "KORA": adapter})


@pytest.fixture
def ledger(db, normalizer, bus, locks):
    return CommissionLedger(db, normalizer=normalizer, events=bus, locks=locks)


@pytest.fixture
def withdrawals(db, ledger, normalizer, bus, locks):
    return WithdrawalRequestManager(db, ledger=ledger, normalizer=normalizer, events=bus, locks=locks)


@pytest.fixture
def orchestrator(db, ledger, registry, normalizer, bus, locks):
    return BatchOrchestrator(
        db,
        registry=registry,
        ledger=ledger,
        normalizer=normalizer,
        events=bus,
        locks=locks,
        batch_lock_registry=KeyedLocks(),
        timeout_seconds=0.2,
        max_attempts=3,
    )


@pytest.fixture
def fund(ledger):
    """Record and approve a commission so the affiliate has balance."""

    async def _fund(affiliate_id: uuid.UUID, amount_usd, payment_id: Optional[str] = None):
        commission, _ = await ledger.record_commission(
            affiliate_id=affiliate_id,
            source="referral_membership",
            amount=Decimal(str(amount_usd)),
            currency="USD",
            rate=Decimal("0.25"),
            linked_payment_id=payment_id or f"pay_{uuid.uuid4().hex[:12]}",
        )
        return await ledger.approve(commission.id)

    return _fund


@pytest.fixture
def approved_withdrawal(withdrawals):
    """Create and approve a withdrawal request."""

    async def _create(
        affiliate_id: uuid.UUID,
        amount_usd,
        currency: str = "USD",
        provider: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        withdrawal = await withdrawals.create_request(
            user_id=affiliate_id,
            amount_usd=Decimal(str(amount_usd)),
            payout_channel="bank",
            account_details=details or BANK_DETAILS,
            currency=currency,
            provider=provider,
        )
        return await withdrawals.approve(withdrawal.id)

    return _create
