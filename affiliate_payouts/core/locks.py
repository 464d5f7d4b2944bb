"""
Per-affiliate serialization of balance check-and-mutate sections.

Two layers:
- an in-process asyncio.Lock per affiliate, so concurrent requests in one
  worker queue up instead of racing on the same session pool;
- SELECT ... FOR UPDATE on the affiliate_accounts row, so separate worker
  processes against PostgreSQL serialize as well.

Usage:

    async with affiliate_locks.hold(db, affiliate_id):
        balance = await ledger.available_balance(affiliate_id)
        ...  # mutate

The section commits on success and rolls back on any exception. A rollback
expires every instance loaded in the session, so callers must not read
attributes of objects they held before a failed section without refreshing
them first.

Nested ``hold`` calls for an affiliate already held by the current task
join the outer section and leave commit/rollback to it.

``batch_locks`` is a plain in-process registry keyed by batch id. It is
always taken before any affiliate section, never inside one.
"""
import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, FrozenSet

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_held_affiliates: ContextVar[FrozenSet[uuid.UUID]] = ContextVar(
    "held_affiliates", default=frozenset()
)


class KeyedLocks:
    """In-process asyncio locks keyed by entity id."""

    def __init__(self):
        # asyncio.Lock binds to the loop it first waits on, so keep one
        # registry per running loop. Locks are weakly held: an entry lives
        # only while a holder or waiter references it.
        self._registries: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]]" = (
            weakref.WeakKeyDictionary()
        )

    def _lock_for(self, key: uuid.UUID) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        registry = self._registries.get(loop)
        if registry is None:
            registry = weakref.WeakValueDictionary()
            self._registries[loop] = registry
        lock = registry.get(key)
        if lock is None:
            lock = asyncio.Lock()
            registry[key] = lock
        return lock

    def lock(self, key: uuid.UUID) -> asyncio.Lock:
        return self._lock_for(key)


class AffiliateLocks(KeyedLocks):
    """Per-affiliate lock sections."""

    def is_held(self, affiliate_id: uuid.UUID) -> bool:
        """True if the current task is inside a section for this affiliate."""
        return affiliate_id in _held_affiliates.get()

    @asynccontextmanager
    async def hold(self, db: AsyncSession, affiliate_id: uuid.UUID) -> AsyncIterator[None]:
        if self.is_held(affiliate_id):
            yield
            return

        lock = self._lock_for(affiliate_id)
        async with lock:
            token = _held_affiliates.set(_held_affiliates.get() | {affiliate_id})
            try:
                await _lock_account_row(db, affiliate_id)
                yield
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
            finally:
                _held_affiliates.reset(token)


async def _lock_account_row(db: AsyncSession, affiliate_id: uuid.UUID) -> None:
    """Lock the affiliate's account row, creating it on first use."""
    from affiliate_payouts.models.affiliate import AffiliateAccount

    result = await db.execute(
        select(AffiliateAccount)
        .where(AffiliateAccount.id == affiliate_id)
        .with_for_update()
    )
    account = result.scalar_one_or_none()
    if account is None:
        db.add(AffiliateAccount(id=affiliate_id))
        await db.flush()
        logger.info(f"Created account row for affiliate {affiliate_id}")


# Process-wide registries
affiliate_locks = AffiliateLocks()
batch_locks = KeyedLocks()
