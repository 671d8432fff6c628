"""
Concurrency Control Service
Per-owner mutual exclusion for reconciliation.

Two layers:
- an in-process asyncio lock per owner, so concurrent requests served by one
  worker queue up instead of racing on read-merge-upsert
- a PostgreSQL transaction-scoped advisory lock per owner, so separate worker
  processes serialize too (released automatically on commit/rollback)
"""
import asyncio
import hashlib
import logging
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class ConcurrencyController:

    def __init__(self):
        # asyncio locks are bound to the loop that first waits on them
        self._locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = (
            weakref.WeakKeyDictionary()
        )

    def _generate_lock_key(self, owner_id: str, operation: str = "reconcile") -> int:
        """
        Generate a deterministic integer lock key from owner_id and operation.
        PostgreSQL advisory locks require integer keys.
        """
        hash_input = f"owner:{owner_id}:operation:{operation}"
        hash_digest = hashlib.sha256(hash_input.encode()).hexdigest()
        # Convert to 32-bit signed integer
        lock_key = int(hash_digest[:8], 16)
        if lock_key > 2147483647:
            lock_key = lock_key - 4294967296
        return abs(lock_key)

    def _lock_for(self, owner_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        locks = self._locks.setdefault(loop, {})
        lock = locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            locks[owner_id] = lock
        return lock

    @asynccontextmanager
    async def owner_lock(self, owner_id: str) -> AsyncIterator[None]:
        """Hold the in-process lock for one owner."""
        lock = self._lock_for(owner_id)
        if lock.locked():
            logger.info(f"Owner {owner_id} busy; waiting for in-flight reconcile")
        async with lock:
            yield

    async def acquire_transaction_lock(
        self, session: AsyncSession, owner_id: str, operation: str = "reconcile"
    ) -> bool:
        """
        Take the owner's advisory lock for the current transaction.
        No-op (returns False) on backends without advisory locks.
        """
        bind = session.get_bind()
        if bind.dialect.name != "postgresql":
            return False
        lock_key = self._generate_lock_key(owner_id, operation)
        await session.execute(
            text("SELECT pg_advisory_xact_lock(:lock_key)"),
            {"lock_key": lock_key},
        )
        logger.debug(f"Acquired advisory xact lock {lock_key} for owner {owner_id} operation {operation}")
        return True


# Global instance
concurrency_controller = ConcurrencyController()
