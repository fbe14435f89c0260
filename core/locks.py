"""
core/locks.py — Per-Aggregate Serialization
============================================
Zones and vouchers are the only hot shared-mutation points. Every
check-and-mutate on one of them runs inside `aggregate_lock(kind, id)`, held
across the database commit, so two requests in this process never race on the
same balance. Cross-process safety comes from the version columns on the
models (StaleDataError) and SELECT ... FOR UPDATE on databases that support it.

Lock order when two are needed: proof → zone, voucher → zone.
"""

import asyncio
import logging
import weakref
from contextlib import AsyncExitStack, asynccontextmanager

from sqlalchemy.orm.exc import StaleDataError

from config import settings
from core.errors import AidLedgerError, ConcurrentUpdateConflict
from core.ledger import anchor_pending, discard_anchors

logger = logging.getLogger("aidledger.locks")


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self.get(key)
        async with lock:
            yield


_registry = KeyedLocks()


def aggregate_lock(kind: str, entity_id: str):
    """
    Usage:
        async with aggregate_lock("voucher", voucher_id):
            ...load, check, mutate, commit...
    """
    return _registry.hold(f"{kind}:{entity_id}")


async def serialized_commit(db, keys, operation):
    """
    Run `operation()` and commit while holding the locks for `keys`
    (a list of (kind, id) pairs, acquired in order). Ledger blocks queued by
    the operation are written only after its commit succeeds.

    - StaleDataError (another process bumped the version) → rollback and
      re-run, up to MAX_COMMIT_RETRIES, then ConcurrentUpdateConflict.
    - AidLedgerError with `persist = True` → commit what the operation staged
      (e.g. a Failed redemption record) and re-raise.
    - Any other exception → rollback and re-raise.
    """
    async with AsyncExitStack() as stack:
        for kind, key in keys:
            await stack.enter_async_context(aggregate_lock(kind, key))
        for attempt in range(1, settings.MAX_COMMIT_RETRIES + 1):
            try:
                result = await operation()
                await db.commit()
            except StaleDataError:
                await _rollback(db)
                logger.warning(f"Stale write on {keys} (attempt {attempt}), retrying")
                continue
            except AidLedgerError as exc:
                if getattr(exc, "persist", False):
                    await db.commit()
                    await anchor_pending(db)
                else:
                    await _rollback(db)
                raise
            except Exception:
                await _rollback(db)
                raise
            await anchor_pending(db)
            return result
        raise ConcurrentUpdateConflict(keys=[f"{k}:{v}" for k, v in keys])


async def _rollback(db):
    await db.rollback()
    dropped = discard_anchors(db)
    if dropped:
        logger.debug(f"Dropped {dropped} unanchored event(s) after rollback")
