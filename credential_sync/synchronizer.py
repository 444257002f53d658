"""
Fan-Out Synchronizer — push one credential hash to every backing store of a
user and produce a single verdict.

Every store is always attempted (no fail-fast). Outcomes are collected from
all stores before the verdict is computed and the ``password_sync`` audit
entry is written, so no outcome is ever dropped. Concurrency across stores is
bounded by a semaphore.

Callers can tell the three cases apart:
- all stores updated: ``SyncResult.success`` is True;
- some stores updated: ``success`` is False and ``failed_stores`` is filled;
- rejected before any store was touched: ``NoBackingStoresError`` is raised.
"""
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .directory import DirectoryStore, record_audit
from .exceptions import NoBackingStoresError, PersistenceError
from .models import (
    AuditEntry,
    AuditStatus,
    BackingStore,
    Operation,
    StoreOutcome,
    StoreStatus,
    SyncResult,
    UserEntry,
)
from .propagation import PropagationUnit

logger = logging.getLogger("credsync.sync")

DEFAULT_MAX_CONCURRENCY = 8


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class FanOutSynchronizer:
    """Orchestrate credential propagation across a user's backing stores.

    Args:
        directory: Registry of users and audit log.
        propagation: Per-store propagation unit.
        max_concurrency: Maximum number of stores updated at once.
        per_user_lock: Serialize concurrent syncs of the same user inside
            this process. Off by default (last writer wins).
    """

    def __init__(
        self,
        directory: DirectoryStore,
        propagation: PropagationUnit,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        per_user_lock: bool = False,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._directory = directory
        self._propagation = propagation
        self._max_concurrency = max_concurrency
        self._per_user_lock = per_user_lock
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def sync_to_all_stores(self, user_id: str, hashed_value: str) -> SyncResult:
        """Propagate ``hashed_value`` to every backing store of ``user_id``.

        Raises:
            NoBackingStoresError: The user is unknown or has no stores.
        """
        return await self._sync(user_id, hashed_value, deadline=None)

    sync_password_to_all_stores = sync_to_all_stores

    async def sync_with_timeout(
        self, user_id: str, hashed_value: str, timeout: float,
    ) -> SyncResult:
        """Like ``sync_to_all_stores`` but bounded by ``timeout`` seconds.

        Stores still in flight at the deadline are cancelled and reported
        as failed outcomes.
        """
        return await self._sync(user_id, hashed_value, deadline=timeout)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _serialized(self, user_id: str) -> AsyncIterator[None]:
        """Hold the user's lock when per-user locking is on.

        A lock is dropped once no sync holds or waits for it.
        """
        if not self._per_user_lock:
            yield
            return
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._user_locks[user_id]

    async def _sync(
        self, user_id: str, hashed_value: str, deadline: Optional[float],
    ) -> SyncResult:
        started = time.monotonic()
        try:
            async with self._serialized(user_id):
                user = await self._directory.get_user(user_id)
                if user is None or not user.backing_stores:
                    raise NoBackingStoresError(user_id)
                logger.info(
                    "Starting password sync: user=%s stores=%d",
                    user_id, len(user.backing_stores),
                )
                outcomes = await self._fan_out(user, hashed_value, deadline)
                await self._record_statuses(user_id, outcomes)
        except Exception as err:
            duration = _elapsed_ms(started)
            logger.error(
                "Password sync failed: user=%s error=%s duration=%dms",
                user_id, err, duration,
            )
            await record_audit(self._directory, AuditEntry(
                user_id=user_id,
                operation=Operation.PASSWORD_SYNC,
                status=AuditStatus.ERROR,
                error=str(err),
                duration_ms=duration,
            ))
            raise

        result = SyncResult.from_outcomes(outcomes, _elapsed_ms(started))
        await record_audit(self._directory, AuditEntry(
            user_id=user_id,
            operation=Operation.PASSWORD_SYNC,
            status=AuditStatus.SUCCESS if result.success else AuditStatus.PARTIAL_FAILURE,
            per_store_outcomes=outcomes,
            duration_ms=result.duration_ms,
            details={
                "stores": user.store_names,
                "success_count": result.success_count,
                "total_count": result.total_count,
            },
        ))
        if result.success:
            logger.info(
                "Password synced to all stores: user=%s count=%d duration=%dms",
                user_id, result.success_count, result.duration_ms,
            )
        else:
            logger.warning(
                "Password sync completed with failures: user=%s success=%d/%d failed=%s",
                user_id, result.success_count, result.total_count,
                [o.store_name for o in result.failed_stores],
            )
        return result

    async def _fan_out(
        self, user: UserEntry, hashed_value: str, deadline: Optional[float],
    ) -> list[StoreOutcome]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _apply(store: BackingStore) -> StoreOutcome:
            async with semaphore:
                return await self._propagation.apply(
                    store.store_name, store.record_id, hashed_value,
                )

        tasks = [asyncio.create_task(_apply(store)) for store in user.backing_stores]
        try:
            _, pending = await asyncio.wait(tasks, timeout=deadline)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: list[StoreOutcome] = []
        for store, task in zip(user.backing_stores, tasks):
            if task.cancelled() or task in pending:
                outcomes.append(StoreOutcome(
                    store_name=store.store_name, record_id=store.record_id,
                    success=False, error="Cancelled: sync deadline exceeded",
                ))
            elif task.exception() is not None:
                outcomes.append(StoreOutcome(
                    store_name=store.store_name, record_id=store.record_id,
                    success=False, error=str(task.exception()),
                ))
            else:
                outcomes.append(task.result())
        return outcomes

    async def _record_statuses(self, user_id: str, outcomes: list[StoreOutcome]) -> None:
        statuses = {
            o.store_name: StoreStatus.SYNCED if o.success else StoreStatus.FAILED
            for o in outcomes
        }
        try:
            await self._directory.set_store_statuses(user_id, statuses)
        except PersistenceError as err:
            logger.error("Failed to record store statuses: user=%s error=%s", user_id, err)
