"""
Directory Record Store — registry of users, their backing stores, and the
audit log of every credential operation.

Two documents are kept in a ``DocumentStorage``:
- ``registry``: ``{"users": {user_id: UserEntry}, "metadata": {...}}``
- ``audit``: ``{"logs": [AuditEntry, ...], "metadata": {...}}``

Reads go through a ``TTLCache`` owned by the instance. Every write replaces
the cached document, so read-after-write from the same process is consistent.
Processes do not share caches.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Optional

from ..exceptions import PersistenceError, UserNotFoundError
from ..models import (
    AuditEntry,
    AuditStatus,
    BackingStore,
    Operation,
    StoreStatus,
    UserEntry,
    utcnow,
)
from .cache import TTLCache
from .storage import DocumentStorage, MemoryStorage

logger = logging.getLogger("credsync.directory")

REGISTRY_DOCUMENT = "registry"
AUDIT_DOCUMENT = "audit"
DOCUMENT_VERSION = "1.0.0"

# Fields of UserEntry callers may not overwrite through upsert_user.
_PROTECTED_FIELDS = frozenset({"user_id", "created_at", "updated_at"})


def _empty_registry() -> dict[str, Any]:
    return {
        "users": {},
        "metadata": {
            "version": DOCUMENT_VERSION,
            "last_updated": None,
            "total_users": 0,
        },
    }


def _empty_audit() -> dict[str, Any]:
    return {
        "logs": [],
        "metadata": {
            "version": DOCUMENT_VERSION,
            "total_logs": 0,
            "last_log_id": None,
        },
    }


def _store_document(store: Any) -> dict[str, Any]:
    if not isinstance(store, BackingStore):
        store = BackingStore.model_validate(store)
    return store.model_dump(mode="json")


class DirectoryStore:
    """Persistent registry of users and their backing-store enrollments.

    Args:
        storage: Document backend; defaults to an in-memory store.
        cache: Read cache; defaults to a 30 second ``TTLCache``.
    """

    def __init__(
        self,
        storage: Optional[DocumentStorage] = None,
        cache: Optional[TTLCache] = None,
    ):
        self._storage = storage or MemoryStorage()
        self._cache = cache if cache is not None else TTLCache(ttl=30.0)
        self._registry_lock = asyncio.Lock()
        self._audit_lock = asyncio.Lock()

    @property
    def cache(self) -> TTLCache:
        return self._cache

    # ------------------------------------------------------------------
    # Document helpers
    # ------------------------------------------------------------------

    async def _read_registry(self, fresh: bool = False) -> dict[str, Any]:
        if not fresh:
            cached = self._cache.get(REGISTRY_DOCUMENT)
            if cached is not None:
                return cached
        registry = await self._storage.load(REGISTRY_DOCUMENT)
        if registry is None:
            registry = _empty_registry()
        self._cache.set(REGISTRY_DOCUMENT, registry)
        return registry

    async def _write_registry(self, registry: dict[str, Any]) -> None:
        metadata = registry.setdefault("metadata", {})
        metadata["last_updated"] = utcnow().isoformat()
        metadata["total_users"] = len(registry.get("users", {}))
        self._cache.invalidate(REGISTRY_DOCUMENT)
        await self._storage.save(REGISTRY_DOCUMENT, registry)
        self._cache.set(REGISTRY_DOCUMENT, registry)

    async def _read_audit(self, fresh: bool = False) -> dict[str, Any]:
        if not fresh:
            cached = self._cache.get(AUDIT_DOCUMENT)
            if cached is not None:
                return cached
        logs = await self._storage.load(AUDIT_DOCUMENT)
        if logs is None:
            logs = _empty_audit()
        self._cache.set(AUDIT_DOCUMENT, logs)
        return logs

    async def _write_audit(self, logs: dict[str, Any]) -> None:
        logs.setdefault("metadata", {})["total_logs"] = len(logs["logs"])
        self._cache.invalidate(AUDIT_DOCUMENT)
        await self._storage.save(AUDIT_DOCUMENT, logs)
        self._cache.set(AUDIT_DOCUMENT, logs)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[UserEntry]:
        registry = await self._read_registry()
        data = registry["users"].get(user_id)
        return UserEntry.model_validate(data) if data is not None else None

    async def upsert_user(self, user_id: str, /, **fields: Any) -> UserEntry:
        """Merge ``fields`` into the user's entry, creating it if absent."""
        async with self._registry_lock:
            registry = await self._read_registry(fresh=True)
            current = registry["users"].get(user_id)
            if current is None:
                current = UserEntry(user_id=user_id).model_dump(mode="json")
            for key, value in fields.items():
                if key in _PROTECTED_FIELDS:
                    continue
                if key == "backing_stores":
                    value = [_store_document(s) for s in value]
                current[key] = value
            entry = await self._put_user(registry, current)
        logger.debug("Registry upsert: user=%s", user_id)
        return entry

    async def _put_user(self, registry: dict[str, Any], current: dict[str, Any]) -> UserEntry:
        current["updated_at"] = utcnow().isoformat()
        entry = UserEntry.model_validate(current)
        registry["users"][entry.user_id] = entry.model_dump(mode="json")
        await self._write_registry(registry)
        return entry

    async def _update_stores(
        self,
        user_id: str,
        change: Callable[[UserEntry], Optional[list[BackingStore]]],
    ) -> Optional[UserEntry]:
        """Rewrite the user's backing stores from the stored entry.

        ``change`` receives the entry read under the registry lock and
        returns the new store list, or None to leave the entry untouched.
        Returns None when the user is not in the registry.
        """
        async with self._registry_lock:
            registry = await self._read_registry(fresh=True)
            current = registry["users"].get(user_id)
            if current is None:
                return None
            user = UserEntry.model_validate(current)
            stores = change(user)
            if stores is None:
                return user
            current["backing_stores"] = [_store_document(s) for s in stores]
            return await self._put_user(registry, current)

    async def add_backing_store(self, user_id: str, store: BackingStore) -> UserEntry:
        """Enroll the user in ``store``, replacing an entry with the same name.

        Raises:
            UserNotFoundError: If the user is not in the registry.
        """
        def _add(user: UserEntry) -> list[BackingStore]:
            stores = [s for s in user.backing_stores if s.store_name != store.store_name]
            stores.append(store)
            return stores

        entry = await self._update_stores(user_id, _add)
        if entry is None:
            raise UserNotFoundError(user_id, f"User {user_id} not found in registry")
        logger.info(
            "Backing store enrolled: user=%s store=%s", user_id, store.store_name,
        )
        return entry

    async def remove_backing_store(self, user_id: str, store_name: str) -> UserEntry:
        entry = await self._update_stores(
            user_id,
            lambda user: [s for s in user.backing_stores if s.store_name != store_name],
        )
        if entry is None:
            raise UserNotFoundError(user_id, f"User {user_id} not found in registry")
        return entry

    async def set_store_status(
        self, user_id: str, store_name: str, status: StoreStatus,
    ) -> Optional[UserEntry]:
        """Record the sync status of one backing store.

        Returns None when the user or the store enrollment no longer exists.
        """
        entry = await self.set_store_statuses(user_id, {store_name: status})
        if entry is None or entry.get_store(store_name) is None:
            return None
        return entry

    async def set_store_statuses(
        self, user_id: str, statuses: dict[str, StoreStatus],
    ) -> Optional[UserEntry]:
        """Record the sync status of several backing stores in one write.

        Stores enrolled or removed since the statuses were computed are left
        as they are now.
        """
        def _apply(user: UserEntry) -> Optional[list[BackingStore]]:
            if not any(name in statuses for name in user.store_names):
                return None
            return [
                s.model_copy(update={"status": statuses[s.store_name]})
                if s.store_name in statuses else s
                for s in user.backing_stores
            ]

        return await self._update_stores(user_id, _apply)

    async def delete_user(self, user_id: str) -> None:
        """Remove the user from the registry. Absent users are ignored."""
        async with self._registry_lock:
            registry = await self._read_registry(fresh=True)
            if user_id not in registry["users"]:
                return
            del registry["users"][user_id]
            await self._write_registry(registry)
        logger.info("User deleted from registry: user=%s", user_id)

    async def list_users(self) -> list[UserEntry]:
        registry = await self._read_registry()
        return [UserEntry.model_validate(u) for u in registry["users"].values()]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        """Append an audit entry, assigning its id and timestamp.

        Raises:
            PersistenceError: If the audit document cannot be stored.
        """
        stamped = entry.stamped()
        async with self._audit_lock:
            logs = await self._read_audit(fresh=True)
            logs["logs"].append(stamped.model_dump(mode="json"))
            logs["metadata"]["last_log_id"] = stamped.log_id
            await self._write_audit(logs)
        logger.info(
            "Audit entry added: id=%s operation=%s status=%s",
            stamped.log_id, stamped.operation.value, stamped.status.value,
        )
        return stamped

    async def get_logs_for_user(self, user_id: str, limit: int = 50) -> list[AuditEntry]:
        return await self.query_audit(user_id=user_id, limit=limit)

    async def query_audit(
        self,
        user_id: Optional[str] = None,
        operation: Optional[Operation] = None,
        status: Optional[AuditStatus] = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        """Return audit entries matching the filters, newest first."""
        logs = await self._read_audit()
        entries = [AuditEntry.model_validate(e) for e in logs["logs"]]
        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]
        if operation is not None:
            entries = [e for e in entries if e.operation == Operation(operation)]
        if status is not None:
            entries = [e for e in entries if e.status == AuditStatus(status)]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    async def prune_audit(self, days_to_keep: int = 30) -> int:
        """Drop audit entries older than ``days_to_keep`` days.

        Returns:
            Number of entries removed.
        """
        cutoff = utcnow() - timedelta(days=days_to_keep)
        async with self._audit_lock:
            logs = await self._read_audit(fresh=True)
            before = len(logs["logs"])
            logs["logs"] = [
                e for e in logs["logs"]
                if AuditEntry.model_validate(e).timestamp >= cutoff
            ]
            removed = before - len(logs["logs"])
            if removed:
                await self._write_audit(logs)
        logger.info("Old audit entries pruned: removed=%d days=%d", removed, days_to_keep)
        return removed


async def record_audit(directory: DirectoryStore, entry: AuditEntry) -> Optional[AuditEntry]:
    """Append ``entry`` without letting a storage failure reach the caller.

    Credential operations call this: an unavailable audit store is logged at
    error level and otherwise ignored.
    """
    try:
        return await directory.append_audit(entry)
    except PersistenceError as err:
        logger.error(
            "Audit persistence failed: user=%s operation=%s error=%s",
            entry.user_id, entry.operation.value, err,
        )
        return None
