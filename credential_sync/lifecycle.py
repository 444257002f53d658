"""
Credential Lifecycle — change-password and reset-password operations.

change_password (self-service):
    validate new secret → verify current secret against the authoritative
    store → hash once → fan-out → audit → result
reset_password (administrative):
    validate new secret → hash once → fan-out → audit → result

Both record exactly one audit entry of their own operation type. Any
exception raised by the hasher, the verification step or the synchronizer
produces an ``error`` audit entry and is re-raised. A rejected proof is
audited as ``failed`` with ``reason=invalid_current_password``.

Vault mirroring is composed here and only here: ``*_with_vault`` variants
mirror the new hash after primary propagation. A mirror failure is reported
in ``vault_result`` and leaves ``success`` untouched unless the caller
passes ``require_vault=True``.

Security Note:
    Never log plaintext passwords or hashes.
"""
import time
import logging
from typing import Any, Optional

from .clients import StoreClientRegistry
from .conf import SyncSettings, SystemCredentials
from .directory import DirectoryStore, JSONFileStorage, TTLCache, record_audit
from .directory.storage import DocumentStorage
from .exceptions import (
    CredentialSyncError,
    InvalidCredentialError,
    NoBackingStoresError,
    UserNotFoundError,
    ValidationError,
)
from .hasher import ahash_password, averify_password, validate_secret
from .models import (
    AuditEntry,
    AuditStatus,
    CredentialResult,
    Operation,
    SyncResult,
    UserEntry,
)
from .propagation import PropagationUnit
from .synchronizer import FanOutSynchronizer
from .vault import VaultMirror

logger = logging.getLogger("credsync.lifecycle")

INVALID_CURRENT_PASSWORD = "invalid_current_password"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class CredentialLifecycle:
    """Self-service and administrative password operations.

    Args:
        directory: Registry of users and audit log.
        propagation: Per-store propagation unit (its clients are also used
            to read the current hash from the authoritative store).
        synchronizer: Fan-out synchronizer.
        authoritative_store: Store whose hash is the source of truth when
            verifying the current password.
        vault_mirror: Optional vault mirror used by the ``*_with_vault``
            operations.
    """

    def __init__(
        self,
        directory: DirectoryStore,
        propagation: PropagationUnit,
        synchronizer: FanOutSynchronizer,
        authoritative_store: str = "primary",
        vault_mirror: Optional[VaultMirror] = None,
    ):
        self._directory = directory
        self._propagation = propagation
        self._synchronizer = synchronizer
        self.authoritative_store = authoritative_store
        self._vault = vault_mirror

    @property
    def directory(self) -> DirectoryStore:
        return self._directory

    @property
    def synchronizer(self) -> FanOutSynchronizer:
        return self._synchronizer

    @property
    def vault_mirror(self) -> Optional[VaultMirror]:
        return self._vault

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _audit(self, entry: AuditEntry) -> None:
        await record_audit(self._directory, entry)

    async def _require_user(self, user_id: str) -> UserEntry:
        user = await self._directory.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not user.backing_stores:
            raise NoBackingStoresError(user_id)
        return user

    async def _current_hash(self, user: UserEntry) -> str:
        store = user.get_store(self.authoritative_store)
        if store is None:
            raise UserNotFoundError(
                user.user_id,
                f"User {user.user_id} not found in {self.authoritative_store} store",
            )
        client = self._propagation.registry.get(store.store_name)
        await self._propagation.ensure_authenticated(store.store_name, client)
        hashed = await client.get_credential(store.record_id)
        if not hashed:
            raise CredentialSyncError("Cannot verify current password")
        return hashed

    async def _mirror(self, user_id: str, hashed_value: str) -> dict[str, Any]:
        if self._vault is None:
            return {"success": False, "error": "Vault mirror is not configured"}
        try:
            user = await self._require_user(user_id)
            return await self._vault.store_for_all(user_id, user.backing_stores, hashed_value)
        except Exception as err:  # mirror failures stay out of the primary result
            logger.error("Vault mirror failed: user=%s error=%s", user_id, err)
            return {"success": False, "error": str(err)}

    def _details(
        self, metadata: dict[str, Any], sync_result: SyncResult,
        vault_result: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        details = {
            **metadata,
            "success_count": sync_result.success_count,
            "total_count": sync_result.total_count,
            "failed_stores": [o.store_name for o in sync_result.failed_stores],
        }
        if vault_result is not None:
            details["vault"] = {
                k: v for k, v in vault_result.items() if k != "results"
            }
        return details

    async def _complete(
        self,
        operation: Operation,
        user_id: str,
        hashed_value: str,
        metadata: dict[str, Any],
        started: float,
        mirror: bool,
        require_vault: bool,
        message: str,
    ) -> CredentialResult:
        sync_result = await self._synchronizer.sync_to_all_stores(user_id, hashed_value)
        vault_result = await self._mirror(user_id, hashed_value) if mirror else None

        success = sync_result.success
        if require_vault and vault_result is not None:
            success = success and bool(vault_result.get("success"))

        await self._audit(AuditEntry(
            user_id=user_id,
            operation=operation,
            status=AuditStatus.SUCCESS if success else AuditStatus.PARTIAL_FAILURE,
            per_store_outcomes=sync_result.outcomes,
            duration_ms=_elapsed_ms(started),
            details=self._details(metadata, sync_result, vault_result),
        ))
        if not success:
            message = f"{message} with failures ({sync_result.message})"
        return CredentialResult(
            success=success,
            message=message,
            sync_result=sync_result,
            vault_result=vault_result,
        )

    async def _fail(
        self, operation: Operation, user_id: str, err: Exception,
        metadata: dict[str, Any], started: float,
    ) -> None:
        duration = _elapsed_ms(started)
        logger.error(
            "%s failed: user=%s error=%s duration=%dms",
            operation.value, user_id, err, duration,
        )
        await self._audit(AuditEntry(
            user_id=user_id,
            operation=operation,
            status=AuditStatus.ERROR,
            error=str(err),
            duration_ms=duration,
            details=metadata,
        ))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        metadata: Optional[dict[str, Any]] = None,
        *,
        mirror_to_vault: bool = False,
        require_vault: bool = False,
    ) -> CredentialResult:
        """Change a user's password after verifying the current one.

        Raises:
            WeakSecretError: The new password is too short.
            UserNotFoundError: Unknown user, or not enrolled in the
                authoritative store.
            NoBackingStoresError: The user has no backing stores.
            InvalidCredentialError: The current password does not verify.
        """
        started = time.monotonic()
        metadata = dict(metadata or {})
        try:
            validate_secret(new_password)
            user = await self._require_user(user_id)
            current_hash = await self._current_hash(user)
            if not await averify_password(current_password, current_hash):
                logger.warning("Invalid current password provided: user=%s", user_id)
                await self._audit(AuditEntry(
                    user_id=user_id,
                    operation=Operation.PASSWORD_CHANGE,
                    status=AuditStatus.FAILED,
                    reason=INVALID_CURRENT_PASSWORD,
                    duration_ms=_elapsed_ms(started),
                    details=metadata,
                ))
                raise InvalidCredentialError("Current password is incorrect")
            hashed = await ahash_password(new_password)
            result = await self._complete(
                Operation.PASSWORD_CHANGE, user_id, hashed, metadata, started,
                mirror=mirror_to_vault, require_vault=require_vault,
                message="Password changed successfully",
            )
        except InvalidCredentialError:
            raise
        except Exception as err:
            await self._fail(Operation.PASSWORD_CHANGE, user_id, err, metadata, started)
            raise
        logger.info("Password changed: user=%s success=%s", user_id, result.success)
        return result

    async def reset_password(
        self,
        user_id: str,
        new_password: str,
        metadata: Optional[dict[str, Any]] = None,
        *,
        mirror_to_vault: bool = False,
        require_vault: bool = False,
    ) -> CredentialResult:
        """Administrative reset; no proof of the current password.

        ``metadata["admin_id"]`` is required and recorded in the audit entry.

        Raises:
            ValidationError: ``admin_id`` missing from metadata.
            WeakSecretError: The new password is too short.
            NoBackingStoresError: Unknown user or no backing stores.
        """
        started = time.monotonic()
        metadata = dict(metadata or {})
        try:
            if not metadata.get("admin_id"):
                raise ValidationError("admin_id is required for password reset")
            validate_secret(new_password)
            logger.info(
                "Admin password reset initiated: user=%s admin=%s",
                user_id, metadata["admin_id"],
            )
            hashed = await ahash_password(new_password)
            result = await self._complete(
                Operation.PASSWORD_RESET, user_id, hashed, metadata, started,
                mirror=mirror_to_vault, require_vault=require_vault,
                message="Password reset successfully",
            )
        except Exception as err:
            await self._fail(Operation.PASSWORD_RESET, user_id, err, metadata, started)
            raise
        logger.info("Password reset: user=%s success=%s", user_id, result.success)
        return result

    async def change_password_with_vault(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        metadata: Optional[dict[str, Any]] = None,
        require_vault: bool = False,
    ) -> CredentialResult:
        """``change_password`` followed by a vault mirror of the new hash."""
        if self._vault is None:
            raise CredentialSyncError("Vault mirror is not configured")
        return await self.change_password(
            user_id, current_password, new_password, metadata,
            mirror_to_vault=True, require_vault=require_vault,
        )

    async def reset_password_with_vault(
        self,
        user_id: str,
        new_password: str,
        metadata: Optional[dict[str, Any]] = None,
        require_vault: bool = False,
    ) -> CredentialResult:
        """``reset_password`` followed by a vault mirror of the new hash."""
        if self._vault is None:
            raise CredentialSyncError("Vault mirror is not configured")
        return await self.reset_password(
            user_id, new_password, metadata,
            mirror_to_vault=True, require_vault=require_vault,
        )

    async def sync_password_to_all_stores(self, user_id: str, hashed_value: str) -> SyncResult:
        return await self._synchronizer.sync_to_all_stores(user_id, hashed_value)

    async def sync_password_from_vault(self, user_id: str, store_name: str) -> dict[str, Any]:
        """Restore the hash mirrored for ``store_name`` into every store.

        Used for disaster recovery after a backing store lost its data.

        Raises:
            CredentialSyncError: No mirrored secret exists for the pair.
        """
        if self._vault is None:
            raise CredentialSyncError("Vault mirror is not configured")
        started = time.monotonic()
        logger.info("Syncing password from vault: user=%s store=%s", user_id, store_name)
        secret = await self._vault.retrieve(user_id, store_name)
        if not secret["success"]:
            raise CredentialSyncError(
                f"Password not found in vault for store {store_name}"
            )
        sync_result = await self._synchronizer.sync_to_all_stores(
            user_id, secret["hashed_value"],
        )
        return {
            "success": sync_result.success,
            "message": "Password synced from vault",
            "secret_id": secret["secret_id"],
            "sync_result": sync_result,
            "duration_ms": _elapsed_ms(started),
        }

    async def verify_password_from_vault(
        self, user_id: str, store_name: str, plaintext: str,
    ) -> bool:
        """Verify ``plaintext`` against the mirrored hash. Never raises."""
        if self._vault is None:
            return False
        try:
            secret = await self._vault.retrieve(user_id, store_name)
        except CredentialSyncError as err:
            logger.error(
                "Failed to verify password from vault: user=%s store=%s error=%s",
                user_id, store_name, err,
            )
            return False
        if not secret["success"]:
            return False
        return await averify_password(plaintext, secret["hashed_value"])


def build_lifecycle(
    registry: StoreClientRegistry,
    settings: Optional[SyncSettings] = None,
    credentials: Optional[SystemCredentials] = None,
    storage: Optional[DocumentStorage] = None,
    vault_mirror: Optional[VaultMirror] = None,
    per_user_lock: bool = False,
) -> CredentialLifecycle:
    """Wire a ``CredentialLifecycle`` from settings.

    Storage defaults to JSON files under ``settings.storage_dir``.
    """
    settings = settings or SyncSettings.from_env()
    credentials = credentials or SystemCredentials()
    directory = DirectoryStore(
        storage=storage or JSONFileStorage(settings.storage_dir),
        cache=TTLCache(ttl=settings.cache_ttl),
    )
    propagation = PropagationUnit(
        registry,
        credentials,
        max_attempts=settings.max_attempts,
        base_delay=settings.retry_base_delay,
        attempt_timeout=settings.attempt_timeout,
    )
    synchronizer = FanOutSynchronizer(
        directory,
        propagation,
        max_concurrency=settings.max_concurrency,
        per_user_lock=per_user_lock,
    )
    return CredentialLifecycle(
        directory,
        propagation,
        synchronizer,
        authoritative_store=settings.authoritative_store,
        vault_mirror=vault_mirror,
    )
