"""
Vault Mirror — best-effort copy of hashed credentials into a secret vault,
one secret per (user, backing store) pair, for disaster recovery.

The secret key is a deterministic function of (user_id, store_name), so
repeated writes update the existing secret instead of creating a duplicate.
The lookup-then-create/update sequence is not atomic: two concurrent writers
for the same pair resolve as last writer wins.

Mirror failures never roll back or fail primary propagation; the lifecycle
layer reports them separately.

Security Note:
    Never log hashed values or secret notes. Only log user ids, store names
    and secret keys.
"""
import time
import hashlib
import logging
from typing import Any, Optional

import orjson

from ..directory import DirectoryStore, record_audit
from ..exceptions import VaultError
from ..models import (
    AuditEntry,
    AuditStatus,
    BackingStore,
    Operation,
    StoreOutcome,
    VaultSecretRecord,
    utcnow,
)
from .client import VaultClient

logger = logging.getLogger("credsync.vault")

SECRET_SOURCE = "credential-sync"


def secret_key_for(user_id: str, store_name: str) -> str:
    """Deterministic vault key for a (user, store) pair."""
    digest = hashlib.sha256(f"{user_id}:{store_name}".encode("utf-8")).hexdigest()[:16]
    return f"CS_{store_name.upper()}_{digest}"


def secret_name_for(user_id: str, store_name: str) -> str:
    return f"credential-{store_name}-{user_id}"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class VaultMirror:
    """Mirror hashed credentials into a ``VaultClient``.

    Args:
        client: Vault holding the mirrored secrets.
        org_scope: Organization scope used for listing and creating secrets.
        directory: Optional directory; when given, vault operations are
            written to its audit log.
    """

    def __init__(
        self,
        client: VaultClient,
        org_scope: str = "credential-sync",
        directory: Optional[DirectoryStore] = None,
    ):
        self._client = client
        self._org_scope = org_scope
        self._directory = directory

    async def _audit(self, entry: AuditEntry) -> None:
        if self._directory is not None:
            await record_audit(self._directory, entry)

    async def _find(self, secret_key: str) -> Optional[dict[str, Any]]:
        secrets = await self._client.list(self._org_scope)
        for secret in secrets:
            if secret.get("key") == secret_key:
                return secret
        return None

    async def _store(
        self,
        user_id: str,
        store_name: str,
        hashed_value: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        metadata = metadata or {}
        record = VaultSecretRecord(
            secret_key=secret_key_for(user_id, store_name),
            user_id=user_id,
            store_name=store_name,
            hashed_value=hashed_value,
            metadata={
                "record_id": metadata.get("record_id"),
                "username": metadata.get("username"),
                "created_at": utcnow().isoformat(),
                "source": SECRET_SOURCE,
            },
        )
        secret_key = record.secret_key
        data = {
            "organization_id": self._org_scope,
            "key": secret_key,
            "value": record.hashed_value,
            "note": orjson.dumps({
                "name": secret_name_for(user_id, store_name),
                "user_id": user_id,
                "store_name": store_name,
                **record.metadata,
            }).decode("utf-8"),
        }
        try:
            existing = await self._find(secret_key)
            if existing is not None:
                logger.info("Updating existing vault secret: key=%s", secret_key)
                secret = await self._client.update(existing["id"], data)
            else:
                logger.info("Creating new vault secret: key=%s", secret_key)
                secret = await self._client.create(data)
        except Exception as err:
            logger.error(
                "Failed to store password in vault: user=%s store=%s error=%s",
                user_id, store_name, err,
            )
            raise VaultError(f"Vault storage failed: {err}") from err
        record = record.model_copy(update={
            "secret_id": secret["id"], "version": secret.get("version", 1),
        })
        return {
            "success": True,
            "secret_id": record.secret_id,
            "secret_key": secret_key,
            "store_name": store_name,
            "record": record,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def store(
        self,
        user_id: str,
        store_name: str,
        hashed_value: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Create or update the secret for (user_id, store_name).

        Raises:
            VaultError: If the vault client fails.
        """
        started = time.monotonic()
        try:
            result = await self._store(user_id, store_name, hashed_value, metadata)
        except VaultError as err:
            await self._audit(AuditEntry(
                user_id=user_id, operation=Operation.VAULT_STORE,
                status=AuditStatus.ERROR, error=str(err),
                duration_ms=_elapsed_ms(started), details={"store_name": store_name},
            ))
            raise
        await self._audit(AuditEntry(
            user_id=user_id, operation=Operation.VAULT_STORE,
            status=AuditStatus.SUCCESS, duration_ms=_elapsed_ms(started),
            details={"store_name": store_name, "secret_key": result["secret_key"]},
        ))
        return result

    async def store_for_all(
        self,
        user_id: str,
        stores: list[BackingStore],
        hashed_value: str,
    ) -> dict[str, Any]:
        """Mirror the same hash for every store; never raises.

        Returns:
            ``{success, success_count, total_count, results, failed_stores}``.
        """
        started = time.monotonic()
        results: list[dict[str, Any]] = []
        outcomes: list[StoreOutcome] = []
        for store in stores:
            try:
                result = await self._store(
                    user_id, store.store_name, hashed_value,
                    {"record_id": store.record_id, "username": store.username},
                )
            except VaultError as err:
                result = {"success": False, "store_name": store.store_name, "error": str(err)}
            results.append(result)
            outcomes.append(StoreOutcome(
                store_name=store.store_name, record_id=store.record_id,
                success=result["success"], attempts=1, error=result.get("error"),
            ))
        failed = [r for r in results if not r["success"]]
        summary = {
            "success": not failed,
            "success_count": len(results) - len(failed),
            "total_count": len(results),
            "results": results,
            "failed_stores": [
                {"store_name": r["store_name"], "error": r["error"]} for r in failed
            ],
        }
        if failed:
            logger.warning(
                "Vault storage completed with failures: user=%s success=%d/%d",
                user_id, summary["success_count"], summary["total_count"],
            )
            status = AuditStatus.PARTIAL_FAILURE if summary["success_count"] else AuditStatus.ERROR
        else:
            logger.info(
                "Password stored in vault for all stores: user=%s count=%d",
                user_id, summary["success_count"],
            )
            status = AuditStatus.SUCCESS
        await self._audit(AuditEntry(
            user_id=user_id, operation=Operation.VAULT_STORE, status=status,
            per_store_outcomes=outcomes, duration_ms=_elapsed_ms(started),
        ))
        return summary

    async def retrieve(self, user_id: str, store_name: str) -> dict[str, Any]:
        """Return the mirrored hash; a missing secret is ``{"success": False}``.

        Raises:
            VaultError: If the vault client fails.
        """
        started = time.monotonic()
        secret_key = secret_key_for(user_id, store_name)
        try:
            summary = await self._find(secret_key)
            secret = await self._client.get(summary["id"]) if summary else None
        except Exception as err:
            logger.error(
                "Failed to retrieve password from vault: user=%s store=%s error=%s",
                user_id, store_name, err,
            )
            await self._audit(AuditEntry(
                user_id=user_id, operation=Operation.VAULT_RETRIEVE,
                status=AuditStatus.ERROR, error=str(err),
                duration_ms=_elapsed_ms(started), details={"store_name": store_name},
            ))
            raise VaultError(f"Vault retrieval failed: {err}") from err

        if secret is None:
            logger.warning(
                "Password not found in vault: user=%s store=%s key=%s",
                user_id, store_name, secret_key,
            )
            await self._audit(AuditEntry(
                user_id=user_id, operation=Operation.VAULT_RETRIEVE,
                status=AuditStatus.FAILED, reason="not_found",
                duration_ms=_elapsed_ms(started), details={"store_name": store_name},
            ))
            return {"success": False, "error": "Password not found"}

        try:
            metadata = orjson.loads(secret.get("note") or "{}")
        except orjson.JSONDecodeError:
            logger.warning("Failed to parse vault secret metadata: id=%s", secret["id"])
            metadata = {}
        await self._audit(AuditEntry(
            user_id=user_id, operation=Operation.VAULT_RETRIEVE,
            status=AuditStatus.SUCCESS, duration_ms=_elapsed_ms(started),
            details={"store_name": store_name},
        ))
        record = VaultSecretRecord(
            secret_id=secret["id"],
            secret_key=secret_key,
            user_id=user_id,
            store_name=store_name,
            hashed_value=secret["value"],
            metadata=metadata,
            version=secret.get("version", 1),
        )
        return {
            "success": True,
            "hashed_value": record.hashed_value,
            "secret_id": record.secret_id,
            "metadata": record.metadata,
            "record": record,
        }

    async def delete(self, user_id: str, store_name: str) -> dict[str, Any]:
        """Delete the secret for (user_id, store_name). Idempotent.

        Raises:
            VaultError: If the vault client fails.
        """
        started = time.monotonic()
        secret_key = secret_key_for(user_id, store_name)
        try:
            summary = await self._find(secret_key)
            if summary is not None:
                await self._client.delete([summary["id"]])
        except Exception as err:
            logger.error(
                "Failed to delete password from vault: user=%s store=%s error=%s",
                user_id, store_name, err,
            )
            await self._audit(AuditEntry(
                user_id=user_id, operation=Operation.VAULT_DELETE,
                status=AuditStatus.ERROR, error=str(err),
                duration_ms=_elapsed_ms(started), details={"store_name": store_name},
            ))
            raise VaultError(f"Vault deletion failed: {err}") from err

        await self._audit(AuditEntry(
            user_id=user_id, operation=Operation.VAULT_DELETE,
            status=AuditStatus.SUCCESS, duration_ms=_elapsed_ms(started),
            details={"store_name": store_name, "found": summary is not None},
        ))
        if summary is None:
            logger.warning(
                "Password not found in vault (nothing to delete): user=%s store=%s",
                user_id, store_name,
            )
            return {"success": True, "message": "Password not found (nothing to delete)"}
        logger.info("Password deleted from vault: user=%s store=%s", user_id, store_name)
        return {
            "success": True,
            "message": "Password deleted from vault",
            "secret_id": summary["id"],
        }

    async def list_for_user(self, user_id: str, store_names: list[str]) -> list[dict[str, Any]]:
        """Metadata of the secrets mirrored for ``user_id`` (values omitted)."""
        wanted = {secret_key_for(user_id, name): name for name in store_names}
        try:
            secrets = await self._client.list(self._org_scope)
        except Exception as err:
            raise VaultError(f"Vault list failed: {err}") from err
        return [
            {
                "secret_id": s["id"],
                "secret_key": s["key"],
                "store_name": wanted[s["key"]],
                "version": s.get("version"),
                "updated_at": s.get("updated_at"),
            }
            for s in secrets if s.get("key") in wanted
        ]
