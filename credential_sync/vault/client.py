"""
Vault clients. The secret-store interface used by the vault mirror and an
encrypted implementation backed by a ``DocumentStorage``.

Interface (scoped by organization):
- ``list(org_scope)``: secret summaries, values omitted
- ``create(data)`` / ``update(secret_id, data)``: ``data`` holds
  ``organization_id``, ``key``, ``value`` and ``note``
- ``get(secret_id)``: full secret including ``value`` and ``note``
- ``delete([secret_id, ...])``

Security Note:
    ``EncryptedVaultClient`` keeps value and note encrypted at rest under the
    active master key. Never log values, notes or ciphertext.
"""
from __future__ import annotations

import uuid
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..directory.storage import DocumentStorage, MemoryStorage
from ..models import utcnow
from .config import VaultConfig
from .crypto import (
    cipher_for,
    decode_payload,
    decrypt_secret,
    encode_payload,
    encrypt_secret,
    from_text,
    to_text,
)

logger = logging.getLogger("credsync.vault")

VAULT_DOCUMENT = "vault_secrets"


class SecretNotFoundError(KeyError):
    """No secret exists with the requested id."""


class VaultClient(ABC):
    """Secret store consumed by ``VaultMirror``."""

    @abstractmethod
    async def list(self, org_scope: str) -> list[dict[str, Any]]:
        """Return summaries (``id``, ``key``, ``organization_id``) of every secret."""

    @abstractmethod
    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a secret and return its summary."""

    @abstractmethod
    async def update(self, secret_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Replace a secret and return its summary."""

    @abstractmethod
    async def get(self, secret_id: str) -> dict[str, Any]:
        """Return a secret including ``value`` and ``note``."""

    @abstractmethod
    async def delete(self, secret_ids: list[str]) -> None:
        """Delete secrets; unknown ids are ignored."""


class EncryptedVaultClient(VaultClient):
    """Vault whose secrets are encrypted at rest with versioned master keys.

    Args:
        config: Master keys, active key version and cipher backend.
        storage: Document backend holding the encrypted secrets.
    """

    def __init__(self, config: VaultConfig, storage: Optional[DocumentStorage] = None):
        self._config = config
        self._storage = storage or MemoryStorage()
        self._cipher = cipher_for(config.cipher_backend)
        self._lock = asyncio.Lock()

    @property
    def config(self) -> VaultConfig:
        return self._config

    # ------------------------------------------------------------------
    # Document helpers
    # ------------------------------------------------------------------

    async def _load(self) -> dict[str, Any]:
        doc = await self._storage.load(VAULT_DOCUMENT)
        return doc if doc is not None else {"secrets": {}}

    async def _save(self, doc: dict[str, Any]) -> None:
        await self._storage.save(VAULT_DOCUMENT, doc)

    def _seal(self, value: str, note: Optional[str], key_id: Optional[int] = None) -> tuple[str, int]:
        key_id = self._config.active_key_id if key_id is None else key_id
        ciphertext = encrypt_secret(
            encode_payload({"value": value, "note": note}),
            key_id,
            self._config.master_keys[key_id],
            self._cipher,
        )
        return to_text(ciphertext), key_id

    def _open(self, row: dict[str, Any]) -> dict[str, Any]:
        plaintext = decrypt_secret(
            from_text(row["ciphertext"]), self._config.master_keys, self._cipher,
        )
        return decode_payload(plaintext)

    @staticmethod
    def _summary(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": row["id"],
            "key": row["key"],
            "organization_id": row["organization_id"],
            "key_version": row["key_version"],
            "version": row["version"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    # ------------------------------------------------------------------
    # VaultClient
    # ------------------------------------------------------------------

    async def list(self, org_scope: str) -> list[dict[str, Any]]:
        doc = await self._load()
        return [
            self._summary(row) for row in doc["secrets"].values()
            if row["organization_id"] == org_scope
        ]

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        now = utcnow().isoformat()
        ciphertext, key_id = self._seal(data["value"], data.get("note"))
        row = {
            "id": uuid.uuid4().hex,
            "key": data["key"],
            "organization_id": data.get("organization_id", self._config.org_scope),
            "ciphertext": ciphertext,
            "key_version": key_id,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        async with self._lock:
            doc = await self._load()
            doc["secrets"][row["id"]] = row
            await self._save(doc)
        logger.debug("Vault secret created: key=%s", row["key"])
        return self._summary(row)

    async def update(self, secret_id: str, data: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            doc = await self._load()
            row = doc["secrets"].get(secret_id)
            if row is None:
                raise SecretNotFoundError(secret_id)
            ciphertext, key_id = self._seal(data["value"], data.get("note"))
            row.update({
                "key": data.get("key", row["key"]),
                "ciphertext": ciphertext,
                "key_version": key_id,
                "version": row["version"] + 1,
                "updated_at": utcnow().isoformat(),
            })
            await self._save(doc)
        logger.debug("Vault secret updated: key=%s version=%d", row["key"], row["version"])
        return self._summary(row)

    async def get(self, secret_id: str) -> dict[str, Any]:
        doc = await self._load()
        row = doc["secrets"].get(secret_id)
        if row is None:
            raise SecretNotFoundError(secret_id)
        payload = self._open(row)
        return {**self._summary(row), "value": payload["value"], "note": payload.get("note")}

    async def delete(self, secret_ids: list[str]) -> None:
        async with self._lock:
            doc = await self._load()
            removed = [sid for sid in secret_ids if doc["secrets"].pop(sid, None) is not None]
            if removed:
                await self._save(doc)
        logger.debug("Vault secrets deleted: count=%d", len(removed))

    # ------------------------------------------------------------------
    # Key rotation support
    # ------------------------------------------------------------------

    async def secrets_at_version(
        self, key_id: int, limit: int = 100, offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Return raw rows encrypted under ``key_id``, ordered by id."""
        doc = await self._load()
        rows = sorted(
            (r for r in doc["secrets"].values() if r["key_version"] == key_id),
            key=lambda r: r["id"],
        )
        return rows[offset:offset + limit]

    async def count_at_version(self, key_id: int) -> int:
        doc = await self._load()
        return sum(1 for r in doc["secrets"].values() if r["key_version"] == key_id)

    async def reencrypt(self, rows: list[dict[str, Any]], new_key_id: int) -> dict[str, str]:
        """Re-encrypt ``rows`` under ``new_key_id`` in a single document write.

        Returns:
            Mapping of secret id to error message for rows that failed.
        """
        errors: dict[str, str] = {}
        async with self._lock:
            doc = await self._load()
            for row in rows:
                current = doc["secrets"].get(row["id"])
                if current is None:
                    continue
                try:
                    payload = self._open(current)
                    ciphertext, key_id = self._seal(
                        payload["value"], payload.get("note"), key_id=new_key_id,
                    )
                except Exception as err:  # one bad row must not stop the batch
                    errors[row["id"]] = str(err) or type(err).__name__
                    continue
                current["ciphertext"] = ciphertext
                current["key_version"] = key_id
                current["updated_at"] = utcnow().isoformat()
            await self._save(doc)
        return errors
