"""
Tests for the vault: crypto core, configuration, encrypted client, key
rotation and the credential mirror.
"""
import struct
import typing

import orjson
import pytest
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from pydantic import ValidationError

from credential_sync.directory import MemoryStorage
from credential_sync.exceptions import VaultError
from credential_sync.models import AuditStatus, BackingStore, Operation
from credential_sync.vault import (
    EncryptedVaultClient,
    SecretNotFoundError,
    VaultConfig,
    VaultMirror,
    generate_master_key,
    load_master_keys,
    rotate_master_key,
    secret_key_for,
)
from credential_sync.vault.crypto import (
    cipher_for,
    decrypt_secret,
    encrypt_secret,
    key_id_of,
)

from fakes import b64key, make_vault_config


KEYS = {1: b"\x01" * 32, 2: b"\x02" * 32}


class FailingVaultClient(EncryptedVaultClient):
    async def list(self, org_scope):
        raise ConnectionError("vault offline")


class TestCrypto:
    """At-rest encryption with embedded key versions."""

    def test_roundtrip(self):
        ct = encrypt_secret(b"payload", 1, KEYS[1])
        assert decrypt_secret(ct, KEYS) == b"payload"

    def test_key_id_embedded(self):
        ct = encrypt_secret(b"payload", 2, KEYS[2])
        assert key_id_of(ct) == 2
        assert struct.unpack("!H", ct[:2])[0] == 2

    def test_random_nonce(self):
        assert encrypt_secret(b"same", 1, KEYS[1]) != encrypt_secret(b"same", 1, KEYS[1])

    def test_tampered_ciphertext(self):
        ct = bytearray(encrypt_secret(b"payload", 1, KEYS[1]))
        ct[-1] ^= 0x01
        with pytest.raises(InvalidTag):
            decrypt_secret(bytes(ct), KEYS)

    def test_unknown_key_version(self):
        ct = encrypt_secret(b"payload", 2, KEYS[2])
        with pytest.raises(KeyError):
            decrypt_secret(ct, {1: KEYS[1]})

    def test_truncated(self):
        with pytest.raises(ValueError):
            decrypt_secret(b"\x00\x01short", KEYS)

    def test_chacha_backend(self):
        assert cipher_for("ChaCha20") is ChaCha20Poly1305
        ct = encrypt_secret(b"payload", 1, KEYS[1], ChaCha20Poly1305)
        assert decrypt_secret(ct, KEYS, ChaCha20Poly1305) == b"payload"
        with pytest.raises(ValueError):
            cipher_for("rot13")


class TestVaultConfig:
    """Master keys and validation."""

    def test_from_env(self):
        env = {
            "CREDSYNC_VAULT_MASTER_KEY_v1": b64key(1),
            "CREDSYNC_VAULT_MASTER_KEY_v3": b64key(3),
            "CREDSYNC_VAULT_ACTIVE_KEY_ID": "3",
            "CREDSYNC_VAULT_CIPHER_BACKEND": "CHACHA20",
        }
        config = VaultConfig.from_env(env)
        assert sorted(config.master_keys) == [1, 3]
        assert config.active_key == b"\x03" * 32
        assert config.cipher_backend == "chacha20"

    def test_no_keys(self):
        with pytest.raises(RuntimeError):
            load_master_keys({})

    def test_short_key(self):
        with pytest.raises(ValueError, match="32 bytes"):
            load_master_keys({"CREDSYNC_VAULT_MASTER_KEY_v1": "c2hvcnQ="})

    def test_active_key_must_exist(self):
        with pytest.raises(ValidationError):
            VaultConfig(master_keys=KEYS, active_key_id=9)

    def test_generate_master_key(self):
        key = generate_master_key()
        assert load_master_keys({"CREDSYNC_VAULT_MASTER_KEY_v1": key})[1] != b""


class TestEncryptedVaultClient:
    """Secret CRUD on the encrypted store."""

    def test_annotations_resolve(self):
        hints = typing.get_type_hints(EncryptedVaultClient.delete)
        assert hints["secret_ids"] == list[str]
        assert typing.get_type_hints(EncryptedVaultClient.list)["return"] == list[dict[str, typing.Any]]

    @pytest.mark.asyncio
    async def test_values_encrypted_at_rest(self):
        storage = MemoryStorage()
        client = EncryptedVaultClient(make_vault_config(), storage)
        summary = await client.create({"key": "K1", "value": "$argon2id$v", "note": "n"})
        doc = await storage.load("vault_secrets")
        raw = orjson.dumps(doc)
        assert b"$argon2id$v" not in raw
        secret = await client.get(summary["id"])
        assert secret["value"] == "$argon2id$v"
        assert secret["note"] == "n"

    @pytest.mark.asyncio
    async def test_list_scoped_without_values(self, vault_client):
        await vault_client.create({"key": "K1", "value": "v1"})
        await vault_client.create({"key": "K2", "value": "v2", "organization_id": "other"})
        listed = await vault_client.list("credential-sync")
        assert [s["key"] for s in listed] == ["K1"]
        assert "value" not in listed[0]

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, vault_client):
        created = await vault_client.create({"key": "K1", "value": "v1"})
        updated = await vault_client.update(created["id"], {"value": "v2"})
        assert updated["version"] == 2
        assert (await vault_client.get(created["id"]))["value"] == "v2"

    @pytest.mark.asyncio
    async def test_missing_secret(self, vault_client):
        with pytest.raises(SecretNotFoundError):
            await vault_client.get("nope")
        with pytest.raises(SecretNotFoundError):
            await vault_client.update("nope", {"value": "v"})
        await vault_client.delete(["nope"])


class TestKeyRotation:
    """Batch re-encryption between master key versions."""

    @pytest.mark.asyncio
    async def test_rotates_all_secrets(self, vault_client):
        ids = [(await vault_client.create({"key": f"K{i}", "value": f"v{i}"}))["id"] for i in range(5)]
        stats = await rotate_master_key(vault_client, 1, 2, batch_size=2)
        assert stats == {"total": 5, "rotated": 5, "errors": 0, "skipped": 0}
        assert await vault_client.count_at_version(1) == 0
        for i, secret_id in enumerate(ids):
            secret = await vault_client.get(secret_id)
            assert secret["key_version"] == 2
            assert secret["value"] == f"v{i}"

    @pytest.mark.asyncio
    async def test_rotation_is_idempotent(self, vault_client):
        await vault_client.create({"key": "K1", "value": "v1"})
        await rotate_master_key(vault_client, 1, 2)
        stats = await rotate_master_key(vault_client, 1, 2)
        assert stats == {"total": 0, "rotated": 0, "errors": 0, "skipped": 1}

    @pytest.mark.asyncio
    async def test_unknown_key(self, vault_client):
        with pytest.raises(KeyError):
            await rotate_master_key(vault_client, 1, 7)

    @pytest.mark.asyncio
    async def test_corrupt_secret_counts_as_error(self):
        storage = MemoryStorage()
        client = EncryptedVaultClient(make_vault_config(), storage)
        await client.create({"key": "K1", "value": "v1"})
        bad = await client.create({"key": "K2", "value": "v2"})
        doc = await storage.load("vault_secrets")
        doc["secrets"][bad["id"]]["ciphertext"] = "AAEAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=="
        await storage.save("vault_secrets", doc)
        stats = await rotate_master_key(client, 1, 2)
        assert stats["rotated"] == 1
        assert stats["errors"] == 1
        assert await client.count_at_version(1) == 1


class TestVaultMirror:
    """Per (user, store) mirrored secrets."""

    def test_secret_key_is_deterministic(self):
        assert secret_key_for("u1", "odoo") == secret_key_for("u1", "odoo")
        assert secret_key_for("u1", "odoo") != secret_key_for("u2", "odoo")
        assert secret_key_for("u1", "odoo").startswith("CS_ODOO_")

    @pytest.mark.asyncio
    async def test_store_then_update_keeps_one_secret(self, vault_mirror, vault_client):
        first = await vault_mirror.store("u1", "A", "$h1", {"record_id": "a-1"})
        second = await vault_mirror.store("u1", "A", "$h2")
        assert first["secret_id"] == second["secret_id"]
        assert len(await vault_client.list("credential-sync")) == 1
        retrieved = await vault_mirror.retrieve("u1", "A")
        assert retrieved["hashed_value"] == "$h2"
        assert retrieved["metadata"]["store_name"] == "A"
        assert retrieved["metadata"]["user_id"] == "u1"
        assert second["record"].version == 2
        assert retrieved["record"].secret_id == first["secret_id"]
        assert "$h2" not in repr(retrieved["record"])

    @pytest.mark.asyncio
    async def test_retrieve_missing(self, vault_mirror, directory):
        result = await vault_mirror.retrieve("u1", "A")
        assert result == {"success": False, "error": "Password not found"}
        audit = await directory.query_audit(operation=Operation.VAULT_RETRIEVE)
        assert audit[0].status == AuditStatus.FAILED
        assert audit[0].reason == "not_found"

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, vault_mirror):
        await vault_mirror.store("u1", "A", "$h1")
        deleted = await vault_mirror.delete("u1", "A")
        assert deleted["message"] == "Password deleted from vault"
        again = await vault_mirror.delete("u1", "A")
        assert again == {"success": True, "message": "Password not found (nothing to delete)"}

    @pytest.mark.asyncio
    async def test_store_for_all(self, vault_mirror, directory):
        stores = [
            BackingStore(store_name="A", record_id="a-1"),
            BackingStore(store_name="B", record_id="b-1"),
        ]
        summary = await vault_mirror.store_for_all("u1", stores, "$h")
        assert summary["success"] is True
        assert summary["success_count"] == summary["total_count"] == 2
        listed = await vault_mirror.list_for_user("u1", ["A", "B", "C"])
        assert sorted(s["store_name"] for s in listed) == ["A", "B"]
        audit = await directory.query_audit(operation=Operation.VAULT_STORE)
        assert len(audit) == 1

    @pytest.mark.asyncio
    async def test_client_failures(self, directory):
        mirror = VaultMirror(FailingVaultClient(make_vault_config()), directory=directory)
        with pytest.raises(VaultError):
            await mirror.store("u1", "A", "$h")
        with pytest.raises(VaultError):
            await mirror.retrieve("u1", "A")
        with pytest.raises(VaultError):
            await mirror.delete("u1", "A")
        summary = await mirror.store_for_all(
            "u1", [BackingStore(store_name="A", record_id="a-1")], "$h",
        )
        assert summary["success"] is False
        assert summary["failed_stores"][0]["store_name"] == "A"
