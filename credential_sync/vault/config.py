"""
Vault Configuration — versioned master keys for the credential vault.

Environment:
    CREDSYNC_VAULT_MASTER_KEY_v{N}  base64 of a 32-byte key, one per version
    CREDSYNC_VAULT_ACTIVE_KEY_ID    version used to encrypt new secrets
    CREDSYNC_VAULT_CIPHER_BACKEND   aesgcm (default) or chacha20
    CREDSYNC_VAULT_ORG_SCOPE        organization id that scopes mirrored secrets

Older versions stay loaded so secrets written before a rotation can still be
decrypted.

Security Note:
    Key bytes are never logged; only version numbers are.
"""
import os
import re
import base64
import secrets
import logging
from collections.abc import Mapping
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("credsync.vault")

MASTER_KEY_SIZE = 32
SUPPORTED_CIPHERS = ("aesgcm", "chacha20")

_MASTER_KEY_VAR = re.compile(r"^CREDSYNC_VAULT_MASTER_KEY_v(\d+)$")
_ACTIVE_KEY_VAR = "CREDSYNC_VAULT_ACTIVE_KEY_ID"


def _decode_master_key(var: str, encoded: str) -> bytes:
    raw = base64.b64decode(encoded)
    if len(raw) != MASTER_KEY_SIZE:
        raise ValueError(
            f"{var} holds {len(raw)} bytes; a master key must be "
            f"{MASTER_KEY_SIZE} bytes"
        )
    return raw


def load_master_keys(environ: Optional[Mapping[str, str]] = None) -> dict[int, bytes]:
    """Collect every ``CREDSYNC_VAULT_MASTER_KEY_v{N}`` variable.

    Raises:
        RuntimeError: No master key variable is set.
        ValueError: A key is not 32 bytes once decoded.
    """
    env = os.environ if environ is None else environ
    keys: dict[int, bytes] = {}
    for var, value in env.items():
        match = _MASTER_KEY_VAR.match(var)
        if match:
            keys[int(match.group(1))] = _decode_master_key(var, value)
    if not keys:
        raise RuntimeError(
            "Credential vault has no master keys; set "
            "CREDSYNC_VAULT_MASTER_KEY_v1 to a base64 encoded 32-byte key"
        )
    logger.debug("Vault master key versions available: %s", sorted(keys))
    return keys


def get_active_key_id(environ: Optional[Mapping[str, str]] = None) -> int:
    """Version named by ``CREDSYNC_VAULT_ACTIVE_KEY_ID``.

    Raises:
        RuntimeError: The variable is not set.
        ValueError: The value is not an integer.
    """
    env = os.environ if environ is None else environ
    try:
        return int(env[_ACTIVE_KEY_VAR])
    except KeyError:
        raise RuntimeError(f"{_ACTIVE_KEY_VAR} is not set") from None


def generate_master_key() -> str:
    """New random master key, base64 encoded for an environment variable."""
    return base64.b64encode(secrets.token_bytes(MASTER_KEY_SIZE)).decode("ascii")


class VaultConfig(BaseModel):
    """Keys and cipher choice of an ``EncryptedVaultClient``."""

    master_keys: dict[int, bytes]
    active_key_id: int
    cipher_backend: str = Field(default="aesgcm")
    org_scope: str = Field(default="credential-sync")

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("cipher_backend")
    @classmethod
    def known_cipher(cls, v: str) -> str:
        backend = v.lower()
        if backend not in SUPPORTED_CIPHERS:
            raise ValueError(
                f"cipher_backend must be one of {SUPPORTED_CIPHERS}, got {v!r}"
            )
        return backend

    @model_validator(mode="after")
    def active_key_loaded(self) -> "VaultConfig":
        if self.active_key_id not in self.master_keys:
            raise ValueError(
                f"Active key version {self.active_key_id} is not loaded "
                f"(loaded versions: {sorted(self.master_keys)})"
            )
        return self

    @property
    def active_key(self) -> bytes:
        return self.master_keys[self.active_key_id]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "VaultConfig":
        env = os.environ if environ is None else environ
        return cls(
            master_keys=load_master_keys(env),
            active_key_id=get_active_key_id(env),
            cipher_backend=env.get("CREDSYNC_VAULT_CIPHER_BACKEND", "aesgcm"),
            org_scope=env.get("CREDSYNC_VAULT_ORG_SCOPE", "credential-sync"),
        )
