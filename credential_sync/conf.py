"""
Credential Sync Configuration — system credentials and validated settings.

Reads configuration from environment variables:
    CREDSYNC_SYSTEM_USERNAME / CREDSYNC_SYSTEM_PASSWORD
        Shared system credential pair used to authenticate against stores.
    CREDSYNC_SYSTEM_USERNAME_<STORE> / CREDSYNC_SYSTEM_PASSWORD_<STORE>
        Optional per-store override (store name upper-cased, '-' -> '_').
    CREDSYNC_MAX_ATTEMPTS, CREDSYNC_RETRY_BASE_DELAY, CREDSYNC_MAX_CONCURRENCY,
    CREDSYNC_ATTEMPT_TIMEOUT, CREDSYNC_CACHE_TTL, CREDSYNC_AUTHORITATIVE_STORE,
    CREDSYNC_AUDIT_RETENTION_DAYS, CREDSYNC_STORAGE_DIR, CREDSYNC_API_URL

Security Note:
    Never log system passwords. Only log usernames and store names.
"""
import os
import re
import logging
from pathlib import Path
from collections.abc import Mapping
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import MissingSystemCredentialsError

logger = logging.getLogger("credsync.conf")

_ENV_PREFIX = "CREDSYNC_"
_STORE_SUFFIX = re.compile(r"[^A-Z0-9]")


def _store_suffix(store_name: str) -> str:
    return _STORE_SUFFIX.sub("_", store_name.upper())


class SystemCredentials:
    """Resolve operation-scoped system credentials per backing store.

    A store-specific pair wins over the shared pair. Both values of a pair
    must be present for the pair to be used.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._env = os.environ if environ is None else environ

    def for_store(self, store_name: str) -> tuple[str, str]:
        """Return the (username, password) pair for ``store_name``.

        Raises:
            MissingSystemCredentialsError: If neither a per-store nor a
                shared credential pair is configured.
        """
        suffix = _store_suffix(store_name)
        username = self._env.get(f"{_ENV_PREFIX}SYSTEM_USERNAME_{suffix}")
        password = self._env.get(f"{_ENV_PREFIX}SYSTEM_PASSWORD_{suffix}")
        if username and password:
            return username, password
        username = self._env.get(f"{_ENV_PREFIX}SYSTEM_USERNAME")
        password = self._env.get(f"{_ENV_PREFIX}SYSTEM_PASSWORD")
        if username and password:
            return username, password
        raise MissingSystemCredentialsError(store_name)

    def is_configured(self, store_name: str) -> bool:
        try:
            self.for_store(store_name)
        except MissingSystemCredentialsError:
            return False
        return True


class SyncSettings(BaseModel):
    """Validated synchronization settings."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0)
    max_concurrency: int = Field(default=8, ge=1)
    attempt_timeout: Optional[float] = Field(default=None, gt=0)
    cache_ttl: float = Field(default=30.0, ge=0, le=300)
    authoritative_store: str = Field(default="primary")
    audit_retention_days: int = Field(default=30, ge=1)
    storage_dir: Path = Field(default=Path("storage/credential-sync"))
    api_url: str = Field(default="http://localhost:8080")

    @field_validator("authoritative_store")
    @classmethod
    def validate_store_name(cls, v: str) -> str:
        """Authoritative store name cannot be blank."""
        if not v.strip():
            raise ValueError("authoritative_store cannot be empty")
        return v

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncSettings":
        """Create SyncSettings from CREDSYNC_* environment variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = env.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        settings = cls.model_validate(values)
        logger.debug(
            "Loaded sync settings: attempts=%d concurrency=%d authoritative=%s",
            settings.max_attempts, settings.max_concurrency,
            settings.authoritative_store,
        )
        return settings
