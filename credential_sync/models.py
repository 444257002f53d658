"""
Credential Sync Data Model.

Directory entries, audit entries and the structured outcomes returned by the
propagation, synchronization and lifecycle layers. Models are pydantic and
persisted as plain JSON documents (see ``credential_sync.directory.storage``).

Security Note:
    Hashed credentials never appear in these models except in
    ``VaultSecretRecord``; ``repr`` of that model masks the value.
"""
import uuid
from enum import Enum
from typing import Any, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


class Operation(str, Enum):
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    PASSWORD_SYNC = "password_sync"
    VAULT_STORE = "vault_store"
    VAULT_RETRIEVE = "vault_retrieve"
    VAULT_DELETE = "vault_delete"
    USER_REGISTRATION = "user_registration"
    USER_DELETION = "user_deletion"
    USER_ARCHIVE = "user_archive"
    USER_SYNC = "user_sync"
    USER_UPDATE = "user_update"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    ERROR = "error"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------

class BackingStore(BaseModel):
    """Enrollment of a user in one backing store."""

    store_name: str
    record_id: str
    username: Optional[str] = None
    enrolled_at: datetime = Field(default_factory=utcnow)
    status: StoreStatus = StoreStatus.SYNCED

    @field_validator("store_name", "record_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v


class UserEntry(BaseModel):
    """A logical user and the backing stores holding their credential.

    ``backing_stores`` keeps enrollment order and never holds two entries
    with the same ``store_name``.
    """

    user_id: str
    email: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    backing_stores: list[BackingStore] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("backing_stores")
    @classmethod
    def unique_store_names(cls, v: list[BackingStore]) -> list[BackingStore]:
        seen: set[str] = set()
        for store in v:
            if store.store_name in seen:
                raise ValueError(f"Duplicate backing store: {store.store_name}")
            seen.add(store.store_name)
        return v

    def get_store(self, store_name: str) -> Optional[BackingStore]:
        for store in self.backing_stores:
            if store.store_name == store_name:
                return store
        return None

    @property
    def store_names(self) -> list[str]:
        return [s.store_name for s in self.backing_stores]


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class StoreOutcome(BaseModel):
    """Result of applying one credential update to one backing store."""

    store_name: str
    record_id: str
    success: bool
    attempts: int = 0
    error: Optional[str] = None
    retryable: bool = True


class SyncResult(BaseModel):
    """Aggregated verdict of a fan-out over every backing store of a user."""

    success: bool
    success_count: int
    total_count: int
    failed_stores: list[StoreOutcome] = Field(default_factory=list)
    outcomes: list[StoreOutcome] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def message(self) -> str:
        if self.success:
            return "Password synced to all backing stores"
        return (
            f"Password synced to {self.success_count} of "
            f"{self.total_count} backing stores"
        )

    @classmethod
    def from_outcomes(cls, outcomes: list[StoreOutcome], duration_ms: int) -> "SyncResult":
        failed = [o for o in outcomes if not o.success]
        return cls(
            success=not failed,
            success_count=len(outcomes) - len(failed),
            total_count=len(outcomes),
            failed_stores=failed,
            outcomes=outcomes,
            duration_ms=duration_ms,
        )


class CredentialResult(BaseModel):
    """Result of a change/reset password operation."""

    success: bool
    message: str
    sync_result: SyncResult
    vault_result: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """Append-only record of one credential operation."""

    log_id: Optional[str] = None
    user_id: str
    operation: Operation
    status: AuditStatus
    timestamp: Optional[datetime] = None
    per_store_outcomes: list[StoreOutcome] = Field(default_factory=list)
    error: Optional[str] = None
    reason: Optional[str] = None
    duration_ms: int = 0
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def stamped(self) -> "AuditEntry":
        """Return a copy with ``log_id`` and ``timestamp`` assigned."""
        now = utcnow()
        return self.model_copy(update={
            "log_id": self.log_id or f"log_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}",
            "timestamp": self.timestamp or now,
        })


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class VaultSecretRecord(BaseModel):
    """Hashed credential mirrored into the vault for one (user, store) pair."""

    secret_id: Optional[str] = None
    secret_key: str
    user_id: str
    store_name: str
    hashed_value: str = Field(repr=False)
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
