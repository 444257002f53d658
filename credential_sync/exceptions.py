"""
Credential Sync Exceptions.

Every error raised by the credential core derives from ``CredentialSyncError``
so callers can catch the whole family at their transport boundary.
Errors raised by backing-store clients live in ``credential_sync.clients``.
"""


class CredentialSyncError(Exception):
    """Base class for credential synchronization errors."""


class ValidationError(CredentialSyncError, ValueError):
    """Input data failed validation."""


class WeakSecretError(ValidationError):
    """A new secret does not satisfy the minimum length policy."""


class InvalidCredentialError(CredentialSyncError):
    """The current password supplied as proof did not verify."""


class UserNotFoundError(CredentialSyncError):
    """The user is not present in the directory (or in a required store)."""

    def __init__(self, user_id: str, message: str | None = None):
        self.user_id = user_id
        super().__init__(message or f"User {user_id} not found")


class NoBackingStoresError(CredentialSyncError):
    """The user has no backing stores to synchronize."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} has no synchronized backing stores")


class MissingSystemCredentialsError(CredentialSyncError):
    """System credentials for a backing store are not configured."""

    def __init__(self, store_name: str | None = None):
        self.store_name = store_name
        target = f" for store '{store_name}'" if store_name else ""
        super().__init__(f"System credentials not configured{target}")


class PersistenceError(CredentialSyncError):
    """The directory or audit storage is unavailable."""


class VaultError(CredentialSyncError):
    """The vault client failed."""


class ProvisioningError(CredentialSyncError):
    """Account creation failed in at least one backing store."""

    def __init__(self, message: str, *, rollback_performed: bool = False):
        self.rollback_performed = rollback_performed
        super().__init__(message)
