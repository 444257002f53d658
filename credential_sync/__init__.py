"""Hash a password once and keep it consistent across every
backing store a user is enrolled in.

Exposed operations:
- ``hash_password`` / ``verify_password``
- ``FanOutSynchronizer.sync_to_all_stores``
- ``CredentialLifecycle.change_password`` / ``reset_password``
"""

from .version import __version__
from .exceptions import (
    CredentialSyncError,
    ValidationError,
    WeakSecretError,
    InvalidCredentialError,
    UserNotFoundError,
    NoBackingStoresError,
    MissingSystemCredentialsError,
    PersistenceError,
    VaultError,
    ProvisioningError,
)
from .conf import SystemCredentials, SyncSettings
from .hasher import hash_password, verify_password, ahash_password, averify_password
from .models import (
    AuditEntry,
    AuditStatus,
    BackingStore,
    CredentialResult,
    Operation,
    StoreOutcome,
    StoreStatus,
    SyncResult,
    UserEntry,
)
from .clients import (
    BackingStoreClient,
    HTTPStoreClient,
    StoreClientRegistry,
    StoreError,
    StoreAuthError,
    RecordNotFoundError,
)
from .directory import DirectoryStore, JSONFileStorage, MemoryStorage, TTLCache
from .propagation import PropagationUnit
from .synchronizer import FanOutSynchronizer
from .lifecycle import CredentialLifecycle, build_lifecycle
from .provisioning import AccountProvisioner

__all__ = [
    "__version__",
    "CredentialSyncError",
    "ValidationError",
    "WeakSecretError",
    "InvalidCredentialError",
    "UserNotFoundError",
    "NoBackingStoresError",
    "MissingSystemCredentialsError",
    "PersistenceError",
    "VaultError",
    "ProvisioningError",
    "SystemCredentials",
    "SyncSettings",
    "hash_password",
    "verify_password",
    "ahash_password",
    "averify_password",
    "AuditEntry",
    "AuditStatus",
    "BackingStore",
    "CredentialResult",
    "Operation",
    "StoreOutcome",
    "StoreStatus",
    "SyncResult",
    "UserEntry",
    "BackingStoreClient",
    "HTTPStoreClient",
    "StoreClientRegistry",
    "StoreError",
    "StoreAuthError",
    "RecordNotFoundError",
    "DirectoryStore",
    "JSONFileStorage",
    "MemoryStorage",
    "TTLCache",
    "PropagationUnit",
    "FanOutSynchronizer",
    "CredentialLifecycle",
    "build_lifecycle",
    "AccountProvisioner",
]
