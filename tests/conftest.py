"""
Shared fixtures for credential_sync tests.
"""
import pytest
import pytest_asyncio

from credential_sync.clients import StoreClientRegistry
from credential_sync.conf import SystemCredentials
from credential_sync.directory import DirectoryStore, TTLCache
from credential_sync.hasher import hash_password
from credential_sync.lifecycle import CredentialLifecycle
from credential_sync.models import BackingStore
from credential_sync.propagation import PropagationUnit
from credential_sync.synchronizer import FanOutSynchronizer
from credential_sync.vault import EncryptedVaultClient, VaultMirror

from fakes import SYSTEM_ENV, FakeStoreClient, make_vault_config


# --- Fixtures ---

@pytest.fixture
def credentials():
    return SystemCredentials(SYSTEM_ENV)


@pytest.fixture
def delays():
    """Backoff delays requested by the propagation unit."""
    return []


@pytest.fixture
def fake_sleep(delays):
    async def _sleep(delay: float) -> None:
        delays.append(delay)
    return _sleep


@pytest.fixture
def stores():
    return {
        "primary": FakeStoreClient("primary"),
        "A": FakeStoreClient("A"),
        "B": FakeStoreClient("B"),
    }


@pytest.fixture
def registry(stores):
    return StoreClientRegistry(clients=stores)


@pytest.fixture
def directory():
    return DirectoryStore(cache=TTLCache(ttl=30))


@pytest.fixture
def propagation(registry, credentials, fake_sleep):
    return PropagationUnit(registry, credentials, max_attempts=3, base_delay=1.0, sleep=fake_sleep)


@pytest.fixture
def synchronizer(directory, propagation):
    return FanOutSynchronizer(directory, propagation, max_concurrency=4)


@pytest.fixture
def vault_client():
    return EncryptedVaultClient(make_vault_config())


@pytest.fixture
def vault_mirror(vault_client, directory):
    return VaultMirror(vault_client, directory=directory)


@pytest.fixture
def lifecycle(directory, propagation, synchronizer, vault_mirror):
    return CredentialLifecycle(
        directory, propagation, synchronizer,
        authoritative_store="primary", vault_mirror=vault_mirror,
    )


@pytest.fixture(scope="session")
def current_hash():
    """Hash of the password every seeded user starts with."""
    return hash_password("CorrectPW123")


@pytest_asyncio.fixture
async def enrolled_user(directory, stores, current_hash):
    """User u1 enrolled in primary, A and B; primary holds the current hash."""
    await directory.upsert_user(
        "u1",
        email="u1@example.com",
        backing_stores=[
            BackingStore(store_name="primary", record_id="p-1"),
            BackingStore(store_name="A", record_id="a-1"),
            BackingStore(store_name="B", record_id="b-1"),
        ],
    )
    stores["primary"].records["p-1"] = {"password_hash": current_hash}
    return "u1"
