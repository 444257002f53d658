"""
Tests for the directory record store, its cache and storage backends.
"""
import asyncio
from datetime import timedelta

import orjson
import pytest

from credential_sync.directory import (
    DirectoryStore,
    JSONFileStorage,
    MemoryStorage,
    TTLCache,
    record_audit,
)
from credential_sync.exceptions import PersistenceError, UserNotFoundError
from credential_sync.models import (
    AuditEntry,
    AuditStatus,
    BackingStore,
    Operation,
    StoreStatus,
    utcnow,
)

from fakes import UnavailableStorage


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    """Expiry and isolation of cached values."""

    def test_get_before_expiry(self):
        clock = FakeClock()
        cache = TTLCache(ttl=30, clock=clock)
        cache.set("k", {"a": 1})
        clock.now += 29
        assert cache.get("k") == {"a": 1}

    def test_expires_after_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl=30, clock=clock)
        cache.set("k", {"a": 1})
        clock.now += 30
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_zero_ttl_disables_cache(self):
        cache = TTLCache(ttl=0)
        cache.set("k", 1)
        assert "k" not in cache

    def test_values_are_copied(self):
        cache = TTLCache(ttl=30)
        value = {"users": {}}
        cache.set("k", value)
        value["users"]["x"] = 1
        fetched = cache.get("k")
        assert fetched == {"users": {}}
        fetched["users"]["y"] = 2
        assert cache.get("k") == {"users": {}}

    def test_invalidate(self):
        cache = TTLCache(ttl=30)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert "a" not in cache and "b" in cache
        cache.invalidate()
        assert len(cache) == 0


class TestJSONFileStorage:
    """File backend."""

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, tmp_path):
        storage = JSONFileStorage(tmp_path)
        assert await storage.load("registry") is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        storage = JSONFileStorage(tmp_path / "nested")
        await storage.save("registry", {"users": {"u1": {"email": "a@b.c"}}})
        assert await storage.load("registry") == {"users": {"u1": {"email": "a@b.c"}}}
        on_disk = orjson.loads((tmp_path / "nested" / "registry.json").read_bytes())
        assert on_disk["users"]["u1"]["email"] == "a@b.c"
        assert not (tmp_path / "nested" / "registry.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path):
        (tmp_path / "registry.json").write_text("{not json")
        storage = JSONFileStorage(tmp_path)
        with pytest.raises(PersistenceError):
            await storage.load("registry")

    @pytest.mark.asyncio
    async def test_directory_persists_across_instances(self, tmp_path):
        first = DirectoryStore(storage=JSONFileStorage(tmp_path))
        await first.upsert_user(
            "u1", email="u1@example.com",
            backing_stores=[BackingStore(store_name="A", record_id="1")],
        )
        second = DirectoryStore(storage=JSONFileStorage(tmp_path))
        user = await second.get_user("u1")
        assert user.email == "u1@example.com"
        assert user.store_names == ["A"]


class TestUsers:
    """Registry operations."""

    @pytest.mark.asyncio
    async def test_get_unknown_user(self, directory):
        assert await directory.get_user("nobody") is None

    @pytest.mark.asyncio
    async def test_upsert_creates_and_merges(self, directory):
        created = await directory.upsert_user("u1", email="u1@example.com")
        updated = await directory.upsert_user("u1", display_name="User One")
        assert updated.email == "u1@example.com"
        assert updated.display_name == "User One"
        assert updated.created_at == created.created_at
        assert updated.updated_at >= created.updated_at

    @pytest.mark.asyncio
    async def test_upsert_ignores_protected_fields(self, directory):
        entry = await directory.upsert_user("u1", user_id="other", email="x@y.z")
        assert entry.user_id == "u1"
        assert await directory.get_user("other") is None
        assert (await directory.get_user("u1")).email == "x@y.z"

    @pytest.mark.asyncio
    async def test_upsert_accepts_store_dicts(self, directory):
        user = await directory.upsert_user(
            "u1", backing_stores=[{"store_name": "A", "record_id": "7"}],
        )
        assert user.backing_stores[0].record_id == "7"
        assert user.backing_stores[0].status == StoreStatus.SYNCED

    @pytest.mark.asyncio
    async def test_add_backing_store_replaces_same_name(self, directory):
        await directory.upsert_user(
            "u1", backing_stores=[BackingStore(store_name="A", record_id="1")],
        )
        await directory.add_backing_store("u1", BackingStore(store_name="B", record_id="2"))
        user = await directory.add_backing_store(
            "u1", BackingStore(store_name="A", record_id="9"),
        )
        assert user.store_names == ["B", "A"]
        assert user.get_store("A").record_id == "9"

    @pytest.mark.asyncio
    async def test_add_backing_store_unknown_user(self, directory):
        with pytest.raises(UserNotFoundError):
            await directory.add_backing_store(
                "ghost", BackingStore(store_name="A", record_id="1"),
            )

    @pytest.mark.asyncio
    async def test_remove_backing_store(self, directory, enrolled_user):
        user = await directory.remove_backing_store(enrolled_user, "A")
        assert user.store_names == ["primary", "B"]

    @pytest.mark.asyncio
    async def test_set_store_status(self, directory, enrolled_user):
        user = await directory.set_store_status(enrolled_user, "B", StoreStatus.FAILED)
        assert user.get_store("B").status == StoreStatus.FAILED
        assert user.get_store("A").status == StoreStatus.SYNCED
        assert await directory.set_store_status(enrolled_user, "Z", StoreStatus.FAILED) is None
        assert await directory.set_store_status("ghost", "A", StoreStatus.FAILED) is None

    @pytest.mark.asyncio
    async def test_concurrent_store_updates_are_kept(self, tmp_path):
        directory = DirectoryStore(storage=JSONFileStorage(tmp_path))
        await directory.upsert_user(
            "u1", backing_stores=[
                BackingStore(store_name="A", record_id="1"),
                BackingStore(store_name="B", record_id="2"),
            ],
        )
        await asyncio.gather(
            directory.add_backing_store("u1", BackingStore(store_name="C", record_id="3")),
            directory.set_store_statuses("u1", {"A": StoreStatus.FAILED}),
            directory.set_store_status("u1", "B", StoreStatus.PENDING),
        )
        user = await DirectoryStore(storage=JSONFileStorage(tmp_path)).get_user("u1")
        assert user.store_names == ["A", "B", "C"]
        assert user.get_store("A").status == StoreStatus.FAILED
        assert user.get_store("B").status == StoreStatus.PENDING

    @pytest.mark.asyncio
    async def test_status_write_ignores_stale_cache(self):
        storage = MemoryStorage()
        writer = DirectoryStore(storage=storage)
        stale = DirectoryStore(storage=storage, cache=TTLCache(ttl=300))
        await writer.upsert_user(
            "u1", backing_stores=[BackingStore(store_name="A", record_id="1")],
        )
        await stale.get_user("u1")
        await writer.add_backing_store("u1", BackingStore(store_name="C", record_id="3"))
        user = await stale.set_store_statuses("u1", {"A": StoreStatus.FAILED})
        assert user.store_names == ["A", "C"]
        assert user.get_store("A").status == StoreStatus.FAILED

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, directory, enrolled_user):
        await directory.delete_user(enrolled_user)
        await directory.delete_user(enrolled_user)
        assert await directory.get_user(enrolled_user) is None
        assert await directory.list_users() == []

    @pytest.mark.asyncio
    async def test_read_after_write_with_cache(self):
        directory = DirectoryStore(storage=MemoryStorage(), cache=TTLCache(ttl=300))
        await directory.upsert_user("u1", email="old@example.com")
        assert (await directory.get_user("u1")).email == "old@example.com"
        await directory.upsert_user("u1", email="new@example.com")
        assert (await directory.get_user("u1")).email == "new@example.com"

    @pytest.mark.asyncio
    async def test_registry_metadata(self):
        storage = MemoryStorage()
        directory = DirectoryStore(storage=storage)
        await directory.upsert_user("u1")
        await directory.upsert_user("u2")
        doc = await storage.load("registry")
        assert doc["metadata"]["total_users"] == 2
        assert doc["metadata"]["last_updated"] is not None

    @pytest.mark.asyncio
    async def test_storage_failure_raises(self):
        directory = DirectoryStore(storage=UnavailableStorage())
        with pytest.raises(PersistenceError):
            await directory.get_user("u1")


class TestAuditLog:
    """Append, query and retention."""

    @pytest.mark.asyncio
    async def test_append_assigns_id_and_timestamp(self, directory):
        entry = await directory.append_audit(AuditEntry(
            user_id="u1", operation=Operation.PASSWORD_SYNC, status=AuditStatus.SUCCESS,
        ))
        assert entry.log_id.startswith("log_")
        assert entry.timestamp is not None

    @pytest.mark.asyncio
    async def test_query_filters_newest_first(self, directory):
        base = utcnow()
        for i, (user, op) in enumerate([
            ("u1", Operation.PASSWORD_SYNC),
            ("u1", Operation.PASSWORD_CHANGE),
            ("u2", Operation.PASSWORD_SYNC),
            ("u1", Operation.PASSWORD_SYNC),
        ]):
            await directory.append_audit(AuditEntry(
                user_id=user, operation=op, status=AuditStatus.SUCCESS,
                timestamp=base + timedelta(seconds=i), details={"seq": i},
            ))
        entries = await directory.query_audit(user_id="u1", operation=Operation.PASSWORD_SYNC)
        assert [e.details["seq"] for e in entries] == [3, 0]
        assert len(await directory.get_logs_for_user("u1", limit=2)) == 2
        assert await directory.query_audit(status=AuditStatus.FAILED) == []

    @pytest.mark.asyncio
    async def test_prune_removes_old_entries(self, directory):
        await directory.append_audit(AuditEntry(
            user_id="u1", operation=Operation.PASSWORD_SYNC, status=AuditStatus.SUCCESS,
            timestamp=utcnow() - timedelta(days=45),
        ))
        await directory.append_audit(AuditEntry(
            user_id="u1", operation=Operation.PASSWORD_SYNC, status=AuditStatus.SUCCESS,
        ))
        assert await directory.prune_audit(days_to_keep=30) == 1
        assert len(await directory.query_audit()) == 1

    @pytest.mark.asyncio
    async def test_record_audit_swallows_persistence_error(self):
        directory = DirectoryStore(storage=UnavailableStorage())
        result = await record_audit(directory, AuditEntry(
            user_id="u1", operation=Operation.PASSWORD_SYNC, status=AuditStatus.SUCCESS,
        ))
        assert result is None
