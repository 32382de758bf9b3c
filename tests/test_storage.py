"""Unit tests for KeyValueStore component."""

import json
import logging
import threading

import pytest

from mini_kvstore.persistence import MemoryBlobStore, PersistenceError
from mini_kvstore.storage import NEVER_EXPIRE, KeyValueStore, StoreEntry


class FakeClock:
    """テスト用の時計（ミリ秒）"""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FailingBlobStore(MemoryBlobStore):
    """write()が常に失敗するBlobストア"""

    def write(self, data: bytes) -> None:
        raise PersistenceError("disk full")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def blob() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def store(blob: MemoryBlobStore, clock: FakeClock) -> KeyValueStore:
    """Create a fresh KeyValueStore instance for each test."""
    return KeyValueStore(blob, now_ms=clock)


class TestKeyValueStoreBasics:
    """Test basic key-value operations."""

    def test_get_nonexistent_key(self, store: KeyValueStore) -> None:
        """Test that getting a non-existent key returns ("", False)."""
        assert store.get("nonexistent") == ("", False)

    def test_set_and_get_key(self, store: KeyValueStore) -> None:
        """Test setting and getting a key-value pair."""
        store.set("foo", "bar")
        assert store.get("foo") == ("bar", True)

    def test_set_empty_value(self, store: KeyValueStore) -> None:
        """Test that an empty string is a real value, not a miss."""
        store.set("foo", "")
        assert store.get("foo") == ("", True)

    def test_delete_existing_key_returns_true(self, store: KeyValueStore) -> None:
        """Test that deleting an existing key returns True."""
        store.set("foo", "bar")
        assert store.delete("foo") is True
        assert store.get("foo") == ("", False)

    def test_delete_nonexistent_key_returns_false(self, store: KeyValueStore) -> None:
        """Test that deleting a non-existent key is not an error."""
        assert store.delete("nonexistent") is False

    def test_exists_and_len(self, store: KeyValueStore) -> None:
        """Test exists() and len()."""
        store.set("key1", "value1")
        store.set("key2", "value2")

        assert store.exists("key1") is True
        assert store.exists("missing") is False
        assert len(store) == 2
        assert set(store.get_all_keys()) == {"key1", "key2"}


class TestKeyValueStoreExpiry:
    """Test lazy expiration."""

    def test_value_readable_before_ttl(self, store: KeyValueStore, clock: FakeClock) -> None:
        """Test that a key is readable right after SET with a TTL."""
        store.set("k", "v", 100)
        assert store.get("k") == ("v", True)

        clock.advance(99)
        assert store.get("k") == ("v", True)

    def test_value_expires_at_deadline(self, store: KeyValueStore, clock: FakeClock) -> None:
        """Test that a key is gone once its deadline is reached."""
        store.set("k", "v", 100)

        clock.advance(100)
        assert store.get("k") == ("", False)

    def test_expired_key_is_evicted_on_get(self, store: KeyValueStore, clock: FakeClock) -> None:
        """Test that GET removes the expired entry from the map."""
        store.set("k", "v", 10)
        clock.advance(50)

        # GETされるまではメモリに残る
        assert store.exists("k") is True

        store.get("k")
        assert store.exists("k") is False

    def test_expired_key_eviction_is_persisted(
        self, store: KeyValueStore, blob: MemoryBlobStore, clock: FakeClock
    ) -> None:
        """Test that lazy eviction rewrites the snapshot."""
        store.set("k", "v", 10)
        assert json.loads(blob.data) == {"k": "v"}

        clock.advance(10)
        store.get("k")
        assert json.loads(blob.data) == {}

    def test_never_expire_sentinel(self, store: KeyValueStore, clock: FakeClock) -> None:
        """Test that NEVER_EXPIRE keys survive any amount of time."""
        store.set("k", "v", NEVER_EXPIRE)
        assert store.get_expiry("k") is None

        clock.advance(10 * 365 * 24 * 3600 * 1000)
        assert store.get("k") == ("v", True)

    def test_set_records_deadline(self, store: KeyValueStore, clock: FakeClock) -> None:
        """Test that the deadline is now + ttl."""
        store.set("k", "v", 250)
        assert store.get_expiry("k") == clock.now + 250

    def test_overwrite_uses_latest_ttl(self, store: KeyValueStore, clock: FakeClock) -> None:
        """Test that re-SET replaces both value and deadline."""
        store.set("k", "v1", 10)
        store.set("k", "v2", 1000)

        clock.advance(500)
        assert store.get("k") == ("v2", True)

        clock.advance(500)
        assert store.get("k") == ("", False)

    def test_overwrite_without_ttl_clears_deadline(self, store: KeyValueStore, clock: FakeClock) -> None:
        """Test that re-SET without TTL removes the previous deadline."""
        store.set("k", "v1", 10)
        store.set("k", "v2")

        clock.advance(1000)
        assert store.get("k") == ("v2", True)

    def test_store_entry_is_expired(self) -> None:
        """Test the deadline comparison on StoreEntry."""
        assert StoreEntry("v").is_expired(10**15) is False
        assert StoreEntry("v", expires_at_ms=100).is_expired(99) is False
        assert StoreEntry("v", expires_at_ms=100).is_expired(100) is True


class TestKeyValueStorePersistence:
    """Test snapshot save and load."""

    def test_every_mutation_saves(self, store: KeyValueStore, blob: MemoryBlobStore) -> None:
        """Test that SET and DELETE each write a full snapshot."""
        store.set("a", "1")
        store.set("b", "2")
        assert json.loads(blob.data) == {"a": "1", "b": "2"}

        store.delete("a")
        assert json.loads(blob.data) == {"b": "2"}
        assert blob.writes == 3

    def test_get_hit_does_not_save(self, store: KeyValueStore, blob: MemoryBlobStore) -> None:
        """Test that a plain read does not rewrite the snapshot."""
        store.set("a", "1")
        store.get("a")
        store.get("missing")
        assert blob.writes == 1

    def test_fresh_store_restores_values(self, blob: MemoryBlobStore) -> None:
        """Test that a new store on the same blob sees saved keys."""
        first = KeyValueStore(blob)
        first.set("k", "v")

        second = KeyValueStore(blob)
        assert second.get("k") == ("v", True)

    def test_fresh_store_does_not_see_deleted_keys(self, blob: MemoryBlobStore) -> None:
        """Test that a deletion survives a restart."""
        first = KeyValueStore(blob)
        first.set("k", "v")
        first.delete("k")

        second = KeyValueStore(blob)
        assert second.get("k") == ("", False)

    def test_restored_keys_have_no_deadline(self, blob: MemoryBlobStore, clock: FakeClock) -> None:
        """Test that deadlines are not part of the snapshot."""
        first = KeyValueStore(blob, now_ms=clock)
        first.set("k", "v", 10)

        second = KeyValueStore(blob, now_ms=clock)
        clock.advance(1000)
        assert second.get("k") == ("v", True)

    def test_missing_blob_starts_empty(self) -> None:
        """Test that an absent snapshot is not an error."""
        store = KeyValueStore(MemoryBlobStore())
        assert len(store) == 0

    @pytest.mark.parametrize(
        "data",
        [b"not json", b"[1, 2, 3]", b'{"k": 1}', b"\xff\xfe"],
    )
    def test_unparsable_blob_starts_empty(self, data: bytes, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a corrupt snapshot degrades to an empty store with a warning."""
        with caplog.at_level(logging.WARNING):
            store = KeyValueStore(MemoryBlobStore(data))

        assert len(store) == 0
        assert any(record.levelno == logging.WARNING for record in caplog.records)

    def test_write_failure_keeps_mutation(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a failed save is logged and the in-memory change stays."""
        store = KeyValueStore(FailingBlobStore())

        with caplog.at_level(logging.ERROR):
            store.set("k", "v")

        assert store.get("k") == ("v", True)
        assert store.last_save_ok is False
        assert store.save() is False
        assert "disk full" in caplog.text

    def test_write_failure_raises_in_strict_mode(self) -> None:
        """Test that strict persistence propagates the failure."""
        store = KeyValueStore(FailingBlobStore(), strict_persistence=True)

        with pytest.raises(PersistenceError):
            store.set("k", "v")

        # ロールバックはしない
        assert store.get("k") == ("v", True)

    def test_accepts_filesystem_path(self, tmp_path) -> None:
        """Test that a path is wrapped in a FileBlobStore."""
        path = tmp_path / "data" / "kvstore.json"

        store = KeyValueStore(str(path))
        store.set("k", "v")

        assert json.loads(path.read_text()) == {"k": "v"}
        assert KeyValueStore(path).get("k") == ("v", True)


class TestKeyValueStoreConcurrency:
    """Test that concurrent writers do not lose updates."""

    def test_concurrent_sets_are_all_saved(self, blob: MemoryBlobStore) -> None:
        store = KeyValueStore(blob)

        def writer(prefix: str) -> None:
            for i in range(50):
                store.set(f"{prefix}-{i}", str(i))

        threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store) == 200
        assert len(json.loads(blob.data)) == 200
        assert blob.writes == 200
