"""Tests for key-value storage backends."""

import pytest

from storage import MemoryStorage, SqliteStorage, StorageQuotaExceededError


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        return MemoryStorage()
    return SqliteStorage(str(tmp_path / "cache" / "kv.db"))


class TestKeyValueStorage:
    """Test cases shared by every storage backend."""

    def test_set_and_get(self, storage):
        """Test storing and reading a value."""
        storage.set_item("search_cache_a", '{"v": 1}')

        assert storage.get_item("search_cache_a") == '{"v": 1}'
        assert "search_cache_a" in storage
        assert len(storage) == 1

    def test_get_missing(self, storage):
        """Test missing keys read as None."""
        assert storage.get_item("missing") is None
        assert "missing" not in storage

    def test_overwrite(self, storage):
        """Test writing an existing key replaces its value."""
        storage.set_item("k", "1")
        storage.set_item("k", "2")

        assert storage.get_item("k") == "2"
        assert len(storage) == 1

    def test_keys_by_prefix(self, storage):
        """Test prefix listing treats underscores literally."""
        storage.set_item("search_cache_a", "{}")
        storage.set_item("search_cache_b", "{}")
        storage.set_item("searchXcacheXc", "{}")
        storage.set_item("conv_cache_conv_1_x", "{}")

        assert sorted(storage.keys("search_cache_")) == ["search_cache_a", "search_cache_b"]
        assert storage.keys("conv_cache_") == ["conv_cache_conv_1_x"]
        assert len(storage.keys()) == 4

    def test_remove(self, storage):
        """Test removing a key, including one that does not exist."""
        storage.set_item("k", "1")

        storage.remove_item("k")
        storage.remove_item("k")

        assert storage.get_item("k") is None

    def test_clear(self, storage):
        """Test clearing removes every key."""
        storage.set_item("a", "1")
        storage.set_item("b", "2")

        storage.clear()

        assert storage.keys() == []


class TestStorageQuota:
    """Test cases for storage capacity limits."""

    @pytest.fixture(params=["memory", "sqlite"])
    def small_storage(self, request, tmp_path):
        if request.param == "memory":
            return MemoryStorage(max_items=2)
        return SqliteStorage(str(tmp_path / "kv.db"), max_items=2)

    def test_new_key_when_full(self, small_storage):
        """Test adding a key to a full storage raises."""
        small_storage.set_item("a", "1")
        small_storage.set_item("b", "2")

        with pytest.raises(StorageQuotaExceededError):
            small_storage.set_item("c", "3")

        assert small_storage.get_item("c") is None

    def test_overwrite_when_full(self, small_storage):
        """Test overwriting an existing key is allowed when full."""
        small_storage.set_item("a", "1")
        small_storage.set_item("b", "2")

        small_storage.set_item("a", "updated")

        assert small_storage.get_item("a") == "updated"


class TestSqliteStorage:
    """Test cases specific to SQLite persistence."""

    def test_persists_across_instances(self, tmp_path):
        """Test values survive reopening the database."""
        db_path = str(tmp_path / "kv.db")
        SqliteStorage(db_path).set_item("search_cache_a", "{}")

        assert SqliteStorage(db_path).get_item("search_cache_a") == "{}"

    def test_creates_parent_directories(self, tmp_path):
        """Test the database directory is created on demand."""
        db_path = tmp_path / "nested" / "dir" / "kv.db"

        SqliteStorage(str(db_path))

        assert db_path.exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
