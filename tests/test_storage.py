"""Tests for the SQLite key/value storage."""

import pytest

from lt_local.storage import SqliteStorage, StorageError


class TestSqliteStorage:
    """Tests for reading and writing keys."""

    def test_missing_key(self):
        with SqliteStorage.open_in_memory() as storage:
            assert storage.get_item("absent") is None

    def test_set_and_overwrite(self):
        with SqliteStorage.open_in_memory() as storage:
            storage.set_item("k", "one")
            storage.set_item("k", "two")
            assert storage.get_item("k") == "two"
            assert storage.keys() == ["k"]

    def test_remove_item(self):
        with SqliteStorage.open_in_memory() as storage:
            storage.set_item("k", "v")
            assert storage.remove_item("k") is True
            assert storage.remove_item("k") is False
            assert storage.get_item("k") is None

    def test_keys_sorted(self):
        with SqliteStorage.open_in_memory() as storage:
            storage.set_item("b", "1")
            storage.set_item("a", "2")
            assert storage.keys() == ["a", "b"]

    def test_open_creates_parent_directories(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "state.db"
        with SqliteStorage.open(path) as storage:
            storage.set_item("k", "v")
        assert path.exists()
        with SqliteStorage.open(path) as storage:
            assert storage.get_item("k") == "v"

    def test_closed_connection_raises_storage_error(self):
        storage = SqliteStorage.open_in_memory()
        storage.close()
        with pytest.raises(StorageError):
            storage.get_item("k")
        with pytest.raises(StorageError):
            storage.set_item("k", "v")


class TestChangedExternally:
    """Tests for detecting commits from other connections."""

    def test_other_connection_write_detected_once(self, tmp_path):
        path = tmp_path / "state.db"
        with SqliteStorage.open(path) as writer, SqliteStorage.open(path) as reader:
            assert reader.changed_externally() is False
            writer.set_item("k", "v")
            assert reader.changed_externally() is True
            assert reader.changed_externally() is False

    def test_own_writes_not_reported(self, tmp_path):
        with SqliteStorage.open(tmp_path / "state.db") as storage:
            storage.set_item("k", "v")
            assert storage.changed_externally() is False
