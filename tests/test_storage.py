"""
Tests for storage backends, transactions and row locks
"""

import pytest
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from lending_core.storage import (
    InMemoryStorage, SQLiteStorage, create_storage
)
from lending_core.errors import TransientError


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


def _basic_operations(storage):
    storage.save("test_table", "record_1", test_data)
    assert storage.load("test_table", "record_1") == test_data
    assert storage.exists("test_table", "record_1")
    assert not storage.exists("test_table", "non_existent")

    storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
    assert len(storage.load_all("test_table")) == 2
    assert storage.count("test_table") == 2

    results = storage.find("test_table", {"name": "Test Record"})
    assert len(results) == 1
    assert results[0]["id"] == "test_001"

    assert storage.delete("test_table", "record_1")
    assert not storage.delete("test_table", "record_1")
    assert storage.count("test_table") == 1

    storage.clear_table("test_table")
    assert storage.count("test_table") == 0


class TestStorageBackends:
    """Test basic CRUD on each backend"""

    def test_in_memory_storage_basic_operations(self):
        """Test basic CRUD operations with InMemoryStorage"""
        storage = InMemoryStorage()
        _basic_operations(storage)
        storage.close()

    def test_sqlite_storage_basic_operations(self):
        """Test basic CRUD operations with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            _basic_operations(storage)
            storage.close()

    def test_in_memory_returns_copies(self):
        """Mutating a loaded row never changes the stored one"""
        storage = InMemoryStorage()
        storage.save("t", "1", {"id": "1", "items": [1, 2]})
        loaded = storage.load("t", "1")
        loaded["items"].append(3)
        assert storage.load("t", "1")["items"] == [1, 2]

    def test_sqlite_persists_across_connections(self):
        """Committed rows survive reopening the database"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "persist.db"
            storage = SQLiteStorage(db_path)
            storage.save("loans", "l1", {"id": "l1", "status": "active"})
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("loans", "l1") == {"id": "l1", "status": "active"}
            reopened.close()

    def test_create_storage_from_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)
        sqlite = create_storage("sqlite:///:memory:")
        assert isinstance(sqlite, SQLiteStorage)
        sqlite.close()
        with pytest.raises(ValueError):
            create_storage("mysql://nowhere")


class TestTransactions:
    """Test all-or-nothing semantics of atomic()"""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.backends = [
            InMemoryStorage(),
            SQLiteStorage(Path(self.temp_dir.name) / "tx.db"),
        ]

    def teardown_method(self):
        for storage in self.backends:
            storage.close()
        self.temp_dir.cleanup()

    def test_commit_applies_all_writes(self):
        for storage in self.backends:
            with storage.atomic():
                storage.save("t", "a", {"id": "a"})
                storage.save("t", "b", {"id": "b"})
            assert storage.count("t") == 2

    def test_rollback_discards_all_writes(self):
        """An exception inside atomic() leaves no trace"""
        for storage in self.backends:
            storage.save("t", "keep", {"id": "keep", "v": 1})
            with pytest.raises(RuntimeError):
                with storage.atomic():
                    storage.save("t", "keep", {"id": "keep", "v": 2})
                    storage.save("t", "new", {"id": "new"})
                    storage.delete("t", "keep")
                    raise RuntimeError("boom")
            assert storage.load("t", "keep") == {"id": "keep", "v": 1}
            assert storage.load("t", "new") is None
            assert not storage.in_transaction()

    def test_writes_visible_inside_own_transaction(self):
        for storage in self.backends:
            with storage.atomic():
                storage.save("t", "x", {"id": "x", "kind": "pending"})
                assert storage.load("t", "x")["kind"] == "pending"
                assert len(storage.find("t", {"kind": "pending"})) == 1

    def test_nested_atomic_joins_outer(self):
        """Inner blocks commit only with the outermost one"""
        for storage in self.backends:
            with pytest.raises(RuntimeError):
                with storage.atomic():
                    with storage.atomic():
                        storage.save("t", "inner", {"id": "inner"})
                    raise RuntimeError("outer fails")
            assert storage.load("t", "inner") is None

    def test_in_memory_uncommitted_writes_hidden_from_other_threads(self):
        storage = InMemoryStorage()
        seen = []
        started = threading.Event()
        release = threading.Event()

        def writer():
            with storage.atomic():
                storage.save("t", "x", {"id": "x"})
                started.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=writer)
        thread.start()
        started.wait(timeout=5)
        seen.append(storage.load("t", "x"))
        release.set()
        thread.join()

        assert seen == [None]
        assert storage.load("t", "x") == {"id": "x"}


class TestRowLocks:
    """Test lock(table, id) serialization"""

    def test_lock_serializes_read_modify_write(self):
        """Concurrent increments under the row lock never lose an update"""
        storage = InMemoryStorage()
        storage.save("counters", "c", {"id": "c", "value": 0})

        def increment():
            for _ in range(20):
                with storage.atomic():
                    with storage.lock("counters", "c"):
                        row = storage.load("counters", "c")
                        time.sleep(0.0005)
                        row["value"] += 1
                        storage.save("counters", "c", row)

        threads = [threading.Thread(target=increment) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert storage.load("counters", "c")["value"] == 100

    def test_lock_held_until_commit(self):
        """Another thread cannot take the row until the transaction ends"""
        storage = InMemoryStorage(lock_timeout=0.1)
        acquired = threading.Event()
        release = threading.Event()
        errors = []

        def holder():
            with storage.atomic():
                with storage.lock("loans", "l1"):
                    pass
                acquired.set()
                release.wait(timeout=5)

        def contender():
            try:
                with storage.lock("loans", "l1"):
                    pass
            except TransientError as e:
                errors.append(e)

        t1 = threading.Thread(target=holder)
        t1.start()
        acquired.wait(timeout=5)
        t2 = threading.Thread(target=contender)
        t2.start()
        t2.join()
        release.set()
        t1.join()

        assert len(errors) == 1
        assert errors[0].retryable

        # Free again once the holder committed
        with storage.lock("loans", "l1"):
            pass

    def test_different_rows_do_not_block(self):
        storage = InMemoryStorage(lock_timeout=0.1)
        with storage.atomic():
            with storage.lock("loans", "a"):
                done = []

                def other():
                    with storage.lock("loans", "b"):
                        done.append(True)

                t = threading.Thread(target=other)
                t.start()
                t.join()
        assert done == [True]
