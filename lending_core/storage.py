"""
Storage Backend Module

Provides the abstract row-store interface the lending engine runs against and
implementations for in-memory (testing), SQLite (single node persistence) and
PostgreSQL (production). All monetary values are stored as Decimal strings.

Every backend gives the engine two guarantees:

* ``atomic()`` commits all writes made inside it or none of them.
* ``lock(table, record_id)`` serializes read-modify-write on one row. Inside a
  transaction the lock is held until the transaction ends.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import TransientError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _copy(data: Any) -> Any:
    """Deep copy through JSON so callers never share mutable rows"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, lock_timeout: float = 5.0):
        self._lock_timeout = lock_timeout
        self._row_locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._row_locks_guard = threading.Lock()
        self._local = threading.local()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self.load_all(table))

    # Transaction hooks for subclasses

    def _begin(self) -> None:
        pass

    def _commit(self) -> None:
        pass

    def _rollback(self) -> None:
        pass

    def _lock_row(self, table: str, record_id: str) -> None:
        """Backend-level row lock, taken after the process-level one"""

    # Transaction bookkeeping (per thread)

    def _depth(self) -> int:
        return getattr(self._local, 'depth', 0)

    def _held_locks(self) -> List[threading.RLock]:
        if not hasattr(self._local, 'held_locks'):
            self._local.held_locks = []
        return self._local.held_locks

    def _release_held_locks(self) -> None:
        held = self._held_locks()
        while held:
            held.pop().release()

    def in_transaction(self) -> bool:
        """True when the calling thread has an open transaction"""
        return self._depth() > 0

    def begin_transaction(self) -> None:
        """Start a transaction, or join the caller's open one"""
        if self._depth() == 0:
            self._begin()
        self._local.depth = self._depth() + 1

    def commit(self) -> None:
        """Commit when the outermost transaction finishes"""
        depth = self._depth()
        if depth == 0:
            return
        self._local.depth = depth - 1
        if depth == 1:
            try:
                self._commit()
            finally:
                self._release_held_locks()

    def rollback(self) -> None:
        """Discard the whole transaction, however deeply nested"""
        if self._depth() == 0:
            return
        self._local.depth = 0
        try:
            self._rollback()
        finally:
            self._release_held_locks()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise

    @contextmanager
    def lock(self, table: str, record_id: str) -> Iterator[None]:
        """
        Serialize access to one row.

        Inside a transaction the lock is released when the transaction
        commits or rolls back, so no other writer can read the row between
        this caller's write and its commit.

        Raises:
            TransientError: If the lock is not acquired within the timeout
        """
        key = (table, record_id)
        with self._row_locks_guard:
            row_lock = self._row_locks.setdefault(key, threading.RLock())

        if not row_lock.acquire(timeout=self._lock_timeout):
            raise TransientError(
                f"Timed out waiting for lock on {table}/{record_id}",
                {"table": table, "record_id": record_id}
            )

        in_tx = self.in_transaction()
        if in_tx:
            self._held_locks().append(row_lock)
        try:
            self._lock_row(table, record_id)
            yield
        finally:
            if not in_tx:
                row_lock.release()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _buffer(self) -> Optional[Dict[str, Dict[str, Optional[Dict[str, Any]]]]]:
        """Pending writes of this thread's transaction; None-valued rows are deletes"""
        if self.in_transaction():
            return self._local.buffer
        return None

    def _begin(self) -> None:
        self._local.buffer = {}

    def _commit(self) -> None:
        buffer = self._local.buffer
        self._local.buffer = {}
        with self._lock:
            for table, rows in buffer.items():
                target = self._data.setdefault(table, {})
                for record_id, data in rows.items():
                    if data is None:
                        target.pop(record_id, None)
                    else:
                        target[record_id] = data

    def _rollback(self) -> None:
        self._local.buffer = {}

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's pending writes"""
        with self._lock:
            rows = dict(self._data.get(table, {}))
        buffer = self._buffer()
        if buffer and table in buffer:
            for record_id, data in buffer[table].items():
                if data is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = data
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        row = _copy(data)
        buffer = self._buffer()
        if buffer is not None:
            buffer.setdefault(table, {})[record_id] = row
            return
        with self._lock:
            self._data.setdefault(table, {})[record_id] = row

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._view(table).get(record_id)
        return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = record_id in self._view(table)
        buffer = self._buffer()
        if buffer is not None:
            buffer.setdefault(table, {})[record_id] = None
            return existed
        with self._lock:
            self._data.get(table, {}).pop(record_id, None)
        return existed

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _copy(record) for record in self._view(table).values()
            if _matches(record, filters)
        ]

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    One connection is shared by all threads; a transaction holds the
    connection lock from begin to commit, so transactions run one at a time.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False,
            isolation_level='DEFERRED', timeout=lock_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Connection lock plus translation of busy/locked errors"""
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise TransientError("Timed out waiting for the SQLite connection")
        try:
            yield
        except sqlite3.OperationalError as e:
            raise TransientError(f"SQLite operation failed: {e}") from e
        finally:
            self._lock.release()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        if not self.in_transaction():
            self._connection.commit()
        self._tables.add(table)

    def _autocommit(self) -> None:
        if not self.in_transaction():
            self._connection.commit()

    def _begin(self) -> None:
        # Held until _commit/_rollback; RLock lets the owning thread re-enter
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise TransientError("Timed out waiting to begin an SQLite transaction")

    def _commit(self) -> None:
        try:
            self._connection.commit()
        except sqlite3.OperationalError as e:
            self._connection.rollback()
            raise TransientError(f"SQLite commit failed: {e}") from e
        finally:
            self._lock.release()

    def _rollback(self) -> None:
        try:
            self._connection.rollback()
            # Tables created inside the transaction are gone
            self._tables.clear()
        finally:
            self._lock.release()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard():
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            )
            row = cursor.fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, id"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
            self._autocommit()
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._guard():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transactions and row locks"""

    def __init__(self, connection_string: str, lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor,
                options=f"-c lock_timeout={int(self._lock_timeout * 1000)}"
            )
            self._connection.autocommit = False

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise TransientError("Timed out waiting for the PostgreSQL connection")
        cursor = self._connection.cursor()
        try:
            yield cursor
            if not self.in_transaction():
                self._connection.commit()
        except self.psycopg2.OperationalError as e:
            if not self.in_transaction():
                self._connection.rollback()
            raise TransientError(f"PostgreSQL operation failed: {e}") from e
        except Exception:
            if not self.in_transaction():
                self._connection.rollback()
            raise
        finally:
            cursor.close()
            self._lock.release()

    def _ensure_table(self, cursor, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        self._tables.add(table)

    def _begin(self) -> None:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise TransientError("Timed out waiting to begin a PostgreSQL transaction")

    def _commit(self) -> None:
        try:
            self._connection.commit()
        except self.psycopg2.OperationalError as e:
            self._connection.rollback()
            raise TransientError(f"PostgreSQL commit failed: {e}") from e
        finally:
            self._lock.release()

    def _rollback(self) -> None:
        try:
            self._connection.rollback()
        finally:
            self._lock.release()

    def _lock_row(self, table: str, record_id: str) -> None:
        if not self.in_transaction():
            return
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT id FROM {table} WHERE id = %s FOR UPDATE", (record_id,))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at, id")
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            if not filters:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at, id")
            else:
                cursor.execute(
                    f"SELECT data FROM {table} WHERE data @> %s::jsonb ORDER BY created_at, id",
                    (json.dumps(filters, default=str),)
                )
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, lock_timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite:///:memory:``, ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
