"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by an integer
identifier that increases monotonically per table, so identifier order is
insertion order. All monetary values stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import copy
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager, nullcontext

from .exceptions import PersistenceError


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def insert(self, table: str, data: Dict[str, Any], id_field: str) -> int:
        """Insert a new record, assign the next identifier to data[id_field] and return it"""
        pass

    @abstractmethod
    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in identifier order"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters in identifier order"""
        pass

    @abstractmethod
    def find_next(self, table: str, filters: Dict[str, Any],
                  after_id: int = 0) -> Optional[Dict[str, Any]]:
        """First record matching filters with an identifier greater than after_id"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def _transaction_guard(self):
        """Lock held for the whole of an atomic block"""
        return nullcontext()

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Nested blocks join the outermost transaction. Any exception rolls
        back every write made since the outermost block began.
        """
        with self._transaction_guard():
            self.begin_transaction()
            try:
                yield
            except BaseException:
                self.rollback()
                raise
            else:
                self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def insert(self, table: str, data: Dict[str, Any], id_field: str) -> int:
        """Insert a record with the next identifier"""
        with self._lock:
            self._ensure_table(table)
            record_id = self._sequences.get(table, 0) + 1
            self._sequences[table] = record_id
            data[id_field] = record_id
            self.save(table, record_id, data)
            return record_id

    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))
            if record_id > self._sequences.get(table, 0):
                self._sequences[table] = record_id

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            rows = self._data[table]
            return [json.loads(json.dumps(rows[key])) for key in sorted(rows)]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            return [record for record in self.load_all(table) if _matches(record, filters)]

    def find_next(self, table: str, filters: Dict[str, Any],
                  after_id: int = 0) -> Optional[Dict[str, Any]]:
        """First matching record after the given identifier"""
        with self._lock:
            self._ensure_table(table)
            rows = self._data[table]
            for key in sorted(rows):
                if key > after_id and _matches(rows[key], filters):
                    return json.loads(json.dumps(rows[key]))
            return None

    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Snapshot the data on the outermost begin"""
        with self._lock:
            if self._depth == 0:
                self._snapshot = (copy.deepcopy(self._data), dict(self._sequences))
            self._depth += 1

    def commit(self) -> None:
        """Drop the snapshot once the outermost block commits"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken by the outermost begin"""
        with self._lock:
            if self._depth == 0:
                return
            self._data, self._sequences = self._snapshot
            self._snapshot = None
            self._depth = 0

    def _transaction_guard(self):
        return self._lock

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def get_all_data(self) -> Dict[str, Dict[int, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return copy.deepcopy(self._data)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        try:
            self._connection = sqlite3.connect(
                self.db_path, timeout=timeout, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        with self._guard():
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)

    @contextmanager
    def _guard(self):
        """Serialize access to the connection and wrap driver errors"""
        with self._lock:
            if self._connection is None:
                raise PersistenceError("Storage is closed")
            try:
                yield
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite error: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS "{table}" (
                id INTEGER PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._tables.add(table)

    def _next_id(self, table: str) -> int:
        self._connection.execute("""
            INSERT INTO _sequences (name, value) VALUES (?, 1)
            ON CONFLICT(name) DO UPDATE SET value = value + 1
        """, (table,))
        row = self._connection.execute(
            "SELECT value FROM _sequences WHERE name = ?", (table,)
        ).fetchone()
        return row['value']

    def insert(self, table: str, data: Dict[str, Any], id_field: str) -> int:
        """Insert a record with the next identifier"""
        with self.atomic():
            with self._guard():
                self._ensure_table(table)
                record_id = self._next_id(table)
            data[id_field] = record_id
            self.save(table, record_id, data)
            return record_id

    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard():
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO "{table}" (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM "{table}" WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM "{table}" WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM "{table}" ORDER BY id
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def find_next(self, table: str, filters: Dict[str, Any],
                  after_id: int = 0) -> Optional[Dict[str, Any]]:
        """First matching record after the given identifier"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM "{table}" WHERE id > ? ORDER BY id
            """, (after_id,))
            for row in cursor:
                record = json.loads(row['data'])
                if _matches(record, filters):
                    return record
            return None

    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM "{table}" WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM "{table}"
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._guard():
            self._ensure_table(table)
            self._connection.execute(f'DELETE FROM "{table}"')

    def begin_transaction(self) -> None:
        """Start a write transaction on the outermost begin"""
        with self._guard():
            if self._depth == 0 and not self._connection.in_transaction:
                # IMMEDIATE takes the write lock up front so concurrent writers queue
                self._connection.execute("BEGIN IMMEDIATE")
            self._depth += 1

    def commit(self) -> None:
        """Commit once the outermost block finishes"""
        with self._guard():
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0 and self._connection.in_transaction:
                self._connection.execute("COMMIT")

    def rollback(self) -> None:
        """Rollback the whole transaction"""
        with self._guard():
            if self._depth == 0:
                return
            self._depth = 0
            # Tables created inside the transaction are gone after rollback
            self._tables.clear()
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")

    def _transaction_guard(self):
        return self._lock

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite://`` (in-memory SQLite) and
    ``sqlite:///path/to/file.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
