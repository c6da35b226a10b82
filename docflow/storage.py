"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id; conditional
updates give callers compare-and-swap semantics for optimistic concurrency.
"""

from abc import ABC, abstractmethod
from typing import Callable, ClassVar, Dict, List, Optional, Any, Tuple, Type, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import logging
import threading
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from contextlib import contextmanager


logger = logging.getLogger(__name__)


def to_primitive(value: Any) -> Any:
    """Convert nested values into JSON-serializable primitives"""
    if isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, dict):
        return {k: to_primitive(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple, set)):
        return [to_primitive(v) for v in value]
    return value


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO timestamp, leaving datetimes and None untouched"""
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    # Subclasses list extra timestamp and enum fields for from_dict
    datetime_fields: ClassVar[Tuple[str, ...]] = ()
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return to_primitive(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in data.items() if k in known}

        for name in ('created_at', 'updated_at') + tuple(cls.datetime_fields):
            if name in data:
                data[name] = parse_datetime(data[name])

        for name, enum_type in cls.enum_fields.items():
            value = data.get(name)
            if value is not None and not isinstance(value, enum_type):
                data[name] = enum_type(value)

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        """
        Atomically replace a record only if its stored fields match.

        Args:
            table: Table name
            record_id: Record to replace
            expected: Field values the stored record must currently hold
            data: New record contents

        Returns:
            True if the record was replaced, False if it is missing or differs
        """
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
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

    def on_commit(self, callback: Callable[[], Any]) -> None:
        """Run callback once the current transaction commits (default: now)"""
        self._run_callbacks([callback])

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    @staticmethod
    def _run_callbacks(callbacks: List[Callable[[], Any]]) -> None:
        """Run post-commit callbacks; failures are logged, never raised"""
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception(f"Post-commit callback {getattr(callback, '__name__', repr(callback))} failed")


class TransactionalStorage(StorageInterface):
    """
    Shared transaction bookkeeping for backends with real transactions.

    A transaction holds the backend lock from begin to the outermost commit or
    rollback, so concurrent writers in this process are serialized. Nested
    begin/commit pairs join the outer transaction.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._owner: Optional[int] = None
        self._pending_callbacks: List[Callable[[], Any]] = []

    def _in_own_transaction(self) -> bool:
        return self._depth > 0 and self._owner == threading.get_ident()

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread has an open transaction"""
        return self._in_own_transaction()

    @abstractmethod
    def _start_transaction(self) -> None:
        pass

    @abstractmethod
    def _finish_transaction(self) -> None:
        pass

    @abstractmethod
    def _abort_transaction(self) -> None:
        pass

    def begin_transaction(self) -> None:
        """Start (or join) a transaction for the calling thread"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._start_transaction()
            except Exception:
                self._lock.release()
                raise
            self._owner = threading.get_ident()
            self._pending_callbacks = []
        self._depth += 1

    def commit(self) -> None:
        """Commit when the outermost transaction ends, then run callbacks"""
        if not self._in_own_transaction():
            return

        callbacks = []
        try:
            if self._depth == 1:
                try:
                    self._finish_transaction()
                except Exception:
                    self._abort_transaction()
                    self._pending_callbacks = []
                    raise
                callbacks, self._pending_callbacks = self._pending_callbacks, []
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._owner = None
            self._lock.release()

        self._run_callbacks(callbacks)

    def rollback(self) -> None:
        """Roll back the whole transaction when the outermost level exits"""
        if not self._in_own_transaction():
            return

        try:
            if self._depth == 1:
                self._pending_callbacks = []
                self._abort_transaction()
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._owner = None
            self._lock.release()

    def on_commit(self, callback: Callable[[], Any]) -> None:
        """Defer callback until the outermost commit; drop it on rollback"""
        if self._in_own_transaction():
            self._pending_callbacks.append(callback)
        else:
            self._run_callbacks([callback])


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(TransactionalStorage):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(value: Any) -> Any:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(value, default=str))

    def _start_transaction(self) -> None:
        self._snapshot = self._copy(self._data)

    def _finish_transaction(self) -> None:
        self._snapshot = None

    def _abort_transaction(self) -> None:
        if self._snapshot is not None:
            self._data = self._snapshot
        self._snapshot = None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        """Compare-and-swap a record under the storage lock"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or not _matches(current, self._copy(expected)):
                return False
            self._data[table][record_id] = self._copy(data)
            return True

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

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


class SQLiteStorage(TransactionalStorage):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout_ms: int = 5000):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._tables: set = set()

        with self._lock:
            self._connection.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
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
            self._tables.add(table)

    def _start_transaction(self) -> None:
        # Take the write lock up front so concurrent processes queue on busy_timeout
        self._connection.execute("BEGIN IMMEDIATE")

    def _finish_transaction(self) -> None:
        self._connection.execute("COMMIT")

    def _abort_transaction(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")
        # Tables created inside the rolled back transaction are gone again
        self._tables.clear()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        """Conditional UPDATE guarded by json_extract comparisons"""
        conditions = []
        params: List[Any] = [json.dumps(data, default=str),
                             datetime.now(timezone.utc).isoformat(), record_id]
        for key, value in expected.items():
            conditions.append("json_extract(data, ?) IS ?")
            params.extend([f'$."{key}"', self._sql_value(value)])

        where = " AND ".join(["id = ?"] + conditions)
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ? WHERE {where}
            """, params)
            return cursor.rowcount > 0

    @staticmethod
    def _sql_value(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (dict, list)):
            return json.dumps(value, separators=(',', ':'))
        return value

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level JSON fields equal the filter values"""
        conditions = ["1 = 1"]
        params: List[Any] = []
        for key, value in filters.items():
            conditions.append("json_extract(data, ?) IS ?")
            params.extend([f'$."{key}"', self._sql_value(value)])

        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE {" AND ".join(conditions)} ORDER BY created_at
            """, params)
            records = [json.loads(row['data']) for row in cursor.fetchall()]

        # json_extract cannot tell a null field from a missing one
        return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(settings=None) -> StorageInterface:
    """Build the storage backend named by configuration"""
    if settings is None:
        from .config import get_config
        settings = get_config()

    backend = settings.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(settings.database_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
