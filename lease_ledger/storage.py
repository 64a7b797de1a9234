"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). Records are JSON documents keyed by table
and id; monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union, Iterator
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConcurrencyConflictError, DuplicateKeyError


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

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    # Deep copy through JSON to prevent external mutation
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateKeyError if the id is taken"""
        pass

    @abstractmethod
    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        """
        Replace a record only if its stored ``version`` equals expected_version.

        Raises ConcurrencyConflictError when another writer got there first.
        """
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
    def next_sequence(self, name: str) -> int:
        """Return the next value of a named, monotonically increasing sequence"""
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
        """Start a transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def before_commit(self, callback: Callable[[], None]) -> None:
        """
        Run callback just before the outermost transaction commits.

        Writes made by the callback belong to that transaction. Without an
        open transaction the callback runs at once.
        """
        callback()

    def on_rollback(self, callback: Callable[[], None]) -> None:
        """Run callback after the outermost transaction rolls back"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Nested blocks join the outermost transaction; any exception escaping
        the block rolls back every write made inside it.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions are tracked per thread with an undo log, so two threads
    working on different records do not block each other.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._tx = threading.local()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: Optional[str]) -> None:
        """Record the pre-image of a write in the current thread's undo log"""
        undo = getattr(self._tx, 'undo', None)
        if undo is None:
            return
        if record_id is None:
            undo.append((table, None, _copy(self._data[table])))
        else:
            previous = self._data[table].get(record_id)
            undo.append((table, record_id, _copy(previous) if previous is not None else None))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            self._data[table][record_id] = _copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateKeyError(
                    f"Duplicate key {record_id} in {table}",
                    {'table': table, 'record_id': record_id}
                )
            self._remember(table, record_id)
            self._data[table][record_id] = _copy(data)

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            stored_version = current.get('version', 0) if current is not None else None
            if stored_version != expected_version:
                raise ConcurrencyConflictError(
                    f"{table} record {record_id} was modified concurrently",
                    {'expected_version': expected_version, 'stored_version': stored_version}
                )
            self._remember(table, record_id)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                _copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def next_sequence(self, name: str) -> int:
        # Sequences are not rolled back, like database sequences
        with self._lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._remember(table, None)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        depth = getattr(self._tx, 'depth', 0)
        if depth == 0:
            self._tx.undo = []
            self._tx.before_commit = []
            self._tx.on_rollback = []
        self._tx.depth = depth + 1

    def before_commit(self, callback: Callable[[], None]) -> None:
        if getattr(self._tx, 'depth', 0) == 0:
            callback()
        else:
            self._tx.before_commit.append(callback)

    def on_rollback(self, callback: Callable[[], None]) -> None:
        if getattr(self._tx, 'depth', 0) > 0:
            self._tx.on_rollback.append(callback)

    def commit(self) -> None:
        depth = getattr(self._tx, 'depth', 0)
        if depth == 0:
            return
        if depth == 1:
            try:
                for callback in self._tx.before_commit:
                    callback()
            except BaseException:
                self.rollback()
                raise
        self._tx.depth = depth - 1
        if self._tx.depth == 0:
            self._tx.undo = None
            self._tx.before_commit = []
            self._tx.on_rollback = []

    def rollback(self) -> None:
        depth = getattr(self._tx, 'depth', 0)
        if depth == 0:
            return
        self._tx.depth = depth - 1
        if self._tx.depth > 0:
            # The outermost block performs the actual undo
            return
        undo = self._tx.undo or []
        callbacks = self._tx.on_rollback
        self._tx.undo = None
        self._tx.before_commit = []
        self._tx.on_rollback = []
        with self._lock:
            for table, record_id, previous in reversed(undo):
                self._ensure_table(table)
                if record_id is None:
                    self._data[table] = previous
                elif previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
        for callback in callbacks:
            callback()


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    A single connection is shared; a transaction holds the storage lock until
    it commits or rolls back, so transactions from different threads run one
    after another.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._before_commit: List[Callable[[], None]] = []
        self._on_rollback: List[Callable[[], None]] = []
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

        with self._lock:
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            self._connection.commit()

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
        self._tables.add(table)
        self._autocommit()

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._autocommit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(
                    f"Duplicate key {record_id} in {table}",
                    {'table': table, 'record_id': record_id}
                ) from e
            self._autocommit()

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        with self._lock:
            current = self.load(table, record_id)
            stored_version = current.get('version', 0) if current is not None else None
            if stored_version != expected_version:
                raise ConcurrencyConflictError(
                    f"{table} record {record_id} was modified concurrently",
                    {'expected_version': expected_version, 'stored_version': stored_version}
                )
            self.save(table, record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
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
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def next_sequence(self, name: str) -> int:
        with self._lock:
            self._connection.execute("""
                INSERT INTO _sequences (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (name,))
            cursor = self._connection.execute(
                "SELECT value FROM _sequences WHERE name = ?", (name,)
            )
            value = cursor.fetchone()['value']
            self._autocommit()
            return value

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        # Held until the matching commit/rollback releases it
        self._lock.acquire()
        if self._depth == 0:
            self._before_commit = []
            self._on_rollback = []
        self._depth += 1

    def before_commit(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if self._depth == 0:
                callback()
            else:
                self._before_commit.append(callback)

    def on_rollback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if self._depth > 0:
                self._on_rollback.append(callback)

    def commit(self) -> None:
        if self._depth == 0:
            return
        if self._depth == 1:
            try:
                for callback in self._before_commit:
                    callback()
            except BaseException:
                self.rollback()
                raise
        try:
            self._depth -= 1
            if self._depth == 0:
                self._before_commit = []
                self._on_rollback = []
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            return
        callbacks = []
        try:
            self._depth -= 1
            if self._depth == 0:
                callbacks = self._on_rollback
                self._before_commit = []
                self._on_rollback = []
                self._connection.rollback()
                # DDL rolled back with the transaction must be re-created
                self._tables.clear()
        finally:
            self._lock.release()
        for callback in callbacks:
            callback()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class RecordLockManager:
    """
    Per-key re-entrant locks.

    ``hold`` acquires every requested key in sorted order so two callers
    locking overlapping sets cannot deadlock. A key's lock is dropped once
    no thread holds or waits for it.
    """

    def __init__(self):
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        acquired = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


def create_storage(database_url: str) -> StorageInterface:
    """Build a storage backend from a ``memory://`` or ``sqlite:///path`` URL"""
    if database_url in ("memory://", ":memory:"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
