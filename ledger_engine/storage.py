"""
Storage Backend Module

Provides the persistence contract used by the ledger engine, with an
in-memory implementation (testing) and SQLite (persistence). All monetary
values are stored as Decimal strings. Balance changes go through
`increment`, never through a separate read and write.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, date
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager

from .exceptions import NotFoundError


def _encode(value: Any) -> Any:
    """Encode a single value into its JSON-safe storage form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class StorageRecord:
    """Common identity and timestamps of every persisted ledger record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe row: Decimals as strings, dates as ISO text, enums by value"""
        result = asdict(self)
        for key, value in result.items():
            result[key] = _encode(value)
        return result


class StorageInterface(ABC):
    """Persistence contract the managers and the ledger write through"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace one row"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """One row by id, or None"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every row of a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove one row; False when it was not there"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Whether a row with this id is stored"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Rows whose fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Number of rows in a table"""
        pass

    @abstractmethod
    def increment(self, table: str, record_id: str, field: str, delta: Decimal) -> Decimal:
        """
        Atomically add delta to a numeric field and return the new value.

        Raises:
            NotFoundError: If the record does not exist
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def save_many(self, table: str, records: Dict[str, Dict[str, Any]]) -> None:
        """Save several records in one atomic unit"""
        with self.atomic():
            for record_id, data in records.items():
                self.save(table, record_id, data)

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every record matching filters, returning the number removed"""
        with self.atomic():
            removed = 0
            for record in self.find(table, filters):
                if self.delete(table, record['id']):
                    removed += 1
            return removed

    def begin_transaction(self) -> None:
        """Open an atomic unit (no-op unless the backend supports units)"""
        pass

    def commit(self) -> None:
        """Close the innermost unit, keeping its writes"""
        pass

    def rollback(self) -> None:
        """Close the innermost unit, discarding its writes"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations; units may nest"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions take a snapshot of the whole store on entry and restore it
    on rollback. The lock is held for the full unit so a half-applied unit is
    never visible to another thread.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshots: List[Dict[str, Dict[str, Dict[str, Any]]]] = []

    @staticmethod
    def _copy(data: Any) -> Any:
        # Deep copy through JSON to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
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
            return [self._copy(record) for record in self._data[table].values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def increment(self, table: str, record_id: str, field: str, delta: Decimal) -> Decimal:
        """Add delta to a stored Decimal field under the store lock"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                raise NotFoundError(table, record_id)
            new_value = Decimal(str(record.get(field) or "0")) + delta
            record[field] = str(new_value)
            return new_value

    def begin_transaction(self) -> None:
        """Acquire the store lock and push a snapshot"""
        self._lock.acquire()
        self._snapshots.append(self._copy(self._data))

    def commit(self) -> None:
        """Drop the innermost snapshot and release the lock"""
        try:
            self._snapshots.pop()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Restore the innermost snapshot and release the lock"""
        try:
            self._data = self._snapshots.pop()
        finally:
            self._lock.release()

    @property
    def in_transaction(self) -> bool:
        return bool(self._snapshots)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Runs the connection in autocommit mode and issues BEGIN / SAVEPOINT
    explicitly so nested atomic units can roll back independently.
    `increment` uses an optimistic compare-and-swap on the stored row and
    retries when another writer got there first.
    """

    max_increment_retries = 10

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
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
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            data_json = json.dumps(data, default=str)
            self._connection.execute(f"""
                INSERT INTO {table} (id, data) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """, (record_id, data_json))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Decode one JSON row"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, rowid"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete one row by id"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Filter decoded rows in Python; filters compare top-level JSON keys"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def increment(self, table: str, record_id: str, field: str, delta: Decimal) -> Decimal:
        """Compare-and-swap the stored row until the update lands"""
        with self._lock:
            self._ensure_table(table)
            for _ in range(self.max_increment_retries):
                row = self._connection.execute(
                    f"SELECT data FROM {table} WHERE id = ?", (record_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(table, record_id)
                record = json.loads(row['data'])
                new_value = Decimal(str(record.get(field) or "0")) + delta
                record[field] = str(new_value)
                cursor = self._connection.execute(
                    f"UPDATE {table} SET data = ? WHERE id = ? AND data = ?",
                    (json.dumps(record, default=str), record_id, row['data'])
                )
                if cursor.rowcount == 1:
                    return new_value
            raise sqlite3.OperationalError(
                f"Could not update {table}.{field} for {record_id} after "
                f"{self.max_increment_retries} attempts"
            )

    def begin_transaction(self) -> None:
        """Start a transaction, or a savepoint when one is already open"""
        self._lock.acquire()
        if self._depth == 0:
            self._connection.execute("BEGIN")
        else:
            self._connection.execute(f"SAVEPOINT sp_{self._depth}")
        self._depth += 1

    def commit(self) -> None:
        """Commit the transaction or release the innermost savepoint"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("COMMIT")
            else:
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Roll back the transaction or the innermost savepoint"""
        try:
            # tables created inside the unit may be gone
            self._tables.clear()
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
            else:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
