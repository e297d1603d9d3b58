"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, get_type_hints, get_origin, get_args
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
import types
import typing
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .currency import Money, Currency


def to_storable(value: Any) -> Any:
    """Convert a domain value into a JSON-serializable value"""
    if isinstance(value, Money):
        return {'amount': str(value.amount), 'currency': value.currency.code}
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_storable(v) for v in value]
    return value


def _unwrap_optional(hint: Any) -> Any:
    origin = get_origin(hint)
    if origin is Union or origin is getattr(types, 'UnionType', None):
        args = [a for a in get_args(hint) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


def from_storable(hint: Any, value: Any) -> Any:
    """Convert a stored value back using the declared field type"""
    if value is None:
        return None
    hint = _unwrap_optional(hint)
    if hint is Money:
        return Money(Decimal(value['amount']), Currency.from_code(value['currency']))
    if hint is Decimal:
        return Decimal(value)
    if hint is datetime:
        return datetime.fromisoformat(value) if isinstance(value, str) else value
    if hint is date:
        return date.fromisoformat(value) if isinstance(value, str) else value
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: to_storable(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary using the dataclass field types"""
        hints = get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            if f.name in data:
                kwargs[f.name] = from_storable(hints.get(f.name, typing.Any), data[f.name])
        return cls(**kwargs)

    def touch(self) -> None:
        """Refresh the update timestamp"""
        self.updated_at = datetime.now(timezone.utc)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._atomic_depth = 0

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

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        Holds the storage lock for the whole block so concurrent callers are
        serialized. Nested blocks join the outermost transaction.
        """
        with self._lock:
            outermost = self._atomic_depth == 0
            if outermost:
                self.begin_transaction()
            self._atomic_depth += 1
            try:
                yield
            except Exception:
                self._atomic_depth -= 1
                if outermost:
                    self.rollback()
                raise
            else:
                self._atomic_depth -= 1
                if outermost:
                    self.commit()

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for key, value in filters.items():
            if key not in record or record[key] != value:
                return False
        return True


class InMemoryStorage(StorageInterface):
    """Dict-of-dicts storage; records are kept in first-save order"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        # Pre-block copy of each table written inside the open block, None if it did not exist
        self._snapshot: Optional[Dict[str, Optional[Dict[str, Dict[str, Any]]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def _writable(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Table about to change; saved into the open snapshot on its first write"""
        if self._snapshot is not None and table not in self._snapshot:
            existing = self._data.get(table)
            # Stored records are replaced, never mutated, so a shallow copy suffices
            self._snapshot[table] = dict(existing) if existing is not None else None
        return self._table(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            # Stored as plain JSON so callers never share mutable state with the store
            self._writable(table)[record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return copy.deepcopy(record) if record else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self._table(table).values()))

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._writable(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy([
                record for record in self._table(table).values()
                if self._matches(record, filters)
            ])

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._writable(table).clear()

    def begin_transaction(self) -> None:
        """Start tracking the tables this block writes to"""
        with self._lock:
            self._snapshot = {}

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        """Put back every table the block wrote to"""
        with self._lock:
            for table, saved in (self._snapshot or {}).items():
                if saved is None:
                    self._data.pop(table, None)
                else:
                    self._data[table] = saved
            self._snapshot = None

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage, one table per record type

    Each row holds the record as a JSON document plus the time it was first
    saved. Transactions are opened explicitly by atomic(); outside a block
    every statement autocommits.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._in_transaction = False
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        if not table.replace('_', '').isalnum():
            raise ValueError(f"Invalid table name: {table}")
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "id TEXT PRIMARY KEY, data TEXT NOT NULL, "
            "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        self._connection.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
        )
        self._tables.add(table)

    def _execute(self, table: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Run one statement against a table, creating the table on first use"""
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(sql.format(table=table), params)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._execute(
            table,
            "INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at) "
            "VALUES (?, ?, COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?), ?)",
            (record_id, json.dumps(data, default=str), record_id, now, now)
        )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._execute(table, "SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._execute(table, "SELECT data FROM {table} ORDER BY created_at, rowid").fetchall()
            return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        return self._execute(table, "DELETE FROM {table} WHERE id = ?", (record_id,)).rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._execute(table, "SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level JSON keys equal the filter values"""
        return [record for record in self.load_all(table) if self._matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return self._execute(table, "SELECT COUNT(*) AS n FROM {table}").fetchone()['n']

    def clear_table(self, table: str) -> None:
        self._execute(table, "DELETE FROM {table}")

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                self._connection.execute("BEGIN IMMEDIATE")
                self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.execute("COMMIT")
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.execute("ROLLBACK")
                self._in_transaction = False
                # Tables created inside the rolled back block are gone
                self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
