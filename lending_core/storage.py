"""
Storage Module

Record store behind every ledger, loan and audit component. Records are
plain JSON-compatible dictionaries keyed by ID inside named tables; money
travels as Decimal strings so no precision is lost on the way through.

Writes that belong together run inside ``atomic()``. A unit holds the
store-wide re-entrant lock from start to finish, so units never interleave,
and an ``atomic()`` opened inside another one becomes part of it.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Set
from decimal import Decimal
from datetime import datetime, date
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager


Row = Dict[str, Any]


def _jsonable(value: Any) -> Any:
    """Decimal, date, datetime and enum values as their string forms"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _copy(row: Row) -> Row:
    # Round-trip through JSON so callers never share state with the store
    return json.loads(json.dumps(row, default=str))


def _matches(row: Row, filters: Dict[str, Any]) -> bool:
    return all(key in row and row[key] == value for key, value in filters.items())


@dataclass
class StorageRecord:
    """Common fields of every persisted record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Row:
        """Serialize for storage"""
        return {key: _jsonable(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Row) -> 'StorageRecord':
        """Rebuild from a stored row; subclasses parse their own typed fields"""
        fields = dict(data)
        for stamp in ('created_at', 'updated_at'):
            if isinstance(fields.get(stamp), str):
                fields[stamp] = datetime.fromisoformat(fields[stamp])
        return cls(**fields)


class StorageInterface(ABC):
    """Table-of-rows store with all-or-nothing units"""

    def __init__(self):
        self._lock = threading.RLock()
        self._unit_depth = 0

    @abstractmethod
    def save(self, table: str, record_id: str, data: Row) -> None:
        """Insert or replace a row"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Row]:
        """Row by ID, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Row]:
        """Every row of a table, in the order rows were first saved"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a row; False when it was not there"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def find(self, table: str, filters: Dict[str, Any]) -> List[Row]:
        """Rows whose fields equal every filter value, in insertion order"""
        with self._lock:
            return [row for row in self.load_all(table) if _matches(row, filters)]

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Remove every row matching filters and report how many went"""
        with self._lock:
            return sum(1 for row in self.find(table, filters) if self.delete(table, row['id']))

    # Unit hooks, overridden by backends that can undo writes

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @property
    def in_transaction(self) -> bool:
        return self._unit_depth > 0

    def lock_record(self, table: str, record_id: str) -> None:
        """
        Take the row lock for a record inside the current unit.

        Both shipped backends serialize whole units under the storage lock,
        which already excludes concurrent writers to the row, so this only
        checks that a unit is open.
        """
        if not self.in_transaction:
            raise RuntimeError(f"lock_record({table}, {record_id}) called outside an atomic unit")

    @contextmanager
    def atomic(self):
        """
        All writes made inside the block commit together or not at all.

        Re-entering from inside a unit joins it; only the outermost block
        commits or rolls back.
        """
        with self._lock:
            if self._unit_depth:
                self._unit_depth += 1
                try:
                    yield
                finally:
                    self._unit_depth -= 1
                return

            self.begin_transaction()
            self._unit_depth = 1
            try:
                yield
            except BaseException:
                self._unit_depth = 0
                self.rollback()
                raise
            self._unit_depth = 0
            self.commit()


class InMemoryStorage(StorageInterface):
    """Dictionary-backed store for tests and throwaway runs"""

    def __init__(self):
        super().__init__()
        self._tables: Dict[str, Dict[str, Row]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Row]]] = None

    def _table(self, table: str) -> Dict[str, Row]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Row) -> None:
        with self._lock:
            self._table(table)[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Row]:
        with self._lock:
            row = self._table(table).get(record_id)
            return _copy(row) if row is not None else None

    def load_all(self, table: str) -> List[Row]:
        with self._lock:
            return [_copy(row) for row in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._tables[table] = {}

    def begin_transaction(self) -> None:
        """Snapshot every table so the unit can be undone"""
        self._snapshot = {name: _copy(rows) for name, rows in self._tables.items()}

    def commit(self) -> None:
        self._snapshot = None

    def rollback(self) -> None:
        if self._snapshot is not None:
            self._tables = self._snapshot
            self._snapshot = None

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite-backed store, one table per record type.

    Each row keeps the record as a JSON document next to an autoincrement
    ``seq`` that fixes insertion order. Outside units the connection runs in
    autocommit mode; a unit is a ``BEGIN IMMEDIATE`` transaction, which takes
    the database write lock up front.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._created: Set[str] = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _execute(self, table: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        self._create_table(table)
        return self._connection.execute(sql.format(table=table), params)

    def _create_table(self, table: str) -> None:
        if table in self._created:
            return
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            " seq INTEGER PRIMARY KEY AUTOINCREMENT,"
            " id TEXT NOT NULL UNIQUE,"
            " data TEXT NOT NULL,"
            " saved_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self._created.add(table)

    def save(self, table: str, record_id: str, data: Row) -> None:
        with self._lock:
            # Upsert keeps the original seq, so order survives updates
            self._execute(
                table,
                "INSERT INTO {table} (id, data) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data, saved_at = CURRENT_TIMESTAMP",
                (record_id, json.dumps(data, default=str))
            )

    def load(self, table: str, record_id: str) -> Optional[Row]:
        with self._lock:
            row = self._execute(table, "SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Row]:
        with self._lock:
            rows = self._execute(table, "SELECT data FROM {table} ORDER BY seq").fetchall()
            return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._execute(table, "DELETE FROM {table} WHERE id = ?", (record_id,)).rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._execute(
                table, "SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone() is not None

    def count(self, table: str) -> int:
        with self._lock:
            return self._execute(table, "SELECT COUNT(*) FROM {table}").fetchone()[0]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._execute(table, "DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._connection.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        self._connection.execute("COMMIT")

    def rollback(self) -> None:
        self._connection.execute("ROLLBACK")
        # A table created inside the unit is gone again
        self._created.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str = "sqlite", database_path: str = "lending_core.db") -> StorageInterface:
    """Build a storage backend by name ("sqlite" or "memory")"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend: {backend}")
