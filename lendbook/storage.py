"""
Storage Backend Module

Record persistence for loans, payments, invoices, customers and the audit
trail. Two backends: in-memory (tests, demos) and SQLite (the book of record).
Records are stored as JSON documents; amounts travel as Decimal strings.
Named sequence counters are atomic so loan, invoice and receipt numbers never
collide under concurrent writers.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import date, datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Decimals, enums and dates are stored as strings
        return {key: to_storage_value(value) for key, value in result.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def to_storage_value(value: Any) -> Any:
    """Convert a value into its JSON storage form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storage_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storage_value(v) for v in value]
    return value


def encode_record(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=str)


def decode_record(payload: str) -> Dict[str, Any]:
    return json.loads(payload)


def record_matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Equality match on top-level keys; a missing key never matches"""
    return all(key in record and record[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, or None if absent"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record; False if it did not exist"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def next_sequence(self, name: str) -> int:
        """Atomically increment and return the named counter (first value is 1)"""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def find_between(
        self,
        table: str,
        field: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """
        Find records whose ISO-formatted ``field`` lies in [start, end].

        ISO dates and timestamps sort lexicographically, so plain string
        comparison is enough for both.
        """
        def in_range(value: Optional[str]) -> bool:
            if value is None:
                return False
            return (start is None or value >= start) and (end is None or value <= end)

        return [record for record in self.find(table, filters or {}) if in_range(record.get(field))]

    def begin_transaction(self) -> None:
        """Start a unit of work (default no-op)"""
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """
        Run a block as one unit of work; any exception rolls back every write
        made inside it, sequence increments included. Blocks may nest; only
        the outermost one commits.
        """
        self.begin_transaction()
        try:
            yield
        except Exception:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    Process-local storage. Rows are kept serialized, so callers always get
    fresh copies and can never mutate stored state by accident.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, str]] = {}
        self._counters: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._saved_state: Optional[Tuple[Dict[str, Dict[str, str]], Dict[str, int]]] = None
        self._nesting = 0

    def _rows(self, table: str) -> Dict[str, str]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._rows(table)[record_id] = encode_record(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            payload = self._rows(table).get(record_id)
        return decode_record(payload) if payload is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            payloads = list(self._rows(table).values())
        return [decode_record(payload) for payload in payloads]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._rows(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._rows(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record for record in self.load_all(table) if record_matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._rows(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._tables[table] = {}

    def next_sequence(self, name: str) -> int:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + 1
            return self._counters[name]

    def begin_transaction(self) -> None:
        # The lock stays held until commit/rollback so other writers wait
        self._lock.acquire()
        if self._nesting == 0:
            # Rows are immutable strings; copying the row maps is a full snapshot
            self._saved_state = (
                {name: dict(rows) for name, rows in self._tables.items()},
                dict(self._counters)
            )
        self._nesting += 1

    def commit(self) -> None:
        self._nesting -= 1
        if self._nesting == 0:
            self._saved_state = None
        self._lock.release()

    def rollback(self) -> None:
        self._nesting -= 1
        if self._nesting == 0 and self._saved_state is not None:
            self._tables, self._counters = self._saved_state
            self._saved_state = None
        self._lock.release()

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite-backed storage: one ``(id, data, created_at, updated_at)`` table
    per record type plus a counters table. Transactions are explicit
    (``isolation_level=None``) so ``atomic()`` maps onto BEGIN/COMMIT.
    """

    COUNTERS_TABLE = "_sequences"

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._nesting = 0
        self._known_tables = set()

        with self._lock:
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {self.COUNTERS_TABLE} "
                "(name TEXT PRIMARY KEY, value INTEGER NOT NULL)"
            )

    def _table(self, table: str) -> str:
        """Create the record table on first use and return its name"""
        if table not in self._known_tables:
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} "
                "(id TEXT PRIMARY KEY, data TEXT NOT NULL, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )
            self._connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)")
            self._known_tables.add(table)
        return table

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(sql, tuple(params)).fetchall()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            name = self._table(table)
            # created_at is kept from the first insert
            self._connection.execute(
                f"INSERT INTO {name} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                (record_id, encode_record(data), now, now)
            )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self._query(f"SELECT data FROM {self._table(table)} WHERE id = ?", (record_id,))
        return decode_record(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._query(f"SELECT data FROM {self._table(table)} ORDER BY created_at, rowid")
        return [decode_record(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._connection.execute(f"DELETE FROM {self._table(table)} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return bool(self._query(f"SELECT 1 FROM {self._table(table)} WHERE id = ? LIMIT 1", (record_id,)))

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record for record in self.load_all(table) if record_matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return self._query(f"SELECT COUNT(*) AS n FROM {self._table(table)}")[0]['n']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._connection.execute(f"DELETE FROM {self._table(table)}")

    def next_sequence(self, name: str) -> int:
        # Inside atomic() the counter rides the open transaction; otherwise it
        # gets its own IMMEDIATE transaction so concurrent processes serialize
        with self.atomic():
            self._connection.execute(
                f"INSERT INTO {self.COUNTERS_TABLE} (name, value) VALUES (?, 1) "
                "ON CONFLICT(name) DO UPDATE SET value = value + 1",
                (name,)
            )
            return self._query(f"SELECT value FROM {self.COUNTERS_TABLE} WHERE name = ?", (name,))[0]['value']

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._nesting == 0:
            self._connection.execute("BEGIN IMMEDIATE")
        self._nesting += 1

    def commit(self) -> None:
        self._nesting -= 1
        if self._nesting == 0:
            self._connection.execute("COMMIT")
        self._lock.release()

    def rollback(self) -> None:
        self._nesting -= 1
        if self._nesting == 0:
            self._connection.execute("ROLLBACK")
        self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(backend: str = "sqlite", database_path: str = "lendbook.db") -> StorageInterface:
    """Build the configured storage backend"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend: {backend}")
