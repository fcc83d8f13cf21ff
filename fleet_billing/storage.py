"""
Storage Backend Module

Document tables for the billing repository and the audit trail. Every record
is a JSON-serializable dict keyed by id; money travels as Decimal strings and
dates as ISO-8601 strings, so range filters on dates compare as text.

Two backends: InMemoryStorage for tests and SQLiteStorage for a single-node
ledger file.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime
from pathlib import Path
from contextlib import contextmanager
from dataclasses import dataclass, asdict
import sqlite3
import json
import threading


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to a storage document (timestamps and Decimals as strings)"""
        document = asdict(self)
        document['created_at'] = self.created_at.isoformat()
        document['updated_at'] = self.updated_at.isoformat()
        return {k: str(v) if isinstance(v, Decimal) else v for k, v in document.items()}


_OPERATORS = {
    "$eq": lambda actual, expected: actual == expected,
    "$ne": lambda actual, expected: actual != expected,
    "$in": lambda actual, expected: actual in expected,
    "$lt": lambda actual, expected: actual is not None and actual < expected,
    "$lte": lambda actual, expected: actual is not None and actual <= expected,
    "$gt": lambda actual, expected: actual is not None and actual > expected,
    "$gte": lambda actual, expected: actual is not None and actual >= expected,
}


def matches_filters(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """
    Match a stored document against a filter mapping.

    A plain value means equality; a dict value holds operators such as
    ``{"$in": [...]}`` or ``{"$lte": "2026-02-01"}``.
    """
    for key, condition in filters.items():
        actual = record.get(key)
        if not isinstance(condition, dict):
            if key not in record or actual != condition:
                return False
            continue
        for op, expected in condition.items():
            check = _OPERATORS.get(op)
            if check is None:
                raise ValueError(f"Unsupported filter operator: {op}")
            if not check(actual, expected):
                return False
    return True


class StorageInterface(ABC):
    """Keyed document tables with optional transactions"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a document"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Document by id, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """True if a document was removed"""

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents matching ``filters`` (see matches_filters)"""
        return [doc for doc in self.load_all(table) if matches_filters(doc, filters)]

    def close(self) -> None:
        pass

    # Transactions are no-ops unless the backend has them

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Commit the block's writes together, or roll them all back"""
        self.begin_transaction()
        try:
            yield
        except Exception:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """Dict-of-dicts backend for tests"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _copy(document: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip: callers never share nested state with the table
        return json.loads(json.dumps(document, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._tables.setdefault(table, {})[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._tables.get(table, {}).get(record_id)
        return self._copy(document) if document is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            documents = list(self._tables.get(table, {}).values())
        return [self._copy(d) for d in documents]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._tables.get(table, {}).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._tables.get(table, {})


class SQLiteStorage(StorageInterface):
    """
    One SQLite table per document table: ``(id PRIMARY KEY, data JSON)``.

    Filtering happens in Python over the decoded documents. Outside an
    ``atomic()`` block every write commits immediately.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False,
                                           isolation_level='DEFERRED')
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = NORMAL")

    def _run(self, table: str, sql: str, params=(), write: bool = False) -> sqlite3.Cursor:
        with self._lock:
            if table not in self._tables:
                self._connection.execute(
                    f"CREATE TABLE IF NOT EXISTS {table} "
                    f"(id TEXT PRIMARY KEY, data TEXT NOT NULL, seq INTEGER)"
                )
                self._tables.add(table)
            cursor = self._connection.execute(sql.format(table=table), params)
            if write and not self._in_transaction:
                self._connection.commit()
            return cursor

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        # seq keeps first-insert order for load_all across replaces
        self._run(table, """
            INSERT INTO {table} (id, data, seq)
            VALUES (?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM {table}))
            ON CONFLICT(id) DO UPDATE SET data = excluded.data
        """, (record_id, json.dumps(data, default=str)), write=True)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._run(table, "SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row[0]) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        rows = self._run(table, "SELECT data FROM {table} ORDER BY seq").fetchall()
        return [json.loads(row[0]) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        cursor = self._run(table, "DELETE FROM {table} WHERE id = ?", (record_id,), write=True)
        return cursor.rowcount > 0

    def begin_transaction(self) -> None:
        # The DEFERRED isolation level opens the SQL transaction on first write
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            self._in_transaction = False
            self._connection.commit()

    def rollback(self) -> None:
        with self._lock:
            self._in_transaction = False
            self._connection.rollback()
            # Tables created inside the transaction are gone too
            self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(backend: str = "memory", sqlite_path: Union[str, Path] = ":memory:") -> StorageInterface:
    """Build a storage backend by name ("memory" or "sqlite")"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(sqlite_path)
    raise ValueError(f"Unknown storage backend: {backend}")
