"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values are stored as Decimal
strings.

Both backends give ``atomic()`` real transactional semantics: a unit of work
either commits as a whole or leaves no trace, and it holds the backend's
write lock for its whole duration so validate-then-apply sequences inside it
are serialized.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import re
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import PersistenceFailure


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StorageError(Exception):
    """A storage backend call failed (I/O error, lock timeout, closed connection)"""


class DuplicateKeyError(StorageError):
    """Insert rejected because the primary key or a unique field already exists"""

    def __init__(self, table: str, field: str, value: Any):
        self.table = table
        self.field = field
        self.value = value
        super().__init__(f"Duplicate {field}={value!r} in {table}")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _acquire(lock: threading.RLock, timeout: float) -> None:
    """Take the backend lock, giving up after ``timeout`` seconds"""
    if not lock.acquire(timeout=timeout):
        raise StorageError(f"store lock wait exceeded {timeout}s")


@contextmanager
def _locked(lock: threading.RLock, timeout: float):
    _acquire(lock, timeout)
    try:
        yield
    finally:
        lock.release()


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table or field name: {name!r}")
    return name


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or overwrite) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Iterable[str] = ()) -> None:
        """
        Insert a new record.

        Raises:
            DuplicateKeyError: If ``record_id`` exists or any of ``unique_fields``
                collides with an existing record in the table
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> bool:
        """
        Compare-and-set: apply ``changes`` only if every field in ``expected``
        currently holds the given value.

        Returns:
            True if the record was updated, False if it is missing or a field differed
        """
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

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a (possibly nested) transaction and take the write lock"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the innermost transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the innermost transaction"""
        pass

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


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        # table -> field -> value -> record id
        self._unique: Dict[str, Dict[str, Dict[str, str]]] = {}
        self._lock = threading.RLock()
        self._snapshots: List[str] = []

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Iterable[str] = ()) -> None:
        """Insert a record, enforcing primary key and unique fields"""
        unique_fields = tuple(unique_fields)
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateKeyError(table, "id", record_id)

            indexes = self._unique.setdefault(table, {})
            for field in unique_fields:
                value = str(data.get(field))
                if value in indexes.get(field, {}):
                    raise DuplicateKeyError(table, field, data.get(field))

            for field in unique_fields:
                indexes.setdefault(field, {})[str(data.get(field))] = record_id
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                # Deep copy to prevent external mutation
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> bool:
        """Compare-and-set under the storage lock"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                return False
            for key, value in expected.items():
                if record.get(key) != value:
                    return False
            record.update(json.loads(json.dumps(changes, default=str)))
            return True

    def count(self, table: str) -> int:
        """Count records in table"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with _locked(self._lock, self.timeout):
            self._data[table] = {}
            self._unique.pop(table, None)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Take the lock and snapshot every table"""
        _acquire(self._lock, self.timeout)
        self._snapshots.append(json.dumps({'data': self._data, 'unique': self._unique}))

    def commit(self) -> None:
        """Discard the innermost snapshot and release the lock"""
        try:
            self._snapshots.pop()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Restore the innermost snapshot and release the lock"""
        try:
            snapshot = json.loads(self._snapshots.pop())
            self._data = snapshot['data']
            self._unique = snapshot['unique']
        finally:
            self._lock.release()

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with _locked(self._lock, self.timeout):
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    The connection runs in autocommit mode; ``begin_transaction`` issues
    ``BEGIN IMMEDIATE`` for the outermost level (taking SQLite's write lock
    up front) and savepoints for nested levels. ``timeout`` bounds how long a
    writer waits for the database lock, whether held by another thread or
    another process.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._connection = sqlite3.connect(
            self.db_path, timeout=timeout, check_same_thread=False, isolation_level=None
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        with _locked(self._lock, self.timeout):
            if self.db_path != ":memory:":
                # Enable WAL mode for better concurrent access
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")
            self._execute("""
                CREATE TABLE IF NOT EXISTS unique_index (
                    table_name TEXT NOT NULL,
                    field TEXT NOT NULL,
                    value TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    PRIMARY KEY (table_name, field, value)
                )
            """)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a statement, translating driver errors"""
        if self._connection is None:
            raise StorageError("Storage is closed")
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_identifier(table)
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert keeps rowid and created_at stable for ordering
            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Iterable[str] = ()) -> None:
        """Insert a record; primary key and unique fields are enforced by SQLite"""
        unique_fields = tuple(unique_fields)
        with self.atomic():
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError:
                raise DuplicateKeyError(table, "id", record_id)

            for field in unique_fields:
                try:
                    self._execute("""
                        INSERT INTO unique_index (table_name, field, value, record_id)
                        VALUES (?, ?, ?, ?)
                    """, (table, field, str(data.get(field)), record_id))
                except sqlite3.IntegrityError:
                    raise DuplicateKeyError(table, field, data.get(field))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            match = True
            for key, value in filters.items():
                if key not in record or record[key] != value:
                    match = False
                    break
            if match:
                results.append(record)
        return results

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> bool:
        """Compare-and-set as a single conditional UPDATE"""
        if not changes:
            raise ValueError("update_if requires at least one change")

        set_args: List[Any] = []
        set_parts = []
        for key, value in changes.items():
            set_parts.append(f"'$.{_check_identifier(key)}', json(?)")
            set_args.append(json.dumps(value, default=str))

        where_parts = []
        where_args: List[Any] = []
        for key, value in expected.items():
            where_parts.append(f"json_extract(data, '$.{_check_identifier(key)}') = ?")
            where_args.append(value)
        where_clause = "".join(f" AND {part}" for part in where_parts)

        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            cursor = self._execute(f"""
                UPDATE {table}
                SET data = json_set(data, {', '.join(set_parts)}), updated_at = ?
                WHERE id = ?{where_clause}
            """, (*set_args, datetime.now(timezone.utc).isoformat(), record_id, *where_args))
            return cursor.rowcount > 0

    def count(self, table: str) -> int:
        """Count records in table"""
        with _locked(self._lock, self.timeout):
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self.atomic():
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")
            self._execute("DELETE FROM unique_index WHERE table_name = ?", (table,))

    def begin_transaction(self) -> None:
        """Start a transaction, or a savepoint when already inside one"""
        _acquire(self._lock, self.timeout)
        try:
            if self._depth == 0:
                self._execute("BEGIN IMMEDIATE")
            else:
                self._execute(f"SAVEPOINT sp_{self._depth}")
        except BaseException:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._execute("COMMIT")
            else:
                self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            self._depth -= 1
            # Tables created inside the rolled back unit are gone
            self._tables.clear()
            if self._depth == 0:
                if self._connection is not None and self._connection.in_transaction:
                    self._execute("ROLLBACK")
            else:
                self._execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with _locked(self._lock, self.timeout):
            if self._connection:
                self._connection.close()
                self._connection = None


@contextmanager
def persistence_guard(operation: str):
    """Translate backend failures into PersistenceFailure at a store boundary"""
    try:
        yield
    except StorageError as e:
        raise PersistenceFailure(f"{operation} failed: {e}") from e


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives an InMemoryStorage, ``sqlite:///path/to.db`` a file
    backed SQLiteStorage and ``sqlite://`` an in-memory SQLite database.
    """
    if database_url == "memory://":
        return InMemoryStorage(timeout=timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
