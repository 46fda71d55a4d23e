"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id; all monetary
values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import logging
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ResourceExhaustedError


logger = logging.getLogger(__name__)


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


class StorageInterface(ABC):
    """
    Abstract interface for storage backends.
    
    Every backend guards its state with a re-entrant lock. ``atomic()`` holds
    that lock for the whole block, so a load-modify-save inside it cannot
    interleave with another writer.
    """
    
    def __init__(self, lock_timeout: float = 10.0):
        self._lock = threading.RLock()
        self.lock_timeout = lock_timeout
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
    
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level keys equal every filter value"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results
    
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
        Exclusive, all-or-nothing section.
        
        Nested calls join the outermost transaction.
        
        Raises:
            ResourceExhaustedError: If the lock is not acquired within lock_timeout
        """
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ResourceExhaustedError(
                f"Timed out after {self.lock_timeout}s waiting for storage lock"
            )
        try:
            self._atomic_depth += 1
            if self._atomic_depth > 1:
                yield
                return
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise
        finally:
            self._atomic_depth -= 1
            self._lock.release()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""
    
    def __init__(self, lock_timeout: float = 10.0):
        super().__init__(lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
    
    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}
    
    @staticmethod
    def _copy(value):
        # JSON round trip doubles as a deep copy and a serializability check
        return json.loads(json.dumps(value, default=str))
    
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
    
    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])
    
    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}
    
    def begin_transaction(self) -> None:
        with self._lock:
            self._snapshot = self._copy(self._data)
    
    def commit(self) -> None:
        with self._lock:
            self._snapshot = None
    
    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None
    
    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""
    
    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: float = 10.0):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level='DEFERRED',
            timeout=lock_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._in_transaction = False
        self._known_tables = set()
        
        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()
    
    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                logger.warning(f"SQLite busy on {self.db_path}: {e}")
                raise ResourceExhaustedError(f"Database is busy: {e}") from e
            raise
    
    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            self._connection.commit()
    
    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        with self._lock:
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
            self._commit_unless_in_transaction()
            self._known_tables.add(table)
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            
            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, 
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._commit_unless_in_transaction()
    
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None
    
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at, id")
            return [json.loads(row['data']) for row in cursor.fetchall()]
    
    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0
    
    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None
    
    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']
    
    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction()
    
    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                # isolation_level='DEFERRED' opens the transaction on the first write
                self._in_transaction = True
    
    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False
    
    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                # Tables created inside the transaction are gone too
                self._known_tables.clear()
    
    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, lock_timeout: float = 10.0) -> StorageInterface:
    """
    Build a storage backend from a URL.
    
    Supported forms: ``memory://``, ``sqlite://`` (in-memory SQLite) and
    ``sqlite:///path/to/file.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
