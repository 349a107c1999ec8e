"""
Record Store Layer

Provides a generic CRUD contract over named tables (select / insert / update /
delete with AND-ed equality predicates) backed by SQLite in WAL mode, plus a
fluent query builder:

    store.table("tasks").eq("id", 7).eq("user_id", uid).update({"title": "x"})

All persistence for tasks, history, comments, profiles and auth goes through
this layer; nothing above it issues SQL.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Predicate = Sequence[Tuple[str, Any]]
Order = Sequence[Tuple[str, bool]]  # (column, ascending)

# SQLite default for ISO-8601 UTC timestamps
_NOW_DEFAULT = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"


class RecordStoreError(Exception):
    """Raised when the store rejects or fails an operation."""


class TableQuery:
    """
    Fluent builder for a single-table operation.

    Collects equality predicates and ordering, then terminates with one of
    ``select``, ``single``, ``insert``, ``update`` or ``delete``.
    """

    def __init__(self, store: "RecordStore", table: str):
        self._store = store
        self._table = table
        self._predicate: List[Tuple[str, Any]] = []
        self._order: List[Tuple[str, bool]] = []
        self._limit: Optional[int] = None

    def eq(self, column: str, value: Any) -> "TableQuery":
        self._predicate.append((column, value))
        return self

    def order(self, column: str, ascending: bool = True) -> "TableQuery":
        self._order.append((column, ascending))
        return self

    def limit(self, count: int) -> "TableQuery":
        self._limit = count
        return self

    def select(self) -> List[Dict[str, Any]]:
        return self._store.select(self._table, self._predicate, self._order, self._limit)

    def single(self) -> Optional[Dict[str, Any]]:
        """First matching row, or None when nothing matches."""
        self._limit = 1
        rows = self.select()
        return rows[0] if rows else None

    def insert(self, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self._store.insert(self._table, rows)

    def update(self, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._store.update(self._table, patch, self._predicate)

    def delete(self) -> int:
        return self._store.delete(self._table, self._predicate)


class RecordStore:
    """
    SQLite-backed record store.

    Features:
    - WAL mode for concurrent read/write access
    - Single cross-thread connection guarded by a re-entrant lock
    - Column names checked against the live schema before building SQL
    - Rows returned as plain dicts with ISO-8601 text timestamps
    """

    def __init__(self, db_path: str):
        """
        Args:
            db_path: Path to the SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._columns: Dict[str, List[str]] = {}

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def open(self) -> None:
        """Connect, configure pragmas and create the schema if needed."""
        if self._connection is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._connection = sqlite3.connect(
                self.db_path,
                isolation_level=None,  # autocommit, explicit BEGIN where needed
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row
            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")
            self._create_schema()
            self._load_columns()
        except sqlite3.Error as e:
            self._connection = None
            raise RecordStoreError(f"Failed to initialize database at {self.db_path}: {e}")
        logger.info(f"Record store opened: {self.db_path}")

    def close(self) -> None:
        with self._connection_lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                self._columns = {}
                logger.info("Record store closed")

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _create_schema(self) -> None:
        """Create tables and indexes used by the application and auth provider."""
        cursor = self._connection.cursor()

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS auth_users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                password_salt TEXT NOT NULL,
                confirmation_token TEXT,
                email_confirmed_at TEXT,
                redirect_to TEXT,
                created_at TEXT NOT NULL DEFAULT {_NOW_DEFAULT}
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS auth_sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT {_NOW_DEFAULT},
                FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT {_NOW_DEFAULT}
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'not_started',
                priority TEXT,
                size TEXT,
                category TEXT,
                expected_completion_date TEXT,
                started_at TEXT,
                completed_at TEXT,
                created_at TEXT NOT NULL DEFAULT {_NOW_DEFAULT},
                updated_at TEXT NOT NULL DEFAULT {_NOW_DEFAULT},
                CONSTRAINT status_vocabulary CHECK (status IN ('not_started', 'in_progress', 'completed')),
                CONSTRAINT priority_vocabulary CHECK (priority IS NULL OR priority IN ('low', 'medium', 'high')),
                CONSTRAINT size_vocabulary CHECK (size IS NULL OR size IN ('XS', 'S', 'M', 'L', 'XL', 'WEEK', 'MONTH', 'YEAR')),
                CONSTRAINT category_vocabulary CHECK (category IS NULL OR category IN ('personal', 'office', 'career', 'family'))
            )
        """)

        # History outlives its task, so no foreign key to tasks
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS task_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL,
                action TEXT NOT NULL,
                previous_status TEXT,
                new_status TEXT,
                field_name TEXT,
                old_value TEXT,
                new_value TEXT,
                changed_at TEXT NOT NULL DEFAULT {_NOW_DEFAULT},
                changed_by TEXT NOT NULL,
                CONSTRAINT action_vocabulary CHECK (action IN ('created', 'status_changed', 'field_updated', 'comment_added'))
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS task_comments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL,
                content TEXT NOT NULL,
                author TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT {_NOW_DEFAULT},
                updated_at TEXT NOT NULL DEFAULT {_NOW_DEFAULT},
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_user_created
            ON tasks (user_id, created_at DESC)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_task_history_task_changed
            ON task_history (task_id, changed_at DESC)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_task_comments_task_created
            ON task_comments (task_id, created_at DESC)
        """)

    def _load_columns(self) -> None:
        cursor = self._connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'")
        for (name,) in cursor.fetchall():
            info = self._connection.execute(f"PRAGMA table_info({name})").fetchall()
            self._columns[name] = [row[1] for row in info]

    def columns(self, table: str) -> List[str]:
        self._check_table(table)
        return list(self._columns[table])

    # Generic contract

    def table(self, name: str) -> TableQuery:
        """Start a fluent query against ``name``."""
        self._check_table(name)
        return TableQuery(self, name)

    def select(
        self,
        table: str,
        predicate: Predicate = (),
        order: Order = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        where, params = self._where(table, predicate)
        sql = f"SELECT * FROM {table}{where}{self._order_by(table, order)}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._connection_lock:
            cursor = self._execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def insert(self, table: str, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert rows atomically and return them as stored (with defaults applied)."""
        rows = list(rows)
        if not rows:
            return []
        rowids = []
        with self._connection_lock:
            with self._transaction() as cursor:
                for row in rows:
                    columns = list(row.keys())
                    self._check_columns(table, columns)
                    placeholders = ", ".join("?" for _ in columns)
                    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
                    self._execute(sql, [_to_db(row[c]) for c in columns], cursor)
                    rowids.append(cursor.lastrowid)
            return self._select_rowids(table, rowids)

    def update(self, table: str, patch: Dict[str, Any], predicate: Predicate) -> List[Dict[str, Any]]:
        """
        Apply ``patch`` to every row matching ``predicate``.

        Returns the updated rows; an empty list means nothing matched, which
        is not an error.
        """
        if not patch:
            raise RecordStoreError("Update patch cannot be empty")
        self._check_columns(table, patch.keys())
        where, params = self._where(table, predicate)
        with self._connection_lock:
            cursor = self._execute(f"SELECT rowid FROM {table}{where}", params)
            rowids = [row[0] for row in cursor.fetchall()]
            if not rowids:
                return []
            assignments = ", ".join(f"{c} = ?" for c in patch)
            marks = ", ".join("?" for _ in rowids)
            self._execute(
                f"UPDATE {table} SET {assignments} WHERE rowid IN ({marks})",
                [_to_db(v) for v in patch.values()] + rowids,
            )
            return self._select_rowids(table, rowids)

    def delete(self, table: str, predicate: Predicate) -> int:
        """Delete matching rows and return how many were removed."""
        where, params = self._where(table, predicate)
        if not where:
            raise RecordStoreError("Refusing to delete without a predicate")
        with self._connection_lock:
            cursor = self._execute(f"DELETE FROM {table}{where}", params)
            return cursor.rowcount

    def ping(self) -> bool:
        """Cheap connectivity check for health endpoints."""
        with self._connection_lock:
            self._execute("SELECT 1", [])
        return True

    # Helpers

    @contextmanager
    def _transaction(self):
        """Context manager for explicit transaction control."""
        cursor = self._require_connection().cursor()
        cursor.execute("BEGIN")
        try:
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def _require_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RecordStoreError("Record store is not open")
        return self._connection

    def _execute(self, sql: str, params: Sequence[Any], cursor: Optional[sqlite3.Cursor] = None):
        if cursor is None:
            cursor = self._require_connection().cursor()
        try:
            cursor.execute(sql, params)
        except sqlite3.Error as e:
            logger.error(f"Store operation failed: {e}")
            raise RecordStoreError(str(e)) from e
        return cursor

    def _select_rowids(self, table: str, rowids: List[int]) -> List[Dict[str, Any]]:
        marks = ", ".join("?" for _ in rowids)
        cursor = self._execute(f"SELECT rowid AS _rowid, * FROM {table} WHERE rowid IN ({marks})", rowids)
        by_rowid = {}
        for row in cursor.fetchall():
            record = dict(row)
            by_rowid[record.pop("_rowid")] = record
        return [by_rowid[r] for r in rowids if r in by_rowid]

    def _check_table(self, table: str) -> None:
        self._require_connection()
        if table not in self._columns:
            raise RecordStoreError(f"Unknown table: {table}")

    def _check_columns(self, table: str, columns: Iterable[str]) -> None:
        self._check_table(table)
        known = self._columns[table]
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise RecordStoreError(f"Unknown column(s) for {table}: {', '.join(unknown)}")

    def _where(self, table: str, predicate: Predicate) -> Tuple[str, List[Any]]:
        if not predicate:
            return "", []
        self._check_columns(table, [c for c, _ in predicate])
        clauses = []
        params: List[Any] = []
        for column, value in predicate:
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(_to_db(value))
        return " WHERE " + " AND ".join(clauses), params

    def _order_by(self, table: str, order: Order) -> str:
        if not order:
            return ""
        self._check_columns(table, [c for c, _ in order])
        return " ORDER BY " + ", ".join(f"{c} {'ASC' if asc else 'DESC'}" for c, asc in order)


def _to_db(value: Any) -> Any:
    """Convert Python values into SQLite-storable ones."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value
