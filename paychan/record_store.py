"""
Record store module for paychan

Handles SQLite persistence for namespaced JSON documents:
- Channels (mutable in place: spend only)
- Payments (append-only)
- Tokens (append-only)

Every document is tagged with a kind. When a namespace is configured the
stored kind is "<namespace>:<kind>", so several logical stores can share one
database file without their queries ever seeing each other's documents.

Queries match fields by equality. Results come back in insertion order, so
find_one() returns the earliest inserted match.

Thread Safety:
- Uses threading.local() to provide each thread with its own SQLite connection
- Multi-step operations run under BEGIN IMMEDIATE, which serializes writers
  across threads and processes sharing the database file
- Nested transactions become savepoints of the enclosing transaction
"""

import json
import os
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .config import NAMESPACE_SEPARATOR
from .errors import Result, StoreAbort, invariant_violation, io_error, not_found, success

# Field names usable in filters and updates (also the JSON path segment)
_FIELD_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

# SQLite binds integers as signed 64-bit
_SQLITE_INT_MIN = -2 ** 63
_SQLITE_INT_MAX = 2 ** 63 - 1


def _field_path(name: str) -> str:
    if not isinstance(name, str) or not _FIELD_RE.match(name):
        raise ValueError(f"Invalid document field name: {name!r}")
    return f"$.{name}"


class RecordStore:
    """
    SQLite-backed keyed document store.

    Provides:
    - find / find_one by kind plus equality-matched fields
    - insert of new documents
    - partial-field update of matching documents
    - transaction() / atomic() for multi-step operations

    Storage failures are returned as IO_ERROR results and never retried.
    """

    def __init__(self, db_path: str, plugin=None, namespace: Optional[str] = None,
                 busy_timeout_seconds: float = 10.0):
        """
        Initialize the record store.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin (or proxy) for logging
            namespace: Optional prefix applied to every document kind
            busy_timeout_seconds: How long a writer waits for the write lock
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self.namespace = namespace
        self.busy_timeout_seconds = busy_timeout_seconds
        # Thread-local storage for connections and transaction depth
        self._local = threading.local()
        # Every connection opened by any thread, so close() can reach them all
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._generation = 0

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"RecordStore: {msg}", level=level)

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get or create a thread-local database connection.

        Returns:
            sqlite3.Connection: Thread-local database connection
        """
        if (getattr(self._local, 'conn', None) is None or
                self._local.generation != self._generation):
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self._local.conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout_seconds,
                isolation_level=None,  # Autocommit; transactions are explicit
                check_same_thread=False  # close() may run on another thread
            )
            with self._connections_lock:
                self._connections.append(self._local.conn)
                self._local.generation = self._generation
            self._local.conn.row_factory = sqlite3.Row
            self._local.depth = 0

            # Write-Ahead Logging lets readers proceed while a writer commits
            self._local.conn.execute("PRAGMA journal_mode=WAL;")

            self._log(
                f"Created thread-local connection (thread={threading.current_thread().name})",
                level='debug'
            )
        return self._local.conn

    def initialize(self) -> None:
        """
        Create the documents table and indexes if they don't exist.

        Raises sqlite3.Error if the database cannot be opened; a store that
        cannot start is not an expected runtime condition.
        """
        conn = self._get_connection()

        # =====================================================================
        # DOCUMENTS TABLE
        # =====================================================================
        # One row per document; body holds the JSON fields
        conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                body TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_kind
            ON documents(kind, id)
        """)

        # Channel and payment lookups by channel id
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_channel_id
            ON documents(kind, json_extract(body, '$.channel_id'))
        """)

        # Token validity checks
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_token
            ON documents(kind, json_extract(body, '$.token'))
        """)

        self._log(f"Schema initialized at {self.db_path}")

    def close(self) -> None:
        """
        Close every connection this store opened, on any thread.

        Call only when no operation is in flight. A thread that uses the
        store afterwards transparently opens a fresh connection.
        """
        with self._connections_lock:
            connections, self._connections = self._connections, []
            self._generation += 1
        for conn in connections:
            conn.close()
        self._local.conn = None

    # =========================================================================
    # NAMESPACING
    # =========================================================================

    def ns(self, kind: str) -> str:
        """Qualify a document kind with this store's namespace."""
        if self.namespace:
            return f"{self.namespace}{NAMESPACE_SEPARATOR}{kind}"
        return kind

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically on this thread's connection.

        The outermost scope takes the write lock up front (BEGIN IMMEDIATE)
        so read-then-write sequences cannot interleave with other writers.
        Inner scopes are savepoints. Any exception rolls back the scope it
        escapes from and is re-raised.
        """
        conn = self._get_connection()
        depth = self._local.depth
        savepoint = f"sp_{depth}"

        if depth == 0:
            conn.execute("BEGIN IMMEDIATE")
        else:
            conn.execute(f"SAVEPOINT {savepoint}")
        self._local.depth = depth + 1

        try:
            yield conn
        except BaseException:
            self._local.depth = depth
            if depth == 0:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
            else:
                conn.execute(f"ROLLBACK TO {savepoint}")
                conn.execute(f"RELEASE {savepoint}")
            raise

        self._local.depth = depth
        if depth == 0:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        else:
            conn.execute(f"RELEASE {savepoint}")

    def atomic(self, operation: Callable[[], Any], description: str) -> Result:
        """
        Run operation inside transaction() and return its outcome as a Result.

        operation signals expected failures by raising StoreAbort (usually via
        Result.unwrap()); both those and storage errors roll back everything
        the operation wrote.
        """
        try:
            with self.transaction():
                value = operation()
        except StoreAbort as e:
            self._log(f"{description} aborted: {e.error.message}", level='debug')
            return Result(error=e.error)
        except sqlite3.Error as e:
            self._log(f"{description} failed: {e}", level='error')
            return io_error(f"{description} failed: {e}", e)
        return success(value)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _where(self, kind: str, filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        clauses = ["kind = ?"]
        params: List[Any] = [self.ns(kind)]
        for name, value in (filters or {}).items():
            # Path is inlined so expression indexes on it can be used
            clauses.append(f"json_extract(body, '{_field_path(name)}') IS ?")
            params.append(value)
        return " AND ".join(clauses), params

    @staticmethod
    def _unbindable_filter(filters: Optional[Dict[str, Any]]) -> Optional[Result]:
        """Integers SQLite cannot bind can only be stored, not filtered on."""
        for name, value in (filters or {}).items():
            if isinstance(value, int) and not _SQLITE_INT_MIN <= value <= _SQLITE_INT_MAX:
                return invariant_violation(
                    f"Cannot filter on {name}={value}: beyond 64-bit range"
                )
        return None

    @staticmethod
    def _decode(row: sqlite3.Row) -> Dict[str, Any]:
        doc = json.loads(row['body'])
        doc['_id'] = row['id']
        return doc

    def find(self, kind: str, filters: Optional[Dict[str, Any]] = None) -> Result:
        """
        Find all documents of a kind whose fields equal the given filters.

        Returns:
            Result with a list of documents in insertion order (possibly empty)
        """
        rejected = self._unbindable_filter(filters)
        if rejected is not None:
            return rejected
        where, params = self._where(kind, filters)
        try:
            rows = self._get_connection().execute(
                f"SELECT id, body FROM documents WHERE {where} ORDER BY id",
                params
            ).fetchall()
        except sqlite3.Error as e:
            self._log(f"find {self.ns(kind)} failed: {e}", level='error')
            return io_error(f"find {self.ns(kind)} failed: {e}", e)
        return success([self._decode(row) for row in rows])

    def find_one(self, kind: str, filters: Optional[Dict[str, Any]] = None) -> Result:
        """
        Find the earliest inserted document matching the filters.

        Returns:
            Result with the document, or NOT_FOUND
        """
        rejected = self._unbindable_filter(filters)
        if rejected is not None:
            return rejected
        where, params = self._where(kind, filters)
        try:
            row = self._get_connection().execute(
                f"SELECT id, body FROM documents WHERE {where} ORDER BY id LIMIT 1",
                params
            ).fetchone()
        except sqlite3.Error as e:
            self._log(f"find_one {self.ns(kind)} failed: {e}", level='error')
            return io_error(f"find_one {self.ns(kind)} failed: {e}", e)
        if row is None:
            return not_found(f"No {self.ns(kind)} document matches {filters or {}}")
        return success(self._decode(row))

    # =========================================================================
    # WRITES
    # =========================================================================

    def insert(self, kind: str, document: Dict[str, Any]) -> Result:
        """
        Insert a new document.

        Returns:
            Result with the new document id
        """
        body = {k: v for k, v in document.items() if k != '_id'}
        for name in body:
            _field_path(name)
        try:
            cursor = self._get_connection().execute(
                "INSERT INTO documents (kind, body, created_at) VALUES (?, ?, ?)",
                (self.ns(kind), json.dumps(body), int(time.time()))
            )
        except sqlite3.Error as e:
            self._log(f"insert {self.ns(kind)} failed: {e}", level='error')
            return io_error(f"insert {self.ns(kind)} failed: {e}", e)
        return success(cursor.lastrowid)

    def update(self, kind: str, filters: Dict[str, Any],
               fields: Dict[str, Any]) -> Result:
        """
        Set the named fields on every matching document; other fields are
        left untouched.

        Returns:
            Result with the number of documents changed
        """
        if not fields:
            return success(0)
        rejected = self._unbindable_filter(filters)
        if rejected is not None:
            return rejected
        where, params = self._where(kind, filters)
        assignments = []
        values: List[Any] = []
        for name, value in fields.items():
            # Bound as JSON text so integers beyond 64 bits survive
            assignments.append(f"'{_field_path(name)}', json(?)")
            values.append(json.dumps(value))
        try:
            cursor = self._get_connection().execute(
                f"UPDATE documents SET body = json_set(body, {', '.join(assignments)}) "
                f"WHERE {where}",
                values + params
            )
        except sqlite3.Error as e:
            self._log(f"update {self.ns(kind)} failed: {e}", level='error')
            return io_error(f"update {self.ns(kind)} failed: {e}", e)
        return success(cursor.rowcount)
