"""
SQLite engine adapter for BlobSQL.

Wraps the standard-library sqlite3 module behind the small surface the
transaction layer needs: exec/query in autocommit, BEGIN with an explicit
lock-acquisition mode, and prepared statements.

Invariants:
    - Every sqlite3 connection runs with isolation_level=None; transactions
      are only ever started by an explicit BEGIN from begin()
    - A transaction owns its sqlite3 connection exclusively until commit()
      succeeds or rollback() is called
    - A failed COMMIT leaves the transaction open so it can be rolled back
    - Result rows are fully materialized before the cursor is released
    - At most pool_size connections are open, counting transactions

Thread safety:
    Methods are blocking and may wait up to busy_timeout_ms on SQLite file
    locks. Callers run them in an executor. A single EngineTransaction must
    not be used from two threads at once; the connection registry's
    per-connection lock guarantees that.

How to change safely:
    - Keep busy_timeout and the connect() timeout equal
    - New PRAGMAs belong in _connect() so pooled and transaction handles match
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class TransactionMode(Enum):
    """SQLite transaction lock-acquisition strategies."""

    DEFERRED = "deferred"
    IMMEDIATE = "immediate"
    EXCLUSIVE = "exclusive"

    @property
    def begin_sql(self) -> str:
        return f"BEGIN {self.value.upper()}"

    @classmethod
    def from_name(cls, name: str | None, default: TransactionMode | None = None) -> TransactionMode:
        """Resolve a mode name case-insensitively.

        Args:
            name: Mode name ("deferred", "IMMEDIATE", ...) or None/empty
            default: Mode used when name is empty (DEFERRED if not given)

        Raises:
            ValueError: If the name is not a known mode
        """
        if not name:
            return default or cls.DEFERRED
        return cls(name.strip().lower())


@dataclass
class QueryResult:
    """Materialized result of a row-producing statement.

    Attributes:
        columns: Column names in result order
        rows: Result rows as tuples
    """

    columns: list[str] = field(default_factory=list)
    rows: list[tuple[Any, ...]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


def _run_exec(conn: sqlite3.Connection, sql: str, params: Sequence[Any]) -> int:
    cursor = conn.execute(sql, params)
    try:
        return max(cursor.rowcount, 0)
    finally:
        cursor.close()


def _run_query(conn: sqlite3.Connection, sql: str, params: Sequence[Any]) -> QueryResult:
    cursor = conn.execute(sql, params)
    try:
        columns = [d[0] for d in cursor.description or ()]
        rows = [tuple(r) for r in cursor.fetchall()]
        return QueryResult(columns=columns, rows=rows)
    finally:
        cursor.close()


class SQLiteEngine:
    """Embedded SQLite engine over one working-copy file.

    Autocommit statements borrow a connection for the duration of the call.
    A transaction holds its connection until it ends. Both draw from the
    same pool_size slots; a caller that finds them all in use waits up to
    busy_timeout_ms and then fails with "connection pool exhausted".

    Attributes:
        db_path: Path of the SQLite working copy
        busy_timeout_ms: How long to wait on a locked database
        journal_mode: SQLite journal mode applied at open()
        pool_size: Maximum connections checked out at once; also the idle pool cap

    Example:
        >>> engine = SQLiteEngine("/tmp/app.sqlite")
        >>> engine.open()
        >>> engine.exec("CREATE TABLE t (id INTEGER PRIMARY KEY)")
        >>> tx = engine.begin(TransactionMode.IMMEDIATE)
        >>> tx.exec("INSERT INTO t VALUES (1)")
        >>> tx.commit()
    """

    def __init__(
        self,
        db_path: str,
        busy_timeout_ms: int = 5000,
        journal_mode: str = "wal",
        pool_size: int = 10,
    ) -> None:
        self.db_path = str(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.journal_mode = journal_mode
        self.pool_size = pool_size
        self._idle: list[sqlite3.Connection] = []
        self._pool_lock = threading.Lock()
        # One permit per checked-out connection, autocommit and transaction alike
        self._permits = threading.BoundedSemaphore(pool_size)
        self._closed = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def open(self) -> None:
        """Open the working copy and verify it is a usable database.

        Raises:
            sqlite3.DatabaseError: If the file is not a SQLite database
        """
        conn = self._acquire()
        try:
            conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
            if self.journal_mode:
                mode = conn.execute(f"PRAGMA journal_mode = {self.journal_mode}").fetchone()
                logger.info(
                    "Opened SQLite working copy",
                    extra={"db_path": self.db_path, "journal_mode": mode[0] if mode else None},
                )
        except sqlite3.Error:
            self._discard(conn)
            raise
        self._release(conn)

    def _acquire(self) -> sqlite3.Connection:
        """Check out a connection, waiting up to busy_timeout_ms for a free slot.

        Raises:
            sqlite3.OperationalError: If pool_size connections stay in use
        """
        if self._closed:
            raise sqlite3.ProgrammingError("Cannot operate on a closed database.")
        if not self._permits.acquire(timeout=self.busy_timeout_ms / 1000.0):
            raise sqlite3.OperationalError("connection pool exhausted")

        with self._pool_lock:
            if self._idle:
                return self._idle.pop()
        try:
            return self._connect()
        except BaseException:
            self._permits.release()
            raise

    def _discard(self, conn: sqlite3.Connection) -> None:
        """Close a checked-out connection instead of returning it."""
        try:
            conn.close()
        finally:
            self._permits.release()

    def _release(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            # Never hand out a connection with an open transaction
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                self._discard(conn)
                return
        with self._pool_lock:
            if not self._closed and len(self._idle) < self.pool_size:
                self._idle.append(conn)
                self._permits.release()
                return
        self._discard(conn)

    @contextmanager
    def _borrow(self) -> Iterator[sqlite3.Connection]:
        conn = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn)

    def exec(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a statement in autocommit mode.

        Returns:
            Number of rows affected (0 for DDL)
        """
        with self._borrow() as conn:
            return _run_exec(conn, sql, params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Run a row-producing statement in autocommit mode."""
        with self._borrow() as conn:
            return _run_query(conn, sql, params)

    def begin(self, mode: TransactionMode = TransactionMode.DEFERRED) -> EngineTransaction:
        """Start a transaction with the given lock-acquisition mode.

        Raises:
            sqlite3.OperationalError: If the lock cannot be acquired in time
        """
        conn = self._acquire()
        try:
            conn.execute(mode.begin_sql)
        except sqlite3.Error:
            self._release(conn)
            raise
        return EngineTransaction(self, conn, mode)

    def prepare(self, sql: str) -> PreparedStatement:
        """Compile a statement to validate it and return a reusable handle."""
        with self._borrow() as conn:
            _compile(conn, sql)
        return PreparedStatement(sql, self)

    def close(self) -> None:
        """Close pooled connections. Open transactions keep their own."""
        with self._pool_lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for conn in idle:
            conn.close()
        logger.info("SQLite engine closed", extra={"db_path": self.db_path})


def _compile(conn: sqlite3.Connection, sql: str) -> None:
    # EXPLAIN compiles the statement without running it
    conn.execute(f"EXPLAIN {sql}").close()


class EngineTransaction:
    """An open transaction pinned to one sqlite3 connection.

    Attributes:
        mode: Lock-acquisition mode the transaction was started with
    """

    def __init__(self, engine: SQLiteEngine, conn: sqlite3.Connection, mode: TransactionMode) -> None:
        self._engine = engine
        self._conn: sqlite3.Connection | None = conn
        self.mode = mode

    @property
    def closed(self) -> bool:
        return self._conn is None

    @property
    def in_transaction(self) -> bool:
        """False once SQLite has rolled the transaction back on its own."""
        return self._conn is not None and self._conn.in_transaction

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("transaction has already been committed or rolled back")
        return self._conn

    def exec(self, sql: str, params: Sequence[Any] = ()) -> int:
        return _run_exec(self._require(), sql, params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        return _run_query(self._require(), sql, params)

    def prepare(self, sql: str) -> PreparedStatement:
        _compile(self._require(), sql)
        return PreparedStatement(sql, self)

    def commit(self) -> None:
        """Commit. On failure the transaction stays open for rollback()."""
        conn = self._require()
        conn.execute("COMMIT")
        self._conn = None
        self._engine._release(conn)

    def rollback(self) -> None:
        """Roll back and release the connection, even if ROLLBACK fails."""
        conn = self._require()
        self._conn = None
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        except sqlite3.Error:
            self._engine._discard(conn)
            raise
        self._engine._release(conn)


class PreparedStatement:
    """A validated statement bound to an engine or transaction handle.

    Attributes:
        sql: Statement text
    """

    def __init__(self, sql: str, handle: SQLiteEngine | EngineTransaction) -> None:
        self.sql = sql
        self.handle = handle
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _target(self, handle: SQLiteEngine | EngineTransaction | None):
        if self._closed:
            raise sqlite3.ProgrammingError("Cannot operate on a closed statement.")
        return handle or self.handle

    def exec(
        self,
        args: Sequence[Any] = (),
        handle: SQLiteEngine | EngineTransaction | None = None,
    ) -> int:
        """Execute with bound arguments.

        Args:
            args: Positional parameters
            handle: Override the handle the statement runs against
        """
        return self._target(handle).exec(self.sql, args)

    def query(
        self,
        args: Sequence[Any] = (),
        handle: SQLiteEngine | EngineTransaction | None = None,
    ) -> QueryResult:
        return self._target(handle).query(self.sql, args)

    def close(self) -> None:
        self._closed = True
