"""
Transaction coordinator for BlobSQL.

Owns the per-connection transaction state machine and routes each
statement either to transaction control or to the engine:

    IDLE --BEGIN--> ACTIVE --COMMIT ok--> IDLE
                    ACTIVE --ROLLBACK--> IDLE
                    ACTIVE --COMMIT fails--> FAILED --ROLLBACK--> IDLE

Statements are classified by their leading keyword into a StatementKind.
SAVEPOINT, RELEASE and ROLLBACK TO are savepoint statements, not
transaction control: they run on the engine inside the open transaction.
Reads and writes run against the connection's open transaction if there
is one, otherwise in autocommit on the shared engine.

Invariants:
    - Every operation on a connection runs under that connection's lock
    - A successful COMMIT signals the sync engine; a failed one does not
    - ROLLBACK always returns the connection to IDLE; engine rollback
      errors are logged, never raised
    - Only ROLLBACK leaves FAILED; any other statement raises
      TransactionAbortedError
    - Errors reach callers as BlobSqlError with a resolved ErrorClass;
      a failed statement never tears the connection down

How to change safely:
    - Add new keywords to STATEMENT_KEYWORDS and a classification test
    - Keep blocking engine calls inside _run()
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .engine import (
    EngineTransaction,
    PreparedStatement,
    QueryResult,
    SQLiteEngine,
    TransactionMode,
)
from .errors import (
    AlreadyInTransactionError,
    BlobSqlError,
    NoActiveTransactionError,
    PreparedStatementNotFound,
    TransactionAbortedError,
    translate_error,
)
from .metrics import MetricsCollector
from .registry import ConnectionRegistry, ConnectionState, TransactionStatus
from .sync import SyncEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StatementKind(Enum):
    """Dispatch class of a statement."""

    BEGIN = "begin"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    READ = "read"
    WRITE = "write"
    DDL = "ddl"
    SAVEPOINT = "savepoint"
    UNKNOWN = "unknown"
    EMPTY = "empty"

    @property
    def is_control(self) -> bool:
        return self in (StatementKind.BEGIN, StatementKind.COMMIT, StatementKind.ROLLBACK)


STATEMENT_KEYWORDS: dict[str, StatementKind] = {
    "BEGIN": StatementKind.BEGIN,
    "COMMIT": StatementKind.COMMIT,
    "END": StatementKind.COMMIT,
    "ROLLBACK": StatementKind.ROLLBACK,
    "SELECT": StatementKind.READ,
    "INSERT": StatementKind.WRITE,
    "UPDATE": StatementKind.WRITE,
    "DELETE": StatementKind.WRITE,
    "REPLACE": StatementKind.WRITE,
    "CREATE": StatementKind.DDL,
    "DROP": StatementKind.DDL,
    "ALTER": StatementKind.DDL,
    "SAVEPOINT": StatementKind.SAVEPOINT,
    "RELEASE": StatementKind.SAVEPOINT,
}

# Modifiers skipped when building a DDL command tag ("CREATE UNIQUE INDEX" -> "CREATE INDEX")
_DDL_MODIFIERS = {"UNIQUE", "TEMP", "TEMPORARY", "VIRTUAL", "OR", "REPLACE"}

IDLE_ROLLBACK_NOTICE = "there is no transaction in progress"


def _normalize(sql: str) -> str:
    return sql.strip().rstrip(";").strip()


def leading_keyword(sql: str) -> str:
    text = _normalize(sql)
    if not text:
        return ""
    return text.split(None, 1)[0].upper()


def classify_statement(sql: str) -> StatementKind:
    """Classify a statement by its leading keyword (case-insensitive)."""
    keyword = leading_keyword(sql)
    if not keyword:
        return StatementKind.EMPTY
    if keyword == "ROLLBACK" and "TO" in _normalize(sql).upper().split()[1:3]:
        # ROLLBACK [TRANSACTION] TO <savepoint> keeps the transaction open
        return StatementKind.SAVEPOINT
    return STATEMENT_KEYWORDS.get(keyword, StatementKind.UNKNOWN)


def resolve_mode(
    instruction: str | TransactionMode | None,
    default: TransactionMode = TransactionMode.DEFERRED,
) -> TransactionMode:
    """Resolve a BEGIN mode from a statement or a mode name.

    "BEGIN IMMEDIATE" and "immediate" both resolve to IMMEDIATE; anything
    without a mode keyword resolves to the default.
    """
    if isinstance(instruction, TransactionMode):
        return instruction
    if not instruction:
        return default

    upper = instruction.upper()
    if "IMMEDIATE" in upper:
        return TransactionMode.IMMEDIATE
    if "EXCLUSIVE" in upper:
        return TransactionMode.EXCLUSIVE
    if "DEFERRED" in upper:
        return TransactionMode.DEFERRED
    return default


def command_tag(kind: StatementKind, sql: str, count: int) -> str:
    """Build the completion tag reported for a statement."""
    keyword = leading_keyword(sql)
    if kind is StatementKind.READ:
        return f"SELECT {count}"
    if kind is StatementKind.WRITE:
        if keyword in ("INSERT", "REPLACE"):
            return f"INSERT 0 {count}"
        return f"{keyword} {count}"
    if kind is StatementKind.DDL:
        words = [w.upper() for w in _normalize(sql).split()[1:4]]
        target = next((w for w in words if w not in _DDL_MODIFIERS), "")
        return f"{keyword} {target}".strip()
    if kind.is_control:
        return kind.name
    return keyword


def _truncate(sql: str, limit: int = 100) -> str:
    return sql if len(sql) <= limit else sql[:limit] + "..."


@dataclass
class StatementResult:
    """Outcome of one statement.

    Attributes:
        kind: How the statement was dispatched
        command_tag: Completion tag ("SELECT 3", "INSERT 0 1", "BEGIN", ...)
        columns: Result column names (empty for non-row statements)
        rows: Result rows
        rows_affected: Rows changed by a write
        notice: Non-fatal message for the client, if any
    """

    kind: StatementKind
    command_tag: str
    columns: list[str] = field(default_factory=list)
    rows: list[tuple[Any, ...]] = field(default_factory=list)
    rows_affected: int = 0
    notice: str | None = None


class TransactionCoordinator:
    """Per-connection transaction state machine and statement router.

    Attributes:
        registry: Connection state directory
        engine: Shared SQLite engine
        sync_engine: Receives a dirty signal after every successful COMMIT
        metrics: Transaction lifecycle sink
        default_mode: BEGIN mode used when a statement names none

    Example:
        >>> coordinator = TransactionCoordinator(registry, engine, sync, metrics)
        >>> await coordinator.execute("alice", "BEGIN IMMEDIATE")
        >>> await coordinator.execute("alice", "INSERT INTO t VALUES (1)")
        >>> await coordinator.execute("alice", "COMMIT")
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        engine: SQLiteEngine,
        sync_engine: SyncEngine | None = None,
        metrics: MetricsCollector | None = None,
        default_mode: TransactionMode = TransactionMode.DEFERRED,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.sync_engine = sync_engine
        self.metrics = metrics or MetricsCollector()
        self.default_mode = default_mode

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    # ------------------------------------------------------------------
    # Transaction control
    # ------------------------------------------------------------------

    async def begin(
        self, connection_id: str, mode: str | TransactionMode | None = None
    ) -> TransactionMode:
        """Open a transaction.

        Raises:
            AlreadyInTransactionError: If a transaction is already active
            QueryError: If the engine cannot start the transaction
        """
        async with self.registry.locked(connection_id) as state:
            return await self._begin(state, mode)

    async def commit(self, connection_id: str) -> None:
        """Commit the open transaction and signal the sync engine.

        Raises:
            NoActiveTransactionError: If no transaction is open
            TransactionAbortedError: If the connection is FAILED
            QueryError: If the engine commit fails (connection becomes FAILED)
        """
        async with self.registry.locked(connection_id) as state:
            await self._commit(state)

    async def rollback(self, connection_id: str) -> None:
        """Roll back and return the connection to IDLE.

        Raises:
            NoActiveTransactionError: If the connection was already IDLE
        """
        async with self.registry.locked(connection_id) as state:
            await self._rollback(state)

    async def _begin(
        self, state: ConnectionState, mode: str | TransactionMode | None
    ) -> TransactionMode:
        if state.status is TransactionStatus.ACTIVE:
            raise AlreadyInTransactionError("there is already a transaction in progress")
        if state.status is TransactionStatus.FAILED:
            raise TransactionAbortedError(
                "current transaction is aborted, commands ignored until end of transaction block"
            )

        resolved = resolve_mode(mode, self.default_mode)
        try:
            tx = await self._run(self.engine.begin, resolved)
        except Exception as e:
            raise translate_error(e) from e

        state.transaction = tx
        state.status = TransactionStatus.ACTIVE
        self.metrics.start_transaction(state.connection_id)
        logger.debug(
            "Transaction started",
            extra={"connection_id": state.connection_id, "mode": resolved.value},
        )
        return resolved

    async def _commit(self, state: ConnectionState) -> None:
        if state.status is TransactionStatus.FAILED:
            raise TransactionAbortedError(
                "current transaction is aborted, commands ignored until end of transaction block"
            )
        if state.status is TransactionStatus.IDLE or state.transaction is None:
            raise NoActiveTransactionError("there is no transaction in progress")

        try:
            await self._run(state.transaction.commit)
        except Exception as e:
            state.status = TransactionStatus.FAILED
            error = translate_error(e)
            logger.warning(
                f"Commit failed: {error.message}",
                extra={
                    "connection_id": state.connection_id,
                    "error_class": error.error_class.name,
                },
            )
            raise error from e

        state.transaction = None
        state.status = TransactionStatus.IDLE
        self.metrics.end_transaction(state.connection_id, committed=True)
        if self.sync_engine is not None:
            await self.sync_engine.notify_commit()
        logger.debug("Transaction committed", extra={"connection_id": state.connection_id})

    async def _rollback(self, state: ConnectionState) -> None:
        tx: EngineTransaction | None = state.transaction
        previous = state.status
        state.transaction = None
        state.status = TransactionStatus.IDLE

        if tx is not None and not tx.closed:
            try:
                await self._run(tx.rollback)
            except Exception as e:
                logger.error(
                    f"Rollback failed: {e}",
                    extra={"connection_id": state.connection_id},
                )
            self.metrics.end_transaction(state.connection_id, committed=False)
            logger.debug(
                "Transaction rolled back", extra={"connection_id": state.connection_id}
            )
            return

        if previous is TransactionStatus.IDLE:
            raise NoActiveTransactionError(IDLE_ROLLBACK_NOTICE)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    async def execute(
        self, connection_id: str, sql: str, params: Sequence[Any] = ()
    ) -> StatementResult:
        """Run one statement on behalf of a connection.

        Raises:
            BlobSqlError: Statement-scoped failure with its ErrorClass
        """
        kind = classify_statement(sql)
        if kind is StatementKind.EMPTY:
            return StatementResult(kind=kind, command_tag="")

        async with self.registry.locked(connection_id) as state:
            state.touch()
            try:
                result = await self._dispatch(state, kind, sql, params)
            except BlobSqlError as e:
                self.metrics.record_query(connection_id, failed=True)
                error_class = e.error_class
                expected = (
                    error_class.is_misuse
                    or error_class.is_constraint_violation
                    or error_class.is_undefined_object
                )
                # Client mistakes stay at debug; engine trouble is a warning
                logger.log(
                    logging.DEBUG if expected else logging.WARNING,
                    f"Statement failed: {e.message}",
                    extra={
                        "connection_id": connection_id,
                        "sql": _truncate(sql),
                        "sqlstate": e.sqlstate,
                    },
                )
                raise
            self.metrics.record_query(connection_id)
            return result

    async def _dispatch(
        self,
        state: ConnectionState,
        kind: StatementKind,
        sql: str,
        params: Sequence[Any],
        stmt: PreparedStatement | None = None,
    ) -> StatementResult:
        if kind is StatementKind.BEGIN:
            await self._begin(state, sql)
            return StatementResult(kind=kind, command_tag="BEGIN")

        if kind is StatementKind.COMMIT:
            await self._commit(state)
            return StatementResult(kind=kind, command_tag="COMMIT")

        if kind is StatementKind.ROLLBACK:
            try:
                await self._rollback(state)
            except NoActiveTransactionError as e:
                logger.warning(
                    f"Rollback with no transaction: {e.message}",
                    extra={"connection_id": state.connection_id},
                )
                return StatementResult(kind=kind, command_tag="ROLLBACK", notice=e.message)
            return StatementResult(kind=kind, command_tag="ROLLBACK")

        if state.status is TransactionStatus.FAILED:
            raise TransactionAbortedError(
                "current transaction is aborted, commands ignored until end of transaction block"
            )

        try:
            return await self._run(self._run_statement, state, kind, sql, params, stmt)
        except Exception as e:
            tx = state.transaction
            if tx is not None and not tx.in_transaction:
                # SQLite aborted the transaction on its own
                state.status = TransactionStatus.FAILED
            raise translate_error(e) from e

    def _run_statement(
        self,
        state: ConnectionState,
        kind: StatementKind,
        sql: str,
        params: Sequence[Any],
        stmt: PreparedStatement | None = None,
    ) -> StatementResult:
        """Blocking engine call; runs in the executor under the connection lock."""
        handle = state.handle(self.engine)

        def query() -> QueryResult:
            if stmt is not None:
                return stmt.query(params, handle=handle)
            return handle.query(sql, params)

        def exec_() -> int:
            if stmt is not None:
                return stmt.exec(params, handle=handle)
            return handle.exec(sql, params)

        if kind is StatementKind.READ:
            result = query()
            return self._row_result(kind, sql, result)

        if kind in (StatementKind.WRITE, StatementKind.DDL, StatementKind.SAVEPOINT):
            affected = exec_()
            return StatementResult(
                kind=kind,
                command_tag=command_tag(kind, sql, affected),
                rows_affected=affected,
            )

        # Unknown shape: try as a query, fall back to exec
        try:
            result = query()
        except sqlite3.Error as e:
            logger.debug(f"Query path failed, retrying as exec: {e}")
            affected = exec_()
            return StatementResult(
                kind=kind,
                command_tag=command_tag(kind, sql, affected),
                rows_affected=affected,
            )
        if result.columns:
            return self._row_result(kind, sql, result)
        return StatementResult(kind=kind, command_tag=command_tag(kind, sql, 0))

    def _row_result(self, kind: StatementKind, sql: str, result: QueryResult) -> StatementResult:
        return StatementResult(
            kind=kind,
            command_tag=command_tag(StatementKind.READ, sql, result.row_count),
            columns=result.columns,
            rows=result.rows,
        )

    # ------------------------------------------------------------------
    # Prepared statements
    # ------------------------------------------------------------------

    async def prepare(self, connection_id: str, name: str, sql: str) -> None:
        """Validate and store a named statement on a connection.

        Re-preparing an existing name replaces the old statement.
        """
        async with self.registry.locked(connection_id) as state:
            state.touch()
            if state.status is TransactionStatus.FAILED:
                raise TransactionAbortedError(
                    "current transaction is aborted, commands ignored until end of transaction block"
                )

            handle = state.handle(self.engine)
            try:
                stmt = await self._run(handle.prepare, sql)
            except Exception as e:
                raise translate_error(e) from e

            old = state.prepared.pop(name, None)
            if old is not None:
                old.close()
            state.prepared[name] = stmt
            logger.debug(
                "Statement prepared",
                extra={"connection_id": connection_id, "statement": name},
            )

    async def execute_prepared(
        self, connection_id: str, name: str, args: Sequence[Any] = ()
    ) -> StatementResult:
        """Run a prepared statement with bound arguments.

        Raises:
            PreparedStatementNotFound: If no statement has that name
        """
        async with self.registry.locked(connection_id) as state:
            state.touch()
            stmt = state.prepared.get(name)
            if stmt is None:
                self.metrics.record_query(connection_id, failed=True)
                raise PreparedStatementNotFound(f'prepared statement "{name}" does not exist')

            try:
                result = await self._dispatch(
                    state, classify_statement(stmt.sql), stmt.sql, tuple(args), stmt
                )
            except BlobSqlError:
                self.metrics.record_query(connection_id, failed=True)
                raise
            self.metrics.record_query(connection_id)
            return result

    async def close_prepared(self, connection_id: str, name: str) -> None:
        """Close a prepared statement. Unknown names are ignored."""
        async with self.registry.locked(connection_id) as state:
            stmt = state.prepared.pop(name, None)
            if stmt is not None:
                stmt.close()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def status(self, connection_id: str) -> TransactionStatus:
        state = await self.registry.get(connection_id)
        if state is None:
            return TransactionStatus.IDLE
        return state.status

    async def disconnect(self, connection_id: str) -> bool:
        """Release a connection, rolling back its open transaction.

        Returns:
            True if a transaction was rolled back
        """
        rolled_back = await self.registry.remove(connection_id)
        if rolled_back:
            self.metrics.end_transaction(connection_id, committed=False)
            logger.info(
                "Rolled back open transaction on disconnect",
                extra={"connection_id": connection_id},
            )
        return rolled_back

    async def close(self) -> None:
        """Disconnect every connection."""
        rolled_back = await self.registry.close_all()
        for connection_id in rolled_back:
            self.metrics.end_transaction(connection_id, committed=False)
        if rolled_back:
            logger.info(
                "Rolled back open transactions on shutdown",
                extra={"count": len(rolled_back)},
            )
