"""
Error taxonomy and engine error translation for BlobSQL.

Engine failures arrive as free-text SQLite messages. This module maps them
onto a small closed set of error classes so clients get a stable,
backend-agnostic status (PostgreSQL SQLSTATE codes are used as the class
values).

Invariants:
    - ERROR_PATTERNS is ordered: specific patterns come before generic ones
    - Unmatched messages classify as INTERNAL, never raise
    - Every BlobSqlError carries an ErrorClass

How to change safely:
    - Insert new patterns above any pattern they are a substring of
    - Never reuse an SQLSTATE for a different class
    - Add a table-driven test row for every new pattern
"""

from __future__ import annotations

import asyncio
from enum import Enum

from .storage.base import StorageError, StorageTimeoutError


class ErrorClass(Enum):
    """Client-visible error classes, valued by SQLSTATE."""

    UNIQUE_VIOLATION = "23505"
    NOT_NULL_VIOLATION = "23502"
    FOREIGN_KEY_VIOLATION = "23503"
    CHECK_VIOLATION = "23514"
    CONSTRAINT_VIOLATION = "23000"
    SERIALIZATION_FAILURE = "40001"
    IO_FAILURE = "08006"
    CORRUPTION = "58030"
    UNDEFINED_TABLE = "42P01"
    UNDEFINED_COLUMN = "42703"
    UNDEFINED_OBJECT = "42704"
    SYNTAX_ERROR = "42601"
    OUT_OF_MEMORY = "53200"
    DISK_FULL = "53100"
    TOO_MANY_CONNECTIONS = "53300"
    # Transaction protocol misuse
    ACTIVE_TRANSACTION = "25001"
    NO_ACTIVE_TRANSACTION = "25P01"
    IN_FAILED_TRANSACTION = "25P02"
    INTERNAL = "XX000"

    @property
    def sqlstate(self) -> str:
        return self.value

    @property
    def is_undefined_object(self) -> bool:
        """Whether the class names a missing table, column or other object."""
        return self in (
            ErrorClass.UNDEFINED_TABLE,
            ErrorClass.UNDEFINED_COLUMN,
            ErrorClass.UNDEFINED_OBJECT,
        )

    @property
    def is_constraint_violation(self) -> bool:
        return self.value.startswith("23")

    @property
    def is_misuse(self) -> bool:
        """Whether the class is a transaction-protocol misuse."""
        return self.value.startswith("25")


# Ordered (substring, class) table matched against SQLite error messages.
ERROR_PATTERNS: tuple[tuple[str, ErrorClass], ...] = (
    ("UNIQUE constraint failed", ErrorClass.UNIQUE_VIOLATION),
    ("NOT NULL constraint failed", ErrorClass.NOT_NULL_VIOLATION),
    ("FOREIGN KEY constraint failed", ErrorClass.FOREIGN_KEY_VIOLATION),
    ("CHECK constraint failed", ErrorClass.CHECK_VIOLATION),
    ("constraint failed", ErrorClass.CONSTRAINT_VIOLATION),
    ("database is locked", ErrorClass.SERIALIZATION_FAILURE),
    ("database table is locked", ErrorClass.SERIALIZATION_FAILURE),
    ("disk I/O error", ErrorClass.IO_FAILURE),
    ("database disk image is malformed", ErrorClass.CORRUPTION),
    ("file is not a database", ErrorClass.CORRUPTION),
    ("no such table", ErrorClass.UNDEFINED_TABLE),
    ("no such column", ErrorClass.UNDEFINED_COLUMN),
    ("no such index", ErrorClass.UNDEFINED_OBJECT),
    ("no such view", ErrorClass.UNDEFINED_OBJECT),
    ("no such trigger", ErrorClass.UNDEFINED_OBJECT),
    ("no such function", ErrorClass.UNDEFINED_OBJECT),
    ("syntax error", ErrorClass.SYNTAX_ERROR),
    ("incomplete input", ErrorClass.SYNTAX_ERROR),
    ("out of memory", ErrorClass.OUT_OF_MEMORY),
    ("disk full", ErrorClass.DISK_FULL),
    ("database or disk is full", ErrorClass.DISK_FULL),
    ("connection pool exhausted", ErrorClass.TOO_MANY_CONNECTIONS),
)


def classify_message(message: str) -> ErrorClass:
    """Classify an engine error message.

    Args:
        message: Native engine error text

    Returns:
        The first matching ErrorClass, or INTERNAL if nothing matches
    """
    for pattern, error_class in ERROR_PATTERNS:
        if pattern in message:
            return error_class
    return ErrorClass.INTERNAL


class BlobSqlError(Exception):
    """Base exception for statement-scoped errors.

    Attributes:
        message: Error message
        error_class: Client-visible error class
    """

    error_class = ErrorClass.INTERNAL

    def __init__(self, message: str, error_class: ErrorClass | None = None) -> None:
        super().__init__(message)
        self.message = message
        if error_class is not None:
            self.error_class = error_class

    @property
    def sqlstate(self) -> str:
        return self.error_class.sqlstate


class QueryError(BlobSqlError):
    """Engine execution error, translated into an error class."""

    pass


class TransactionStateError(BlobSqlError):
    """Transaction control statement issued in the wrong state."""

    pass


class AlreadyInTransactionError(TransactionStateError):
    """BEGIN issued while a transaction is already active."""

    error_class = ErrorClass.ACTIVE_TRANSACTION


class NoActiveTransactionError(TransactionStateError):
    """COMMIT or ROLLBACK issued with no transaction in progress."""

    error_class = ErrorClass.NO_ACTIVE_TRANSACTION


class TransactionAbortedError(TransactionStateError):
    """Statement issued on a connection whose commit failed."""

    error_class = ErrorClass.IN_FAILED_TRANSACTION


class PreparedStatementNotFound(BlobSqlError):
    """No prepared statement with the given name on this connection."""

    error_class = ErrorClass.UNDEFINED_OBJECT


def translate_error(exc: BaseException) -> BlobSqlError:
    """Convert any exception raised while serving a statement.

    Args:
        exc: Exception from the engine, storage or coordinator

    Returns:
        A BlobSqlError with a resolved error class
    """
    if isinstance(exc, BlobSqlError):
        return exc
    if isinstance(exc, (StorageTimeoutError, asyncio.TimeoutError)):
        return QueryError(f"storage operation timed out: {exc}", ErrorClass.IO_FAILURE)
    if isinstance(exc, StorageError):
        return QueryError(str(exc), ErrorClass.IO_FAILURE)
    if isinstance(exc, MemoryError):
        return QueryError("out of memory", ErrorClass.OUT_OF_MEMORY)

    message = str(exc)
    return QueryError(message, classify_message(message))
