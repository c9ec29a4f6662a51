"""
Column type mapping for BlobSQL.

SQLite columns carry a declared type and values carry a storage class
(NULL, INTEGER, REAL, TEXT, BLOB). Clients expect PostgreSQL type names,
so both are mapped here following SQLite's type affinity rules.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

# Exact declared names checked before the affinity rules
_EXACT_TYPES = {
    "BOOLEAN": "bool",
    "BOOL": "bool",
    "DATE": "date",
    "DATETIME": "timestamp",
    "TIMESTAMP": "timestamp",
    "NUMERIC": "numeric",
    "DECIMAL": "numeric",
    "NULL": "text",
}


def sqlite_type_to_postgres(decl: str | None) -> str:
    """Map a SQLite declared type or storage class to a PostgreSQL type name.

    Unknown and empty declarations map to text.
    """
    if not decl:
        return "text"

    upper = decl.strip().upper()
    base = upper.split("(", 1)[0].strip()
    if base in _EXACT_TYPES:
        return _EXACT_TYPES[base]

    # SQLite affinity rules, in SQLite's order
    if "INT" in upper:
        return "int8"
    if "CHAR" in upper or "CLOB" in upper or "TEXT" in upper:
        return "text"
    if "BLOB" in upper:
        return "bytea"
    if "REAL" in upper or "FLOA" in upper or "DOUB" in upper:
        return "float8"
    return "text"


def value_type_name(value: Any) -> str:
    """SQLite storage class of a value returned by sqlite3."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "INTEGER"
    if isinstance(value, int):
        return "INTEGER"
    if isinstance(value, float):
        return "REAL"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "BLOB"
    return "TEXT"


def column_types(columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> list[str]:
    """PostgreSQL type names for a result set, from the first non-NULL value per column."""
    types = []
    for i in range(len(columns)):
        storage_class = "NULL"
        for row in rows:
            if row[i] is not None:
                storage_class = value_type_name(row[i])
                break
        types.append(sqlite_type_to_postgres(storage_class))
    return types
