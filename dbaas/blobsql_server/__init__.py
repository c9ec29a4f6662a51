"""
BlobSQL Server - SQL clients over an embedded database kept in object storage.

This package lets many concurrent clients run transactional SQL against a
single SQLite working copy whose durable image lives in a blob store:
- SQLite as the embedded engine (one process-private working copy)
- Local disk, S3 or Azure Blob Storage as the durable store
- A background sync engine that flushes committed state to the store

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌────────────────────────┐
    │   Client    │────▶│  HTTP query  │────▶│ TransactionCoordinator │
    │             │     │   surface    │     │  (per-connection FSM)  │
    └─────────────┘     └──────────────┘     └───────────┬────────────┘
                                                         │
                         ┌───────────────────────────────┼──────────────┐
                         │                               │              │
                         ▼                               ▼              ▼
                 ┌───────────────┐              ┌──────────────┐  ┌───────────┐
                 │  Connection   │              │ SQLiteEngine │  │  Metrics  │
                 │   Registry    │              │ (working copy│  │ Collector │
                 └───────────────┘              └──────┬───────┘  └───────────┘
                                                       │ commit signal
                                                       ▼
                                                ┌──────────────┐    ┌───────────┐
                                                │  SyncEngine  │───▶│ BlobStore │
                                                │ (CacheFile)  │    │local/S3/AZ│
                                                └──────────────┘    └───────────┘

Invariants:
    - The local working copy is the source of truth until flushed
    - At most one active transaction handle per connection
    - Removing a connection rolls back its transaction and closes statements
    - Uploads are last-writer-wins; there is no cross-instance version check

How to change safely:
    - Keep the registry lock discipline (outer membership, inner per-connection)
    - Never hold a connection lock across storage I/O
    - New storage backends must implement the BlobStore protocol

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
