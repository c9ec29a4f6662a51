"""
Connection registry for BlobSQL.

The registry is the directory of per-connection state: the open engine
transaction (if any), its status, prepared statements and activity
counters. It is a single instance injected into the coordinator.

Lock discipline:
    - The registry lock protects map membership only and is never held
      across engine or storage calls
    - Each ConnectionState has its own lock; operations on one connection
      are serialized, independent connections never wait on each other
    - Lock order is connection lock, then registry lock

Invariants:
    - At most one open transaction per ConnectionState
    - remove() closes prepared statements and rolls back an open
      transaction before the state is evicted
    - An evicted state is marked closed; callers holding a stale reference
      re-resolve through locked()

How to change safely:
    - Never take a connection lock while holding the registry lock
    - Test disconnect during an open transaction after any change here
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum

from .engine import EngineTransaction, PreparedStatement, SQLiteEngine

logger = logging.getLogger(__name__)


class TransactionStatus(Enum):
    """Per-connection transaction state."""

    IDLE = "idle"
    ACTIVE = "active"
    FAILED = "failed"


class ConnectionState:
    """State owned by one client connection.

    Attributes:
        connection_id: Opaque connection identity
        transaction: Open engine transaction, or None
        status: Transaction status
        prepared: Prepared statements by name
        last_activity: Wall-clock time of the last statement (unix seconds)
        query_count: Statements issued on this connection
        lock: Serializes operations on this connection
    """

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.transaction: EngineTransaction | None = None
        self.status = TransactionStatus.IDLE
        self.prepared: dict[str, PreparedStatement] = {}
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.query_count = 0
        self.lock = asyncio.Lock()
        self.closed = False

    def touch(self) -> None:
        self.last_activity = time.time()
        self.query_count += 1

    def handle(self, engine: SQLiteEngine) -> SQLiteEngine | EngineTransaction:
        """Handle statements run against: the open transaction, else autocommit."""
        if self.transaction is not None and not self.transaction.closed:
            return self.transaction
        return engine

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "status": self.status.value,
            "prepared": sorted(self.prepared),
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "query_count": self.query_count,
        }


def _release_resources(state: ConnectionState) -> bool:
    """Close statements and roll back. Blocking; returns True if a transaction was open."""
    for name, stmt in state.prepared.items():
        try:
            stmt.close()
        except Exception as e:
            logger.warning(
                f"Failed to close prepared statement: {e}",
                extra={"connection_id": state.connection_id, "statement": name},
            )
    state.prepared.clear()

    tx, state.transaction = state.transaction, None
    state.status = TransactionStatus.IDLE
    if tx is None or tx.closed:
        return False

    try:
        tx.rollback()
    except Exception as e:
        logger.error(
            f"Rollback on disconnect failed: {e}",
            extra={"connection_id": state.connection_id},
        )
    return True


class ConnectionRegistry:
    """Concurrency-safe directory of connection state.

    Example:
        >>> registry = ConnectionRegistry()
        >>> async with registry.locked("conn-1") as state:
        ...     state.touch()
        >>> await registry.remove("conn-1")
    """

    def __init__(self) -> None:
        self._connections: dict[str, ConnectionState] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, connection_id: str) -> ConnectionState:
        """Get the state for a connection, creating it on first reference."""
        async with self._lock:
            state = self._connections.get(connection_id)
            if state is None:
                state = ConnectionState(connection_id)
                self._connections[connection_id] = state
                logger.debug("Connection registered", extra={"connection_id": connection_id})
            return state

    async def get(self, connection_id: str) -> ConnectionState | None:
        async with self._lock:
            return self._connections.get(connection_id)

    @asynccontextmanager
    async def locked(self, connection_id: str) -> AsyncIterator[ConnectionState]:
        """Hold a connection's lock, creating its state if needed.

        Retries if the state was evicted while waiting for its lock.
        """
        while True:
            state = await self.get_or_create(connection_id)
            async with state.lock:
                if state.closed:
                    continue
                yield state
                return

    async def remove(self, connection_id: str) -> bool:
        """Release a connection's resources and evict it.

        Removing an unknown id is a no-op.

        Returns:
            True if an open transaction was rolled back
        """
        state = await self.get(connection_id)
        if state is None:
            return False

        async with state.lock:
            if state.closed:
                return False
            loop = asyncio.get_running_loop()
            rolled_back = await loop.run_in_executor(None, _release_resources, state)
            state.closed = True
            async with self._lock:
                if self._connections.get(connection_id) is state:
                    del self._connections[connection_id]

        logger.debug(
            "Connection removed",
            extra={"connection_id": connection_id, "rolled_back": rolled_back},
        )
        return rolled_back

    async def ids(self) -> list[str]:
        async with self._lock:
            return list(self._connections)

    async def snapshot(self) -> list[dict]:
        """Describe every registered connection, ordered by creation."""
        async with self._lock:
            states = sorted(self._connections.values(), key=lambda s: s.created_at)
            return [state.to_dict() for state in states]

    async def close_all(self) -> list[str]:
        """Remove every connection.

        Returns:
            Ids of connections whose open transaction was rolled back
        """
        rolled_back = []
        for connection_id in await self.ids():
            if await self.remove(connection_id):
                rolled_back.append(connection_id)
        return rolled_back

    def __len__(self) -> int:
        return len(self._connections)
