"""
Transaction metrics for BlobSQL.

The MetricsCollector is a read-only consumer of coordinator events. It
tracks one TransactionContext per connection with an open transaction and
process-wide counters for completed ones.

Invariants:
    - Counters only change through start/end/record calls from the coordinator
    - active == total - committed - rolled_back at all times
    - end_transaction() for a connection with no open context is ignored
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class TransactionContext:
    """Tracking state for one open transaction.

    Attributes:
        connection_id: Owning connection
        started_at: Wall-clock start (unix seconds)
        last_query_at: Wall-clock time of the last statement (unix seconds)
        query_count: Statements run inside the transaction
    """

    connection_id: str
    started_at: float = field(default_factory=time.time)
    last_query_at: float = field(default_factory=time.time)
    query_count: int = 0
    _started_mono: float = field(default_factory=time.monotonic, repr=False)
    _last_query_mono: float = field(default_factory=time.monotonic, repr=False)

    @property
    def duration_seconds(self) -> float:
        return time.monotonic() - self._started_mono

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self._last_query_mono

    def touch(self) -> None:
        self.query_count += 1
        self.last_query_at = time.time()
        self._last_query_mono = time.monotonic()

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "started_at": self.started_at,
            "last_query_at": self.last_query_at,
            "query_count": self.query_count,
            "duration_seconds": round(self.duration_seconds, 6),
        }


@dataclass
class TransactionMetrics:
    """Process-wide transaction counters."""

    total: int = 0
    committed: int = 0
    rolled_back: int = 0
    active: int = 0
    avg_duration_seconds: float = 0.0
    longest_duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetricsCollector:
    """Aggregates transaction lifecycle events.

    Example:
        >>> metrics = MetricsCollector()
        >>> metrics.start_transaction("conn-1")
        >>> metrics.record_query("conn-1")
        >>> metrics.end_transaction("conn-1", committed=True)
        >>> metrics.snapshot().committed
        1
    """

    def __init__(self) -> None:
        self._contexts: dict[str, TransactionContext] = {}
        self._metrics = TransactionMetrics()
        self.statement_count = 0
        self.error_count = 0

    def start_transaction(self, connection_id: str) -> None:
        self._contexts[connection_id] = TransactionContext(connection_id=connection_id)
        self._metrics.total += 1
        self._metrics.active += 1

    def end_transaction(self, connection_id: str, committed: bool) -> None:
        ctx = self._contexts.pop(connection_id, None)
        if ctx is None:
            return

        duration = ctx.duration_seconds
        m = self._metrics
        if committed:
            m.committed += 1
        else:
            m.rolled_back += 1
        m.active -= 1

        # Running mean over completed transactions
        completed = m.committed + m.rolled_back
        m.avg_duration_seconds += (duration - m.avg_duration_seconds) / completed

        if duration > m.longest_duration_seconds:
            m.longest_duration_seconds = duration

    def record_query(self, connection_id: str, failed: bool = False) -> None:
        """Count a statement, attributing it to the open transaction if any."""
        self.statement_count += 1
        if failed:
            self.error_count += 1
        ctx = self._contexts.get(connection_id)
        if ctx is not None:
            ctx.touch()

    def snapshot(self) -> TransactionMetrics:
        """Copy of the current counters."""
        return TransactionMetrics(**asdict(self._metrics))

    def active_transactions(self) -> list[TransactionContext]:
        return list(self._contexts.values())

    def stale_transactions(self, max_idle_seconds: float) -> list[str]:
        """Connection ids whose open transaction has been idle too long."""
        return [
            ctx.connection_id
            for ctx in self._contexts.values()
            if ctx.idle_seconds > max_idle_seconds
        ]

    def log_summary(self) -> None:
        """Log the final transaction report."""
        m = self._metrics
        logger.info(
            "Transaction metrics",
            extra={
                "total": m.total,
                "committed": m.committed,
                "rolled_back": m.rolled_back,
                "active": m.active,
                "avg_duration_ms": round(m.avg_duration_seconds * 1000, 3),
                "longest_duration_ms": round(m.longest_duration_seconds * 1000, 3),
                "statements": self.statement_count,
                "statement_errors": self.error_count,
            },
        )
