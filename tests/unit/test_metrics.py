"""
Unit tests for transaction metrics.
"""

import time

from dbaas.blobsql_server.metrics import MetricsCollector, TransactionContext


class TestTransactionContext:
    """Tests for TransactionContext."""

    def test_touch(self):
        ctx = TransactionContext(connection_id="alice")
        before = ctx.last_query_at

        ctx.touch()

        assert ctx.query_count == 1
        assert ctx.last_query_at >= before
        assert ctx.to_dict()["connection_id"] == "alice"

    def test_duration_grows(self):
        ctx = TransactionContext(connection_id="alice")
        time.sleep(0.01)

        assert ctx.duration_seconds >= 0.01
        assert ctx.idle_seconds >= 0.01


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_lifecycle_counters(self):
        """Begin/commit/rollback update the counters."""
        metrics = MetricsCollector()

        metrics.start_transaction("a")
        metrics.start_transaction("b")
        assert metrics.snapshot().active == 2

        metrics.end_transaction("a", committed=True)
        metrics.end_transaction("b", committed=False)

        snap = metrics.snapshot()
        assert snap.total == 2
        assert snap.committed == 1
        assert snap.rolled_back == 1
        assert snap.active == 0
        assert snap.total == snap.committed + snap.rolled_back + snap.active

    def test_end_unknown_is_ignored(self):
        """Ending a transaction that was never started changes nothing."""
        metrics = MetricsCollector()

        metrics.end_transaction("ghost", committed=True)

        assert metrics.snapshot().to_dict() == MetricsCollector().snapshot().to_dict()

    def test_durations(self):
        """Average and longest duration cover completed transactions."""
        metrics = MetricsCollector()

        metrics.start_transaction("slow")
        time.sleep(0.02)
        metrics.end_transaction("slow", committed=True)

        metrics.start_transaction("fast")
        metrics.end_transaction("fast", committed=True)

        snap = metrics.snapshot()
        assert snap.longest_duration_seconds >= 0.02
        assert 0 < snap.avg_duration_seconds < snap.longest_duration_seconds

    def test_record_query(self):
        """Statements count globally and against the open transaction."""
        metrics = MetricsCollector()
        metrics.record_query("a")

        metrics.start_transaction("a")
        metrics.record_query("a")
        metrics.record_query("a", failed=True)

        assert metrics.statement_count == 3
        assert metrics.error_count == 1
        assert metrics.active_transactions()[0].query_count == 2

    def test_snapshot_is_a_copy(self):
        metrics = MetricsCollector()
        snap = metrics.snapshot()

        metrics.start_transaction("a")

        assert snap.active == 0

    def test_stale_transactions(self):
        """Idle transactions past the threshold are reported."""
        metrics = MetricsCollector()
        metrics.start_transaction("idle")
        time.sleep(0.02)
        metrics.start_transaction("busy")

        assert metrics.stale_transactions(0.01) == ["idle"]
        assert metrics.stale_transactions(60) == []
