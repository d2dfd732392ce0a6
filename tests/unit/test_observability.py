"""Unit tests for in-process latency, counters and metric export."""

from __future__ import annotations

from chatcontext.observability import counters_snapshot
from chatcontext.observability import export_metrics
from chatcontext.observability import increment_counter
from chatcontext.observability import latency_metrics_snapshot
from chatcontext.observability import metrics_snapshot
from chatcontext.observability import record_latency
from chatcontext.observability import reset_counters
from chatcontext.observability import reset_latency_metrics


class TestObservabilityLatency:
    def test_records_latency_aggregates(self):
        record_latency(operation="pipeline.process", duration_ms=10.0, ok=True)
        record_latency(operation="pipeline.process", duration_ms=30.0, ok=False)

        metrics = latency_metrics_snapshot()["pipeline.process"]
        assert metrics["count"] == 2
        assert metrics["error_count"] == 1
        assert metrics["total_ms"] == 40.0
        assert metrics["avg_ms"] == 20.0
        assert metrics["min_ms"] == 10.0
        assert metrics["max_ms"] == 30.0
        assert metrics["last_ms"] == 30.0

    def test_negative_durations_clamped(self):
        record_latency(operation="clock.skew", duration_ms=-5.0)
        assert latency_metrics_snapshot()["clock.skew"]["min_ms"] == 0.0

    def test_reset_clears_all_metrics(self):
        record_latency(operation="memory.consolidate", duration_ms=12.0, ok=True)
        assert "memory.consolidate" in latency_metrics_snapshot()
        reset_latency_metrics()
        assert latency_metrics_snapshot() == {}


class TestCounters:
    def test_increment_and_snapshot(self):
        increment_counter("pipeline.timeouts")
        increment_counter("pipeline.timeouts", 2)
        assert counters_snapshot() == {"pipeline.timeouts": 3}

    def test_reset(self):
        increment_counter("memory.degraded")
        reset_counters()
        assert counters_snapshot() == {}

    def test_metrics_snapshot_combines_both(self):
        increment_counter("provider.retries")
        record_latency(operation="provider.complete", duration_ms=1.0)
        snapshot = metrics_snapshot()
        assert snapshot["counters"] == {"provider.retries": 1}
        assert "provider.complete" in snapshot["latency"]


class _RecordingSink:
    def __init__(self) -> None:
        self.exported: list[dict] = []

    async def export(self, snapshot: dict[str, dict]) -> None:
        self.exported.append(snapshot)


class _FailingSink:
    async def export(self, snapshot: dict[str, dict]) -> None:
        raise ConnectionError("collector down")


class TestExport:
    async def test_export_pushes_snapshot(self):
        increment_counter("chat.requests")
        sink = _RecordingSink()
        assert await export_metrics(sink) is True
        assert sink.exported[0]["counters"] == {"chat.requests": 1}

    async def test_no_sink_is_noop(self):
        assert await export_metrics(None) is False

    async def test_failing_sink_never_raises(self):
        assert await export_metrics(_FailingSink()) is False
        assert counters_snapshot()["metrics.export_failed"] == 1
