"""Lightweight in-process observability helpers: latency timers and counters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Protocol
from typing import runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class LatencySummary:
    """Aggregated latency metrics for one operation."""

    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0


class _LatencyRecorder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._stats: dict[str, LatencySummary] = {}

    def record(
        self,
        *,
        operation: str,
        duration_ms: float,
        ok: bool,
        request_id: str | None = None,
    ) -> None:
        normalized = max(float(duration_ms), 0.0)
        with self._lock:
            summary = self._stats.setdefault(operation, LatencySummary())
            summary.count += 1
            if not ok:
                summary.error_count += 1
            summary.total_ms += normalized
            summary.last_ms = normalized
            if summary.count == 1:
                summary.min_ms = normalized
                summary.max_ms = normalized
            else:
                summary.min_ms = min(summary.min_ms, normalized)
                summary.max_ms = max(summary.max_ms, normalized)

        logger.info(
            "latency operation=%s duration_ms=%.3f ok=%s request_id=%s",
            operation,
            normalized,
            ok,
            request_id,
        )

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            return {
                operation: {
                    "count": summary.count,
                    "error_count": summary.error_count,
                    "total_ms": round(summary.total_ms, 3),
                    "avg_ms": round(
                        summary.total_ms / summary.count if summary.count else 0.0,
                        3,
                    ),
                    "min_ms": round(summary.min_ms, 3),
                    "max_ms": round(summary.max_ms, 3),
                    "last_ms": round(summary.last_ms, 3),
                }
                for operation, summary in sorted(self._stats.items())
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


class _CounterRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counts: dict[str, int] = {}

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + amount

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counts.items()))

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


_RECORDER = _LatencyRecorder()
_COUNTERS = _CounterRegistry()


def record_latency(
    *,
    operation: str,
    duration_ms: float,
    ok: bool = True,
    request_id: str | None = None,
) -> None:
    """Record one latency sample."""
    _RECORDER.record(
        operation=operation,
        duration_ms=duration_ms,
        ok=ok,
        request_id=request_id,
    )


def latency_metrics_snapshot() -> dict[str, dict[str, float | int]]:
    """Return current in-process latency aggregates."""
    return _RECORDER.snapshot()


def reset_latency_metrics() -> None:
    """Clear all latency aggregates (test helper)."""
    _RECORDER.reset()


def increment_counter(name: str, amount: int = 1) -> None:
    """Bump a named counter."""
    _COUNTERS.increment(name, amount)


def counters_snapshot() -> dict[str, int]:
    """Return current counter values."""
    return _COUNTERS.snapshot()


def reset_counters() -> None:
    """Clear all counters (test helper)."""
    _COUNTERS.reset()


def metrics_snapshot() -> dict[str, dict]:
    """Latency aggregates and counters in one payload."""
    return {
        "latency": latency_metrics_snapshot(),
        "counters": counters_snapshot(),
    }


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


@runtime_checkable
class MetricsSink(Protocol):
    """Destination for periodic metric exports (statsd, OTLP, ...)."""

    async def export(self, snapshot: dict[str, dict]) -> None: ...


async def export_metrics(sink: MetricsSink | None) -> bool:
    """Push the current snapshot to *sink*.

    Export is best-effort: a failing sink is logged and reported as
    ``False``, it never fails the caller.
    """
    if sink is None:
        return False
    try:
        await sink.export(metrics_snapshot())
    except Exception:
        logger.exception("metrics export failed")
        increment_counter("metrics.export_failed")
        return False
    return True
