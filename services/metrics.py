"""In-process metrics for LLM calls, subprocesses and receipt handling."""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

HISTOGRAM_WINDOW = 100


class MetricsCollector:
    """Thread-safe counters and rolling histograms."""

    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self._lock = threading.RLock()
        self._counters: dict[str, float] = defaultdict(float)
        self._histograms: dict[str, list[float]] = defaultdict(list)
        self._window = window

    def increment(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def histogram(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            values = self._histograms[key]
            values.append(value)
            if len(values) > self._window:
                del values[: len(values) - self._window]

    @staticmethod
    def _make_key(name: str, labels: dict[str, str] | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        key = self._make_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, float]:
        """Count, min, max, avg and p95 for one histogram key."""
        key = self._make_key(name, labels)
        with self._lock:
            values = sorted(self._histograms.get(key, []))
        if not values:
            return {}
        count = len(values)
        return {
            "count": count,
            "min": values[0],
            "max": values[-1],
            "avg": sum(values) / count,
            "p95": values[int(count * 0.95)] if count > 1 else values[-1],
        }

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {key: len(values) for key, values in self._histograms.items()},
                "collected_at": datetime.now(timezone.utc).isoformat(),
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()


metrics = MetricsCollector()


def record_llm_call(model: str, duration_ms: float, success: bool) -> None:
    labels = {"model": model, "success": str(success).lower()}
    metrics.histogram("llm_call_duration_ms", duration_ms, labels)
    metrics.increment("llm_calls_total", labels=labels)
    if not success:
        metrics.increment("llm_errors_total", labels={"model": model})


def record_command(command: str, duration_ms: float, success: bool = True) -> None:
    labels = {"command": command, "success": str(success).lower()}
    metrics.histogram("command_duration_ms", duration_ms, labels)
    metrics.increment("commands_total", labels=labels)


def record_receipt_parse(source: str, rows: int, escalated: bool) -> None:
    metrics.increment("receipts_parsed_total", labels={"source": source})
    metrics.histogram("receipt_rows", float(rows), {"source": source})
    if escalated:
        metrics.increment("receipt_escalations_total")


def record_merge(action: str) -> None:
    metrics.increment("merge_decisions_total", labels={"action": action})


def format_metrics() -> str:
    """Plain-text summary of the counters and latencies gathered by this process."""
    data = metrics.snapshot()
    lines = ["Metrics:"]
    for name, value in sorted(data["counters"].items()):
        lines.append(f"  {name}: {value:.0f}")
    for key in sorted(data["histograms"]):
        name, _, label_str = key.partition("{")
        labels = dict(pair.split("=", 1) for pair in label_str.rstrip("}").split(",") if pair)
        stats = metrics.get_histogram_stats(name, labels or None)
        if name.endswith("_ms"):
            lines.append(f"  {key}: avg={stats['avg']:.1f} p95={stats['p95']:.1f} (n={stats['count']})")
        else:
            lines.append(f"  {key}: max={stats['max']:.0f} (n={stats['count']})")
    if len(lines) == 1:
        lines.append("  (none recorded)")
    return "\n".join(lines)
