import pytest

from services.metrics import (
    MetricsCollector,
    format_metrics,
    metrics,
    record_command,
    record_llm_call,
    record_merge,
    record_receipt_parse,
)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


class TestMetricsCollector:
    def test_increment(self):
        collector = MetricsCollector()
        collector.increment("test_counter")
        assert collector.get_counter("test_counter") == 1.0

        collector.increment("test_counter", 2.5)
        assert collector.get_counter("test_counter") == 3.5

        collector.increment("labeled_counter", labels={"env": "prod"})
        assert collector.get_counter("labeled_counter", labels={"env": "prod"}) == 1.0
        assert collector.get_counter("labeled_counter", labels={"env": "dev"}) == 0.0

    def test_histogram(self):
        collector = MetricsCollector()
        for v in [10, 20, 30, 40, 50]:
            collector.histogram("test_hist", v)

        stats = collector.get_histogram_stats("test_hist")
        assert stats["count"] == 5
        assert stats["min"] == 10
        assert stats["max"] == 50
        assert stats["avg"] == 30.0

        for i in range(150):
            collector.histogram("rolling_hist", i)

        stats = collector.get_histogram_stats("rolling_hist")
        assert stats["count"] == 100
        assert stats["min"] == 50
        assert stats["max"] == 149

    def test_empty_histogram(self):
        assert MetricsCollector().get_histogram_stats("missing") == {}

    def test_snapshot_and_reset(self):
        collector = MetricsCollector()
        collector.increment("a")
        collector.histogram("b", 1.0)

        snap = collector.snapshot()
        assert snap["counters"] == {"a": 1.0}
        assert snap["histograms"] == {"b": 1}
        assert "collected_at" in snap

        collector.reset()
        assert collector.get_counter("a") == 0.0


def test_record_llm_call_counts_errors():
    record_llm_call(model="m1", duration_ms=12.0, success=True)
    record_llm_call(model="m1", duration_ms=30.0, success=False)

    assert metrics.get_counter("llm_calls_total", {"model": "m1", "success": "true"}) == 1.0
    assert metrics.get_counter("llm_errors_total", {"model": "m1"}) == 1.0


def test_record_command():
    record_command(command="tesseract", duration_ms=5.0)
    assert metrics.get_counter("commands_total", {"command": "tesseract", "success": "true"}) == 1.0


def test_record_receipt_parse_and_merge():
    record_receipt_parse("heuristic", rows=4, escalated=True)
    record_merge("create")
    record_merge("create")

    assert metrics.get_counter("receipts_parsed_total", {"source": "heuristic"}) == 1.0
    assert metrics.get_counter("receipt_escalations_total") == 1.0
    assert metrics.get_counter("merge_decisions_total", {"action": "create"}) == 2.0
    assert metrics.get_histogram_stats("receipt_rows", {"source": "heuristic"})["max"] == 4.0


def test_format_metrics_lists_counters_and_latencies():
    assert "(none recorded)" in format_metrics()

    record_llm_call(model="m1", duration_ms=20.0, success=True)
    record_receipt_parse("llm", rows=3, escalated=False)
    text = format_metrics()

    assert "llm_calls_total{model=m1,success=true}: 1" in text
    assert "llm_call_duration_ms{model=m1,success=true}: avg=20.0 p95=20.0 (n=1)" in text
    assert "receipt_rows{source=llm}: max=3 (n=1)" in text
