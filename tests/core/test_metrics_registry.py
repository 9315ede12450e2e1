from __future__ import annotations

from threading import Thread
from time import sleep

from dualsync.core import metrics


def test_increment_counter() -> None:
    registry = metrics.MetricsRegistry()

    registry.increment("conflicts_detected")
    registry.increment("conflicts_detected", 2)

    assert registry.counter("conflicts_detected") == 3
    assert registry.counter("missing") == 0


def test_record_timing_snapshot() -> None:
    registry = metrics.MetricsRegistry()

    registry.record_timing("latency.detect_conflicts_ms", 10.0)
    registry.record_timing("latency.detect_conflicts_ms", 30.0)

    snapshot = registry.snapshot()["timings_ms"]["latency.detect_conflicts_ms"]
    assert snapshot == {"count": 2, "last": 30.0, "avg": 20.0, "max": 30.0}


def test_measure_time_decorator_records_even_on_error() -> None:
    registry = metrics.MetricsRegistry()

    @metrics.measure_time("latency.failing_ms", registry)
    def _operation() -> None:
        sleep(0.005)
        raise RuntimeError("boom")

    try:
        _operation()
    except RuntimeError:
        pass

    timing = registry.snapshot()["timings_ms"]["latency.failing_ms"]
    assert timing["count"] == 1
    assert timing["last"] > 0


def test_concurrent_increments_are_not_lost() -> None:
    registry = metrics.MetricsRegistry()

    def _worker() -> None:
        for _ in range(500):
            registry.increment("store_read_errors")

    threads = [Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.counter("store_read_errors") == 2000


def test_reset_clears_everything() -> None:
    registry = metrics.MetricsRegistry()
    registry.increment("a")
    registry.record_timing("b", 1.0)

    registry.reset()

    assert registry.snapshot() == {"counters": {}, "timings_ms": {}}
