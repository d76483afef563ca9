"""
Unit tests for MetricsCollector and contextual logging.

Tests metrics collection functionality including:
- Thread-safety under concurrent access
- Bounded storage with LRU eviction
- track_operation success/failure recording
- Correlation ID and operation context propagation
"""

import asyncio
import logging
import threading

import pytest

from mdb_entity.observability import (
    MetricsCollector,
    clear_correlation_id,
    get_correlation_id,
    get_logger,
    get_logging_context,
    get_metrics_collector,
    log_operation,
    record_operation,
    reset_operation_context,
    set_correlation_id,
    set_operation_context,
    track_operation,
)


class TestMetricsCollectorThreadSafety:
    """Test thread-safety of metrics collection."""

    def test_concurrent_record_operation(self):
        collector = MetricsCollector()
        num_threads = 10
        operations_per_thread = 100
        barrier = threading.Barrier(num_threads)

        def record_operations(thread_id: int):
            barrier.wait()
            for i in range(operations_per_thread):
                collector.record_operation(
                    "engine.find", duration_ms=1.0 + i, collection=f"c{thread_id}"
                )

        threads = [
            threading.Thread(target=record_operations, args=(i,)) for i in range(num_threads)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert collector.get_operation_count("engine.find") == num_threads * operations_per_thread
        assert len(collector.get_metrics()["metrics"]) == num_threads


class TestMetricsCollectorBoundedStorage:
    """Test bounded storage and LRU eviction."""

    def test_max_metrics_limit(self):
        collector = MetricsCollector(max_metrics=5)
        for i in range(8):
            collector.record_operation(f"test.op_{i}", duration_ms=10.0)
        assert len(collector.get_metrics()["metrics"]) == 5

    def test_least_recently_recorded_evicted_first(self):
        collector = MetricsCollector(max_metrics=3)
        collector.record_operation("test.op_0", duration_ms=10.0)
        collector.record_operation("test.op_1", duration_ms=10.0)
        collector.record_operation("test.op_2", duration_ms=10.0)
        # Touch op_0 so op_1 becomes the oldest.
        collector.record_operation("test.op_0", duration_ms=10.0)
        collector.record_operation("test.op_3", duration_ms=10.0)

        keys = set(collector.get_metrics()["metrics"])
        assert keys == {"test.op_0", "test.op_2", "test.op_3"}

    def test_no_eviction_on_update(self):
        collector = MetricsCollector(max_metrics=2)
        collector.record_operation("test.op_0", duration_ms=10.0)
        collector.record_operation("test.op_1", duration_ms=10.0)
        collector.record_operation("test.op_0", duration_ms=20.0)

        metrics = collector.get_metrics()["metrics"]
        assert len(metrics) == 2
        assert metrics["test.op_0"]["count"] == 2
        assert metrics["test.op_0"]["avg_duration_ms"] == 15.0


class TestMetricsCollectorFunctionality:
    def test_tags_become_part_of_key(self):
        collector = MetricsCollector()
        collector.record_operation("engine.insert", 5.0, collection="car")
        assert "engine.insert[collection=car]" in collector.get_metrics()["metrics"]

    def test_get_metrics_filtered_by_prefix(self):
        collector = MetricsCollector()
        collector.record_operation("engine.insert", 5.0)
        collector.record_operation("pool.acquire", 1.0)
        assert list(collector.get_metrics("pool.")["metrics"]) == ["pool.acquire"]

    def test_error_counts_and_rate(self):
        collector = MetricsCollector()
        collector.record_operation("engine.find", 5.0, success=True)
        collector.record_operation("engine.find", 5.0, success=False)

        assert collector.get_error_count("engine.find") == 1
        assert collector.get_metrics()["metrics"]["engine.find"]["error_rate_percent"] == 50.0

    def test_min_duration_tracked(self):
        collector = MetricsCollector()
        collector.record_operation("x", 0.5)
        assert collector.get_metrics()["metrics"]["x"]["min_duration_ms"] == 0.5

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_operation("x", 1.0)
        collector.reset()
        assert collector.get_metrics()["metrics"] == {}


class TestGlobalMetricsFunctions:
    def test_get_metrics_collector_singleton(self):
        assert get_metrics_collector() is get_metrics_collector()

    def test_record_operation_global(self, metrics):
        record_operation("global.op", 2.0)
        assert metrics.get_operation_count("global.op") == 1

    def test_track_operation_success(self, metrics):
        with track_operation("engine.count", collection="car"):
            pass
        assert metrics.get_operation_count("engine.count") == 1
        assert metrics.get_error_count("engine.count") == 0

    def test_track_operation_failure(self, metrics):
        with pytest.raises(ValueError):
            with track_operation("engine.count"):
                raise ValueError("boom")
        assert metrics.get_error_count("engine.count") == 1


class TestContextualLogging:
    def test_correlation_id_round_trip(self):
        cid = set_correlation_id()
        try:
            assert get_correlation_id() == cid
            assert get_logging_context()["correlation_id"] == cid
        finally:
            clear_correlation_id()
        assert get_correlation_id() is None

    def test_operation_context_reset(self):
        outer = set_operation_context("find", collection="car")
        inner = set_operation_context("count", collection="owner")
        assert get_logging_context()["operation"] == "count"
        reset_operation_context(inner)
        assert get_logging_context()["collection"] == "car"
        reset_operation_context(outer)
        assert "operation" not in get_logging_context()

    @pytest.mark.asyncio
    async def test_context_is_task_local(self):
        seen = {}

        async def worker(name):
            token = set_operation_context(name)
            await asyncio.sleep(0)
            seen[name] = get_logging_context()["operation"]
            reset_operation_context(token)

        await asyncio.gather(worker("insert"), worker("find"))
        assert seen == {"insert": "insert", "find": "find"}

    def test_adapter_adds_context_to_records(self, caplog):
        logger = get_logger("mdb_entity.tests")
        token = set_operation_context("insert", collection="car")
        try:
            with caplog.at_level(logging.INFO, logger="mdb_entity.tests"):
                logger.info("stored", extra={"count": 1})
        finally:
            reset_operation_context(token)

        record = caplog.records[-1]
        assert record.collection == "car"
        assert record.operation == "insert"
        assert record.count == 1

    def test_log_operation_failure_message(self, caplog):
        logger = logging.getLogger("mdb_entity.tests")
        with caplog.at_level(logging.DEBUG, logger="mdb_entity.tests"):
            log_operation(logger, "upsert_one", success=False, duration_ms=12.5)

        record = caplog.records[-1]
        assert record.getMessage() == "Operation failed: upsert_one (duration: 12.50ms)"
        assert record.duration_ms == 12.5
