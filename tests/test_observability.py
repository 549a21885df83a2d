"""
Tests for metrics, tracing and health checks.
"""
import asyncio
from datetime import datetime

import pytest

from afms.models.enums import HealthStatus, MetricType, TraceStatus
from afms.services.observability import (
    MAX_METRIC_HISTORY,
    HealthCheck,
    HealthCheckService,
    MetricsCollector,
    ObservabilityService,
    TracingService,
)
from conftest import FakeClock


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 9, 0))


@pytest.fixture
def metrics(logger, clock):
    return MetricsCollector(logger, clock=clock)


def fixed_check(name, status):
    async def check():
        return HealthCheck(name=name, status=status)
    return check


class TestMetrics:
    """Test metric history and summaries."""

    def test_summary_percentiles(self, metrics):
        for value in range(1, 101):
            metrics.histogram("latency", value)

        summary = metrics.get_metric_summary("latency")

        assert summary["count"] == 100
        assert summary["sum"] == 5050
        assert summary["avg"] == 50.5
        assert summary["min"] == 1
        assert summary["max"] == 100
        assert summary["p50"] == 51
        assert summary["p95"] == 96
        assert summary["p99"] == 100

    def test_summary_only_covers_window(self, metrics, clock):
        metrics.gauge("queue", 10)
        clock.advance(minutes=10)
        metrics.gauge("queue", 2)

        summary = metrics.get_metric_summary("queue", window_seconds=60)

        assert summary["count"] == 1
        assert summary["max"] == 2

    def test_summary_of_unknown_metric(self, metrics):
        assert metrics.get_metric_summary("nothing") is None

    def test_history_is_bounded(self, metrics):
        for value in range(MAX_METRIC_HISTORY + 50):
            metrics.increment("requests", value)

        history = metrics.get_metrics("requests")

        assert len(history) == MAX_METRIC_HISTORY
        assert history[0].value == 50

    def test_metric_types_and_labels(self, metrics):
        metrics.increment("a", labels={"route": "/x"})
        metrics.gauge("b", 3)
        metrics.histogram("c", 4)

        all_metrics = metrics.get_all_metrics()

        assert all_metrics["a"][0].type == MetricType.COUNTER
        assert all_metrics["a"][0].labels == {"route": "/x"}
        assert all_metrics["b"][0].type == MetricType.GAUGE
        assert all_metrics["c"][0].type == MetricType.HISTOGRAM

    def test_listeners_receive_metrics_and_failures_are_contained(self, metrics):
        received = []

        def broken(metric):
            raise RuntimeError("listener down")

        metrics.on_metric(broken)
        metrics.on_metric(received.append)
        metrics.gauge("b", 1)

        assert [m.name for m in received] == ["b"]

    def test_collect_system_metrics(self, metrics):
        metrics.collect_system_metrics()

        assert metrics.get_metrics("process.memory.rss")[0].value > 0
        assert metrics.get_metrics("system.cpu.count")
        assert metrics.get_metrics("process.uptime")


class TestTracing:
    def test_finished_trace_records_duration(self, metrics, logger):
        tracing = TracingService(metrics, logger)

        trace = tracing.start_trace("sync")
        tracing.add_tag(trace.trace_id, "device_id", "FP-01")
        tracing.add_log(trace.trace_id, "info", "started", attempt=1)
        finished = tracing.finish_trace(trace.trace_id, TraceStatus.ERROR)

        assert finished.duration_ms >= 0
        assert finished.status == TraceStatus.ERROR
        assert finished.tags == {"device_id": "FP-01"}
        assert finished.logs[0].fields == {"attempt": 1}
        assert metrics.get_metrics("trace.count")[0].labels == {"operation": "sync", "status": "error"}
        assert finished.to_dict()["status"] == "error"

    def test_unknown_trace(self, metrics, logger):
        tracing = TracingService(metrics, logger)

        assert tracing.finish_trace("missing") is None
        tracing.add_tag("missing", "k", "v")
        assert tracing.get_trace("missing") is None

    def test_child_span_keeps_parent(self, metrics, logger):
        tracing = TracingService(metrics, logger)
        parent = tracing.start_trace("parent")

        child = tracing.start_trace("child", parent_span_id=parent.span_id)

        assert child.parent_span_id == parent.span_id
        assert len(tracing.get_all_traces()) == 2


class TestHealthChecks:
    """Test check execution and overall status."""

    async def test_slow_check_times_out(self, metrics, logger):
        service = HealthCheckService(metrics, logger, timeout=0.01)

        async def slow():
            await asyncio.sleep(1)
            return HealthCheck(name="slow", status=HealthStatus.HEALTHY)

        service.register("slow", slow)
        results = await service.run_all_checks()

        assert results["slow"].status == HealthStatus.UNHEALTHY
        assert results["slow"].message == "Health check timeout"

    async def test_raising_check_is_unhealthy(self, metrics, logger):
        service = HealthCheckService(metrics, logger)

        async def broken():
            raise RuntimeError("disk gone")

        service.register("disk", broken)
        results = await service.run_all_checks()

        assert results["disk"].status == HealthStatus.UNHEALTHY
        assert results["disk"].message == "disk gone"

    @pytest.mark.parametrize("statuses,expected", [
        ([HealthStatus.HEALTHY, HealthStatus.HEALTHY], HealthStatus.HEALTHY),
        ([HealthStatus.HEALTHY, HealthStatus.DEGRADED], HealthStatus.DEGRADED),
        ([HealthStatus.DEGRADED, HealthStatus.UNHEALTHY], HealthStatus.UNHEALTHY),
    ])
    async def test_overall_status_takes_the_worst(self, metrics, logger, statuses, expected):
        service = HealthCheckService(metrics, logger)
        for i, status in enumerate(statuses):
            service.register(f"check-{i}", fixed_check(f"check-{i}", status))

        await service.run_all_checks()

        assert service.get_overall_health()["status"] == expected

    def test_no_results_is_unhealthy(self, metrics, logger):
        service = HealthCheckService(metrics, logger)

        assert service.get_overall_health()["status"] == HealthStatus.UNHEALTHY

    async def test_run_single_check(self, metrics, logger):
        service = HealthCheckService(metrics, logger)
        service.register("cache", fixed_check("cache", HealthStatus.DEGRADED))

        result = await service.run_check("cache")

        assert result.status == HealthStatus.DEGRADED
        assert result.response_time_ms is not None
        assert await service.run_check("unknown") is None

    async def test_default_checks(self, logger, session_factory):
        observability = ObservabilityService(logger, session_factory=session_factory, memory_limit_mb=100000)

        results = await observability.health_check.run_all_checks()

        assert results["database"].status == HealthStatus.HEALTHY
        assert results["memory"].status == HealthStatus.HEALTHY

    async def test_database_check_without_database(self, logger):
        observability = ObservabilityService(logger, memory_limit_mb=100000)

        results = await observability.health_check.run_all_checks()

        assert results["database"].status == HealthStatus.DEGRADED

    async def test_memory_check_over_limit(self, logger):
        observability = ObservabilityService(logger, memory_limit_mb=1)

        result = await observability.health_check.run_check("memory")

        assert result.status == HealthStatus.UNHEALTHY


class TestInstrument:
    """Test the span + metrics wrapper around an operation."""

    async def test_success(self, logger):
        observability = ObservabilityService(logger)

        async with observability.instrument("query.GetReadModel", model="x") as trace:
            pass

        finished = observability.tracing.get_trace(trace.trace_id)
        assert finished.status == TraceStatus.OK
        assert finished.tags == {"model": "x", "success": True}
        durations = observability.metrics.get_metrics("operation.duration")
        assert durations[0].labels == {"operation": "query.GetReadModel", "status": "success"}

    async def test_error_is_tagged_and_reraised(self, logger):
        observability = ObservabilityService(logger)

        with pytest.raises(RuntimeError, match="boom"):
            async with observability.instrument("command.Fail") as trace:
                raise RuntimeError("boom")

        finished = observability.tracing.get_trace(trace.trace_id)
        assert finished.status == TraceStatus.ERROR
        assert finished.tags["success"] is False
        assert finished.tags["error"] == "boom"
        assert observability.metrics.get_metrics("operation.count")[0].labels["status"] == "error"

    async def test_dashboard_data(self, logger, session_factory):
        observability = ObservabilityService(logger, session_factory=session_factory, memory_limit_mb=100000)
        await observability.health_check.run_all_checks()
        async with observability.instrument("command.RecordAttendance"):
            pass

        dashboard = observability.get_dashboard_data()

        assert dashboard["health"]["status"] == "healthy"
        assert {c["name"] for c in dashboard["health"]["checks"]} == {"database", "memory"}
        assert dashboard["metrics"]["operations"]["count"] == 1
        assert dashboard["traces"][0]["operation_name"] == "command.RecordAttendance"

    async def test_periodic_collection(self, logger):
        observability = ObservabilityService(logger, collection_interval_seconds=3600)

        await observability.start()
        await asyncio.sleep(0)
        assert observability.metrics.get_metrics("process.uptime")

        await observability.shutdown()
        assert observability.metrics.get_all_metrics() == {}
