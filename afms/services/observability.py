"""
Observability for the AFMS core: metrics, tracing spans and health checks.

Usage:
    observability = ObservabilityService(logger, session_factory=SessionLocal)

    async with observability.instrument("command.RecordAttendance", aggregate_id="emp-1"):
        ...  # span + operation.duration histogram + operation.count counter

    health = await observability.health_check.run_all_checks()
"""
import asyncio
import os
import time
import uuid
from collections import OrderedDict, deque
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from sqlalchemy import text

from afms.core.clock import utcnow
from afms.core.logging import Logger
from afms.models.enums import HealthStatus, MetricType, TraceStatus

MAX_METRIC_HISTORY = 1000
MAX_TRACES = 1000
DEFAULT_SUMMARY_WINDOW_SECONDS = 300
DEFAULT_HEALTH_CHECK_TIMEOUT = 10.0


@dataclass
class Metric:
    name: str
    value: float
    type: MetricType
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class HealthCheck:
    name: str
    status: HealthStatus
    message: Optional[str] = None
    response_time_ms: Optional[float] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class TraceLog:
    timestamp: float
    level: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Trace:
    trace_id: str
    span_id: str
    operation_name: str
    start_time: float
    parent_span_id: Optional[str] = None
    end_time: Optional[float] = None
    duration_ms: Optional[float] = None
    tags: Dict[str, Any] = field(default_factory=dict)
    logs: List[TraceLog] = field(default_factory=list)
    status: TraceStatus = TraceStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def process_rss_bytes() -> int:
    """Resident set size of this process."""
    try:
        with open("/proc/self/statm") as f:
            return int(f.read().split()[1]) * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        # Not Linux: fall back to the peak RSS reported by getrusage (kilobytes)
        import resource
        return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss * 1024


class MetricsCollector:
    """In-memory metric history, bounded per metric name."""

    def __init__(self, logger: Optional[Logger] = None, clock=utcnow):
        self.logger = logger or Logger(__name__)
        self.clock = clock
        self._metrics: Dict[str, Deque[Metric]] = {}
        self._listeners: List[Callable[[Metric], Any]] = []
        self._started = time.monotonic()

    def record(self, name: str, value: float, metric_type: MetricType, labels: Optional[Dict[str, str]] = None) -> Metric:
        metric = Metric(name=name, value=value, type=metric_type, labels=dict(labels or {}), timestamp=self.clock())
        self._metrics.setdefault(name, deque(maxlen=MAX_METRIC_HISTORY)).append(metric)

        for listener in list(self._listeners):
            try:
                listener(metric)
            except Exception:
                self.logger.exception("Metric listener failed", metric=name)

        self.logger.debug("Metric recorded", name=name, value=value, type=metric_type.value, labels=metric.labels)
        return metric

    def increment(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        self.record(name, value, MetricType.COUNTER, labels)

    def gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        self.record(name, value, MetricType.GAUGE, labels)

    def histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        self.record(name, value, MetricType.HISTOGRAM, labels)

    def get_metrics(self, name: str) -> List[Metric]:
        return list(self._metrics.get(name, ()))

    def get_all_metrics(self) -> Dict[str, List[Metric]]:
        return {name: list(history) for name, history in self._metrics.items()}

    def get_metric_summary(self, name: str, window_seconds: float = DEFAULT_SUMMARY_WINDOW_SECONDS) -> Optional[Dict[str, Any]]:
        """Count, sum, avg, min, max and p50/p95/p99 over the recent window; None if empty."""
        cutoff = self.clock() - timedelta(seconds=window_seconds)
        values = sorted(m.value for m in self._metrics.get(name, ()) if m.timestamp >= cutoff)
        if not values:
            return None

        count = len(values)
        total = sum(values)
        return {
            "name": name,
            "count": count,
            "sum": total,
            "avg": total / count,
            "min": values[0],
            "max": values[-1],
            "p50": values[int(count * 0.5)],
            "p95": values[int(count * 0.95)],
            "p99": values[int(count * 0.99)],
            "window_seconds": window_seconds,
        }

    def on_metric(self, listener: Callable[[Metric], Any]) -> None:
        self._listeners.append(listener)

    def collect_system_metrics(self) -> None:
        try:
            if hasattr(os, "getloadavg"):
                load_1m, load_5m, load_15m = os.getloadavg()
                self.gauge("system.load.1m", load_1m)
                self.gauge("system.load.5m", load_5m)
                self.gauge("system.load.15m", load_15m)
            self.gauge("system.cpu.count", os.cpu_count() or 0)
            self.gauge("process.memory.rss", process_rss_bytes(), {"unit": "bytes"})
            self.gauge("process.uptime", time.monotonic() - self._started, {"unit": "seconds"})
        except Exception:
            self.logger.exception("Failed to collect system metrics")

    def clear(self) -> None:
        self._metrics.clear()
        self._listeners.clear()


class TracingService:
    """Keeps the most recent spans in memory and reports their durations as metrics."""

    def __init__(self, metrics: MetricsCollector, logger: Optional[Logger] = None):
        self.metrics = metrics
        self.logger = logger or Logger(__name__)
        self._traces: "OrderedDict[str, Trace]" = OrderedDict()

    def start_trace(self, operation_name: str, parent_span_id: Optional[str] = None) -> Trace:
        trace = Trace(
            trace_id=uuid.uuid4().hex,
            span_id=uuid.uuid4().hex[:16],
            parent_span_id=parent_span_id,
            operation_name=operation_name,
            start_time=time.perf_counter(),
        )
        self._traces[trace.trace_id] = trace
        self.logger.debug("Trace started", trace_id=trace.trace_id, operation_name=operation_name)
        return trace

    def finish_trace(self, trace_id: str, status: TraceStatus = TraceStatus.OK) -> Optional[Trace]:
        trace = self._traces.get(trace_id)
        if trace is None:
            self.logger.warning("Trace not found", trace_id=trace_id)
            return None

        trace.end_time = time.perf_counter()
        trace.duration_ms = (trace.end_time - trace.start_time) * 1000
        trace.status = status

        labels = {"operation": trace.operation_name, "status": status.value}
        self.metrics.histogram("trace.duration", trace.duration_ms, labels)
        self.metrics.increment("trace.count", 1, labels)

        self.logger.info(
            "Trace finished",
            trace_id=trace_id,
            operation_name=trace.operation_name,
            duration_ms=round(trace.duration_ms, 3),
            status=status.value,
        )

        while len(self._traces) > MAX_TRACES:
            self._traces.popitem(last=False)
        return trace

    def add_tag(self, trace_id: str, key: str, value: Any) -> None:
        trace = self._traces.get(trace_id)
        if trace is not None:
            trace.tags[key] = value

    def add_log(self, trace_id: str, level: str, message: str, **fields: Any) -> None:
        trace = self._traces.get(trace_id)
        if trace is not None:
            trace.logs.append(TraceLog(timestamp=time.perf_counter(), level=level, message=message, fields=fields))

    def get_trace(self, trace_id: str) -> Optional[Trace]:
        return self._traces.get(trace_id)

    def get_all_traces(self) -> List[Trace]:
        return list(self._traces.values())


HealthCheckFn = Callable[[], Awaitable[HealthCheck]]


class HealthCheckService:
    def __init__(self, metrics: MetricsCollector, logger: Optional[Logger] = None, timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT):
        self.metrics = metrics
        self.logger = logger or Logger(__name__)
        self.timeout = timeout
        self._checks: Dict[str, HealthCheckFn] = {}
        self._last_results: Dict[str, HealthCheck] = {}

    def register(self, name: str, check: HealthCheckFn) -> None:
        self._checks[name] = check
        self.logger.info(f"Health check registered: {name}")

    async def run_all_checks(self) -> Dict[str, HealthCheck]:
        """Run every check in turn, each bounded by the timeout."""
        results: Dict[str, HealthCheck] = {}
        for name, check in list(self._checks.items()):
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(check(), timeout=self.timeout)
            except asyncio.TimeoutError:
                result = self._failed(name, "Health check timeout")
            except Exception as e:
                self.logger.exception("Health check failed", check_name=name)
                result = self._failed(name, str(e))
            else:
                result.response_time_ms = (time.perf_counter() - started) * 1000
                result.timestamp = utcnow()
                self.metrics.histogram("health_check.response_time", result.response_time_ms, {"check": name})

            self.metrics.gauge("health_check.status", 1 if result.status == HealthStatus.HEALTHY else 0, {"check": name})
            results[name] = result
            self._last_results[name] = result
        return results

    async def run_check(self, name: str) -> Optional[HealthCheck]:
        """Run one check without the timeout; None for an unknown name."""
        check = self._checks.get(name)
        if check is None:
            return None

        started = time.perf_counter()
        try:
            result = await check()
            result.response_time_ms = (time.perf_counter() - started) * 1000
            result.timestamp = utcnow()
        except Exception as e:
            result = self._failed(name, str(e))
        self._last_results[name] = result
        return result

    def get_overall_health(self) -> Dict[str, Any]:
        checks = list(self._last_results.values())
        if not checks:
            return {"status": HealthStatus.UNHEALTHY, "checks": []}

        statuses = {c.status for c in checks}
        if HealthStatus.UNHEALTHY in statuses:
            overall = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY
        return {"status": overall, "checks": checks}

    def get_last_results(self) -> Dict[str, HealthCheck]:
        return dict(self._last_results)

    @staticmethod
    def _failed(name: str, message: str) -> HealthCheck:
        return HealthCheck(name=name, status=HealthStatus.UNHEALTHY, message=message)


class ObservabilityService:
    """Facade over metrics, tracing and health checks, with the default checks registered."""

    def __init__(
        self,
        logger: Optional[Logger] = None,
        session_factory=None,
        memory_limit_mb: int = 1024,
        health_check_timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT,
        collection_interval_seconds: float = 0,
    ):
        self.logger = logger or Logger(__name__)
        self.session_factory = session_factory
        self.memory_limit_mb = memory_limit_mb
        self.collection_interval_seconds = collection_interval_seconds
        self.metrics = MetricsCollector(self.logger)
        self.tracing = TracingService(self.metrics, self.logger)
        self.health_check = HealthCheckService(self.metrics, self.logger, timeout=health_check_timeout)
        self._collection_task: Optional[asyncio.Task] = None

        self.health_check.register("database", self._check_database)
        self.health_check.register("memory", self._check_memory)

    async def _check_database(self) -> HealthCheck:
        if self.session_factory is None:
            return HealthCheck(name="database", status=HealthStatus.DEGRADED, message="No database configured")
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            return HealthCheck(name="database", status=HealthStatus.UNHEALTHY, message=f"Database connection failed: {e}")
        return HealthCheck(name="database", status=HealthStatus.HEALTHY, message="Database connection is healthy")

    async def _check_memory(self) -> HealthCheck:
        used_mb = process_rss_bytes() / 1024 / 1024
        usage_percent = used_mb / self.memory_limit_mb * 100

        if usage_percent < 70:
            status, message = HealthStatus.HEALTHY, f"Memory usage is normal: {usage_percent:.1f}%"
        elif usage_percent < 90:
            status, message = HealthStatus.DEGRADED, f"Memory usage is high: {usage_percent:.1f}%"
        else:
            status, message = HealthStatus.UNHEALTHY, f"Memory usage is critical: {usage_percent:.1f}%"
        return HealthCheck(name="memory", status=status, message=message)

    @asynccontextmanager
    async def instrument(self, operation: str, **tags: Any):
        """
        Wrap a block in a span and record operation.duration / operation.count.

        Exceptions are tagged on the span and re-raised.
        """
        trace = self.tracing.start_trace(operation)
        for key, value in tags.items():
            self.tracing.add_tag(trace.trace_id, key, value)
        started = time.perf_counter()

        try:
            yield trace
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            self.tracing.add_tag(trace.trace_id, "success", False)
            self.tracing.add_tag(trace.trace_id, "error", str(e))
            self.tracing.add_log(trace.trace_id, "error", str(e))
            self.tracing.finish_trace(trace.trace_id, TraceStatus.ERROR)
            self._record_operation(operation, duration_ms, "error")
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        self.tracing.add_tag(trace.trace_id, "success", True)
        self.tracing.finish_trace(trace.trace_id, TraceStatus.OK)
        self._record_operation(operation, duration_ms, "success")

    def _record_operation(self, operation: str, duration_ms: float, status: str) -> None:
        labels = {"operation": operation, "status": status}
        self.metrics.histogram("operation.duration", duration_ms, labels)
        self.metrics.increment("operation.count", 1, labels)

    def get_dashboard_data(self) -> Dict[str, Any]:
        overall = self.health_check.get_overall_health()
        now = time.perf_counter()
        recent_traces = sorted(
            (t for t in self.tracing.get_all_traces()
             if t.end_time is not None and now - t.end_time < DEFAULT_SUMMARY_WINDOW_SECONDS),
            key=lambda t: t.end_time,
            reverse=True,
        )[:10]

        return {
            "health": {
                "status": overall["status"].value,
                "checks": [c.to_dict() for c in overall["checks"]],
            },
            "metrics": {
                "load": self.metrics.get_metric_summary("system.load.1m"),
                "memory": self.metrics.get_metric_summary("process.memory.rss"),
                "uptime": self.metrics.get_metric_summary("process.uptime"),
                "operations": self.metrics.get_metric_summary("operation.duration"),
            },
            "traces": [t.to_dict() for t in recent_traces],
            "timestamp": utcnow(),
        }

    async def start(self) -> None:
        """Start periodic system metric collection when an interval is configured."""
        if self.collection_interval_seconds > 0 and self._collection_task is None:
            self._collection_task = asyncio.create_task(self._collect_periodically())

    async def _collect_periodically(self) -> None:
        while True:
            self.metrics.collect_system_metrics()
            await asyncio.sleep(self.collection_interval_seconds)

    async def shutdown(self) -> None:
        if self._collection_task is not None:
            self._collection_task.cancel()
            try:
                await self._collection_task
            except asyncio.CancelledError:
                pass
            self._collection_task = None
        self.metrics.clear()
