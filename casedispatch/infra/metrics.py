# casedispatch/infra/metrics.py
"""
In-process dispatch metrics, served as JSON by ``GET /metrics``.

Keys are ``name`` or ``name{label=value,...}`` with labels sorted, so
``get_counter("auto_assign_total", outcome="assigned")`` reads
``auto_assign_total{outcome=assigned}``.
"""
from __future__ import annotations
import time
from collections import deque
from threading import Lock
from casedispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# Samples kept per histogram; older ones fall off
HISTOGRAM_WINDOW = 1000


class Histogram:
    """Rolling window of observations (matching durations, request latency)."""

    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self.count = 0
        self.samples: deque[float] = deque(maxlen=window)

    def observe(self, value: float) -> None:
        self.count += 1
        self.samples.append(value)

    def summary(self) -> dict:
        if not self.samples:
            return {"count": self.count, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}

        ordered = sorted(self.samples)
        n = len(ordered)

        def pct(p: float) -> float:
            return ordered[min(int(n * p), n - 1)]

        return {
            "count": self.count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / n,
            "p50": pct(0.50),
            "p95": pct(0.95),
        }


class MetricsCollector:

    def __init__(self):
        self._counters: dict[str, int] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms.setdefault(key, Histogram()).observe(value)

    def get_counter(self, name: str, **labels) -> int:
        with self._lock:
            return self._counters.get(self._make_key(name, labels or None), 0)

    def counters_named(self, name: str) -> dict[str, int]:
        """All label variants of one counter."""
        prefix = name + "{"
        with self._lock:
            return {k: v for k, v in self._counters.items() if k == name or k.startswith(prefix)}

    def get_metrics(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {k: h.summary() for k, h in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.debug("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Observe the wall time of a ``with`` block, even when it raises."""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.elapsed: float | None = None
        self._start = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = time.perf_counter() - self._start
        observe_histogram(self.metric_name, self.elapsed, **self.labels)


class AppMetrics:
    """Named dispatch metrics, so call sites never spell out keys."""

    @staticmethod
    def case_created(assignment_type: str) -> None:
        inc_counter("cases_created_total", assignment_type=assignment_type)

    @staticmethod
    def case_accepted(auto_assigned: bool) -> None:
        inc_counter("cases_accepted_total", auto=str(auto_assigned).lower())

    @staticmethod
    def accept_conflict() -> None:
        inc_counter("case_accept_conflicts_total")

    @staticmethod
    def case_declined(returned_to_queue: bool) -> None:
        inc_counter("cases_declined_total", requeued=str(returned_to_queue).lower())

    @staticmethod
    def case_completed() -> None:
        inc_counter("cases_completed_total")

    @staticmethod
    def auto_assign(outcome: str) -> None:
        inc_counter("auto_assign_total", outcome=outcome)

    @staticmethod
    def notification_failed(notification_type: str) -> None:
        inc_counter("notifications_failed_total", type=notification_type)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def db_retry() -> None:
        inc_counter("db_connect_retries_total")

    @staticmethod
    def http_request(method: str, status_code: int, duration: float) -> None:
        inc_counter("http_requests_total", method=method, status=status_code // 100 * 100)
        observe_histogram("http_request_duration_seconds", duration, method=method)

    @staticmethod
    def track_matching_time() -> Timer:
        return Timer("matching_duration_seconds")
