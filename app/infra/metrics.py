# app/infra/metrics.py
"""
In-process counters and latency windows for the dispatch service.

Everything here is read back through the admin ``/metrics`` endpoint. Keys
are rendered as ``name{label=value,...}`` with labels sorted, so the same
label set always lands on the same series.
"""
from __future__ import annotations
import time
from collections import Counter, deque
from contextlib import contextmanager
from threading import Lock
from typing import Deque, Dict, Iterator


# Samples kept per latency series; older ones fall off the left.
SAMPLE_WINDOW = 5000


def series_key(name: str, labels: dict | None = None) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{key}={value}" for key, value in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


def summarize(samples) -> dict:
    """count/min/max/avg plus nearest-rank p95 and p99"""
    ordered = sorted(samples)
    if not ordered:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}
    n = len(ordered)
    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "p95": ordered[min(int(n * 0.95), n - 1)],
        "p99": ordered[min(int(n * 0.99), n - 1)],
    }


class MetricsCollector:
    """Thread-safe store of counter series and bounded sample windows."""

    def __init__(self, window: int = SAMPLE_WINDOW):
        self._window = window
        self._counts: Counter = Counter()
        self._samples: Dict[str, Deque[float]] = {}
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        with self._lock:
            self._counts[series_key(name, labels)] += amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = series_key(name, labels)
        with self._lock:
            window = self._samples.get(key)
            if window is None:
                window = self._samples[key] = deque(maxlen=self._window)
            window.append(value)

    def get_counter(self, name: str, **labels) -> int:
        with self._lock:
            return self._counts.get(series_key(name, labels), 0)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counts)
            windows = {key: list(values) for key, values in self._samples.items()}
        return {
            "counters": counters,
            "histograms": {key: summarize(values) for key, values in windows.items()},
        }


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


@contextmanager
def timed(metric_name: str, **labels) -> Iterator[None]:
    """Record the wall time of the ``with`` body, in seconds, even if it raises."""
    started = time.perf_counter()
    try:
        yield
    finally:
        observe_histogram(metric_name, time.perf_counter() - started, **labels)


class DispatchMetrics:
    """Named counters for the job lifecycle, so call sites never spell series names."""

    @staticmethod
    def job_created(source: str) -> None:
        inc_counter("jobs_created_total", source=source)

    @staticmethod
    def status_changed(to_status: str) -> None:
        inc_counter("job_transitions_total", to=to_status)

    @staticmethod
    def transition_rejected(reason: str) -> None:
        inc_counter("job_transitions_rejected_total", reason=reason)

    @staticmethod
    def stale_write(operation: str) -> None:
        inc_counter("stale_writes_total", operation=operation)

    @staticmethod
    def bid_submitted(outcome: str) -> None:
        inc_counter("bid_submissions_total", outcome=outcome)

    @staticmethod
    def bid_selected(outcome: str) -> None:
        inc_counter("bid_selections_total", outcome=outcome)

    @staticmethod
    def job_completed(flagged: bool) -> None:
        inc_counter("jobs_completed_total", flagged=str(flagged).lower())

    @staticmethod
    def database_error(operation: str, transient: bool) -> None:
        inc_counter("database_errors_total", operation=operation, transient=str(transient).lower())

    @staticmethod
    def track_dashboard_build():
        return timed("dashboard_build_seconds")
