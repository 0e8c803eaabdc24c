# vamo/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from dataclasses import dataclass, field
from vamo.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Counter:
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Distribution of observed values (chunk latency, fan-out size)"""
    values: list[float] = field(default_factory=list)

    def observe(self, value: float) -> None:
        self.values.append(value)

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}

        ordered = sorted(self.values)
        count = len(ordered)
        return {
            "count": count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / count,
            "p95": ordered[min(int(count * 0.95), count - 1)],
        }


class MetricsCollector:
    """
    In-process metrics for the dispatch engine.
    Counters and histograms are keyed by name plus sorted labels.
    """

    def __init__(self):
        self._counters: dict[str, Counter] = defaultdict(Counter)
        self._histograms: dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {"counters": counters, "histograms": histograms}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager that records elapsed seconds into a histogram"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            observe_histogram(self.metric_name, time.monotonic() - self.start_time, **self.labels)


class DispatchMetrics:
    """Dispatch-level metric names in one place"""

    @staticmethod
    def dispatch_completed(category: str, sent: int, eligible: int) -> None:
        inc_counter("dispatch_completed_total", category=category)
        inc_counter("dispatch_tickets_total", sent, category=category)
        observe_histogram("dispatch_eligible_recipients", eligible, category=category)

    @staticmethod
    def recipients_lost(category: str, loss: str, count: int) -> None:
        if count:
            inc_counter("dispatch_recipients_lost_total", count, category=category, loss=loss)

    @staticmethod
    def chunk_failed(reason: str) -> None:
        inc_counter("dispatch_chunk_failures_total", reason=reason)

    @staticmethod
    def receipts_checked(delivered: int, failed: int, pending: int) -> None:
        inc_counter("receipts_delivered_total", delivered)
        inc_counter("receipts_failed_total", failed)
        inc_counter("receipts_pending_total", pending)

    @staticmethod
    def track_chunk_latency(operation: str) -> Timer:
        return Timer("gateway_chunk_seconds", operation=operation)
