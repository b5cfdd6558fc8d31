# metrics.py – Ingest counters, timings and per-window throughput
from __future__ import annotations
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, Optional
from functools import wraps

from logging_config import get_metrics_logger

class MetricsCollector:
    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.timers: Dict[str, list] = defaultdict(list)
        self.gauges: Dict[str, float] = {}

    def increment(self, name: str, value: int = 1):
        self.counters[name] += value

    def timing(self, name: str, duration_ms: float):
        self.timers[name].append(duration_ms)

    def gauge(self, name: str, value: float):
        self.gauges[name] = value

    def timer(self, name: str) -> Callable:
        def decorator(func: Callable) -> Callable:
            @wraps(func)
            def wrapper(*args, **kwargs):
                start = time.perf_counter()
                try:
                    return func(*args, **kwargs)
                finally:
                    self.timing(name, (time.perf_counter() - start) * 1000)
            return wrapper
        return decorator

    def summary(self) -> dict:
        """Get summary of all collected metrics"""
        return {
            "counters": dict(self.counters),
            "timers": {k: {
                "count": len(v),
                "avg_ms": sum(v) / len(v) if v else 0,
                "max_ms": max(v) if v else 0
            } for k, v in self.timers.items()},
            "gauges": dict(self.gauges)
        }

# Global metrics instance
METRICS = MetricsCollector()

WINDOW_FIELDS = ("received", "relevant", "reconciled", "skipped", "failed")

class ThroughputWindow:
    """Counts feed events per fixed time window and logs one summary per window.

    Individual events are never logged here; callers log relevant events
    themselves at higher detail.
    """

    def __init__(self, feed: str, window_sec: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 collector: MetricsCollector = METRICS):
        self.feed = feed
        self.window_sec = window_sec
        self._clock = clock
        self._collector = collector
        self._metrics = get_metrics_logger(f"{feed}_throughput")
        self._lock = threading.Lock()
        self._counts = dict.fromkeys(WINDOW_FIELDS, 0)
        self._window_start = clock()
        self.last_event_id: Optional[int] = None

    def record(self, field: str, killmail_id: Optional[int] = None):
        if field not in self._counts:
            raise ValueError(f"unknown throughput field: {field}")
        with self._lock:
            self._counts[field] += 1
            if killmail_id is not None:
                self.last_event_id = killmail_id
        self._collector.increment(f"{self.feed}.{field}")

    def maybe_flush(self) -> Optional[dict]:
        """Emit the summary if the window has elapsed. Returns the flushed counts."""
        now = self._clock()
        with self._lock:
            elapsed = now - self._window_start
            if elapsed < self.window_sec:
                return None
            counts = self._counts
            self._counts = dict.fromkeys(WINDOW_FIELDS, 0)
            self._window_start = now
        self._metrics.feed_window(self.feed, round(elapsed, 1),
                                  last_event_id=self.last_event_id, **counts)
        return counts
