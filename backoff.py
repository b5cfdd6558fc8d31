# backoff.py – Exponential, capped backoff with jitter for one external dependency
from __future__ import annotations
import random
import threading
from typing import Callable, Optional


class BackoffController:
    """Tracks consecutive failures and derives the next delay and timeout.

    Both ``next_delay(k)`` and ``next_timeout(k)`` follow
    ``min(cap, base * factor ** k)``. With no argument the current failure
    count is used, so a healthy dependency gets ``base`` for both.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        factor: float = 2.0,
        max_delay: float = 60.0,
        base_timeout: float = 30.0,
        max_timeout: float = 120.0,
        jitter: float = 0.1,
        rand: Callable[[], float] = random.random,
    ):
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self.base_timeout = base_timeout
        self.max_timeout = max_timeout
        self.jitter = jitter
        self._rand = rand
        self._failures = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, retry_cfg) -> "BackoffController":
        return cls(
            base_delay=retry_cfg.base_delay_sec,
            factor=retry_cfg.factor,
            max_delay=retry_cfg.cap_sec,
            base_timeout=retry_cfg.base_timeout_sec,
            max_timeout=retry_cfg.timeout_cap_sec,
            jitter=retry_cfg.jitter,
        )

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def next_delay(self, consecutive_failures: Optional[int] = None) -> float:
        k = self._failures if consecutive_failures is None else consecutive_failures
        return min(self.max_delay, self.base_delay * (self.factor ** k))

    def next_timeout(self, consecutive_failures: Optional[int] = None) -> float:
        k = self._failures if consecutive_failures is None else consecutive_failures
        return min(self.max_timeout, self.base_timeout * (self.factor ** k))

    def jittered_delay(self, consecutive_failures: Optional[int] = None) -> float:
        """next_delay() spread by +/- jitter, never negative."""
        delay = self.next_delay(consecutive_failures)
        spread = delay * self.jitter * (self._rand() * 2 - 1)
        return max(0.0, delay + spread)

    def on_success(self):
        with self._lock:
            self._failures = 0

    def on_failure(self) -> int:
        with self._lock:
            self._failures += 1
            return self._failures

    def state(self) -> dict:
        return {
            "consecutive_failures": self._failures,
            "next_delay": round(self.next_delay(), 3),
            "next_timeout": round(self.next_timeout(), 3),
        }
