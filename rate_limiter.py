# rate_limiter.py – Paced, backoff-aware HTTP client for one upstream dependency
from __future__ import annotations
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

from backoff import BackoffController
from ingest_errors import (
    IngestCancelled,
    RetryErrorType,
    UpstreamClientError,
    UpstreamError,
    UpstreamUnavailable,
)
from logging_config import get_logger
from metrics import METRICS

logger = get_logger("rate_limiter")


def classify_status(status_code: int) -> RetryErrorType:
    """Map an HTTP error status onto the retry taxonomy."""
    if status_code == 429:
        return RetryErrorType.RATE_LIMIT
    if status_code >= 500:
        return RetryErrorType.SERVER_ERROR
    return RetryErrorType.CLIENT_ERROR


def classify_exception(exc: Exception) -> RetryErrorType:
    if isinstance(exc, requests.exceptions.Timeout):
        return RetryErrorType.TIMEOUT
    return RetryErrorType.TRANSIENT_NETWORK


def _retry_after_seconds(resp: requests.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After") if resp is not None else None
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class RateLimitedClient:
    """Serializes calls to one dependency through a minimum inter-request delay.

    After a retryable failure the next attempt also waits the backoff
    delay, counted from the moment the failure was observed. Transient
    failures (network, timeout, 429, 5xx) are retried up to ``max_retries``
    times; other 4xx responses raise immediately.
    Setting ``stop_event`` aborts any wait and leaves the failure counter
    untouched.
    """

    def __init__(
        self,
        name: str,
        min_interval: float,
        backoff: Optional[BackoffController] = None,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.name = name
        self.min_interval = min_interval
        self.backoff = backoff or BackoffController()
        self.max_retries = max_retries
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(headers)
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._not_before: Optional[float] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # waiting
    # ------------------------------------------------------------------

    def _pause(self, seconds: float):
        if seconds <= 0:
            return
        if self._sleep is None:
            if self.stop_event.wait(seconds):
                raise IngestCancelled(f"{self.name}: cancelled while waiting")
        else:
            self._sleep(seconds)
        if self.stop_event.is_set():
            raise IngestCancelled(f"{self.name}: cancelled while waiting")

    def _wait_turn(self):
        if self.stop_event.is_set():
            raise IngestCancelled(f"{self.name}: cancelled before request")
        now = self._clock()
        waits = [0.0]
        if self._last_call is not None:
            waits.append(self.min_interval - (now - self._last_call))
        if self._not_before is not None:
            waits.append(self._not_before - now)
            self._not_before = None
        self._pause(max(waits))

    # ------------------------------------------------------------------
    # calls
    # ------------------------------------------------------------------

    def call(self, method: str, url: str, **kwargs) -> requests.Response:
        with self._lock:
            attempt = 0
            while True:
                attempt += 1
                self._wait_turn()
                self._last_call = self._clock()
                status_code = None
                error: Optional[Exception] = None
                try:
                    resp = self.session.request(
                        method, url, timeout=self.backoff.next_timeout(), **kwargs
                    )
                except requests.exceptions.RequestException as e:
                    error = e
                    error_type = classify_exception(e)
                else:
                    if resp.status_code < 400:
                        self.backoff.on_success()
                        METRICS.increment(f"http.{self.name}.ok")
                        return resp
                    status_code = resp.status_code
                    error_type = classify_status(status_code)
                    retry_after = _retry_after_seconds(resp)
                    if retry_after is not None:
                        self._not_before = self._clock() + retry_after

                if self.stop_event.is_set():
                    raise IngestCancelled(f"{self.name}: cancelled during request")

                METRICS.increment(f"http.{self.name}.{error_type.value}")
                if not error_type.retryable:
                    logger.warning(
                        "upstream_client_error",
                        client=self.name,
                        url=url,
                        status_code=status_code,
                        attempt=attempt,
                        **self.backoff.state(),
                    )
                    raise UpstreamClientError(
                        f"{self.name}: HTTP {status_code} for {url}",
                        error_type, status_code=status_code, attempts=attempt,
                    )

                self.backoff.on_failure()
                # counted from the failure, not from the request start
                backoff_until = self._clock() + self.backoff.jittered_delay()
                self._not_before = max(self._not_before or 0.0, backoff_until)
                log = logger.warning if error_type is RetryErrorType.RATE_LIMIT else logger.info
                log(
                    "upstream_call_failed",
                    client=self.name,
                    url=url,
                    error_type=error_type.value,
                    status_code=status_code,
                    error=str(error) if error else None,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    **self.backoff.state(),
                )
                if attempt > self.max_retries:
                    logger.error(
                        "upstream_retries_exhausted",
                        client=self.name,
                        url=url,
                        error_type=error_type.value,
                        attempts=attempt,
                    )
                    raise UpstreamUnavailable(
                        f"{self.name}: {error_type.value} after {attempt} attempts for {url}",
                        error_type, status_code=status_code, attempts=attempt,
                    )

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = self.call("GET", url, params=params)
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(
                f"{self.name}: invalid JSON from {url}: {e}",
                RetryErrorType.SERVER_ERROR, status_code=resp.status_code,
            )
