# ingest_pipeline.py – Per-killmail state machine shared by every feed
#
#   RECEIVED -> FILTERED_OUT
#            -> [NEEDS_ENRICHMENT -> ENRICHED] -> RECONCILED -> CHECKPOINTED
#   any stage -> FAILED (logged, dropped, checkpoint untouched)
from __future__ import annotations
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from backoff import BackoffController
from ingest_errors import IngestCancelled, ReconcileError
from killmail_models import CombatEvent
from kill_repository import ReconcileResult
from logging_config import get_logger
from metrics import METRICS

logger = get_logger("ingest_pipeline")


class IngestState(Enum):
    RECEIVED = "received"
    FILTERED_OUT = "filtered_out"
    NEEDS_ENRICHMENT = "needs_enrichment"
    ENRICHED = "enriched"
    RECONCILED = "reconciled"
    CHECKPOINTED = "checkpointed"
    FAILED = "failed"


@dataclass
class IngestOutcome:
    killmail_id: int
    state: IngestState = IngestState.RECEIVED
    attempts: int = 0
    enriched: bool = False
    result: Optional[ReconcileResult] = None
    error: Optional[str] = None

    @property
    def relevant(self) -> bool:
        return self.state is not IngestState.FILTERED_OUT

    @property
    def stored(self) -> bool:
        return self.state in (IngestState.RECONCILED, IngestState.CHECKPOINTED)


class IngestPipeline:
    """Filter -> enrich -> reconcile -> checkpoint for one event at a time.

    All collaborators are injected. ``sleep`` is only used between reconcile
    attempts; the default waits on ``stop_event`` so shutdown interrupts it.
    """

    def __init__(
        self,
        relevance_filter,
        enricher,
        reconciler,
        checkpoints,
        max_attempts: int = 3,
        retry_base_sec: float = 1.0,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.relevance_filter = relevance_filter
        self.enricher = enricher
        self.reconciler = reconciler
        self.checkpoints = checkpoints
        self.max_attempts = max_attempts
        self.retry_base_sec = retry_base_sec
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep
        self._high_water: Dict[str, int] = {}

    def _pause(self, seconds: float):
        if self._sleep is not None:
            self._sleep(seconds)
        elif self.stop_event.wait(seconds):
            raise IngestCancelled("cancelled between reconcile attempts")
        if self.stop_event.is_set():
            raise IngestCancelled("cancelled between reconcile attempts")

    def prime_checkpoint(self, stream: str, last_seen_id: Optional[int]):
        """Seed the in-memory high-water mark (e.g. from CheckpointStore.load)."""
        if last_seen_id is not None:
            self._high_water[stream] = max(self._high_water.get(stream, 0), last_seen_id)

    def high_water(self, stream: str) -> Optional[int]:
        return self._high_water.get(stream)

    def process(self, event: CombatEvent, stream: Optional[str] = None,
                assume_relevant: bool = False) -> IngestOutcome:
        outcome = IngestOutcome(killmail_id=event.killmail_id)
        log = logger.bind(killmail_id=event.killmail_id, stream=stream)

        if not assume_relevant and not self.relevance_filter.is_relevant(event):
            outcome.state = IngestState.FILTERED_OUT
            METRICS.increment("ingest.filtered_out")
            return outcome

        if self.enricher.needs_enrichment(event):
            outcome.state = IngestState.NEEDS_ENRICHMENT
            event = self.enricher.enrich(event)
            outcome.enriched = event.fully_populated
            outcome.state = IngestState.ENRICHED

        if event.kill_time is None:
            outcome.state = IngestState.FAILED
            outcome.error = "missing kill_time after enrichment"
            METRICS.increment("ingest.unreconcilable")
            log.warning("killmail_unreconcilable", reason=outcome.error)
            return outcome

        if not self._reconcile_with_retry(event, outcome, log):
            return outcome

        if stream is not None:
            self._advance_checkpoint(stream, event, outcome, log)
        return outcome

    def _reconcile_with_retry(self, event: CombatEvent, outcome: IngestOutcome, log) -> bool:
        backoff = BackoffController(base_delay=self.retry_base_sec, factor=2.0,
                                    max_delay=60.0, jitter=0.0)
        while True:
            outcome.attempts += 1
            try:
                outcome.result = self.reconciler.reconcile(event)
                outcome.state = IngestState.RECONCILED
                METRICS.increment("ingest.reconciled")
                return True
            except ReconcileError as e:
                outcome.error = str(e.cause)
                if outcome.attempts >= self.max_attempts:
                    outcome.state = IngestState.FAILED
                    METRICS.increment("ingest.dropped")
                    log.error("killmail_dropped", attempts=outcome.attempts, error=outcome.error)
                    return False
                delay = backoff.next_delay(backoff.on_failure())
                log.warning("reconcile_retry", attempt=outcome.attempts,
                            max_attempts=self.max_attempts, delay_sec=delay, error=outcome.error)
                self._pause(delay)

    def _advance_checkpoint(self, stream: str, event: CombatEvent, outcome: IngestOutcome, log):
        known = self._high_water.get(stream)
        if known is not None and event.killmail_id <= known:
            return
        try:
            moved = self.checkpoints.advance(stream, event.killmail_id, event.kill_time)
        except Exception as e:
            # Reconciled but not checkpointed: the next newer event moves it.
            METRICS.increment("ingest.checkpoint_failed")
            log.error("checkpoint_advance_failed", error=str(e))
            return
        if moved:
            self._high_water[stream] = event.killmail_id
            outcome.state = IngestState.CHECKPOINTED
