"""redisq_ingest.py

Push feed: long-polls the zKillboard RedisQ queue and hands each package to
the ingest pipeline on a single consumer thread.

Throughput is summarized once per window (received / relevant / reconciled /
skipped / failed). Only killmails that pass the relevance filter are logged
individually.
"""

from __future__ import annotations
import threading
from typing import Optional

from ingest_errors import IngestCancelled, UpstreamError
from ingest_pipeline import IngestOutcome, IngestPipeline, IngestState
from killmail_models import normalize_killmail
from logging_config import get_logger
from metrics import ThroughputWindow
from zkill_client import ZkillClient

logger = get_logger("redisq_ingest")


class RedisQFeed:
    def __init__(self, client: ZkillClient, pipeline: IngestPipeline, stream_name: str = "killmails",
                 window: Optional[ThroughputWindow] = None,
                 stop_event: Optional[threading.Event] = None,
                 error_pause_sec: float = 5.0):
        self.client = client
        self.pipeline = pipeline
        self.stream_name = stream_name
        self.window = window or ThroughputWindow("redisq")
        self.stop_event = stop_event or threading.Event()
        self.error_pause_sec = error_pause_sec

    def poll_once(self) -> Optional[IngestOutcome]:
        """Wait for one package and push it through the pipeline."""
        try:
            raw = self.client.listen()
        except UpstreamError as e:
            logger.warning("redisq_listen_failed", error=str(e), error_type=e.error_type.value)
            self.window.maybe_flush()
            return None
        if raw is None:
            self.window.maybe_flush()
            return None

        self.window.record("received")
        try:
            event = normalize_killmail(raw)
        except ValueError as e:
            self.window.record("skipped")
            logger.warning("redisq_malformed_package", error=str(e))
            self.window.maybe_flush()
            return None

        outcome = self.pipeline.process(event, stream=self.stream_name)
        self._record(event, outcome)
        self.window.maybe_flush()
        return outcome

    def _record(self, event, outcome: IngestOutcome):
        if outcome.state is IngestState.FILTERED_OUT:
            self.window.record("skipped")
            return
        self.window.record("relevant", event.killmail_id)
        if outcome.stored:
            self.window.record("reconciled", event.killmail_id)
        else:
            self.window.record("failed", event.killmail_id)
        logger.info(
            "relevant_killmail",
            killmail_id=event.killmail_id,
            kill_time=event.kill_time.isoformat() if event.kill_time else None,
            tracked=self.pipeline.relevance_filter.tracked_participants(event),
            state=outcome.state.value,
            enriched=outcome.enriched,
            attempts=outcome.attempts,
            loss=bool(outcome.result and outcome.result.loss_upserted),
        )

    def run(self):
        """Single sequential consumer; returns when stop_event is set."""
        logger.info("redisq_feed_started", queue_id=self.client.queue_id, stream=self.stream_name)
        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except IngestCancelled:
                break
            except Exception as e:
                logger.error("redisq_poll_iteration_failed", error=str(e), exc_info=True)
                self.stop_event.wait(self.error_pause_sec)
        self.window.maybe_flush()
        logger.info("redisq_feed_stopped")

    def start(self) -> threading.Thread:
        t = threading.Thread(target=self.run, name="redisq_feed", daemon=True)
        t.start()
        return t
