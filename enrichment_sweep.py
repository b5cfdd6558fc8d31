# enrichment_sweep.py – Periodically re-enrich killmails stored without ESI detail
from __future__ import annotations
import threading
from typing import Dict, Optional

from ingest_errors import IngestCancelled
from ingest_pipeline import IngestPipeline
from logging_config import get_logger

logger = get_logger("enrichment_sweep")


class EnrichmentSweep:
    """Retries enrichment for ``fully_populated = false`` killmails.

    Runs outside any stream, so it never moves a checkpoint. Each failed
    lookup is recorded against the row, which moves it behind untried rows
    and drops it from the sweep after ``max_attempts`` failures.
    """

    def __init__(self, store, pipeline: IngestPipeline, interval_sec: float = 900.0,
                 batch_size: int = 50, max_attempts: int = 5,
                 stop_event: Optional[threading.Event] = None):
        self.store = store
        self.pipeline = pipeline
        self.interval_sec = interval_sec
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.stop_event = stop_event or threading.Event()

    def run_batch(self, limit: Optional[int] = None) -> Dict[str, int]:
        limit = limit or self.batch_size
        result = {"processed": 0, "enriched": 0, "failed": 0}
        for event in self.store.partial_killmails(limit, self.max_attempts):
            if self.stop_event.is_set():
                break
            result["processed"] += 1
            enriched = self.pipeline.enricher.enrich(event)
            if not enriched.fully_populated:
                # Leave the stored partial row as it is; the stub carries no participants.
                self._record_failure(event)
                result["failed"] += 1
                continue
            outcome = self.pipeline.process(enriched, stream=None, assume_relevant=True)
            if outcome.stored:
                result["enriched"] += 1
            else:
                self._record_failure(event)
                result["failed"] += 1
        if result["processed"]:
            logger.info("enrichment_sweep_complete", **result)
        else:
            logger.debug("enrichment_sweep_idle")
        return result

    def _record_failure(self, event):
        try:
            self.store.record_enrich_failure(event.killmail_id)
        except Exception as e:
            logger.error("enrich_attempt_record_failed", killmail_id=event.killmail_id,
                         error=str(e))

    def run(self):
        logger.info("enrichment_sweep_started", interval_sec=self.interval_sec,
                    batch_size=self.batch_size)
        while not self.stop_event.wait(self.interval_sec):
            try:
                self.run_batch()
            except IngestCancelled:
                break
            except Exception as e:
                logger.error("enrichment_sweep_failed", error=str(e), exc_info=True)
        logger.info("enrichment_sweep_stopped")

    def start(self) -> threading.Thread:
        t = threading.Thread(target=self.run, name="enrichment_sweep", daemon=True)
        t.start()
        return t
