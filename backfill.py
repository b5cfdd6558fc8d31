# backfill.py – Paginated history backfill for tracked characters
from __future__ import annotations
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ingest_errors import IngestCancelled, UpstreamError
from ingest_pipeline import IngestPipeline, IngestState
from killmail_models import normalize_killmail
from logging_config import get_logger
from zkill_client import KILLS, LOSSES, ZkillClient

logger = get_logger("backfill")


def backfill_stream(entity_id: int) -> str:
    """Backfill progress is kept apart from the live stream's checkpoint."""
    return f"backfill:{entity_id}"


@dataclass
class BackfillReport:
    entity_id: int
    pages: Dict[str, int] = field(default_factory=lambda: {KILLS: 0, LOSSES: 0})
    events: int = 0
    reconciled: int = 0
    filtered: int = 0
    skipped: int = 0
    malformed: int = 0
    skipped_ids: List[int] = field(default_factory=list)


class BackfillOrchestrator:
    """Walks zKillboard history pages (newest first) for one character.

    A fixed delay separates pages on top of the HTTP client's own pacing.
    Stops a listing on an empty page, a failed page fetch, or the page cap.
    Events that still fail after the pipeline's bounded retries are skipped.
    """

    def __init__(
        self,
        client: ZkillClient,
        pipeline: IngestPipeline,
        registry,
        page_delay_sec: float = 1.0,
        default_max_pages: int = 5,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.client = client
        self.pipeline = pipeline
        self.registry = registry
        self.page_delay_sec = page_delay_sec
        self.default_max_pages = default_max_pages
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep

    def _pause(self, seconds: float):
        if self._sleep is not None:
            self._sleep(seconds)
        elif self.stop_event.wait(seconds):
            raise IngestCancelled("backfill cancelled")
        if self.stop_event.is_set():
            raise IngestCancelled("backfill cancelled")

    def backfill(self, entity_id: int, max_pages: Optional[int] = None) -> BackfillReport:
        max_pages = max_pages or self.default_max_pages
        report = BackfillReport(entity_id=entity_id)
        if not self.registry.contains(entity_id):
            logger.warning("backfill_entity_not_tracked", entity_id=entity_id)
            return report

        logger.info("backfill_started", entity_id=entity_id, max_pages=max_pages)
        for listing in (KILLS, LOSSES):
            self._backfill_listing(entity_id, listing, max_pages, report)

        logger.info("backfill_complete", entity_id=entity_id, pages=report.pages,
                    events=report.events, reconciled=report.reconciled,
                    filtered=report.filtered, skipped=report.skipped)
        return report

    def _backfill_listing(self, entity_id: int, listing: str, max_pages: int, report: BackfillReport):
        stream = backfill_stream(entity_id)
        for page in range(1, max_pages + 1):
            if page > 1:
                self._pause(self.page_delay_sec)
            try:
                raw_page = self.client.fetch_page(entity_id, page, listing)
            except UpstreamError as e:
                logger.warning("backfill_page_failed", entity_id=entity_id, listing=listing,
                               page=page, error=str(e))
                return
            report.pages[listing] += 1
            if not raw_page:
                return
            for raw in raw_page:
                if self.stop_event.is_set():
                    raise IngestCancelled("backfill cancelled")
                try:
                    event = normalize_killmail(raw)
                except ValueError as e:
                    report.malformed += 1
                    logger.warning("backfill_malformed_entry", entity_id=entity_id, error=str(e))
                    continue
                report.events += 1
                outcome = self.pipeline.process(event, stream=stream,
                                                assume_relevant=not event.participant_ids())
                if outcome.stored:
                    report.reconciled += 1
                elif outcome.state is IngestState.FILTERED_OUT:
                    report.filtered += 1
                else:
                    report.skipped += 1
                    report.skipped_ids.append(event.killmail_id)
                    logger.warning("backfill_event_skipped", entity_id=entity_id,
                                   killmail_id=event.killmail_id, attempts=outcome.attempts,
                                   error=outcome.error)

    def backfill_all(self, max_pages: Optional[int] = None) -> List[BackfillReport]:
        reports = []
        for entity_id in sorted(self.registry.snapshot()):
            if self.stop_event.is_set():
                break
            try:
                reports.append(self.backfill(entity_id, max_pages))
            except IngestCancelled:
                break
        return reports
