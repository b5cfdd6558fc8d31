# catchup_feed.py – Hourly pull feed that closes gaps left by the push feed
from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ingest_errors import CheckpointUnavailable, IngestCancelled, UpstreamError
from ingest_pipeline import IngestPipeline, IngestState
from killmail_models import CombatEvent, normalize_killmail
from logging_config import get_logger
from zkill_client import KILLS, LOSSES, ZkillClient

logger = get_logger("catchup_feed")


@dataclass
class CatchupReport:
    since_id: Optional[int] = None
    fetched: int = 0
    replayed: int = 0
    reconciled: int = 0
    filtered: int = 0
    failed: int = 0
    pages: int = 0


class CatchupFeed:
    """Pulls each tracked character's recent history and replays it oldest-first.

    Ids at or before the checkpoint read at the start of a run are dropped
    before any enrichment or storage work.
    """

    def __init__(
        self,
        client: ZkillClient,
        pipeline: IngestPipeline,
        registry,
        checkpoints,
        stream_name: str = "killmails",
        max_pages: int = 5,
        interval_sec: float = 3600.0,
        page_delay_sec: float = 1.0,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.client = client
        self.pipeline = pipeline
        self.registry = registry
        self.checkpoints = checkpoints
        self.stream_name = stream_name
        self.max_pages = max_pages
        self.interval_sec = interval_sec
        self.page_delay_sec = page_delay_sec
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep

    def _pause(self, seconds: float):
        if self._sleep is not None:
            self._sleep(seconds)
        elif self.stop_event.wait(seconds):
            raise IngestCancelled("catch-up cancelled")
        if self.stop_event.is_set():
            raise IngestCancelled("catch-up cancelled")

    def collect(self, since_id: Optional[int], report: Optional[CatchupReport] = None) -> List[CombatEvent]:
        """Fetch events newer than since_id for every tracked character, ascending by id."""
        report = report or CatchupReport(since_id=since_id)
        found: Dict[int, CombatEvent] = {}
        for entity_id in sorted(self.registry.snapshot()):
            for listing in (KILLS, LOSSES):
                for page in range(1, self.max_pages + 1):
                    try:
                        raw_page = self.client.fetch_page(entity_id, page, listing)
                    except UpstreamError as e:
                        logger.warning("catchup_page_failed", entity_id=entity_id, listing=listing,
                                       page=page, error=str(e))
                        break
                    report.pages += 1
                    if not raw_page:
                        break
                    reached_checkpoint = False
                    for raw in raw_page:
                        try:
                            event = normalize_killmail(raw)
                        except ValueError:
                            continue
                        if since_id is not None and event.killmail_id <= since_id:
                            reached_checkpoint = True
                            continue
                        found.setdefault(event.killmail_id, event)
                    if reached_checkpoint:
                        break
                    self._pause(self.page_delay_sec)
        report.fetched = len(found)
        return [found[k] for k in sorted(found)]

    def replay(self, events: List[CombatEvent], since_id: Optional[int],
               report: Optional[CatchupReport] = None) -> CatchupReport:
        report = report or CatchupReport(since_id=since_id)
        for event in sorted(events, key=lambda e: e.killmail_id):
            if self.stop_event.is_set():
                break
            if since_id is not None and event.killmail_id <= since_id:
                continue
            # History listings are per character, so a bare {id, zkb} entry is
            # already known to involve a tracked character.
            outcome = self.pipeline.process(event, stream=self.stream_name,
                                            assume_relevant=not event.participant_ids())
            report.replayed += 1
            if outcome.stored:
                report.reconciled += 1
            elif outcome.state is IngestState.FILTERED_OUT:
                report.filtered += 1
            else:
                report.failed += 1
        return report

    def run_once(self) -> CatchupReport:
        checkpoint = self.checkpoints.load(self.stream_name)
        since_id = checkpoint.last_seen_id if checkpoint else None
        report = CatchupReport(since_id=since_id)
        logger.info("catchup_run_started", stream=self.stream_name, since_id=since_id,
                    tracked=len(self.registry.snapshot()))
        events = self.collect(since_id, report)
        self.replay(events, since_id, report)
        logger.info("catchup_run_complete", stream=self.stream_name, since_id=since_id,
                    fetched=report.fetched, replayed=report.replayed, reconciled=report.reconciled,
                    filtered=report.filtered, failed=report.failed, pages=report.pages)
        return report

    def run(self):
        """Periodic loop, independent of push-feed health."""
        logger.info("catchup_feed_started", interval_sec=self.interval_sec)
        while not self.stop_event.wait(self.interval_sec):
            try:
                self.run_once()
            except IngestCancelled:
                break
            except CheckpointUnavailable as e:
                logger.error("catchup_checkpoint_unavailable", error=str(e))
            except Exception as e:
                logger.error("catchup_iteration_failed", error=str(e), exc_info=True)
        logger.info("catchup_feed_stopped")

    def start(self) -> threading.Thread:
        t = threading.Thread(target=self.run, name="catchup_feed", daemon=True)
        t.start()
        return t
