# ingest_worker.py – Killmail ingest worker (push feed + catch-up + registry refresh)
from __future__ import annotations
import os
from dotenv import load_dotenv

# Load .env.dev if present (for local dev), otherwise fall back to .env
if os.path.exists('.env.dev'):
    load_dotenv('.env.dev', override=True)
else:
    load_dotenv()

import argparse
import signal
import sys
import threading
from dataclasses import dataclass
from typing import List, Optional

from backfill import BackfillOrchestrator
from catchup_feed import CatchupFeed
from checkpoint_store import CheckpointStore
from config import Config, load_config
from enrichment_sweep import EnrichmentSweep
from esi_client import build_esi_client
from ingest_errors import CheckpointUnavailable, RegistryUnavailable
from ingest_pipeline import IngestPipeline
from kill_repository import KillReconciler, PostgresKillStore
from logging_config import get_logger, setup_logging
from metrics import METRICS, ThroughputWindow
from redisq_ingest import RedisQFeed
from relevance_filter import RelevanceFilter
from tracked_registry import TrackedEntityRegistry
from zkill_client import build_zkill_client

logger = get_logger("ingest_worker")


@dataclass
class Worker:
    config: Config
    stop_event: threading.Event
    registry: TrackedEntityRegistry
    checkpoints: CheckpointStore
    store: PostgresKillStore
    pipeline: IngestPipeline
    push_feed: RedisQFeed
    catchup: CatchupFeed
    backfill: BackfillOrchestrator
    sweep: EnrichmentSweep


def build_worker(config: Optional[Config] = None, stop_event: Optional[threading.Event] = None) -> Worker:
    """Wire every collaborator explicitly; nothing here is a process-wide singleton."""
    config = config or load_config()
    stop_event = stop_event or threading.Event()
    ingest = config.ingest

    registry = TrackedEntityRegistry(refresh_interval=ingest.registry_refresh_sec)
    checkpoints = CheckpointStore()
    store = PostgresKillStore()
    pipeline = IngestPipeline(
        relevance_filter=RelevanceFilter(registry),
        enricher=build_esi_client(config, stop_event),
        reconciler=KillReconciler(store, registry),
        checkpoints=checkpoints,
        max_attempts=ingest.pipeline_max_attempts,
        retry_base_sec=ingest.pipeline_retry_base_sec,
        stop_event=stop_event,
    )
    redisq = build_zkill_client(config, stop_event, name="redisq",
                                min_interval=config.zkill.redisq_min_interval_sec)
    history = build_zkill_client(config, stop_event)

    return Worker(
        config=config,
        stop_event=stop_event,
        registry=registry,
        checkpoints=checkpoints,
        store=store,
        pipeline=pipeline,
        push_feed=RedisQFeed(
            redisq, pipeline, stream_name=ingest.stream_name,
            window=ThroughputWindow("redisq", ingest.metrics_window_sec),
            stop_event=stop_event,
        ),
        catchup=CatchupFeed(
            history, pipeline, registry, checkpoints,
            stream_name=ingest.stream_name,
            max_pages=ingest.catchup_max_pages,
            interval_sec=ingest.catchup_interval_sec,
            page_delay_sec=ingest.backfill_page_delay_sec,
            stop_event=stop_event,
        ),
        backfill=BackfillOrchestrator(
            history, pipeline, registry,
            page_delay_sec=ingest.backfill_page_delay_sec,
            default_max_pages=ingest.backfill_max_pages,
            stop_event=stop_event,
        ),
        sweep=EnrichmentSweep(
            store, pipeline,
            interval_sec=ingest.enrichment_sweep_interval_sec,
            batch_size=ingest.enrichment_sweep_batch,
            max_attempts=ingest.enrichment_sweep_max_attempts,
            stop_event=stop_event,
        ),
    )


def startup(worker: Worker):
    """Blocking startup checks. Either failure is fatal."""
    worker.registry.initialize()
    checkpoint = worker.checkpoints.load(worker.config.ingest.stream_name)
    if checkpoint:
        worker.pipeline.prime_checkpoint(checkpoint.stream_name, checkpoint.last_seen_id)
    logger.info("ingest_startup_complete", tracked=len(worker.registry),
                stream=worker.config.ingest.stream_name,
                last_seen_id=checkpoint.last_seen_id if checkpoint else None)


def install_signal_handlers(stop_event: threading.Event):
    def _handle(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()
    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run(worker: Worker) -> int:
    startup(worker)
    install_signal_handlers(worker.stop_event)

    threads: List[threading.Thread] = [worker.registry.start(worker.stop_event)]
    if worker.config.ingest.catchup_enabled:
        threads.append(worker.catchup.start())
    if worker.config.ingest.enrichment_sweep_enabled:
        threads.append(worker.sweep.start())

    # The push feed is the single sequential consumer and owns the main thread.
    worker.push_feed.run()

    grace = worker.config.ingest.shutdown_grace_sec
    for t in threads:
        t.join(timeout=grace)
        if t.is_alive():
            logger.warning("thread_did_not_stop", thread=t.name, grace_sec=grace)
    logger.info("ingest_worker_stopped", metrics=METRICS.summary()["counters"])
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Killmail ingest worker")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Push feed + hourly catch-up + registry refresh + enrichment sweep")
    bf = sub.add_parser("backfill", help="Walk zKillboard history pages for tracked characters")
    bf.add_argument("--entity", type=int, help="Single character id (default: every tracked character)")
    bf.add_argument("--max-pages", type=int, default=None)
    sub.add_parser("catchup-once", help="Run one catch-up pass and exit")
    en = sub.add_parser("enrich-once", help="Re-enrich one batch of partial killmails and exit")
    en.add_argument("--limit", type=int, default=None)
    sub.add_parser("init-db", help="Create the ingest tables")
    args = parser.parse_args(argv)
    command = args.command or "run"

    setup_logging(f"killmail-{command}")
    try:
        config = load_config()
    except ValueError as e:
        logger.error("config_invalid", error=str(e))
        return 1

    from db_utils import ensure_tables
    ensure_tables()
    if command == "init-db":
        return 0

    worker = build_worker(config)
    try:
        if command == "run":
            return run(worker)
        startup(worker)
        if command == "backfill":
            if args.entity:
                reports = [worker.backfill.backfill(args.entity, args.max_pages)]
            else:
                reports = worker.backfill.backfill_all(args.max_pages)
            logger.info("backfill_finished", characters=len(reports),
                        reconciled=sum(r.reconciled for r in reports),
                        skipped=sum(r.skipped for r in reports))
        elif command == "catchup-once":
            worker.catchup.run_once()
        elif command == "enrich-once":
            worker.sweep.run_batch(args.limit)
        return 0
    except (RegistryUnavailable, CheckpointUnavailable) as e:
        logger.error("ingest_startup_failed", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
