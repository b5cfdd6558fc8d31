#!/usr/bin/env python3
"""Backfill orchestrator tests: page caps, empty-page stop, inter-page delay
and skipped events."""
from unittest.mock import MagicMock, patch

from backfill import BackfillOrchestrator, backfill_stream
from fakes import (
    FakeClock,
    InMemoryCheckpointStore,
    InMemoryKillStore,
    StubEnricher,
    make_registry,
    raw_killmail,
)
from ingest_errors import RetryErrorType, UpstreamUnavailable
from ingest_pipeline import IngestPipeline
from kill_repository import KillReconciler
from relevance_filter import RelevanceFilter
from zkill_client import KILLS, LOSSES


def _orchestrator(pages, tracked=(99,), max_attempts=2):
    registry = make_registry(*tracked)
    store = InMemoryKillStore()
    checkpoints = InMemoryCheckpointStore()
    clock = FakeClock()
    pipeline = IngestPipeline(RelevanceFilter(registry), StubEnricher(),
                              KillReconciler(store, registry), checkpoints,
                              max_attempts=max_attempts, sleep=clock.sleep)
    client = MagicMock()

    def _fetch(entity_id, page, listing=KILLS):
        value = pages.get((entity_id, listing, page), [])
        if isinstance(value, Exception):
            raise value
        return value

    client.fetch_page.side_effect = _fetch
    orchestrator = BackfillOrchestrator(client, pipeline, registry, page_delay_sec=1.0,
                                        default_max_pages=5, sleep=clock.sleep)
    return orchestrator, store, checkpoints, clock


def _kills(*ids):
    return [raw_killmail(i, victim_id=1, attackers=[99]) for i in ids]


def test_walks_pages_until_empty_page():
    pages = {
        (99, KILLS, 1): _kills(30, 29),
        (99, KILLS, 2): _kills(28),
        (99, LOSSES, 1): [raw_killmail(27, victim_id=99, attackers=[5])],
    }
    orchestrator, store, _, clock = _orchestrator(pages)

    report = orchestrator.backfill(99)

    assert report.pages == {KILLS: 3, LOSSES: 2}
    assert report.events == 4
    assert report.reconciled == 4
    assert sorted(store.tables.kills) == [27, 28, 29, 30]
    # delay before every page after the first, per listing
    assert clock.sleeps == [1.0, 1.0, 1.0]


def test_page_cap_is_respected():
    pages = {(99, KILLS, n): _kills(100 - n) for n in range(1, 10)}
    orchestrator, _, _, _ = _orchestrator(pages)

    report = orchestrator.backfill(99, max_pages=3)

    assert report.pages[KILLS] == 3
    assert report.events == 3


def test_page_failure_ends_listing_only():
    err = UpstreamUnavailable("zkill: down", RetryErrorType.SERVER_ERROR, attempts=4)
    pages = {
        (99, KILLS, 1): _kills(50),
        (99, KILLS, 2): err,
        (99, LOSSES, 1): [raw_killmail(40, victim_id=99, attackers=[5])],
    }
    orchestrator, store, _, _ = _orchestrator(pages)

    report = orchestrator.backfill(99)

    assert report.pages[KILLS] == 1
    assert sorted(store.tables.kills) == [40, 50]


def test_failing_event_is_skipped_and_walk_continues():
    pages = {(99, KILLS, 1): _kills(61, 60)}
    orchestrator, store, _, _ = _orchestrator(pages, max_attempts=2)
    # first event fails on both attempts, second succeeds
    store.fail_next("upsert_kill", times=2)

    with patch("backfill.logger") as mock_logger:
        report = orchestrator.backfill(99)

    assert report.skipped == 1
    assert report.skipped_ids == [61]
    assert report.reconciled == 1
    assert 60 in store.tables.kills
    assert mock_logger.warning.call_args[0][0] == "backfill_event_skipped"


def test_untracked_entity_is_refused():
    orchestrator, _, _, _ = _orchestrator({}, tracked=(1,))

    report = orchestrator.backfill(99)

    assert report.events == 0
    orchestrator.client.fetch_page.assert_not_called()


def test_backfill_uses_its_own_checkpoint_stream():
    pages = {(99, KILLS, 1): _kills(70)}
    orchestrator, _, checkpoints, _ = _orchestrator(pages)

    orchestrator.backfill(99)

    assert backfill_stream(99) == "backfill:99"
    assert checkpoints.rows["backfill:99"].last_seen_id == 70
    assert "killmails" not in checkpoints.rows


def test_malformed_entries_counted():
    pages = {(99, KILLS, 1): [{"zkb": {}}] + _kills(80)}
    orchestrator, _, _, _ = _orchestrator(pages)

    report = orchestrator.backfill(99)

    assert report.malformed == 1
    assert report.reconciled == 1


def test_backfill_all_covers_every_tracked_character():
    pages = {
        (98, LOSSES, 1): [raw_killmail(90, victim_id=98, attackers=[5])],
        (99, KILLS, 1): _kills(91),
    }
    orchestrator, store, _, _ = _orchestrator(pages, tracked=(98, 99))

    reports = orchestrator.backfill_all()

    assert [r.entity_id for r in reports] == [98, 99]
    assert sorted(store.tables.kills) == [90, 91]
