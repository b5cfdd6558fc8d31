#!/usr/bin/env python3
"""End-to-end pipeline tests: filter -> enrich -> reconcile -> checkpoint,
wired with in-memory stores and a fake sleep."""
from unittest.mock import MagicMock, patch

from checkpoint_store import Checkpoint
from fakes import (
    FakeClock,
    InMemoryCheckpointStore,
    InMemoryKillStore,
    StubEnricher,
    make_registry,
    raw_killmail,
)
from ingest_pipeline import IngestPipeline, IngestState
from kill_repository import KillReconciler
from killmail_models import CombatEvent, Principal, normalize_killmail
from relevance_filter import RelevanceFilter

STREAM = "killmails"


def _pipeline(tracked=(99,), enricher=None, max_attempts=3):
    registry = make_registry(*tracked)
    store = InMemoryKillStore()
    checkpoints = InMemoryCheckpointStore()
    clock = FakeClock()
    pipeline = IngestPipeline(
        relevance_filter=RelevanceFilter(registry),
        enricher=enricher or StubEnricher(),
        reconciler=KillReconciler(store, registry),
        checkpoints=checkpoints,
        max_attempts=max_attempts,
        retry_base_sec=1.0,
        sleep=clock.sleep,
    )
    return pipeline, store, checkpoints, clock


def test_relevant_event_is_reconciled_and_checkpointed():
    pipeline, store, checkpoints, _ = _pipeline()
    event = normalize_killmail(raw_killmail(500, victim_id=99, attackers=[11]))

    outcome = pipeline.process(event, stream=STREAM)

    assert outcome.state is IngestState.CHECKPOINTED
    assert outcome.attempts == 1
    assert 500 in store.tables.kills
    assert checkpoints.rows[STREAM].last_seen_id == 500
    assert pipeline.high_water(STREAM) == 500


def test_irrelevant_event_is_dropped_before_any_work():
    enricher = StubEnricher()
    pipeline, store, checkpoints, _ = _pipeline(tracked=(1,), enricher=enricher)
    event = normalize_killmail(raw_killmail(501, victim_id=99, ship_type_id=None, attackers=[11]))

    outcome = pipeline.process(event, stream=STREAM)

    assert outcome.state is IngestState.FILTERED_OUT
    assert not outcome.relevant
    assert enricher.calls == []
    assert store.ops == []
    assert checkpoints.advance_calls == []


def test_enrichment_timeout_still_reconciles_and_advances():
    """A failed detail lookup stores the event with a null ship type."""
    enricher = StubEnricher(fail=True)
    pipeline, store, checkpoints, _ = _pipeline(enricher=enricher)
    event = normalize_killmail(raw_killmail(510, victim_id=99, ship_type_id=None, attackers=[11]))

    outcome = pipeline.process(event, stream=STREAM)

    assert enricher.calls == [510]
    assert outcome.enriched is False
    assert outcome.state is IngestState.CHECKPOINTED
    assert store.tables.kills[510]["ship_type_id"] is None
    assert store.tables.kills[510]["fully_populated"] is False
    assert checkpoints.rows[STREAM].last_seen_id == 510


def test_successful_enrichment_fills_missing_fields():
    detail = CombatEvent(killmail_id=520, victim=Principal(character_id=99, ship_type_id=24690))
    enricher = StubEnricher(detail={520: detail})
    pipeline, store, _, _ = _pipeline(enricher=enricher)
    event = normalize_killmail(raw_killmail(520, victim_id=99, ship_type_id=None, attackers=[11]))

    outcome = pipeline.process(event, stream=STREAM)

    assert outcome.enriched is True
    assert store.tables.kills[520]["ship_type_id"] == 24690
    assert store.tables.kills[520]["fully_populated"] is True


def test_complete_event_skips_enrichment():
    enricher = StubEnricher()
    pipeline, _, _, _ = _pipeline(enricher=enricher)
    pipeline.process(normalize_killmail(raw_killmail(530, victim_id=99, attackers=[11])), stream=STREAM)
    assert enricher.calls == []


def test_older_event_after_checkpoint_is_stored_without_moving_it():
    """Push feed checkpoints 500; a later catch-up delivery of 100 is still stored."""
    pipeline, store, checkpoints, _ = _pipeline()
    pipeline.process(normalize_killmail(raw_killmail(500, victim_id=99, attackers=[11])), stream=STREAM)

    outcome = pipeline.process(normalize_killmail(raw_killmail(100, victim_id=99, attackers=[12])),
                               stream=STREAM)

    assert outcome.state is IngestState.RECONCILED
    assert 100 in store.tables.kills
    assert checkpoints.rows[STREAM].last_seen_id == 500


def test_checkpoint_store_rejection_keeps_reconciled_state():
    """Another worker already moved the checkpoint further."""
    pipeline, _, checkpoints, _ = _pipeline()
    checkpoints.rows[STREAM] = Checkpoint(STREAM, 900, None)

    outcome = pipeline.process(normalize_killmail(raw_killmail(600, victim_id=99, attackers=[11])),
                               stream=STREAM)

    assert outcome.state is IngestState.RECONCILED
    assert checkpoints.rows[STREAM].last_seen_id == 900
    assert pipeline.high_water(STREAM) is None


def test_transient_reconcile_failure_is_retried_with_backoff():
    pipeline, store, checkpoints, clock = _pipeline()
    store.fail_next("upsert_kill", times=1)

    outcome = pipeline.process(normalize_killmail(raw_killmail(700, victim_id=99, attackers=[11])),
                               stream=STREAM)

    assert outcome.state is IngestState.CHECKPOINTED
    assert outcome.attempts == 2
    assert clock.sleeps == [2.0]
    assert checkpoints.rows[STREAM].last_seen_id == 700


def test_persistent_failure_drops_event_without_checkpoint():
    pipeline, store, checkpoints, clock = _pipeline(max_attempts=3)
    store.fail_next("upsert_kill", times=10)

    with patch("ingest_pipeline.logger") as mock_logger:
        mock_logger.bind.return_value = mock_logger
        outcome = pipeline.process(normalize_killmail(raw_killmail(800, victim_id=99, attackers=[11])),
                                   stream=STREAM)

    assert outcome.state is IngestState.FAILED
    assert outcome.attempts == 3
    # after k consecutive failures the wait is base * 2**k
    assert clock.sleeps == [2.0, 4.0]
    assert "simulated failure" in outcome.error
    assert 800 not in store.tables.kills
    assert STREAM not in checkpoints.rows
    assert mock_logger.error.call_args[0][0] == "killmail_dropped"


def test_event_without_kill_time_is_unreconcilable():
    pipeline, store, checkpoints, _ = _pipeline(enricher=StubEnricher(fail=True))
    bare = normalize_killmail({"killmail_id": 900, "zkb": {"hash": "h"}})

    outcome = pipeline.process(bare, stream=STREAM, assume_relevant=True)

    assert outcome.state is IngestState.FAILED
    assert outcome.attempts == 0
    assert store.ops == []
    assert checkpoints.advance_calls == []


def test_checkpoint_write_error_is_logged_not_raised():
    pipeline, _, _, _ = _pipeline()
    pipeline.checkpoints = MagicMock()
    pipeline.checkpoints.advance.side_effect = RuntimeError("db gone")

    outcome = pipeline.process(normalize_killmail(raw_killmail(950, victim_id=99, attackers=[11])),
                               stream=STREAM)

    assert outcome.state is IngestState.RECONCILED
    assert outcome.stored


def test_no_stream_means_no_checkpoint():
    pipeline, _, checkpoints, _ = _pipeline()
    outcome = pipeline.process(normalize_killmail(raw_killmail(960, victim_id=99, attackers=[11])))
    assert outcome.state is IngestState.RECONCILED
    assert checkpoints.advance_calls == []


def test_primed_checkpoint_skips_redundant_advance():
    pipeline, _, checkpoints, _ = _pipeline()
    pipeline.prime_checkpoint(STREAM, 1000)
    pipeline.process(normalize_killmail(raw_killmail(999, victim_id=99, attackers=[11])), stream=STREAM)
    assert checkpoints.advance_calls == []
