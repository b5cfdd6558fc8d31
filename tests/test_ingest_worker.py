#!/usr/bin/env python3
"""Wiring and CLI entry point tests for the ingest worker."""
import os
import threading
from unittest.mock import MagicMock, patch

from config import Config, DatabaseConfig
from ingest_errors import RegistryUnavailable
from ingest_worker import build_worker, main, startup
from checkpoint_store import Checkpoint


def _config():
    return Config(database=DatabaseConfig(url="postgresql://ingest@localhost/killmails"))


def test_build_worker_wires_shared_collaborators():
    config = _config()
    stop = threading.Event()

    worker = build_worker(config, stop)

    assert worker.pipeline.relevance_filter.registry is worker.registry
    assert worker.pipeline.checkpoints is worker.checkpoints
    assert worker.catchup.pipeline is worker.pipeline
    assert worker.backfill.pipeline is worker.pipeline
    assert worker.sweep.store is worker.store
    assert worker.push_feed.stream_name == config.ingest.stream_name
    # push queue and history API are paced independently
    assert worker.push_feed.client.http is not worker.catchup.client.http
    assert worker.push_feed.client.http.name == "redisq"
    assert worker.push_feed.client.http.stop_event is stop


def test_startup_primes_pipeline_from_checkpoint():
    worker = MagicMock()
    worker.config = _config()
    stream = worker.config.ingest.stream_name
    worker.checkpoints.load.return_value = Checkpoint(stream, 500, None)

    startup(worker)

    worker.registry.initialize.assert_called_once()
    worker.checkpoints.load.assert_called_once_with(stream)
    worker.pipeline.prime_checkpoint.assert_called_once_with(stream, 500)


def test_main_init_db_only_creates_tables():
    with patch("ingest_worker.load_config") as mock_load, \
         patch("ingest_worker.setup_logging"), \
         patch("db_utils.ensure_tables") as mock_ensure, \
         patch("ingest_worker.build_worker") as mock_build:
        assert main(["init-db"]) == 0
    mock_load.assert_called_once()
    mock_ensure.assert_called_once()
    mock_build.assert_not_called()


def test_main_exits_nonzero_on_invalid_config():
    with patch("ingest_worker.load_config") as mock_load, \
         patch("ingest_worker.setup_logging"), \
         patch("db_utils.ensure_tables") as mock_ensure:
        mock_load.side_effect = ValueError("DATABASE_URL must be set")
        assert main(["run"]) == 1
    mock_ensure.assert_not_called()


def test_main_reports_bad_env_values_as_config_invalid():
    env = {"DATABASE_URL": "postgresql://ingest@localhost/killmails"}
    for key, value in (("REDISQ_TTW", "0"), ("HTTP_BACKOFF_JITTER", "abc")):
        with patch.dict(os.environ, {**env, key: value}), \
             patch("ingest_worker.setup_logging"), \
             patch("ingest_worker.logger") as mock_logger, \
             patch("db_utils.ensure_tables") as mock_ensure:
            assert main(["run"]) == 1
        mock_ensure.assert_not_called()
        assert mock_logger.error.call_args[0][0] == "config_invalid"
        assert key in mock_logger.error.call_args[1]["error"]


def test_main_exits_nonzero_when_registry_unavailable():
    worker = MagicMock()
    worker.registry.initialize.side_effect = RegistryUnavailable("no db")
    with patch("ingest_worker.load_config"), \
         patch("ingest_worker.setup_logging"), \
         patch("db_utils.ensure_tables"), \
         patch("ingest_worker.build_worker", return_value=worker):
        assert main(["catchup-once"]) == 1
    worker.catchup.run_once.assert_not_called()


def test_main_backfill_single_entity():
    worker = MagicMock()
    worker.checkpoints.load.return_value = None
    worker.backfill.backfill.return_value = MagicMock(reconciled=3, skipped=0)
    with patch("ingest_worker.load_config"), \
         patch("ingest_worker.setup_logging"), \
         patch("db_utils.ensure_tables"), \
         patch("ingest_worker.build_worker", return_value=worker):
        assert main(["backfill", "--entity", "99", "--max-pages", "2"]) == 0
    worker.backfill.backfill.assert_called_once_with(99, 2)
