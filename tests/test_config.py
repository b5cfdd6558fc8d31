#!/usr/bin/env python3
"""Configuration validation tests."""
import os
from unittest.mock import patch

import pytest

from config import Config, DatabaseConfig, IngestConfig, RetryConfig, ZkillConfig, load_config


def test_validate_requires_database_url():
    with pytest.raises(ValueError, match="DATABASE_URL"):
        Config(database=DatabaseConfig(url="")).validate()


def test_validate_passes_with_database_url():
    Config(database=DatabaseConfig(url="postgresql://ingest@localhost/killmails")).validate()


def test_redisq_ttw_bounds():
    with pytest.raises(ValueError):
        ZkillConfig(ttw=0)
    with pytest.raises(ValueError):
        ZkillConfig(ttw=11)
    assert ZkillConfig(ttw=10).ttw == 10


def test_retry_config_rejects_inverted_caps():
    with pytest.raises(ValueError):
        RetryConfig(base_delay_sec=10.0, cap_sec=5.0)
    with pytest.raises(ValueError):
        RetryConfig(base_timeout_sec=60.0, timeout_cap_sec=30.0)
    with pytest.raises(ValueError):
        RetryConfig(jitter=1.5)


def test_ingest_config_bounds():
    with pytest.raises(ValueError):
        IngestConfig(pipeline_max_attempts=0)
    with pytest.raises(ValueError):
        IngestConfig(stream_name="")
    with pytest.raises(ValueError):
        IngestConfig(catchup_interval_sec=0)


def test_environment_is_read_when_config_is_built():
    env = {"DATABASE_URL": "postgresql://ingest@localhost/killmails",
           "REDISQ_TTW": "5", "ENRICHMENT_SWEEP_MAX_ATTEMPTS": "2"}
    with patch.dict(os.environ, env):
        config = load_config()
    assert config.zkill.ttw == 5
    assert config.ingest.enrichment_sweep_max_attempts == 2


def test_load_config_raises_value_error_for_bad_values():
    with patch.dict(os.environ, {"HTTP_BACKOFF_JITTER": "abc"}):
        with pytest.raises(ValueError, match="HTTP_BACKOFF_JITTER"):
            load_config()
    with patch.dict(os.environ, {"ENRICHMENT_SWEEP_MAX_ATTEMPTS": "0"}):
        with pytest.raises(ValueError, match="ENRICHMENT_SWEEP_MAX_ATTEMPTS"):
            load_config()
