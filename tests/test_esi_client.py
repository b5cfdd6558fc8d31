#!/usr/bin/env python3
"""Unit tests for ESI enrichment: merge on success, original event on failure."""
from unittest.mock import MagicMock, patch

import pytest

from esi_client import EsiClient
from fakes import raw_killmail
from ingest_errors import IngestCancelled, RetryErrorType, UpstreamUnavailable
from killmail_models import normalize_killmail

ESI_DETAIL = {
    "killmail_id": 900,
    "killmail_time": "2024-05-01T12:00:00Z",
    "solar_system_id": 30000142,
    "victim": {"character_id": 9001, "ship_type_id": 24690, "corporation_id": 98000002},
    "attackers": [{"character_id": 7001, "final_blow": True, "damage_done": 3000}],
}


def _partial_event(killmail_id=900, hash_="h900"):
    return normalize_killmail(raw_killmail(killmail_id, victim_id=9001, ship_type_id=None,
                                           attackers=[], hash_=hash_))


def test_needs_enrichment():
    assert EsiClient.needs_enrichment(_partial_event())
    full = normalize_killmail(raw_killmail(1, victim_id=9001, attackers=[7001]))
    assert not EsiClient.needs_enrichment(full)


def test_enrich_fetches_by_id_and_hash():
    http = MagicMock()
    http.get_json.return_value = ESI_DETAIL
    client = EsiClient(http, base_url="https://esi.test/latest/")

    enriched = client.enrich(_partial_event())

    http.get_json.assert_called_once_with("https://esi.test/latest/killmails/900/h900/")
    assert enriched.fully_populated is True
    assert enriched.victim.ship_type_id == 24690
    assert enriched.attackers[0].character_id == 7001
    assert enriched.hash == "h900"
    assert not EsiClient.needs_enrichment(enriched)


def test_enrich_failure_returns_original_flagged_partial():
    http = MagicMock()
    http.get_json.side_effect = UpstreamUnavailable("esi: timeout", RetryErrorType.TIMEOUT, attempts=4)
    client = EsiClient(http)
    event = _partial_event()

    with patch("esi_client.logger") as mock_logger:
        result = client.enrich(event)

    assert result.fully_populated is False
    assert result.victim == event.victim
    assert result.victim.ship_type_id is None
    mock_logger.warning.assert_called_once()
    assert mock_logger.warning.call_args[0][0] == "enrichment_failed_using_original"


def test_enrich_without_hash_skips_lookup():
    http = MagicMock()
    client = EsiClient(http)
    event = normalize_killmail({"killmail_id": 5, "victim": {"character_id": 1}})

    result = client.enrich(event)

    http.get_json.assert_not_called()
    assert result.fully_populated is False


def test_enrich_propagates_cancellation():
    http = MagicMock()
    http.get_json.side_effect = IngestCancelled("stop")
    with pytest.raises(IngestCancelled):
        EsiClient(http).enrich(_partial_event())


def test_malformed_detail_treated_as_failure():
    http = MagicMock()
    http.get_json.return_value = ["unexpected"]
    result = EsiClient(http).enrich(_partial_event())
    assert result.fully_populated is False
