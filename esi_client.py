# esi_client.py – ESI killmail detail lookups used to fill incomplete feed events
from __future__ import annotations
import threading
import time
from dataclasses import replace
from typing import Optional

from backoff import BackoffController
from ingest_errors import IngestCancelled, IngestError
from killmail_models import CombatEvent, normalize_killmail
from logging_config import get_logger, get_metrics_logger
from rate_limiter import RateLimitedClient

logger = get_logger("esi_client")
metrics = get_metrics_logger("esi_client")


class EsiClient:
    """Enrichment client: GET /killmails/{id}/{hash}/ through a paced HTTP client."""

    def __init__(self, http: RateLimitedClient, base_url: str = "https://esi.evetech.net/latest"):
        self.http = http
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def needs_enrichment(event: CombatEvent) -> bool:
        """Missing fields, unless ESI detail was already merged in."""
        return not event.fully_populated and bool(event.missing_fields())

    def fetch_killmail(self, killmail_id: int, killmail_hash: str) -> CombatEvent:
        url = f"{self.base_url}/killmails/{killmail_id}/{killmail_hash}/"
        payload = self.http.get_json(url)
        if isinstance(payload, dict) and "killmail_id" not in payload:
            payload = dict(payload, killmail_id=killmail_id)
        return normalize_killmail(payload)

    def enrich(self, event: CombatEvent) -> CombatEvent:
        """Overlay ESI detail onto the event.

        On any failure the original event comes back, flagged as not fully
        populated, so it can still be reconciled and swept again later.
        Cancellation is the one failure that propagates.
        """
        if not event.hash:
            logger.warning("enrichment_skipped_no_hash", killmail_id=event.killmail_id,
                           missing=event.missing_fields())
            return replace(event, fully_populated=False)

        start = time.perf_counter()
        try:
            fetched = self.fetch_killmail(event.killmail_id, event.hash)
        except IngestCancelled:
            raise
        except (IngestError, ValueError) as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            metrics.enrichment_call(event.killmail_id, False, duration_ms, error=str(e))
            logger.warning("enrichment_failed_using_original", killmail_id=event.killmail_id,
                           error=str(e), missing=event.missing_fields())
            return replace(event, fully_populated=False)

        duration_ms = int((time.perf_counter() - start) * 1000)
        metrics.enrichment_call(event.killmail_id, True, duration_ms)
        return event.overlay(fetched)


def build_esi_client(config, stop_event: Optional[threading.Event] = None) -> EsiClient:
    http = RateLimitedClient(
        name="esi",
        min_interval=config.esi.min_interval_sec,
        backoff=BackoffController.from_config(config.retry),
        max_retries=config.retry.max_retries,
        headers={"User-Agent": config.zkill.user_agent, "Accept": "application/json"},
        stop_event=stop_event,
    )
    return EsiClient(http, base_url=config.esi.base_url)
