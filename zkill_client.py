# zkill_client.py – zKillboard HTTP surfaces: RedisQ push queue and paginated history
from __future__ import annotations
import threading
from typing import Any, Dict, List, Optional

from backoff import BackoffController
from ingest_errors import RetryErrorType, UpstreamError
from logging_config import get_logger
from rate_limiter import RateLimitedClient

logger = get_logger("zkill_client")

KILLS = "kills"
LOSSES = "losses"


def unwrap_package(package: Dict[str, Any]) -> Dict[str, Any]:
    """RedisQ packages either carry the killmail inline or under ``killmail``."""
    inner = package.get("killmail")
    if isinstance(inner, dict):
        merged = dict(inner)
        merged.setdefault("killmail_id", package.get("killID"))
        merged["zkb"] = package.get("zkb") or inner.get("zkb") or {}
        return merged
    return package


class ZkillClient:
    def __init__(self, http: RateLimitedClient,
                 base_url: str = "https://zkillboard.com/api",
                 redisq_url: str = "https://zkillredisq.stream/listen.php",
                 queue_id: str = "killmail-ingest",
                 ttw: int = 10):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.redisq_url = redisq_url
        self.queue_id = queue_id
        self.ttw = ttw

    def listen(self) -> Optional[Dict[str, Any]]:
        """Block (server side, up to ttw seconds) for the next queued killmail."""
        body = self.http.get_json(self.redisq_url, params={"queueID": self.queue_id, "ttw": self.ttw})
        package = body.get("package") if isinstance(body, dict) else None
        if not package:
            return None
        return unwrap_package(package)

    def page_url(self, character_id: int, page: int, listing: str = KILLS) -> str:
        prefix = "losses/" if listing == LOSSES else ""
        return f"{self.base_url}/{prefix}characterID/{character_id}/page/{page}/"

    def fetch_page(self, character_id: int, page: int, listing: str = KILLS) -> List[Dict[str, Any]]:
        """One page of history, newest first. Empty list means past the end."""
        body = self.http.get_json(self.page_url(character_id, page, listing))
        if body is None:
            return []
        if not isinstance(body, list):
            raise UpstreamError(
                f"zkill: unexpected page body for character {character_id} page {page}",
                RetryErrorType.SERVER_ERROR,
            )
        entries = [entry for entry in body if isinstance(entry, dict)]
        logger.debug("zkill_page_fetched", character_id=character_id, listing=listing,
                     page=page, entries=len(entries))
        return entries


def build_zkill_client(config, stop_event: Optional[threading.Event] = None,
                       name: str = "zkill", min_interval: Optional[float] = None) -> ZkillClient:
    """Separate instances keep RedisQ pacing apart from the history API."""
    http = RateLimitedClient(
        name=name,
        min_interval=config.zkill.min_interval_sec if min_interval is None else min_interval,
        backoff=BackoffController.from_config(config.retry),
        max_retries=config.retry.max_retries,
        headers={"User-Agent": config.zkill.user_agent, "Accept-Encoding": "gzip"},
        stop_event=stop_event,
    )
    return ZkillClient(
        http,
        base_url=config.zkill.base_url,
        redisq_url=config.zkill.redisq_url,
        queue_id=config.zkill.queue_id,
        ttw=config.zkill.ttw,
    )
