# tracked_registry.py – In-memory snapshot of tracked character ids
from __future__ import annotations
import threading
from typing import Callable, FrozenSet, Iterable, Optional

from ingest_errors import RegistryUnavailable
from logging_config import get_logger
from metrics import METRICS

logger = get_logger("tracked_registry")


def load_tracked_characters() -> Iterable[int]:
    """Authoritative source: every registered character."""
    from db_utils import fetch_all
    rows = fetch_all("SELECT character_id FROM tracked_characters")
    return [row["character_id"] for row in rows]


def _coerce_id(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TrackedEntityRegistry:
    """Atomically swapped frozenset of tracked ids.

    Readers take the current reference without locking. Only ``refresh``
    writes, and it replaces the whole set in a single assignment.
    """

    def __init__(self, loader: Callable[[], Iterable] = load_tracked_characters,
                 refresh_interval: float = 300.0):
        self._loader = loader
        self.refresh_interval = refresh_interval
        self._snapshot: FrozenSet[int] = frozenset()
        self._thread: Optional[threading.Thread] = None
        self.last_refresh_ok: Optional[bool] = None

    def contains(self, entity_id) -> bool:
        key = _coerce_id(entity_id)
        return key is not None and key in self._snapshot

    def snapshot(self) -> FrozenSet[int]:
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def refresh(self) -> bool:
        """Reload the snapshot. On failure the previous snapshot stays in effect."""
        try:
            ids = frozenset(i for i in (_coerce_id(v) for v in self._loader()) if i is not None)
        except Exception as e:
            self.last_refresh_ok = False
            METRICS.increment("registry.refresh_failed")
            logger.error("registry_refresh_failed", error=str(e), kept_size=len(self._snapshot))
            return False
        previous = self._snapshot
        self._snapshot = ids
        self.last_refresh_ok = True
        METRICS.gauge("registry.size", float(len(ids)))
        if ids != previous:
            logger.info("registry_refreshed", size=len(ids),
                        added=len(ids - previous), removed=len(previous - ids))
        return True

    def initialize(self):
        """Blocking first load. Failure here means the process must not start."""
        if not self.refresh():
            raise RegistryUnavailable("could not load tracked characters at startup")
        logger.info("registry_initialized", size=len(self._snapshot))

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Refresh on a fixed timer until stop_event is set."""
        def _run():
            while not stop_event.wait(self.refresh_interval):
                self.refresh()
        self._thread = threading.Thread(target=_run, name="registry_refresh", daemon=True)
        self._thread.start()
        logger.info("registry_refresh_started", interval_sec=self.refresh_interval)
        return self._thread
