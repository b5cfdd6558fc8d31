# checkpoint_store.py – Per-stream resume position, monotonic by killmail id
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ContextManager, Optional

from ingest_errors import CheckpointUnavailable
from logging_config import get_logger

logger = get_logger("checkpoint_store")


@dataclass(frozen=True)
class Checkpoint:
    stream_name: str
    last_seen_id: int
    last_seen_time: datetime


# The WHERE clause on the conflict branch is what keeps the row monotonic:
# an older id leaves it untouched and reports rowcount 0.
ADVANCE_SQL = """
INSERT INTO ingestion_checkpoints (stream_name, last_seen_id, last_seen_time, updated_at)
VALUES (%s, %s, %s, now())
ON CONFLICT (stream_name) DO UPDATE
  SET last_seen_id = EXCLUDED.last_seen_id,
      last_seen_time = EXCLUDED.last_seen_time,
      updated_at = now()
  WHERE ingestion_checkpoints.last_seen_id < EXCLUDED.last_seen_id
"""

LOAD_SQL = """
SELECT stream_name, last_seen_id, last_seen_time
FROM ingestion_checkpoints WHERE stream_name = %s
"""


class CheckpointStore:
    def __init__(self, connection_factory: Optional[Callable[[], ContextManager]] = None):
        if connection_factory is None:
            from db_utils import _get_db_connection
            connection_factory = _get_db_connection
        self._connection = connection_factory

    def load(self, stream_name: str) -> Optional[Checkpoint]:
        try:
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(LOAD_SQL, (stream_name,))
                    row = cur.fetchone()
        except Exception as e:
            logger.error("checkpoint_load_failed", stream=stream_name, error=str(e))
            raise CheckpointUnavailable(f"cannot read checkpoint for {stream_name}: {e}") from e
        if not row:
            return None
        return Checkpoint(stream_name=row[0], last_seen_id=int(row[1]), last_seen_time=row[2])

    def advance(self, stream_name: str, event_id: int, event_time: datetime) -> bool:
        """Move the checkpoint forward. Returns False when event_id is not newer."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(ADVANCE_SQL, (stream_name, event_id, event_time))
                moved = cur.rowcount > 0
        if moved:
            logger.debug("checkpoint_advanced", stream=stream_name, last_seen_id=event_id)
        return moved
