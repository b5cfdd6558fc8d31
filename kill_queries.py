# kill_queries.py – Read-only queries for consumers outside the ingest worker
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from db_utils import fetch_all, fetch_one


def is_tracked(entity_id: int) -> bool:
    row = fetch_one("SELECT 1 AS tracked FROM tracked_characters WHERE character_id = %s",
                    (int(entity_id),))
    return row is not None


def participation_for_entity(entity_id: int, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """Reconciled participation rows for one character with start <= kill_time < end."""
    return fetch_all(
        """
        SELECT kc.killmail_id, kc.character_id, kc.role,
               kf.kill_time, kf.system_id, kf.ship_type_id, kf.total_value,
               kf.points, kf.npc, kf.solo, kf.awox, kf.labels
        FROM kill_characters kc
        JOIN kill_facts kf ON kf.killmail_id = kc.killmail_id
        WHERE kc.character_id = %s
          AND kf.kill_time >= %s
          AND kf.kill_time < %s
        ORDER BY kf.kill_time, kc.killmail_id
        """,
        (int(entity_id), start, end),
    )


def current_checkpoint(stream_name: str = "killmails") -> Optional[Dict[str, Any]]:
    return fetch_one(
        """
        SELECT stream_name, last_seen_id, last_seen_time, updated_at
        FROM ingestion_checkpoints WHERE stream_name = %s
        """,
        (stream_name,),
    )
