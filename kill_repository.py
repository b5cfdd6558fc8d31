"""kill_repository.py

Diff-based reconciliation of one killmail into Postgres.

Tables written (and only written) here:
  kill_facts       one row per killmail, upserted by killmail_id
  kill_victims     one row per killmail, upserted by killmail_id
  kill_attackers   one row per attacker; converged by full-field diff
  kill_characters  participation rows for *tracked* characters; diffed
  loss_facts       denormalized loss row when the victim is tracked

A reconcile call is one transaction. Stored rows that already equal a
target row are never rewritten, so replaying the same killmail produces no
attacker or participation writes at all.
"""

from __future__ import annotations
from collections import Counter
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from typing import Callable, ContextManager, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from psycopg2.extras import Json, execute_values

from ingest_errors import ReconcileError
from killmail_models import CombatEvent, ValueSummary
from logging_config import get_logger, get_metrics_logger
from metrics import METRICS
from tracked_registry import TrackedEntityRegistry

logger = get_logger("kill_repository")
metrics = get_metrics_logger("kill_repository")

ROLE_VICTIM = "victim"
ROLE_ATTACKER = "attacker"


# ---------------------------------------------------------------------
# Row shapes
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class AttackerRow:
    killmail_id: int
    character_id: Optional[int]
    corporation_id: Optional[int]
    alliance_id: Optional[int]
    damage_done: int
    final_blow: bool
    security_status: Optional[float]
    ship_type_id: Optional[int]
    weapon_type_id: Optional[int]

    def values(self) -> tuple:
        return tuple(getattr(self, f.name) for f in fields(self))


ATTACKER_COLUMNS = tuple(f.name for f in fields(AttackerRow))


@dataclass(frozen=True)
class ParticipantRow:
    killmail_id: int
    character_id: int
    role: str


@dataclass
class RowDiff:
    """Rows to delete (with their storage keys) and rows to insert."""
    to_delete: List[Tuple[object, object]] = field(default_factory=list)
    to_insert: List[object] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_delete and not self.to_insert


@dataclass
class ReconcileResult:
    killmail_id: int
    attackers_inserted: int = 0
    attackers_deleted: int = 0
    participants_inserted: int = 0
    participants_deleted: int = 0
    loss_upserted: bool = False
    skipped_partial: bool = False

    @property
    def writes(self) -> int:
        return (self.attackers_inserted + self.attackers_deleted
                + self.participants_inserted + self.participants_deleted)


def diff_rows(stored: Sequence[Tuple[object, object]], target: Sequence[object]) -> RowDiff:
    """Multiset diff on full-row equality.

    ``stored`` is a list of (storage_key, row). A stored row survives only if
    an equal target row is still unclaimed; any field difference means
    delete-old plus insert-new.
    """
    unclaimed = Counter(target)
    diff = RowDiff()
    matched = Counter()
    for key, row in stored:
        if unclaimed[row] > 0:
            unclaimed[row] -= 1
            matched[row] += 1
        else:
            diff.to_delete.append((key, row))
    for row in target:
        if matched[row] > 0:
            matched[row] -= 1
        else:
            diff.to_insert.append(row)
    return diff


# ---------------------------------------------------------------------
# Target state
# ---------------------------------------------------------------------

def derive_flags(event: CombatEvent) -> Tuple[bool, bool]:
    """(npc, solo) from the attacker list; feed flags only when attackers are unknown."""
    if not event.attackers:
        return event.zkb.npc, event.zkb.solo
    npc = all(a.character_id is None for a in event.attackers)
    solo = len(event.attackers) == 1
    return npc, solo


def build_kill_row(event: CombatEvent) -> dict:
    npc, solo = derive_flags(event)
    return {
        "killmail_id": event.killmail_id,
        "kill_time": event.kill_time,
        "hash": event.hash,
        "npc": npc,
        "solo": solo,
        "awox": event.zkb.awox,
        "ship_type_id": event.victim.ship_type_id,
        "system_id": event.system_id,
        "labels": list(event.zkb.labels),
        "total_value": int(round(event.zkb.total_value)),
        "points": event.zkb.points,
        "fully_populated": event.fully_populated,
    }


def build_victim_row(event: CombatEvent) -> dict:
    v = event.victim
    return {
        "killmail_id": event.killmail_id,
        "character_id": v.character_id,
        "corporation_id": v.corporation_id,
        "alliance_id": v.alliance_id,
        "ship_type_id": v.ship_type_id,
        "damage_taken": v.damage_taken,
        "items": [item.to_dict() for item in v.items],
    }


def build_attacker_rows(event: CombatEvent) -> List[AttackerRow]:
    return [
        AttackerRow(
            killmail_id=event.killmail_id,
            character_id=a.character_id,
            corporation_id=a.corporation_id,
            alliance_id=a.alliance_id,
            damage_done=a.damage_done,
            final_blow=a.final_blow,
            security_status=a.security_status,
            ship_type_id=a.ship_type_id,
            weapon_type_id=a.weapon_type_id,
        )
        for a in event.attackers
    ]


def build_participant_rows(event: CombatEvent, tracked: FrozenSet[int]) -> List[ParticipantRow]:
    """One row per tracked participant; the victim role wins a duplicate id."""
    rows = {}
    vid = event.victim.character_id
    if vid and vid in tracked:
        rows[vid] = ParticipantRow(event.killmail_id, vid, ROLE_VICTIM)
    for a in event.attackers:
        cid = a.character_id
        if cid and cid in tracked and cid not in rows:
            rows[cid] = ParticipantRow(event.killmail_id, cid, ROLE_ATTACKER)
    return list(rows.values())


def build_loss_row(event: CombatEvent) -> dict:
    return {
        "killmail_id": event.killmail_id,
        "character_id": event.victim.character_id,
        "kill_time": event.kill_time,
        "ship_type_id": event.victim.ship_type_id,
        "system_id": event.system_id,
        "total_value": int(round(event.zkb.total_value)),
        "attacker_count": len(event.attackers),
        "labels": list(event.zkb.labels),
    }


# ---------------------------------------------------------------------
# Storage contract + Postgres implementation
# ---------------------------------------------------------------------

class KillUnitOfWork:
    """Operations available inside one reconcile transaction."""

    def lock_event(self, killmail_id: int) -> None:
        raise NotImplementedError

    def stored_fully_populated(self, killmail_id: int) -> Optional[bool]:
        """None when the killmail has never been stored."""
        raise NotImplementedError

    def upsert_kill(self, row: dict) -> None:
        raise NotImplementedError

    def upsert_victim(self, row: dict) -> None:
        raise NotImplementedError

    def load_attackers(self, killmail_id: int) -> List[Tuple[int, AttackerRow]]:
        raise NotImplementedError

    def delete_attackers(self, killmail_id: int, row_ids: List[int]) -> None:
        raise NotImplementedError

    def insert_attackers(self, rows: List[AttackerRow]) -> None:
        raise NotImplementedError

    def load_participants(self, killmail_id: int) -> List[ParticipantRow]:
        raise NotImplementedError

    def delete_participants(self, killmail_id: int, character_ids: List[int]) -> None:
        raise NotImplementedError

    def insert_participants(self, rows: List[ParticipantRow]) -> None:
        raise NotImplementedError

    def upsert_loss(self, row: dict) -> None:
        raise NotImplementedError


class PostgresUnitOfWork(KillUnitOfWork):
    def __init__(self, cur):
        self.cur = cur

    def lock_event(self, killmail_id):
        # Serializes concurrent reconciles of one killmail across feeds.
        self.cur.execute("SELECT pg_advisory_xact_lock(%s)", (killmail_id,))

    def stored_fully_populated(self, killmail_id):
        self.cur.execute("SELECT fully_populated FROM kill_facts WHERE killmail_id = %s",
                         (killmail_id,))
        row = self.cur.fetchone()
        return None if row is None else bool(row[0])

    def upsert_kill(self, row):
        self.cur.execute(
            """
            INSERT INTO kill_facts (killmail_id, kill_time, hash, npc, solo, awox,
              ship_type_id, system_id, labels, total_value, points, fully_populated, updated_at)
            VALUES (%(killmail_id)s, %(kill_time)s, %(hash)s, %(npc)s, %(solo)s, %(awox)s,
              %(ship_type_id)s, %(system_id)s, %(labels)s, %(total_value)s, %(points)s,
              %(fully_populated)s, now())
            ON CONFLICT (killmail_id) DO UPDATE SET
              kill_time = EXCLUDED.kill_time,
              hash = COALESCE(EXCLUDED.hash, kill_facts.hash),
              npc = EXCLUDED.npc,
              solo = EXCLUDED.solo,
              awox = EXCLUDED.awox,
              ship_type_id = EXCLUDED.ship_type_id,
              system_id = EXCLUDED.system_id,
              labels = EXCLUDED.labels,
              total_value = EXCLUDED.total_value,
              points = EXCLUDED.points,
              fully_populated = EXCLUDED.fully_populated,
              updated_at = now()
            """,
            row,
        )

    def upsert_victim(self, row):
        self.cur.execute(
            """
            INSERT INTO kill_victims (killmail_id, character_id, corporation_id, alliance_id,
              ship_type_id, damage_taken, items)
            VALUES (%(killmail_id)s, %(character_id)s, %(corporation_id)s, %(alliance_id)s,
              %(ship_type_id)s, %(damage_taken)s, %(items)s)
            ON CONFLICT (killmail_id) DO UPDATE SET
              character_id = EXCLUDED.character_id,
              corporation_id = EXCLUDED.corporation_id,
              alliance_id = EXCLUDED.alliance_id,
              ship_type_id = EXCLUDED.ship_type_id,
              damage_taken = EXCLUDED.damage_taken,
              items = EXCLUDED.items
            """,
            dict(row, items=Json(row["items"])),
        )

    def load_attackers(self, killmail_id):
        self.cur.execute(
            f"SELECT id, {', '.join(ATTACKER_COLUMNS)} FROM kill_attackers "
            "WHERE killmail_id = %s ORDER BY id",
            (killmail_id,),
        )
        return [(r[0], AttackerRow(*r[1:])) for r in self.cur.fetchall()]

    def delete_attackers(self, killmail_id, row_ids):
        self.cur.execute("DELETE FROM kill_attackers WHERE killmail_id = %s AND id = ANY(%s)",
                         (killmail_id, list(row_ids)))

    def insert_attackers(self, rows):
        execute_values(
            self.cur,
            f"INSERT INTO kill_attackers ({', '.join(ATTACKER_COLUMNS)}) VALUES %s",
            [r.values() for r in rows],
            page_size=500,
        )

    def load_participants(self, killmail_id):
        self.cur.execute(
            "SELECT killmail_id, character_id, role FROM kill_characters WHERE killmail_id = %s",
            (killmail_id,),
        )
        return [ParticipantRow(int(r[0]), int(r[1]), r[2]) for r in self.cur.fetchall()]

    def delete_participants(self, killmail_id, character_ids):
        self.cur.execute(
            "DELETE FROM kill_characters WHERE killmail_id = %s AND character_id = ANY(%s)",
            (killmail_id, list(character_ids)),
        )

    def insert_participants(self, rows):
        execute_values(
            self.cur,
            "INSERT INTO kill_characters (killmail_id, character_id, role) VALUES %s",
            [(r.killmail_id, r.character_id, r.role) for r in rows],
        )

    def upsert_loss(self, row):
        self.cur.execute(
            """
            INSERT INTO loss_facts (killmail_id, character_id, kill_time, ship_type_id,
              system_id, total_value, attacker_count, labels)
            VALUES (%(killmail_id)s, %(character_id)s, %(kill_time)s, %(ship_type_id)s,
              %(system_id)s, %(total_value)s, %(attacker_count)s, %(labels)s)
            ON CONFLICT (killmail_id) DO UPDATE SET
              character_id = EXCLUDED.character_id,
              kill_time = EXCLUDED.kill_time,
              ship_type_id = EXCLUDED.ship_type_id,
              system_id = EXCLUDED.system_id,
              total_value = EXCLUDED.total_value,
              attacker_count = EXCLUDED.attacker_count,
              labels = EXCLUDED.labels
            """,
            row,
        )


class PostgresKillStore:
    def __init__(self, connection_factory: Optional[Callable[[], ContextManager]] = None):
        if connection_factory is None:
            from db_utils import _get_db_connection
            connection_factory = _get_db_connection
        self._connection = connection_factory

    @contextmanager
    def transaction(self) -> Iterator[PostgresUnitOfWork]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                yield PostgresUnitOfWork(cur)

    def partial_killmails(self, limit: int = 50, max_attempts: int = 5) -> List[CombatEvent]:
        """Stored killmails still waiting for ESI detail.

        Never-attempted rows come first, then the least recently attempted,
        newest kill first within each. Rows that already failed
        ``max_attempts`` lookups are left out. Returned events carry the
        stored zKillboard summary so a re-reconcile does not lose it.
        """
        start = time.perf_counter()
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT killmail_id, kill_time, hash, system_id, npc, solo, awox,
                           labels, total_value, points
                    FROM kill_facts
                    WHERE NOT fully_populated AND hash IS NOT NULL
                      AND enrich_attempts < %s
                    ORDER BY last_enrich_attempt_at ASC NULLS FIRST, kill_time DESC
                    LIMIT %s
                    """,
                    (max_attempts, limit),
                )
                rows = cur.fetchall()
        metrics.database_operation("select_partial", "kill_facts",
                                   int((time.perf_counter() - start) * 1000), rows_affected=len(rows))
        return [
            CombatEvent(
                killmail_id=int(r[0]),
                kill_time=r[1],
                hash=r[2],
                system_id=r[3],
                zkb=ValueSummary(npc=r[4], solo=r[5], awox=r[6], labels=tuple(r[7] or ()),
                                 total_value=float(r[8] or 0), points=int(r[9] or 0)),
                fully_populated=False,
            )
            for r in rows
        ]

    def record_enrich_failure(self, killmail_id: int) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE kill_facts
                    SET enrich_attempts = enrich_attempts + 1, last_enrich_attempt_at = now()
                    WHERE killmail_id = %s
                    """,
                    (killmail_id,),
                )


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------

class KillReconciler:
    """Converges stored rows for one killmail to the state implied by the event."""

    def __init__(self, store, registry: TrackedEntityRegistry):
        self.store = store
        self.registry = registry

    @METRICS.timer("ingest.reconcile_ms")
    def reconcile(self, event: CombatEvent) -> ReconcileResult:
        if event.kill_time is None:
            raise ValueError(f"killmail {event.killmail_id} has no kill_time; cannot store")

        kid = event.killmail_id
        tracked = self.registry.snapshot()
        result = ReconcileResult(killmail_id=kid)
        try:
            with self.store.transaction() as uow:
                uow.lock_event(kid)
                if not event.fully_populated and uow.stored_fully_populated(kid):
                    # Never downgrade a complete killmail with a partial redelivery.
                    result.skipped_partial = True
                    return result

                uow.upsert_kill(build_kill_row(event))
                uow.upsert_victim(build_victim_row(event))

                attacker_diff = diff_rows(uow.load_attackers(kid), build_attacker_rows(event))
                if attacker_diff.to_delete:
                    uow.delete_attackers(kid, [key for key, _ in attacker_diff.to_delete])
                if attacker_diff.to_insert:
                    uow.insert_attackers(attacker_diff.to_insert)
                result.attackers_deleted = len(attacker_diff.to_delete)
                result.attackers_inserted = len(attacker_diff.to_insert)

                stored_participants = [(p.character_id, p) for p in uow.load_participants(kid)]
                participant_diff = diff_rows(stored_participants,
                                             build_participant_rows(event, tracked))
                if participant_diff.to_delete:
                    uow.delete_participants(kid, [key for key, _ in participant_diff.to_delete])
                if participant_diff.to_insert:
                    uow.insert_participants(participant_diff.to_insert)
                result.participants_deleted = len(participant_diff.to_delete)
                result.participants_inserted = len(participant_diff.to_insert)

                victim_id = event.victim.character_id
                if victim_id and victim_id in tracked:
                    uow.upsert_loss(build_loss_row(event))
                    result.loss_upserted = True
        except Exception as e:
            METRICS.increment("ingest.reconcile_failed")
            raise ReconcileError(kid, e) from e

        METRICS.increment("ingest.attacker_rows_written", result.attackers_inserted)
        logger.debug("killmail_reconciled", killmail_id=kid,
                     attackers_inserted=result.attackers_inserted,
                     attackers_deleted=result.attackers_deleted,
                     participants_inserted=result.participants_inserted,
                     participants_deleted=result.participants_deleted,
                     loss_upserted=result.loss_upserted)
        return result
