"""killmail_models.py

Canonical killmail shape shared by every feed.

Both upstream shapes are mapped here, once, at the adapter boundary:

  zKillboard / RedisQ package:
    killID | killmail_id, killmail_time, solar_system_id,
    victim{...}, attackers[...],
    zkb{locationID, hash, fittedValue, droppedValue, destroyedValue,
        totalValue, points, npc, solo, awox, labels}

  websocket-style payload:
    killmail_id, kill_time, system_id, victim{...}, attackers[...],
    zkb{location_id, hash, fitted_value, ..., total_value, ...}

ESI killmail detail responses use the first shape without ``zkb``.
Downstream code never looks at raw dicts.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple


def _opt_int(val) -> Optional[int]:
    """Convert to int, returning None for missing/zero/garbage ids."""
    try:
        num = int(val)
    except (TypeError, ValueError):
        return None
    return num or None


def safe_int(val, default=0) -> int:
    """Convert to int, returning default on failure."""
    try:
        return int(val) if val is not None else default
    except (ValueError, TypeError):
        return default


def safe_float(val, default=0.0) -> float:
    """Convert to float, returning default on failure."""
    try:
        return float(val) if val is not None else default
    except (ValueError, TypeError):
        return default


def _opt_float(val) -> Optional[float]:
    try:
        return float(val) if val is not None else None
    except (ValueError, TypeError):
        return None


def parse_kill_time(value) -> Optional[datetime]:
    """ISO-8601 (with or without trailing Z) -> aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _first(d: Dict[str, Any], *keys, default=None):
    for key in keys:
        if key in d and d[key] is not None:
            return d[key]
    return default


@dataclass(frozen=True)
class Item:
    type_id: int
    flag: int = 0
    quantity_destroyed: int = 0
    quantity_dropped: int = 0
    singleton: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "type_id": self.type_id,
            "flag": self.flag,
            "quantity_destroyed": self.quantity_destroyed,
            "quantity_dropped": self.quantity_dropped,
            "singleton": self.singleton,
        }


@dataclass(frozen=True)
class Principal:
    """The destroyed party."""
    character_id: Optional[int] = None
    corporation_id: Optional[int] = None
    alliance_id: Optional[int] = None
    ship_type_id: Optional[int] = None
    damage_taken: int = 0
    items: Tuple[Item, ...] = ()


@dataclass(frozen=True)
class Counterparty:
    """One attacker credited on the killmail."""
    character_id: Optional[int] = None
    corporation_id: Optional[int] = None
    alliance_id: Optional[int] = None
    damage_done: int = 0
    final_blow: bool = False
    security_status: Optional[float] = None
    ship_type_id: Optional[int] = None
    weapon_type_id: Optional[int] = None


@dataclass(frozen=True)
class ValueSummary:
    location_id: Optional[int] = None
    fitted_value: float = 0.0
    dropped_value: float = 0.0
    destroyed_value: float = 0.0
    total_value: float = 0.0
    points: int = 0
    npc: bool = False
    solo: bool = False
    awox: bool = False
    labels: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CombatEvent:
    killmail_id: int
    kill_time: Optional[datetime] = None
    hash: Optional[str] = None
    system_id: Optional[int] = None
    victim: Principal = field(default_factory=Principal)
    attackers: Tuple[Counterparty, ...] = ()
    zkb: ValueSummary = field(default_factory=ValueSummary)
    fully_populated: bool = True

    def participant_ids(self) -> List[int]:
        """Victim id first, then attacker ids in delivery order."""
        ids = []
        if self.victim.character_id:
            ids.append(self.victim.character_id)
        ids.extend(a.character_id for a in self.attackers if a.character_id)
        return ids

    def missing_fields(self) -> List[str]:
        """Fields reconciliation wants that the feed did not deliver."""
        missing = []
        if self.kill_time is None:
            missing.append("kill_time")
        if self.victim.character_id is None:
            missing.append("victim.character_id")
        if self.victim.ship_type_id is None:
            missing.append("victim.ship_type_id")
        if not self.attackers:
            missing.append("attackers")
        return missing

    def overlay(self, fetched: "CombatEvent") -> "CombatEvent":
        """Merge a fetched detail record over this one.

        Present fetched values win; absent ones keep the original. The value
        summary and hash only come from zKillboard and are kept as-is.
        """
        v, fv = self.victim, fetched.victim
        victim = Principal(
            character_id=fv.character_id or v.character_id,
            corporation_id=fv.corporation_id or v.corporation_id,
            alliance_id=fv.alliance_id or v.alliance_id,
            ship_type_id=fv.ship_type_id or v.ship_type_id,
            damage_taken=fv.damage_taken or v.damage_taken,
            items=fv.items or v.items,
        )
        return replace(
            self,
            kill_time=fetched.kill_time or self.kill_time,
            system_id=fetched.system_id or self.system_id,
            victim=victim,
            attackers=fetched.attackers or self.attackers,
            fully_populated=True,
        )


def _normalize_items(raw_items: Optional[Iterable[Dict[str, Any]]]) -> Tuple[Item, ...]:
    items = []
    for it in raw_items or ():
        type_id = _opt_int(it.get("type_id") or it.get("item_type_id"))
        if type_id is None:
            continue
        items.append(Item(
            type_id=type_id,
            flag=safe_int(it.get("flag")),
            quantity_destroyed=safe_int(it.get("quantity_destroyed")),
            quantity_dropped=safe_int(it.get("quantity_dropped")),
            singleton=safe_int(it.get("singleton")),
        ))
    return tuple(items)


def _normalize_attackers(raw_attackers) -> Tuple[Counterparty, ...]:
    attackers = []
    final_blow_seen = False
    for a in raw_attackers or ():
        final_blow = bool(a.get("final_blow")) and not final_blow_seen
        final_blow_seen = final_blow_seen or final_blow
        attackers.append(Counterparty(
            character_id=_opt_int(a.get("character_id")),
            corporation_id=_opt_int(a.get("corporation_id")),
            alliance_id=_opt_int(a.get("alliance_id")),
            damage_done=safe_int(a.get("damage_done")),
            final_blow=final_blow,
            security_status=_opt_float(a.get("security_status")),
            ship_type_id=_opt_int(a.get("ship_type_id")),
            weapon_type_id=_opt_int(a.get("weapon_type_id")),
        ))
    return tuple(attackers)


def _normalize_zkb(zkb: Dict[str, Any]) -> ValueSummary:
    labels = zkb.get("labels") or ()
    return ValueSummary(
        location_id=_opt_int(_first(zkb, "locationID", "location_id")),
        fitted_value=safe_float(_first(zkb, "fittedValue", "fitted_value")),
        dropped_value=safe_float(_first(zkb, "droppedValue", "dropped_value")),
        destroyed_value=safe_float(_first(zkb, "destroyedValue", "destroyed_value")),
        total_value=safe_float(_first(zkb, "totalValue", "total_value")),
        points=safe_int(zkb.get("points")),
        npc=bool(zkb.get("npc", False)),
        solo=bool(zkb.get("solo", False)),
        awox=bool(zkb.get("awox", False)),
        labels=tuple(str(label) for label in labels),
    )


def normalize_killmail(raw: Dict[str, Any]) -> CombatEvent:
    """Map any inbound killmail dict onto CombatEvent.

    Raises ValueError only when there is no usable killmail id; every other
    gap is defaulted and left for enrichment.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"killmail payload must be a dict, got {type(raw).__name__}")
    killmail_id = _opt_int(_first(raw, "killmail_id", "killID"))
    if killmail_id is None:
        raise ValueError("killmail payload has no killmail_id/killID")

    zkb = raw.get("zkb") or {}
    victim_raw = raw.get("victim") or {}
    victim = Principal(
        character_id=_opt_int(victim_raw.get("character_id")),
        corporation_id=_opt_int(victim_raw.get("corporation_id")),
        alliance_id=_opt_int(victim_raw.get("alliance_id")),
        ship_type_id=_opt_int(victim_raw.get("ship_type_id")),
        damage_taken=safe_int(victim_raw.get("damage_taken")),
        items=_normalize_items(victim_raw.get("items")),
    )
    event = CombatEvent(
        killmail_id=killmail_id,
        kill_time=parse_kill_time(_first(raw, "killmail_time", "kill_time")),
        hash=_first(zkb, "hash") or raw.get("hash") or raw.get("killmail_hash"),
        system_id=_opt_int(_first(raw, "solar_system_id", "system_id")),
        victim=victim,
        attackers=_normalize_attackers(raw.get("attackers")),
        zkb=_normalize_zkb(zkb),
    )
    return replace(event, fully_populated=not event.missing_fields())
