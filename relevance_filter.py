# relevance_filter.py – Drop killmails that involve no tracked character
from __future__ import annotations
from typing import List

from killmail_models import CombatEvent
from tracked_registry import TrackedEntityRegistry


class RelevanceFilter:
    """Decides relevance from the inbound event alone. Never calls out."""

    def __init__(self, registry: TrackedEntityRegistry):
        self.registry = registry

    def is_relevant(self, event: CombatEvent) -> bool:
        tracked = self.registry.snapshot()
        if not tracked:
            return False
        if event.victim.character_id in tracked:
            return True
        return any(a.character_id in tracked for a in event.attackers)

    def tracked_participants(self, event: CombatEvent) -> List[int]:
        tracked = self.registry.snapshot()
        return [cid for cid in dict.fromkeys(event.participant_ids()) if cid in tracked]
