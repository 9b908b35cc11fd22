"""
Shared aggregate owned by the scheduler façade and the expiry executor.

``SchedulerState`` bundles the in-memory collections, the durable store that
mirrors them, the timer registry and the single lock that serialises every
read-modify-write of the collections together with its save.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List

from aegis.datatypes.moderation_datatypes import (
    BotTempbanEntry,
    CollectionName,
    ModerationCollections,
    ModerationEntry,
    ModerationKind,
    MuteEntry,
    SchedulerKey,
    TempbanEntry,
)
from aegis.repositories.moderation_state_repo import ModerationStateRepo
from aegis.scheduler.timer_registry import TimerRegistry
from aegis.util.identity import subjects_match

_COLLECTION_FOR_KIND = {
    ModerationKind.MUTE: CollectionName.MUTES,
    ModerationKind.TEMPBAN: CollectionName.TEMPBANS,
    ModerationKind.BOT_TEMPBAN: CollectionName.BOT_TEMPBANS,
}


def collection_for(kind: ModerationKind) -> CollectionName:
    return _COLLECTION_FOR_KIND[kind]


class SchedulerState:
    """In-memory moderation state plus its persistence and timers.

    Callers must hold ``lock`` while reading-then-writing ``collections`` and
    until the matching ``persist`` call returns.
    """

    def __init__(self, store: ModerationStateRepo, registry: TimerRegistry) -> None:
        self.store = store
        self.registry = registry
        self.collections = ModerationCollections()
        self.lock = asyncio.Lock()
        self.loaded = False

    async def persist(self, *names: CollectionName) -> None:
        await self.store.save(self.collections, names=names or None)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _scoped(self, kind: ModerationKind) -> Dict[str, list]:
        if kind is ModerationKind.MUTE:
            return self.collections.mutes
        if kind is ModerationKind.TEMPBAN:
            return self.collections.tempbans
        raise ValueError(f"{kind} is not a scoped kind")

    def find(self, key: SchedulerKey) -> ModerationEntry | None:
        """Return the entry stored under exactly ``key``."""
        if key.kind is ModerationKind.BOT_TEMPBAN:
            return next((e for e in self.collections.bot_tempbans if e.subject_id == key.subject_id), None)
        entries = self._scoped(key.kind).get(key.scope_id, [])
        return next((e for e in entries if e.subject_id == key.subject_id), None)

    def find_matching(self, kind: ModerationKind, scope_id: str, subject_id: str) -> ModerationEntry | None:
        """Return the entry for ``subject_id`` using exact or numeric-normalized matching."""
        if kind is ModerationKind.BOT_TEMPBAN:
            candidates: List[ModerationEntry] = list(self.collections.bot_tempbans)
        else:
            candidates = list(self._scoped(kind).get(scope_id, []))
        exact = next((e for e in candidates if e.subject_id == subject_id), None)
        if exact is not None:
            return exact
        return next((e for e in candidates if subjects_match(e.subject_id, subject_id)), None)

    # ------------------------------------------------------------------
    # Mutations (caller holds the lock)
    # ------------------------------------------------------------------

    def add(self, entry: ModerationEntry) -> None:
        if isinstance(entry, BotTempbanEntry):
            self.collections.bot_tempbans.append(entry)
        elif isinstance(entry, MuteEntry):
            self.collections.mutes.setdefault(entry.scope_id, []).append(entry)
        elif isinstance(entry, TempbanEntry):
            self.collections.tempbans.setdefault(entry.scope_id, []).append(entry)
        else:
            raise TypeError(f"Unsupported entry type {type(entry).__name__}")

    def remove(self, entry: ModerationEntry) -> bool:
        """Remove ``entry``; empty scope lists are dropped. Returns False if absent."""
        if isinstance(entry, BotTempbanEntry):
            before = len(self.collections.bot_tempbans)
            self.collections.bot_tempbans = [e for e in self.collections.bot_tempbans if e is not entry]
            return len(self.collections.bot_tempbans) != before

        scoped = self._scoped(entry.kind)
        entries = scoped.get(entry.scope_id)
        if not entries or entry not in entries:
            return False
        remaining = [e for e in entries if e is not entry]
        if remaining:
            scoped[entry.scope_id] = remaining
        else:
            del scoped[entry.scope_id]
        return True

    def warn_count(self, scope_id: str, subject_id: str) -> int:
        return self.collections.warns.get(scope_id, {}).get(subject_id, 0)

    def set_warn_count(self, scope_id: str, subject_id: str, count: int) -> None:
        """Store ``count``; zero removes the counter (and an emptied scope)."""
        counters = self.collections.warns.setdefault(scope_id, {})
        if count > 0:
            counters[subject_id] = count
        else:
            counters.pop(subject_id, None)
        if not counters:
            del self.collections.warns[scope_id]
