"""
Durable store for moderation state.

Each of the five collections (mutes, tempbans, bot tempbans, bot bans, warn
counters) is persisted as one JSON document in ``moderation_collections``.
A save rewrites the named collections inside one SQLite transaction, so after
a crash either the previous or the fully updated state is visible.

Loading is tolerant: a missing or unparseable collection degrades to empty
and an empty baseline is written back immediately. Losing moderation state
is preferred over refusing to boot.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List

from aegis.database.db_connection import ConnectionManager, db_connection
from aegis.database.db_schema import SchemaManager
from aegis.datatypes.moderation_datatypes import (
    BotTempbanEntry,
    CollectionName,
    ModerationCollections,
    MuteEntry,
    TempbanEntry,
)
from aegis.util.logger import get_logger

logger = get_logger("moderation_state_repo")

_DECODE_ERRORS = (json.JSONDecodeError, ValueError, TypeError, KeyError, AttributeError)


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------

def _encode(name: CollectionName, collections: ModerationCollections) -> Any:
    if name is CollectionName.MUTES:
        return {scope: [e.to_dict() for e in entries] for scope, entries in collections.mutes.items() if entries}
    if name is CollectionName.TEMPBANS:
        return {scope: [e.to_dict() for e in entries] for scope, entries in collections.tempbans.items() if entries}
    if name is CollectionName.BOT_TEMPBANS:
        return [e.to_dict() for e in collections.bot_tempbans]
    if name is CollectionName.BOT_BANS:
        return list(collections.bot_bans)
    return {scope: dict(counters) for scope, counters in collections.warns.items() if counters}


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------

def _require(value: Any, expected: type, name: CollectionName) -> Any:
    if not isinstance(value, expected):
        raise TypeError(f"{name} must be a {expected.__name__}, got {type(value).__name__}")
    return value


def _decode_scoped(name: CollectionName, payload: Any, factory: Callable[[str, Dict[str, Any]], Any]) -> Dict[str, list]:
    result: Dict[str, list] = {}
    for scope, raw_entries in _require(payload, dict, name).items():
        entries = []
        seen: set[str] = set()
        for raw in _require(raw_entries, list, name):
            try:
                entry = factory(str(scope), raw)
            except _DECODE_ERRORS as exc:
                logger.warning("[MODERATION STORE] Skipping malformed %s entry in scope %s: %s", name, scope, exc)
                continue
            if entry.subject_id in seen:
                logger.warning("[MODERATION STORE] Dropping duplicate %s entry for %s in scope %s", name, entry.subject_id, scope)
                continue
            seen.add(entry.subject_id)
            entries.append(entry)
        if entries:
            result[str(scope)] = entries
    return result


def _decode_bot_tempbans(payload: Any) -> List[BotTempbanEntry]:
    entries: List[BotTempbanEntry] = []
    seen: set[str] = set()
    for raw in _require(payload, list, CollectionName.BOT_TEMPBANS):
        try:
            entry = BotTempbanEntry.from_dict(raw)
        except _DECODE_ERRORS as exc:
            logger.warning("[MODERATION STORE] Skipping malformed bot tempban entry: %s", exc)
            continue
        if entry.subject_id not in seen:
            seen.add(entry.subject_id)
            entries.append(entry)
    return entries


def _decode_bot_bans(payload: Any) -> List[str]:
    bans: List[str] = []
    for raw in _require(payload, list, CollectionName.BOT_BANS):
        subject = str(raw).strip()
        if subject and subject not in bans:
            bans.append(subject)
    return bans


def _decode_warns(payload: Any) -> Dict[str, Dict[str, int]]:
    warns: Dict[str, Dict[str, int]] = {}
    for scope, counters in _require(payload, dict, CollectionName.WARNS).items():
        scope_counters: Dict[str, int] = {}
        for subject, count in _require(counters, dict, CollectionName.WARNS).items():
            try:
                value = int(count)
            except (TypeError, ValueError):
                logger.warning("[MODERATION STORE] Skipping malformed warn counter %s/%s: %r", scope, subject, count)
                continue
            if value > 0:
                scope_counters[str(subject)] = value
        if scope_counters:
            warns[str(scope)] = scope_counters
    return warns


def _apply(name: CollectionName, payload: Any, collections: ModerationCollections) -> None:
    if name is CollectionName.MUTES:
        collections.mutes = _decode_scoped(name, payload, MuteEntry.from_dict)
    elif name is CollectionName.TEMPBANS:
        collections.tempbans = _decode_scoped(name, payload, TempbanEntry.from_dict)
    elif name is CollectionName.BOT_TEMPBANS:
        collections.bot_tempbans = _decode_bot_tempbans(payload)
    elif name is CollectionName.BOT_BANS:
        collections.bot_bans = _decode_bot_bans(payload)
    else:
        collections.warns = _decode_warns(payload)


class ModerationStateRepo:
    """Load and atomically save the moderation collections."""

    def __init__(self, connection: ConnectionManager = db_connection) -> None:
        self._db = connection

    async def initialize(self) -> None:
        """Create the backing tables; the connection must already be open."""
        async with self._db.transaction() as conn:
            await SchemaManager.initialize_schema(conn)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self) -> ModerationCollections:
        """Load all collections, resetting any that are missing or corrupt.

        Returns:
            ModerationCollections: the decoded state. Never raises for bad
            content; only connection-level errors propagate.
        """
        async with self._db.read() as conn:
            cursor = await conn.execute("SELECT name, payload FROM moderation_collections")
            rows = await cursor.fetchall()
        raw_payloads = {str(row[0]): row[1] for row in rows}

        collections = ModerationCollections()
        to_reset: List[CollectionName] = []

        for name in CollectionName:
            raw = raw_payloads.get(name.value)
            if raw is None:
                logger.info("[MODERATION STORE] Collection %s missing, creating empty baseline", name)
                to_reset.append(name)
                continue
            try:
                _apply(name, json.loads(raw), collections)
            except _DECODE_ERRORS as exc:
                logger.warning("[MODERATION STORE] Collection %s is corrupt, resetting to empty: %s", name, exc)
                to_reset.append(name)

        if to_reset:
            await self.save(collections, names=to_reset)

        return collections

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(
        self,
        collections: ModerationCollections,
        names: Iterable[CollectionName] | None = None,
    ) -> None:
        """Rewrite the named collections (all when ``names`` is None) atomically."""
        targets = list(names) if names is not None else list(CollectionName)
        encoded = [(name.value, json.dumps(_encode(name, collections), sort_keys=True)) for name in targets]

        async with self._db.transaction() as conn:
            await conn.executemany(
                """
                INSERT INTO moderation_collections (name, payload, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(name) DO UPDATE SET
                    payload    = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                encoded,
            )
        logger.debug("[MODERATION STORE] Saved %s", ", ".join(name for name, _ in encoded))
