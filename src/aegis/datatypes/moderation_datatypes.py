"""
Data structures for time-bounded moderation state.

This module defines the persisted entry types (mute, tempban, bot tempban),
the scheduler key used to address timers, the aggregate of the five durable
collections, and the result types returned by the scheduler façade.

All instants are epoch milliseconds. Bot-level entries carry an empty scope.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping

BOT_SCOPE = ""


class ModerationKind(Enum):
    """Kinds of time-bounded restriction that own a timer."""

    MUTE = "mute"
    TEMPBAN = "tempban"
    BOT_TEMPBAN = "bot_tempban"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class SchedulerKey:
    """Sole handle used to arm, cancel and replace a timer."""
    kind: ModerationKind
    scope_id: str
    subject_id: str

    def __str__(self) -> str:
        return f"{self.kind.value}|{self.scope_id}|{self.subject_id}"


@dataclass(slots=True)
class MuteEntry:
    scope_id: str
    subject_id: str
    expires_at: int

    kind = ModerationKind.MUTE

    @property
    def key(self) -> SchedulerKey:
        return SchedulerKey(self.kind, self.scope_id, self.subject_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"subject_id": self.subject_id, "expires_at": self.expires_at}

    @classmethod
    def from_dict(cls, scope_id: str, data: Mapping[str, Any]) -> "MuteEntry":
        return cls(scope_id=str(scope_id), subject_id=str(data["subject_id"]), expires_at=int(data["expires_at"]))


@dataclass(slots=True)
class TempbanEntry:
    """A temporary removal from a group.

    ``attempts`` counts failed restore attempts; it is advanced only by the
    expiry executor.
    """
    scope_id: str
    subject_id: str
    expires_at: int
    attempts: int = 0

    kind = ModerationKind.TEMPBAN

    @property
    def key(self) -> SchedulerKey:
        return SchedulerKey(self.kind, self.scope_id, self.subject_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"subject_id": self.subject_id, "expires_at": self.expires_at, "attempts": self.attempts}

    @classmethod
    def from_dict(cls, scope_id: str, data: Mapping[str, Any]) -> "TempbanEntry":
        attempts = int(data.get("attempts", 0) or 0)
        if attempts < 0:
            raise ValueError(f"negative attempts: {attempts}")
        return cls(
            scope_id=str(scope_id),
            subject_id=str(data["subject_id"]),
            expires_at=int(data["expires_at"]),
            attempts=attempts,
        )


@dataclass(slots=True)
class BotTempbanEntry:
    subject_id: str
    expires_at: int

    kind = ModerationKind.BOT_TEMPBAN

    @property
    def scope_id(self) -> str:
        return BOT_SCOPE

    @property
    def key(self) -> SchedulerKey:
        return SchedulerKey(self.kind, BOT_SCOPE, self.subject_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"subject_id": self.subject_id, "expires_at": self.expires_at}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BotTempbanEntry":
        return cls(subject_id=str(data["subject_id"]), expires_at=int(data["expires_at"]))


ModerationEntry = MuteEntry | TempbanEntry | BotTempbanEntry


class CollectionName(Enum):
    """Names of the independently persisted collections."""

    MUTES = "mutes"
    TEMPBANS = "tempbans"
    BOT_TEMPBANS = "bot_tempbans"
    BOT_BANS = "bot_bans"
    WARNS = "warns"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class ModerationCollections:
    """The five durable collections, held in memory.

    Attributes:
        mutes: scope -> list of mute entries
        tempbans: scope -> list of tempban entries
        bot_tempbans: process-global bot tempbans
        bot_bans: permanently bot-banned subjects
        warns: scope -> subject -> count; the empty scope holds bot warns
    """
    mutes: Dict[str, List[MuteEntry]] = field(default_factory=dict)
    tempbans: Dict[str, List[TempbanEntry]] = field(default_factory=dict)
    bot_tempbans: List[BotTempbanEntry] = field(default_factory=list)
    bot_bans: List[str] = field(default_factory=list)
    warns: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def entries(self) -> List[ModerationEntry]:
        """Every timer-bearing entry across all collections."""
        result: List[ModerationEntry] = []
        for scope_entries in self.mutes.values():
            result.extend(scope_entries)
        for scope_entries in self.tempbans.values():
            result.extend(scope_entries)
        result.extend(self.bot_tempbans)
        return result

    def replace_with(self, other: "ModerationCollections") -> None:
        self.mutes = other.mutes
        self.tempbans = other.tempbans
        self.bot_tempbans = other.bot_tempbans
        self.bot_bans = other.bot_bans
        self.warns = other.warns


class ResultReason(Enum):
    """Machine-checkable outcome of a scheduler operation."""

    OK = "ok"
    NOT_FOUND = "not_found"
    ALREADY_RESTRICTED = "already_restricted"
    EXTERNAL_ACTION_FAILED = "external_action_failed"
    INVALID_DURATION = "invalid_duration"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class OperationResult:
    ok: bool
    reason: ResultReason
    entry: ModerationEntry | None = None
    detail: str | None = None

    @classmethod
    def success(cls, entry: ModerationEntry | None = None) -> "OperationResult":
        return cls(ok=True, reason=ResultReason.OK, entry=entry)

    @classmethod
    def failure(cls, reason: ResultReason, detail: str | None = None) -> "OperationResult":
        return cls(ok=False, reason=reason, detail=detail)


@dataclass(slots=True)
class WarnResult:
    """Outcome of a warn increment.

    Attributes:
        count: counter value after the operation (0 once escalated)
        threshold: configured escalation threshold
        escalated: whether the threshold triggered the escalation action
        escalation_failed: the escalation was due but its external action failed
    """
    count: int
    threshold: int
    escalated: bool = False
    escalation_failed: bool = False
