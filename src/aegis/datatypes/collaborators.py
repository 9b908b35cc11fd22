"""
Interfaces of the external collaborators consumed by the moderation core.

The scheduler never talks to the chat platform directly; it calls these
protocols. ``aegis.bot.membership_gateway`` provides the Discord
implementation and the tests provide in-memory fakes.
"""

from __future__ import annotations

from typing import Protocol, Sequence


class MembershipGateway(Protocol):
    """Group-membership mutation and scope notifications.

    ``remove_member``/``add_member`` report failure either by returning
    False or by raising; the executor treats both as retryable.
    """

    async def remove_member(self, scope_id: str, subject_id: str) -> bool: ...

    async def add_member(self, scope_id: str, subject_id: str) -> bool: ...

    async def notify(self, scope_id: str, text: str, mentioned_subjects: Sequence[str] = ()) -> None: ...


class IdentityResolver(Protocol):
    def resolve(self, raw_id: object) -> str: ...


class Clock(Protocol):
    def now_millis(self) -> int: ...

    async def sleep(self, seconds: float) -> None: ...
