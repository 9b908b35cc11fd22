"""
Logic run when a moderation timer fires.

Tempban expiry is a small state machine::

    ARMED -> EXECUTING -> SUCCEEDED | RETRY_PENDING | GIVEN_UP

A failed restore (the call raised, returned False, or the scope could not be
reached) is retried at a constant interval until ``tempban_max_retries``
retries have been spent. After that the entry is left in place without a
timer for an operator to resolve.

Mute and bot-tempban expiry are single-attempt: the entry is deleted and
persisted first, then a best-effort notification is sent (mutes only).

Each timer action is bound to the entry it was armed for. If that entry was
released and a new one created under the same key while the action waited
for the lock, the action leaves the new entry alone.

The state lock is never held across a call to the membership gateway.
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence

import asyncio

from aegis.configuration.app_configuration import SchedulerSettings
from aegis.datatypes.collaborators import Clock, MembershipGateway
from aegis.datatypes.moderation_datatypes import (
    CollectionName,
    ModerationEntry,
    ModerationKind,
    SchedulerKey,
    TempbanEntry,
)
from aegis.scheduler.scheduler_state import SchedulerState
from aegis.scheduler.timer_registry import TimerAction
from aegis.util.clock import millis_until
from aegis.util.logger import get_logger

logger = get_logger("expiry_executor")


class TempbanOutcome(Enum):
    """Terminal state of one tempban execution attempt."""

    SUCCEEDED = "succeeded"
    RETRY_PENDING = "retry_pending"
    GIVEN_UP = "given_up"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class ExpiryExecutor:
    """
    Executes expiries for every moderation kind.

    Args:
        state: Shared scheduler state (collections, store, registry, lock).
        membership: Gateway used to restore membership and notify scopes.
        settings: Retry budget and interval.
    """

    def __init__(
        self,
        state: SchedulerState,
        membership: MembershipGateway,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self.state = state
        self.membership = membership
        self.settings = settings or SchedulerSettings()

    @property
    def clock(self) -> Clock:
        return self.state.registry.clock

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------

    def action_for(self, entry: ModerationEntry) -> TimerAction:
        """Return the coroutine function that expires ``entry`` and nothing newer under its key."""
        key = entry.key
        if key.kind is ModerationKind.MUTE:
            async def _run_mute() -> None:
                await self.run_mute_expiry(key, entry)
            return _run_mute
        if key.kind is ModerationKind.TEMPBAN:
            async def _run_tempban() -> None:
                await self.run_tempban_expiry(key, entry)
            return _run_tempban

        async def _run_bot_tempban() -> None:
            await self.run_bot_tempban_expiry(key, entry)
        return _run_bot_tempban

    def arm(self, entry: ModerationEntry, delay_seconds: float | None = None) -> None:
        """Arm the timer for ``entry``; by default it fires at ``entry.expires_at``."""
        if delay_seconds is None:
            delay_seconds = millis_until(entry.expires_at, self.clock.now_millis()) / 1000
        self.state.registry.arm(entry.key, delay_seconds, self.action_for(entry))

    def _claim(self, key: SchedulerKey, armed: ModerationEntry | None) -> ModerationEntry | None:
        """Entry under ``key`` if it is still the one the timer was armed for. Call with the lock held."""
        entry = self.state.find(key)
        if entry is None:
            return None
        if armed is not None and entry is not armed:
            logger.info("[EXPIRY] %s was replaced since its timer was armed; leaving the newer entry", key)
            return None
        return entry

    # ------------------------------------------------------------------
    # Mute
    # ------------------------------------------------------------------

    async def run_mute_expiry(self, key: SchedulerKey, armed: ModerationEntry | None = None) -> bool:
        """
        Lift an expired mute.

        Returns:
            bool: True if an entry was removed, False if it was already gone.
        """
        async with self.state.lock:
            entry = self._claim(key, armed)
            if entry is None:
                logger.debug("[EXPIRY] Mute %s already lifted or replaced", key)
                return False
            self.state.remove(entry)
            try:
                await self.state.persist(CollectionName.MUTES)
            except Exception:
                logger.exception("[EXPIRY] Failed to persist mute removal for %s", key)

        logger.info("[EXPIRY] Mute expired for %s in %s", key.subject_id, key.scope_id)
        await self._notify(
            key.scope_id,
            f"🔊 <@{key.subject_id}> has been unmuted (mute expired).",
            [key.subject_id],
        )
        return True

    # ------------------------------------------------------------------
    # Tempban
    # ------------------------------------------------------------------

    async def run_tempban_expiry(self, key: SchedulerKey, armed: ModerationEntry | None = None) -> TempbanOutcome:
        """
        Try to restore membership for an expired tempban.

        Returns:
            TempbanOutcome: SUCCEEDED, RETRY_PENDING, GIVEN_UP, or CANCELLED
            when the entry was released before or during execution.
        """
        async with self.state.lock:
            entry = self._claim(key, armed)
            if entry is None:
                logger.debug("[EXPIRY] Tempban %s already released or replaced", key)
                return TempbanOutcome.CANCELLED
            attempts = entry.attempts if isinstance(entry, TempbanEntry) else 0

        restored, error = await self._restore(key)

        async with self.state.lock:
            current = self.state.find(key)
            if current is not entry:
                logger.info("[EXPIRY] Tempban %s was released during execution; dropping result", key)
                return TempbanOutcome.CANCELLED

            if restored:
                self.state.remove(current)
                await self._persist_tempbans(key)
                outcome = TempbanOutcome.SUCCEEDED
            elif attempts < self.settings.tempban_max_retries:
                interval = self.settings.tempban_retry_interval_seconds
                current.attempts = attempts + 1
                current.expires_at = self.clock.now_millis() + int(interval * 1000)
                await self._persist_tempbans(key)
                self.arm(current, interval)
                logger.warning(
                    "[EXPIRY] Restore failed for %s (%s); retry %d/%d in %.0fs",
                    key, error, current.attempts, self.settings.tempban_max_retries, interval,
                )
                outcome = TempbanOutcome.RETRY_PENDING
            else:
                logger.warning(
                    "[EXPIRY] Restore failed for %s after %d retries (%s); giving up, entry kept for manual release",
                    key, attempts, error,
                )
                outcome = TempbanOutcome.GIVEN_UP

        if outcome is TempbanOutcome.SUCCEEDED:
            logger.info("[EXPIRY] Tempban lifted for %s in %s", key.subject_id, key.scope_id)
            await self._notify(
                key.scope_id,
                f"✅ <@{key.subject_id}> was added back to the group after a temporary ban.",
                [key.subject_id],
            )
        return outcome

    async def _restore(self, key: SchedulerKey) -> tuple[bool, str | None]:
        try:
            restored = await self.membership.add_member(key.scope_id, key.subject_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return False, str(exc) or type(exc).__name__
        if restored is False:
            return False, "restore call reported failure"
        return True, None

    async def _persist_tempbans(self, key: SchedulerKey) -> None:
        try:
            await self.state.persist(CollectionName.TEMPBANS)
        except Exception:
            logger.exception("[EXPIRY] Failed to persist tempban state for %s", key)

    # ------------------------------------------------------------------
    # Bot tempban
    # ------------------------------------------------------------------

    async def run_bot_tempban_expiry(self, key: SchedulerKey, armed: ModerationEntry | None = None) -> bool:
        """
        Lift an expired bot-level tempban. No external action is involved.

        Returns:
            bool: True if the ban was lifted and saved.
        """
        async with self.state.lock:
            entry = self._claim(key, armed)
            if entry is None:
                logger.debug("[EXPIRY] Bot tempban %s already lifted or replaced", key)
                return False
            self.state.remove(entry)
            try:
                await self.state.persist(CollectionName.BOT_TEMPBANS)
            except Exception:
                logger.critical("[EXPIRY] Could not persist bot tempban removal for %s", key, exc_info=True)
                return False

        logger.info("[EXPIRY] Bot tempban expired and removed for %s", key.subject_id)
        return True

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify(self, scope_id: str, text: str, mentioned: Sequence[str]) -> None:
        try:
            await self.membership.notify(scope_id, text, mentioned)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[EXPIRY] Notification to %s failed: %s", scope_id, exc)
