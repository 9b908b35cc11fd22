"""
Public façade over the moderation state.

Every command-side mutation of mutes, tempbans, bot bans and warn counters
goes through :class:`ModerationScheduler`. Each operation resolves the subject
id to its canonical form, mutates the in-memory collections, writes them to
the durable store and then arms or cancels the matching timer, all while
holding the shared state lock. The lock is released around calls to the
membership gateway (tempban, kick, warn escalation) and the state is
re-checked afterwards.

Entries found past their expiry with no live or running timer are pruned on
access. Tempbans whose restore attempts are exhausted are kept so they can be
listed and released by an operator.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Tuple

from aegis.configuration.app_configuration import SchedulerSettings
from aegis.datatypes.collaborators import IdentityResolver, MembershipGateway
from aegis.datatypes.moderation_datatypes import (
    BOT_SCOPE,
    BotTempbanEntry,
    CollectionName,
    ModerationEntry,
    ModerationKind,
    MuteEntry,
    OperationResult,
    ResultReason,
    TempbanEntry,
    WarnResult,
)
from aegis.scheduler.expiry_executor import ExpiryExecutor
from aegis.scheduler.scheduler_state import SchedulerState, collection_for
from aegis.scheduler.timer_registry import TimerRegistry
from aegis.util.clock import millis_until
from aegis.util.identity import identity_resolver
from aegis.util.logger import get_logger

logger = get_logger("moderation_scheduler")


class ModerationScheduler:
    """
    Command-facing API of the moderation core.

    Args:
        state: Shared scheduler state; must be rehydrated before use.
        executor: Expiry executor used to arm timers.
        membership: Gateway for removing members and kicking on warn escalation.
        resolver: Maps raw subject ids to canonical ids.
        settings: Warn threshold, retry budget and bot warn tempban length.
    """

    def __init__(
        self,
        state: SchedulerState,
        executor: ExpiryExecutor,
        membership: MembershipGateway,
        resolver: IdentityResolver = identity_resolver,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self.state = state
        self.executor = executor
        self.membership = membership
        self.resolver = resolver
        self.settings = settings or executor.settings

    @property
    def registry(self) -> TimerRegistry:
        return self.state.registry

    def now_millis(self) -> int:
        return self.state.registry.clock.now_millis()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_loaded(self) -> None:
        if not self.state.loaded:
            raise RuntimeError("Moderation state has not been rehydrated; refusing to handle commands")

    def _resolve(self, subject_id: object) -> str:
        return self.resolver.resolve(subject_id)

    @staticmethod
    def _duration_ms(duration_seconds: float) -> int | None:
        try:
            millis = int(float(duration_seconds) * 1000)
        except (TypeError, ValueError):
            return None
        return millis if millis > 0 else None

    def _is_given_up(self, entry: ModerationEntry) -> bool:
        return isinstance(entry, TempbanEntry) and entry.attempts >= self.settings.tempban_max_retries

    def _prune_if_stale(self, entry: ModerationEntry) -> bool:
        """Drop a past-due entry nobody will execute. Caller holds the lock."""
        if entry.expires_at > self.now_millis():
            return False
        if self.registry.is_active(entry.key) or self._is_given_up(entry):
            return False
        self.state.remove(entry)
        logger.info("[MODERATION SCHEDULER] Pruned stale %s entry %s", entry.kind, entry.key)
        return True

    def _live(self, kind: ModerationKind, scope_id: str, subject_id: str) -> Tuple[ModerationEntry | None, bool]:
        """Return the matching entry (None if absent or pruned) and whether a prune happened."""
        entry = self.state.find_matching(kind, scope_id, subject_id)
        if entry is None:
            return None, False
        if self._prune_if_stale(entry):
            return None, True
        return entry, False

    async def _commit_new(self, entry: ModerationEntry, *extra: CollectionName) -> None:
        """Add, persist and arm ``entry``; the in-memory add is undone if the save fails."""
        self.state.add(entry)
        try:
            await self.state.persist(collection_for(entry.kind), *extra)
        except Exception:
            self.state.remove(entry)
            raise
        self.executor.arm(entry)

    async def _commit_removal(self, entry: ModerationEntry) -> None:
        """Remove, persist and cancel ``entry``; restored in memory if the save fails."""
        self.state.remove(entry)
        try:
            await self.state.persist(collection_for(entry.kind))
        except Exception:
            self.state.add(entry)
            raise
        self.registry.cancel(entry.key)

    async def _call_remove_member(self, scope_id: str, subject_id: str) -> Tuple[bool, str | None]:
        try:
            removed = await self.membership.remove_member(scope_id, subject_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[MODERATION SCHEDULER] Removing %s from %s failed: %s", subject_id, scope_id, exc)
            return False, str(exc) or type(exc).__name__
        if removed is False:
            return False, "membership service refused the removal"
        return True, None

    # ------------------------------------------------------------------
    # Mutes
    # ------------------------------------------------------------------

    async def mute(self, scope_id: str, subject_id: object, duration_seconds: float) -> OperationResult:
        """Mute ``subject_id`` in ``scope_id`` for ``duration_seconds``.

        Returns:
            OperationResult: ``ALREADY_RESTRICTED`` if a live mute exists,
            ``INVALID_DURATION`` for non-positive durations.
        """
        self._require_loaded()
        scope = str(scope_id)
        subject = self._resolve(subject_id)
        duration_ms = self._duration_ms(duration_seconds)
        if duration_ms is None:
            return OperationResult.failure(ResultReason.INVALID_DURATION, f"invalid duration {duration_seconds!r}")

        async with self.state.lock:
            existing, _ = self._live(ModerationKind.MUTE, scope, subject)
            if existing is not None:
                return OperationResult.failure(ResultReason.ALREADY_RESTRICTED)
            entry = MuteEntry(scope_id=scope, subject_id=subject, expires_at=self.now_millis() + duration_ms)
            await self._commit_new(entry)

        logger.info("[MODERATION SCHEDULER] Muted %s in %s for %.0fs", subject, scope, duration_ms / 1000)
        return OperationResult.success(entry)

    async def unmute(self, scope_id: str, subject_id: object) -> OperationResult:
        self._require_loaded()
        scope = str(scope_id)
        subject = self._resolve(subject_id)

        async with self.state.lock:
            entry = self.state.find_matching(ModerationKind.MUTE, scope, subject)
            if entry is None:
                return OperationResult.failure(ResultReason.NOT_FOUND)
            await self._commit_removal(entry)

        logger.info("[MODERATION SCHEDULER] Unmuted %s in %s", subject, scope)
        return OperationResult.success(entry)

    async def is_muted(self, scope_id: str, subject_id: object) -> bool:
        """Return whether ``subject_id`` is currently muted in ``scope_id``.

        An expired entry found here is removed and the removal persisted.
        """
        self._require_loaded()
        scope = str(scope_id)
        if not self.state.collections.mutes.get(scope):
            return False
        subject = self._resolve(subject_id)

        async with self.state.lock:
            entry, pruned = self._live(ModerationKind.MUTE, scope, subject)
            if pruned:
                await self.state.persist(CollectionName.MUTES)
            return entry is not None and entry.expires_at > self.now_millis()

    async def list_mutes(self, scope_id: str) -> List[Tuple[MuteEntry, int]]:
        """Return the live mutes of ``scope_id`` with their remaining seconds."""
        self._require_loaded()
        scope = str(scope_id)
        async with self.state.lock:
            entries = list(self.state.collections.mutes.get(scope, []))
            pruned = [entry for entry in entries if self._prune_if_stale(entry)]
            if pruned:
                await self.state.persist(CollectionName.MUTES)
            now = self.now_millis()
            return [
                (entry, millis_until(entry.expires_at, now) // 1000)
                for entry in entries
                if entry not in pruned
            ]

    # ------------------------------------------------------------------
    # Tempbans
    # ------------------------------------------------------------------

    async def tempban(self, scope_id: str, subject_id: object, duration_seconds: float) -> OperationResult:
        """Remove ``subject_id`` from ``scope_id`` and restore it after ``duration_seconds``.

        The removal is performed before any state is written. If it fails no
        entry is created.

        Returns:
            OperationResult: ``ALREADY_RESTRICTED``, ``EXTERNAL_ACTION_FAILED``,
            ``INVALID_DURATION`` or success carrying the new entry.
        """
        self._require_loaded()
        scope = str(scope_id)
        subject = self._resolve(subject_id)
        duration_ms = self._duration_ms(duration_seconds)
        if duration_ms is None:
            return OperationResult.failure(ResultReason.INVALID_DURATION, f"invalid duration {duration_seconds!r}")

        async with self.state.lock:
            existing, pruned = self._live(ModerationKind.TEMPBAN, scope, subject)
            if existing is not None:
                return OperationResult.failure(ResultReason.ALREADY_RESTRICTED)
            if pruned:
                await self.state.persist(CollectionName.TEMPBANS)

        removed, detail = await self._call_remove_member(scope, subject)
        if not removed:
            return OperationResult.failure(ResultReason.EXTERNAL_ACTION_FAILED, detail)

        async with self.state.lock:
            existing, _ = self._live(ModerationKind.TEMPBAN, scope, subject)
            if existing is not None:
                logger.info("[MODERATION SCHEDULER] Concurrent tempban for %s in %s won; keeping it", subject, scope)
                return OperationResult.failure(ResultReason.ALREADY_RESTRICTED)
            entry = TempbanEntry(scope_id=scope, subject_id=subject, expires_at=self.now_millis() + duration_ms)
            await self._commit_new(entry)

        logger.info("[MODERATION SCHEDULER] Tempbanned %s from %s for %.0fs", subject, scope, duration_ms / 1000)
        return OperationResult.success(entry)

    async def unban(self, scope_id: str, subject_id: object) -> OperationResult:
        """Release a tempban early. Membership is not restored by this call."""
        self._require_loaded()
        scope = str(scope_id)
        subject = self._resolve(subject_id)

        async with self.state.lock:
            entry = self.state.find_matching(ModerationKind.TEMPBAN, scope, subject)
            if entry is None:
                return OperationResult.failure(ResultReason.NOT_FOUND)
            await self._commit_removal(entry)

        logger.info("[MODERATION SCHEDULER] Released tempban of %s in %s", subject, scope)
        return OperationResult.success(entry)

    async def list_tempbans(self, scope_id: str) -> List[TempbanEntry]:
        self._require_loaded()
        async with self.state.lock:
            return list(self.state.collections.tempbans.get(str(scope_id), []))

    async def given_up_tempbans(self) -> List[TempbanEntry]:
        """Tempbans whose restore retries are exhausted and that await an operator."""
        self._require_loaded()
        async with self.state.lock:
            return [
                entry
                for entries in self.state.collections.tempbans.values()
                for entry in entries
                if self._is_given_up(entry) and not self.registry.is_active(entry.key)
            ]

    # ------------------------------------------------------------------
    # Bot-level restrictions
    # ------------------------------------------------------------------

    async def bot_tempban(self, subject_id: object, duration_seconds: float) -> OperationResult:
        self._require_loaded()
        subject = self._resolve(subject_id)
        duration_ms = self._duration_ms(duration_seconds)
        if duration_ms is None:
            return OperationResult.failure(ResultReason.INVALID_DURATION, f"invalid duration {duration_seconds!r}")

        async with self.state.lock:
            existing, _ = self._live(ModerationKind.BOT_TEMPBAN, BOT_SCOPE, subject)
            if existing is not None:
                return OperationResult.failure(ResultReason.ALREADY_RESTRICTED)
            entry = BotTempbanEntry(subject_id=subject, expires_at=self.now_millis() + duration_ms)
            await self._commit_new(entry)

        logger.info("[MODERATION SCHEDULER] Bot tempbanned %s for %.0fs", subject, duration_ms / 1000)
        return OperationResult.success(entry)

    async def bot_unban(self, subject_id: object) -> OperationResult:
        self._require_loaded()
        subject = self._resolve(subject_id)

        async with self.state.lock:
            entry = self.state.find_matching(ModerationKind.BOT_TEMPBAN, BOT_SCOPE, subject)
            if entry is None:
                return OperationResult.failure(ResultReason.NOT_FOUND)
            await self._commit_removal(entry)

        logger.info("[MODERATION SCHEDULER] Lifted bot tempban of %s", subject)
        return OperationResult.success(entry)

    async def bot_ban(self, subject_id: object) -> OperationResult:
        """Permanently ban ``subject_id`` from bot commands, replacing any bot tempban."""
        self._require_loaded()
        subject = self._resolve(subject_id)

        async with self.state.lock:
            bans = self.state.collections.bot_bans
            if subject in bans:
                return OperationResult.failure(ResultReason.ALREADY_RESTRICTED)
            tempban = self.state.find_matching(ModerationKind.BOT_TEMPBAN, BOT_SCOPE, subject)
            bans.append(subject)
            if tempban is not None:
                self.state.remove(tempban)
            try:
                await self.state.persist(CollectionName.BOT_BANS, CollectionName.BOT_TEMPBANS)
            except Exception:
                bans.remove(subject)
                if tempban is not None:
                    self.state.add(tempban)
                raise
            if tempban is not None:
                self.registry.cancel(tempban.key)

        logger.info("[MODERATION SCHEDULER] Bot banned %s", subject)
        return OperationResult.success()

    async def lift_bot_ban(self, subject_id: object) -> OperationResult:
        self._require_loaded()
        subject = self._resolve(subject_id)

        async with self.state.lock:
            bans = self.state.collections.bot_bans
            if subject not in bans:
                return OperationResult.failure(ResultReason.NOT_FOUND)
            bans.remove(subject)
            try:
                await self.state.persist(CollectionName.BOT_BANS)
            except Exception:
                bans.append(subject)
                raise

        logger.info("[MODERATION SCHEDULER] Lifted bot ban of %s", subject)
        return OperationResult.success()

    async def is_bot_banned(self, subject_id: object) -> bool:
        """True when ``subject_id`` is permanently bot-banned or holds a live bot tempban."""
        self._require_loaded()
        subject = self._resolve(subject_id)

        async with self.state.lock:
            if subject in self.state.collections.bot_bans:
                return True
            entry, pruned = self._live(ModerationKind.BOT_TEMPBAN, BOT_SCOPE, subject)
            if pruned:
                await self.state.persist(CollectionName.BOT_TEMPBANS)
            return entry is not None and entry.expires_at > self.now_millis()

    # ------------------------------------------------------------------
    # Warn counters
    # ------------------------------------------------------------------

    async def warn(self, scope_id: str, subject_id: object) -> WarnResult:
        """Increment the warn counter; at the threshold the subject is kicked.

        The counter resets to zero only when the kick succeeds. A failed kick
        leaves the counter at its incremented value.
        """
        self._require_loaded()
        scope = str(scope_id)
        subject = self._resolve(subject_id)
        threshold = self.settings.warn_threshold

        async with self.state.lock:
            count = self.state.warn_count(scope, subject) + 1
            self.state.set_warn_count(scope, subject, count)
            await self.state.persist(CollectionName.WARNS)
        logger.info("[MODERATION SCHEDULER] Warned %s in %s (%d/%d)", subject, scope, count, threshold)

        if count < threshold:
            return WarnResult(count=count, threshold=threshold)

        kicked, _ = await self._call_remove_member(scope, subject)

        async with self.state.lock:
            if not kicked:
                current = self.state.warn_count(scope, subject)
                logger.warning("[MODERATION SCHEDULER] Warn threshold kick of %s in %s failed", subject, scope)
                return WarnResult(count=current, threshold=threshold, escalation_failed=True)
            self.state.set_warn_count(scope, subject, 0)
            await self.state.persist(CollectionName.WARNS)

        logger.info("[MODERATION SCHEDULER] Kicked %s from %s after %d warnings", subject, scope, count)
        return WarnResult(count=0, threshold=threshold, escalated=True)

    async def clear_warns(self, scope_id: str, subject_id: object) -> OperationResult:
        self._require_loaded()
        scope = str(scope_id)
        subject = self._resolve(subject_id)

        async with self.state.lock:
            if self.state.warn_count(scope, subject) == 0:
                return OperationResult.failure(ResultReason.NOT_FOUND)
            self.state.set_warn_count(scope, subject, 0)
            await self.state.persist(CollectionName.WARNS)
        return OperationResult.success()

    async def list_warns(self, scope_id: str) -> Dict[str, int]:
        self._require_loaded()
        async with self.state.lock:
            return dict(self.state.collections.warns.get(str(scope_id), {}))

    async def kick(self, scope_id: str, subject_id: object) -> OperationResult:
        """Remove ``subject_id`` from ``scope_id`` and reset its warn counter."""
        self._require_loaded()
        scope = str(scope_id)
        subject = self._resolve(subject_id)

        removed, detail = await self._call_remove_member(scope, subject)
        if not removed:
            return OperationResult.failure(ResultReason.EXTERNAL_ACTION_FAILED, detail)

        async with self.state.lock:
            if self.state.warn_count(scope, subject):
                self.state.set_warn_count(scope, subject, 0)
                await self.state.persist(CollectionName.WARNS)

        logger.info("[MODERATION SCHEDULER] Kicked %s from %s", subject, scope)
        return OperationResult.success()

    async def bot_warn(self, subject_id: object) -> WarnResult:
        """Increment the bot-level warn counter.

        At the threshold the counter resets and a bot tempban is created. Both
        changes are saved in one transaction.
        """
        self._require_loaded()
        subject = self._resolve(subject_id)
        threshold = self.settings.warn_threshold

        async with self.state.lock:
            count = self.state.warn_count(BOT_SCOPE, subject) + 1
            if count < threshold:
                self.state.set_warn_count(BOT_SCOPE, subject, count)
                await self.state.persist(CollectionName.WARNS)
                return WarnResult(count=count, threshold=threshold)

            previous = self.state.find_matching(ModerationKind.BOT_TEMPBAN, BOT_SCOPE, subject)
            if previous is not None:
                self.state.remove(previous)
            entry = BotTempbanEntry(
                subject_id=subject,
                expires_at=self.now_millis() + int(self.settings.bot_warn_tempban_seconds * 1000),
            )
            self.state.set_warn_count(BOT_SCOPE, subject, 0)
            try:
                await self._commit_new(entry, CollectionName.WARNS)
            except Exception:
                self.state.set_warn_count(BOT_SCOPE, subject, count - 1)
                if previous is not None:
                    self.state.add(previous)
                raise

        logger.info("[MODERATION SCHEDULER] Bot warn threshold reached for %s; bot tempbanned", subject)
        return WarnResult(count=0, threshold=threshold, escalated=True)

    async def clear_bot_warns(self, subject_id: object) -> OperationResult:
        return await self.clear_warns(BOT_SCOPE, subject_id)
