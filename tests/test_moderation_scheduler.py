"""Tests for the moderation scheduler façade."""

import typing

import pytest

from aegis.datatypes.moderation_datatypes import (
    BOT_SCOPE,
    BotTempbanEntry,
    CollectionName,
    ModerationCollections,
    MuteEntry,
    ResultReason,
    TempbanEntry,
)
from aegis.scheduler.moderation_scheduler import ModerationScheduler
from aegis.scheduler.timer_registry import TimerRegistry
from fakes import MINUTE, START_MS, FakeStore, build_core


async def started(store=None):
    core = build_core(store=store)
    await core.start()
    return core


class TestLoadGate:

    @pytest.mark.asyncio
    async def test_commands_refused_before_rehydration(self):
        core = build_core()
        with pytest.raises(RuntimeError):
            await core.scheduler.mute("1", "10", 60)

    def test_registry_accessor_is_typed(self):
        core = build_core()
        hints = typing.get_type_hints(ModerationScheduler.registry.fget)
        assert hints["return"] is TimerRegistry
        assert core.scheduler.registry is core.registry


class TestMutes:

    @pytest.mark.asyncio
    async def test_mute_persists_then_arms(self):
        core = await started()

        result = await core.scheduler.mute("1", "<@10>", 10 * MINUTE)

        assert result.ok
        assert result.entry == MuteEntry("1", "10", START_MS + 10 * MINUTE * 1000)
        assert core.store.persisted.mutes == {"1": [result.entry]}
        assert core.registry.is_armed(result.entry.key)
        assert await core.scheduler.is_muted("1", "10")
        await core.stop()

    @pytest.mark.asyncio
    async def test_duplicate_mute_is_rejected(self):
        core = await started()
        await core.scheduler.mute("1", "10", 60)

        again = await core.scheduler.mute("1", "10@c.us", 120)

        assert not again.ok
        assert again.reason is ResultReason.ALREADY_RESTRICTED
        assert len(core.store.persisted.mutes["1"]) == 1
        await core.stop()

    @pytest.mark.asyncio
    async def test_duplicate_detection_matches_legacy_encodings(self):
        legacy = ModerationCollections(mutes={"1": [MuteEntry("1", "10@c.us", START_MS + 60_000)]})
        core = await started(FakeStore(legacy))

        result = await core.scheduler.mute("1", "10", 60)

        assert result.reason is ResultReason.ALREADY_RESTRICTED
        await core.stop()

    @pytest.mark.asyncio
    async def test_non_positive_duration_is_invalid(self):
        core = await started()
        for duration in (0, -5):
            result = await core.scheduler.mute("1", "10", duration)
            assert result.reason is ResultReason.INVALID_DURATION
        assert core.store.persisted.mutes == {}

    @pytest.mark.asyncio
    async def test_unmute_removes_and_cancels(self):
        core = await started()
        muted = await core.scheduler.mute("1", "10", 60)

        result = await core.scheduler.unmute("1", "10")

        assert result.ok
        assert core.store.persisted.mutes == {}
        assert not core.registry.is_armed(muted.entry.key)
        await core.clock.advance(120)
        assert core.membership.notifications == []

    @pytest.mark.asyncio
    async def test_unmute_unknown_subject(self):
        core = await started()
        result = await core.scheduler.unmute("1", "10")
        assert result.reason is ResultReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_expired_mute_is_cleaned_on_access(self):
        stale = ModerationCollections(mutes={"1": [MuteEntry("1", "10", START_MS - 1)]})
        core = await started(FakeStore(stale))

        assert await core.scheduler.is_muted("1", "10") is False
        assert core.store.persisted.mutes == {}

    @pytest.mark.asyncio
    async def test_failed_save_leaves_no_entry_or_timer(self):
        core = await started()
        core.store.fail_saves = 1

        with pytest.raises(OSError):
            await core.scheduler.mute("1", "10", 60)

        assert core.state.collections.mutes == {}
        assert len(core.registry) == 0

    @pytest.mark.asyncio
    async def test_list_mutes_reports_remaining_seconds(self):
        core = await started()
        await core.scheduler.mute("1", "10", 10 * MINUTE)
        await core.clock.advance(4 * MINUTE)

        listed = await core.scheduler.list_mutes("1")

        assert [(entry.subject_id, remaining) for entry, remaining in listed] == [("10", 6 * MINUTE)]
        await core.stop()


class TestTempbans:

    @pytest.mark.asyncio
    async def test_tempban_removes_member_before_recording(self):
        core = await started()

        result = await core.scheduler.tempban("1", "10", 15 * MINUTE)

        assert result.ok
        assert core.membership.removed == [("1", "10")]
        assert core.store.persisted.tempbans["1"][0].attempts == 0
        assert core.registry.is_armed(result.entry.key)
        await core.stop()

    @pytest.mark.asyncio
    async def test_failed_removal_creates_nothing(self):
        core = await started()
        core.membership.remove_results = [False]

        result = await core.scheduler.tempban("1", "10", 15 * MINUTE)

        assert result.reason is ResultReason.EXTERNAL_ACTION_FAILED
        assert core.store.persisted.tempbans == {}
        assert len(core.registry) == 0

    @pytest.mark.asyncio
    async def test_removal_exception_is_reported(self):
        core = await started()
        core.membership.remove_results = [PermissionError("missing permission")]

        result = await core.scheduler.tempban("1", "10", 15 * MINUTE)

        assert result.reason is ResultReason.EXTERNAL_ACTION_FAILED
        assert "missing permission" in result.detail

    @pytest.mark.asyncio
    async def test_duplicate_tempban_skips_removal(self):
        core = await started()
        await core.scheduler.tempban("1", "10", 15 * MINUTE)

        again = await core.scheduler.tempban("1", "10", 15 * MINUTE)

        assert again.reason is ResultReason.ALREADY_RESTRICTED
        assert core.membership.removed == [("1", "10")]
        await core.stop()

    @pytest.mark.asyncio
    async def test_unban_releases_without_restoring(self):
        core = await started()
        banned = await core.scheduler.tempban("1", "10", 15 * MINUTE)

        result = await core.scheduler.unban("1", "10")

        assert result.ok
        assert core.store.persisted.tempbans == {}
        assert not core.registry.is_armed(banned.entry.key)
        await core.clock.advance(30 * MINUTE)
        assert core.membership.added == []

    @pytest.mark.asyncio
    async def test_given_up_tempban_is_kept_and_listed(self):
        given_up = TempbanEntry("1", "10", START_MS - 1, attempts=5)
        core = await started(FakeStore(ModerationCollections(tempbans={"1": [given_up]})))

        duplicate = await core.scheduler.tempban("1", "10", 60)

        assert duplicate.reason is ResultReason.ALREADY_RESTRICTED
        assert await core.scheduler.given_up_tempbans() == [given_up]
        assert (await core.scheduler.unban("1", "10")).ok
        assert await core.scheduler.given_up_tempbans() == []


class TestBotRestrictions:

    @pytest.mark.asyncio
    async def test_bot_tempban_and_unban(self):
        core = await started()

        result = await core.scheduler.bot_tempban("10", 60)
        assert result.ok
        assert result.entry.scope_id == BOT_SCOPE
        assert await core.scheduler.is_bot_banned("10")

        assert (await core.scheduler.bot_unban("10")).ok
        assert not await core.scheduler.is_bot_banned("10")
        assert len(core.registry) == 0

    @pytest.mark.asyncio
    async def test_bot_tempban_expires(self):
        core = await started()
        await core.scheduler.bot_tempban("10", 60)

        await core.clock.advance(60)

        assert core.store.persisted.bot_tempbans == []
        assert not await core.scheduler.is_bot_banned("10")

    @pytest.mark.asyncio
    async def test_bot_ban_replaces_bot_tempban(self):
        core = await started()
        await core.scheduler.bot_tempban("10", 60)

        assert (await core.scheduler.bot_ban("<@!10>")).ok

        assert core.store.persisted.bot_bans == ["10"]
        assert core.store.persisted.bot_tempbans == []
        assert len(core.registry) == 0
        assert (await core.scheduler.bot_ban("10")).reason is ResultReason.ALREADY_RESTRICTED

        assert (await core.scheduler.lift_bot_ban("10")).ok
        assert not await core.scheduler.is_bot_banned("10")
        assert (await core.scheduler.lift_bot_ban("10")).reason is ResultReason.NOT_FOUND


class TestWarns:

    @pytest.mark.asyncio
    async def test_warns_count_up_and_kick_at_threshold(self):
        core = await started()

        first = await core.scheduler.warn("1", "10")
        second = await core.scheduler.warn("1", "10")
        third = await core.scheduler.warn("1", "10")

        assert (first.count, second.count) == (1, 2)
        assert third.escalated
        assert third.count == 0
        assert core.membership.removed == [("1", "10")]
        assert core.store.persisted.warns == {}

    @pytest.mark.asyncio
    async def test_failed_kick_keeps_counter(self):
        core = await started()
        core.membership.remove_results = [False]
        for _ in range(2):
            await core.scheduler.warn("1", "10")

        result = await core.scheduler.warn("1", "10")

        assert result.escalation_failed
        assert not result.escalated
        assert result.count == 3
        assert core.store.persisted.warns == {"1": {"10": 3}}

    @pytest.mark.asyncio
    async def test_clear_warns(self):
        core = await started()
        await core.scheduler.warn("1", "10")

        assert (await core.scheduler.clear_warns("1", "10")).ok
        assert await core.scheduler.list_warns("1") == {}
        assert (await core.scheduler.clear_warns("1", "10")).reason is ResultReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_kick_resets_counter(self):
        core = await started()
        await core.scheduler.warn("1", "10")

        assert (await core.scheduler.kick("1", "10")).ok
        assert await core.scheduler.list_warns("1") == {}

    @pytest.mark.asyncio
    async def test_bot_warn_threshold_tempbans_for_a_day(self):
        core = await started()
        await core.scheduler.bot_warn("10")
        await core.scheduler.bot_warn("10")

        result = await core.scheduler.bot_warn("10")

        assert result.escalated
        assert core.store.persisted.bot_tempbans == [BotTempbanEntry("10", START_MS + 86_400_000)]
        assert BOT_SCOPE not in core.store.persisted.warns
        assert set(core.store.saves[-1]) == {CollectionName.BOT_TEMPBANS, CollectionName.WARNS}
        assert await core.scheduler.is_bot_banned("10")
        await core.stop()

    @pytest.mark.asyncio
    async def test_bot_warns_are_separate_from_group_warns(self):
        core = await started()
        await core.scheduler.warn("1", "10")
        await core.scheduler.bot_warn("10")

        assert await core.scheduler.list_warns("1") == {"10": 1}
        assert (await core.scheduler.clear_bot_warns("10")).ok
        assert await core.scheduler.list_warns("1") == {"10": 1}
