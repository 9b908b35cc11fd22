"""Tests for rebuilding timers from persisted state."""

import pytest

from aegis.datatypes.moderation_datatypes import (
    BotTempbanEntry,
    ModerationCollections,
    ModerationKind,
    MuteEntry,
    TempbanEntry,
)
from fakes import START_MS, FakeStore, ManualClock, build_core, open_repo


def persisted_state() -> ModerationCollections:
    return ModerationCollections(
        mutes={"1": [MuteEntry("1", "10", START_MS + 60_000), MuteEntry("1", "11", START_MS - 1)]},
        tempbans={"1": [TempbanEntry("1", "12", START_MS + 120_000, attempts=2)]},
        bot_tempbans=[BotTempbanEntry("13", START_MS)],
        bot_bans=["14"],
        warns={"1": {"10": 2}},
    )


class TestRehydrator:

    @pytest.mark.asyncio
    async def test_arms_exactly_the_unexpired_entries(self):
        core = build_core(store=FakeStore(persisted_state()))

        report = await core.rehydrator.rehydrate()

        assert core.state.loaded
        assert report.armed == {ModerationKind.MUTE: 1, ModerationKind.TEMPBAN: 1, ModerationKind.BOT_TEMPBAN: 0}
        assert report.skipped == {ModerationKind.MUTE: 1, ModerationKind.TEMPBAN: 0, ModerationKind.BOT_TEMPBAN: 1}
        assert set(core.registry.pending_keys()) == {
            MuteEntry("1", "10", 0).key,
            TempbanEntry("1", "12", 0).key,
        }
        assert core.state.collections.warns == {"1": {"10": 2}}
        await core.stop()

    @pytest.mark.asyncio
    async def test_rehydrated_timers_fire_at_their_original_instant(self):
        core = build_core(store=FakeStore(persisted_state()))
        await core.rehydrator.rehydrate()

        await core.clock.advance(59)
        assert core.membership.notifications == []

        await core.clock.advance(1)
        assert len(core.membership.notifications) == 1

        await core.clock.advance(60)
        assert core.membership.added == [("1", "12", START_MS + 120_000)]
        assert core.store.persisted.tempbans == {}

    @pytest.mark.asyncio
    async def test_past_due_entries_are_not_executed(self):
        core = build_core(store=FakeStore(persisted_state()))
        await core.rehydrator.rehydrate()
        await core.clock.advance(1)

        assert core.membership.added == []
        assert core.store.persisted.bot_tempbans == [BotTempbanEntry("13", START_MS)]
        await core.stop()

    @pytest.mark.asyncio
    async def test_rehydrates_from_sqlite_after_restart(self, tmp_path):
        path = tmp_path / "aegis.db"
        clock = ManualClock()

        async with open_repo(path) as (_, repo):
            first = build_core(store=repo, clock=clock)
            await first.start()
            await first.scheduler.mute("1", "10", 600)
            await first.scheduler.bot_tempban("11", 600)
            await first.stop()

        async with open_repo(path) as (_, repo):
            second = build_core(store=repo, clock=clock)
            report = await second.rehydrator.rehydrate()
            assert report.total_armed == 2
            assert await second.scheduler.is_muted("1", "10")
            assert await second.scheduler.is_bot_banned("11")
            await second.stop()
