"""End-to-end scenarios over virtual time."""

import asyncio
from unittest.mock import patch

import pytest

from aegis.datatypes.moderation_datatypes import BotTempbanEntry, ModerationCollections, MuteEntry, TempbanEntry
from aegis.scheduler.expiry_executor import TempbanOutcome
from fakes import MINUTE, START_MS, FakeStore, build_core, open_repo, settle


class TestTempbanLifecycle:

    @pytest.mark.asyncio
    async def test_restore_retries_every_minute_until_it_succeeds(self):
        core = build_core()
        await core.start()
        core.membership.add_results = [False, False, False]

        result = await core.scheduler.tempban("G1", "U1", 15 * MINUTE)
        assert result.ok

        await core.clock.advance(20 * MINUTE)

        attempt_minutes = [(at - START_MS) // 60_000 for _, _, at in core.membership.added]
        assert attempt_minutes == [15, 16, 17, 18]
        assert core.store.persisted.tempbans == {}
        assert len(core.membership.notifications) == 1
        assert len(core.registry) == 0

    @pytest.mark.asyncio
    async def test_retry_budget_is_five_then_gives_up(self):
        core = build_core()
        await core.start()
        core.membership.add_results = [False] * 10

        await core.scheduler.tempban("G1", "U1", 15 * MINUTE)
        await core.clock.advance(60 * MINUTE)

        attempt_minutes = [(at - START_MS) // 60_000 for _, _, at in core.membership.added]
        assert attempt_minutes == [15, 16, 17, 18, 19, 20]
        stored = core.store.persisted.tempbans["G1"][0]
        assert stored.attempts == 5
        assert len(core.registry) == 0
        assert [entry.subject_id for entry in await core.scheduler.given_up_tempbans()] == ["U1"]
        assert core.membership.notifications == []

    @pytest.mark.asyncio
    async def test_unban_during_retry_backoff_stops_retries(self):
        core = build_core()
        await core.start()
        core.membership.add_results = [False]

        await core.scheduler.tempban("G1", "U1", MINUTE)
        await core.clock.advance(MINUTE)
        assert len(core.registry) == 1

        assert (await core.scheduler.unban("G1", "U1")).ok
        await core.clock.advance(10 * MINUTE)

        assert len(core.membership.added) == 1
        assert core.store.persisted.tempbans == {}

    @pytest.mark.asyncio
    async def test_unban_while_restore_in_flight_drops_the_result(self):
        core = build_core()
        await core.start()
        core.membership.add_gate = asyncio.Event()
        core.membership.add_results = [False]

        banned = await core.scheduler.tempban("G1", "U1", MINUTE)
        key = banned.entry.key
        await core.clock.advance(MINUTE)
        assert core.registry.is_active(key)

        assert (await core.scheduler.unban("G1", "U1")).ok
        core.membership.add_gate.set()
        await settle()

        assert not core.registry.is_active(key)
        assert core.store.persisted.tempbans == {}
        assert core.membership.notifications == []

    @pytest.mark.asyncio
    async def test_executor_reports_cancelled_when_released_mid_flight(self):
        core = build_core()
        await core.start()
        entry = TempbanEntry("G1", "U1", START_MS)
        core.state.add(entry)
        core.membership.add_gate = asyncio.Event()

        running = asyncio.ensure_future(core.executor.run_tempban_expiry(entry.key))
        await settle()
        async with core.state.lock:
            core.state.remove(entry)
        core.membership.add_gate.set()

        assert await running is TempbanOutcome.CANCELLED


class TestMuteLifecycle:

    @pytest.mark.asyncio
    async def test_mute_expires_and_notifies_once(self):
        core = build_core()
        await core.start()

        await core.scheduler.mute("G1", "U1", 5 * MINUTE)
        await core.clock.advance(5 * MINUTE)
        await core.clock.advance(5 * MINUTE)

        assert core.store.persisted.mutes == {}
        assert len(core.membership.notifications) == 1
        assert not await core.scheduler.is_muted("G1", "U1")

    @pytest.mark.asyncio
    async def test_remute_after_unmute_uses_new_expiry(self):
        core = build_core()
        await core.start()

        await core.scheduler.mute("G1", "U1", 5 * MINUTE)
        await core.scheduler.unmute("G1", "U1")
        await core.scheduler.mute("G1", "U1", 10 * MINUTE)

        await core.clock.advance(5 * MINUTE)
        assert await core.scheduler.is_muted("G1", "U1")
        assert core.membership.notifications == []

        await core.clock.advance(5 * MINUTE)
        assert not await core.scheduler.is_muted("G1", "U1")
        assert len(core.membership.notifications) == 1

    @pytest.mark.asyncio
    async def test_fired_timer_does_not_lift_a_newer_mute(self):
        core = build_core()
        await core.start()
        await core.scheduler.mute("G1", "U1", MINUTE)

        core.store.save_gate = asyncio.Event()
        unmuting = asyncio.ensure_future(core.scheduler.unmute("G1", "U1"))
        await settle()
        remuting = asyncio.ensure_future(core.scheduler.mute("G1", "U1", 10 * MINUTE))
        await settle()

        await core.clock.advance(MINUTE)
        core.store.save_gate.set()
        await settle()

        assert (await unmuting).ok
        assert (await remuting).ok
        assert await core.scheduler.is_muted("G1", "U1")
        assert core.registry.is_armed(MuteEntry("G1", "U1", 0).key)
        assert core.membership.notifications == []

        await core.clock.advance(10 * MINUTE)
        assert not await core.scheduler.is_muted("G1", "U1")
        assert len(core.membership.notifications) == 1


class TestBotTempbanLifecycle:

    @pytest.mark.asyncio
    async def test_fired_timer_does_not_lift_a_newer_bot_tempban(self):
        core = build_core()
        await core.start()
        await core.scheduler.bot_tempban("U1", MINUTE)

        core.store.save_gate = asyncio.Event()
        unbanning = asyncio.ensure_future(core.scheduler.bot_unban("U1"))
        await settle()
        rebanning = asyncio.ensure_future(core.scheduler.bot_tempban("U1", 10 * MINUTE))
        await settle()

        await core.clock.advance(MINUTE)
        core.store.save_gate.set()
        await settle()

        assert (await unbanning).ok
        assert (await rebanning).ok
        assert await core.scheduler.is_bot_banned("U1")
        assert core.registry.is_armed(BotTempbanEntry("U1", 0).key)
        assert [entry.subject_id for entry in core.store.persisted.bot_tempbans] == ["U1"]

        await core.clock.advance(10 * MINUTE)
        assert not await core.scheduler.is_bot_banned("U1")


class TestCrashConsistency:

    @pytest.mark.asyncio
    async def test_retry_progress_survives_restart(self, tmp_path):
        path = tmp_path / "aegis.db"

        async with open_repo(path) as (_, repo):
            core = build_core(store=repo)
            await core.start()
            core.state.add(TempbanEntry("G1", "U1", START_MS))
            await core.state.persist()
            core.membership.add_results = [False, False]

            assert await core.executor.run_tempban_expiry(TempbanEntry("G1", "U1", 0).key) is TempbanOutcome.RETRY_PENDING
            await core.stop()

        async with open_repo(path) as (_, repo):
            loaded = await repo.load()

        stored = loaded.tempbans["G1"][0]
        assert stored.attempts == 1
        assert stored.expires_at == START_MS + 60_000

    @pytest.mark.asyncio
    async def test_failed_save_leaves_previous_state_on_disk(self, tmp_path):
        path = tmp_path / "aegis.db"

        async with open_repo(path) as (manager, repo):
            core = build_core(store=repo)
            await core.start()
            await core.scheduler.mute("G1", "U1", 600)

            original_executemany = manager.connection.executemany

            async def crashing_executemany(*args, **kwargs):
                await original_executemany(*args, **kwargs)
                raise OSError("power loss")

            with patch.object(manager.connection, "executemany", new=crashing_executemany):
                with pytest.raises(OSError):
                    await core.scheduler.mute("G1", "U3", 600)

            assert len(core.state.collections.mutes["G1"]) == 1
            await core.stop()

        async with open_repo(path) as (_, repo):
            loaded = await repo.load()

        assert [entry.subject_id for entry in loaded.mutes["G1"]] == ["U1"]
        assert loaded == ModerationCollections(mutes=loaded.mutes)

    @pytest.mark.asyncio
    async def test_tempban_saved_but_never_armed_is_rearmed_on_restart(self):
        core = build_core()
        await core.start()
        with patch.object(core.executor, "arm", side_effect=RuntimeError("process died")):
            with pytest.raises(RuntimeError):
                await core.scheduler.tempban("G1", "U1", 15 * MINUTE)
        assert len(core.registry) == 0
        assert [entry.subject_id for entry in core.store.persisted.tempbans["G1"]] == ["U1"]
        await core.stop()

        restarted = build_core(store=FakeStore(core.store.persisted))
        await restarted.start()
        assert restarted.registry.is_armed(TempbanEntry("G1", "U1", 0).key)

        await restarted.clock.advance(15 * MINUTE)

        assert [(scope, subject) for scope, subject, _ in restarted.membership.added] == [("G1", "U1")]
        assert restarted.store.persisted.tempbans == {}
        await restarted.stop()


class TestOverridesAcrossKinds:

    @pytest.mark.asyncio
    async def test_unmute_leaves_pending_tempban_retry_armed(self):
        core = build_core()
        await core.start()
        core.membership.add_results = [False]

        await core.scheduler.tempban("G1", "U1", MINUTE)
        await core.scheduler.mute("G1", "U1", 10 * MINUTE)
        await core.clock.advance(MINUTE)

        tempban_key = TempbanEntry("G1", "U1", 0).key
        assert core.registry.is_armed(tempban_key)
        assert core.state.find(tempban_key).attempts == 1

        assert (await core.scheduler.unmute("G1", "U1")).ok
        assert core.registry.is_armed(tempban_key)
        assert not core.registry.is_armed(MuteEntry("G1", "U1", 0).key)

        await core.clock.advance(MINUTE)

        assert len(core.membership.added) == 2
        assert core.store.persisted.tempbans == {}
        assert core.store.persisted.mutes == {}
