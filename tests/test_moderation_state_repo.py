"""Tests for the SQLite-backed moderation store."""

import json

import pytest

from aegis.datatypes.moderation_datatypes import (
    BotTempbanEntry,
    CollectionName,
    ModerationCollections,
    MuteEntry,
    TempbanEntry,
)
from fakes import open_repo


def sample_collections() -> ModerationCollections:
    return ModerationCollections(
        mutes={"1": [MuteEntry("1", "10", 5_000)]},
        tempbans={"1": [TempbanEntry("1", "11", 6_000, attempts=2)]},
        bot_tempbans=[BotTempbanEntry("12", 7_000)],
        bot_bans=["13"],
        warns={"1": {"10": 2}, "": {"12": 1}},
    )


async def raw_payload(manager, name: str):
    cursor = await manager.connection.execute(
        "SELECT payload FROM moderation_collections WHERE name = ?", (name,)
    )
    row = await cursor.fetchone()
    return None if row is None else row[0]


class TestModerationStateRepo:
    """Loading, saving and recovering the five collections."""

    @pytest.mark.asyncio
    async def test_fresh_database_loads_empty_and_writes_baseline(self, tmp_path):
        async with open_repo(tmp_path / "aegis.db") as (manager, repo):
            collections = await repo.load()

            assert collections == ModerationCollections()
            for name in CollectionName:
                assert await raw_payload(manager, name.value) is not None

    @pytest.mark.asyncio
    async def test_save_and_load_across_connections(self, tmp_path):
        path = tmp_path / "aegis.db"
        async with open_repo(path) as (_, repo):
            await repo.save(sample_collections())

        async with open_repo(path) as (_, repo):
            loaded = await repo.load()

        assert loaded == sample_collections()
        assert loaded.tempbans["1"][0].attempts == 2

    @pytest.mark.asyncio
    async def test_save_only_named_collections(self, tmp_path):
        async with open_repo(tmp_path / "aegis.db") as (_, repo):
            await repo.save(sample_collections())

            changed = sample_collections()
            changed.mutes = {}
            changed.warns = {}
            await repo.save(changed, names=[CollectionName.MUTES])

            loaded = await repo.load()

        assert loaded.mutes == {}
        assert loaded.warns == sample_collections().warns

    @pytest.mark.asyncio
    async def test_corrupt_collection_resets_only_itself(self, tmp_path):
        async with open_repo(tmp_path / "aegis.db") as (manager, repo):
            await repo.save(sample_collections())
            async with manager.transaction() as conn:
                await conn.execute(
                    "UPDATE moderation_collections SET payload = ? WHERE name = ?", ("{not json", "mutes")
                )

            loaded = await repo.load()

            assert loaded.mutes == {}
            assert loaded.tempbans == sample_collections().tempbans
            assert loaded.bot_bans == ["13"]
            assert json.loads(await raw_payload(manager, "mutes")) == {}

    @pytest.mark.asyncio
    async def test_wrong_shape_is_treated_as_corrupt(self, tmp_path):
        async with open_repo(tmp_path / "aegis.db") as (manager, repo):
            await repo.save(sample_collections())
            async with manager.transaction() as conn:
                await conn.execute(
                    "UPDATE moderation_collections SET payload = ? WHERE name = ?", ("[1, 2]", "warns")
                )

            loaded = await repo.load()

        assert loaded.warns == {}
        assert loaded.mutes == sample_collections().mutes

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self, tmp_path):
        payload = {"1": [{"subject_id": "10", "expires_at": 5}, {"subject_id": "11"}, {"subject_id": "10", "expires_at": 9}]}
        async with open_repo(tmp_path / "aegis.db") as (manager, repo):
            await repo.load()
            async with manager.transaction() as conn:
                await conn.execute(
                    "UPDATE moderation_collections SET payload = ? WHERE name = ?", (json.dumps(payload), "mutes")
                )

            loaded = await repo.load()

        assert loaded.mutes == {"1": [MuteEntry("1", "10", 5)]}

    @pytest.mark.asyncio
    async def test_failed_transaction_keeps_prior_state(self, tmp_path):
        path = tmp_path / "aegis.db"
        async with open_repo(path) as (manager, repo):
            await repo.save(sample_collections())

            with pytest.raises(RuntimeError):
                async with manager.transaction() as conn:
                    await conn.execute("UPDATE moderation_collections SET payload = '{}' WHERE name = 'mutes'")
                    await conn.execute("UPDATE moderation_collections SET payload = '[]' WHERE name = 'bot_bans'")
                    raise RuntimeError("simulated crash mid-save")

        async with open_repo(path) as (_, repo):
            loaded = await repo.load()

        assert loaded == sample_collections()
