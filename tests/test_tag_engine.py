from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from guild_profile_bot.errors import LimitReachedError, UgcDisabledError  # noqa: E402
from guild_profile_bot.storage.sqlite_store import SqliteProfileStore  # noqa: E402
from guild_profile_bot.tags.engine import TagMembershipEngine  # noqa: E402


GUILD = "guild-1"


async def _engine(tmp_path: Path) -> tuple[SqliteProfileStore, TagMembershipEngine]:
    store = SqliteProfileStore(tmp_path / "profiles.db")
    await store.init()
    return store, TagMembershipEngine(store)


async def _mirror(store: SqliteProfileStore, user_id: str) -> list[str]:
    profile = await store.get_profile(GUILD, user_id)
    return list(profile["tags"]) if profile else []


def test_add_user_tag_creates_dictionary_entry_and_mirror(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)

        assert await engine.add_user_tag(GUILD, "u1", "board-games") is True
        assert await engine.add_user_tag(GUILD, "u1", "board-games") is False

        tag = await store.get_tag(GUILD, "board-games")
        assert tag is not None
        assert tag["display_name"] == "Board Games"
        assert tag["created_by"] == "u1"
        assert await store.list_member_tag_slugs(GUILD, "u1") == ["board-games"]
        assert await _mirror(store, "u1") == ["board-games"]

    asyncio.run(scenario())


def test_ugc_disabled_blocks_unknown_tags_only(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await store.set_guild_config(GUILD, {"allow_ugc_tags": False})
        await store.add_guild_tag(GUILD, "rpg", "RPG", "admin")

        with pytest.raises(UgcDisabledError):
            await engine.add_user_tag(GUILD, "u1", "chess")

        assert await store.get_tag(GUILD, "chess") is None
        assert await engine.add_user_tag(GUILD, "u1", "rpg") is True

    asyncio.run(scenario())


def test_limit_reached_leaves_edges_untouched(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await store.set_guild_config(GUILD, {"max_tags_per_user": 2})
        await engine.add_user_tag(GUILD, "u1", "a")
        await engine.add_user_tag(GUILD, "u1", "b")

        with pytest.raises(LimitReachedError) as excinfo:
            await engine.add_user_tag(GUILD, "u1", "c")

        assert excinfo.value.limit == 2
        assert await store.list_member_tag_slugs(GUILD, "u1") == ["a", "b"]
        assert await store.get_tag(GUILD, "c") is None
        # Re-adding a held tag at the limit is still a no-op.
        assert await engine.add_user_tag(GUILD, "u1", "a") is False

    asyncio.run(scenario())


def test_unknown_tag_at_the_limit_reports_ugc_disabled_first(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await store.set_guild_config(GUILD, {"max_tags_per_user": 1})
        await engine.add_user_tag(GUILD, "u1", "art")
        await store.set_guild_config(GUILD, {"allow_ugc_tags": False})

        with pytest.raises(UgcDisabledError):
            await engine.add_user_tag(GUILD, "u1", "new-thing")

        assert await store.get_tag(GUILD, "new-thing") is None
        assert await store.list_member_tag_slugs(GUILD, "u1") == ["art"]

        await store.add_guild_tag(GUILD, "known", "Known", "admin")
        with pytest.raises(LimitReachedError):
            await engine.add_user_tag(GUILD, "u1", "known")

    asyncio.run(scenario())


def test_concurrent_adds_at_limit_minus_one_admit_exactly_one(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await store.set_guild_config(GUILD, {"max_tags_per_user": 2})
        await engine.add_user_tag(GUILD, "u1", "held")

        results = await asyncio.gather(
            engine.add_user_tag(GUILD, "u1", "first"),
            engine.add_user_tag(GUILD, "u1", "second"),
            return_exceptions=True,
        )

        assert sum(1 for item in results if item is True) == 1
        assert sum(1 for item in results if isinstance(item, LimitReachedError)) == 1
        held = await store.list_member_tag_slugs(GUILD, "u1")
        assert len(held) == 2
        assert await _mirror(store, "u1") == held

    asyncio.run(scenario())


def test_bulk_add_trims_to_capacity_and_reports_failures(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await store.set_guild_config(GUILD, {"max_tags_per_user": 3})
        await engine.add_user_tag(GUILD, "u1", "a")

        result = await engine.add_multiple_user_tags(GUILD, "u1", ["a", "b", "c", "d", "b"])

        assert result.success == ["b", "c"]
        assert result.failed == ["d"]
        assert await store.list_member_tag_slugs(GUILD, "u1") == ["a", "b", "c"]
        assert await _mirror(store, "u1") == ["a", "b", "c"]

    asyncio.run(scenario())


def test_bulk_add_reports_per_tag_policy_failures(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await store.add_guild_tag(GUILD, "rpg", "RPG", "admin")
        await store.set_guild_config(GUILD, {"allow_ugc_tags": False})

        result = await engine.add_multiple_user_tags(GUILD, "u1", ["unknown", "rpg"])

        assert result.as_dict() == {"success": ["rpg"], "failed": ["unknown"]}
        assert await _mirror(store, "u1") == ["rpg"]

    asyncio.run(scenario())


def test_bulk_add_with_everything_held_fails_all(tmp_path: Path) -> None:
    async def scenario() -> None:
        _, engine = await _engine(tmp_path)
        await engine.add_user_tag(GUILD, "u1", "a")

        result = await engine.add_multiple_user_tags(GUILD, "u1", ["a"])

        assert result.success == []
        assert result.failed == ["a"]

    asyncio.run(scenario())


def test_bulk_remove_reports_tags_not_held(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await engine.add_multiple_user_tags(GUILD, "u1", ["a", "b", "c"])

        result = await engine.remove_multiple_user_tags(GUILD, "u1", ["b", "zzz", "c"])

        assert result.success == ["b", "c"]
        assert result.failed == ["zzz"]
        assert await _mirror(store, "u1") == ["a"]

    asyncio.run(scenario())


def test_remove_guild_tag_cascades_to_every_member(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        for user_id in ("u1", "u2", "u3"):
            await engine.add_multiple_user_tags(GUILD, user_id, ["shared", f"own-{user_id}"])

        affected = await engine.remove_guild_tag(GUILD, "shared")

        assert sorted(affected) == ["u1", "u2", "u3"]
        assert await store.get_tag(GUILD, "shared") is None
        assert await engine.get_users_by_tag(GUILD, "shared") == []
        for user_id in ("u1", "u2", "u3"):
            assert await store.list_member_tag_slugs(GUILD, user_id) == [f"own-{user_id}"]
            assert await _mirror(store, user_id) == [f"own-{user_id}"]

    asyncio.run(scenario())


def test_list_user_tags_sorts_by_display_name(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await store.add_guild_tag(GUILD, "zeta", "Alpha Zeta", "admin")
        await engine.add_multiple_user_tags(GUILD, "u1", ["zeta", "beta"])

        tags = await engine.list_user_tags(GUILD, "u1")

        assert [tag["tag_slug"] for tag in tags] == ["zeta", "beta"]
        assert tags[1]["display_name"] == "Beta"
        assert await engine.list_user_tags(GUILD, "nobody") == []

    asyncio.run(scenario())


def test_get_users_by_tag_pages_in_insertion_order(tmp_path: Path) -> None:
    async def scenario() -> None:
        _, engine = await _engine(tmp_path)
        for index in range(5):
            await engine.add_user_tag(GUILD, f"u{index}", "chess")

        assert await engine.get_users_by_tag(GUILD, "chess", limit=2) == ["u0", "u1"]
        assert await engine.get_users_by_tag(GUILD, "chess", limit=2, offset=2) == ["u2", "u3"]
        assert await engine.get_users_by_tag(GUILD, "chess", limit=10, offset=4) == ["u4"]

    asyncio.run(scenario())


def test_lowering_the_limit_keeps_existing_tags(tmp_path: Path) -> None:
    async def scenario() -> None:
        store, engine = await _engine(tmp_path)
        await engine.add_multiple_user_tags(GUILD, "u1", ["a", "b", "c"])
        await store.set_guild_config(GUILD, {"max_tags_per_user": 1})

        assert await store.list_member_tag_slugs(GUILD, "u1") == ["a", "b", "c"]
        with pytest.raises(LimitReachedError):
            await engine.add_user_tag(GUILD, "u1", "d")
        assert await engine.remove_user_tag(GUILD, "u1", "a") is True
        assert await _mirror(store, "u1") == ["b", "c"]

    asyncio.run(scenario())
