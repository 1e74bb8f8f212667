from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from guild_profile_bot.errors import InvalidInputError, LimitReachedError  # noqa: E402
from guild_profile_bot.storage.base import default_feature_config, default_guild_config  # noqa: E402
from guild_profile_bot.storage.sqlite.schema import SqliteSchemaMixin  # noqa: E402
from guild_profile_bot.storage.sqlite_store import SqliteProfileStore  # noqa: E402


GUILD = "guild-1"


async def _store(tmp_path: Path) -> SqliteProfileStore:
    store = SqliteProfileStore(tmp_path / "profiles.db")
    await store.init()
    return store


def test_schema_mismatch_raises_without_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    db_path = tmp_path / "profiles.db"

    asyncio.run(SqliteSchemaMixin(db_path).init())
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    with pytest.raises(RuntimeError, match="schema version mismatch"):
        asyncio.run(SqliteSchemaMixin(db_path).init())


def test_schema_mismatch_can_reset_with_explicit_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "profiles.db"
    asyncio.run(SqliteSchemaMixin(db_path).init())

    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    monkeypatch.setenv("SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    asyncio.run(SqliteSchemaMixin(db_path).init())

    with sqlite3.connect(db_path) as conn:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
    assert version == SqliteSchemaMixin.SCHEMA_VERSION


def test_absent_entities_read_as_defaults(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)

        assert await store.get_guild_config(GUILD) == default_guild_config()
        assert await store.get_guild_feature_config(GUILD) == default_feature_config()
        assert await store.get_profile(GUILD, "u1") is None
        assert await store.get_user_theme(GUILD, "u1") is None
        assert await store.get_tag(GUILD, "chess") is None
        assert await store.list_guild_tags(GUILD) == []
        await store.ping()

    asyncio.run(scenario())


def test_guild_config_patch_merges_fields(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.upsert_guild(GUILD)
        await store.set_guild_config(GUILD, {"max_tags_per_user": 5})
        await store.set_guild_config(GUILD, {"custom_colors": {"primary": "#111111", "secondary": "#222222"}})
        await store.upsert_guild(GUILD)

        config = await store.get_guild_config(GUILD)

        assert config["max_tags_per_user"] == 5
        assert config["allow_ugc_tags"] is True
        assert config["custom_colors"] == {"primary": "#111111", "secondary": "#222222"}

        with pytest.raises(InvalidInputError):
            await store.set_guild_config(GUILD, {"owner": "u1"})

    asyncio.run(scenario())


def test_upsert_profile_keeps_image_and_tags(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.upsert_profile(GUILD, "u1", "hello", "https://img.example/a.png")
        await store.add_tag_membership(GUILD, "u1", "chess", 10)
        await store.upsert_profile(GUILD, "u1", "second bio")

        profile = await store.get_profile(GUILD, "u1")

        assert profile == {
            "bio": "second bio",
            "profile_image": "https://img.example/a.png",
            "tags": ["chess"],
        }

    asyncio.run(scenario())


def test_membership_primitives_keep_mirror_equal_to_edges(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)

        assert await store.add_tag_membership(GUILD, "u1", "a", 2) is True
        assert await store.add_tag_membership(GUILD, "u1", "a", 2) is False
        assert await store.add_tag_membership(GUILD, "u1", "b", 2) is True
        with pytest.raises(LimitReachedError):
            await store.add_tag_membership(GUILD, "u1", "c", 2)

        assert (await store.get_profile(GUILD, "u1"))["tags"] == ["a", "b"]
        assert await store.remove_tag_membership(GUILD, "u1", "a") is True
        assert await store.remove_tag_membership(GUILD, "u1", "a") is False
        assert (await store.get_profile(GUILD, "u1"))["tags"] == ["b"]
        assert await store.list_member_tag_slugs(GUILD, "u1") == ["b"]

    asyncio.run(scenario())


def test_create_tag_if_absent_never_overwrites(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)

        assert await store.create_tag_if_absent(GUILD, "rpg", "RPG", "u1") is True
        assert await store.create_tag_if_absent(GUILD, "rpg", "Rpg", "u2") is False
        tag = await store.get_tag(GUILD, "rpg")
        assert tag == {"tag_slug": "rpg", "display_name": "RPG", "category": "general", "created_by": "u1"}

        await store.add_guild_tag(GUILD, "rpg", "Role Playing", "admin", "games")
        tag = await store.get_tag(GUILD, "rpg")
        assert tag["display_name"] == "Role Playing"
        assert tag["category"] == "games"
        assert tag["created_by"] == "admin"

    asyncio.run(scenario())


def test_search_and_bulk_lookup(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.add_guild_tag(GUILD, "board-games", "Board Games", "admin")
        await store.add_guild_tag(GUILD, "chess", "Chess", "admin")
        await store.add_guild_tag("other-guild", "chess", "Chess", "admin")

        found = await store.search_guild_tags(GUILD, "GAMES")
        assert [tag["tag_slug"] for tag in found] == ["board-games"]
        assert len(await store.search_guild_tags(GUILD, "", limit=1)) == 1

        lookup = await store.get_tags(GUILD, ["chess", "missing"])
        assert list(lookup) == ["chess"]

    asyncio.run(scenario())


def test_search_folds_non_ascii_display_names(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.add_guild_tag(GUILD, "yolka", "Ёлка", "admin")
        await store.add_guild_tag(GUILD, "strasse", "STRAẞE", "admin")
        await store.add_guild_tag(GUILD, "chess", "Chess", "admin")

        assert [tag["tag_slug"] for tag in await store.search_guild_tags(GUILD, "ёл")] == ["yolka"]
        assert [tag["tag_slug"] for tag in await store.search_guild_tags(GUILD, "ЁЛКА")] == ["yolka"]
        assert [tag["tag_slug"] for tag in await store.search_guild_tags(GUILD, "straße")] == ["strasse"]

    asyncio.run(scenario())


def test_remove_guild_tag_deletes_edges_in_batches(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.add_guild_tag(GUILD, "chess", "Chess", "admin")
        for index in range(5):
            await store.add_tag_membership(GUILD, f"u{index}", "chess", 10)

        affected = await store.remove_guild_tag(GUILD, "chess", batch_size=2)

        assert affected == ["u0", "u1", "u2", "u3", "u4"]
        assert await store.list_tag_members(GUILD, "chess", 100) == []
        assert await store.get_tag(GUILD, "chess") is None
        # Mirrors are rewritten by the caller after the cascade.
        assert await store.sync_profile_tags(GUILD, "u0") == []
        assert (await store.get_profile(GUILD, "u0"))["tags"] == []

    asyncio.run(scenario())


def test_user_theme_and_feature_flags(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.set_user_theme(GUILD, "u1", {"theme": "ocean", "title": "Captain"})
        await store.set_user_theme(GUILD, "u1", {"title": None})
        await store.set_guild_feature_config(GUILD, {"user_customization": False})

        theme = await store.get_user_theme(GUILD, "u1")
        assert theme["theme"] == "ocean"
        assert theme["title"] is None
        assert await store.get_guild_feature_config(GUILD) == {"ping_threads": True, "user_customization": False}

        with pytest.raises(InvalidInputError):
            await store.set_guild_feature_config(GUILD, {"voice": True})

    asyncio.run(scenario())


def test_export_and_import_between_stores(tmp_path: Path) -> None:
    async def scenario() -> None:
        source = SqliteProfileStore(tmp_path / "source.db")
        target = SqliteProfileStore(tmp_path / "target.db")
        await source.init()
        await target.init()
        await source.set_guild_config(GUILD, {"max_tags_per_user": 4, "profile_theme": "ocean"})
        await source.upsert_profile(GUILD, "u1", "bio")
        await source.add_guild_tag(GUILD, "chess", "Chess", "admin", "games")
        await source.add_tag_membership(GUILD, "u1", "chess", 4)
        await source.set_user_theme(GUILD, "u1", {"primary_color": "#ff0000"})

        snapshot = await source.export_guild(GUILD)
        await target.import_guild(snapshot)

        assert await target.list_guild_ids() == [GUILD]
        assert await target.export_guild(GUILD) == snapshot

    asyncio.run(scenario())
