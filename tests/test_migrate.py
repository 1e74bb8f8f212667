from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from guild_profile_bot.migrate import _parse_args, copy_store, main, summarize  # noqa: E402
from guild_profile_bot.storage.sqlite_store import SqliteProfileStore  # noqa: E402
from guild_profile_bot.tags.engine import TagMembershipEngine  # noqa: E402


class _RejectingStore(SqliteProfileStore):
    async def import_guild(self, snapshot: Dict[str, Any]) -> None:
        if snapshot["guild_id"] == "bad-guild":
            raise RuntimeError("write rejected")
        await super().import_guild(snapshot)


async def _seeded_source(tmp_path: Path) -> SqliteProfileStore:
    source = SqliteProfileStore(tmp_path / "source.db")
    await source.init()
    engine = TagMembershipEngine(source)
    for guild_id in ("g1", "g2"):
        await source.upsert_profile(guild_id, "u1", "bio")
        await engine.add_multiple_user_tags(guild_id, "u1", ["chess", "go"])
        await engine.add_user_tag(guild_id, "u2", "chess")
    await source.set_user_theme("g1", "u1", {"theme": "ocean"})
    return source


def test_copy_store_moves_every_guild(tmp_path: Path) -> None:
    async def scenario() -> None:
        source = await _seeded_source(tmp_path)
        target = SqliteProfileStore(tmp_path / "target.db")
        await target.init()

        result = await copy_store(source, target)

        assert result == {
            "guilds": 2,
            "profiles": 4,
            "tags": 4,
            "tag_members": 6,
            "user_themes": 1,
            "failed_guilds": [],
        }
        assert await summarize(target) == await summarize(source)
        assert await target.list_member_tag_slugs("g2", "u1") == ["chess", "go"]
        assert (await target.get_profile("g2", "u2"))["tags"] == ["chess"]

    asyncio.run(scenario())


def test_copy_store_continues_past_a_failing_guild(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    async def scenario() -> Dict[str, Any]:
        source = await _seeded_source(tmp_path)
        await source.upsert_profile("bad-guild", "u9", "")
        target = _RejectingStore(tmp_path / "target.db")
        await target.init()
        with caplog.at_level(logging.ERROR, logger="guild_profile_bot.migrate"):
            result = await copy_store(source, target)
        assert await target.list_guild_ids() == ["g1", "g2"]
        return result

    result = asyncio.run(scenario())

    assert result["failed_guilds"] == ["bad-guild"]
    assert result["guilds"] == 2
    assert any("bad-guild" in record.getMessage() for record in caplog.records)


def test_copy_store_can_limit_guilds(tmp_path: Path) -> None:
    async def scenario() -> None:
        source = await _seeded_source(tmp_path)
        target = SqliteProfileStore(tmp_path / "target.db")
        await target.init()

        result = await copy_store(source, target, guild_ids=["g2"])

        assert result["guilds"] == 1
        assert await target.list_guild_ids() == ["g2"]

    asyncio.run(scenario())


def test_cli_arguments() -> None:
    args = _parse_args(["--from", "sqlite", "--to", "firestore", "--guild", "g1", "--guild", "g2"])

    assert (args.source, args.target, args.guilds, args.summary) == ("sqlite", "firestore", ["g1", "g2"], False)
    assert _parse_args([]).source == "firestore"


def test_cli_rejects_same_backend_on_both_sides() -> None:
    with pytest.raises(SystemExit):
        main(["--from", "sqlite", "--to", "sqlite"])
