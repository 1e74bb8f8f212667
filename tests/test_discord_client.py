from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

pytest.importorskip("discord")

from discord.ext import commands  # noqa: E402

import guild_profile_bot.discord.client as client_mod  # noqa: E402
from guild_profile_bot.config import Settings  # noqa: E402
from guild_profile_bot.discord.commands import register_commands  # noqa: E402
from guild_profile_bot.errors import LimitReachedError  # noqa: E402


class _FakeDataLayer:
    def __init__(self) -> None:
        self.started = 0
        self.backend = SimpleNamespace(upsert_guild=self._upsert_guild)
        self.fail_upsert = False

    async def start(self) -> None:
        self.started += 1

    async def _upsert_guild(self, guild_id: str) -> None:
        if self.fail_upsert:
            raise RuntimeError("offline")


class _FakeService:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok

    async def health(self) -> Dict[str, Any]:
        return {"backend": "sqlite", "ok": self.ok, "latency_ms": 1.5, "usage": {}, "error": None if self.ok else "x"}


class _FakeChannel:
    def __init__(self) -> None:
        self.sent: List[str] = []

    async def send(self, content: str, **kwargs: Any) -> None:
        self.sent.append(content)


def test_setup_hook_starts_storage_and_logs_health(caplog: pytest.LogCaptureFixture) -> None:
    fake_bot = SimpleNamespace(data=_FakeDataLayer(), service=_FakeService(ok=False))

    with caplog.at_level(logging.WARNING, logger="guild_profile_bot"):
        asyncio.run(client_mod.ProfileDiscordBot.setup_hook(fake_bot))

    assert fake_bot.data.started == 1
    assert any("ping failed" in record.getMessage() for record in caplog.records)


def test_shutdown_step_swallows_timeouts_and_failures(caplog: pytest.LogCaptureFixture) -> None:
    async def hang() -> None:
        await asyncio.sleep(10)

    async def explode() -> None:
        raise RuntimeError("close failed")

    async def scenario() -> None:
        await client_mod.ProfileDiscordBot._run_shutdown_step(SimpleNamespace(), "hang", hang(), timeout=0.01)
        await client_mod.ProfileDiscordBot._run_shutdown_step(SimpleNamespace(), "explode", explode(), timeout=1.0)

    with caplog.at_level(logging.WARNING, logger="guild_profile_bot"):
        asyncio.run(scenario())

    messages = [record.getMessage() for record in caplog.records]
    assert any("timed out: hang" in message for message in messages)
    assert any("failed: explode" in message for message in messages)


def test_guild_join_failure_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    data = _FakeDataLayer()
    data.fail_upsert = True
    fake_bot = SimpleNamespace(data=data)
    guild = SimpleNamespace(id=42, name="Test")

    with caplog.at_level(logging.WARNING, logger="guild_profile_bot"):
        asyncio.run(client_mod.ProfileDiscordBot.on_guild_join(fake_bot, guild))

    assert any("Could not register guild 42" in record.getMessage() for record in caplog.records)


def test_send_chunks_splits_long_messages() -> None:
    channel = _FakeChannel()
    text = "\n".join("z" * 100 for _ in range(40))

    asyncio.run(client_mod.ProfileDiscordBot.send_chunks(SimpleNamespace(), channel, text))

    assert len(channel.sent) == 3
    assert "\n".join(chunk.rstrip("\n") for chunk in channel.sent) == text


def test_has_permission_requires_guild_member() -> None:
    ctx = SimpleNamespace(guild=None, author=SimpleNamespace())

    assert client_mod.has_permission(ctx, "manage_guild") is False


def _bot(monkeypatch: pytest.MonkeyPatch) -> client_mod.ProfileDiscordBot:
    monkeypatch.setenv("DISCORD_TOKEN", "token")
    monkeypatch.setenv("DISCORD_COMMAND_PREFIX", "?")
    settings = Settings.from_env()
    bot = client_mod.ProfileDiscordBot(settings=settings, data=_FakeDataLayer(), service=_FakeService())
    register_commands(bot)
    return bot


def test_register_commands_adds_profile_commands(monkeypatch: pytest.MonkeyPatch) -> None:
    bot = _bot(monkeypatch)

    names = {command.qualified_name for command in bot.walk_commands()}

    assert {
        "profile",
        "bio",
        "image",
        "tag add",
        "tag remove",
        "tags",
        "tagsearch",
        "whohas",
        "tagdict add",
        "tagdict remove",
        "config ugc",
        "config maxtags",
        "config theme",
        "config colors",
        "feature",
        "usertheme",
    } <= names
    assert bot.command_prefix == "?"


def test_command_errors_reply_with_domain_text(monkeypatch: pytest.MonkeyPatch) -> None:
    bot = _bot(monkeypatch)
    channel = _FakeChannel()
    ctx = SimpleNamespace(send=channel.send, command="tag add")

    asyncio.run(bot.on_command_error(ctx, commands.CommandInvokeError(LimitReachedError(3))))

    assert channel.sent == ["You can have at most 3 tags."]
