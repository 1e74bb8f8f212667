from __future__ import annotations

import asyncio
import logging

import discord
from discord.ext import commands

from ..config import Settings
from ..facade import ProfileDataService
from ..storage.factory import DataLayer
from .common import chunk_text

logger = logging.getLogger("guild_profile_bot")


def has_permission(ctx: commands.Context, permission_name: str) -> bool:
    if not ctx.guild or not isinstance(ctx.author, discord.Member):
        return False
    perms = ctx.author.guild_permissions
    return perms.administrator or bool(getattr(perms, permission_name, False))


class ProfileDiscordBot(commands.Bot):
    def __init__(
        self,
        settings: Settings,
        data: DataLayer,
        service: ProfileDataService,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = settings.discord_message_content_intent
        intents.members = settings.discord_members_intent
        intents.guilds = True
        intents.messages = True

        super().__init__(command_prefix=settings.command_prefix, intents=intents)
        self.settings = settings
        self.data = data
        self.service = service

    async def setup_hook(self) -> None:
        await self.data.start()
        health = await self.service.health()
        if health["ok"]:
            logger.info("Storage backend %s reachable (%.1f ms)", health["backend"], health["latency_ms"])
        else:
            logger.warning("Storage backend %s ping failed: %s", health["backend"], health["error"])

    async def close(self) -> None:
        await self._run_shutdown_step("data_layer.close", self.data.close(), timeout=6.0)
        await self._run_shutdown_step("discord.Client.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def on_ready(self) -> None:
        if self.user:
            logger.info("Connected as %s (%s)", self.user, self.user.id)

    async def on_guild_join(self, guild: discord.Guild) -> None:
        try:
            await self.data.backend.upsert_guild(str(guild.id))
        except Exception as exc:
            logger.warning("Could not register guild %s: %s", guild.id, exc)
            return
        logger.info("Joined guild %s (%s)", guild.name, guild.id)

    async def send_chunks(
        self,
        channel: discord.abc.Messageable,
        text: str,
        *,
        reference: discord.Message | None = None,
    ) -> None:
        for index, chunk in enumerate(chunk_text(text)):
            if index == 0 and reference is not None:
                await channel.send(chunk, reference=reference, mention_author=False)
            else:
                await channel.send(chunk)
