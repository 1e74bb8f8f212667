from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from .config import Settings
from .facade import ProfileDataService
from .storage.factory import build_data_layer

if TYPE_CHECKING:
    from .discord.client import ProfileDiscordBot

logger = logging.getLogger("guild_profile_bot")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("google.auth").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_bot(settings: Settings) -> "ProfileDiscordBot":
    from .discord.client import ProfileDiscordBot
    from .discord.commands import register_commands

    data = build_data_layer(settings)
    service = ProfileDataService(data.backend, stats=data.stats)
    bot = ProfileDiscordBot(settings=settings, data=data, service=service)
    register_commands(bot)
    return bot


async def _run_bot(settings: Settings) -> None:
    bot = build_bot(settings)
    try:
        async with bot:
            await bot.start(settings.discord_token)
    finally:
        if not bot.is_closed():
            with contextlib.suppress(Exception):
                await asyncio.wait_for(bot.close(), timeout=10.0)


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    logger.info("Starting with %s backend", settings.profile_backend)
    try:
        asyncio.run(_run_bot(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")


if __name__ == "__main__":
    main()
