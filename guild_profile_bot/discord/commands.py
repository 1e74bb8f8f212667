from __future__ import annotations

import logging

import discord
from discord.ext import commands

from ..errors import BackendError, InvalidInputError, ProfileDataError
from .client import ProfileDiscordBot, has_permission
from .common import (
    error_reply,
    format_bulk_result,
    format_profile,
    format_tag_list,
    parse_toggle,
    split_tag_names,
)

logger = logging.getLogger("guild_profile_bot.commands")

WHOHAS_PAGE_SIZE = 50
MANAGE_GUILD_REPLY = "You need `Manage Server` permission for this command."


def _guild_id(ctx: commands.Context) -> str:
    if ctx.guild is None:
        raise InvalidInputError("This command works only in a server.")
    return str(ctx.guild.id)


def register_commands(bot: ProfileDiscordBot) -> None:
    prefix = bot.settings.command_prefix

    @bot.command(name="profile")
    async def profile(ctx: commands.Context, member: discord.Member | None = None) -> None:
        target = member or ctx.author
        view = await bot.service.get_profile_view(_guild_id(ctx), str(target.id))
        await bot.send_chunks(ctx.channel, format_profile(view, target.display_name), reference=ctx.message)

    @bot.command(name="bio")
    async def bio(ctx: commands.Context, *, text: str = "") -> None:
        await bot.service.set_profile(_guild_id(ctx), str(ctx.author.id), bio=text.strip())
        await ctx.send("Bio updated." if text.strip() else "Bio cleared.")

    @bot.command(name="image")
    async def image(ctx: commands.Context, url: str) -> None:
        if not url.lower().startswith(("https://", "http://")):
            raise InvalidInputError("Provide an image URL starting with https://")
        await bot.service.set_profile_image(_guild_id(ctx), str(ctx.author.id), url)
        await ctx.send("Profile image updated.")

    @bot.group(name="tag", invoke_without_command=True)
    async def tag(ctx: commands.Context) -> None:
        await ctx.send(f"Use `{prefix}tag add <tags>` or `{prefix}tag remove <tags>` (comma separated).")

    @tag.command(name="add")
    async def tag_add(ctx: commands.Context, *, tags: str) -> None:
        guild_id = _guild_id(ctx)
        names = split_tag_names(tags)
        if len(names) == 1:
            added = await bot.service.add_user_tag(guild_id, str(ctx.author.id), names[0])
            await ctx.send("Tag added." if added else "You already have that tag.")
            return
        result = await bot.service.add_multiple_user_tags(guild_id, str(ctx.author.id), names)
        await ctx.send(format_bulk_result("Added", result.as_dict()))

    @tag.command(name="remove")
    async def tag_remove(ctx: commands.Context, *, tags: str) -> None:
        guild_id = _guild_id(ctx)
        names = split_tag_names(tags)
        if len(names) == 1:
            removed = await bot.service.remove_user_tag(guild_id, str(ctx.author.id), names[0])
            await ctx.send("Tag removed." if removed else "You don't have that tag.")
            return
        result = await bot.service.remove_multiple_user_tags(guild_id, str(ctx.author.id), names)
        await ctx.send(format_bulk_result("Removed", result.as_dict()))

    @bot.command(name="tags")
    async def tags_cmd(ctx: commands.Context, member: discord.Member | None = None) -> None:
        target = member or ctx.author
        tags = await bot.service.list_user_tags(_guild_id(ctx), str(target.id))
        await bot.send_chunks(ctx.channel, f"Tags of **{target.display_name}**:\n{format_tag_list(tags)}")

    @bot.command(name="tagsearch")
    async def tagsearch(ctx: commands.Context, *, query: str = "") -> None:
        tags = await bot.service.search_guild_tags(_guild_id(ctx), query, limit=25)
        if not tags:
            await ctx.send("No matching tags.")
            return
        await bot.send_chunks(ctx.channel, format_tag_list(tags))

    @bot.command(name="whohas")
    async def whohas(ctx: commands.Context, tag_name: str, page: int = 1) -> None:
        offset = max(0, page - 1) * WHOHAS_PAGE_SIZE
        user_ids = await bot.service.get_users_by_tag(
            _guild_id(ctx),
            tag_name,
            limit=WHOHAS_PAGE_SIZE,
            offset=offset,
        )
        if not user_ids:
            await ctx.send("Nobody has that tag." if page <= 1 else "No more members on that page.")
            return
        mentions = " ".join(f"<@{user_id}>" for user_id in user_ids)
        await bot.send_chunks(ctx.channel, f"Members with `{tag_name}` (page {page}):\n{mentions}")

    @bot.group(name="tagdict", invoke_without_command=True)
    async def tagdict(ctx: commands.Context) -> None:
        tags = await bot.service.list_guild_tags(_guild_id(ctx))
        await bot.send_chunks(ctx.channel, format_tag_list(tags))

    @tagdict.command(name="add")
    async def tagdict_add(ctx: commands.Context, name: str, category: str = "general") -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(MANAGE_GUILD_REPLY)
            return
        created = await bot.service.add_guild_tag(_guild_id(ctx), name, str(ctx.author.id), category=category)
        await ctx.send(f"Tag `{created['display_name']}` saved.")

    @tagdict.command(name="remove")
    async def tagdict_remove(ctx: commands.Context, name: str) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(MANAGE_GUILD_REPLY)
            return
        affected = await bot.service.remove_guild_tag(_guild_id(ctx), name)
        await ctx.send(f"Tag removed from the dictionary and from {len(affected)} member(s).")

    @bot.group(name="config", invoke_without_command=True)
    async def config(ctx: commands.Context) -> None:
        current = await bot.service.get_guild_config(_guild_id(ctx))
        colors = current["custom_colors"]
        lines = [
            f"UGC tags: {'on' if current['allow_ugc_tags'] else 'off'}",
            f"Max tags per member: {current['max_tags_per_user']}",
            f"Theme: {current['profile_theme']}",
            f"Custom colors: {colors['primary']} / {colors['secondary']}" if colors else "Custom colors: none",
        ]
        await ctx.send("\n".join(lines))

    @config.command(name="ugc")
    async def config_ugc(ctx: commands.Context, value: str) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(MANAGE_GUILD_REPLY)
            return
        enabled = parse_toggle(value)
        await bot.service.set_guild_config(_guild_id(ctx), {"allow_ugc_tags": enabled})
        await ctx.send(f"Custom tags {'enabled' if enabled else 'disabled'}.")

    @config.command(name="maxtags")
    async def config_maxtags(ctx: commands.Context, value: int) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(MANAGE_GUILD_REPLY)
            return
        await bot.service.set_guild_config(_guild_id(ctx), {"max_tags_per_user": value})
        await ctx.send(f"Members can now hold up to {value} tags.")

    @config.command(name="theme")
    async def config_theme(ctx: commands.Context, theme: str) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(MANAGE_GUILD_REPLY)
            return
        await bot.service.set_guild_config(_guild_id(ctx), {"profile_theme": theme.strip().lower()})
        await ctx.send(f"Profile theme set to `{theme.strip().lower()}`.")

    @config.command(name="colors")
    async def config_colors(ctx: commands.Context, primary: str, secondary: str | None = None) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(MANAGE_GUILD_REPLY)
            return
        if primary.lower() == "reset":
            await bot.service.set_guild_config(_guild_id(ctx), {"custom_colors": None})
            await ctx.send("Custom colors removed.")
            return
        colors = {"primary": primary, "secondary": secondary or ""}
        await bot.service.set_guild_config(_guild_id(ctx), {"custom_colors": colors})
        await ctx.send("Custom colors saved.")

    @bot.command(name="feature")
    async def feature(ctx: commands.Context, name: str, value: str) -> None:
        if not has_permission(ctx, "manage_guild"):
            await ctx.send(MANAGE_GUILD_REPLY)
            return
        enabled = parse_toggle(value)
        await bot.service.set_guild_feature_config(_guild_id(ctx), name.strip().lower(), enabled)
        await ctx.send(f"Feature `{name}` {'enabled' if enabled else 'disabled'}.")

    @bot.command(name="usertheme")
    async def usertheme(ctx: commands.Context, field: str, *, value: str = "") -> None:
        guild_id = _guild_id(ctx)
        features = await bot.service.get_guild_feature_config(guild_id)
        if not features["user_customization"]:
            await ctx.send("Profile customization is disabled in this server.")
            return
        cleaned = value.strip()
        patch = {field.strip().lower(): cleaned or None}
        await bot.service.set_user_theme(guild_id, str(ctx.author.id), patch)
        await ctx.send("Theme updated." if cleaned else "Theme field cleared.")

    @bot.event
    async def on_command_error(ctx: commands.Context, error: commands.CommandError) -> None:
        if isinstance(error, commands.CommandNotFound):
            return
        if isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
            await ctx.send(f"Missing or invalid argument. Use `{prefix}help {ctx.command}`.")
            return
        original = error.original if isinstance(error, commands.CommandInvokeError) else error
        if isinstance(original, ProfileDataError):
            if isinstance(original, BackendError):
                logger.warning("Command %s failed on storage: %s", ctx.command, original)
            await ctx.send(error_reply(original))
            return
        logger.exception("Command error in %s: %s", ctx.command, original, exc_info=original)
        await ctx.send(error_reply(original))
