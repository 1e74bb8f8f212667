from __future__ import annotations

import json
from typing import Any, Dict, List

from ..base import FEATURE_FLAGS, USER_THEME_FIELDS
from ..utils import DEFAULT_TAG_CATEGORY, _sqlite_connection, _sqlite_transaction
from .guilds import _guild_config_from_row
from .profiles import _decode_tags


class SqliteExportMixin:
    async def list_guild_ids(self) -> List[str]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT guild_id FROM guilds
                UNION SELECT guild_id FROM profiles
                UNION SELECT guild_id FROM tags
                UNION SELECT guild_id FROM tag_members
                UNION SELECT guild_id FROM user_themes
                UNION SELECT guild_id FROM feature_configs
                ORDER BY guild_id
                """
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row[0]) for row in rows]

    async def export_guild(self, guild_id: str) -> Dict[str, Any]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT allow_ugc_tags, max_tags_per_user, profile_theme, custom_colors
                FROM guilds
                WHERE guild_id = ?
                """,
                (guild_id,),
            ) as cursor:
                guild_row = await cursor.fetchone()
            async with db.execute(
                "SELECT user_id, bio, profile_image, tags FROM profiles WHERE guild_id = ? ORDER BY user_id",
                (guild_id,),
            ) as cursor:
                profile_rows = await cursor.fetchall()
            async with db.execute(
                """
                SELECT tag_slug, display_name, created_by, category
                FROM tags
                WHERE guild_id = ?
                ORDER BY tag_slug
                """,
                (guild_id,),
            ) as cursor:
                tag_rows = await cursor.fetchall()
            async with db.execute(
                """
                SELECT tag_slug, user_id
                FROM tag_members
                WHERE guild_id = ?
                ORDER BY added_at, rowid
                """,
                (guild_id,),
            ) as cursor:
                member_rows = await cursor.fetchall()
            async with db.execute(
                """
                SELECT user_id, theme, primary_color, secondary_color, title, tags_emoji
                FROM user_themes
                WHERE guild_id = ?
                ORDER BY user_id
                """,
                (guild_id,),
            ) as cursor:
                theme_rows = await cursor.fetchall()
            async with db.execute(
                "SELECT ping_threads, user_customization FROM feature_configs WHERE guild_id = ?",
                (guild_id,),
            ) as cursor:
                feature_row = await cursor.fetchone()

        return {
            "guild_id": guild_id,
            "config": _guild_config_from_row(guild_row) if guild_row is not None else None,
            "profiles": [
                {
                    "user_id": str(row["user_id"]),
                    "bio": str(row["bio"] or ""),
                    "profile_image": row["profile_image"],
                    "tags": _decode_tags(row["tags"]),
                }
                for row in profile_rows
            ],
            "tags": [
                {
                    "tag_slug": str(row["tag_slug"]),
                    "display_name": str(row["display_name"]),
                    "created_by": str(row["created_by"] or ""),
                    "category": str(row["category"] or DEFAULT_TAG_CATEGORY),
                }
                for row in tag_rows
            ],
            "tag_members": [
                {"tag_slug": str(row["tag_slug"]), "user_id": str(row["user_id"])} for row in member_rows
            ],
            "user_themes": [
                {"user_id": str(row["user_id"]), **{field: row[field] for field in USER_THEME_FIELDS}}
                for row in theme_rows
            ],
            "feature_config": (
                {flag: bool(feature_row[flag]) for flag in FEATURE_FLAGS} if feature_row is not None else None
            ),
        }

    async def import_guild(self, snapshot: Dict[str, Any]) -> None:
        guild_id = str(snapshot["guild_id"])
        config = snapshot.get("config")
        features = snapshot.get("feature_config")
        async with _sqlite_transaction(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            if config is not None:
                colors = config.get("custom_colors")
                await db.execute(
                    """
                    INSERT INTO guilds (
                        guild_id, created_at, allow_ugc_tags, max_tags_per_user, profile_theme, custom_colors, updated_at
                    )
                    VALUES (?, CURRENT_TIMESTAMP, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(guild_id) DO UPDATE SET
                        allow_ugc_tags = excluded.allow_ugc_tags,
                        max_tags_per_user = excluded.max_tags_per_user,
                        profile_theme = excluded.profile_theme,
                        custom_colors = excluded.custom_colors,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        guild_id,
                        1 if config.get("allow_ugc_tags", True) else 0,
                        int(config.get("max_tags_per_user") or 30),
                        str(config.get("profile_theme") or "default"),
                        json.dumps(colors) if colors else None,
                    ),
                )
            for profile in snapshot.get("profiles", []):
                await db.execute(
                    """
                    INSERT INTO profiles (guild_id, user_id, bio, profile_image, tags, updated_at)
                    VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(guild_id, user_id) DO UPDATE SET
                        bio = excluded.bio,
                        profile_image = excluded.profile_image,
                        tags = excluded.tags,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        guild_id,
                        str(profile["user_id"]),
                        str(profile.get("bio") or ""),
                        profile.get("profile_image"),
                        json.dumps(list(profile.get("tags") or [])),
                    ),
                )
            for tag in snapshot.get("tags", []):
                await db.execute(
                    """
                    INSERT INTO tags (guild_id, tag_slug, display_name, created_by, category, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                    ON CONFLICT(guild_id, tag_slug) DO UPDATE SET
                        display_name = excluded.display_name,
                        created_by = excluded.created_by,
                        category = excluded.category,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        guild_id,
                        str(tag["tag_slug"]),
                        str(tag.get("display_name") or tag["tag_slug"]),
                        str(tag.get("created_by") or ""),
                        str(tag.get("category") or DEFAULT_TAG_CATEGORY),
                    ),
                )
            await db.executemany(
                """
                INSERT INTO tag_members (guild_id, tag_slug, user_id, added_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(guild_id, tag_slug, user_id) DO NOTHING
                """,
                [
                    (guild_id, str(member["tag_slug"]), str(member["user_id"]))
                    for member in snapshot.get("tag_members", [])
                ],
            )
            for theme in snapshot.get("user_themes", []):
                await db.execute(
                    """
                    INSERT INTO user_themes (
                        guild_id, user_id, theme, primary_color, secondary_color, title, tags_emoji, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(guild_id, user_id) DO UPDATE SET
                        theme = excluded.theme,
                        primary_color = excluded.primary_color,
                        secondary_color = excluded.secondary_color,
                        title = excluded.title,
                        tags_emoji = excluded.tags_emoji,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (guild_id, str(theme["user_id"]), *(theme.get(field) for field in USER_THEME_FIELDS)),
                )
            if features is not None:
                await db.execute(
                    """
                    INSERT INTO feature_configs (guild_id, ping_threads, user_customization, updated_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(guild_id) DO UPDATE SET
                        ping_threads = excluded.ping_threads,
                        user_customization = excluded.user_customization,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        guild_id,
                        1 if features.get("ping_threads", True) else 0,
                        1 if features.get("user_customization", True) else 0,
                    ),
                )
