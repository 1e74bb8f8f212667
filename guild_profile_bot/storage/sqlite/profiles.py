from __future__ import annotations

import json
from typing import Any, Dict, Optional

from ..base import USER_THEME_FIELDS, whitelist_patch
from ..utils import _sqlite_connection


def _decode_tags(raw: Any) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


class SqliteProfilesMixin:
    async def upsert_profile(
        self,
        guild_id: str,
        user_id: str,
        bio: str = "",
        profile_image: str | None = None,
    ) -> None:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            await db.execute(
                """
                INSERT INTO profiles (guild_id, user_id, bio, profile_image, tags, updated_at)
                VALUES (?, ?, ?, ?, '[]', CURRENT_TIMESTAMP)
                ON CONFLICT(guild_id, user_id) DO UPDATE SET
                    bio = excluded.bio,
                    profile_image = COALESCE(excluded.profile_image, profiles.profile_image),
                    updated_at = CURRENT_TIMESTAMP
                """,
                (guild_id, user_id, bio or "", profile_image or None),
            )
            await db.commit()

    async def get_profile(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT bio, profile_image, tags
                FROM profiles
                WHERE guild_id = ? AND user_id = ?
                """,
                (guild_id, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "bio": str(row["bio"] or ""),
            "profile_image": row["profile_image"],
            "tags": _decode_tags(row["tags"]),
        }

    async def set_user_theme(self, guild_id: str, user_id: str, patch: Dict[str, Any]) -> None:
        fields = whitelist_patch(patch, USER_THEME_FIELDS, label="user theme")
        if not fields:
            return
        columns = list(fields)
        assignments = ", ".join(f"{column} = excluded.{column}" for column in columns)
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            await db.execute(
                f"""
                INSERT INTO user_themes (guild_id, user_id, {", ".join(columns)}, updated_at)
                VALUES (?, ?, {", ".join("?" for _ in columns)}, CURRENT_TIMESTAMP)
                ON CONFLICT(guild_id, user_id) DO UPDATE SET
                    {assignments},
                    updated_at = CURRENT_TIMESTAMP
                """,
                (guild_id, user_id, *(fields[column] for column in columns)),
            )
            await db.commit()

    async def get_user_theme(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT theme, primary_color, secondary_color, title, tags_emoji
                FROM user_themes
                WHERE guild_id = ? AND user_id = ?
                """,
                (guild_id, user_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return {field: row[field] for field in USER_THEME_FIELDS}
