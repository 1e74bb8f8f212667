from __future__ import annotations

import json
from typing import Any, Dict

from ..base import (
    FEATURE_FLAGS,
    GUILD_CONFIG_FIELDS,
    default_feature_config,
    default_guild_config,
    whitelist_patch,
)
from ..utils import _sqlite_connection


def _guild_config_from_row(row: Any) -> Dict[str, Any]:
    config = default_guild_config()
    if row is None:
        return config
    config["allow_ugc_tags"] = bool(row["allow_ugc_tags"])
    config["max_tags_per_user"] = int(row["max_tags_per_user"] or config["max_tags_per_user"])
    config["profile_theme"] = str(row["profile_theme"] or config["profile_theme"])
    raw_colors = row["custom_colors"]
    config["custom_colors"] = json.loads(raw_colors) if raw_colors else None
    return config


def _encode_guild_value(field: str, value: Any) -> Any:
    if field == "custom_colors":
        return json.dumps(value) if value is not None else None
    if field == "allow_ugc_tags":
        return 1 if value else 0
    return value


class SqliteGuildsMixin:
    async def upsert_guild(self, guild_id: str) -> None:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            await db.execute(
                """
                INSERT INTO guilds (guild_id, created_at, updated_at)
                VALUES (?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                ON CONFLICT(guild_id) DO NOTHING
                """,
                (guild_id,),
            )
            await db.commit()

    async def get_guild_config(self, guild_id: str) -> Dict[str, Any]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT allow_ugc_tags, max_tags_per_user, profile_theme, custom_colors
                FROM guilds
                WHERE guild_id = ?
                """,
                (guild_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _guild_config_from_row(row)

    async def set_guild_config(self, guild_id: str, patch: Dict[str, Any]) -> None:
        fields = whitelist_patch(patch, GUILD_CONFIG_FIELDS, label="guild config")
        if not fields:
            return
        columns = list(fields)
        values = [_encode_guild_value(column, fields[column]) for column in columns]
        assignments = ", ".join(f"{column} = excluded.{column}" for column in columns)
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            await db.execute(
                f"""
                INSERT INTO guilds (guild_id, {", ".join(columns)}, created_at, updated_at)
                VALUES (?, {", ".join("?" for _ in columns)}, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                ON CONFLICT(guild_id) DO UPDATE SET
                    {assignments},
                    updated_at = CURRENT_TIMESTAMP
                """,
                (guild_id, *values),
            )
            await db.commit()

    async def set_guild_feature_config(self, guild_id: str, patch: Dict[str, bool]) -> None:
        fields = whitelist_patch(patch, FEATURE_FLAGS, label="feature")
        if not fields:
            return
        columns = list(fields)
        assignments = ", ".join(f"{column} = excluded.{column}" for column in columns)
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            await db.execute(
                f"""
                INSERT INTO feature_configs (guild_id, {", ".join(columns)}, updated_at)
                VALUES (?, {", ".join("?" for _ in columns)}, CURRENT_TIMESTAMP)
                ON CONFLICT(guild_id) DO UPDATE SET
                    {assignments},
                    updated_at = CURRENT_TIMESTAMP
                """,
                (guild_id, *(1 if fields[column] else 0 for column in columns)),
            )
            await db.commit()

    async def get_guild_feature_config(self, guild_id: str) -> Dict[str, bool]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                "SELECT ping_threads, user_customization FROM feature_configs WHERE guild_id = ?",
                (guild_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return default_feature_config()
        return {flag: bool(row[flag]) for flag in FEATURE_FLAGS}
