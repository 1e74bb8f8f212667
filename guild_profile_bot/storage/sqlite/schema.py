from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from ..utils import _sqlite_connection


class SqliteSchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path, *, busy_timeout_ms: int | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_ms = busy_timeout_ms

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this bot build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "tag_members",
            "tags",
            "user_themes",
            "feature_configs",
            "profiles",
            "guilds",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS guilds (
                guild_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                allow_ugc_tags INTEGER NOT NULL DEFAULT 1,
                max_tags_per_user INTEGER NOT NULL DEFAULT 30,
                profile_theme TEXT NOT NULL DEFAULT 'default',
                custom_colors TEXT,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS profiles (
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                bio TEXT NOT NULL DEFAULT '',
                profile_image TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS tags (
                guild_id TEXT NOT NULL,
                tag_slug TEXT NOT NULL,
                display_name TEXT NOT NULL,
                created_by TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL DEFAULT 'general',
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (guild_id, tag_slug)
            );

            CREATE TABLE IF NOT EXISTS tag_members (
                guild_id TEXT NOT NULL,
                tag_slug TEXT NOT NULL,
                user_id TEXT NOT NULL,
                added_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (guild_id, tag_slug, user_id)
            );

            CREATE TABLE IF NOT EXISTS user_themes (
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                theme TEXT,
                primary_color TEXT,
                secondary_color TEXT,
                title TEXT,
                tags_emoji TEXT,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS feature_configs (
                guild_id TEXT PRIMARY KEY,
                ping_threads INTEGER NOT NULL DEFAULT 1,
                user_customization INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_tags_guild_display
            ON tags(guild_id, display_name);

            CREATE INDEX IF NOT EXISTS idx_tag_members_guild_tag
            ON tag_members(guild_id, tag_slug, added_at);

            CREATE INDEX IF NOT EXISTS idx_tag_members_guild_user
            ON tag_members(guild_id, user_id);
            """
        )
