from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..utils import (
    DEFAULT_TAG_CATEGORY,
    TAG_DELETE_BATCH_SIZE,
    _sqlite_connection,
    _sqlite_transaction,
    chunked,
    filter_tags,
)

logger = logging.getLogger("guild_profile_bot.storage")

_LOOKUP_BATCH_SIZE = 400


def _tag_from_row(row: Any) -> Dict[str, Any]:
    slug = str(row["tag_slug"])
    return {
        "tag_slug": slug,
        "display_name": str(row["display_name"] or slug),
        "category": str(row["category"] or DEFAULT_TAG_CATEGORY),
        "created_by": str(row["created_by"] or ""),
    }


class SqliteTagsMixin:
    async def add_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> None:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
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
                (guild_id, tag_slug, display_name, created_by, category or DEFAULT_TAG_CATEGORY),
            )
            await db.commit()

    async def create_tag_if_absent(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> bool:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            cursor = await db.execute(
                """
                INSERT INTO tags (guild_id, tag_slug, display_name, created_by, category, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                ON CONFLICT(guild_id, tag_slug) DO NOTHING
                """,
                (guild_id, tag_slug, display_name, created_by, category or DEFAULT_TAG_CATEGORY),
            )
            created = cursor.rowcount > 0
            await cursor.close()
            await db.commit()
        return created

    async def get_tag(self, guild_id: str, tag_slug: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT tag_slug, display_name, category, created_by
                FROM tags
                WHERE guild_id = ? AND tag_slug = ?
                """,
                (guild_id, tag_slug),
            ) as cursor:
                row = await cursor.fetchone()
        return _tag_from_row(row) if row is not None else None

    async def get_tags(self, guild_id: str, tag_slugs: List[str]) -> Dict[str, Dict[str, Any]]:
        found: Dict[str, Dict[str, Any]] = {}
        if not tag_slugs:
            return found
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            for batch in chunked(tag_slugs, _LOOKUP_BATCH_SIZE):
                placeholders = ", ".join("?" for _ in batch)
                async with db.execute(
                    f"""
                    SELECT tag_slug, display_name, category, created_by
                    FROM tags
                    WHERE guild_id = ? AND tag_slug IN ({placeholders})
                    """,
                    (guild_id, *batch),
                ) as cursor:
                    rows = await cursor.fetchall()
                for row in rows:
                    tag = _tag_from_row(row)
                    found[tag["tag_slug"]] = tag
        return found

    async def remove_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        batch_size: int = TAG_DELETE_BATCH_SIZE,
    ) -> List[str]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT user_id
                FROM tag_members
                WHERE guild_id = ? AND tag_slug = ?
                ORDER BY added_at, rowid
                """,
                (guild_id, tag_slug),
            ) as cursor:
                rows = await cursor.fetchall()
        user_ids = [str(row["user_id"]) for row in rows]

        for batch in chunked(user_ids, batch_size):
            placeholders = ", ".join("?" for _ in batch)
            async with _sqlite_transaction(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
                await db.execute(
                    f"""
                    DELETE FROM tag_members
                    WHERE guild_id = ? AND tag_slug = ? AND user_id IN ({placeholders})
                    """,
                    (guild_id, tag_slug, *batch),
                )

        async with _sqlite_transaction(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            # Edges granted while the batches ran are swept with the tag row.
            async with db.execute(
                "SELECT user_id FROM tag_members WHERE guild_id = ? AND tag_slug = ?",
                (guild_id, tag_slug),
            ) as cursor:
                late_rows = await cursor.fetchall()
            user_ids.extend(str(row["user_id"]) for row in late_rows if str(row["user_id"]) not in user_ids)
            await db.execute(
                "DELETE FROM tag_members WHERE guild_id = ? AND tag_slug = ?",
                (guild_id, tag_slug),
            )
            await db.execute(
                "DELETE FROM tags WHERE guild_id = ? AND tag_slug = ?",
                (guild_id, tag_slug),
            )
        logger.info("Removed tag %s from guild %s (%s membership edges)", tag_slug, guild_id, len(user_ids))
        return user_ids

    async def list_guild_tags(self, guild_id: str) -> List[Dict[str, Any]]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT tag_slug, display_name, category, created_by
                FROM tags
                WHERE guild_id = ?
                ORDER BY display_name, tag_slug
                """,
                (guild_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_tag_from_row(row) for row in rows]

    async def search_guild_tags(self, guild_id: str, query: str, limit: int = 25) -> List[Dict[str, Any]]:
        # SQLite lower() folds ASCII only; match in Python like the document store.
        return filter_tags(await self.list_guild_tags(guild_id), query, limit)
