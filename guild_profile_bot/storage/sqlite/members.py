from __future__ import annotations

import json
from typing import List

import aiosqlite

from ...errors import LimitReachedError
from ..utils import _sqlite_connection, _sqlite_transaction


async def _held_tag_slugs(db: aiosqlite.Connection, guild_id: str, user_id: str) -> List[str]:
    async with db.execute(
        """
        SELECT tag_slug
        FROM tag_members
        WHERE guild_id = ? AND user_id = ?
        ORDER BY added_at, rowid
        """,
        (guild_id, user_id),
    ) as cursor:
        rows = await cursor.fetchall()
    return [str(row["tag_slug"]) for row in rows]


async def _write_mirror(
    db: aiosqlite.Connection,
    guild_id: str,
    user_id: str,
    tag_slugs: List[str],
    *,
    create: bool,
) -> None:
    payload = json.dumps(tag_slugs)
    if create:
        await db.execute(
            """
            INSERT INTO profiles (guild_id, user_id, bio, tags, updated_at)
            VALUES (?, ?, '', ?, CURRENT_TIMESTAMP)
            ON CONFLICT(guild_id, user_id) DO UPDATE SET
                tags = excluded.tags,
                updated_at = CURRENT_TIMESTAMP
            """,
            (guild_id, user_id, payload),
        )
        return
    await db.execute(
        """
        UPDATE profiles
        SET tags = ?, updated_at = CURRENT_TIMESTAMP
        WHERE guild_id = ? AND user_id = ?
        """,
        (payload, guild_id, user_id),
    )


class SqliteMembersMixin:
    async def add_tag_membership(self, guild_id: str, user_id: str, tag_slug: str, max_tags: int) -> bool:
        async with _sqlite_transaction(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            held = await _held_tag_slugs(db, guild_id, user_id)
            added = tag_slug not in held
            if added:
                if len(held) >= max_tags:
                    raise LimitReachedError(max_tags)
                await db.execute(
                    """
                    INSERT INTO tag_members (guild_id, tag_slug, user_id, added_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(guild_id, tag_slug, user_id) DO NOTHING
                    """,
                    (guild_id, tag_slug, user_id),
                )
                held.append(tag_slug)
            await _write_mirror(db, guild_id, user_id, held, create=True)
        return added

    async def remove_tag_membership(self, guild_id: str, user_id: str, tag_slug: str) -> bool:
        async with _sqlite_transaction(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            cursor = await db.execute(
                "DELETE FROM tag_members WHERE guild_id = ? AND tag_slug = ? AND user_id = ?",
                (guild_id, tag_slug, user_id),
            )
            removed = cursor.rowcount > 0
            await cursor.close()
            held = await _held_tag_slugs(db, guild_id, user_id)
            await _write_mirror(db, guild_id, user_id, held, create=False)
        return removed

    async def sync_profile_tags(self, guild_id: str, user_id: str) -> List[str]:
        async with _sqlite_transaction(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            held = await _held_tag_slugs(db, guild_id, user_id)
            await _write_mirror(db, guild_id, user_id, held, create=bool(held))
        return held

    async def list_member_tag_slugs(self, guild_id: str, user_id: str) -> List[str]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            return await _held_tag_slugs(db, guild_id, user_id)

    async def list_tag_members(self, guild_id: str, tag_slug: str, limit: int, offset: int = 0) -> List[str]:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            async with db.execute(
                """
                SELECT user_id
                FROM tag_members
                WHERE guild_id = ? AND tag_slug = ?
                ORDER BY added_at, rowid
                LIMIT ? OFFSET ?
                """,
                (guild_id, tag_slug, max(0, int(limit)), max(0, int(offset))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row["user_id"]) for row in rows]
