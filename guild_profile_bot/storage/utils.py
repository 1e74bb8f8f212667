from __future__ import annotations

import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Iterable, Iterator, TypeVar

import aiosqlite

T = TypeVar("T")

DEFAULT_TAG_CATEGORY = "general"
MAX_BIO_CHARS = 1000
TAG_DELETE_BATCH_SIZE = 400

_SLUG_SPACES_RE = re.compile(r"\s+")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9_-]")
_WORD_START_RE = re.compile(r"\b\w")


def normalize_tag_slug(value: object) -> str:
    raw = str(value if value is not None else "").strip().lower()
    return _SLUG_INVALID_RE.sub("", _SLUG_SPACES_RE.sub("-", raw))


def tag_slug_to_display(slug: str) -> str:
    spaced = str(slug or "").replace("-", " ").replace("_", " ")
    return _WORD_START_RE.sub(lambda match: match.group(0).upper(), spaced)


def chunked(items: Iterable[T], max_batch_size: int) -> Iterator[list[T]]:
    size = int(max_batch_size)
    if size < 1:
        raise ValueError("max_batch_size must be >= 1")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def dedupe_preserving_order(items: Iterable[T]) -> list[T]:
    seen: set[T] = set()
    result: list[T] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def member_key(guild_id: str, user_id: str) -> str:
    return f"{guild_id}:{user_id}"


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


async def _prepare_connection(db: aiosqlite.Connection, busy_timeout_ms: int | None) -> None:
    timeout_ms = _sqlite_busy_timeout_ms() if busy_timeout_ms is None else max(0, int(busy_timeout_ms))
    if timeout_ms > 0:
        await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
    db.row_factory = aiosqlite.Row


@asynccontextmanager
async def _sqlite_connection(
    db_path: str | Path,
    *,
    busy_timeout_ms: int | None = None,
) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        await _prepare_connection(db, busy_timeout_ms)
        yield db


@asynccontextmanager
async def _sqlite_transaction(
    db_path: str | Path,
    *,
    busy_timeout_ms: int | None = None,
) -> AsyncIterator[aiosqlite.Connection]:
    # BEGIN IMMEDIATE takes the write lock up front so concurrent read-modify-write
    # units on the same database file run one after another.
    async with aiosqlite.connect(db_path, isolation_level=None) as db:
        await _prepare_connection(db, busy_timeout_ms)
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        await db.execute("COMMIT")


def is_sqlite_contention_error(exc: BaseException) -> bool:
    if not isinstance(exc, aiosqlite.OperationalError):
        return False
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message or "database table is locked" in message


def filter_tags(tags: list[dict], query: str, limit: int) -> list[dict]:
    size = max(1, int(limit))
    needle = str(query or "").strip().lower()
    if not needle:
        return list(tags[:size])
    matches = [
        tag
        for tag in tags
        if needle in str(tag.get("display_name") or "").lower() or needle in str(tag.get("tag_slug") or "")
    ]
    return matches[:size]
