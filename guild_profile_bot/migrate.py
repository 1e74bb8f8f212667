from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict, Iterable, List

from .app import configure_logging
from .config import PROFILE_BACKENDS, Settings
from .storage.base import PersistenceBackend
from .storage.factory import build_backend, compose_backend
from .storage.retry import RetryPolicy

logger = logging.getLogger("guild_profile_bot.migrate")

SNAPSHOT_SECTIONS = ("profiles", "tags", "tag_members", "user_themes")


def _count_snapshot(snapshot: Dict[str, Any]) -> Dict[str, int]:
    return {section: len(snapshot.get(section) or []) for section in SNAPSHOT_SECTIONS}


async def summarize(store: PersistenceBackend) -> Dict[str, int]:
    totals = {"guilds": 0, **{section: 0 for section in SNAPSHOT_SECTIONS}}
    for guild_id in await store.list_guild_ids():
        snapshot = await store.export_guild(guild_id)
        totals["guilds"] += 1
        for section, count in _count_snapshot(snapshot).items():
            totals[section] += count
    return totals


async def copy_store(
    source: PersistenceBackend,
    target: PersistenceBackend,
    *,
    guild_ids: Iterable[str] | None = None,
) -> Dict[str, Any]:
    """Best-effort one-time copy of every guild from ``source`` into ``target``.

    Guilds are copied one snapshot at a time; a guild that fails is logged and
    listed under ``failed_guilds`` while the rest continue.
    """
    wanted = list(guild_ids) if guild_ids is not None else await source.list_guild_ids()
    totals: Dict[str, Any] = {"guilds": 0, **{section: 0 for section in SNAPSHOT_SECTIONS}}
    failed: List[str] = []
    for guild_id in wanted:
        try:
            snapshot = await source.export_guild(guild_id)
            await target.import_guild(snapshot)
        except Exception as exc:
            logger.error("Copy of guild %s failed: %s", guild_id, exc)
            failed.append(guild_id)
            continue
        counts = _count_snapshot(snapshot)
        totals["guilds"] += 1
        for section, count in counts.items():
            totals[section] += count
        logger.info(
            "Copied guild %s: profiles=%s tags=%s tag_members=%s user_themes=%s",
            guild_id,
            counts["profiles"],
            counts["tags"],
            counts["tag_members"],
            counts["user_themes"],
        )
    totals["failed_guilds"] = failed
    return totals


def _parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Copy guild profile data between storage backends.")
    parser.add_argument("--from", dest="source", choices=PROFILE_BACKENDS, default="firestore")
    parser.add_argument("--to", dest="target", choices=PROFILE_BACKENDS, default="sqlite")
    parser.add_argument("--guild", dest="guilds", action="append", default=None, help="Copy only this guild id.")
    parser.add_argument("--summary", action="store_true", help="Only print per-backend totals.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    policy = RetryPolicy(
        max_attempts=settings.storage_retry_attempts,
        base_delay=settings.storage_retry_base_delay_ms / 1000.0,
    )
    source = compose_backend(build_backend(args.source, settings), policy=policy)
    target = compose_backend(build_backend(args.target, settings), policy=policy)
    await source.init()
    await target.init()
    try:
        if args.summary:
            for name, store in ((args.source, source), (args.target, target)):
                logger.info("%s totals: %s", name, await summarize(store))
            return 0
        result = await copy_store(source, target, guild_ids=args.guilds)
        logger.info("Migration finished: %s", result)
        return 1 if result["failed_guilds"] else 0
    finally:
        await source.close()
        await target.close()


def main(argv: List[str] | None = None) -> int:
    configure_logging()
    args = _parse_args(argv)
    if args.source == args.target:
        raise SystemExit("--from and --to must name different backends")
    settings = Settings.from_env()
    settings.validate_storage()
    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    raise SystemExit(main())
