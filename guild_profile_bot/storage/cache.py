from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .base import PersistenceBackend
from .retry import BackendProxy
from .stats import UsageStats
from .utils import DEFAULT_TAG_CATEGORY, TAG_DELETE_BATCH_SIZE, filter_tags, member_key

logger = logging.getLogger("guild_profile_bot.storage.cache")

CACHE_KINDS = ("guild_config", "profile", "tags", "user_theme", "feature_config")
DEFAULT_CACHE_TTLS: Dict[str, float] = {
    "guild_config": 5 * 60.0,
    "profile": 2 * 60.0,
    "tags": 10 * 60.0,
    "user_theme": 5 * 60.0,
    "feature_config": 10 * 60.0,
}

MISSING = object()

CacheKey = Tuple[str, str]


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    inserted_at: float


class ProfileCache:
    """Per-kind TTL cache of backend reads.

    Values are deep-copied on the way in and out. Every key carries a
    generation that eviction bumps, so a read that started before an eviction
    cannot store its result afterwards.
    """

    def __init__(
        self,
        ttls: Mapping[str, float] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        merged = dict(DEFAULT_CACHE_TTLS)
        for kind, ttl in (ttls or {}).items():
            if kind not in DEFAULT_CACHE_TTLS:
                raise ValueError(f"Unknown cache kind: {kind}")
            merged[kind] = float(ttl)
        if any(ttl <= 0 for ttl in merged.values()):
            raise ValueError("cache TTLs must be positive")
        self.ttls = merged
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._entries: Dict[CacheKey, _CacheEntry] = {}
        self._generations: Dict[CacheKey, int] = {}
        self._epoch = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def sweep_interval(self) -> float:
        return min(self.ttls.values())

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, kind: str, key: str) -> Any:
        """Return a copy of the fresh value or the ``MISSING`` sentinel."""
        entry = self._entries.get((kind, key))
        if entry is None:
            return MISSING
        if self._clock() - entry.inserted_at >= self.ttls[kind]:
            self._entries.pop((kind, key), None)
            return MISSING
        return copy.deepcopy(entry.value)

    def generation(self, kind: str, key: str) -> tuple[int, int]:
        return (self._epoch, self._generations.get((kind, key), 0))

    def store(self, kind: str, key: str, value: Any, generation: tuple[int, int]) -> bool:
        if generation != self.generation(kind, key):
            return False
        self._entries[(kind, key)] = _CacheEntry(copy.deepcopy(value), self._clock())
        return True

    def evict(self, kind: str, key: str) -> None:
        self._entries.pop((kind, key), None)
        self._generations[(kind, key)] = self._generations.get((kind, key), 0) + 1

    def evict_prefix(self, kinds: Iterable[str], prefix: str) -> None:
        wanted = set(kinds)
        for cache_key in [k for k in self._entries if k[0] in wanted and k[1].startswith(prefix)]:
            self._entries.pop(cache_key, None)
        # Keys never read before have no generation yet; the epoch covers them.
        self._epoch += 1

    def clear(self) -> None:
        self._entries.clear()
        self._epoch += 1

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if now - entry.inserted_at >= self.ttls[k[0]]]
        for cache_key in expired:
            self._entries.pop(cache_key, None)
        return len(expired)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="profile-cache-sweeper")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await self._sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug("Cache sweep evicted %s expired entries (%s left)", removed, len(self._entries))


class CachedBackend(BackendProxy):
    def __init__(
        self,
        inner: PersistenceBackend,
        cache: ProfileCache | None = None,
        *,
        stats: UsageStats | None = None,
    ) -> None:
        super().__init__(inner)
        self.cache = cache if cache is not None else ProfileCache()
        self.stats = stats if stats is not None else UsageStats()

    async def _read_through(self, kind: str, key: str, operation: str, *args: Any) -> Any:
        cached = self.cache.lookup(kind, key)
        if cached is not MISSING:
            self.stats.cache_hits += 1
            return cached
        generation = self.cache.generation(kind, key)
        value = await self._dispatch(operation, *args)
        self.cache.store(kind, key, value, generation)
        return copy.deepcopy(value)

    async def _write_evicting(self, targets: List[CacheKey], operation: str, *args: Any) -> Any:
        try:
            return await self._dispatch(operation, *args)
        finally:
            for kind, key in targets:
                self.cache.evict(kind, key)

    async def close(self) -> None:
        self.cache.clear()
        await super().close()

    # reads

    async def get_guild_config(self, guild_id: str) -> Dict[str, Any]:
        return await self._read_through("guild_config", guild_id, "get_guild_config", guild_id)

    async def get_profile(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._read_through("profile", member_key(guild_id, user_id), "get_profile", guild_id, user_id)

    async def list_guild_tags(self, guild_id: str) -> List[Dict[str, Any]]:
        return await self._read_through("tags", guild_id, "list_guild_tags", guild_id)

    async def search_guild_tags(self, guild_id: str, query: str, limit: int = 25) -> List[Dict[str, Any]]:
        return filter_tags(await self.list_guild_tags(guild_id), query, limit)

    async def get_user_theme(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        key = member_key(guild_id, user_id)
        return await self._read_through("user_theme", key, "get_user_theme", guild_id, user_id)

    async def get_guild_feature_config(self, guild_id: str) -> Dict[str, bool]:
        return await self._read_through("feature_config", guild_id, "get_guild_feature_config", guild_id)

    # writes

    async def upsert_guild(self, guild_id: str) -> None:
        await self._write_evicting([("guild_config", guild_id)], "upsert_guild", guild_id)

    async def set_guild_config(self, guild_id: str, patch: Dict[str, Any]) -> None:
        await self._write_evicting([("guild_config", guild_id)], "set_guild_config", guild_id, patch)

    async def upsert_profile(
        self,
        guild_id: str,
        user_id: str,
        bio: str = "",
        profile_image: str | None = None,
    ) -> None:
        targets = [("profile", member_key(guild_id, user_id))]
        await self._write_evicting(targets, "upsert_profile", guild_id, user_id, bio, profile_image)

    async def add_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> None:
        await self._write_evicting(
            [("tags", guild_id)], "add_guild_tag", guild_id, tag_slug, display_name, created_by, category
        )

    async def create_tag_if_absent(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> bool:
        return await self._write_evicting(
            [("tags", guild_id)], "create_tag_if_absent", guild_id, tag_slug, display_name, created_by, category
        )

    async def remove_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        batch_size: int = TAG_DELETE_BATCH_SIZE,
    ) -> List[str]:
        try:
            return await self._write_evicting(
                [("tags", guild_id)], "remove_guild_tag", guild_id, tag_slug, batch_size
            )
        finally:
            self.cache.evict_prefix(("profile",), member_key(guild_id, ""))

    async def add_tag_membership(self, guild_id: str, user_id: str, tag_slug: str, max_tags: int) -> bool:
        targets = [("profile", member_key(guild_id, user_id))]
        return await self._write_evicting(targets, "add_tag_membership", guild_id, user_id, tag_slug, max_tags)

    async def remove_tag_membership(self, guild_id: str, user_id: str, tag_slug: str) -> bool:
        targets = [("profile", member_key(guild_id, user_id))]
        return await self._write_evicting(targets, "remove_tag_membership", guild_id, user_id, tag_slug)

    async def sync_profile_tags(self, guild_id: str, user_id: str) -> List[str]:
        targets = [("profile", member_key(guild_id, user_id))]
        return await self._write_evicting(targets, "sync_profile_tags", guild_id, user_id)

    async def set_user_theme(self, guild_id: str, user_id: str, patch: Dict[str, Any]) -> None:
        targets = [("user_theme", member_key(guild_id, user_id))]
        await self._write_evicting(targets, "set_user_theme", guild_id, user_id, patch)

    async def set_guild_feature_config(self, guild_id: str, patch: Dict[str, bool]) -> None:
        await self._write_evicting([("feature_config", guild_id)], "set_guild_feature_config", guild_id, patch)

    async def import_guild(self, snapshot: Dict[str, Any]) -> None:
        guild_id = str(snapshot["guild_id"])
        targets = [(kind, guild_id) for kind in ("guild_config", "tags", "feature_config")]
        try:
            await self._write_evicting(targets, "import_guild", snapshot)
        finally:
            self.cache.evict_prefix(("profile", "user_theme"), member_key(guild_id, ""))
