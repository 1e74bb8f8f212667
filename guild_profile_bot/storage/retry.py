from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..errors import QuotaExceededError
from .base import PersistenceBackend
from .stats import UsageStats
from .utils import DEFAULT_TAG_CATEGORY, TAG_DELETE_BATCH_SIZE

logger = logging.getLogger("guild_profile_bot.storage.retry")

T = TypeVar("T")

READ_OPERATIONS = frozenset(
    {
        "ping",
        "get_guild_config",
        "get_profile",
        "get_tag",
        "get_tags",
        "list_guild_tags",
        "search_guild_tags",
        "list_member_tag_slugs",
        "list_tag_members",
        "get_user_theme",
        "get_guild_feature_config",
        "list_guild_ids",
        "export_guild",
    }
)


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_jitter: float = 1.0

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = int(self.max_attempts)
        self.base_delay = max(0.0, float(self.base_delay))
        self.max_jitter = max(0.0, float(self.max_jitter))

    def delay_before(self, attempt: int, jitter: float) -> float:
        """Backoff before ``attempt`` (2-based): ``base_delay * 2**(attempt-2) + jitter``."""
        return self.base_delay * (2 ** max(0, attempt - 2)) + jitter


async def with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    operation: str,
    policy: RetryPolicy,
    is_transient: Callable[[BaseException], bool],
    stats: UsageStats | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    rng: Callable[[], float] | None = None,
) -> T:
    sleep = sleep or asyncio.sleep
    rng = rng or random.random
    last_error: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1:
            delay = policy.delay_before(attempt, rng() * policy.max_jitter)
            logger.warning(
                "Transient storage error in %s (attempt %s/%s), retrying in %.2fs: %s",
                operation,
                attempt - 1,
                policy.max_attempts,
                delay,
                last_error,
            )
            await sleep(delay)
        try:
            return await call()
        except Exception as exc:
            if not is_transient(exc):
                raise
            last_error = exc
            if stats is not None:
                stats.transient_errors += 1

    if stats is not None:
        stats.quota_exhausted += 1
        logger.error(
            "Storage retries exhausted for %s after %s attempts; usage=%s",
            operation,
            policy.max_attempts,
            stats.snapshot(),
        )
    else:
        logger.error("Storage retries exhausted for %s after %s attempts", operation, policy.max_attempts)
    raise QuotaExceededError(policy.max_attempts) from last_error


class BackendProxy(PersistenceBackend):
    """Forwards every backend call through ``_dispatch`` to ``inner``."""

    def __init__(self, inner: PersistenceBackend) -> None:
        self.inner = inner

    @property
    def backend_name(self) -> str:  # type: ignore[override]
        return self.inner.backend_name

    def is_transient_error(self, exc: BaseException) -> bool:  # type: ignore[override]
        return self.inner.is_transient_error(exc)

    async def _dispatch(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        return await getattr(self.inner, operation)(*args, **kwargs)

    async def init(self) -> None:
        await self.inner.init()

    async def close(self) -> None:
        await self.inner.close()

    async def ping(self) -> None:
        await self._dispatch("ping")

    async def upsert_guild(self, guild_id: str) -> None:
        await self._dispatch("upsert_guild", guild_id)

    async def get_guild_config(self, guild_id: str) -> Dict[str, Any]:
        return await self._dispatch("get_guild_config", guild_id)

    async def set_guild_config(self, guild_id: str, patch: Dict[str, Any]) -> None:
        await self._dispatch("set_guild_config", guild_id, patch)

    async def upsert_profile(
        self,
        guild_id: str,
        user_id: str,
        bio: str = "",
        profile_image: str | None = None,
    ) -> None:
        await self._dispatch("upsert_profile", guild_id, user_id, bio, profile_image)

    async def get_profile(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._dispatch("get_profile", guild_id, user_id)

    async def add_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> None:
        await self._dispatch("add_guild_tag", guild_id, tag_slug, display_name, created_by, category)

    async def create_tag_if_absent(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> bool:
        return await self._dispatch("create_tag_if_absent", guild_id, tag_slug, display_name, created_by, category)

    async def get_tag(self, guild_id: str, tag_slug: str) -> Optional[Dict[str, Any]]:
        return await self._dispatch("get_tag", guild_id, tag_slug)

    async def get_tags(self, guild_id: str, tag_slugs: List[str]) -> Dict[str, Dict[str, Any]]:
        return await self._dispatch("get_tags", guild_id, tag_slugs)

    async def remove_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        batch_size: int = TAG_DELETE_BATCH_SIZE,
    ) -> List[str]:
        return await self._dispatch("remove_guild_tag", guild_id, tag_slug, batch_size)

    async def list_guild_tags(self, guild_id: str) -> List[Dict[str, Any]]:
        return await self._dispatch("list_guild_tags", guild_id)

    async def search_guild_tags(self, guild_id: str, query: str, limit: int = 25) -> List[Dict[str, Any]]:
        return await self._dispatch("search_guild_tags", guild_id, query, limit)

    async def add_tag_membership(self, guild_id: str, user_id: str, tag_slug: str, max_tags: int) -> bool:
        return await self._dispatch("add_tag_membership", guild_id, user_id, tag_slug, max_tags)

    async def remove_tag_membership(self, guild_id: str, user_id: str, tag_slug: str) -> bool:
        return await self._dispatch("remove_tag_membership", guild_id, user_id, tag_slug)

    async def sync_profile_tags(self, guild_id: str, user_id: str) -> List[str]:
        return await self._dispatch("sync_profile_tags", guild_id, user_id)

    async def list_member_tag_slugs(self, guild_id: str, user_id: str) -> List[str]:
        return await self._dispatch("list_member_tag_slugs", guild_id, user_id)

    async def list_tag_members(self, guild_id: str, tag_slug: str, limit: int, offset: int = 0) -> List[str]:
        return await self._dispatch("list_tag_members", guild_id, tag_slug, limit, offset)

    async def set_user_theme(self, guild_id: str, user_id: str, patch: Dict[str, Any]) -> None:
        await self._dispatch("set_user_theme", guild_id, user_id, patch)

    async def get_user_theme(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._dispatch("get_user_theme", guild_id, user_id)

    async def set_guild_feature_config(self, guild_id: str, patch: Dict[str, bool]) -> None:
        await self._dispatch("set_guild_feature_config", guild_id, patch)

    async def get_guild_feature_config(self, guild_id: str) -> Dict[str, bool]:
        return await self._dispatch("get_guild_feature_config", guild_id)

    async def list_guild_ids(self) -> List[str]:
        return await self._dispatch("list_guild_ids")

    async def export_guild(self, guild_id: str) -> Dict[str, Any]:
        return await self._dispatch("export_guild", guild_id)

    async def import_guild(self, snapshot: Dict[str, Any]) -> None:
        await self._dispatch("import_guild", snapshot)


class RetryingBackend(BackendProxy):
    def __init__(
        self,
        inner: PersistenceBackend,
        policy: RetryPolicy | None = None,
        *,
        stats: UsageStats | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(inner)
        self.policy = policy if policy is not None else RetryPolicy()
        self.stats = stats if stats is not None else UsageStats()
        self._sleep = sleep
        self._rng = rng

    async def _dispatch(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        method = getattr(self.inner, operation)
        result = await with_retry(
            lambda: method(*args, **kwargs),
            operation=operation,
            policy=self.policy,
            is_transient=self.inner.is_transient_error,
            stats=self.stats,
            sleep=self._sleep,
            rng=self._rng,
        )
        if operation in READ_OPERATIONS:
            self.stats.reads += 1
        else:
            self.stats.writes += 1
        return result
