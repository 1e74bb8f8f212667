from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .base import PersistenceBackend
from .cache import CachedBackend, ProfileCache
from .retry import RetryingBackend, RetryPolicy
from .sqlite_store import SqliteProfileStore
from .stats import StorageHeartbeat, UsageStats

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger("guild_profile_bot.storage")


def build_backend(backend: str, settings: "Settings") -> PersistenceBackend:
    name = backend.strip().lower()
    if name == "sqlite":
        return SqliteProfileStore(settings.sqlite_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    if name == "firestore":
        from .firestore_store import FirestoreProfileStore

        return FirestoreProfileStore(
            project_id=settings.firebase_project_id,
            client_email=settings.firebase_client_email,
            private_key=settings.firebase_private_key,
        )
    raise ValueError("PROFILE_BACKEND must be 'sqlite' or 'firestore'")


@dataclass(slots=True)
class DataLayer:
    backend: PersistenceBackend
    store: PersistenceBackend
    stats: UsageStats
    heartbeat: StorageHeartbeat
    cache: ProfileCache | None = None

    async def start(self) -> None:
        await self.backend.init()
        if self.cache is not None:
            self.cache.start()
        self.heartbeat.start()
        logger.info("Storage ready: backend=%s cache=%s", self.store.backend_name, self.cache is not None)

    async def close(self) -> None:
        await self.heartbeat.stop()
        if self.cache is not None:
            await self.cache.stop()
        await self.backend.close()


def compose_backend(
    store: PersistenceBackend,
    *,
    policy: RetryPolicy | None = None,
    stats: UsageStats | None = None,
    cache: ProfileCache | None = None,
) -> PersistenceBackend:
    stats = stats if stats is not None else UsageStats()
    backend: PersistenceBackend = RetryingBackend(store, policy, stats=stats)
    if cache is not None:
        backend = CachedBackend(backend, cache, stats=stats)
    return backend


def build_data_layer(settings: "Settings", *, store: PersistenceBackend | None = None) -> DataLayer:
    store = store or build_backend(settings.profile_backend, settings)
    stats = UsageStats()
    policy = RetryPolicy(
        max_attempts=settings.storage_retry_attempts,
        base_delay=settings.storage_retry_base_delay_ms / 1000.0,
    )
    # Cache sits in front of the document store only.
    cache = ProfileCache(settings.cache_ttls()) if store.backend_name == "firestore" else None
    backend = compose_backend(store, policy=policy, stats=stats, cache=cache)
    heartbeat = StorageHeartbeat(
        stats,
        settings.storage_stats_interval_seconds,
        backend_name=store.backend_name,
    )
    return DataLayer(backend=backend, store=store, stats=stats, heartbeat=heartbeat, cache=cache)
