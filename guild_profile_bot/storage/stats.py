from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict

logger = logging.getLogger("guild_profile_bot.storage")


@dataclass(slots=True)
class UsageStats:
    reads: int = 0
    writes: int = 0
    cache_hits: int = 0
    transient_errors: int = 0
    quota_exhausted: int = 0
    window_started_at: float = field(default_factory=time.monotonic)

    def snapshot(self) -> Dict[str, int]:
        return {
            "reads": self.reads,
            "writes": self.writes,
            "cache_hits": self.cache_hits,
            "transient_errors": self.transient_errors,
            "quota_exhausted": self.quota_exhausted,
        }

    def reset(self) -> None:
        self.reads = 0
        self.writes = 0
        self.cache_hits = 0
        self.transient_errors = 0
        self.quota_exhausted = 0
        self.window_started_at = time.monotonic()


class StorageHeartbeat:
    def __init__(
        self,
        stats: UsageStats,
        interval_seconds: int,
        *,
        backend_name: str = "-",
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self.stats = stats
        self.interval_seconds = max(5, int(interval_seconds))
        self.backend_name = backend_name
        self._sleep = sleep or asyncio.sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="storage-usage-heartbeat")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def report(self) -> None:
        window = time.monotonic() - self.stats.window_started_at
        logger.info(
            "[storage.health] backend=%s reads=%s writes=%s cache_hits=%s transient_errors=%s "
            "quota_exhausted=%s window_sec=%.0f",
            self.backend_name,
            self.stats.reads,
            self.stats.writes,
            self.stats.cache_hits,
            self.stats.transient_errors,
            self.stats.quota_exhausted,
            window,
        )
        self.stats.reset()

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_seconds)
            self.report()
