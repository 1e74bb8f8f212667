from __future__ import annotations

from .base import PersistenceBackend
from .sqlite import (
    SqliteExportMixin,
    SqliteGuildsMixin,
    SqliteMembersMixin,
    SqliteProfilesMixin,
    SqliteSchemaMixin,
    SqliteTagsMixin,
)
from .utils import _sqlite_connection, is_sqlite_contention_error


class SqliteProfileStore(
    SqliteSchemaMixin,
    SqliteGuildsMixin,
    SqliteProfilesMixin,
    SqliteTagsMixin,
    SqliteMembersMixin,
    SqliteExportMixin,
    PersistenceBackend,
):
    """Local SQLite store for guild profiles, the tag dictionary and membership edges."""

    backend_name = "sqlite"

    @classmethod
    def is_transient_error(cls, exc: BaseException) -> bool:
        return is_sqlite_contention_error(exc)

    async def ping(self) -> None:
        async with _sqlite_connection(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as db:
            await db.execute("SELECT 1")
