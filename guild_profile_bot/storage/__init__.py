from .base import PersistenceBackend
from .cache import CachedBackend, ProfileCache
from .retry import RetryingBackend, RetryPolicy
from .sqlite_store import SqliteProfileStore
from .stats import StorageHeartbeat, UsageStats

__all__ = [
    "PersistenceBackend",
    "SqliteProfileStore",
    "RetryPolicy",
    "RetryingBackend",
    "ProfileCache",
    "CachedBackend",
    "UsageStats",
    "StorageHeartbeat",
]
