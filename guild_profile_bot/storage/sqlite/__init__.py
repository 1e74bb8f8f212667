from .export import SqliteExportMixin
from .guilds import SqliteGuildsMixin
from .members import SqliteMembersMixin
from .profiles import SqliteProfilesMixin
from .schema import SqliteSchemaMixin
from .tags import SqliteTagsMixin

__all__ = [
    "SqliteSchemaMixin",
    "SqliteGuildsMixin",
    "SqliteProfilesMixin",
    "SqliteTagsMixin",
    "SqliteMembersMixin",
    "SqliteExportMixin",
]
