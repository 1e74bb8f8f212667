from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional

from ..errors import InvalidInputError
from .utils import TAG_DELETE_BATCH_SIZE

DEFAULT_MAX_TAGS_PER_USER = 30
DEFAULT_PROFILE_THEME = "default"

GUILD_CONFIG_FIELDS = ("allow_ugc_tags", "max_tags_per_user", "profile_theme", "custom_colors")
USER_THEME_FIELDS = ("theme", "primary_color", "secondary_color", "title", "tags_emoji")
FEATURE_FLAGS = ("ping_threads", "user_customization")


def default_guild_config() -> Dict[str, Any]:
    return {
        "allow_ugc_tags": True,
        "max_tags_per_user": DEFAULT_MAX_TAGS_PER_USER,
        "profile_theme": DEFAULT_PROFILE_THEME,
        "custom_colors": None,
    }


def default_feature_config() -> Dict[str, bool]:
    return {flag: True for flag in FEATURE_FLAGS}


class PersistenceBackend(abc.ABC):
    """Storage capability shared by the document-store and the SQLite backends.

    Every method is guild scoped and returns plain dicts/lists. Reads of absent
    entities return ``None`` (or documented defaults) instead of raising.
    """

    backend_name = "abstract"

    @classmethod
    def is_transient_error(cls, exc: BaseException) -> bool:
        return False

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abc.abstractmethod
    async def ping(self) -> None: ...

    # guilds
    @abc.abstractmethod
    async def upsert_guild(self, guild_id: str) -> None: ...

    @abc.abstractmethod
    async def get_guild_config(self, guild_id: str) -> Dict[str, Any]: ...

    @abc.abstractmethod
    async def set_guild_config(self, guild_id: str, patch: Dict[str, Any]) -> None: ...

    # profiles
    @abc.abstractmethod
    async def upsert_profile(
        self,
        guild_id: str,
        user_id: str,
        bio: str = "",
        profile_image: str | None = None,
    ) -> None: ...

    @abc.abstractmethod
    async def get_profile(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]: ...

    # tag dictionary
    @abc.abstractmethod
    async def add_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = "general",
    ) -> None: ...

    @abc.abstractmethod
    async def create_tag_if_absent(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = "general",
    ) -> bool: ...

    @abc.abstractmethod
    async def get_tag(self, guild_id: str, tag_slug: str) -> Optional[Dict[str, Any]]: ...

    @abc.abstractmethod
    async def get_tags(self, guild_id: str, tag_slugs: List[str]) -> Dict[str, Dict[str, Any]]: ...

    @abc.abstractmethod
    async def remove_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        batch_size: int = TAG_DELETE_BATCH_SIZE,
    ) -> List[str]: ...

    @abc.abstractmethod
    async def list_guild_tags(self, guild_id: str) -> List[Dict[str, Any]]: ...

    @abc.abstractmethod
    async def search_guild_tags(self, guild_id: str, query: str, limit: int = 25) -> List[Dict[str, Any]]: ...

    # membership edges
    @abc.abstractmethod
    async def add_tag_membership(self, guild_id: str, user_id: str, tag_slug: str, max_tags: int) -> bool:
        """Atomically add one edge and rewrite the profile mirror.

        Returns ``False`` when the member already held the tag. Raises
        ``LimitReachedError`` without mutating anything when the member already
        holds ``max_tags`` tags.
        """

    @abc.abstractmethod
    async def remove_tag_membership(self, guild_id: str, user_id: str, tag_slug: str) -> bool: ...

    @abc.abstractmethod
    async def sync_profile_tags(self, guild_id: str, user_id: str) -> List[str]: ...

    @abc.abstractmethod
    async def list_member_tag_slugs(self, guild_id: str, user_id: str) -> List[str]: ...

    @abc.abstractmethod
    async def list_tag_members(self, guild_id: str, tag_slug: str, limit: int, offset: int = 0) -> List[str]: ...

    # themes and feature flags
    @abc.abstractmethod
    async def set_user_theme(self, guild_id: str, user_id: str, patch: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def get_user_theme(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]: ...

    @abc.abstractmethod
    async def set_guild_feature_config(self, guild_id: str, patch: Dict[str, bool]) -> None: ...

    @abc.abstractmethod
    async def get_guild_feature_config(self, guild_id: str) -> Dict[str, bool]: ...

    # migration
    @abc.abstractmethod
    async def list_guild_ids(self) -> List[str]: ...

    @abc.abstractmethod
    async def export_guild(self, guild_id: str) -> Dict[str, Any]: ...

    @abc.abstractmethod
    async def import_guild(self, snapshot: Dict[str, Any]) -> None: ...


def whitelist_patch(patch: Dict[str, Any], allowed: tuple[str, ...], *, label: str) -> Dict[str, Any]:
    unknown = sorted(str(key) for key in patch if key not in allowed)
    if unknown:
        raise InvalidInputError(f"Unknown {label} field(s): {', '.join(unknown)}")
    return {key: patch[key] for key in allowed if key in patch}
