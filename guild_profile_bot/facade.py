from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional, TypeVar

from .errors import BackendError, InvalidInputError, ProfileDataError
from .storage.base import (
    FEATURE_FLAGS,
    GUILD_CONFIG_FIELDS,
    USER_THEME_FIELDS,
    PersistenceBackend,
    whitelist_patch,
)
from .storage.stats import UsageStats
from .storage.utils import DEFAULT_TAG_CATEGORY, MAX_BIO_CHARS, normalize_tag_slug, tag_slug_to_display
from .tags.engine import DEFAULT_MEMBERS_PAGE_SIZE, BulkTagResult, TagMembershipEngine
from .themes import GUILD_THEMES, resolve_profile_theme

logger = logging.getLogger("guild_profile_bot.facade")

T = TypeVar("T")

MAX_TITLE_CHARS = 256
MAX_DISPLAY_NAME_CHARS = 100


def _require_id(value: object, label: str) -> str:
    text = str(value if value is not None else "").strip()
    if not text:
        raise InvalidInputError(f"{label} is required")
    return text


def _require_slug(value: object) -> str:
    slug = normalize_tag_slug(value)
    if not slug:
        raise InvalidInputError("Tag names may only use letters, digits, '-' and '_'")
    return slug


def _validate_bio(bio: object) -> str:
    text = "" if bio is None else str(bio)
    if len(text) > MAX_BIO_CHARS:
        raise InvalidInputError(f"Bio must be at most {MAX_BIO_CHARS} characters")
    return text


def _validate_colors(value: object) -> Dict[str, str] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise InvalidInputError("custom_colors must have 'primary' and 'secondary'")
    primary = str(value.get("primary") or "").strip()
    secondary = str(value.get("secondary") or "").strip()
    if not primary or not secondary:
        raise InvalidInputError("custom_colors must have 'primary' and 'secondary'")
    return {"primary": primary, "secondary": secondary}


def validate_guild_config_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    fields = whitelist_patch(dict(patch), GUILD_CONFIG_FIELDS, label="guild config")
    if "allow_ugc_tags" in fields and not isinstance(fields["allow_ugc_tags"], bool):
        raise InvalidInputError("allow_ugc_tags must be true or false")
    if "max_tags_per_user" in fields:
        limit = fields["max_tags_per_user"]
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidInputError("max_tags_per_user must be an integer >= 1")
    if "profile_theme" in fields and fields["profile_theme"] not in GUILD_THEMES:
        raise InvalidInputError(f"profile_theme must be one of: {', '.join(GUILD_THEMES)}")
    if "custom_colors" in fields:
        fields["custom_colors"] = _validate_colors(fields["custom_colors"])
    return fields


def validate_user_theme_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    fields = whitelist_patch(dict(patch), USER_THEME_FIELDS, label="user theme")
    for name, value in fields.items():
        if value is not None and not isinstance(value, str):
            raise InvalidInputError(f"{name} must be text")
    theme = fields.get("theme")
    if theme and theme not in GUILD_THEMES:
        raise InvalidInputError(f"theme must be one of: {', '.join(GUILD_THEMES)}")
    title = fields.get("title")
    if title and len(title) > MAX_TITLE_CHARS:
        raise InvalidInputError(f"title must be at most {MAX_TITLE_CHARS} characters")
    return fields


class ProfileDataService:
    """Coroutine surface used by command handlers.

    Inputs are validated and slugs normalized before any backend call. Errors
    outside the ``ProfileDataError`` taxonomy are logged and re-raised as
    ``BackendError``.
    """

    def __init__(
        self,
        store: PersistenceBackend,
        engine: TagMembershipEngine | None = None,
        *,
        stats: UsageStats | None = None,
    ) -> None:
        self.store = store
        self.engine = engine or TagMembershipEngine(store)
        self.stats = stats

    async def _guarded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except ProfileDataError:
            raise
        except Exception as exc:
            logger.exception("Storage operation %s failed", operation)
            raise BackendError(f"{operation} failed: {exc}") from exc

    # profiles

    async def set_profile(
        self,
        guild_id: str,
        user_id: str,
        bio: str = "",
        profile_image: str | None = None,
    ) -> None:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        text = _validate_bio(bio)
        image = str(profile_image).strip() if profile_image else None
        await self._guarded("upsert_guild", self.store.upsert_guild(guild_id))
        await self._guarded("upsert_profile", self.store.upsert_profile(guild_id, user_id, text, image))

    async def set_profile_image(self, guild_id: str, user_id: str, profile_image: str) -> None:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        image = _require_id(profile_image, "profile_image")
        current = await self.get_profile(guild_id, user_id)
        bio = current["bio"] if current else ""
        await self._guarded("upsert_guild", self.store.upsert_guild(guild_id))
        await self._guarded("upsert_profile", self.store.upsert_profile(guild_id, user_id, bio, image))

    async def get_profile(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        return await self._guarded("get_profile", self.store.get_profile(guild_id, user_id))

    async def get_profile_view(self, guild_id: str, user_id: str) -> Dict[str, Any]:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        profile = await self.get_profile(guild_id, user_id)
        tags = await self.list_user_tags(guild_id, user_id)
        theme = await self.resolve_profile_theme(guild_id, user_id)
        return {
            "user_id": user_id,
            "bio": profile["bio"] if profile else "",
            "profile_image": profile["profile_image"] if profile else None,
            "tags": tags,
            "theme": theme,
        }

    # guild config

    async def get_guild_config(self, guild_id: str) -> Dict[str, Any]:
        guild_id = _require_id(guild_id, "guild_id")
        return await self._guarded("get_guild_config", self.store.get_guild_config(guild_id))

    async def set_guild_config(self, guild_id: str, patch: Mapping[str, Any]) -> None:
        guild_id = _require_id(guild_id, "guild_id")
        fields = validate_guild_config_patch(patch)
        if not fields:
            return
        await self._guarded("set_guild_config", self.store.set_guild_config(guild_id, fields))

    async def get_guild_feature_config(self, guild_id: str) -> Dict[str, bool]:
        guild_id = _require_id(guild_id, "guild_id")
        return await self._guarded("get_guild_feature_config", self.store.get_guild_feature_config(guild_id))

    async def set_guild_feature_config(self, guild_id: str, feature: str, enabled: bool) -> None:
        guild_id = _require_id(guild_id, "guild_id")
        if feature not in FEATURE_FLAGS:
            raise InvalidInputError(f"Unknown feature: {feature} (expected one of: {', '.join(FEATURE_FLAGS)})")
        if not isinstance(enabled, bool):
            raise InvalidInputError("enabled must be true or false")
        await self._guarded(
            "set_guild_feature_config",
            self.store.set_guild_feature_config(guild_id, {feature: enabled}),
        )

    # user themes

    async def get_user_theme(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        return await self._guarded("get_user_theme", self.store.get_user_theme(guild_id, user_id))

    async def set_user_theme(self, guild_id: str, user_id: str, patch: Mapping[str, Any]) -> None:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        fields = validate_user_theme_patch(patch)
        if not fields:
            return
        await self._guarded("set_user_theme", self.store.set_user_theme(guild_id, user_id, fields))

    async def resolve_profile_theme(self, guild_id: str, user_id: str) -> Dict[str, str]:
        config = await self.get_guild_config(guild_id)
        features = await self.get_guild_feature_config(guild_id)
        user_theme = await self.get_user_theme(guild_id, user_id) if features["user_customization"] else None
        return resolve_profile_theme(config, user_id, user_theme)

    # tag dictionary

    async def add_guild_tag(
        self,
        guild_id: str,
        tag_name: str,
        created_by: str,
        *,
        display_name: str | None = None,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> Dict[str, Any]:
        guild_id = _require_id(guild_id, "guild_id")
        created_by = _require_id(created_by, "created_by")
        slug = _require_slug(tag_name)
        label = str(display_name or "").strip() or tag_slug_to_display(slug)
        if len(label) > MAX_DISPLAY_NAME_CHARS:
            raise InvalidInputError(f"Tag display name must be at most {MAX_DISPLAY_NAME_CHARS} characters")
        group = normalize_tag_slug(category) or DEFAULT_TAG_CATEGORY
        await self._guarded("upsert_guild", self.store.upsert_guild(guild_id))
        await self._guarded("add_guild_tag", self.store.add_guild_tag(guild_id, slug, label, created_by, group))
        return {"tag_slug": slug, "display_name": label, "category": group, "created_by": created_by}

    async def remove_guild_tag(self, guild_id: str, tag_name: str) -> List[str]:
        guild_id = _require_id(guild_id, "guild_id")
        slug = _require_slug(tag_name)
        return await self._guarded("remove_guild_tag", self.engine.remove_guild_tag(guild_id, slug))

    async def list_guild_tags(self, guild_id: str) -> List[Dict[str, Any]]:
        guild_id = _require_id(guild_id, "guild_id")
        return await self._guarded("list_guild_tags", self.store.list_guild_tags(guild_id))

    async def search_guild_tags(self, guild_id: str, query: str = "", limit: int = 25) -> List[Dict[str, Any]]:
        guild_id = _require_id(guild_id, "guild_id")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidInputError("limit must be an integer >= 1")
        return await self._guarded(
            "search_guild_tags",
            self.store.search_guild_tags(guild_id, str(query or "").strip(), limit),
        )

    # membership

    async def add_user_tag(self, guild_id: str, user_id: str, tag_name: str) -> bool:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        slug = _require_slug(tag_name)
        return await self._guarded("add_user_tag", self.engine.add_user_tag(guild_id, user_id, slug))

    async def add_multiple_user_tags(self, guild_id: str, user_id: str, tag_names: Iterable[str]) -> BulkTagResult:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        slugs, invalid = _split_slugs(tag_names)
        result = await self._guarded(
            "add_multiple_user_tags",
            self.engine.add_multiple_user_tags(guild_id, user_id, slugs),
        )
        result.failed.extend(invalid)
        return result

    async def remove_user_tag(self, guild_id: str, user_id: str, tag_name: str) -> bool:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        slug = _require_slug(tag_name)
        return await self._guarded("remove_user_tag", self.engine.remove_user_tag(guild_id, user_id, slug))

    async def remove_multiple_user_tags(
        self,
        guild_id: str,
        user_id: str,
        tag_names: Iterable[str],
    ) -> BulkTagResult:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        slugs, invalid = _split_slugs(tag_names)
        result = await self._guarded(
            "remove_multiple_user_tags",
            self.engine.remove_multiple_user_tags(guild_id, user_id, slugs),
        )
        result.failed.extend(invalid)
        return result

    async def list_user_tags(self, guild_id: str, user_id: str) -> List[Dict[str, Any]]:
        guild_id = _require_id(guild_id, "guild_id")
        user_id = _require_id(user_id, "user_id")
        return await self._guarded("list_user_tags", self.engine.list_user_tags(guild_id, user_id))

    async def get_users_by_tag(
        self,
        guild_id: str,
        tag_name: str,
        limit: int = DEFAULT_MEMBERS_PAGE_SIZE,
        offset: int = 0,
    ) -> List[str]:
        guild_id = _require_id(guild_id, "guild_id")
        slug = _require_slug(tag_name)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidInputError("limit must be an integer >= 1")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise InvalidInputError("offset must be an integer >= 0")
        return await self._guarded("get_users_by_tag", self.engine.get_users_by_tag(guild_id, slug, limit, offset))

    # health

    async def health(self) -> Dict[str, Any]:
        started = time.perf_counter()
        error: str | None = None
        try:
            await self.store.ping()
        except Exception as exc:
            logger.warning("Storage ping failed: %s", exc)
            error = str(exc) or exc.__class__.__name__
        return {
            "backend": self.store.backend_name,
            "ok": error is None,
            "latency_ms": round((time.perf_counter() - started) * 1000.0, 1),
            "usage": self.stats.snapshot() if self.stats is not None else {},
            "error": error,
        }


def _split_slugs(tag_names: Iterable[str]) -> tuple[List[str], List[str]]:
    if isinstance(tag_names, str):
        tag_names = [tag_names]
    slugs: List[str] = []
    invalid: List[str] = []
    for raw in tag_names:
        slug = normalize_tag_slug(raw)
        if slug:
            slugs.append(slug)
        else:
            invalid.append(str(raw))
    return slugs, invalid
