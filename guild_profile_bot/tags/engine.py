from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from ..errors import LimitReachedError, UgcDisabledError
from ..storage.base import PersistenceBackend
from ..storage.utils import DEFAULT_TAG_CATEGORY, dedupe_preserving_order, tag_slug_to_display

logger = logging.getLogger("guild_profile_bot.tags")

DEFAULT_MEMBERS_PAGE_SIZE = 5000


@dataclass(slots=True)
class BulkTagResult:
    success: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, List[str]]:
        return {"success": list(self.success), "failed": list(self.failed)}


def _fallback_tag(tag_slug: str) -> Dict[str, Any]:
    return {
        "tag_slug": tag_slug,
        "display_name": tag_slug_to_display(tag_slug),
        "category": DEFAULT_TAG_CATEGORY,
        "created_by": "",
    }


class TagMembershipEngine:
    """Tag policy (UGC, per-member limit) over the backend membership primitives.

    Edges are the source of truth; every change rewrites the profile mirror from
    them inside the backend's atomic unit.
    """

    def __init__(self, store: PersistenceBackend) -> None:
        self.store = store

    async def _max_tags(self, guild_id: str) -> tuple[int, bool]:
        config = await self.store.get_guild_config(guild_id)
        return int(config["max_tags_per_user"]), bool(config["allow_ugc_tags"])

    async def _tag_exists(self, guild_id: str, tag_slug: str, allow_ugc: bool) -> bool:
        if await self.store.get_tag(guild_id, tag_slug) is not None:
            return True
        if not allow_ugc:
            raise UgcDisabledError(tag_slug)
        return False

    async def _create_member_tag(self, guild_id: str, user_id: str, tag_slug: str) -> None:
        created = await self.store.create_tag_if_absent(
            guild_id,
            tag_slug,
            tag_slug_to_display(tag_slug),
            user_id,
        )
        if created:
            logger.info("Member %s created tag %s in guild %s", user_id, tag_slug, guild_id)

    async def _ensure_tag(self, guild_id: str, user_id: str, tag_slug: str, allow_ugc: bool) -> None:
        if not await self._tag_exists(guild_id, tag_slug, allow_ugc):
            await self._create_member_tag(guild_id, user_id, tag_slug)

    async def add_user_tag(self, guild_id: str, user_id: str, tag_slug: str) -> bool:
        max_tags, allow_ugc = await self._max_tags(guild_id)
        held = await self.store.list_member_tag_slugs(guild_id, user_id)
        if tag_slug in held:
            return False
        exists = await self._tag_exists(guild_id, tag_slug, allow_ugc)
        if len(held) >= max_tags:
            raise LimitReachedError(max_tags)
        if not exists:
            await self._create_member_tag(guild_id, user_id, tag_slug)
        return await self.store.add_tag_membership(guild_id, user_id, tag_slug, max_tags)

    async def add_multiple_user_tags(self, guild_id: str, user_id: str, tag_slugs: Iterable[str]) -> BulkTagResult:
        result = BulkTagResult()
        requested = dedupe_preserving_order(tag_slugs)
        if not requested:
            return result

        max_tags, allow_ugc = await self._max_tags(guild_id)
        held = set(await self.store.list_member_tag_slugs(guild_id, user_id))
        new_slugs = [slug for slug in requested if slug not in held]
        if not new_slugs:
            result.failed = list(requested)
            return result

        capacity = max_tags - len(held)
        if capacity <= 0:
            result.failed = new_slugs
            return result

        kept, trimmed = new_slugs[:capacity], new_slugs[capacity:]
        for tag_slug in kept:
            try:
                await self._ensure_tag(guild_id, user_id, tag_slug, allow_ugc)
                await self.store.add_tag_membership(guild_id, user_id, tag_slug, max_tags)
            except Exception as exc:
                logger.warning("Bulk add of tag %s for %s in guild %s failed: %s", tag_slug, user_id, guild_id, exc)
                result.failed.append(tag_slug)
            else:
                result.success.append(tag_slug)
        result.failed.extend(trimmed)

        await self.store.sync_profile_tags(guild_id, user_id)
        return result

    async def remove_user_tag(self, guild_id: str, user_id: str, tag_slug: str) -> bool:
        return await self.store.remove_tag_membership(guild_id, user_id, tag_slug)

    async def remove_multiple_user_tags(
        self,
        guild_id: str,
        user_id: str,
        tag_slugs: Iterable[str],
    ) -> BulkTagResult:
        result = BulkTagResult()
        requested = dedupe_preserving_order(tag_slugs)
        if not requested:
            return result

        held = set(await self.store.list_member_tag_slugs(guild_id, user_id))
        for tag_slug in requested:
            if tag_slug not in held:
                result.failed.append(tag_slug)
                continue
            try:
                removed = await self.store.remove_tag_membership(guild_id, user_id, tag_slug)
            except Exception as exc:
                logger.warning(
                    "Bulk removal of tag %s for %s in guild %s failed: %s", tag_slug, user_id, guild_id, exc
                )
                result.failed.append(tag_slug)
                continue
            (result.success if removed else result.failed).append(tag_slug)

        await self.store.sync_profile_tags(guild_id, user_id)
        return result

    async def list_user_tags(self, guild_id: str, user_id: str) -> List[Dict[str, Any]]:
        slugs = await self.store.list_member_tag_slugs(guild_id, user_id)
        if not slugs:
            return []
        found = await self.store.get_tags(guild_id, slugs)
        tags = [found.get(slug) or _fallback_tag(slug) for slug in slugs]
        tags.sort(key=lambda tag: (tag["display_name"], tag["tag_slug"]))
        return tags

    async def remove_guild_tag(self, guild_id: str, tag_slug: str) -> List[str]:
        affected = dedupe_preserving_order(await self.store.remove_guild_tag(guild_id, tag_slug))
        errors: List[Exception] = []
        for user_id in affected:
            try:
                await self.store.sync_profile_tags(guild_id, user_id)
            except Exception as exc:
                logger.warning("Could not resync tags of %s in guild %s: %s", user_id, guild_id, exc)
                errors.append(exc)
        if errors:
            raise errors[0]
        return affected

    async def get_users_by_tag(
        self,
        guild_id: str,
        tag_slug: str,
        limit: int = DEFAULT_MEMBERS_PAGE_SIZE,
        offset: int = 0,
    ) -> List[str]:
        return await self.store.list_tag_members(guild_id, tag_slug, limit, offset)
