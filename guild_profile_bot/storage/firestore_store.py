from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as google_exceptions
from google.auth import default as google_auth_default
from google.cloud import firestore
from google.oauth2 import service_account

from ..errors import LimitReachedError
from .base import (
    FEATURE_FLAGS,
    GUILD_CONFIG_FIELDS,
    USER_THEME_FIELDS,
    PersistenceBackend,
    default_feature_config,
    default_guild_config,
    whitelist_patch,
)
from .utils import DEFAULT_TAG_CATEGORY, TAG_DELETE_BATCH_SIZE, chunked, filter_tags

logger = logging.getLogger("guild_profile_bot.storage")

_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
_TOKEN_URI = "https://oauth2.googleapis.com/token"


def membership_doc_id(tag_slug: str, user_id: str) -> str:
    return f"{tag_slug}:{user_id}"


def _stamp(value: Any) -> float:
    if isinstance(value, datetime):
        return value.timestamp()
    return 0.0


def _guild_config_from_doc(data: Dict[str, Any] | None) -> Dict[str, Any]:
    config = default_guild_config()
    data = data or {}
    if data.get("allow_ugc_tags") is not None:
        config["allow_ugc_tags"] = bool(data["allow_ugc_tags"])
    if data.get("max_tags_per_user") is not None:
        config["max_tags_per_user"] = int(data["max_tags_per_user"])
    if data.get("profile_theme"):
        config["profile_theme"] = str(data["profile_theme"])
    colors = data.get("custom_colors")
    config["custom_colors"] = dict(colors) if colors else None
    return config


def _tag_from_doc(tag_slug: str, data: Dict[str, Any] | None) -> Dict[str, Any]:
    data = data or {}
    return {
        "tag_slug": tag_slug,
        "display_name": str(data.get("display_name") or tag_slug),
        "category": str(data.get("category") or DEFAULT_TAG_CATEGORY),
        "created_by": str(data.get("created_by") or ""),
    }


def _tag_sort_key(tag: Dict[str, Any]) -> tuple[str, str]:
    return (tag["display_name"], tag["tag_slug"])


def _ordered_edges(snapshots: List[Any], field: str) -> List[str]:
    rows = []
    for snapshot in snapshots:
        data = snapshot.to_dict() or {}
        value = data.get(field)
        if value is None:
            continue
        rows.append((_stamp(data.get("added_at")), str(value)))
    rows.sort()
    return [value for _, value in rows]


def build_credentials(
    project_id: str = "",
    client_email: str = "",
    private_key: str = "",
) -> Any:
    if client_email and private_key:
        info = {
            "type": "service_account",
            "project_id": project_id,
            "client_email": client_email,
            "private_key": private_key.replace("\\n", "\n"),
            "token_uri": _TOKEN_URI,
        }
        return service_account.Credentials.from_service_account_info(info, scopes=_SCOPES)
    creds, _ = google_auth_default(scopes=_SCOPES)
    return creds


class FirestoreProfileStore(PersistenceBackend):
    """Firestore-backed store implementing the same API as SqliteProfileStore.

    Layout: ``guilds/{guild}`` holds the guild config; profiles, tags,
    membership edges (``tag_members/{slug}:{user}``), user themes and the
    ``config/features`` document live in its subcollections.
    """

    backend_name = "firestore"

    def __init__(
        self,
        client: Any | None = None,
        *,
        project_id: str = "",
        client_email: str = "",
        private_key: str = "",
    ) -> None:
        self._client = client
        self._owns_client = False
        self.project_id = project_id.strip()
        self._client_email = client_email.strip()
        self._private_key = private_key

    @classmethod
    def is_transient_error(cls, exc: BaseException) -> bool:
        return isinstance(exc, google_exceptions.ResourceExhausted)

    def _ensure_client(self) -> Any:
        if self._client is None:
            credentials = build_credentials(self.project_id, self._client_email, self._private_key)
            self._client = firestore.AsyncClient(project=self.project_id or None, credentials=credentials)
            self._owns_client = True
        return self._client

    def _guild(self, guild_id: str) -> Any:
        return self._ensure_client().collection("guilds").document(guild_id)

    def _profile(self, guild_id: str, user_id: str) -> Any:
        return self._guild(guild_id).collection("profiles").document(user_id)

    def _tag(self, guild_id: str, tag_slug: str) -> Any:
        return self._guild(guild_id).collection("tags").document(tag_slug)

    def _members(self, guild_id: str) -> Any:
        return self._guild(guild_id).collection("tag_members")

    def _member_edges(self, guild_id: str, user_id: str) -> Any:
        return self._members(guild_id).where(filter=firestore.FieldFilter("user_id", "==", user_id))

    def _tag_edges(self, guild_id: str, tag_slug: str) -> Any:
        return self._members(guild_id).where(filter=firestore.FieldFilter("tag_slug", "==", tag_slug))

    async def init(self) -> None:
        self._ensure_client()

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None or not self._owns_client:
            return
        self._owns_client = False
        # AsyncClient has no close(); the gRPC channel belongs to its lazily built GAPIC client.
        api = client._firestore_api_internal
        if api is not None:
            await api.transport.close()

    async def ping(self) -> None:
        await self._ensure_client().collection("health").document("ping").get()

    # guilds

    async def upsert_guild(self, guild_id: str) -> None:
        try:
            await self._guild(guild_id).create(
                {"created_at": firestore.SERVER_TIMESTAMP, "updated_at": firestore.SERVER_TIMESTAMP}
            )
        except google_exceptions.AlreadyExists:
            return

    async def get_guild_config(self, guild_id: str) -> Dict[str, Any]:
        snapshot = await self._guild(guild_id).get()
        return _guild_config_from_doc(snapshot.to_dict() if snapshot.exists else None)

    async def set_guild_config(self, guild_id: str, patch: Dict[str, Any]) -> None:
        fields = whitelist_patch(patch, GUILD_CONFIG_FIELDS, label="guild config")
        if not fields:
            return
        await self._guild(guild_id).set({**fields, "updated_at": firestore.SERVER_TIMESTAMP}, merge=True)

    async def set_guild_feature_config(self, guild_id: str, patch: Dict[str, bool]) -> None:
        fields = whitelist_patch(patch, FEATURE_FLAGS, label="feature")
        if not fields:
            return
        payload = {flag: bool(value) for flag, value in fields.items()}
        ref = self._guild(guild_id).collection("config").document("features")
        await ref.set({**payload, "updated_at": firestore.SERVER_TIMESTAMP}, merge=True)

    async def get_guild_feature_config(self, guild_id: str) -> Dict[str, bool]:
        snapshot = await self._guild(guild_id).collection("config").document("features").get()
        config = default_feature_config()
        if snapshot.exists:
            data = snapshot.to_dict() or {}
            for flag in FEATURE_FLAGS:
                if data.get(flag) is not None:
                    config[flag] = bool(data[flag])
        return config

    # profiles

    async def upsert_profile(
        self,
        guild_id: str,
        user_id: str,
        bio: str = "",
        profile_image: str | None = None,
    ) -> None:
        payload: Dict[str, Any] = {"bio": bio or "", "updated_at": firestore.SERVER_TIMESTAMP}
        if profile_image:
            payload["profile_image"] = profile_image
        await self._profile(guild_id, user_id).set(payload, merge=True)

    async def get_profile(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        snapshot = await self._profile(guild_id, user_id).get()
        if not snapshot.exists:
            return None
        data = snapshot.to_dict() or {}
        tags = data.get("tags")
        return {
            "bio": str(data.get("bio") or ""),
            "profile_image": data.get("profile_image"),
            "tags": [str(tag) for tag in tags] if isinstance(tags, list) else [],
        }

    async def set_user_theme(self, guild_id: str, user_id: str, patch: Dict[str, Any]) -> None:
        fields = whitelist_patch(patch, USER_THEME_FIELDS, label="user theme")
        if not fields:
            return
        ref = self._guild(guild_id).collection("user_themes").document(user_id)
        await ref.set({**fields, "updated_at": firestore.SERVER_TIMESTAMP}, merge=True)

    async def get_user_theme(self, guild_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        snapshot = await self._guild(guild_id).collection("user_themes").document(user_id).get()
        if not snapshot.exists:
            return None
        data = snapshot.to_dict() or {}
        return {field: data.get(field) for field in USER_THEME_FIELDS}

    # tag dictionary

    async def add_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> None:
        await self._tag(guild_id, tag_slug).set(
            {
                "display_name": display_name,
                "created_by": created_by,
                "category": category or DEFAULT_TAG_CATEGORY,
                "updated_at": firestore.SERVER_TIMESTAMP,
            },
            merge=True,
        )

    async def create_tag_if_absent(
        self,
        guild_id: str,
        tag_slug: str,
        display_name: str,
        created_by: str,
        category: str = DEFAULT_TAG_CATEGORY,
    ) -> bool:
        try:
            await self._tag(guild_id, tag_slug).create(
                {
                    "display_name": display_name,
                    "created_by": created_by,
                    "category": category or DEFAULT_TAG_CATEGORY,
                    "created_at": firestore.SERVER_TIMESTAMP,
                    "updated_at": firestore.SERVER_TIMESTAMP,
                }
            )
        except google_exceptions.AlreadyExists:
            return False
        return True

    async def get_tag(self, guild_id: str, tag_slug: str) -> Optional[Dict[str, Any]]:
        snapshot = await self._tag(guild_id, tag_slug).get()
        if not snapshot.exists:
            return None
        return _tag_from_doc(tag_slug, snapshot.to_dict())

    async def get_tags(self, guild_id: str, tag_slugs: List[str]) -> Dict[str, Dict[str, Any]]:
        found: Dict[str, Dict[str, Any]] = {}
        if not tag_slugs:
            return found
        refs = [self._tag(guild_id, slug) for slug in tag_slugs]
        async for snapshot in self._ensure_client().get_all(refs):
            if snapshot.exists:
                found[snapshot.id] = _tag_from_doc(snapshot.id, snapshot.to_dict())
        return found

    async def remove_guild_tag(
        self,
        guild_id: str,
        tag_slug: str,
        batch_size: int = TAG_DELETE_BATCH_SIZE,
    ) -> List[str]:
        client = self._ensure_client()
        removed: List[str] = []
        while True:
            snapshots = [doc async for doc in self._tag_edges(guild_id, tag_slug).limit(batch_size).stream()]
            if not snapshots:
                break
            for batch_docs in chunked(snapshots, batch_size):
                batch = client.batch()
                for snapshot in batch_docs:
                    batch.delete(snapshot.reference)
                await batch.commit()
            removed.extend(_ordered_edges(snapshots, "user_id"))
        await self._tag(guild_id, tag_slug).delete()
        logger.info("Removed tag %s from guild %s (%s membership edges)", tag_slug, guild_id, len(removed))
        return removed

    async def list_guild_tags(self, guild_id: str) -> List[Dict[str, Any]]:
        tags = [
            _tag_from_doc(snapshot.id, snapshot.to_dict())
            async for snapshot in self._guild(guild_id).collection("tags").stream()
        ]
        tags.sort(key=_tag_sort_key)
        return tags

    async def search_guild_tags(self, guild_id: str, query: str, limit: int = 25) -> List[Dict[str, Any]]:
        return filter_tags(await self.list_guild_tags(guild_id), query, limit)

    # membership edges

    async def add_tag_membership(self, guild_id: str, user_id: str, tag_slug: str, max_tags: int) -> bool:
        client = self._ensure_client()
        profile_ref = self._profile(guild_id, user_id)
        edge_ref = self._members(guild_id).document(membership_doc_id(tag_slug, user_id))
        edges_query = self._member_edges(guild_id, user_id)

        @firestore.async_transactional
        async def _attach(transaction: Any) -> bool:
            await profile_ref.get(transaction=transaction)
            held = _ordered_edges([doc async for doc in edges_query.stream(transaction=transaction)], "tag_slug")
            added = tag_slug not in held
            if added:
                if len(held) >= max_tags:
                    raise LimitReachedError(max_tags)
                transaction.set(
                    edge_ref,
                    {"tag_slug": tag_slug, "user_id": user_id, "added_at": firestore.SERVER_TIMESTAMP},
                )
                held.append(tag_slug)
            transaction.set(profile_ref, {"tags": held, "updated_at": firestore.SERVER_TIMESTAMP}, merge=True)
            return added

        return await _attach(client.transaction())

    async def remove_tag_membership(self, guild_id: str, user_id: str, tag_slug: str) -> bool:
        client = self._ensure_client()
        profile_ref = self._profile(guild_id, user_id)
        edge_ref = self._members(guild_id).document(membership_doc_id(tag_slug, user_id))
        edges_query = self._member_edges(guild_id, user_id)

        @firestore.async_transactional
        async def _detach(transaction: Any) -> bool:
            profile_snapshot = await profile_ref.get(transaction=transaction)
            edge_snapshot = await edge_ref.get(transaction=transaction)
            held = _ordered_edges([doc async for doc in edges_query.stream(transaction=transaction)], "tag_slug")
            remaining = [slug for slug in held if slug != tag_slug]
            if edge_snapshot.exists:
                transaction.delete(edge_ref)
            if profile_snapshot.exists:
                transaction.set(
                    profile_ref,
                    {"tags": remaining, "updated_at": firestore.SERVER_TIMESTAMP},
                    merge=True,
                )
            return bool(edge_snapshot.exists)

        return await _detach(client.transaction())

    async def sync_profile_tags(self, guild_id: str, user_id: str) -> List[str]:
        client = self._ensure_client()
        profile_ref = self._profile(guild_id, user_id)
        edges_query = self._member_edges(guild_id, user_id)

        @firestore.async_transactional
        async def _sync(transaction: Any) -> List[str]:
            profile_snapshot = await profile_ref.get(transaction=transaction)
            held = _ordered_edges([doc async for doc in edges_query.stream(transaction=transaction)], "tag_slug")
            if profile_snapshot.exists or held:
                transaction.set(profile_ref, {"tags": held, "updated_at": firestore.SERVER_TIMESTAMP}, merge=True)
            return held

        return await _sync(client.transaction())

    async def list_member_tag_slugs(self, guild_id: str, user_id: str) -> List[str]:
        snapshots = [doc async for doc in self._member_edges(guild_id, user_id).stream()]
        return _ordered_edges(snapshots, "tag_slug")

    async def list_tag_members(self, guild_id: str, tag_slug: str, limit: int, offset: int = 0) -> List[str]:
        # Full fetch and in-memory slice: no composite index, and tags hold at most a few thousand members.
        snapshots = [doc async for doc in self._tag_edges(guild_id, tag_slug).stream()]
        user_ids = _ordered_edges(snapshots, "user_id")
        start = max(0, int(offset))
        return user_ids[start : start + max(0, int(limit))]

    # migration

    async def list_guild_ids(self) -> List[str]:
        collection = self._ensure_client().collection("guilds")
        return sorted([ref.id async for ref in collection.list_documents()])

    async def export_guild(self, guild_id: str) -> Dict[str, Any]:
        guild_ref = self._guild(guild_id)
        guild_snapshot = await guild_ref.get()
        config = _guild_config_from_doc(guild_snapshot.to_dict()) if guild_snapshot.exists else None

        profiles = []
        async for snapshot in guild_ref.collection("profiles").stream():
            data = snapshot.to_dict() or {}
            tags = data.get("tags")
            profiles.append(
                {
                    "user_id": snapshot.id,
                    "bio": str(data.get("bio") or ""),
                    "profile_image": data.get("profile_image"),
                    "tags": [str(tag) for tag in tags] if isinstance(tags, list) else [],
                }
            )

        tags = [
            _tag_from_doc(snapshot.id, snapshot.to_dict())
            async for snapshot in guild_ref.collection("tags").stream()
        ]

        member_rows = []
        async for snapshot in guild_ref.collection("tag_members").stream():
            data = snapshot.to_dict() or {}
            if data.get("tag_slug") and data.get("user_id"):
                member_rows.append((_stamp(data.get("added_at")), str(data["tag_slug"]), str(data["user_id"])))
        member_rows.sort()

        themes = []
        async for snapshot in guild_ref.collection("user_themes").stream():
            data = snapshot.to_dict() or {}
            themes.append({"user_id": snapshot.id, **{field: data.get(field) for field in USER_THEME_FIELDS}})

        features_snapshot = await guild_ref.collection("config").document("features").get()
        features = None
        if features_snapshot.exists:
            data = features_snapshot.to_dict() or {}
            features = {flag: bool(data.get(flag, True)) for flag in FEATURE_FLAGS}

        return {
            "guild_id": guild_id,
            "config": config,
            "profiles": sorted(profiles, key=lambda row: row["user_id"]),
            "tags": sorted(tags, key=lambda row: row["tag_slug"]),
            "tag_members": [{"tag_slug": slug, "user_id": user} for _, slug, user in member_rows],
            "user_themes": sorted(themes, key=lambda row: row["user_id"]),
            "feature_config": features,
        }

    async def import_guild(self, snapshot: Dict[str, Any]) -> None:
        client = self._ensure_client()
        guild_id = str(snapshot["guild_id"])
        guild_ref = self._guild(guild_id)
        now = firestore.SERVER_TIMESTAMP
        writes: List[tuple[Any, Dict[str, Any]]] = []

        config = snapshot.get("config")
        if config is not None:
            fields = whitelist_patch(config, GUILD_CONFIG_FIELDS, label="guild config")
            writes.append((guild_ref, {**fields, "updated_at": now}))
        for profile in snapshot.get("profiles", []):
            writes.append(
                (
                    guild_ref.collection("profiles").document(str(profile["user_id"])),
                    {
                        "bio": str(profile.get("bio") or ""),
                        "profile_image": profile.get("profile_image"),
                        "tags": list(profile.get("tags") or []),
                        "updated_at": now,
                    },
                )
            )
        for tag in snapshot.get("tags", []):
            writes.append(
                (
                    guild_ref.collection("tags").document(str(tag["tag_slug"])),
                    {
                        "display_name": str(tag.get("display_name") or tag["tag_slug"]),
                        "created_by": str(tag.get("created_by") or ""),
                        "category": str(tag.get("category") or DEFAULT_TAG_CATEGORY),
                        "updated_at": now,
                    },
                )
            )
        for member in snapshot.get("tag_members", []):
            slug = str(member["tag_slug"])
            user_id = str(member["user_id"])
            writes.append(
                (
                    guild_ref.collection("tag_members").document(membership_doc_id(slug, user_id)),
                    {"tag_slug": slug, "user_id": user_id, "added_at": now},
                )
            )
        for theme in snapshot.get("user_themes", []):
            writes.append(
                (
                    guild_ref.collection("user_themes").document(str(theme["user_id"])),
                    {**{field: theme.get(field) for field in USER_THEME_FIELDS}, "updated_at": now},
                )
            )
        features = snapshot.get("feature_config")
        if features is not None:
            writes.append(
                (
                    guild_ref.collection("config").document("features"),
                    {**{flag: bool(features.get(flag, True)) for flag in FEATURE_FLAGS}, "updated_at": now},
                )
            )

        for batch_writes in chunked(writes, TAG_DELETE_BATCH_SIZE):
            batch = client.batch()
            for ref, data in batch_writes:
                batch.set(ref, data, merge=True)
            await batch.commit()
