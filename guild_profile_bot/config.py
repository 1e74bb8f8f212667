from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv


load_dotenv()

PROFILE_BACKENDS = ("sqlite", "firestore")


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    discord_token: str
    command_prefix: str
    discord_message_content_intent: bool
    discord_members_intent: bool

    profile_backend: str
    sqlite_path: Path
    sqlite_busy_timeout_ms: int
    firebase_project_id: str
    firebase_client_email: str
    firebase_private_key: str

    storage_retry_attempts: int
    storage_retry_base_delay_ms: int
    storage_stats_interval_seconds: int

    cache_ttl_guild_config_seconds: float
    cache_ttl_profile_seconds: float
    cache_ttl_tags_seconds: float
    cache_ttl_user_theme_seconds: float
    cache_ttl_feature_config_seconds: float

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            discord_token=_clean_token(_env_lookup("DISCORD_TOKEN") or ""),
            command_prefix=_env_str("DISCORD_COMMAND_PREFIX", "!"),
            discord_message_content_intent=_env_bool("DISCORD_MESSAGE_CONTENT_INTENT", True),
            discord_members_intent=_env_bool("DISCORD_MEMBERS_INTENT", True),
            profile_backend=_env_str("PROFILE_BACKEND", "sqlite", aliases=("DB_BACKEND",)).lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/bot.db")).expanduser(),
            sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5000),
            firebase_project_id=_env_str("FIREBASE_PROJECT_ID", "", aliases=("GOOGLE_CLOUD_PROJECT",)),
            firebase_client_email=_env_str("FIREBASE_CLIENT_EMAIL", ""),
            firebase_private_key=_env_lookup("FIREBASE_PRIVATE_KEY") or "",
            storage_retry_attempts=_env_int("STORAGE_RETRY_ATTEMPTS", 3),
            storage_retry_base_delay_ms=_env_int("STORAGE_RETRY_BASE_DELAY_MS", 1000),
            storage_stats_interval_seconds=_env_int("STORAGE_STATS_INTERVAL_SECONDS", 3600),
            cache_ttl_guild_config_seconds=_env_float("CACHE_TTL_GUILD_CONFIG_SECONDS", 300.0),
            cache_ttl_profile_seconds=_env_float("CACHE_TTL_PROFILE_SECONDS", 120.0),
            cache_ttl_tags_seconds=_env_float("CACHE_TTL_TAGS_SECONDS", 600.0),
            cache_ttl_user_theme_seconds=_env_float("CACHE_TTL_USER_THEME_SECONDS", 300.0),
            cache_ttl_feature_config_seconds=_env_float("CACHE_TTL_FEATURE_CONFIG_SECONDS", 600.0),
        )

    def cache_ttls(self) -> Dict[str, float]:
        return {
            "guild_config": self.cache_ttl_guild_config_seconds,
            "profile": self.cache_ttl_profile_seconds,
            "tags": self.cache_ttl_tags_seconds,
            "user_theme": self.cache_ttl_user_theme_seconds,
            "feature_config": self.cache_ttl_feature_config_seconds,
        }

    def validate_storage(self) -> None:
        if self.profile_backend not in PROFILE_BACKENDS:
            raise ValueError("PROFILE_BACKEND must be 'sqlite' or 'firestore'")
        if self.sqlite_busy_timeout_ms < 0 or self.sqlite_busy_timeout_ms > 60000:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must be in [0, 60000]")
        if self.firebase_client_email and not self.firebase_private_key.strip():
            raise ValueError("FIREBASE_PRIVATE_KEY is required when FIREBASE_CLIENT_EMAIL is set")

        if self.storage_retry_attempts < 1:
            raise ValueError("STORAGE_RETRY_ATTEMPTS must be >= 1")
        if self.storage_retry_base_delay_ms < 0:
            raise ValueError("STORAGE_RETRY_BASE_DELAY_MS must be >= 0")
        if self.storage_stats_interval_seconds < 5:
            raise ValueError("STORAGE_STATS_INTERVAL_SECONDS must be >= 5")

        for kind, ttl in self.cache_ttls().items():
            if ttl <= 0:
                raise ValueError(f"CACHE_TTL_{kind.upper()}_SECONDS must be > 0")

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if self.discord_token == "put_your_discord_bot_token_here":
            raise ValueError("DISCORD_TOKEN is still placeholder")
        if not self.command_prefix.strip():
            raise ValueError("DISCORD_COMMAND_PREFIX cannot be empty")
        self.validate_storage()
