from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping

from ..errors import InvalidInputError, LimitReachedError, QuotaExceededError, UgcDisabledError

UGC_DISABLED_REPLY = "Custom tags are disabled in this server."
QUOTA_REPLY = "The database is busy right now, please try again later."
GENERIC_REPLY = "Something went wrong."

_TAG_SPLIT_RE = re.compile(r"[,\n]+")
_TOGGLE_ON = {"1", "on", "true", "yes", "y", "enable", "enabled"}
_TOGGLE_OFF = {"0", "off", "false", "no", "n", "disable", "disabled"}


def chunk_text(text: str, limit: int = 1900) -> List[str]:
    if len(text) <= limit:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if len(current) + len(line) <= limit:
            current += line
            continue
        if current:
            chunks.append(current)
            current = ""
        if len(line) <= limit:
            current = line
            continue
        for i in range(0, len(line), limit):
            chunks.append(line[i : i + limit])
    if current:
        chunks.append(current)
    return chunks


def split_tag_names(raw: str) -> List[str]:
    return [part.strip() for part in _TAG_SPLIT_RE.split(raw or "") if part.strip()]


def parse_toggle(value: str) -> bool:
    lowered = str(value or "").strip().lower()
    if lowered in _TOGGLE_ON:
        return True
    if lowered in _TOGGLE_OFF:
        return False
    raise InvalidInputError("Use `on` or `off`.")


def error_reply(exc: BaseException) -> str:
    if isinstance(exc, UgcDisabledError):
        return UGC_DISABLED_REPLY
    if isinstance(exc, LimitReachedError):
        return f"You can have at most {exc.limit} tags."
    if isinstance(exc, QuotaExceededError):
        return QUOTA_REPLY
    if isinstance(exc, InvalidInputError):
        return str(exc)
    return GENERIC_REPLY


def format_tag_list(tags: List[Mapping[str, Any]]) -> str:
    if not tags:
        return "No tags yet."
    groups: Dict[str, List[str]] = {}
    for tag in tags:
        groups.setdefault(str(tag.get("category") or "general"), []).append(f"`{tag['display_name']}`")
    lines = [f"**{category.title()}**: {' • '.join(names)}" for category, names in sorted(groups.items())]
    return "\n".join(lines)


def format_profile(view: Mapping[str, Any], member_name: str) -> str:
    theme = view.get("theme") or {}
    lines = [f"{theme.get('title', 'Profile')} | **{member_name}**"]
    bio = str(view.get("bio") or "").strip()
    lines.append(bio if bio else "_No bio set._")
    lines.append("")
    lines.append(str(theme.get("tags_label") or "Tags"))
    lines.append(format_tag_list(list(view.get("tags") or [])))
    if view.get("profile_image"):
        lines.append(str(view["profile_image"]))
    return "\n".join(lines)


def format_bulk_result(action: str, result: Mapping[str, List[str]]) -> str:
    parts = []
    if result.get("success"):
        parts.append(f"{action}: {', '.join(result['success'])}")
    if result.get("failed"):
        parts.append(f"Skipped: {', '.join(result['failed'])}")
    return "\n".join(parts) if parts else "Nothing to do."
