from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from guild_profile_bot.discord.common import (  # noqa: E402
    GENERIC_REPLY,
    QUOTA_REPLY,
    UGC_DISABLED_REPLY,
    chunk_text,
    error_reply,
    format_bulk_result,
    format_profile,
    format_tag_list,
    parse_toggle,
    split_tag_names,
)
from guild_profile_bot.errors import (  # noqa: E402
    BackendError,
    InvalidInputError,
    LimitReachedError,
    QuotaExceededError,
    UgcDisabledError,
)


def test_error_reply_maps_domain_errors_to_user_text() -> None:
    assert error_reply(UgcDisabledError("chess")) == UGC_DISABLED_REPLY
    assert error_reply(LimitReachedError(5)) == "You can have at most 5 tags."
    assert error_reply(QuotaExceededError(3)) == QUOTA_REPLY
    assert error_reply(InvalidInputError("Bio must be at most 1000 characters")) == (
        "Bio must be at most 1000 characters"
    )
    assert error_reply(BackendError("boom")) == GENERIC_REPLY
    assert error_reply(RuntimeError("boom")) == GENERIC_REPLY


def test_split_tag_names_accepts_commas_and_newlines() -> None:
    assert split_tag_names("chess, Board Games,\n go ,,") == ["chess", "Board Games", "go"]
    assert split_tag_names("") == []


def test_parse_toggle() -> None:
    assert parse_toggle("ON") is True
    assert parse_toggle("disable") is False
    with pytest.raises(InvalidInputError):
        parse_toggle("maybe")


def test_chunk_text_respects_limit_and_keeps_content() -> None:
    text = "\n".join(f"line {index} " + "x" * 40 for index in range(100))

    chunks = chunk_text(text, limit=500)

    assert all(len(chunk) <= 500 for chunk in chunks)
    assert "".join(chunks) == text
    assert chunk_text("short") == ["short"]


def test_chunk_text_splits_single_long_line() -> None:
    chunks = chunk_text("y" * 2500, limit=1000)

    assert [len(chunk) for chunk in chunks] == [1000, 1000, 500]


def test_format_tag_list_groups_by_category() -> None:
    tags = [
        {"tag_slug": "chess", "display_name": "Chess", "category": "games"},
        {"tag_slug": "rust", "display_name": "Rust", "category": "general"},
        {"tag_slug": "go", "display_name": "Go", "category": "games"},
    ]

    assert format_tag_list(tags) == "**Games**: `Chess` • `Go`\n**General**: `Rust`"
    assert format_tag_list([]) == "No tags yet."


def test_format_profile_uses_theme_labels() -> None:
    view = {
        "bio": "",
        "profile_image": None,
        "tags": [],
        "theme": {"title": "Card", "tags_label": "Likes"},
    }

    assert format_profile(view, "Ann") == "Card | **Ann**\n_No bio set._\n\nLikes\nNo tags yet."


def test_format_bulk_result() -> None:
    assert format_bulk_result("Added", {"success": ["chess"], "failed": ["go"]}) == "Added: chess\nSkipped: go"
    assert format_bulk_result("Removed", {"success": [], "failed": []}) == "Nothing to do."
