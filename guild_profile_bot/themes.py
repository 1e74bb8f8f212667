from __future__ import annotations

from typing import Any, Dict, Mapping

THEME_PALETTES: Dict[str, Dict[str, str]] = {
    "default": {"primary": "#5865F2", "secondary": "#99A6FF"},
    "blossom": {"primary": "#FF6FA0", "secondary": "#FFD1DC"},
    "ocean": {"primary": "#2EC4B6", "secondary": "#B2F7EF"},
    "sunset": {"primary": "#FF7F50", "secondary": "#FFD1A9"},
    "midnight": {"primary": "#1F2937", "secondary": "#6B7280"},
}

THEME_STYLES: Dict[str, Dict[str, str]] = {
    "default": {"title": "🌟 Profile", "tags_label": "🏷️ Tags"},
    "blossom": {"title": "🌸 Profile", "tags_label": "✨ Highlights"},
    "ocean": {"title": "🌊 Profile", "tags_label": "🪼 Traits"},
    "sunset": {"title": "🌇 Profile", "tags_label": "🔥 Interests"},
    "midnight": {"title": "🌙 Profile", "tags_label": "💠 Tags"},
}

USER_BASED_THEME = "user-based"
GUILD_THEMES = (*THEME_PALETTES, USER_BASED_THEME)


def _user_hash(user_id: str) -> int:
    value = 0
    for char in str(user_id):
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    # signed 32-bit wraparound
    return value - (1 << 32) if value & 0x80000000 else value


def user_based_colors(user_id: str) -> Dict[str, str]:
    digest = abs(_user_hash(user_id))
    hue = digest % 360
    saturation = 70 + digest % 30
    lightness = 50 + digest % 20
    return {
        "primary": f"hsl({hue}, {saturation}%, {lightness}%)",
        "secondary": f"hsl({(hue + 30) % 360}, {saturation}%, {lightness + 10}%)",
    }


def resolve_profile_theme(
    guild_config: Mapping[str, Any],
    user_id: str,
    user_theme: Mapping[str, Any] | None = None,
) -> Dict[str, str]:
    """Effective theme of a member's profile card.

    Guild custom colors beat the guild theme palette; a member's own theme and
    colors (when customization is enabled and passed in) beat both.
    """
    user_theme = user_theme or {}
    theme = str(user_theme.get("theme") or guild_config.get("profile_theme") or "default")

    custom = guild_config.get("custom_colors") or None
    if custom and not user_theme.get("theme"):
        colors = {"primary": str(custom["primary"]), "secondary": str(custom["secondary"])}
    elif theme == USER_BASED_THEME:
        colors = user_based_colors(user_id)
    else:
        colors = dict(THEME_PALETTES.get(theme, THEME_PALETTES["default"]))

    if user_theme.get("primary_color"):
        colors["primary"] = str(user_theme["primary_color"])
    if user_theme.get("secondary_color"):
        colors["secondary"] = str(user_theme["secondary_color"])

    style = THEME_STYLES.get(theme, THEME_STYLES["default"])
    return {
        "theme": theme,
        "primary": colors["primary"],
        "secondary": colors["secondary"],
        "title": str(user_theme.get("title") or style["title"]),
        "tags_label": str(user_theme.get("tags_emoji") or style["tags_label"]),
    }
