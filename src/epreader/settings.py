from __future__ import annotations

from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import FONT_SIZES, THEMES, UserSettings
from .store import Store

DEFAULT_TIMEZONE = "UTC"


def _validate_timezone(name: object) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("timezone must be a non-empty IANA zone name")
    cleaned = name.strip()
    try:
        ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {cleaned!r}") from exc
    return cleaned


def _validate_updates(updates: Mapping[str, object]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for key, value in updates.items():
        if value is None:
            continue
        if key == "timezone":
            cleaned["timezone"] = _validate_timezone(value)
        elif key == "font_size":
            if value not in FONT_SIZES:
                raise ValueError(f"font_size must be one of {', '.join(FONT_SIZES)}")
            cleaned["font_size"] = str(value)
        elif key == "theme":
            if value not in THEMES:
                raise ValueError(f"theme must be one of {', '.join(THEMES)}")
            cleaned["theme"] = str(value)
        else:
            raise ValueError(f"Unknown setting: {key}")
    return cleaned


def get_settings(store: Store, user_id: str) -> UserSettings | None:
    return store.get_settings(user_id)


def ensure_settings(
    store: Store,
    user_id: str,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> UserSettings:
    """Return the user's settings, creating defaults on first use."""
    return store.ensure_settings(
        user_id,
        lambda: UserSettings(user_id=user_id, timezone=default_timezone),
    )


def update_settings(store: Store, user_id: str, **updates: object) -> UserSettings:
    cleaned = _validate_updates(updates)
    settings = store.get_settings(user_id) or UserSettings(user_id=user_id)
    for key, value in cleaned.items():
        setattr(settings, key, value)
    return store.save_settings(settings)


__all__ = ["DEFAULT_TIMEZONE", "ensure_settings", "get_settings", "update_settings"]
