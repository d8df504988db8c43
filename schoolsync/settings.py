"""Settings documents: known keys, normalization and fingerprints.

A settings patch is a tagged union of the setting keys this client knows
about (each with an expected value type) plus an ``extensions`` bucket for
keys a newer client or the cloud service may add. Merge and comparison code
work on the flattened dict form, so unknown keys round-trip untouched.

Normalization treats absent, None, [] and {} as the same "empty" value; two
documents that differ only in that respect compare equal and share a
fingerprint.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Tuple, Union

from schoolsync.errors import InvalidSettingError


class SettingKey(str, Enum):
    """Setting keys with a known value type."""

    SHORTCUTS = "shortcuts"
    FEEDS = "feeds"
    WEATHER_ENABLED = "weather_enabled"
    WEATHER_CITY = "weather_city"
    WEATHER_COUNTRY = "weather_country"
    REMINDERS_ENABLED = "reminders_enabled"
    FORCE_USE_LOCATION = "force_use_location"
    ACCENT_COLOR = "accent_color"
    THEME = "theme"
    CURRENT_THEME = "current_theme"
    DISABLE_SCHOOL_PICTURE = "disable_school_picture"
    ENHANCED_ANIMATIONS = "enhanced_animations"
    GEMINI_API_KEY = "gemini_api_key"
    AI_INTEGRATIONS_ENABLED = "ai_integrations_enabled"
    GRADE_ANALYSER_ENABLED = "grade_analyser_enabled"
    LESSON_SUMMARY_ANALYSER_ENABLED = "lesson_summary_analyser_enabled"
    AUTO_COLLAPSE_SIDEBAR = "auto_collapse_sidebar"
    AUTO_EXPAND_SIDEBAR_HOVER = "auto_expand_sidebar_hover"
    GLOBAL_SEARCH_ENABLED = "global_search_enabled"
    DEV_SENSITIVE_INFO_HIDER = "dev_sensitive_info_hider"
    DEV_FORCE_OFFLINE_MODE = "dev_force_offline_mode"
    ACCEPTED_CLOUD_EULA = "accepted_cloud_eula"
    LANGUAGE = "language"
    DASHBOARD_WIDGETS_LAYOUT = "dashboard_widgets_layout"


_BOOL = (bool,)
_STR = (str,)
_LIST = (list, tuple)

SETTING_TYPES: Dict[SettingKey, Tuple[type, ...]] = {
    SettingKey.SHORTCUTS: _LIST,
    SettingKey.FEEDS: _LIST,
    SettingKey.WEATHER_ENABLED: _BOOL,
    SettingKey.WEATHER_CITY: _STR,
    SettingKey.WEATHER_COUNTRY: _STR,
    SettingKey.REMINDERS_ENABLED: _BOOL,
    SettingKey.FORCE_USE_LOCATION: _BOOL,
    SettingKey.ACCENT_COLOR: _STR,
    SettingKey.THEME: _STR,
    SettingKey.CURRENT_THEME: _STR,
    SettingKey.DISABLE_SCHOOL_PICTURE: _BOOL,
    SettingKey.ENHANCED_ANIMATIONS: _BOOL,
    SettingKey.GEMINI_API_KEY: _STR,
    SettingKey.AI_INTEGRATIONS_ENABLED: _BOOL,
    SettingKey.GRADE_ANALYSER_ENABLED: _BOOL,
    SettingKey.LESSON_SUMMARY_ANALYSER_ENABLED: _BOOL,
    SettingKey.AUTO_COLLAPSE_SIDEBAR: _BOOL,
    SettingKey.AUTO_EXPAND_SIDEBAR_HOVER: _BOOL,
    SettingKey.GLOBAL_SEARCH_ENABLED: _BOOL,
    SettingKey.DEV_SENSITIVE_INFO_HIDER: _BOOL,
    SettingKey.DEV_FORCE_OFFLINE_MODE: _BOOL,
    SettingKey.ACCEPTED_CLOUD_EULA: _BOOL,
    SettingKey.LANGUAGE: _STR,
    SettingKey.DASHBOARD_WIDGETS_LAYOUT: _STR,
}


_KNOWN_BY_VALUE = {key.value: key for key in SettingKey}


@dataclass
class SettingsPatch:
    """A set of top-level settings to merge into the local document."""

    known: Dict[SettingKey, Any] = field(default_factory=dict)
    extensions: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SettingsPatch":
        """Split a plain dict into known and extension keys, checking known types.

        Raises:
            InvalidSettingError: if a known key holds a value of the wrong type.
            TypeError: if data is not a mapping.
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"settings patch must be a mapping, got {type(data).__name__}")
        patch = cls()
        for raw_key, value in data.items():
            key = _KNOWN_BY_VALUE.get(str(raw_key))
            if key is None:
                patch.extensions[str(raw_key)] = value
                continue
            expected = SETTING_TYPES[key]
            if value is not None and not _matches(value, expected):
                raise InvalidSettingError(key.value, _type_names(expected), value)
            patch.known[key] = list(value) if isinstance(value, tuple) else value
        return patch

    def to_dict(self) -> Dict[str, Any]:
        merged = {key.value: value for key, value in self.known.items()}
        merged.update(self.extensions)
        return merged

    def keys(self) -> List[str]:
        return list(self.to_dict().keys())

    def __len__(self) -> int:
        return len(self.known) + len(self.extensions)


def _matches(value: Any, expected: Tuple[type, ...]) -> bool:
    # bool is an int subclass; keep strings and lists from accepting it
    if isinstance(value, bool) and bool not in expected:
        return False
    return isinstance(value, expected)


def _type_names(expected: Tuple[type, ...]) -> str:
    return " or ".join(t.__name__ for t in expected)


def coerce_patch(patch: Union[SettingsPatch, Mapping[str, Any]]) -> SettingsPatch:
    if isinstance(patch, SettingsPatch):
        return patch
    return SettingsPatch.from_dict(patch)


# === Normalization ===


def normalize_value(value: Any) -> Any:
    """Map every "empty" representation to None."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return None
    if isinstance(value, dict) and len(value) == 0:
        return None
    return value


def normalize_settings(settings: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is empty; the rest are kept as-is."""
    return {
        key: value for key, value in (settings or {}).items() if normalize_value(value) is not None
    }


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def fingerprint(settings: Mapping[str, Any]) -> str:
    """SHA-256 digest of the normalized document, for equality checks only."""
    return hashlib.sha256(canonical_json(normalize_settings(settings)).encode("utf-8")).hexdigest()


def diff_keys(local: Mapping[str, Any], remote: Mapping[str, Any]) -> List[str]:
    """Keys whose normalized values differ between two documents, sorted."""
    local = local or {}
    remote = remote or {}
    differing = []
    for key in set(local) | set(remote):
        a = canonical_json(normalize_value(local.get(key)))
        b = canonical_json(normalize_value(remote.get(key)))
        if a != b:
            differing.append(key)
    return sorted(differing)


def settings_equal(local: Mapping[str, Any], remote: Mapping[str, Any]) -> bool:
    return not diff_keys(local, remote)


# Layouts written while the timetable page borrows the dashboard grid
TEMPORARY_WIDGET_IDS = frozenset({"timetable-page-widget"})


def is_local_only(patch: Mapping[str, Any]) -> bool:
    """True for patches that are saved locally but never uploaded.

    Currently only a dashboard layout holding nothing but the temporary
    timetable page widget.
    """
    raw = patch.get(SettingKey.DASHBOARD_WIDGETS_LAYOUT.value)
    if not raw:
        return False
    try:
        layout = json.loads(raw) if isinstance(raw, str) else raw
        widgets = (layout or {}).get("widgets") or []
    except (TypeError, ValueError, AttributeError):
        return False
    return len(widgets) == 1 and isinstance(widgets[0], dict) and widgets[0].get("id") in TEMPORARY_WIDGET_IDS
