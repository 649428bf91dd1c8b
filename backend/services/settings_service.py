"""
Settings Service

Persists playback preferences and provider configuration in the
playback_settings table: one row per top-level category, JSON value.
Categories and keys missing from the database fall back to
DEFAULT_PLAYBACK_SETTINGS.
"""
import copy
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from loguru import logger
from db.default_settings import DEFAULT_PLAYBACK_SETTINGS, get_default_setting, lookup_path
from models.playback_models import PlaybackSettings


class SettingsService:
    """Category-level settings store on an open sqlite3 connection."""

    def __init__(self, db):
        self.db = db
        self._seed_defaults()

    def _seed_defaults(self) -> None:
        (count,) = self.db.execute("SELECT COUNT(*) FROM playback_settings").fetchone()
        if count:
            return
        logger.info("[SettingsService] Empty settings table, writing defaults")
        for category, value in DEFAULT_PLAYBACK_SETTINGS.items():
            self._write(category, value)
        self.db.commit()

    def _write(self, category: str, value: Any) -> None:
        self.db.execute(
            "INSERT OR REPLACE INTO playback_settings (key, value, updated_at) VALUES (?, ?, ?)",
            (category, json.dumps(value), datetime.now(timezone.utc).isoformat())
        )

    def _read(self, category: str) -> Optional[Any]:
        row = self.db.execute(
            "SELECT value FROM playback_settings WHERE key = ?", (category,)
        ).fetchone()
        return json.loads(row[0]) if row else None

    def get_all_settings(self) -> Dict[str, Any]:
        """All categories; dict categories are merged over their defaults."""
        stored = {
            key: json.loads(value)
            for key, value in self.db.execute("SELECT key, value FROM playback_settings")
        }

        merged = dict(stored)
        for category, default in DEFAULT_PLAYBACK_SETTINGS.items():
            if category not in stored:
                logger.warning(f"[SettingsService] Category '{category}' missing, using default")
                merged[category] = copy.deepcopy(default)
            elif isinstance(default, dict) and isinstance(stored[category], dict):
                merged[category] = {**default, **stored[category]}
        return merged

    def get_setting(self, key: str) -> Optional[Any]:
        """
        Value for a dot-notation key ('playback' or 'playback.speed').

        Returns the default when the category or nested key is not stored,
        None when there is no default either.
        """
        category, _, rest = key.partition('.')
        stored = self._read(category)
        if stored is None:
            return get_default_setting(key)

        found, value = lookup_path(stored, rest.split('.') if rest else [])
        if not found:
            logger.debug(f"[SettingsService] '{key}' not stored, using default")
            return get_default_setting(key)
        return value

    def update_setting(self, key: str, value: Any) -> Dict[str, Any]:
        """Replace a whole category."""
        self._write(key, value)
        self.db.commit()
        return {"key": key, "value": value}

    def update_nested_setting(self, key: str, value: Any) -> Dict[str, Any]:
        """
        Set one value inside a category, e.g. 'providers.cloud.baseUrl'.

        Raises:
            ValueError: key names a category, not a nested value
        """
        category, _, rest = key.partition('.')
        if not rest:
            raise ValueError(f"Nested key expected, got '{key}'")

        tree = copy.deepcopy(self.get_setting(category) or {})
        *parents, leaf = rest.split('.')
        target = tree
        for part in parents:
            target = target.setdefault(part, {})
        target[leaf] = value
        return self.update_setting(category, tree)

    def reset_to_defaults(self) -> Dict[str, Any]:
        self.db.execute("DELETE FROM playback_settings")
        for category, value in DEFAULT_PLAYBACK_SETTINGS.items():
            self._write(category, value)
        self.db.commit()
        logger.info("[SettingsService] Settings reset to defaults")
        return {"success": True, "message": "Settings reset to defaults"}

    def get_playback_settings(self) -> PlaybackSettings:
        return PlaybackSettings.model_validate(self.get_all_settings()["playback"])

    def update_playback_settings(self, **changes) -> PlaybackSettings:
        """
        Merge snake_case field changes into the stored preferences.

        Raises:
            pydantic.ValidationError: a changed value is invalid
        """
        merged = {**self.get_playback_settings().model_dump(), **changes}
        updated = PlaybackSettings.model_validate(merged)
        self.update_setting("playback", updated.model_dump(by_alias=True))
        return updated
