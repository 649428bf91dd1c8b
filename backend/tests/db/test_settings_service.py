"""
Tests for SettingsService (playback preferences)
"""

import pytest
from pydantic import ValidationError

from services.settings_service import SettingsService


class TestSettingsService:
    """Defaults, nested keys and typed playback settings."""

    def test_defaults_inserted_on_first_use(self, db):
        service = SettingsService(db)
        settings = service.get_all_settings()
        assert settings["playback"]["providerId"] == "local"
        assert settings["playback"]["smartResumeEnabled"] is True

    def test_get_setting_dot_notation(self, db):
        service = SettingsService(db)
        assert service.get_setting("playback.speed") == 1.0
        assert service.get_setting("playback.unknownKey") is None

    def test_update_nested_setting(self, db):
        service = SettingsService(db)
        service.update_nested_setting("providers.cloud.baseUrl", "http://engine:8766")
        assert service.get_setting("providers.cloud.baseUrl") == "http://engine:8766"
        assert service.get_setting("providers.cloud.language") == "en"

    def test_update_nested_requires_dot(self, db):
        with pytest.raises(ValueError):
            SettingsService(db).update_nested_setting("playback", {})

    def test_playback_settings_model(self, db):
        """Stored camelCase preferences load into PlaybackSettings."""
        service = SettingsService(db)
        updated = service.update_playback_settings(speed=1.5, preroll_enabled=True)
        assert updated.speed == 1.5

        reloaded = service.get_playback_settings()
        assert reloaded.speed == 1.5
        assert reloaded.preroll_enabled is True
        assert service.get_setting("playback.prerollEnabled") is True

    def test_invalid_playback_setting_rejected(self, db):
        service = SettingsService(db)
        with pytest.raises(ValidationError):
            service.update_playback_settings(background_audio_mode="loud")

    def test_reset_to_defaults(self, db):
        service = SettingsService(db)
        service.update_playback_settings(speed=2.0)
        service.reset_to_defaults()
        assert service.get_playback_settings().speed == 1.0
