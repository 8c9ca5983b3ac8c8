"""
Tests for Settings loading and validation.
"""

import pytest
from pydantic import ValidationError

from omnichat.core import config as config_module
from omnichat.core.config import Settings, ensure_config_dir, get_settings


class TestSettings:
    """Tests for the pydantic-settings model."""

    def test_defaults(self, monkeypatch):
        """Test the documented defaults."""
        # Arrange
        monkeypatch.delenv("OMNICHAT_REQUEST_TIMEOUT", raising=False)

        # Act
        settings = Settings(_env_file=None)

        # Assert
        assert settings.request_timeout == 60.0
        assert settings.anthropic_max_tokens == 4096
        assert settings.sse_max_data_length == 1_048_576
        assert settings.usage_refresh_interval == 300
        assert settings.key_rotation_enabled is False

    def test_environment_override(self, monkeypatch):
        """Test that OMNICHAT_ variables override defaults."""
        # Arrange
        monkeypatch.setenv("OMNICHAT_REQUEST_TIMEOUT", "15")
        monkeypatch.setenv("OMNICHAT_KEY_ROTATION_ENABLED", "true")

        # Act
        settings = Settings(_env_file=None)

        # Assert
        assert settings.request_timeout == 15.0
        assert settings.key_rotation_enabled is True

    def test_log_level_normalized(self):
        """Test that the log level is upper-cased."""
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("log_level", "LOUD"),
            ("request_timeout", 0),
            ("usage_refresh_interval", 5),
            ("sse_max_data_length", -1),
        ],
    )
    def test_invalid_values_rejected(self, field, value):
        """Test field validators."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_assignment_is_validated(self):
        """Test validate_assignment catches bad updates."""
        settings = Settings(_env_file=None)
        with pytest.raises(ValidationError):
            settings.connect_timeout = -1


class TestConfigHelpers:
    """Tests for module-level helpers."""

    def test_get_settings_is_cached(self, monkeypatch):
        """Test that get_settings returns one instance."""
        monkeypatch.setattr(config_module, "_settings", None)
        assert get_settings() is get_settings()

    def test_ensure_config_dir_creates_directory(self, monkeypatch, tmp_path):
        """Test the config directory is created under home."""
        monkeypatch.setattr(config_module.Path, "home", lambda: tmp_path)
        path = ensure_config_dir()
        assert path == tmp_path / ".omnichat"
        assert path.is_dir()
