"""
Configuration module for OmniChat.

This module handles application configuration, settings loading,
and environment variable management.
"""

from pathlib import Path
from typing import Optional

from pydantic import ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Provider core settings with validation."""

    # Networking
    request_timeout: float = Field(default=60.0, description="Read timeout for completion requests in seconds")
    connect_timeout: float = Field(default=10.0, description="Connect timeout in seconds")
    sse_max_data_length: int = Field(
        default=1_048_576, description="Maximum buffered SSE line/data size in bytes"
    )

    # Anthropic
    anthropic_max_tokens: int = Field(default=4096, description="max_tokens sent when the caller sets none")

    # OpenRouter attribution
    app_referer: str = Field(default="https://github.com/omnichat/omnichat", description="HTTP-Referer header")
    app_title: str = Field(default="OmniChat", description="X-Title header")

    # Usage monitor
    usage_refresh_interval: int = Field(default=300, description="Quota refresh interval in seconds")
    usage_request_timeout: float = Field(default=10.0, description="Quota request timeout in seconds")

    # Credentials
    keyring_service: str = Field(default="omnichat", description="Keyring service name for stored secrets")
    key_rotation_enabled: bool = Field(
        default=False, description="Rotate between multiple stored API keys by usage"
    )

    # Logging Settings
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Log to file")
    max_log_size: int = Field(default=10, description="Max log file size in MB")

    model_config = ConfigDict(
        env_prefix="OMNICHAT_",
        env_file=".env",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    @field_validator("request_timeout", "connect_timeout", "usage_request_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Timeouts must be positive."""
        if v <= 0:
            raise ValueError("Timeout must be greater than 0")
        return v

    @field_validator("usage_refresh_interval")
    @classmethod
    def validate_refresh_interval(cls, v: int) -> int:
        """Validate quota refresh interval. Must be at least 10 seconds."""
        if v < 10:
            raise ValueError("usage_refresh_interval must be at least 10 seconds")
        return v

    @field_validator("sse_max_data_length", "anthropic_max_tokens")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return process settings, loading them from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def get_config_path() -> Path:
    """Get the configuration directory path."""
    return Path.home() / ".omnichat"


def ensure_config_dir() -> Path:
    """Ensure the configuration directory exists."""
    config_path = get_config_path()
    config_path.mkdir(parents=True, exist_ok=True)
    return config_path


__all__ = ["Settings", "get_settings", "get_config_path", "ensure_config_dir"]
