"""
Logger configuration for OmniChat.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import Settings, get_config_path, get_settings


def get_log_path() -> Path:
    """Get the log directory path."""
    return get_config_path() / "logs"


def setup_logging(settings: Optional[Settings] = None, level: Optional[str] = None):
    """Configure Loguru logger based on application settings."""
    settings = settings or get_settings()
    logger.remove()  # Remove default handler

    log_level = (level or settings.log_level).upper()

    # Console logger
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        colorize=True,
    )

    if settings.log_to_file:
        log_path = get_log_path()
        log_path.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_path / "omnichat.log",
            level=log_level,
            rotation=f"{settings.max_log_size} MB",
            retention="10 days",
            compression="zip",
            encoding="utf-8",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
            enqueue=True,
            backtrace=True,
            diagnose=False,  # tracebacks may hold request headers
        )

    logger.debug("Logger initialized")


__all__ = ["get_log_path", "setup_logging"]
