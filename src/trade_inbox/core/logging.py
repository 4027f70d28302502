"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
from typing import Any

from .config import LoggingSettings

PACKAGE_LOGGER = "trade_inbox"

_STRUCTURED_FORMAT = "ts={asctime} level={levelname} logger={name} msg={message!r}"
_PLAIN_FORMAT = "{asctime} {levelname:<7} {name}: {message}"


def _formatter(structured: bool) -> dict[str, Any]:
    """Return the dictConfig formatter fragment for the chosen style."""
    return {
        "format": _STRUCTURED_FORMAT if structured else _PLAIN_FORMAT,
        "style": "{",
    }


def _handlers(settings: LoggingSettings, level: str) -> dict[str, dict[str, Any]]:
    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "level": level,
        },
    }
    if settings.file_path is not None:
        settings.file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "default",
            "level": level,
            "filename": str(settings.file_path),
            "maxBytes": settings.file_max_bytes,
            "backupCount": settings.file_backup_count,
            "encoding": "utf-8",
        }
    return handlers


def configure_logging(settings: LoggingSettings) -> None:
    """Configure console and optional file logging from ``settings``."""
    level = settings.level.upper()
    handlers = _handlers(settings, level)

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": _formatter(settings.structured)},
            "handlers": handlers,
            # Package records propagate to root; only the level is pinned here.
            "loggers": {PACKAGE_LOGGER: {"level": level}},
            "root": {"handlers": list(handlers), "level": level},
        }
    )
    logging.captureWarnings(True)


__all__ = ["PACKAGE_LOGGER", "configure_logging"]
