"""Logging bootstrap for the liveness demo."""
from __future__ import annotations

from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict

from .config import Settings

# Chatty per-request loggers from the HTTP and WebSocket stacks
LIBRARY_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access")


def _file_handler(settings: Settings, log_file: Path) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "default",
        "level": settings.log_level,
        "filename": str(log_file),
        "when": "midnight",
        "backupCount": max(int(settings.log_retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def configure_logging(settings: Settings) -> Path:
    """Route records to the console and a daily-rotated file; returns the file path."""

    log_dir = Path(settings.log_directory).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / settings.log_file_name

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": settings.log_level,
                },
                "liveness_file": _file_handler(settings, log_file),
            },
            "loggers": {name: {"level": settings.library_log_level} for name in LIBRARY_LOGGERS},
            "root": {"level": settings.log_level, "handlers": ["console", "liveness_file"]},
        }
    )
    return log_file


__all__ = ["LIBRARY_LOGGERS", "configure_logging"]
