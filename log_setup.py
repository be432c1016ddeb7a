"""Logging configuration for the web app and the CLI.

configure() is called once by each entry point; every other module only
does ``log = logging.getLogger(__name__)``.

Settings come from the environment:
  LOG_LEVEL  console level (default INFO)
  LOG_FILE   path of the rotating DEBUG log (default logs/app.log);
             set it to an empty string to log to the console only
"""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Dict, Optional

DEFAULT_LOG_FILE = Path(__file__).parent / "logs" / "app.log"

# SDK and HTTP loggers that are chatty at INFO
QUIET_LOGGERS = (
    "urllib3", "httpx", "httpcore", "werkzeug",
    "openai", "anthropic", "google_genai", "replicate",
)


def build_config(level: str = "INFO", log_file: Optional[Path] = None) -> Dict:
    """Return a ``logging.config.dictConfig`` mapping."""
    level = level.upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "INFO"

    handlers: Dict[str, Dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "brief",
        },
    }
    if log_file is not None:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "DEBUG",
            "formatter": "detailed",
            "filename": str(log_file),
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "brief": {
                "format": "%(asctime)s  %(levelname)-7s  %(name)s: %(message)s",
                "datefmt": "%H:%M:%S",
            },
            "detailed": {
                "format": "%(asctime)s  %(levelname)-7s  %(name)-16s  %(filename)s:%(lineno)d  %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        "root": {"level": "DEBUG", "handlers": list(handlers)},
    }


def log_file_from_env() -> Optional[Path]:
    """Resolve LOG_FILE: unset means the default path, empty disables the file."""
    raw = os.environ.get("LOG_FILE")
    if raw is None:
        return DEFAULT_LOG_FILE
    return Path(raw) if raw else None


def configure(level: Optional[str] = None) -> None:
    """Install handlers on the root logger unless something already has."""
    if logging.getLogger().handlers:
        return

    log_file = log_file_from_env()
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(build_config(level or os.environ.get("LOG_LEVEL", "INFO"), log_file))
