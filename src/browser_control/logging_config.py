"""Logging configuration with date-based directory structure and time rotation.

Log files are written to: {config_home}/logs/{YYYY}/{MM}/{DD}/browser-control.log
Rotation happens at midnight via TimedRotatingFileHandler.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler

from .config import LoggingConfig, config_home

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# uvicorn installs its own handlers unless told otherwise; these propagate to root.
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def log_dir_for(now: datetime) -> str:
    return os.path.join(
        str(config_home()),
        "logs",
        now.strftime("%Y"),
        now.strftime("%m"),
        now.strftime("%d"),
    )


def setup_logging(settings: LoggingConfig | None = None) -> None:
    """Configure logging with file and stderr handlers.

    File handler:
    - Path: logs/{year}/{month}/{day}/browser-control.log
    - Rotation: midnight, keeps 7 rotated files per directory
    - Level: DEBUG (captures fallback decisions and raw debugger failures)

    Stderr handler:
    - Level: settings.level (INFO by default)
    """
    settings = settings or LoggingConfig()
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    if settings.file:
        log_dir = log_dir_for(datetime.now())
        os.makedirs(log_dir, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            filename=os.path.join(log_dir, "browser-control.log"),
            when="midnight",
            interval=1,
            backupCount=7,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    level = getattr(logging, str(settings.level).upper(), None)
    stderr_handler.setLevel(level if isinstance(level, int) else logging.INFO)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    for name in UVICORN_LOGGERS:
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True

    # Chatty at DEBUG and never useful here.
    logging.getLogger("websockets").setLevel(logging.INFO)
    logging.getLogger("httpcore").setLevel(logging.INFO)
