"""
Utility helpers: logging setup and date/time formatting for the remote API.

Вспомогательные функции: настройка логирования и форматирование дат.
"""

from __future__ import annotations

import logging
from datetime import date, time
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import LoggingConfig, get_settings


NOISY_LOGGERS = ["httpx", "httpcore", "aiogram.event"]


def setup_logging(logging_cfg: LoggingConfig | None = None) -> None:
    """
    Configure application-wide logging with rotation.

    Writes to logs/rescheduler.log and mirrors everything to the console.
    """
    if logging_cfg is None:
        logging_cfg = get_settings().logging

    logs_dir: Path = logging_cfg.logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / "rescheduler.log"

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=logging_cfg.max_bytes,
        backupCount=logging_cfg.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging_cfg.log_level.upper())
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # every poll is a request; keep transport chatter out of INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def api_date(value: date) -> str:
    return value.isoformat()


def twelve_hour(value: time) -> str:
    """Format a UTC clock time the way the reschedule endpoint expects: "09:00 AM"."""
    return value.strftime("%I:%M %p")


__all__ = ["setup_logging", "api_date", "twelve_hour"]
