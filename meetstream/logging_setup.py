"""Logging helpers."""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from meetstream.config import Settings, get_settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """Configure the package logger once: console always, rotating file when LOG_FILE is set."""
    settings = settings or get_settings()
    logger = logging.getLogger("meetstream")
    level = getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    fmt = logging.Formatter(_FORMAT, datefmt=_DATEFMT)
    console = logging.StreamHandler()
    console.setFormatter(fmt)
    logger.addHandler(console)

    log_file = (settings.LOG_FILE or "").strip()
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    return logger
