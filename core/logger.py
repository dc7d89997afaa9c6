"""Logging utilities for the TeX article renderer."""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler

from core.config import settings

LOG_FILE = settings.data_dir / "tex_renderer.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _level(name: str) -> int:
    """Numeric level for a level name; unknown names fall back to INFO."""
    value = logging.getLevelName(name.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def init_logging() -> None:
    """Attach the console and rotating file handlers once.

    The console follows ``settings.log_level``, the file
    ``settings.log_file_level``.
    """
    if logger.handlers:
        return
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)

    console_level = _level(settings.log_level)
    file_level = _level(settings.log_file_level)
    # The logger must let through whatever either handler wants
    logger.setLevel(min(console_level, file_level))

    formatter = logging.Formatter(LOG_FORMAT)
    if (getattr(sys.stdout, "encoding", "") or "").lower() != "utf-8" and hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=1_000_000,
        backupCount=3,
        encoding="utf-8",
        errors="replace",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(formatter)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger.debug("[Logger] console=%s file=%s (%s)", settings.log_level, settings.log_file_level, LOG_FILE)


logger = logging.getLogger("tex_renderer")
