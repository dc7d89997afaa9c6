"""Tests for logging setup."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

import core.logger as logger_module
from core.config import settings
from core.logger import init_logging, logger


@pytest.fixture
def fresh_logger(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(logger_module, "LOG_FILE", tmp_path / "logs" / "renderer.log")
    monkeypatch.setattr(logger, "handlers", [])
    monkeypatch.setattr(logger, "level", logger.level)
    yield logger
    for handler in logger.handlers:
        handler.close()


def test_handlers_use_their_own_levels(fresh_logger: logging.Logger, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "log_level", "WARNING")
    monkeypatch.setattr(settings, "log_file_level", "debug")
    init_logging()

    file_handler = next(h for h in fresh_logger.handlers if isinstance(h, RotatingFileHandler))
    console = next(h for h in fresh_logger.handlers if not isinstance(h, RotatingFileHandler))
    assert file_handler.level == logging.DEBUG
    assert console.level == logging.WARNING
    assert fresh_logger.level == logging.DEBUG
    assert logger_module.LOG_FILE.parent.is_dir()


def test_setup_is_idempotent(fresh_logger: logging.Logger) -> None:
    init_logging()
    init_logging()
    assert len(fresh_logger.handlers) == 2


def test_unknown_level_falls_back_to_info(fresh_logger: logging.Logger, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "log_level", "chatty")
    monkeypatch.setattr(settings, "log_file_level", "chatty")
    init_logging()
    assert fresh_logger.level == logging.INFO
