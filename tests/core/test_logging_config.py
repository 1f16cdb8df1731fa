# tests/core/test_logging_config.py
"""Tests for settings-driven logging setup."""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from rideguard.core.config import Settings
from rideguard.core.logging_config import setup_logging


@pytest.fixture
def root_logger():
    """Restore the root logger's handlers and level after each test"""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


def rotating_handlers(root):
    return [h for h in root.handlers if isinstance(h, RotatingFileHandler)]


def test_file_handler_follows_settings(root_logger, tmp_path):
    config = Settings(LOG_DIR=str(tmp_path / "logs"), LOG_FILE="audit.log", LOG_MAX_BYTES=1024, LOG_BACKUP_COUNT=2)

    setup_logging(config)

    handler = rotating_handlers(root_logger)[-1]
    assert handler.baseFilename == str((tmp_path / "logs" / "audit.log").resolve())
    assert handler.maxBytes == 1024
    assert handler.backupCount == 2


def test_level_from_settings(root_logger, tmp_path):
    setup_logging(Settings(LOG_DIR=str(tmp_path), LOG_LEVEL="warning"))
    assert root_logger.level == logging.WARNING

    setup_logging(Settings(LOG_DIR=str(tmp_path), LOG_LEVEL="warning", DEBUG=True))
    assert root_logger.level == logging.DEBUG


def test_handlers_attached_once(root_logger, tmp_path):
    config = Settings(LOG_DIR=str(tmp_path))

    setup_logging(config)
    count = len(root_logger.handlers)
    setup_logging(config)

    assert len(root_logger.handlers) == count


def test_records_reach_file(root_logger, tmp_path):
    setup_logging(Settings(LOG_DIR=str(tmp_path), LOG_LEVEL="INFO"))

    logging.getLogger("rideguard.test").info("session sweep finished")
    for handler in rotating_handlers(root_logger):
        handler.flush()

    content = (tmp_path / "rideguard.log").read_text(encoding="utf-8")
    assert "rideguard.test - INFO - session sweep finished" in content
