"""Logging configuration for RideGuard"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rideguard.core.config import Settings, settings as default_settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers that drown out security events at INFO
QUIET_LOGGERS = ("uvicorn.access", "asyncio", "httpx", "httpcore", "slowapi")


def setup_logging(config: Optional[Settings] = None) -> logging.Logger:
    """
    Configure the root logger from settings.

    Console output plus a size-rotated file under LOG_DIR. Safe to call
    more than once: handlers are attached only once per target, and the
    level is always re-applied.
    """
    config = config or default_settings
    level = "DEBUG" if config.DEBUG else config.LOG_LEVEL.upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    log_dir = Path(config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = str((log_dir / config.LOG_FILE).resolve())
    if not any(isinstance(h, RotatingFileHandler) and h.baseFilename == log_file for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            filename=log_file,
            maxBytes=config.LOG_MAX_BYTES,
            backupCount=config.LOG_BACKUP_COUNT,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
