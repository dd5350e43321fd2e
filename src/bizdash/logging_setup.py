"""Logging setup for bizdash.

Everything logs under the "bizdash" namespace. The scheduler daemon and the
admin API are separate processes that can share one log file, so file and
daemon output carry the process id.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

ROOT_LOGGER = "bizdash"
QUIET_LOGGERS = ("httpx", "httpcore", "werkzeug", "urllib3")

_PLAIN_FORMAT = "%(levelname)-5s [%(name)-18s] %(message)s"
_STAMPED_FORMAT = "%(asctime)s %(process)d %(levelname)-5s [%(name)-18s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_initialized = False


def _console_handler(level: int, daemon_mode: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if daemon_mode:
        handler.setFormatter(logging.Formatter(_STAMPED_FORMAT, datefmt=_DATE_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    return handler


def _file_handler(log_config: LoggingConfig, level: int) -> logging.Handler:
    path = Path(log_config.file)
    path.parent.mkdir(parents=True, exist_ok=True)
    if log_config.rotate:
        handler = RotatingFileHandler(
            path,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
    else:
        handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_STAMPED_FORMAT, datefmt=_DATE_FORMAT))
    return handler


def setup_logging(config: Config, verbose: bool = False, daemon_mode: bool = False) -> None:
    """Configure the bizdash logger once per process.

    verbose forces DEBUG regardless of [logging].level; daemon_mode adds
    timestamps and the pid to console lines.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level = logging.DEBUG if verbose else getattr(logging, log_config.level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    if log_config.output in ("console", "both"):
        logger.addHandler(_console_handler(level, daemon_mode))
    if log_config.output in ("file", "both") and log_config.file:
        logger.addHandler(_file_handler(log_config, level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Forget previous setup (tests)."""
    global _initialized
    _initialized = False
    logging.getLogger(ROOT_LOGGER).handlers.clear()
