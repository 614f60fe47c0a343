"""
Logging Configuration Module
Routes sync engine logs to the console and, when a file is configured, to a
rotating log file. Per-logger levels come from the ``logging.loggers``
section of the configuration.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from blobdelta.config_manager import ConfigManager

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Library loggers that flood the output at INFO during batch loops
QUIET_LOGGERS: Dict[str, str] = {
    'sqlalchemy.engine': 'WARNING',
    'sqlalchemy.pool': 'WARNING',
    'apscheduler': 'WARNING',
    'werkzeug': 'WARNING',
}


def _level(value) -> int:
    level = logging.getLevelName(str(value).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level {value!r}")
    return level


def setup_logging(level: Optional[str] = None) -> None:
    """
    Setup application-wide logging configuration.
    Call this once at application startup.

    Args:
        level: Overrides the configured root level (e.g. from a CLI flag)
    """
    log_config = ConfigManager().get_logging_config()

    root_level = _level(level or log_config.get('level', 'INFO'))
    formatter = logging.Formatter(log_config.get('format', DEFAULT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # An empty file setting keeps logs on the console only
    log_file = log_config.get('file', './logs/blobdelta.log')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=int(log_config.get('max_bytes', 10485760)),
            backupCount=int(log_config.get('backup_count', 5))
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    levels = dict(QUIET_LOGGERS)
    levels.update(log_config.get('loggers') or {})
    for name, value in levels.items():
        logging.getLogger(name).setLevel(_level(value))


def get_logger(name: str) -> logging.Logger:
    """Logger for a module (pass ``__name__``)."""
    return logging.getLogger(name)


class LoggerMixin:
    """Gives a class a logger named after its module and class."""

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(self.__class__.__module__ + '.' + self.__class__.__name__)
