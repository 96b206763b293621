"""
Logging for Mirra.

Everything logs under the ``mirra`` namespace: a rotating file in the data
directory keeps the full history, and stderr shows what a daemon operator
needs to see.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 3

# Libraries that log every frame or filesystem event at DEBUG
NOISY_LIBRARIES = ("websockets", "watchdog")


def _level(name: str) -> int:
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    log_file: Path | None = None,
    level: str = "INFO",
    log_to_file: bool = True,
    console_level: str = "INFO",
    library_level: str = "WARNING",
) -> logging.Logger:
    """
    Configure the ``mirra`` logger. Calling it again replaces the handlers.

    Args:
        log_file: Rotating log file; None disables file logging
        level: Level of the mirra logger itself
        log_to_file: Whether to write ``log_file``
        console_level: Minimum level echoed to stderr
        library_level: Level for websockets and watchdog loggers

    Returns:
        The ``mirra`` logger
    """
    logger = logging.getLogger("mirra")
    logger.setLevel(_level(level))

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    if log_to_file and log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(_level(console_level))
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    logger.propagate = False

    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(_level(library_level))

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger for a mirra component, e.g. ``get_logger("sync.server")``."""
    return logging.getLogger(f"mirra.{name}")
