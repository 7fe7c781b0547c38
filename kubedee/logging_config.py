"""Logging configuration for kubedee.

Progress lines go to stderr so that commands like ``kubedee kubectl-env``
keep stdout clean for ``eval``. On a terminal, records are colored by level:
bold white for progress, yellow for warnings, red for errors.
"""

import logging
import sys
from pathlib import Path

LEVEL_COLORS = {
    logging.DEBUG: "\033[0;37m",
    logging.INFO: "\033[1;37m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[1;31m",
    logging.CRITICAL: "\033[1;31m",
}
RESET = "\033[0m"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class LevelColorFormatter(logging.Formatter):
    """Formatter wrapping each record in the ANSI color of its level."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        return f"{color}{message}{RESET}" if color else message


def _is_terminal(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file, always written uncolored at DEBUG
        verbose: If True, set level to DEBUG
    """
    if verbose:
        level = "DEBUG"
    console_level = getattr(logging, level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(console_level)
    root_logger.handlers.clear()

    stream = sys.stderr
    formatter_class = LevelColorFormatter if _is_terminal(stream) else logging.Formatter
    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter_class(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            root_logger.warning(f"Failed to create log file handler: {e}")
        else:
            root_logger.setLevel(logging.DEBUG)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
            root_logger.addHandler(file_handler)

    # urllib3 logs every connection at DEBUG; filelock logs every acquire
    for name in ("urllib3", "filelock"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
