"""
Centralized logging for meetscribe.

Every engine module logs through a child of the ``meetscribe`` logger. Handlers
are attached once by ``configure_logging()`` (called when a session or the CLI
starts), so importing the engine never touches the filesystem.
"""

import logging
from pathlib import Path
from typing import Optional

# Default log location (project root /logs)
LOGS_DIR = Path(__file__).parent.parent / "logs"
LOG_FILE = LOGS_DIR / "meetscribe.log"

ROOT_LOGGER_NAME = "meetscribe"


class ScribeLogger:
    """Configures the meetscribe logger hierarchy (singleton)."""

    _instance = None
    _logger: Optional[logging.Logger] = None

    def __init__(self, level: str = "INFO", log_file: Optional[Path] = LOG_FILE,
                 console: bool = False):
        if ScribeLogger._logger is None:
            ScribeLogger._logger = self._setup_logger(level, log_file, console)

    @classmethod
    def configure(cls, level: str = "INFO", log_file: Optional[Path] = LOG_FILE,
                  console: bool = False) -> logging.Logger:
        """(Re)configure handlers. Safe to call more than once."""
        cls._logger = None
        cls._instance = cls(level, log_file, console)
        return cls._logger

    def _setup_logger(self, level: str, log_file: Optional[Path], console: bool) -> logging.Logger:
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # Format: [2024-01-15 14:30:25] ERROR meetscribe.mixer - message
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        if log_file is not None:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

        if console:
            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(formatter)
            logger.addHandler(stream_handler)

        return logger


def configure_logging(level: str = "INFO", log_file: Optional[Path] = LOG_FILE,
                      console: bool = False) -> logging.Logger:
    """Attach file/console handlers to the meetscribe logger."""
    return ScribeLogger.configure(level, log_file, console)


def get_logger(name: str) -> logging.Logger:
    """Get a component logger (``meetscribe.<name>``)."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_exception(exception, context=""):
    """
    Log an exception with full traceback.

    Args:
        exception: Exception object
        context: Optional context string (e.g., "in dispatch worker")
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if context:
        logger.error(f"Exception {context}", exc_info=exception)
    else:
        logger.error("Exception occurred", exc_info=exception)
