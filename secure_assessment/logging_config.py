"""Logging configuration for the assessment sandbox.

Library modules only ever call ``logging.getLogger(__name__)``; an
application entry point calls ``configure_logging()`` once.
"""

import logging
import sys
from typing import Literal

from secure_assessment.settings import get_settings

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = [
    "asyncio",
    "urllib3",
]

NOISY_LOGGER_LEVELS = {
    "asyncio": logging.WARNING,
}


def suppress_noisy_loggers() -> None:
    """Suppress noisy third-party loggers."""
    for logger_name in NOISY_LOGGERS:
        logger = logging.getLogger(logger_name)
        logger.setLevel(NOISY_LOGGER_LEVELS.get(logger_name, logging.WARNING))
        logger.handlers.clear()


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
) -> None:
    """Configure application logging.

    Installs a single stderr handler on the root logger, sets the package
    logger to the configured level and quiets third-party loggers.

    Args:
        level: Override log level (defaults to settings.log_level)
    """
    log_level = level or get_settings().log_level

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, log_level))
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root_logger.addHandler(console_handler)

    logging.getLogger("secure_assessment").setLevel(getattr(logging, log_level))

    suppress_noisy_loggers()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
