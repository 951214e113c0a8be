"""
Logging configuration for the Check-in Scanner

Sets up the `checkin_scanner` package logger: a stdout handler and an
optional file handler, with the level taken from the caller or from the
LOG_LEVEL environment variable. Modules log through
`logging.getLogger(__name__)` and inherit these handlers.
"""

import logging
import os
import sys
from typing import Optional

PACKAGE_LOGGER = "checkin_scanner"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """
    Install handlers on the package logger

    Level and file default to the LOG_LEVEL and LOG_FILE environment
    variables. Calling it again replaces the previous handlers.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_file = log_file or os.getenv("LOG_FILE")

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    return logger
