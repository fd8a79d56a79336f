"""
Logging configuration for the rental finance app.

Module loggers use logging.getLogger(__name__); this sets up the
"rental_finance" parent logger once per app: console output always, plus a
file when LOG_FILE is configured.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
PACKAGE_LOGGER = "rental_finance"


def configure_logging(app) -> logging.Logger:
    """
    Configure the package logger from app.config.

    Uses:
        LOG_LEVEL: level name (default INFO)
        LOG_FILE: optional path of a log file
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    # Remove handlers left by a previous create_app() (tests build many apps)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_file = app.config.get("LOG_FILE")
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.debug("Logging initialized at %s level", level_name)
    return logger
