"""
Logging setup shared by every module.
"""

import logging
import sys

from loyalty_admin.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(name: str) -> logging.Logger:
    """
    Return a logger writing to stdout with the application format.

    Handlers are attached once per logger name, so repeated calls are cheap.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        level = settings.log_level.upper()
        logger.setLevel(level)

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)

    return logger


def log_error(logger: logging.Logger, error: Exception, context: str = "") -> None:
    """Log an error with context; include the traceback in debug mode."""
    if context:
        logger.error(f"{context}: {type(error).__name__}: {error}")
    else:
        logger.error(f"{type(error).__name__}: {error}")

    if settings.debug:
        logger.exception("Full traceback:")
