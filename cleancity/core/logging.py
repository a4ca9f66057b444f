"""
CleanCity - Logging Configuration
One stdout handler for the API process and the workflow services.
"""

import logging
import sys
from typing import Iterable, Optional

from cleancity.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are only interesting when something breaks
QUIET_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "alembic",
    "httpx",
    "uvicorn.access",
)


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    quiet: Iterable[str] = QUIET_LOGGERS
) -> logging.Logger:
    """
    Configure the root handler and return the ``cleancity`` logger.

    Safe to call more than once; a later call replaces the handler
    instead of stacking another one.

    Args:
        level: Log level name (default: settings.log_level)
        format_string: Custom format for log records
        quiet: Logger names lowered to WARNING

    Returns:
        The ``cleancity`` package logger
    """
    numeric_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format=format_string or LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger("cleancity")
    logger.setLevel(numeric_level)
    logger.debug(f"Logging configured at {logging.getLevelName(numeric_level)} ({settings.app_env})")
    return logger
