"""Logging configuration for testpartner."""

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: Union[str, int] = "INFO", fmt: Optional[str] = None) -> logging.Logger:
    """Attach a stream handler to the ``testpartner`` logger.

    Calling it again only adjusts the level; handlers are never duplicated.

    Args:
        level: Level name or number
        fmt: Log format (defaults to DEFAULT_FORMAT)

    Returns:
        The package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("testpartner")
    logger.setLevel(level)

    handler = next((h for h in logger.handlers if getattr(h, '_testpartner', False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler._testpartner = True
        logger.addHandler(handler)

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT, datefmt=DATE_FORMAT))
    return logger
