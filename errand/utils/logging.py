"""Logging setup for errand processes."""

import sys
from pathlib import Path

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Replace loguru's default sink with errand's console (and file) sinks.

    Args:
        level: Minimum level for the console sink.
        log_file: Optional path for a rotating DEBUG-level file sink.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_CONSOLE_FORMAT, enqueue=False)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )
    logger.debug("Logging configured (level={}, file={})", level, log_file)
