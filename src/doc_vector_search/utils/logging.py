"""Logging setup for Doc Vector Search (loguru sinks)."""

import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "WARNING", log_file: Path | None = None) -> None:
    """Replace loguru's default sink with one at the requested level.

    Args:
        level: Minimum level for the stderr sink
        log_file: Optional file receiving DEBUG and above, rotated at 10 MB
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=True)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            rotation="10 MB",
            retention=3,
            enqueue=True,
        )
