"""Log sink setup."""

from __future__ import annotations

import sys

from loguru import logger

from evogate.config.schema import LoggingConfig
from evogate.utils.helpers import get_logs_path

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(config: LoggingConfig, verbose: bool = False) -> list[int]:
    """Replace loguru's default sink with the configured ones.

    Returns the ids of the added sinks.
    """
    level = "DEBUG" if verbose else config.level.upper()
    logger.remove()
    sink_ids = [logger.add(sys.stderr, level=level, format=LOG_FORMAT)]
    if config.file_enabled:
        path = get_logs_path() / "evogate.log"
        sink_ids.append(
            logger.add(
                path,
                level=level,
                rotation=config.rotation,
                retention=config.retention,
                enqueue=True,
            )
        )
        logger.debug(f"File logging enabled at {path}")
    return sink_ids
