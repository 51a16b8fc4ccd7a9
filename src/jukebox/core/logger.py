"""Loguru sinks for the worker and CLI."""

import sys
from typing import Optional

from jukebox.core.config import settings
from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(level: Optional[str] = None) -> None:
    """Routes log output to stderr and to ``DATA_DIR/logs/jukebox.log``.

    The file sink rotates and zips old files and is enqueued, so the many
    concurrent ingest tasks of a scan never wait on disk writes.

    Args:
        level: Overrides ``settings.LOG_LEVEL`` for both sinks.
    """
    level = (level or settings.LOG_LEVEL).upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    log_dir = settings.DATA_DIR / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        str(log_dir / "jukebox.log"),
        level=level,
        format=FILE_FORMAT,
        rotation=settings.LOG_ROTATION,
        retention=settings.LOG_RETENTION,
        compression="zip",
        enqueue=True,
        backtrace=True,
        diagnose=False,
    )
    logger.debug(f"Catalog at {settings.DB_PATH}, music root {settings.MUSIC_DIR}")
