"""Logging configuration using loguru.

Records carry the Telegram user they concern in `extra["user_id"]`. Code
acting for one user sets it with `logger.contextualize(user_id=...)` (a
whole tracking task or update) or `logger.bind(user_id=...)` (a single
record); everything else logs under "-".
"""

import sys
from pathlib import Path
from loguru import logger

from transit_tracker.utils.config import get_settings

NO_USER = "-"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>user={extra[user_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | user={extra[user_id]} | "
    "{name}:{function}:{line} - {message}"
)


def setup_logger(console=sys.stdout):
    """Configure application logging.

    A console sink plus a size-rotated file sink, serialized to JSON when
    LOG_FORMAT=json so the user ID lands in its own field.

    Args:
        console: Stream for the console sink
    """
    settings = get_settings()
    level = "DEBUG" if settings.debug_mode else settings.log_level

    logger.remove()
    logger.configure(extra={"user_id": NO_USER})

    logger.add(console, format=CONSOLE_FORMAT, level=level, colorize=True)

    log_path = Path(settings.log_file_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_options = dict(
        level=level,
        rotation=f"{settings.log_max_size_mb} MB",
        retention=settings.log_backup_count,
    )
    if settings.log_format == "json":
        logger.add(log_path, serialize=True, **file_options)
    else:
        logger.add(log_path, format=FILE_FORMAT, **file_options)

    logger.info(f"Logging at {level} to console and {log_path} ({settings.log_format})")
    return logger


def get_logger():
    """Get the configured logger instance."""
    return logger
