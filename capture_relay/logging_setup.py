import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(
    development: bool = False,
    level: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """
    Replaces loguru's default sink.

    Development builds log everything from DEBUG up; otherwise only warnings
    and errors reach the console. An optional file sink rotates at 10 MB.
    """
    console_level = level or ("DEBUG" if development else "WARNING")
    logger.remove()
    logger.add(sys.stderr, level=console_level, format=LOG_FORMAT, backtrace=development, diagnose=False)
    if log_file is not None:
        logger.add(
            str(log_file),
            level=level or "INFO",
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
            diagnose=False,
        )
    logger.debug(f"Logging configured at {console_level}")
