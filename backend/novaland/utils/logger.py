"""
Logging utilities.

WHAT: Process-wide logging setup for the API and client sessions
WHY: Purchase and reconciliation failures must be traceable after the fact,
     while chain and SQL client chatter stays out of the console
HOW: stdlib logging with a console handler and a size-capped file handler;
     third-party loggers are pinned to WARNING unless DEBUG is set
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from ..core.config import settings

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(pathname)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# web3 logs every RPC round trip, sqlalchemy every statement when echo is on
NOISY_LOGGERS = ("web3", "urllib3", "aiohttp", "sqlalchemy.engine", "sse_starlette")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure the root logger.

    Args:
        level: Root level name, defaults to settings.LOG_LEVEL
        log_file: Log file path, defaults to settings.LOG_FILE; the file rolls over at 5 MB
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    path = Path(log_file or settings.LOG_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(file_handler)

    if not settings.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized (level={level_name}, file={path})")


def get_logger(name: str) -> logging.Logger:
    """Module logger, typically get_logger(__name__)."""
    return logging.getLogger(name)
