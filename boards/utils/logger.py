"""
Logging setup for the bot and the sync engine.

Every logger built here writes to the same two handlers: stdout and one log
file per day. Engine modules log through `logging.getLogger(__name__)` and
reach those handlers through the `boards` package logger.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from boards.config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_handlers: Optional[List[logging.Handler]] = None


def _shared_handlers() -> List[logging.Handler]:
    global _handlers
    if _handlers is None:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

        console = logging.StreamHandler(sys.stdout)
        console.setLevel(logging.DEBUG if Config.DEBUG else logging.INFO)

        log_dir = Path(Config.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        # Always DEBUG so a sync cycle can be reconstructed after the fact
        daily = logging.FileHandler(
            log_dir / f'boards_sync_{datetime.now():%Y%m%d}.log',
            encoding='utf-8'
        )
        daily.setLevel(logging.DEBUG)

        for handler in (console, daily):
            handler.setFormatter(formatter)
        _handlers = [console, daily]
    return _handlers


def setup_logger(name: str) -> logging.Logger:
    """Attach the shared handlers to a logger once and return it."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)
        for handler in _shared_handlers():
            logger.addHandler(handler)
        logger.propagate = False
    return logger
