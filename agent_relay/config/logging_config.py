"""
Logging setup for the relay process.

All relay modules log through the single ``agent_relay`` logger. It writes to
stdout and to a size-capped rotating file under ``logs/``, and it does not
propagate, so uvicorn's own root handlers never print relay lines twice.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from agent_relay.config.constants import LOGGER_NAME

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

RELAY_LOG_DIR = Path("logs")
RELAY_LOG_FILE = RELAY_LOG_DIR / "agent_relay.log"
RELAY_LOG_MAX_BYTES = 10 * 1024 * 1024
RELAY_LOG_BACKUPS = 5


def _rotating_file_handler(
    formatter: logging.Formatter, relay_logger: logging.Logger
) -> Optional[logging.Handler]:
    """Build the file handler, or return None when the log directory is not writable."""
    try:
        RELAY_LOG_DIR.mkdir(exist_ok=True)
        handler = RotatingFileHandler(
            RELAY_LOG_FILE,
            maxBytes=RELAY_LOG_MAX_BYTES,
            backupCount=RELAY_LOG_BACKUPS,
        )
    except OSError as e:
        relay_logger.warning(f"Relay file logging disabled, console only: {e}")
        return None
    handler.setFormatter(formatter)
    return handler


def configure_logging(level: str = LOG_LEVEL) -> logging.Logger:
    """
    (Re)configure the relay logger.

    Calling this again replaces the handlers installed by an earlier call, so
    ``run.py`` and ``main.py`` can both call it.

    Args:
        level: Logging level name, e.g. ``"DEBUG"``; unknown names fall back to INFO

    Returns:
        logging.Logger: the ``agent_relay`` logger
    """
    relay_logger = logging.getLogger(LOGGER_NAME)
    relay_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in relay_logger.handlers[:]:
        relay_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    relay_logger.addHandler(console)

    file_handler = _rotating_file_handler(formatter, relay_logger)
    if file_handler is not None:
        relay_logger.addHandler(file_handler)

    relay_logger.propagate = False
    relay_logger.debug(f"Relay logging configured at {logging.getLevelName(relay_logger.level)}")
    return relay_logger
