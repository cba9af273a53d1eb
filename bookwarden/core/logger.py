"""Logger setup shared by every module."""

import logging
import os
from logging.handlers import RotatingFileHandler
from threading import Lock

from bookwarden.config import env

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_MAX_LOG_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5

_file_handler: logging.Handler | None = None
_file_handler_lock = Lock()


def _get_file_handler() -> logging.Handler | None:
    """Create the shared rotating file handler once, if the log dir is usable."""
    global _file_handler
    if not env.ENABLE_LOGGING:
        return None

    with _file_handler_lock:
        if _file_handler is not None:
            return _file_handler
        try:
            os.makedirs(env.LOG_DIR, exist_ok=True)
            handler = RotatingFileHandler(
                env.LOG_FILE,
                maxBytes=_MAX_LOG_BYTES,
                backupCount=_BACKUP_COUNT,
            )
        except OSError:
            # Read-only or missing log root: console only.
            return None
        handler.setFormatter(logging.Formatter(_FORMAT))
        _file_handler = handler
        return _file_handler


def setup_logger(name: str) -> logging.Logger:
    """Return a logger configured with console and (optional) file output."""
    logger = logging.getLogger(name)
    if getattr(logger, "_bookwarden_configured", False):
        return logger

    logger.setLevel(env.LOG_LEVEL)
    logger.propagate = False

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(console)

    file_handler = _get_file_handler()
    if file_handler is not None:
        logger.addHandler(file_handler)

    logger._bookwarden_configured = True  # type: ignore[attr-defined]
    return logger
