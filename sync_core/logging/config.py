# =============================================================================
# sync_core/logging/config.py
# Logging Configuration for the client data layer
# =============================================================================

import logging
import sys
import time
from pathlib import Path
from datetime import datetime
from typing import Optional, Union

from sync_core.errors import SyncCoreError


# Log format
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log directory
LOG_DIR = Path("logs")

# Every logger handed out by get_logger lives under this name
ROOT_LOGGER = "sync_core"

# Chatty third-party loggers (HTTP transport, realtime websocket)
NOISY_LOGGERS = (
    "urllib3",
    "httpx",
    "httpcore",
    "hpack",
    "supabase",
    "postgrest",
    "realtime",
    "websockets",
)


def _resolve_level(level: Union[int, str]) -> int:
    """Accept logging constants or names such as "debug" from secrets."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_to_file: bool = True,
    log_filename: Optional[str] = None,
    sync_level: Optional[Union[int, str]] = None,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Logging level for the whole app (default: INFO)
        log_to_file: Whether to also log to a file
        log_filename: Custom log filename (default: sync_YYYY-MM-DD.log)
        sync_level: Separate level for the data layer, e.g. "DEBUG" to trace
            cache and realtime traffic without turning up everything else
    """
    level = _resolve_level(level)
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        LOG_DIR.mkdir(exist_ok=True)
        if log_filename is None:
            log_filename = f"sync_{datetime.now().strftime('%Y-%m-%d')}.log"
        file_handler = logging.FileHandler(LOG_DIR / log_filename)
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(_resolve_level(sync_level) if sync_level is not None else logging.NOTSET)
    logger.info("Logging initialized")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the sync_core namespace.

    Module names (``__name__``) are already inside it; bare names such as a
    store's class name are nested under it, so ``sync_level`` covers them.

    Usage:
        from sync_core.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Fetching appointments")
    """
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


class LogContext:
    """
    Context manager for logging operation timing and status.

    Works around awaited calls too, since it only brackets the block:

        with LogContext(logger, "Cancel appointment apt-1"):
            await coordinator.update(...)
        # Logs: "Cancel appointment apt-1... started"
        # Logs: "Cancel appointment apt-1... completed (0.21s)"

    Typed sync failures are logged as warnings with their code; anything
    else is logged as an error with its traceback.
    """

    def __init__(self, logger: logging.Logger, operation: str):
        self.logger = logger
        self.operation = operation
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.info(f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self.start_time

        if exc_type is None:
            self.logger.info(f"{self.operation}... completed ({elapsed:.2f}s)")
        elif isinstance(exc_val, SyncCoreError):
            # Rollback is already done by the time this runs
            self.logger.warning(f"{self.operation}... failed ({elapsed:.2f}s): {exc_val}")
        elif not isinstance(exc_val, Exception):
            self.logger.warning(f"{self.operation}... interrupted ({elapsed:.2f}s)")
        else:
            self.logger.error(
                f"{self.operation}... crashed ({elapsed:.2f}s): {exc_val!r}",
                exc_info=(exc_type, exc_val, exc_tb),
            )

        return False  # Don't suppress exceptions
