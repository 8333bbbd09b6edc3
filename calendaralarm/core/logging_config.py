"""
Central logging configuration for calendaralarm.

Keeps the reconciliation logs readable by quieting chatty third-party
libraries and stamping every record with the id of the notification being
handled.
"""

from __future__ import annotations

import contextvars
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

NO_NOTIFICATION_ID = "-"

_notification_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "calendaralarm_notification_id", default=NO_NOTIFICATION_ID
)


def get_notification_id() -> str:
    """Return the notification id bound to the current context."""
    return _notification_id.get()


@contextmanager
def notification_context(notification_id: str) -> Iterator[str]:
    """Bind notification_id to log records emitted inside the block."""
    token = _notification_id.set(notification_id)
    try:
        yield notification_id
    finally:
        _notification_id.reset(token)


class NotificationIdFilter(logging.Filter):
    """Add the current notification id to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add notification id to log record.

        Args:
            record: Log record to enhance

        Returns:
            True to allow record to be logged
        """
        record.notification_id = get_notification_id()
        return True


# Third-party loggers and the level they are held at
NOISY_LOGGERS: dict[str, int] = {
    "asyncio": logging.WARNING,  # Event loop debug logs
    "icalendar": logging.INFO,  # Keep some ICS parsing info
    "dateutil": logging.WARNING,
}

PACKAGE_LOGGERS = [
    "calendaralarm",
    "calendaralarm.calendar",
    "calendaralarm.domain",
    "calendaralarm.storage",
]


def configure_logging(
    debug_mode: bool = False,
    force_debug: Optional[bool] = None,
    log_level: Optional[str] = None,
) -> None:
    """
    Configure logging levels for calendaralarm.

    Suppresses verbose DEBUG logs from noisy third-party libraries while
    keeping WARNING/ERROR/INFO logs for diagnostics. Debug mode can be
    overridden via environment variable for troubleshooting.

    Args:
        debug_mode: Whether to enable debug logging for calendaralarm modules
        force_debug: Override debug mode setting (None to use env var detection)
        log_level: Root level name, e.g. AlarmConfig.log_level (env var wins)

    Environment Variables:
        CALENDARALARM_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        CALENDARALARM_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("CALENDARALARM_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("CALENDARALARM_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if not final_debug and log_level and log_level.upper() in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, log_level.upper())
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    notification_filter = NotificationIdFilter()

    # Only add a handler if none exist (host application may own formatting)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(root_level)
        formatter = logging.Formatter(
            "[%(asctime)s] [%(notification_id)s] %(levelname)s - %(name)s - %(message)s"
        )
        handler.setFormatter(formatter)
        handler.addFilter(notification_filter)
        root_logger.addHandler(handler)
    else:
        for existing_handler in root_logger.handlers:
            if not any(isinstance(f, NotificationIdFilter) for f in existing_handler.filters):
                existing_handler.addFilter(notification_filter)

    logger_config = dict(NOISY_LOGGERS)
    package_level = logging.DEBUG if final_debug else logging.INFO
    for module in PACKAGE_LOGGERS:
        logger_config[module] = package_level

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.info(
            "Debug logging enabled for calendaralarm modules. Third-party debug logs suppressed."
        )
    else:
        root_logger.info("Production logging configuration applied.")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ["calendaralarm", *NOISY_LOGGERS]:
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
