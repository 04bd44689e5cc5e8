"""Logging utilities for the notification service.

The actual logging setup (level, handlers, format) is done once by
:func:`configure_logging` in the entry points; modules only ask for a named
logger and log with ``%s`` placeholders and ``key=value`` context.

Example:
    Typical usage in a module::

        from delayed_notifier.logger import get_logger

        logger = get_logger("Worker")
        logger.info("Worker: got entries count=%s", 3)
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "DelayedNotifier") -> logging.Logger:
    """Retrieve a logger instance.

    Handlers and formatters are not touched here; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "DelayedNotifier".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the process.

    Unknown level names fall back to ``INFO``. ``force=True`` replaces any
    handler installed earlier so repeated calls never duplicate output.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
