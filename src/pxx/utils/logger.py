"""
Logging utilities for pxx.

All modules log through loguru. Call ``configure_logging`` once at startup to
install the stderr sink at the requested verbosity; ``get_logger`` returns a
logger bound to the calling module.
"""

import sys
import traceback

from loguru import logger as _logger

from pxx.models.enums import LogLevel

_LOGURU_LEVELS = {
    LogLevel.FULL: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARNING",
}

_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> "
    "<level>{level: <8}</level> "
    "<cyan>{extra[component]}</cyan> | "
    "<level>{message}</level>"
)


def _stderr_sink(message) -> None:
    # Looked up per message so redirected stderr (tests, CLI runners) is honoured
    sys.stderr.write(message)


def configure_logging(level: LogLevel = LogLevel.INFO) -> None:
    """
    Replace loguru's default sink with a single stderr sink.

    Args:
        level: Verbosity; FULL also enables loguru backtraces.
    """
    full = level == LogLevel.FULL
    _logger.remove()
    _logger.configure(extra={"component": "pxx"})
    _logger.add(
        _stderr_sink,
        level=_LOGURU_LEVELS[level],
        colorize=sys.stderr.isatty(),
        format=_FORMAT,
        backtrace=full,
        diagnose=full,
    )


def get_logger(name: str):
    """Get a logger bound to a module name."""
    return _logger.bind(component=name)


def format_traceback(exc: BaseException) -> str:
    """Format an exception with its traceback for debug logging."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
