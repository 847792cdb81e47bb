"""structlog setup shared by the web app and the tests."""

import logging
import os
import sys

import structlog

_TRUTHY = ('1', 'true', 'yes', 'on')

_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}


def _resolve_level(level=None):
    if isinstance(level, int):
        return level
    if level is None:
        if os.environ.get('QUIZSYNC_DEBUG', '').lower() in _TRUTHY:
            return logging.DEBUG
        level = os.environ.get('LOG_LEVEL', 'INFO')
    return _LEVELS.get(str(level).upper(), logging.INFO)


def configure_logging(level=None, json_output=None):
    """Configure structlog. Console rendering on a TTY, JSON lines otherwise.
    Returns the effective numeric level."""
    log_level = _resolve_level(level)
    if json_output is None:
        json_output = not sys.stderr.isatty()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    return log_level
