"""Structured logging for the sync service.

structlog renders every event; stdlib handlers carry it to a colored console
and an optional rotating file. Events logged inside ``sync_run_context`` carry
the run id and direction, and token-like fields are masked before rendering.
"""

import contextlib
import functools
import logging
import logging.handlers
import sys
import time
import uuid
from pathlib import Path
from typing import Iterator, Optional

import structlog
import colorlog
from structlog.typing import EventDict, Processor


LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

SECRET_KEYS = frozenset({"access_token", "refresh_token", "app_secret", "authorization", "client_secret"})

# Libraries whose INFO chatter drowns out sync events
QUIET_LOGGERS = ("apscheduler", "aiohttp.access")

_HANDLER_MARK = "_foldersync_handler"


def redact_secrets(logger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """Configure structlog and the stdlib handlers.

    Arguments left as None fall back to the logging settings; pass an empty
    ``log_file`` to skip the file handler. Safe to call more than once.
    """
    from ..config.settings import get_settings

    settings = get_settings()

    level = (log_level or settings.logging.level).upper()
    format_type = log_format or settings.logging.format
    file_path = log_file if log_file is not None else settings.logging.file_path

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(level)
    for handler in [h for h in root.handlers if getattr(h, _HANDLER_MARK, False)]:
        root.removeHandler(handler)
        handler.close()

    root.addHandler(_console_handler(level))
    if file_path:
        root.addHandler(_file_handler(file_path, level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))


def _console_handler(level: str) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(levelname)-8s%(reset)s %(message)s",
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        }
    ))
    setattr(handler, _HANDLER_MARK, True)
    return handler


def _file_handler(file_path: str, level: str) -> logging.Handler:
    """Rotating file of rendered events, one per line."""
    Path(file_path).parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        file_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(handler, _HANDLER_MARK, True)
    return handler


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextlib.contextmanager
def sync_run_context(direction: str) -> Iterator[str]:
    """Bind a fresh run id and the direction to every event logged inside."""
    run_id = uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(run_id=run_id, direction=direction):
        yield run_id


def log_execution_time(func):
    """Log how long a call took at debug level, or the failure at error level."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _log_timing(func, started, error=e)
            raise
        _log_timing(func, started)
        return result

    return wrapper


def log_async_execution_time(func):
    """Coroutine version of ``log_execution_time``."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        started = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            _log_timing(func, started, error=e)
            raise
        _log_timing(func, started)
        return result

    return wrapper


def _log_timing(func, started: float, error: Optional[Exception] = None) -> None:
    logger = get_logger(func.__module__)
    duration_ms = round((time.monotonic() - started) * 1000, 1)

    if error is None:
        logger.debug("Operation finished", operation=func.__qualname__, duration_ms=duration_ms)
    else:
        logger.error("Operation failed", operation=func.__qualname__, duration_ms=duration_ms, error=str(error))
