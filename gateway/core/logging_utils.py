from __future__ import annotations

import logging
import sys
from collections.abc import Iterable

from loguru import logger as loguru_logger

TRACE_LEVEL = 5

_STANDARD_FIELDS = frozenset(
    {
        "args",
        "msg",
        "name",
        "levelno",
        "levelname",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "message",
    }
)

logging.addLevelName(TRACE_LEVEL, "TRACE")


class InterceptHandler(logging.Handler):
    """Bridge stdlib log records into loguru, keeping ``extra`` fields as bound context."""

    def emit(self, record: logging.LogRecord) -> None:
        level_to_use: int | str
        try:
            level_to_use = loguru_logger.level(record.levelname).name
        except ValueError:
            level_to_use = record.levelno

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if not key.startswith("_") and key not in _STANDARD_FIELDS
        }

        loguru_logger.bind(logger_name=record.name, **extra).opt(
            depth=6, exception=record.exc_info
        ).log(level_to_use, record.getMessage())


def setup_json_logging(
    level: str = "INFO",
    log_file: str | None = None,
    max_file_size: str = "100 MB",
    retention: str = "30 days",
    record_filters: Iterable[logging.Filter] = (),
) -> None:
    """Configure JSON logging through loguru.

    Every stdlib logger is routed into loguru so call sites keep using
    ``logging.getLogger(__name__)`` with ``extra={...}``.

    Args:
        level: TRACE, DEBUG, INFO, WARNING or ERROR.
        log_file: Optional path for a rotating JSON log file.
        max_file_size: Rotation size for the file sink (loguru format).
        retention: Retention period for rotated files (loguru format).
        record_filters: Filters attached to the bridge handler, e.g. to stamp
            request identifiers onto every record.
    """
    level = level.upper()
    lvl = TRACE_LEVEL if level == "TRACE" else getattr(logging, level, logging.INFO)

    loguru_logger.remove()
    loguru_logger.add(
        sys.stdout,
        level=level,
        serialize=True,
        enqueue=True,
        backtrace=True,
        diagnose=False,
    )
    if log_file:
        loguru_logger.add(
            log_file,
            level=level,
            serialize=True,
            rotation=max_file_size,
            retention=retention,
            compression="gz",
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    handler = InterceptHandler()
    for record_filter in record_filters:
        handler.addFilter(record_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(lvl)
    root.addHandler(handler)

    # uvicorn installs its own handlers; route them through loguru as well
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    logging.getLogger("httpx").setLevel(max(lvl, logging.WARNING))
    logging.getLogger("httpcore").setLevel(max(lvl, logging.WARNING))

    loguru_logger.info(
        "json_logging_initialized",
        setup_config={"level": level, "log_file": log_file, "retention": retention},
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance by name."""
    return logging.getLogger(name)


def truncate_log_content(content: str | None, max_length: int = 1000) -> str | None:
    """Truncate large content for logging to avoid cluttering logs.

    Args:
        content: The content to potentially truncate
        max_length: Maximum length before truncation (default 1000)

    Returns:
        Truncated content with a marker if truncated, or the original content.
    """
    if not content:
        return content
    if len(content) <= max_length:
        return content

    # Break at a word boundary when one is close to the cut
    if max_length > 20:
        truncate_at = max_length - 15
        truncated = content[:truncate_at]

        last_space = truncated.rfind(" ", max(0, truncate_at - 50))
        if last_space > truncate_at - 100:
            truncated = truncated[:last_space]

        return truncated + "... [truncated]"

    return content[:max_length] + "..."


__all__ = [
    "TRACE_LEVEL",
    "InterceptHandler",
    "get_logger",
    "setup_json_logging",
    "truncate_log_content",
]
