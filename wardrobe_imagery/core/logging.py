"""
Structured Logging with structlog

JSON lines in production, a colored console renderer in development. The
pipeline binds `item_id` and `stage` through structlog's contextvars, so
every event emitted during a run carries them without passing loggers around.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import (
    bind_contextvars,
    get_contextvars,
    merge_contextvars,
    unbind_contextvars,
)

from wardrobe_imagery import __version__

CONTEXT_KEYS = ("item_id", "stage")


def add_app_version(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict["version"] = __version__
    return event_dict


def setup_logging(log_level: str = "INFO", json_format: bool = True):
    """
    Route structlog through the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON renderer when True, console renderer otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # httpx logs every request at INFO
    for noisy in ("httpx", "httpcore", "asyncio", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            add_app_version,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def current_item_id() -> Optional[str]:
    """Item bound to the current run, if any."""
    return get_contextvars().get("item_id")


class LogContext:
    """
    Bind item/stage for the duration of a block, restoring the outer values.

    Usage:
        with LogContext(item_id="abc123", stage="upload") as ctx:
            logger.info("upload_started")
            ctx.set_stage("background_removal")
    """

    def __init__(self, item_id: Optional[str] = None, stage: Optional[str] = None):
        self._fields = {key: value for key, value in (("item_id", item_id), ("stage", stage)) if value}
        self._outer: Dict[str, Any] = {}

    def __enter__(self):
        bound = get_contextvars()
        self._outer = {key: bound[key] for key in CONTEXT_KEYS if key in bound}
        bind_contextvars(**self._fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        unbind_contextvars(*CONTEXT_KEYS)
        if self._outer:
            bind_contextvars(**self._outer)
        return False

    def set_stage(self, stage: str):
        bind_contextvars(stage=stage)


def set_item_context(item_id: Optional[str], stage: Optional[str] = None):
    """Bind item context for a whole Celery task."""
    fields = {key: value for key, value in (("item_id", item_id), ("stage", stage)) if value}
    bind_contextvars(**fields)


def clear_item_context():
    unbind_contextvars(*CONTEXT_KEYS)
