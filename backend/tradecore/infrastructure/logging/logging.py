"""structlog setup for the execution core.

Every order attempt, lock write and guard decision is logged as one event with
keyword context (component, symbol, order_id, ...). Logs go to stderr so the
operator CLI keeps stdout for its own output.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, List, TextIO

import structlog


def configure_logging(log_level: str = "INFO", *, json_logs: bool = True, stream: TextIO = sys.stderr) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=stream, level=level, force=True)

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger().bind(component=component, **kwargs)
