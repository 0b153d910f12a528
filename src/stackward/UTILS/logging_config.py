"""Logging setup: structlog on top of the standard library handlers."""

import logging
import os
import sys
from typing import Optional

import structlog


def setup_logging(log_level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Configure structlog and the root logger.

    Events go to stderr so that ``plan`` and ``status`` output on stdout stays clean.

    Args:
        log_level: Level name (defaults to STACKWARD_LOG_LEVEL or INFO)
        json_output: Force JSON lines; defaults to JSON when stderr is not a TTY
    """
    if log_level is None:
        log_level = os.getenv("STACKWARD_LOG_LEVEL", "INFO")
    level = getattr(logging, log_level.upper(), logging.INFO)

    if json_output is None:
        json_output = not sys.stderr.isatty()

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer))

    root_logger = logging.getLogger()
    # Clear any existing handlers to prevent duplicates
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
