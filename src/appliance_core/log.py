"""
Structured logging setup using structlog.

The control plane logs to stdout. Worker processes log to stderr because their
stdout carries the message protocol back to the control plane.
"""
from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

import structlog
from structlog.stdlib import BoundLogger

ROOT_LOGGER = "appliance"


def setup_logging(level: str = "INFO", fmt: str = "console", stream: Optional[TextIO] = None) -> BoundLogger:
    """
    Configure stdlib logging and structlog once for the process.

    Args:
        level: stdlib level name (DEBUG, INFO, ...)
        fmt: "json" for machine-readable output, anything else for the console renderer
        stream: output stream, stdout by default
    """
    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
        force=True,
    )

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "json":
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger(ROOT_LOGGER)
    logger.info("logging_configured", level=level, format=fmt)
    return logger


def get_logger(name: Optional[str] = None) -> BoundLogger:
    if name:
        return structlog.get_logger(f"{ROOT_LOGGER}.{name}")
    return structlog.get_logger(ROOT_LOGGER)
