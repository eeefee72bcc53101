"""Structured logging setup using structlog.

Console output by default; JSON lines when JSON_LOGS=1 (or json_logs=True),
which is what the engine emits when it runs unattended on a server.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

_NOISY = ("httpx", "httpcore", "apscheduler", "anthropic", "aiosqlite")


def setup_logging(log_level: str = "INFO", json_logs: bool | None = None) -> None:
    if json_logs is None:
        json_logs = os.environ.get("JSON_LOGS", "").strip().lower() in ("1", "true", "yes")

    level = getattr(logging, log_level.upper(), logging.INFO)
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Library loggers still go through stdlib logging
    logging.basicConfig(format="%(name)s %(levelname)s %(message)s", stream=sys.stderr, level=level)
    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)
