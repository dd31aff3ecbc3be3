"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
import sys

import structlog

NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "telegram", "aiosqlite")


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog. JSON_LOGS=1 switches to one JSON object per line."""
    use_json = os.environ.get("JSON_LOGS", "").strip() in ("1", "true", "yes")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if use_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_cycle(cycle_id: str, run: int, trigger: str) -> None:
    """Correlate every log line emitted during one cycle."""
    structlog.contextvars.bind_contextvars(cycle_id=cycle_id, run=run, trigger=trigger)


def clear_cycle() -> None:
    structlog.contextvars.unbind_contextvars("cycle_id", "run", "trigger")
