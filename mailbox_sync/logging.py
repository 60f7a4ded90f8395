"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

# Libraries that log every request at INFO; kept at WARNING unless DEBUG.
_NOISY_LOGGERS = ("aiosqlite", "botocore", "boto3", "urllib3", "aiosmtplib")


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger for the service.

    Parameters
    ----------
    json:
        Emit JSON lines (production) when *True*, otherwise use the
        coloured console renderer.
    level:
        Root log level name (e.g. ``"DEBUG"``, ``"INFO"``).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    quiet_level = logging.DEBUG if level.upper() == "DEBUG" else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


def bind_user(user_id: object) -> None:
    """Attach *user_id* to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(user_id=str(user_id))


def unbind_user() -> None:
    structlog.contextvars.unbind_contextvars("user_id")
