"""Logging configuration for Compose Guardian.

structlog renders through the standard library so every record, ours or a
library's, goes through the same handlers: a console handler (human-readable
in development, JSON otherwise) and, when enabled, a rotating JSON file so the
history of self-check runs and updates survives container replacement.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from compose_guardian.config import Settings, get_settings

_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )


def _console_formatter(settings: Settings) -> structlog.stdlib.ProcessorFormatter:
    if not settings.is_development:
        return _json_formatter()
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
    )


def _file_handler(settings: Settings) -> tuple[RotatingFileHandler | None, str | None]:
    path = Path(settings.log_file_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            path,
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        return None, str(exc)
    handler.setFormatter(_json_formatter())
    return handler, None


def setup_logging() -> None:
    """Configure structured logging."""
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Replace any existing handlers; ours are attached below
    logging.basicConfig(format="%(message)s", level=log_level, handlers=[], force=True)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_console_formatter(settings))
    logging.root.addHandler(console)

    file_error = None
    if settings.log_to_file:
        handler, file_error = _file_handler(settings)
        if handler is not None:
            logging.root.addHandler(handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if file_error is not None:
        get_logger("compose_guardian.logging").warning(
            "log_file_unavailable", path=settings.log_file_path, error=file_error
        )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
