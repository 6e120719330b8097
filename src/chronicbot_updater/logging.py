"""Logging configuration for the CHRONICbot updater."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

from chronicbot_updater.config import Settings, get_settings

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.processors.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
]


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structured logging.

    Console output is colourised in development and JSON otherwise.  When
    ``log_to_file`` is enabled a rotating JSON log is written as well; if the
    log directory cannot be created the updater falls back to console-only
    logging rather than refusing to run.
    """
    settings = settings or get_settings()

    log_level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

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

    console_renderers: list[structlog.types.Processor] = (
        [structlog.dev.ConsoleRenderer(colors=True)]
        if settings.is_development
        else [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    )
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_SHARED_PROCESSORS,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *console_renderers,
            ],
        )
    )

    handlers: list[logging.Handler] = [console_handler]

    log_to_file = settings.log_to_file
    if log_to_file:
        try:
            Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(f"Log directory unavailable, logging to console only: {exc}", file=sys.stderr)
            log_to_file = False

    if log_to_file:
        try:
            file_handler = RotatingFileHandler(
                settings.log_file_path,
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
        except OSError as exc:
            print(f"Log file unavailable, logging to console only: {exc}", file=sys.stderr)
        else:
            file_handler.setFormatter(
                structlog.stdlib.ProcessorFormatter(
                    foreign_pre_chain=_SHARED_PROCESSORS,
                    processors=[
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        structlog.processors.format_exc_info,
                        structlog.processors.JSONRenderer(),
                    ],
                )
            )
            handlers.append(file_handler)

    logging.basicConfig(format="%(message)s", level=log_level, handlers=[])
    root = logging.getLogger()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(log_level)

    # Reduce noise from httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
