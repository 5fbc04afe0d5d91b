"""
observability/logger.py — autocycle Structured Logger

Every log line goes to `<log_dir>/autocycle.log` as JSON. Console output on
stderr is opt-in (the rich progress report owns stdout) and is pretty on a
TTY, JSON otherwise. While a scheduler run is active each line also carries
run_id and profile_id.

Usage:
    from autocycle.observability.logger import get_logger, setup_logging
    setup_logging(level="INFO", log_dir="./data/logs", console_output=False)
    log = get_logger(__name__)
    log.info("scheduler.cycle.select", key="woodcutting", pool_size=3)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

LOG_FILE_NAME = "autocycle.log"

# aiosqlite logs every statement at DEBUG
_QUIET_LOGGERS = ("aiosqlite", "asyncio")

_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_SHARED_PROCESSORS,
    )


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: Optional[bool] = None,
    console_output: bool = True,
    max_bytes: int = 20 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure structlog on top of stdlib logging. Safe to call again; the
    previous handlers are replaced.

    `json_format` only affects the console; None picks pretty output when
    stderr is a terminal.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if json_format is None:
        json_format = not sys.stderr.isatty()

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_dir / LOG_FILE_NAME,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    handlers: list[logging.Handler] = [file_handler]

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            _formatter(
                structlog.processors.JSONRenderer()
                if json_format
                else structlog.dev.ConsoleRenderer(colors=True)
            )
        )
        handlers.append(console_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=_SHARED_PROCESSORS + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "autocycle", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_run(run_id: str, profile_id: str) -> None:
    """Attach run_id / profile_id to every log line in the current async context."""
    structlog.contextvars.bind_contextvars(run_id=run_id, profile_id=profile_id)


def clear_run() -> None:
    structlog.contextvars.clear_contextvars()
