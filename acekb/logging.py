"""Structured logging for acekb, built on structlog with a stdlib backend.

Library modules only call :func:`get_logger`; the host application decides
rendering by calling :func:`setup_logging` (or :func:`configure_from`) once.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, TextIO

import structlog

if TYPE_CHECKING:
    from acekb.config.schema import LoggingConfig

_ROOT_LOGGER = "acekb"


def setup_logging(json_output: bool = False, level: str = "INFO", stream: TextIO | None = None) -> None:
    """Configure structlog and attach a single handler to the ``acekb`` logger.

    Args:
        json_output: Emit JSON lines instead of the human-readable console format.
        level: Log level for the ``acekb`` logger hierarchy.
        stream: Destination stream, stderr by default.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer(
            serializer=lambda obj, **kw: json.dumps(obj, ensure_ascii=False, default=str, **kw)
        )
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

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
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger(_ROOT_LOGGER)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def configure_from(config: LoggingConfig, stream: TextIO | None = None) -> None:
    setup_logging(json_output=config.json_output, level=config.level, stream=stream)


def get_logger(name: str = _ROOT_LOGGER) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger for the given name."""
    return structlog.get_logger(name)


@contextmanager
def operation_context(operation: str, **fields: object) -> Iterator[None]:
    """Bind ``operation`` (and any extra fields) to every log line in the block."""
    tokens = structlog.contextvars.bind_contextvars(operation=operation, **fields)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
