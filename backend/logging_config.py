"""Logging setup for the CLI and for notebooks that want SCassist's events."""

from __future__ import annotations

import logging
import sys

import structlog

# Transport libraries log every request line at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str = "INFO", *, json_logs: bool = True) -> None:
    """Send stdlib and structlog records to stderr so results on stdout stay clean."""

    logging.basicConfig(level=level.upper(), format="%(levelname)s %(name)s %(message)s", stream=sys.stderr)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


__all__ = ["configure_logging"]
