"""Structured logging configuration using structlog.

Call configure_logging() once at startup (before any log calls).
Supports two output formats controlled by SPCFLOW_LOG_FORMAT:
  - "console" (default): colored, human-readable development output
  - "json": machine-parseable JSON lines for log aggregation

Every spcflow event carries a ``component`` key ("engine", "offload", ...)
taken from its logger name. The engine binds ``cycle`` and the offloader
binds ``request_id`` through structlog contextvars, so events logged while a
cycle or request is in flight can be correlated.
"""

import logging
import sys
from typing import Any

import structlog

PACKAGE = "spcflow"
DURATION_SUFFIX = "_ms"
DURATION_DIGITS = 3

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("concurrent.futures", "asyncio")


def add_component(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Add the spcflow subpackage an event came from.

    ``spcflow.core.engine.spc_engine`` becomes ``engine`` and
    ``spcflow.utils.statistics`` becomes ``utils``. Events from other
    packages are left alone.
    """
    name = event_dict.get("logger") or ""
    parts = name.split(".")
    if parts[0] != PACKAGE or len(parts) < 2:
        return event_dict
    component = parts[2] if parts[1] == "core" and len(parts) > 2 else parts[1]
    event_dict.setdefault("component", component)
    return event_dict


def round_durations(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Round float ``*_ms`` values to microseconds."""
    for key, value in event_dict.items():
        if key.endswith(DURATION_SUFFIX) and isinstance(value, float):
            event_dict[key] = round(value, DURATION_DIGITS)
    return event_dict


def build_processors() -> list[structlog.types.Processor]:
    """Processors shared by structlog events and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_component,
        round_durations,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(log_format: str = "console", log_level: str = "INFO") -> None:
    """Configure structlog and stdlib logging integration.

    Args:
        log_format: "console" for dev-friendly output, "json" for production.
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR). Unknown
            names fall back to INFO.
    """
    shared_processors = build_processors()
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Pool machinery logs through stdlib; give its records the same keys
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_from_settings() -> None:
    """Configure logging from the cached SPCFLOW_ settings."""
    from spcflow.core.config import get_settings

    settings = get_settings()
    configure_logging(settings.log_format, settings.log_level)
