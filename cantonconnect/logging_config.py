"""
Logging setup for applications and the registry CLI.

The library itself never configures logging; it only emits. ``setup_logging``
is for the host process: JSON lines by default, a console renderer at DEBUG,
and stdlib records from ``cantonconnect.*`` routed through the same
structlog pipeline.
"""

import logging
import sys
from typing import IO, Any, MutableMapping, Optional

import structlog

from .config import settings

# Event keys whose values may hold session secrets or key material
REDACTED_KEYS = frozenset({
    "encrypted",
    "encryption_key",
    "metadata",
    "private_key",
    "secret",
    "token",
})
REDACTED = "[redacted]"


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor that masks values under REDACTED_KEYS."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(
    log_level: Optional[str] = None,
    json_logs: Optional[bool] = None,
    stream: Optional[IO[str]] = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Override level (default: settings.log_level)
        json_logs: Force JSON (True) or console (False) output; by default
            console output is used only at DEBUG
        stream: Output stream (default: stdout)
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    if json_logs is None:
        json_logs = level != logging.DEBUG

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]

    if json_logs:
        shared_processors.append(structlog.processors.format_exc_info)
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

    # foreign_pre_chain gives plain logging.getLogger records the same fields
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("cantonconnect").setLevel(level)
    for name in ("httpcore", "httpx"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
