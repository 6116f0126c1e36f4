"""Logging setup shared by the CLI and the local API.

Library modules log through plain `logging.getLogger(...)` with
`extra={...}` fields; the handler installed here renders each record as
one JSON object per line via structlog's ProcessorFormatter.
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import Processor

_HANDLER_MARK = "_evault_handler"

# Applied to every stdlib record before rendering.
_PRE_CHAIN: list[Processor] = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def json_formatter() -> structlog.stdlib.ProcessorFormatter:
    """Formatter producing `{"event": ..., "level": ..., "logger": ..., **extra}`."""

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_PRE_CHAIN,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(default=str),
        ],
    )


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stderr JSON handler to the `evault` logger tree."""

    root = logging.getLogger("evault")
    root.setLevel(level.upper())
    if not any(getattr(h, _HANDLER_MARK, False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(json_formatter())
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)
    return root
