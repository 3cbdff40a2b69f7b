"""dispatchloop logging configuration.

Modules log through ``structlog.get_logger(__name__)`` with short event
messages plus key-value context. ``setup_logging`` routes structlog through
the standard library so host applications keep control of handlers.

Environment:
    DISPATCHLOOP_LOG_LEVEL: default level (INFO).
    DISPATCHLOOP_LOG_JSON: set to 1 for JSON lines instead of console output.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import structlog


def setup_logging(level: Optional[str] = None) -> None:
    """Configure dispatchloop logging.

    Args:
        level: Optional override for `DISPATCHLOOP_LOG_LEVEL`.
    """
    if level:
        os.environ["DISPATCHLOOP_LOG_LEVEL"] = level

    resolved_level = os.getenv("DISPATCHLOOP_LOG_LEVEL", "INFO").upper()
    json_output = os.getenv("DISPATCHLOOP_LOG_JSON", "") == "1"

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=resolved_level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.getLogger("dispatchloop").setLevel(resolved_level)
