"""Structured lifecycle telemetry for log aggregation."""

from __future__ import annotations

from typing import Literal

from structlog import get_logger

logger = get_logger(__name__)

DiagnosticEvent = Literal[
    "dispatch_started",
    "phase_transition",
    "audit_triggered",
    "verdict_processed",
    "watchdog_kill",
    "notify_failed",
    "health_check",
]


def emit_diagnostic(event: DiagnosticEvent, **fields: object) -> None:
    """Log one ``dispatch_diagnostic`` record; telemetry never raises."""
    try:
        logger.info("dispatch_diagnostic", diagnostic=event, **fields)
    except Exception:  # pylint: disable=broad-exception-caught
        return
