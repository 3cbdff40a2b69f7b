"""Lifecycle notifications: one formatter, config-driven fan-out to sinks."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal, Mapping, Optional, Protocol, Sequence

from structlog import get_logger

logger = get_logger(__name__)

NotifyKind = Literal[
    "dispatch",
    "working",
    "auditing",
    "audit_pass",
    "audit_fail",
    "escalation",
    "stuck",
    "watchdog_kill",
]
NOTIFY_KINDS: tuple[NotifyKind, ...] = (
    "dispatch",
    "working",
    "auditing",
    "audit_pass",
    "audit_fail",
    "escalation",
    "stuck",
    "watchdog_kill",
)


@dataclass(frozen=True)
class NotifyPayload:
    identifier: str
    title: str
    status: str
    attempt: Optional[int] = None
    reason: Optional[str] = None
    gaps: tuple[str, ...] = ()


def format_message(kind: NotifyKind, payload: NotifyPayload) -> str:
    """Render the human-readable line for a lifecycle event."""
    ident = payload.identifier
    attempt = payload.attempt if payload.attempt is not None else 0
    if kind == "dispatch":
        return f"{ident} dispatched: {payload.title}"
    if kind == "working":
        return f"{ident} worker started (attempt {attempt})"
    if kind == "auditing":
        return f"{ident} audit in progress"
    if kind == "audit_pass":
        return f"{ident} passed audit. Ready for review."
    if kind == "audit_fail":
        gaps = ", ".join(payload.gaps) if payload.gaps else "unspecified"
        return f"{ident} failed audit (attempt {attempt}). Gaps: {gaps}"
    if kind == "escalation":
        return f"{ident} needs human review: {payload.reason or 'audit failed repeatedly'}"
    if kind == "stuck":
        return f"{ident} stuck: {payload.reason or 'stale'}"
    if kind == "watchdog_kill":
        return f"{ident} killed by watchdog ({payload.reason or 'inactivity'}). Needs a manual retry."
    return f"{ident} {kind}: {payload.status}"


class Notifier(Protocol):
    async def notify(self, kind: NotifyKind, payload: NotifyPayload) -> None: ...


class NotifySink(Protocol):
    """Delivery transport for formatted messages (chat channel, webhook, ...)."""

    name: str

    async def send(self, message: str) -> None: ...


class LoggingSink:
    """Sink that writes each message to the log."""

    def __init__(self, name: str = "log") -> None:
        self.name = name

    async def send(self, message: str) -> None:
        logger.info("Dispatch notification", sink=self.name, message=message)


class NoopNotifier:
    async def notify(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        return None


class FanoutNotifier:
    """Send each enabled event to every sink; a failing sink never affects the others."""

    def __init__(self, sinks: Sequence[NotifySink], events: Optional[Mapping[str, bool]] = None) -> None:
        self._sinks = list(sinks)
        self._events = dict(events or {})

    def is_enabled(self, kind: NotifyKind) -> bool:
        # Events are on unless explicitly disabled.
        return self._events.get(kind, True)

    async def notify(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        if not self._sinks or not self.is_enabled(kind):
            return
        message = format_message(kind, payload)
        await asyncio.gather(*(self._send(sink, kind, payload.identifier, message) for sink in self._sinks))

    async def _send(self, sink: NotifySink, kind: NotifyKind, identifier: str, message: str) -> None:
        try:
            await sink.send(message)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error(
                "failed to deliver notification",
                sink=sink.name,
                kind=kind,
                identifier=identifier,
                error=str(exc),
            )
