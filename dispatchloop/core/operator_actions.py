"""Manual interventions on dispatches (retry, escalate, cancel, stats)."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from structlog import get_logger

from dispatchloop.constants import STUCK_REASON_MAX_CHARS
from dispatchloop.core.dispatch_state import (
    ActiveDispatch,
    DispatchNotFoundError,
    DispatchSnapshot,
    DispatchStateStore,
    DispatchUpdates,
    TransitionConflictError,
)
from dispatchloop.utils import truncate

logger = get_logger(__name__)


class OperatorActionError(RuntimeError):
    """Raised when an operator action does not apply to the dispatch."""


@dataclass(frozen=True)
class DispatchStats:
    active: int
    completed: int
    by_status: dict[str, int] = field(default_factory=dict)
    by_tier: dict[str, int] = field(default_factory=dict)


def retry_dispatch(store: DispatchStateStore, identifier: str) -> ActiveDispatch:
    """Reset a stuck dispatch to ``dispatched`` with the next attempt number.

    The caller hands the returned dispatch to ``DispatchPipeline.spawn_worker``.
    """
    try:
        reset = store.retry_stuck(identifier)
    except DispatchNotFoundError as exc:
        raise OperatorActionError(f"No active dispatch for {identifier}") from exc
    except TransitionConflictError as exc:
        raise OperatorActionError(f"Only stuck dispatches can be retried ({identifier} is {exc.actual})") from exc
    logger.info("Dispatch reset for retry", identifier=identifier, attempt=reset.attempt)
    return reset


def escalate_dispatch(store: DispatchStateStore, identifier: str, reason: str) -> ActiveDispatch:
    """Move an in-flight dispatch to ``stuck`` for human review."""
    reason = truncate(reason.strip(), STUCK_REASON_MAX_CHARS)
    if not reason:
        raise OperatorActionError("An escalation reason is required")
    current = store.read().active.get(identifier)
    if current is None:
        raise OperatorActionError(f"No active dispatch for {identifier}")
    if current.status not in ("working", "auditing"):
        raise OperatorActionError(
            f"Only working or auditing dispatches can be escalated ({identifier} is {current.status})"
        )
    try:
        escalated = store.transition(identifier, current.status, "stuck", DispatchUpdates(stuck_reason=reason))
    except (TransitionConflictError, DispatchNotFoundError) as exc:
        raise OperatorActionError(f"Dispatch {identifier} changed while escalating: {exc}") from exc
    logger.info("Dispatch escalated", identifier=identifier, reason=reason)
    return escalated


def cancel_dispatch(store: DispatchStateStore, identifier: str) -> ActiveDispatch:
    removed = store.remove_dispatch(identifier)
    if removed is None:
        raise OperatorActionError(f"No active dispatch for {identifier}")
    logger.info("Dispatch cancelled", identifier=identifier, status=removed.status)
    return removed


def dispatch_stats(snapshot: DispatchSnapshot) -> DispatchStats:
    active = list(snapshot.active.values())
    return DispatchStats(
        active=len(active),
        completed=len(snapshot.completed),
        by_status=dict(Counter(d.status for d in active)),
        by_tier=dict(Counter(d.tier for d in active)),
    )
