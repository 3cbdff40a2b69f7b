"""File-backed dispatch state with compare-and-swap transitions.

One JSON document per installation holds the active and completed dispatches,
the run-key to dispatch session map, and a bounded ledger of processed event
keys. Every mutation runs as lock, read, mutate, atomic write, unlock.
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Literal, NotRequired, TypedDict, TypeVar, cast

from structlog import get_logger

from dispatchloop.constants import (
    LOCK_RETRY_SECONDS,
    LOCK_STALE_SECONDS,
    LOCK_WAIT_SECONDS,
    MAX_PROCESSED_EVENTS,
    STATE_VERSION,
)
from dispatchloop.core.file_lock import FileLock
from dispatchloop.utils import format_iso8601, parse_iso8601, utc_now

logger = get_logger(__name__)

T = TypeVar("T")

DispatchStatus = Literal["dispatched", "working", "auditing", "done", "failed", "stuck"]
CompletedStatus = Literal["done", "failed"]
Tier = Literal["small", "medium", "high"]
SessionPhase = Literal["worker", "audit"]

TERMINAL_STATUSES: frozenset[DispatchStatus] = frozenset({"done", "failed", "stuck"})
_ALLOWED_STATUS_TRANSITIONS: dict[DispatchStatus, frozenset[DispatchStatus]] = {
    "dispatched": frozenset({"working", "failed", "stuck"}),
    "working": frozenset({"auditing", "failed", "stuck"}),
    # auditing -> working is rework; it differs from the first run only by attempt > 0
    "auditing": frozenset({"done", "working", "stuck"}),
    "done": frozenset(),
    "failed": frozenset(),
    "stuck": frozenset(),
}
_RETIRED_STATUS_NAMES: dict[str, DispatchStatus] = {"running": "working"}
_KNOWN_STATUSES = frozenset(_ALLOWED_STATUS_TRANSITIONS)


class DispatchStateError(RuntimeError):
    """Raised when dispatch state cannot be read or updated safely."""


class DispatchNotFoundError(DispatchStateError):
    """Raised when an operation names a dispatch that is not active."""


class InvalidTransitionError(DispatchStateError):
    """Raised for edges outside the transition graph or invariant-breaking updates."""


class TransitionConflictError(DispatchStateError):
    """Raised when the dispatch is not in the expected status (CAS miss)."""

    def __init__(
        self,
        dispatch_id: str,
        expected: DispatchStatus,
        requested: DispatchStatus,
        actual: DispatchStatus,
    ) -> None:
        super().__init__(
            f"CAS transition failed for {dispatch_id}: expected {expected} -> {requested}, "
            f"but current status is {actual}"
        )
        self.dispatch_id = dispatch_id
        self.expected = expected
        self.requested = requested
        self.actual = actual


class StaleAttemptError(DispatchStateError):
    """Raised when the dispatch has moved past the attempt the caller acted on."""

    def __init__(self, dispatch_id: str, expected_attempt: int, actual_attempt: int) -> None:
        super().__init__(
            f"CAS transition failed for {dispatch_id}: expected attempt {expected_attempt}, "
            f"but current attempt is {actual_attempt}"
        )
        self.dispatch_id = dispatch_id
        self.expected_attempt = expected_attempt
        self.actual_attempt = actual_attempt


@dataclass(frozen=True)
class ActiveDispatch:
    """Tracked unit of work for one issue, keyed by ``issue_identifier``."""

    issue_id: str
    issue_identifier: str
    worktree_path: str
    branch: str
    tier: Tier
    model: str
    status: DispatchStatus
    dispatched_at: str
    attempt: int = 0
    worker_session_key: str | None = None
    audit_session_key: str | None = None
    stuck_reason: str | None = None
    issue_title: str | None = None
    project: str | None = None
    agent_session_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class CompletedDispatch:
    """Record kept after a dispatch leaves the active set."""

    issue_identifier: str
    tier: Tier
    status: CompletedStatus
    completed_at: str
    total_attempts: int
    pr_url: str | None = None
    project: str | None = None


@dataclass(frozen=True)
class SessionMapping:
    """Routes a run key back to its dispatch, phase, and attempt."""

    dispatch_id: str
    phase: SessionPhase
    attempt: int


@dataclass(frozen=True)
class DispatchUpdates:
    """Field updates applied together with a status transition."""

    worker_session_key: str | None = None
    audit_session_key: str | None = None
    stuck_reason: str | None = None
    attempt: int | None = None


@dataclass
class DispatchSnapshot:
    """Whole persisted state, read and written as one unit."""

    active: dict[str, ActiveDispatch] = field(default_factory=dict)
    completed: dict[str, CompletedDispatch] = field(default_factory=dict)
    session_map: dict[str, SessionMapping] = field(default_factory=dict)
    processed_events: list[str] = field(default_factory=list)
    version: int = STATE_VERSION


class _ActivePayload(TypedDict):
    issueId: str
    issueIdentifier: str
    worktreePath: str
    branch: str
    tier: Tier
    model: str
    status: DispatchStatus
    dispatchedAt: str
    attempt: int
    workerSessionKey: NotRequired[str]
    auditSessionKey: NotRequired[str]
    stuckReason: NotRequired[str]
    issueTitle: NotRequired[str]
    project: NotRequired[str]
    agentSessionId: NotRequired[str]


class _CompletedPayload(TypedDict):
    issueIdentifier: str
    tier: Tier
    status: CompletedStatus
    completedAt: str
    totalAttempts: int
    prUrl: NotRequired[str]
    project: NotRequired[str]


class _SessionPayload(TypedDict):
    dispatchId: str
    phase: SessionPhase
    attempt: int


class _DispatchesPayload(TypedDict):
    active: dict[str, _ActivePayload]
    completed: dict[str, _CompletedPayload]


class _StatePayload(TypedDict):
    version: int
    dispatches: _DispatchesPayload
    sessionMap: dict[str, _SessionPayload]
    processedEvents: list[str]


class DispatchStateStore:
    """Single-writer dispatch store backed by one JSON file and a lock sentinel."""

    def __init__(
        self,
        *,
        state_path: Path,
        lock_retry_seconds: float = LOCK_RETRY_SECONDS,
        lock_wait_seconds: float = LOCK_WAIT_SECONDS,
        lock_stale_seconds: float = LOCK_STALE_SECONDS,
        max_processed_events: int = MAX_PROCESSED_EVENTS,
    ) -> None:
        if max_processed_events < 1:
            raise ValueError("max_processed_events must be >= 1")
        self._state_path = state_path
        self._lock = FileLock(
            state_path,
            retry_seconds=lock_retry_seconds,
            wait_seconds=lock_wait_seconds,
            stale_seconds=lock_stale_seconds,
        )
        self._max_processed_events = max_processed_events

    @property
    def state_path(self) -> Path:
        """Return durable dispatch state path."""
        return self._state_path

    @property
    def lock_path(self) -> Path:
        return self._lock.lock_path

    def read(self) -> DispatchSnapshot:
        """Load the current snapshot; a missing file yields an empty one."""
        try:
            raw_text = self._state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return DispatchSnapshot()
        if not raw_text.strip():
            return DispatchSnapshot()

        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            quarantine = self._state_path.with_name(f"{self._state_path.name}.corrupted.{int(time.time() * 1000)}")
            logger.error(
                "Dispatch state corrupted, starting fresh",
                path=str(self._state_path),
                quarantine=str(quarantine),
                error=str(exc),
            )
            try:
                os.replace(self._state_path, quarantine)
            except OSError as rename_exc:
                logger.warning("Could not quarantine corrupted state", error=str(rename_exc))
            return DispatchSnapshot()

        if not isinstance(payload, dict):
            raise DispatchStateError(f"invalid dispatch state payload type: expected object at {self._state_path}")
        return _snapshot_from_payload(_migrate_payload(payload))

    def write(self, snapshot: DispatchSnapshot) -> None:
        """Replace the persisted snapshot atomically."""
        with self._lock.hold():
            self._write_unlocked(snapshot)

    def register_dispatch(self, dispatch: ActiveDispatch, *, replace_existing: bool = False) -> ActiveDispatch:
        """Add a dispatch to the active set."""

        def _mutate(snapshot: DispatchSnapshot) -> ActiveDispatch:
            if dispatch.issue_identifier in snapshot.active and not replace_existing:
                raise DispatchStateError(f"dispatch already active for {dispatch.issue_identifier}")
            if dispatch.attempt < 0:
                raise InvalidTransitionError("attempt must be >= 0")
            snapshot.active[dispatch.issue_identifier] = dispatch
            return dispatch

        return self._mutate(_mutate)

    def complete_dispatch(
        self,
        issue_identifier: str,
        *,
        status: CompletedStatus = "done",
        pr_url: str | None = None,
        now: datetime | None = None,
    ) -> CompletedDispatch:
        """Move a dispatch from the active set to the completed records."""

        def _mutate(snapshot: DispatchSnapshot) -> CompletedDispatch:
            active = snapshot.active.pop(issue_identifier, None)
            if active is None:
                raise DispatchNotFoundError(f"No active dispatch for {issue_identifier}")
            _drop_session_mappings(snapshot, issue_identifier)
            record = CompletedDispatch(
                issue_identifier=issue_identifier,
                tier=active.tier,
                status=status,
                completed_at=format_iso8601(now or utc_now()),
                total_attempts=active.attempt + 1,
                pr_url=pr_url,
                project=active.project,
            )
            snapshot.completed[issue_identifier] = record
            return record

        return self._mutate(_mutate)

    def remove_dispatch(self, issue_identifier: str) -> ActiveDispatch | None:
        """Drop an active dispatch and its session mappings (operator action)."""

        def _mutate(snapshot: DispatchSnapshot) -> ActiveDispatch | None:
            removed = snapshot.active.pop(issue_identifier, None)
            _drop_session_mappings(snapshot, issue_identifier)
            return removed

        return self._mutate(_mutate)

    def transition(
        self,
        issue_identifier: str,
        from_status: DispatchStatus,
        to_status: DispatchStatus,
        updates: DispatchUpdates | None = None,
        *,
        expected_attempt: int | None = None,
    ) -> ActiveDispatch:
        """Apply ``from_status -> to_status`` only if the dispatch is still in ``from_status``.

        With ``expected_attempt`` the dispatch must also still be on that attempt.

        Raises:
            DispatchNotFoundError: no active dispatch with that identifier.
            TransitionConflictError: current status differs from ``from_status``.
            StaleAttemptError: current attempt differs from ``expected_attempt``.
            InvalidTransitionError: the edge is not in the graph or the updates break an invariant.
        """

        def _mutate(snapshot: DispatchSnapshot) -> ActiveDispatch:
            current = snapshot.active.get(issue_identifier)
            if current is None:
                raise DispatchNotFoundError(f"No active dispatch for {issue_identifier}")
            if current.status != from_status:
                raise TransitionConflictError(issue_identifier, from_status, to_status, current.status)
            if expected_attempt is not None and current.attempt != expected_attempt:
                raise StaleAttemptError(issue_identifier, expected_attempt, current.attempt)
            if to_status not in _ALLOWED_STATUS_TRANSITIONS[from_status]:
                raise InvalidTransitionError(f"Invalid transition: {from_status} -> {to_status}")

            updated = _apply_updates(replace(current, status=to_status), updates or DispatchUpdates())
            snapshot.active[issue_identifier] = updated
            return updated

        return self._mutate(_mutate)

    def register_session(self, run_key: str, mapping: SessionMapping) -> None:
        """Record a run key and stamp it on the owning dispatch in the same write."""

        def _mutate(snapshot: DispatchSnapshot) -> None:
            snapshot.session_map[run_key] = mapping
            owner = snapshot.active.get(mapping.dispatch_id)
            if owner is None:
                return
            if mapping.phase == "worker":
                snapshot.active[mapping.dispatch_id] = replace(owner, worker_session_key=run_key)
            else:
                snapshot.active[mapping.dispatch_id] = replace(owner, audit_session_key=run_key)

        self._mutate(_mutate)

    def remove_session(self, run_key: str) -> bool:
        def _mutate(snapshot: DispatchSnapshot) -> bool:
            return snapshot.session_map.pop(run_key, None) is not None

        return self._mutate(_mutate)

    def mark_event_processed(self, event_key: str) -> bool:
        """Record an event key; returns False when it was already processed."""

        def _mutate(snapshot: DispatchSnapshot) -> bool:
            if event_key in snapshot.processed_events:
                return False
            snapshot.processed_events.append(event_key)
            return True

        return self._mutate(_mutate)

    def retry_stuck(self, issue_identifier: str) -> ActiveDispatch:
        """Reset a stuck dispatch to ``dispatched`` with the next attempt number."""

        def _mutate(snapshot: DispatchSnapshot) -> ActiveDispatch:
            current = snapshot.active.get(issue_identifier)
            if current is None:
                raise DispatchNotFoundError(f"No active dispatch for {issue_identifier}")
            if current.status != "stuck":
                raise TransitionConflictError(issue_identifier, "stuck", "dispatched", current.status)
            _drop_session_mappings(snapshot, issue_identifier)
            reset = replace(
                current,
                status="dispatched",
                attempt=current.attempt + 1,
                stuck_reason=None,
                worker_session_key=None,
                audit_session_key=None,
            )
            snapshot.active[issue_identifier] = reset
            return reset

        return self._mutate(_mutate)

    def prune_completed(self, max_age: timedelta, *, now: datetime | None = None) -> int:
        """Delete completed records older than *max_age*; returns the count."""
        cutoff = (now or utc_now()) - max_age

        def _mutate(snapshot: DispatchSnapshot) -> int:
            expired = [
                key for key, record in snapshot.completed.items() if parse_iso8601(record.completed_at) < cutoff
            ]
            for key in expired:
                del snapshot.completed[key]
            return len(expired)

        return self._mutate(_mutate)

    def _mutate(self, mutation: Callable[[DispatchSnapshot], T]) -> T:
        with self._lock.hold():
            snapshot = self.read()
            result = mutation(snapshot)
            self._write_unlocked(snapshot)
            return result

    def _write_unlocked(self, snapshot: DispatchSnapshot) -> None:
        if len(snapshot.processed_events) > self._max_processed_events:
            snapshot.processed_events = snapshot.processed_events[-self._max_processed_events :]

        serialized = json.dumps(_snapshot_to_payload(snapshot), ensure_ascii=True, indent=2) + "\n"
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._state_path.with_suffix(f"{self._state_path.suffix}.tmp")

        with temp_path.open("w", encoding="utf-8") as file_handle:
            file_handle.write(serialized)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, self._state_path)


def get_active_dispatch(snapshot: DispatchSnapshot, issue_identifier: str) -> ActiveDispatch | None:
    return snapshot.active.get(issue_identifier)


def list_active_dispatches(snapshot: DispatchSnapshot) -> list[ActiveDispatch]:
    return list(snapshot.active.values())


def lookup_session(snapshot: DispatchSnapshot, run_key: str) -> SessionMapping | None:
    """Resolve a run key against an already-loaded snapshot (no I/O)."""
    return snapshot.session_map.get(run_key)


def list_stale_dispatches(
    snapshot: DispatchSnapshot,
    max_age: timedelta,
    *,
    now: datetime | None = None,
) -> list[ActiveDispatch]:
    """Active dispatches whose ``dispatched_at`` is older than *max_age*."""
    cutoff = (now or utc_now()) - max_age
    return [d for d in snapshot.active.values() if parse_iso8601(d.dispatched_at) < cutoff]


def list_recoverable_dispatches(snapshot: DispatchSnapshot) -> list[ActiveDispatch]:
    """Working dispatches whose worker ran but whose audit never started."""
    return [
        d
        for d in snapshot.active.values()
        if d.status == "working" and d.worker_session_key and not d.audit_session_key
    ]


def _apply_updates(dispatch: ActiveDispatch, updates: DispatchUpdates) -> ActiveDispatch:
    if updates.attempt is not None and updates.attempt < dispatch.attempt:
        raise InvalidTransitionError(
            f"attempt for {dispatch.issue_identifier} cannot decrease ({dispatch.attempt} -> {updates.attempt})"
        )
    if dispatch.status == "stuck" and not (updates.stuck_reason or dispatch.stuck_reason):
        raise InvalidTransitionError(f"transition to stuck for {dispatch.issue_identifier} requires a stuck_reason")
    if dispatch.status != "stuck" and updates.stuck_reason is not None:
        raise InvalidTransitionError(f"stuck_reason is only valid on a stuck dispatch ({dispatch.status})")

    changes: dict[str, object] = {}
    if updates.worker_session_key is not None:
        changes["worker_session_key"] = updates.worker_session_key
    if updates.audit_session_key is not None:
        changes["audit_session_key"] = updates.audit_session_key
    if updates.stuck_reason is not None:
        changes["stuck_reason"] = updates.stuck_reason
    if updates.attempt is not None:
        changes["attempt"] = updates.attempt
    return replace(dispatch, **changes)  # type: ignore[arg-type]


def _drop_session_mappings(snapshot: DispatchSnapshot, issue_identifier: str) -> None:
    for run_key in [key for key, value in snapshot.session_map.items() if value.dispatch_id == issue_identifier]:
        del snapshot.session_map[run_key]


def _migrate_payload(payload: dict[str, object]) -> dict[str, object]:
    """Upgrade any known on-disk version to the current one."""
    version = payload.get("version", 1)
    if version == STATE_VERSION:
        return payload
    if version != 1:
        raise DispatchStateError(f"Unknown dispatch state version: {version!r}")

    dispatches = payload.get("dispatches")
    if not isinstance(dispatches, dict):
        dispatches = {"active": {}, "completed": {}}
    active = dispatches.get("active")
    if isinstance(active, dict):
        for record in active.values():
            if isinstance(record, dict):
                record.setdefault("attempt", 0)
                status = record.get("status")
                if isinstance(status, str) and status in _RETIRED_STATUS_NAMES:
                    record["status"] = _RETIRED_STATUS_NAMES[status]

    migrated = dict(payload)
    migrated["dispatches"] = dispatches
    migrated.setdefault("sessionMap", {})
    migrated.setdefault("processedEvents", [])
    migrated["version"] = STATE_VERSION
    return migrated


def _snapshot_from_payload(payload: dict[str, object]) -> DispatchSnapshot:
    dispatches = payload.get("dispatches") or {}
    if not isinstance(dispatches, dict):
        raise DispatchStateError("dispatches must be an object")
    raw_active = dispatches.get("active") or {}
    raw_completed = dispatches.get("completed") or {}
    raw_sessions = payload.get("sessionMap") or {}
    raw_events = payload.get("processedEvents") or []
    if not isinstance(raw_active, dict) or not isinstance(raw_completed, dict):
        raise DispatchStateError("dispatches.active and dispatches.completed must be objects")
    if not isinstance(raw_sessions, dict):
        raise DispatchStateError("sessionMap must be an object")
    if not isinstance(raw_events, list):
        raise DispatchStateError("processedEvents must be a list")

    return DispatchSnapshot(
        active={key: _active_from_payload(key, value) for key, value in raw_active.items()},
        completed={key: _completed_from_payload(key, value) for key, value in raw_completed.items()},
        session_map={key: _session_from_payload(key, value) for key, value in raw_sessions.items()},
        processed_events=[str(item) for item in raw_events],
    )


def _active_from_payload(key: str, raw: object) -> ActiveDispatch:
    if not isinstance(raw, dict):
        raise DispatchStateError(f"active dispatch {key!r} must be an object")
    status = raw.get("status")
    if status in _RETIRED_STATUS_NAMES:
        status = _RETIRED_STATUS_NAMES[cast(str, status)]
    if status not in _KNOWN_STATUSES:
        raise DispatchStateError(f"active dispatch {key!r} has unknown status {status!r}")
    try:
        return ActiveDispatch(
            issue_id=str(raw["issueId"]),
            issue_identifier=str(raw.get("issueIdentifier", key)),
            worktree_path=str(raw.get("worktreePath", "")),
            branch=str(raw.get("branch", "")),
            tier=raw.get("tier", "small"),
            model=str(raw.get("model", "")),
            status=cast(DispatchStatus, status),
            dispatched_at=str(raw["dispatchedAt"]),
            attempt=int(raw.get("attempt", 0)),
            worker_session_key=raw.get("workerSessionKey"),
            audit_session_key=raw.get("auditSessionKey"),
            stuck_reason=raw.get("stuckReason"),
            issue_title=raw.get("issueTitle"),
            project=raw.get("project"),
            agent_session_id=raw.get("agentSessionId"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise DispatchStateError(f"active dispatch {key!r} is malformed: {exc}") from exc


def _completed_from_payload(key: str, raw: object) -> CompletedDispatch:
    if not isinstance(raw, dict):
        raise DispatchStateError(f"completed dispatch {key!r} must be an object")
    try:
        return CompletedDispatch(
            issue_identifier=str(raw.get("issueIdentifier", key)),
            tier=raw.get("tier", "small"),
            status=raw.get("status", "done"),
            completed_at=str(raw["completedAt"]),
            total_attempts=int(raw.get("totalAttempts", 0)),
            pr_url=raw.get("prUrl"),
            project=raw.get("project"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise DispatchStateError(f"completed dispatch {key!r} is malformed: {exc}") from exc


def _session_from_payload(key: str, raw: object) -> SessionMapping:
    if not isinstance(raw, dict):
        raise DispatchStateError(f"session mapping {key!r} must be an object")
    phase = raw.get("phase")
    if phase not in ("worker", "audit"):
        raise DispatchStateError(f"session mapping {key!r} has unknown phase {phase!r}")
    try:
        return SessionMapping(dispatch_id=str(raw["dispatchId"]), phase=phase, attempt=int(raw.get("attempt", 0)))
    except (KeyError, TypeError, ValueError) as exc:
        raise DispatchStateError(f"session mapping {key!r} is malformed: {exc}") from exc


def _snapshot_to_payload(snapshot: DispatchSnapshot) -> _StatePayload:
    return {
        "version": STATE_VERSION,
        "dispatches": {
            "active": {key: _active_to_payload(value) for key, value in sorted(snapshot.active.items())},
            "completed": {key: _completed_to_payload(value) for key, value in sorted(snapshot.completed.items())},
        },
        "sessionMap": {
            key: {"dispatchId": value.dispatch_id, "phase": value.phase, "attempt": value.attempt}
            for key, value in sorted(snapshot.session_map.items())
        },
        "processedEvents": list(snapshot.processed_events),
    }


def _active_to_payload(dispatch: ActiveDispatch) -> _ActivePayload:
    payload: _ActivePayload = {
        "issueId": dispatch.issue_id,
        "issueIdentifier": dispatch.issue_identifier,
        "worktreePath": dispatch.worktree_path,
        "branch": dispatch.branch,
        "tier": dispatch.tier,
        "model": dispatch.model,
        "status": dispatch.status,
        "dispatchedAt": dispatch.dispatched_at,
        "attempt": dispatch.attempt,
    }
    if dispatch.worker_session_key is not None:
        payload["workerSessionKey"] = dispatch.worker_session_key
    if dispatch.audit_session_key is not None:
        payload["auditSessionKey"] = dispatch.audit_session_key
    if dispatch.stuck_reason is not None:
        payload["stuckReason"] = dispatch.stuck_reason
    if dispatch.issue_title is not None:
        payload["issueTitle"] = dispatch.issue_title
    if dispatch.project is not None:
        payload["project"] = dispatch.project
    if dispatch.agent_session_id is not None:
        payload["agentSessionId"] = dispatch.agent_session_id
    return payload


def _completed_to_payload(record: CompletedDispatch) -> _CompletedPayload:
    payload: _CompletedPayload = {
        "issueIdentifier": record.issue_identifier,
        "tier": record.tier,
        "status": record.status,
        "completedAt": record.completed_at,
        "totalAttempts": record.total_attempts,
    }
    if record.pr_url is not None:
        payload["prUrl"] = record.pr_url
    if record.project is not None:
        payload["project"] = record.project
    return payload
