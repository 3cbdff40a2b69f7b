"""Background health monitor for the dispatch state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from structlog import get_logger

from dispatchloop.config.schema import MonitorConfig
from dispatchloop.constants import (
    MONITOR_COMPLETED_RETENTION_S,
    MONITOR_INTERVAL_S,
    MONITOR_STALE_AFTER_S,
    MONITOR_ZOMBIE_AFTER_S,
    ZOMBIE_STUCK_REASON,
)
from dispatchloop.core.diagnostics import emit_diagnostic
from dispatchloop.core.dispatch_state import (
    ActiveDispatch,
    DispatchNotFoundError,
    DispatchSnapshot,
    DispatchStateStore,
    DispatchUpdates,
    TransitionConflictError,
    list_recoverable_dispatches,
    list_stale_dispatches,
)
from dispatchloop.utils import parse_iso8601, utc_now

logger = get_logger(__name__)

# Returns True when the dispatch shows progress (e.g. recent commits in its workspace).
ActivityCheck = Callable[[ActiveDispatch], Awaitable[bool]]


@dataclass
class MonitorReport:
    active: int = 0
    recoverable: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    zombies: list[str] = field(default_factory=list)
    pruned: int = 0


class DispatchMonitor:
    """Periodic stale/zombie detection and completed-record pruning."""

    def __init__(
        self,
        store: DispatchStateStore,
        *,
        interval_s: float = MONITOR_INTERVAL_S,
        stale_after_s: float = MONITOR_STALE_AFTER_S,
        zombie_after_s: float = MONITOR_ZOMBIE_AFTER_S,
        completed_retention_s: float = MONITOR_COMPLETED_RETENTION_S,
        activity_check: Optional[ActivityCheck] = None,
    ) -> None:
        self._store = store
        self._interval_s = interval_s
        self._stale_after = timedelta(seconds=stale_after_s)
        self._zombie_after = timedelta(seconds=zombie_after_s)
        self._completed_retention = timedelta(seconds=completed_retention_s)
        self._activity_check = activity_check
        self._shutdown_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_config(
        cls,
        store: DispatchStateStore,
        config: MonitorConfig,
        activity_check: Optional[ActivityCheck] = None,
    ) -> "DispatchMonitor":
        return cls(
            store,
            interval_s=config.interval_s,
            stale_after_s=config.stale_after_s,
            zombie_after_s=config.zombie_after_s,
            completed_retention_s=config.completed_retention_s,
            activity_check=activity_check,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        recoverable = await self.recovery_scan()
        if recoverable:
            logger.warning("Dispatches need recovery, consider retrying them", count=len(recoverable))
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Dispatch monitor started", interval_s=self._interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._shutdown_event.set()
        await self._task
        self._task = None
        logger.info("Dispatch monitor stopped")

    async def recovery_scan(self) -> list[ActiveDispatch]:
        """Log working dispatches whose worker finished but whose audit never started."""
        snapshot = await asyncio.to_thread(self._store.read)
        recoverable = list_recoverable_dispatches(snapshot)
        for dispatch in recoverable:
            logger.warning(
                "Recoverable dispatch",
                identifier=dispatch.issue_identifier,
                status=dispatch.status,
                attempt=dispatch.attempt,
                worker_run_key=dispatch.worker_session_key,
            )
        return recoverable

    async def tick(self, now: Optional[datetime] = None) -> MonitorReport:
        now = now or utc_now()
        snapshot = await asyncio.to_thread(self._store.read)
        report = MonitorReport(active=len(snapshot.active))
        report.recoverable = [d.issue_identifier for d in list_recoverable_dispatches(snapshot)]

        stale = [d for d in list_stale_dispatches(snapshot, self._stale_after, now=now) if not d.is_terminal]
        for dispatch in stale:
            if await self._check_activity(dispatch):
                continue
            age_hours = round((now - parse_iso8601(dispatch.dispatched_at)).total_seconds() / 3600)
            logger.warning(
                "Stale dispatch, marking stuck",
                identifier=dispatch.issue_identifier,
                status=dispatch.status,
                dispatched_at=dispatch.dispatched_at,
            )
            if await self._mark_stuck(dispatch, f"stale_{age_hours}h"):
                report.stale.append(dispatch.issue_identifier)

        stale_ids = {d.issue_identifier for d in stale}
        for dispatch in self._zombie_candidates(snapshot, now):
            if dispatch.issue_identifier in stale_ids:
                continue
            logger.warning("Zombie dispatch, run mapping missing", identifier=dispatch.issue_identifier)
            emit_diagnostic(
                "health_check",
                identifier=dispatch.issue_identifier,
                phase=dispatch.status,
                error=ZOMBIE_STUCK_REASON,
            )
            if await self._mark_stuck(dispatch, ZOMBIE_STUCK_REASON):
                report.zombies.append(dispatch.issue_identifier)

        report.pruned = await asyncio.to_thread(self._store.prune_completed, self._completed_retention, now=now)
        if report.pruned:
            logger.info("Pruned completed dispatches", count=report.pruned)
        if report.active:
            logger.info("Monitor tick", active=report.active, stale=len(report.stale), zombies=len(report.zombies))
        return report

    def _zombie_candidates(self, snapshot: DispatchSnapshot, now: datetime) -> list[ActiveDispatch]:
        zombies: list[ActiveDispatch] = []
        for dispatch in snapshot.active.values():
            if dispatch.status == "working":
                run_key = dispatch.worker_session_key
            elif dispatch.status == "auditing":
                run_key = dispatch.audit_session_key
            else:
                continue
            if not run_key or run_key in snapshot.session_map:
                continue
            if now - parse_iso8601(dispatch.dispatched_at) > self._zombie_after:
                zombies.append(dispatch)
        return zombies

    async def _check_activity(self, dispatch: ActiveDispatch) -> bool:
        check = self._activity_check
        if check is None:
            return False
        try:
            return await check(dispatch)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("Activity check failed", identifier=dispatch.issue_identifier, error=str(exc))
            return False

    async def _mark_stuck(self, dispatch: ActiveDispatch, reason: str) -> bool:
        try:
            await asyncio.to_thread(
                self._store.transition,
                dispatch.issue_identifier,
                dispatch.status,
                "stuck",
                DispatchUpdates(stuck_reason=reason),
            )
        except (TransitionConflictError, DispatchNotFoundError) as exc:
            logger.info("Monitor transition skipped", identifier=dispatch.issue_identifier, error=str(exc))
            return False
        logger.info("Dispatch marked stuck", identifier=dispatch.issue_identifier, reason=reason)
        return True

    async def _loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval_s)
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break
            try:
                await self.tick()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.error("Monitor tick failed", error=str(exc))
