"""Dispatch pipeline: worker run, independent audit, bounded rework.

Phases hand off directly (``spawn_worker`` awaits the worker and calls
``trigger_audit``, which awaits the audit and calls ``process_verdict``).
``handle_run_completion`` is the out-of-band entry point for executors that
report completions separately. Both paths go through the same handlers, which
drop completions for an attempt the dispatch has moved past and are idempotent
through the processed-event ledger and CAS transitions. An unexpected error in
a phase escalates the dispatch to ``stuck`` instead of leaving it in flight.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from structlog import get_logger

from dispatchloop.config import resolve_prompts_path, resolve_state_path
from dispatchloop.config.schema import NotifyTargetConfig, PipelineConfig
from dispatchloop.constants import (
    DEFAULT_AUDIT_TIMEOUT_MS,
    DEFAULT_EXECUTION_PROFILE,
    DEFAULT_MAX_REWORK_ATTEMPTS,
    DEFAULT_WORKER_TIMEOUT_MS,
    STUCK_REASON_MAX_CHARS,
    WATCHDOG_STUCK_REASON,
)
from dispatchloop.core import artifacts
from dispatchloop.core.diagnostics import emit_diagnostic
from dispatchloop.core.dispatch_state import (
    ActiveDispatch,
    DispatchNotFoundError,
    DispatchStateError,
    DispatchStateStore,
    DispatchStatus,
    DispatchUpdates,
    InvalidTransitionError,
    SessionMapping,
    StaleAttemptError,
    TransitionConflictError,
    get_active_dispatch,
    lookup_session,
)
from dispatchloop.core.prompts import PromptCompiler, build_project_context
from dispatchloop.core.protocols import IssueDetails, IssueTracker, RunExecutor, RunRequest, RunResult, RunRole
from dispatchloop.core.verdict import (
    AuditVerdict,
    JsonVerdictParser,
    VerdictParser,
    extract_audit_output,
    unparseable_verdict,
)
from dispatchloop.notifications.factory import SinkFactory, create_notifier
from dispatchloop.notifications.notifier import LoggingSink, Notifier, NotifyKind, NotifyPayload
from dispatchloop.utils import truncate

logger = get_logger(__name__)


@dataclass(frozen=True)
class PipelineSettings:
    max_rework_attempts: int = DEFAULT_MAX_REWORK_ATTEMPTS
    execution_profile: str = DEFAULT_EXECUTION_PROFILE
    worker_timeout_ms: int = DEFAULT_WORKER_TIMEOUT_MS
    audit_timeout_ms: int = DEFAULT_AUDIT_TIMEOUT_MS
    write_artifacts: bool = True

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "PipelineSettings":
        return cls(
            max_rework_attempts=config.max_rework_attempts,
            execution_profile=config.execution_profile,
            worker_timeout_ms=config.worker_timeout_ms,
            audit_timeout_ms=config.audit_timeout_ms,
        )


@dataclass
class PipelineContext:
    """Collaborators the pipeline drives."""

    store: DispatchStateStore
    executor: RunExecutor
    tracker: IssueTracker
    notifier: Notifier
    prompts: PromptCompiler
    verdict_parser: VerdictParser = field(default_factory=JsonVerdictParser)
    settings: PipelineSettings = field(default_factory=PipelineSettings)


def worker_run_key(dispatch: ActiveDispatch) -> str:
    return f"worker-{dispatch.issue_identifier}-{dispatch.attempt}"


def audit_run_key(dispatch: ActiveDispatch) -> str:
    return f"audit-{dispatch.issue_identifier}-{dispatch.attempt}"


def _logging_sink(target: NotifyTargetConfig) -> LoggingSink:
    return LoggingSink(f"{target.channel}:{target.target}")


def create_pipeline(
    config: PipelineConfig,
    *,
    executor: RunExecutor,
    tracker: IssueTracker,
    sink_factory: Optional[SinkFactory] = None,
    verdict_parser: Optional[VerdictParser] = None,
) -> DispatchPipeline:
    """Build a pipeline and its store, prompt compiler and notifier from configuration.

    Without a ``sink_factory`` every configured notification target logs its
    messages instead of delivering them.
    """
    store = DispatchStateStore(
        state_path=resolve_state_path(config),
        lock_retry_seconds=config.lock.retry_ms / 1000,
        lock_wait_seconds=config.lock.timeout_ms / 1000,
        lock_stale_seconds=config.lock.stale_ms / 1000,
    )
    prompts = PromptCompiler(
        prompts_path=resolve_prompts_path(config),
        workspace_prompts_relpath=config.workspace_prompts_path,
        project_context=build_project_context(config.project_name, config.repos),
    )
    context = PipelineContext(
        store=store,
        executor=executor,
        tracker=tracker,
        notifier=create_notifier(config.notifications, sink_factory or _logging_sink),
        prompts=prompts,
        verdict_parser=verdict_parser or JsonVerdictParser(),
        settings=PipelineSettings.from_config(config),
    )
    logger.info(
        "Dispatch pipeline configured",
        state_path=str(store.state_path),
        max_rework_attempts=context.settings.max_rework_attempts,
        notify_targets=len(config.notifications.targets),
    )
    return DispatchPipeline(context)


class DispatchPipeline:
    """Drives dispatches through worker, audit, and verdict phases."""

    def __init__(self, context: PipelineContext) -> None:
        self._ctx = context
        self._store = context.store
        self._settings = context.settings

    @property
    def store(self) -> DispatchStateStore:
        return self._store

    async def start_dispatch(self, dispatch: ActiveDispatch) -> None:
        """Register a new ``dispatched`` dispatch and run its first worker."""
        registered = await asyncio.to_thread(self._store.register_dispatch, dispatch)
        logger.info("Dispatch registered", identifier=registered.issue_identifier, tier=registered.tier)
        emit_diagnostic(
            "dispatch_started",
            identifier=registered.issue_identifier,
            issue_id=registered.issue_id,
            tier=registered.tier,
        )
        self._record_artifact(
            registered,
            artifacts.write_manifest,
            artifacts.ArtifactManifest(
                issue_identifier=registered.issue_identifier,
                issue_title=registered.issue_title or registered.issue_identifier,
                issue_id=registered.issue_id,
                tier=registered.tier,
                model=registered.model,
                dispatched_at=registered.dispatched_at,
                worktree_path=registered.worktree_path,
                branch=registered.branch,
                attempts=registered.attempt,
                status=registered.status,
            ),
        )
        await self._notify(
            "dispatch",
            NotifyPayload(
                identifier=registered.issue_identifier,
                title=registered.issue_title or registered.issue_identifier,
                status=registered.status,
                attempt=registered.attempt,
            ),
        )
        await self.spawn_worker(registered)

    async def spawn_worker(self, dispatch: ActiveDispatch, rework_gaps: Sequence[str] = ()) -> None:
        """Run the worker for the dispatch's current attempt, then hand off to the audit."""
        await self._guarded(dispatch, self._spawn_worker(dispatch, rework_gaps))

    async def trigger_audit(self, dispatch: ActiveDispatch, worker_result: RunResult, run_key: str) -> None:
        """Move ``working -> auditing`` and run the independent audit.

        ``dispatch.attempt`` is the attempt the worker run belonged to.
        """
        await self._guarded(dispatch, self._trigger_audit(dispatch, worker_result, run_key))

    async def process_verdict(self, dispatch: ActiveDispatch, audit_result: RunResult, run_key: str) -> None:
        """Judge the audit output and complete, rework, or escalate.

        ``dispatch.attempt`` is the attempt the audit run belonged to.
        """
        await self._guarded(dispatch, self._process_verdict(dispatch, audit_result, run_key))

    async def handle_run_completion(self, run_key: str, result: RunResult) -> None:
        """Route an out-of-band run completion to the phase handler it belongs to."""
        snapshot = await asyncio.to_thread(self._store.read)
        mapping = lookup_session(snapshot, run_key)
        if mapping is None:
            logger.debug("Completion for unknown run key, ignoring", run_key=run_key)
            return

        dispatch = get_active_dispatch(snapshot, mapping.dispatch_id)
        if dispatch is None or dispatch.is_terminal:
            logger.debug("Completion for inactive dispatch, ignoring", run_key=run_key, identifier=mapping.dispatch_id)
            return
        if mapping.attempt != dispatch.attempt:
            logger.warning(
                "Stale completion, ignoring",
                identifier=dispatch.issue_identifier,
                run_key=run_key,
                event_attempt=mapping.attempt,
                current_attempt=dispatch.attempt,
            )
            return

        if mapping.phase == "worker":
            if result.watchdog_killed:
                await self._guarded(dispatch, self._watchdog_completion(dispatch))
            else:
                await self._guarded(dispatch, self._trigger_audit(dispatch, result, run_key))
        else:
            await self._guarded(dispatch, self._process_verdict(dispatch, result, run_key))

    async def _spawn_worker(self, dispatch: ActiveDispatch, rework_gaps: Sequence[str]) -> None:
        ident = dispatch.issue_identifier
        run_key = worker_run_key(dispatch)

        if not await self._mark_event(f"worker-start:{run_key}"):
            logger.info("Duplicate worker start, skipping", identifier=ident, run_key=run_key)
            return

        if dispatch.status == "dispatched":
            started = await self._transition(dispatch, "dispatched", "working")
            if started is None:
                return
            dispatch = started
            emit_diagnostic("phase_transition", identifier=ident, from_status="dispatched", to_status="working")
        elif dispatch.status != "working":
            logger.warning("Dispatch not startable, skipping worker", identifier=ident, status=dispatch.status)
            return

        issue = await self._issue_context(dispatch)
        prompt = self._ctx.prompts.build_worker_prompt(
            issue,
            dispatch.worktree_path,
            attempt=dispatch.attempt,
            gaps=rework_gaps,
            guidance=issue.guidance,
            tier=dispatch.tier,
        )
        await asyncio.to_thread(
            self._store.register_session,
            run_key,
            SessionMapping(dispatch_id=ident, phase="worker", attempt=dispatch.attempt),
        )
        await self._notify(
            "working",
            NotifyPayload(identifier=ident, title=issue.title, status="working", attempt=dispatch.attempt),
        )

        logger.info("Spawning worker", identifier=ident, run_key=run_key, attempt=dispatch.attempt)
        started_at = time.monotonic()
        result = await self._execute("worker", prompt.text, self._settings.worker_timeout_ms, run_key, dispatch)
        elapsed_ms = int((time.monotonic() - started_at) * 1000)

        self._record_artifact(dispatch, artifacts.save_worker_output, dispatch.attempt, result.output_text)
        self._record_artifact(
            dispatch,
            artifacts.append_log,
            artifacts.LogEntry(
                phase="worker",
                attempt=dispatch.attempt,
                agent=self._profile(dispatch),
                prompt=prompt.task,
                output_preview=result.output_text,
                success=result.success,
                duration_ms=elapsed_ms,
            ),
        )

        if result.watchdog_killed:
            await self._handle_watchdog_kill(dispatch, issue, elapsed_ms)
            return

        logger.info(
            "Worker completed, triggering audit",
            identifier=ident,
            success=result.success,
            output_chars=len(result.output_text),
        )
        await self._trigger_audit(dispatch, result, run_key)

    async def _trigger_audit(self, dispatch: ActiveDispatch, worker_result: RunResult, run_key: str) -> None:
        ident = dispatch.issue_identifier
        current = await self._current_dispatch(dispatch, run_key)
        if current is None:
            return
        if not await self._mark_event(f"worker-end:{run_key}"):
            logger.info("Duplicate worker completion, skipping", identifier=ident, run_key=run_key)
            return

        auditing = await self._transition(current, "working", "auditing")
        if auditing is None:
            return

        logger.info(
            "Worker finished, auditing",
            identifier=ident,
            attempt=auditing.attempt,
            worker_success=worker_result.success,
        )
        emit_diagnostic(
            "phase_transition",
            identifier=ident,
            from_status="working",
            to_status="auditing",
            attempt=auditing.attempt,
        )
        self._record_artifact(auditing, artifacts.update_manifest, status="auditing", attempts=auditing.attempt)

        issue = await self._issue_context(auditing)
        prompt = self._ctx.prompts.build_audit_prompt(
            issue,
            auditing.worktree_path,
            guidance=issue.guidance,
            tier=auditing.tier,
        )
        audit_key = audit_run_key(auditing)
        await asyncio.to_thread(
            self._store.register_session,
            audit_key,
            SessionMapping(dispatch_id=ident, phase="audit", attempt=auditing.attempt),
        )
        await self._notify(
            "auditing",
            NotifyPayload(identifier=ident, title=issue.title, status="auditing", attempt=auditing.attempt),
        )
        emit_diagnostic("audit_triggered", identifier=ident, run_key=audit_key, attempt=auditing.attempt)

        logger.info("Spawning audit", identifier=ident, run_key=audit_key)
        result = await self._execute("audit", prompt.text, self._settings.audit_timeout_ms, audit_key, auditing)
        await self._process_verdict(auditing, result, audit_key)

    async def _process_verdict(self, dispatch: ActiveDispatch, audit_result: RunResult, run_key: str) -> None:
        ident = dispatch.issue_identifier
        current = await self._current_dispatch(dispatch, run_key)
        if current is None:
            return
        if not await self._mark_event(f"audit-end:{run_key}"):
            logger.info("Duplicate audit completion, skipping", identifier=ident, run_key=run_key)
            return

        output = extract_audit_output(audit_result)
        self._record_artifact(
            current,
            artifacts.append_log,
            artifacts.LogEntry(
                phase="audit",
                attempt=current.attempt,
                agent="auditor",
                prompt="(audit task)",
                output_preview=output,
                success=audit_result.success,
            ),
        )

        verdict = self._ctx.verdict_parser.parse(output)
        if verdict is None:
            logger.warning("Could not parse audit verdict", identifier=ident, output_chars=len(output))
            await self._comment(
                current,
                "## Audit Inconclusive\n\n"
                "The auditor's response couldn't be parsed as a verdict. It counts as a failed audit "
                "and the normal rework budget applies.\n\n"
                "**If it keeps happening:** check the audit prompt templates.",
            )
            verdict = unparseable_verdict()
        elif not audit_result.success:
            # The verdict is judged on its content even when the run reported failure.
            logger.info("Audit run reported failure, judging parsed verdict", identifier=ident)

        logger.info(
            "Audit verdict",
            identifier=ident,
            passed=verdict.passed,
            criteria=len(verdict.criteria),
            gaps=len(verdict.gaps),
        )
        if verdict.passed:
            await self._handle_audit_pass(current, verdict)
        else:
            await self._handle_audit_fail(current, verdict)

    async def _handle_audit_pass(self, dispatch: ActiveDispatch, verdict: AuditVerdict) -> None:
        ident = dispatch.issue_identifier
        self._record_artifact(dispatch, artifacts.save_audit_verdict, dispatch.attempt, verdict)

        done = await self._transition(dispatch, "auditing", "done")
        if done is None:
            return
        record = await asyncio.to_thread(self._store.complete_dispatch, ident, status="done")
        self._record_artifact(dispatch, artifacts.update_manifest, status="done", attempts=record.total_attempts)

        criteria = "\n".join(f"- {item}" for item in verdict.criteria) or "- (none listed)"
        await self._comment(
            dispatch,
            "## Done\n\n"
            "This issue has been implemented and verified.\n\n"
            f"**What was checked:**\n{criteria}\n\n"
            f"**Test results:** {verdict.test_results or 'N/A'}\n\n"
            f"*Completed on attempt {record.total_attempts}.*\n\n"
            f"Review the code in `{dispatch.worktree_path}`.",
        )
        logger.info("Audit passed, dispatch completed", identifier=ident, total_attempts=record.total_attempts)
        emit_diagnostic(
            "verdict_processed",
            identifier=ident,
            outcome="done",
            attempt=dispatch.attempt,
            tier=dispatch.tier,
        )
        await self._notify(
            "audit_pass",
            NotifyPayload(identifier=ident, title=self._title(dispatch), status="done", attempt=dispatch.attempt),
        )

    async def _handle_audit_fail(self, dispatch: ActiveDispatch, verdict: AuditVerdict) -> None:
        ident = dispatch.issue_identifier
        max_rework = self._settings.max_rework_attempts
        next_attempt = dispatch.attempt + 1
        gaps_list = "\n".join(f"- {gap}" for gap in verdict.gaps) or "- (no gaps listed)"
        self._record_artifact(dispatch, artifacts.save_audit_verdict, dispatch.attempt, verdict)

        if next_attempt > max_rework:
            reason = f"audit_failed_{next_attempt}x"
            stuck = await self._transition(dispatch, "auditing", "stuck", DispatchUpdates(stuck_reason=reason))
            if stuck is None:
                return
            self._record_artifact(dispatch, artifacts.update_manifest, status="stuck", attempts=next_attempt)
            await self._comment(
                dispatch,
                "## Needs Your Help\n\n"
                f"All {next_attempt} attempts failed. The worker couldn't resolve these issues on its own.\n\n"
                f"**What went wrong:**\n{gaps_list}\n\n"
                f"**Test results:** {verdict.test_results or 'N/A'}\n\n"
                "**What you can do:**\n"
                "1. Clarify the issue description, then retry the dispatch\n"
                f"2. Fix it manually in `{dispatch.worktree_path}`\n"
                "3. Review worker output and audit verdicts under `.dispatch/`",
            )
            logger.warning("Audit failed, escalating to human", identifier=ident, attempts=next_attempt)
            emit_diagnostic("verdict_processed", identifier=ident, outcome="stuck", attempt=next_attempt)
            await self._notify(
                "escalation",
                NotifyPayload(
                    identifier=ident,
                    title=self._title(dispatch),
                    status="stuck",
                    attempt=next_attempt,
                    reason=f"audit failed {next_attempt}x",
                    gaps=verdict.gaps,
                ),
            )
            return

        reworking = await self._transition(dispatch, "auditing", "working", DispatchUpdates(attempt=next_attempt))
        if reworking is None:
            return
        remaining = max_rework - next_attempt
        await self._comment(
            dispatch,
            "## Needs More Work\n\n"
            "The audit found gaps. **Retrying now** with the feedback below as context.\n\n"
            f"**Attempt {next_attempt + 1} of {max_rework + 1}** ({remaining} more "
            f"{'retry' if remaining == 1 else 'retries'} if this fails too).\n\n"
            f"**What needs fixing:**\n{gaps_list}\n\n"
            f"**Test results:** {verdict.test_results or 'N/A'}",
        )
        logger.info("Audit failed, reworking", identifier=ident, attempt=next_attempt, max_rework=max_rework)
        emit_diagnostic(
            "phase_transition",
            identifier=ident,
            from_status="auditing",
            to_status="working",
            attempt=next_attempt,
        )
        await self._notify(
            "audit_fail",
            NotifyPayload(
                identifier=ident,
                title=self._title(dispatch),
                status="working",
                attempt=next_attempt,
                gaps=verdict.gaps,
            ),
        )
        await self._spawn_worker(reworking, verdict.gaps)

    async def _watchdog_completion(self, dispatch: ActiveDispatch) -> None:
        issue = await self._issue_context(dispatch)
        await self._handle_watchdog_kill(dispatch, issue, None)

    async def _handle_watchdog_kill(
        self, dispatch: ActiveDispatch, issue: IssueDetails, elapsed_ms: Optional[int]
    ) -> None:
        ident = dispatch.issue_identifier
        logger.warning("Worker killed by watchdog, marking stuck", identifier=ident, attempt=dispatch.attempt)
        emit_diagnostic(
            "watchdog_kill",
            identifier=ident,
            issue_id=dispatch.issue_id,
            attempt=dispatch.attempt,
            duration_ms=elapsed_ms,
        )
        stuck = await self._transition(
            dispatch, "working", "stuck", DispatchUpdates(stuck_reason=WATCHDOG_STUCK_REASON)
        )
        if stuck is None:
            return
        self._record_artifact(dispatch, artifacts.update_manifest, status="stuck", attempts=dispatch.attempt + 1)
        await self._comment(
            dispatch,
            "## Worker Timed Out\n\n"
            "The worker stopped making progress and was killed by the inactivity watchdog.\n\n"
            "**What you can do:**\n"
            "1. Retry the dispatch\n"
            "2. Split the issue into smaller pieces if it keeps timing out\n\n"
            f"**Logs:** `{dispatch.worktree_path}/.dispatch/log.jsonl`",
        )
        await self._notify(
            "watchdog_kill",
            NotifyPayload(
                identifier=ident,
                title=issue.title,
                status="stuck",
                attempt=dispatch.attempt,
                reason=WATCHDOG_STUCK_REASON,
            ),
        )

    async def _guarded(self, dispatch: ActiveDispatch, phase: Awaitable[None]) -> None:
        """Await a phase; an unexpected error escalates the dispatch instead of stranding it."""
        try:
            await phase
        except InvalidTransitionError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error(
                "Dispatch phase failed",
                identifier=dispatch.issue_identifier,
                attempt=dispatch.attempt,
                error=str(exc),
                exc_info=True,
            )
            await self._escalate_after_error(dispatch.issue_identifier, exc)

    async def _escalate_after_error(self, identifier: str, exc: Exception) -> None:
        reason = truncate(f"hook_error: {exc}", STUCK_REASON_MAX_CHARS)
        try:
            current = await asyncio.to_thread(self._load_dispatch, identifier)
            if current is None or current.is_terminal:
                return
            await asyncio.to_thread(
                self._store.transition,
                identifier,
                current.status,
                "stuck",
                DispatchUpdates(stuck_reason=reason),
            )
        except DispatchStateError as escalation_exc:
            logger.error("Failed to escalate dispatch after error", identifier=identifier, error=str(escalation_exc))
            return
        logger.warning("Dispatch escalated after handler error", identifier=identifier, reason=reason)

    async def _current_dispatch(self, dispatch: ActiveDispatch, run_key: str) -> Optional[ActiveDispatch]:
        """Stored dispatch if it is still active on ``dispatch.attempt``; otherwise the completion is dropped."""
        current = await asyncio.to_thread(self._load_dispatch, dispatch.issue_identifier)
        if current is None:
            logger.info(
                "Completion for inactive dispatch, ignoring",
                identifier=dispatch.issue_identifier,
                run_key=run_key,
            )
            return None
        if current.attempt != dispatch.attempt:
            logger.warning(
                "Stale completion, ignoring",
                identifier=dispatch.issue_identifier,
                run_key=run_key,
                event_attempt=dispatch.attempt,
                current_attempt=current.attempt,
            )
            return None
        return current

    async def _transition(
        self,
        dispatch: ActiveDispatch,
        from_status: DispatchStatus,
        to_status: DispatchStatus,
        updates: Optional[DispatchUpdates] = None,
    ) -> Optional[ActiveDispatch]:
        """CAS transition pinned to ``dispatch.attempt``; any conflict aborts the phase (returns None)."""
        try:
            return await asyncio.to_thread(
                self._store.transition,
                dispatch.issue_identifier,
                from_status,
                to_status,
                updates,
                expected_attempt=dispatch.attempt,
            )
        except TransitionConflictError as exc:
            logger.warning(
                "CAS transition conflict, aborting phase",
                identifier=dispatch.issue_identifier,
                expected=exc.expected,
                requested=exc.requested,
                actual=exc.actual,
            )
            return None
        except StaleAttemptError as exc:
            logger.warning(
                "Dispatch moved to a newer attempt, aborting phase",
                identifier=dispatch.issue_identifier,
                expected_attempt=exc.expected_attempt,
                actual_attempt=exc.actual_attempt,
                requested=to_status,
            )
            return None
        except DispatchNotFoundError:
            logger.warning(
                "Dispatch no longer active, aborting phase",
                identifier=dispatch.issue_identifier,
                requested=to_status,
            )
            return None

    async def _mark_event(self, event_key: str) -> bool:
        return await asyncio.to_thread(self._store.mark_event_processed, event_key)

    def _load_dispatch(self, identifier: str) -> Optional[ActiveDispatch]:
        return get_active_dispatch(self._store.read(), identifier)

    async def _issue_context(self, dispatch: ActiveDispatch) -> IssueDetails:
        """Fresh issue details; falls back to the identifier as title."""
        details: Optional[IssueDetails] = None
        try:
            details = await self._ctx.tracker.get_issue_details(dispatch.issue_id)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("Failed to fetch issue details", identifier=dispatch.issue_identifier, error=str(exc))
        if details is None:
            return IssueDetails(
                id=dispatch.issue_id,
                identifier=dispatch.issue_identifier,
                title=dispatch.issue_title or dispatch.issue_identifier,
            )
        return IssueDetails(
            id=dispatch.issue_id,
            identifier=dispatch.issue_identifier,
            title=details.title or dispatch.issue_identifier,
            description=details.description,
            guidance=details.guidance,
        )

    async def _execute(
        self,
        role: RunRole,
        prompt_text: str,
        timeout_ms: int,
        run_key: str,
        dispatch: ActiveDispatch,
    ) -> RunResult:
        request = RunRequest(
            role=role,
            prompt_text=prompt_text,
            timeout_ms=timeout_ms,
            run_key=run_key,
            execution_profile=self._profile(dispatch),
        )
        try:
            return await self._ctx.executor.execute(request)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error(
                "Run executor failed",
                identifier=dispatch.issue_identifier,
                role=role,
                run_key=run_key,
                error=str(exc),
            )
            return RunResult(success=False, output_text=f"{role} run failed: {exc}")

    async def _comment(self, dispatch: ActiveDispatch, body: str) -> None:
        try:
            await self._ctx.tracker.create_comment(dispatch.issue_id, body)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error("Failed to post issue comment", identifier=dispatch.issue_identifier, error=str(exc))

    async def _notify(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        try:
            await self._ctx.notifier.notify(kind, payload)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.error("Notification failed", kind=kind, identifier=payload.identifier, error=str(exc))
            emit_diagnostic("notify_failed", identifier=payload.identifier, kind=kind, error=str(exc))

    def _record_artifact(self, dispatch: ActiveDispatch, writer: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if not self._settings.write_artifacts or not dispatch.worktree_path:
            return
        try:
            writer(Path(dispatch.worktree_path), *args, **kwargs)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning(
                "Failed to write dispatch artifact",
                identifier=dispatch.issue_identifier,
                artifact=getattr(writer, "__name__", str(writer)),
                error=str(exc),
            )

    def _profile(self, dispatch: ActiveDispatch) -> str:
        return dispatch.model or self._settings.execution_profile

    @staticmethod
    def _title(dispatch: ActiveDispatch) -> str:
        return dispatch.issue_title or dispatch.issue_identifier
