"""Pytest configuration and test doubles for dispatchloop tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

import pytest

from dispatchloop.core.dispatch_state import ActiveDispatch, DispatchStateStore
from dispatchloop.core.pipeline import DispatchPipeline, PipelineContext, PipelineSettings
from dispatchloop.core.prompts import PromptCompiler
from dispatchloop.core.protocols import IssueDetails, RunRequest, RunResult
from dispatchloop.notifications.notifier import NotifyKind, NotifyPayload

PASS_OUTPUT = 'All good.\n{"pass": true, "criteria": ["tests pass"], "gaps": [], "testResults": "12 passed"}'

ScriptedRun = Union[RunResult, Exception]


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))


def failing_audit(*gaps: str) -> RunResult:
    verdict = {"pass": False, "criteria": ["tests pass"], "gaps": list(gaps), "testResults": "1 failed"}
    return RunResult(success=True, output_text=f"Found problems.\n{json.dumps(verdict)}")


class FakeRunExecutor:
    """Returns scripted results per role and records every request."""

    def __init__(
        self,
        worker: Sequence[ScriptedRun] = (),
        audit: Sequence[ScriptedRun] = (),
    ) -> None:
        self._scripts: dict[str, list[ScriptedRun]] = {"worker": list(worker), "audit": list(audit)}
        self.requests: list[RunRequest] = []

    async def execute(self, request: RunRequest) -> RunResult:
        self.requests.append(request)
        script = self._scripts[request.role]
        if script:
            outcome = script.pop(0)
        elif request.role == "worker":
            outcome = RunResult(success=True, output_text="Implemented the change.")
        else:
            outcome = RunResult(success=True, output_text=PASS_OUTPUT)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def roles(self) -> list[str]:
        return [request.role for request in self.requests]

    def run_keys(self) -> list[str]:
        return [request.run_key for request in self.requests]


class FakeIssueTracker:
    def __init__(self, details: Optional[dict[str, IssueDetails]] = None, *, fail: bool = False) -> None:
        self.details = details or {}
        self.fail = fail
        self.comments: list[tuple[str, str]] = []

    async def get_issue_details(self, issue_id: str) -> Optional[IssueDetails]:
        if self.fail:
            raise ConnectionError("tracker unavailable")
        return self.details.get(issue_id)

    async def create_comment(self, issue_id: str, body: str) -> None:
        if self.fail:
            raise ConnectionError("tracker unavailable")
        self.comments.append((issue_id, body))


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[tuple[NotifyKind, NotifyPayload]] = []

    async def notify(self, kind: NotifyKind, payload: NotifyPayload) -> None:
        self.events.append((kind, payload))
        if self.fail:
            raise RuntimeError("notification transport down")

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "dispatch-state.json"


@pytest.fixture
def store(state_path: Path) -> DispatchStateStore:
    return DispatchStateStore(state_path=state_path, lock_retry_seconds=0.005, lock_wait_seconds=0.5)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "worktrees" / "ENG-1"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def make_dispatch(workspace: Path) -> Callable[..., ActiveDispatch]:
    def _make(**overrides: object) -> ActiveDispatch:
        values: dict[str, object] = {
            "issue_id": "issue-uuid-1",
            "issue_identifier": "ENG-1",
            "worktree_path": str(workspace),
            "branch": "codex/ENG-1",
            "tier": "medium",
            "model": "default",
            "status": "dispatched",
            "dispatched_at": "2026-03-01T12:00:00+00:00",
            "issue_title": "Add retry budget",
        }
        values.update(overrides)
        return ActiveDispatch(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def executor() -> FakeRunExecutor:
    return FakeRunExecutor()


@pytest.fixture
def tracker() -> FakeIssueTracker:
    return FakeIssueTracker(
        {
            "issue-uuid-1": IssueDetails(
                id="issue-uuid-1",
                identifier="ENG-1",
                title="Add retry budget",
                description="Workers must retry at most twice.",
            )
        }
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def build_pipeline(
    store: DispatchStateStore,
    tracker: FakeIssueTracker,
    notifier: RecordingNotifier,
) -> Callable[..., DispatchPipeline]:
    def _build(executor: FakeRunExecutor, **settings: object) -> DispatchPipeline:
        context = PipelineContext(
            store=store,
            executor=executor,
            tracker=tracker,
            notifier=notifier,
            prompts=PromptCompiler(),
            settings=PipelineSettings(**settings),  # type: ignore[arg-type]
        )
        return DispatchPipeline(context)

    return _build
