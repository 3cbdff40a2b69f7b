"""Contracts for the collaborators the pipeline drives.

The embedding application supplies the concrete run executor and issue
tracker; dispatchloop only ships test doubles.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Protocol

RunRole = Literal["worker", "audit"]


@dataclass(frozen=True)
class RunRequest:
    role: RunRole
    prompt_text: str
    timeout_ms: int
    run_key: str
    execution_profile: str


@dataclass(frozen=True)
class RunResult:
    """Outcome of one executor run.

    ``messages`` holds the turn-structured transcript when the executor has
    one (``{"role": ..., "content": ...}`` mappings); audit output falls back
    to it when ``output_text`` is empty.
    """

    success: bool
    output_text: str = ""
    watchdog_killed: bool = False
    messages: tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class IssueDetails:
    """Issue fields the prompts need.

    ``guidance`` is the workspace or team instruction block the tracker
    attaches to its issues, if any; it is appended to worker and audit prompts.
    """

    id: str
    identifier: str
    title: str
    description: Optional[str] = None
    guidance: Optional[str] = None


class RunExecutor(Protocol):
    async def execute(self, request: RunRequest) -> RunResult: ...


class IssueTracker(Protocol):
    async def get_issue_details(self, issue_id: str) -> Optional[IssueDetails]: ...

    async def create_comment(self, issue_id: str, body: str) -> None: ...
