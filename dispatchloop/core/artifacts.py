"""Per-workspace artifact trail under ``<workspace>/.dispatch/``.

Layout::

    .dispatch/
      manifest.json   issue metadata, status, attempt count
      worker-<N>.md   worker output for attempt N (truncated)
      audit-<N>.json  audit verdict for attempt N
      log.jsonl       append-only interaction log
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Literal, Optional, TypedDict

from structlog import get_logger

from dispatchloop.constants import (
    ARTIFACT_DIR_NAME,
    MAX_ARTIFACT_CHARS,
    MAX_PREVIEW_CHARS,
    MAX_PROMPT_PREVIEW_CHARS,
)
from dispatchloop.core.verdict import AuditVerdict, serialize_verdict
from dispatchloop.utils import format_iso8601, utc_now

logger = get_logger(__name__)

LogPhase = Literal["dispatch", "worker", "audit", "verdict"]
TRUNCATION_MARKER = "\n\n--- truncated ---"


class _ManifestPayload(TypedDict):
    issueIdentifier: str
    issueTitle: str
    issueId: str
    tier: str
    model: str
    dispatchedAt: str
    worktreePath: str
    branch: str
    attempts: int
    status: str


@dataclass(frozen=True)
class ArtifactManifest:
    issue_identifier: str
    issue_title: str
    issue_id: str
    tier: str
    model: str
    dispatched_at: str
    worktree_path: str
    branch: str
    attempts: int
    status: str

    def to_payload(self) -> _ManifestPayload:
        return {
            "issueIdentifier": self.issue_identifier,
            "issueTitle": self.issue_title,
            "issueId": self.issue_id,
            "tier": self.tier,
            "model": self.model,
            "dispatchedAt": self.dispatched_at,
            "worktreePath": self.worktree_path,
            "branch": self.branch,
            "attempts": self.attempts,
            "status": self.status,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, object]) -> "ArtifactManifest":
        return cls(
            issue_identifier=str(raw["issueIdentifier"]),
            issue_title=str(raw.get("issueTitle", "")),
            issue_id=str(raw.get("issueId", "")),
            tier=str(raw.get("tier", "")),
            model=str(raw.get("model", "")),
            dispatched_at=str(raw.get("dispatchedAt", "")),
            worktree_path=str(raw.get("worktreePath", "")),
            branch=str(raw.get("branch", "")),
            attempts=int(raw.get("attempts", 0)),  # type: ignore[arg-type]
            status=str(raw.get("status", "")),
        )


@dataclass(frozen=True)
class LogEntry:
    phase: LogPhase
    attempt: int
    agent: str
    prompt: str
    output_preview: str
    success: bool
    duration_ms: Optional[int] = None
    ts: str = ""


def artifact_dir(workspace: Path) -> Path:
    return workspace / ARTIFACT_DIR_NAME


def ensure_artifact_dir(workspace: Path) -> Path:
    directory = artifact_dir(workspace)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_manifest(workspace: Path, manifest: ArtifactManifest) -> None:
    path = ensure_artifact_dir(workspace) / "manifest.json"
    path.write_text(json.dumps(manifest.to_payload(), indent=2) + "\n", encoding="utf-8")


def read_manifest(workspace: Path) -> Optional[ArtifactManifest]:
    """Return the manifest, or None when missing or unreadable."""
    path = artifact_dir(workspace) / "manifest.json"
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unreadable artifact manifest", path=str(path), error=str(exc))
        return None
    if not isinstance(raw, dict) or "issueIdentifier" not in raw:
        return None
    return ArtifactManifest.from_payload(raw)


def update_manifest(workspace: Path, *, status: Optional[str] = None, attempts: Optional[int] = None) -> bool:
    """Patch an existing manifest; returns False when there is none."""
    current = read_manifest(workspace)
    if current is None:
        return False
    updated = current
    if status is not None:
        updated = replace(updated, status=status)
    if attempts is not None:
        updated = replace(updated, attempts=attempts)
    write_manifest(workspace, updated)
    return True


def save_worker_output(workspace: Path, attempt: int, output: str) -> Path:
    if len(output) > MAX_ARTIFACT_CHARS:
        output = output[:MAX_ARTIFACT_CHARS] + TRUNCATION_MARKER
    path = ensure_artifact_dir(workspace) / f"worker-{attempt}.md"
    path.write_text(output, encoding="utf-8")
    return path


def save_audit_verdict(workspace: Path, attempt: int, verdict: AuditVerdict) -> Path:
    path = ensure_artifact_dir(workspace) / f"audit-{attempt}.json"
    payload = json.loads(serialize_verdict(verdict))
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    return path


def append_log(workspace: Path, entry: LogEntry) -> None:
    record = asdict(entry)
    record["ts"] = entry.ts or format_iso8601(utc_now())
    record["prompt"] = entry.prompt[:MAX_PROMPT_PREVIEW_CHARS]
    record["outputPreview"] = entry.output_preview[:MAX_PREVIEW_CHARS]
    record["durationMs"] = record.pop("duration_ms")
    del record["output_preview"]
    with open(ensure_artifact_dir(workspace) / "log.jsonl", "a", encoding="utf-8") as handle:
        handle.write(json.dumps(record) + "\n")


def read_log(workspace: Path) -> list[dict[str, object]]:
    path = artifact_dir(workspace) / "log.jsonl"
    if not path.exists():
        return []
    entries: list[dict[str, object]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping malformed artifact log line", path=str(path))
    return entries
