"""Unit tests for the per-workspace artifact trail."""

from __future__ import annotations

import json
from pathlib import Path

from dispatchloop.core.artifacts import (
    TRUNCATION_MARKER,
    ArtifactManifest,
    LogEntry,
    append_log,
    read_log,
    read_manifest,
    save_audit_verdict,
    save_worker_output,
    update_manifest,
    write_manifest,
)
from dispatchloop.core.verdict import AuditVerdict

MANIFEST = ArtifactManifest(
    issue_identifier="ENG-1",
    issue_title="Add retry budget",
    issue_id="uuid-1",
    tier="medium",
    model="default",
    dispatched_at="2026-03-01T12:00:00+00:00",
    worktree_path="/tmp/ENG-1",
    branch="codex/ENG-1",
    attempts=0,
    status="dispatched",
)


def test_manifest_round_trip_and_update(tmp_path: Path) -> None:
    assert read_manifest(tmp_path) is None
    assert update_manifest(tmp_path, status="working") is False

    write_manifest(tmp_path, MANIFEST)
    assert update_manifest(tmp_path, status="done", attempts=2) is True

    manifest = read_manifest(tmp_path)
    assert manifest is not None
    assert manifest.status == "done"
    assert manifest.attempts == 2
    raw = json.loads((tmp_path / ".dispatch" / "manifest.json").read_text(encoding="utf-8"))
    assert raw["issueIdentifier"] == "ENG-1"


def test_worker_output_is_truncated(tmp_path: Path) -> None:
    short = save_worker_output(tmp_path, 0, "summary")
    long = save_worker_output(tmp_path, 1, "x" * 9000)

    assert short.name == "worker-0.md"
    assert short.read_text(encoding="utf-8") == "summary"
    assert long.read_text(encoding="utf-8") == "x" * 8192 + TRUNCATION_MARKER


def test_audit_verdict_uses_verdict_field_names(tmp_path: Path) -> None:
    path = save_audit_verdict(tmp_path, 1, AuditVerdict(passed=False, gaps=("missing test",)))

    assert path.name == "audit-1.json"
    assert json.loads(path.read_text(encoding="utf-8")) == {
        "pass": False,
        "criteria": [],
        "gaps": ["missing test"],
        "testResults": "",
    }


def test_log_entries_are_appended_with_previews(tmp_path: Path) -> None:
    append_log(
        tmp_path,
        LogEntry(
            phase="worker",
            attempt=0,
            agent="default",
            prompt="p" * 300,
            output_preview="o" * 600,
            success=True,
            duration_ms=1200,
        ),
    )
    append_log(
        tmp_path,
        LogEntry(phase="audit", attempt=0, agent="auditor", prompt="", output_preview="", success=False),
    )
    (tmp_path / ".dispatch" / "log.jsonl").open("a", encoding="utf-8").close()

    entries = read_log(tmp_path)

    assert [entry["phase"] for entry in entries] == ["worker", "audit"]
    assert entries[0]["prompt"] == "p" * 200
    assert entries[0]["outputPreview"] == "o" * 500
    assert entries[0]["durationMs"] == 1200
    assert entries[1]["durationMs"] is None
    assert entries[0]["ts"]
