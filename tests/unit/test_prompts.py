"""Unit tests for the prompt compiler."""

from __future__ import annotations

from pathlib import Path

from dispatchloop.core.prompts import (
    DEFAULT_PROMPTS,
    PromptCompiler,
    build_project_context,
    merge_prompt_layers,
    render_template,
    validate_templates,
)
from dispatchloop.core.protocols import IssueDetails

ISSUE = IssueDetails(id="uuid-1", identifier="ENG-1", title="Add retry budget", description="Retry twice.")


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_render_template_replaces_known_keys_only() -> None:
    rendered = render_template("{{identifier}} / {{identifier}} / {{unknown}}", {"identifier": "ENG-1"})
    assert rendered == "ENG-1 / ENG-1 / {{unknown}}"


def test_worker_prompt_uses_issue_context(tmp_path: Path) -> None:
    prompt = PromptCompiler().build_worker_prompt(ISSUE, str(tmp_path))

    assert "Implement issue ENG-1: Add retry budget" in prompt.task
    assert "Retry twice." in prompt.task
    assert f"Workspace: {tmp_path}" in prompt.task
    assert "PREVIOUS AUDIT FAILED" not in prompt.task
    assert prompt.text == f"{prompt.system}\n\n{prompt.task}"


def test_missing_description_has_placeholder(tmp_path: Path) -> None:
    issue = IssueDetails(id="uuid-2", identifier="ENG-2", title="No body")
    prompt = PromptCompiler().build_audit_prompt(issue, str(tmp_path))

    assert "(no description)" in prompt.task
    assert '"pass"' in prompt.task


def test_rework_addendum_needs_attempt_and_gaps(tmp_path: Path) -> None:
    compiler = PromptCompiler()

    rework = compiler.build_worker_prompt(ISSUE, str(tmp_path), attempt=1, gaps=["missing test", "lint errors"])
    no_gaps = compiler.build_worker_prompt(ISSUE, str(tmp_path), attempt=1)
    first_run = compiler.build_worker_prompt(ISSUE, str(tmp_path), attempt=0, gaps=["ignored"])

    assert "PREVIOUS AUDIT FAILED (attempt 1)" in rework.task
    assert "- missing test\n- lint errors" in rework.task
    assert "PREVIOUS AUDIT FAILED" not in no_gaps.task
    assert "PREVIOUS AUDIT FAILED" not in first_run.task


def test_guidance_is_wrapped_and_truncated(tmp_path: Path) -> None:
    guidance = "g" * 2500
    prompt = PromptCompiler().build_worker_prompt(ISSUE, str(tmp_path), guidance=guidance)

    assert "Workspace Guidance (MUST follow)" in prompt.task
    assert "g" * 2000 in prompt.task
    assert "g" * 2001 not in prompt.task


def test_layers_merge_per_field(tmp_path: Path) -> None:
    installation = _write(tmp_path / "prompts.yaml", "worker:\n  system: Installation worker system\n")
    workspace = tmp_path / "ws"
    _write(workspace / ".dispatch" / "prompts.yaml", "audit:\n  system: Workspace auditor\n")

    compiler = PromptCompiler(prompts_path=installation)
    templates = compiler.load_templates(str(workspace))

    assert templates.worker.system == "Installation worker system"
    assert templates.worker.task == DEFAULT_PROMPTS.worker.task
    assert templates.audit.system == "Workspace auditor"
    assert templates.audit.task == DEFAULT_PROMPTS.audit.task
    assert compiler.load_templates().audit.system == DEFAULT_PROMPTS.audit.system


def test_invalid_prompt_files_are_skipped(tmp_path: Path) -> None:
    installation = _write(tmp_path / "prompts.yaml", "worker: [unclosed\n")
    workspace = tmp_path / "ws"
    _write(workspace / ".dispatch" / "prompts.yaml", "- just\n- a list\n")

    templates = PromptCompiler(prompts_path=installation).load_templates(str(workspace))

    assert templates == DEFAULT_PROMPTS


def test_cache_is_per_instance_until_cleared(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    override = _write(workspace / ".dispatch" / "prompts.yaml", "rework:\n  addendum: first {{gaps}}\n")
    compiler = PromptCompiler()

    assert compiler.load_templates(str(workspace)).rework.addendum == "first {{gaps}}"

    override.write_text("rework:\n  addendum: second {{gaps}}\n", encoding="utf-8")
    assert compiler.load_templates(str(workspace)).rework.addendum == "first {{gaps}}"
    assert PromptCompiler().load_templates(str(workspace)).rework.addendum == "second {{gaps}}"

    compiler.clear_cache()
    assert compiler.load_templates(str(workspace)).rework.addendum == "second {{gaps}}"


def test_project_context_block(tmp_path: Path) -> None:
    context = build_project_context("Roadmap", {"api": "/src/api", "web": "/src/web"})
    assert context == "## Project Context\nProject: Roadmap\nRepos: api (/src/api), web (/src/web)"
    assert build_project_context(None, {}) == ""

    prompt = PromptCompiler(project_context=context).build_audit_prompt(ISSUE, str(tmp_path))
    assert "Repos: api (/src/api)" in prompt.task


def test_validate_templates_reports_problems() -> None:
    assert validate_templates(DEFAULT_PROMPTS) == []

    broken = merge_prompt_layers(
        DEFAULT_PROMPTS,
        {
            "worker": {"system": "  "},
            "audit": {"task": "Audit {{identifier}} and reply."},
            "rework": {"addendum": "Try again."},
        },
    )
    problems = validate_templates(broken)

    assert "worker.system is empty" in problems
    assert any('"pass"' in problem for problem in problems)
    assert "rework.addendum does not reference {{gaps}}" in problems
