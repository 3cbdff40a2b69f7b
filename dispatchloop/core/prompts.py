"""Prompt compiler for worker and audit runs.

Templates come from three layers merged per section: built-in defaults, the
installation prompts file, and an optional per-workspace override at
``<workspace>/.dispatch/prompts.yaml``.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Mapping, Optional, Sequence

import yaml
from structlog import get_logger

from dispatchloop.constants import GUIDANCE_MAX_CHARS, WORKSPACE_PROMPTS_RELPATH
from dispatchloop.core.protocols import IssueDetails

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkerPrompts:
    system: str
    task: str


@dataclass(frozen=True)
class AuditPrompts:
    system: str
    task: str


@dataclass(frozen=True)
class ReworkPrompts:
    addendum: str


@dataclass(frozen=True)
class PromptTemplates:
    worker: WorkerPrompts
    audit: AuditPrompts
    rework: ReworkPrompts


@dataclass(frozen=True)
class RenderedPrompt:
    """System and task text for one run."""

    system: str
    task: str

    @property
    def text(self) -> str:
        return f"{self.system}\n\n{self.task}"


DEFAULT_PROMPTS = PromptTemplates(
    worker=WorkerPrompts(
        system=(
            "You are a coding worker implementing a tracked issue. Your ONLY job is to write code "
            "and return a text summary. Do NOT update, close, or comment on the issue."
        ),
        task=(
            "Implement issue {{identifier}}: {{title}}\n\n"
            "Issue body:\n{{description}}\n\n"
            "Workspace: {{worktreePath}}\n"
            "{{projectContext}}\n"
            "{{guidance}}\n\n"
            "Before coding, read CLAUDE.md and AGENTS.md in the workspace root for project conventions. "
            "If they don't exist, explore the codebase first.\n\n"
            "Implement the solution, run tests, commit your work, and return a text summary."
        ),
    ),
    audit=AuditPrompts(
        system=(
            "You are an independent auditor. The issue body is the SOURCE OF TRUTH. "
            "Worker output is secondary evidence."
        ),
        task=(
            "Audit issue {{identifier}}: {{title}}\n\n"
            "Issue body:\n{{description}}\n\n"
            "Workspace: {{worktreePath}}\n"
            "{{projectContext}}\n"
            "{{guidance}}\n\n"
            "Read CLAUDE.md and AGENTS.md in the workspace root for project standards.\n\n"
            'Return JSON verdict: {"pass": true/false, "criteria": [...], "gaps": [...], "testResults": "..."}'
        ),
    ),
    rework=ReworkPrompts(
        addendum=(
            "PREVIOUS AUDIT FAILED (attempt {{attempt}}). Gaps:\n{{gaps}}\n\n"
            "Address these specific issues. Preserve correct code from prior attempts."
        ),
    ),
)


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{key}}`` for every supplied key; other placeholders stay as written."""
    result = template
    for key, value in variables.items():
        result = result.replace("{{" + key + "}}", value or "")
    return result


def merge_prompt_layers(base: PromptTemplates, overlay: Mapping[str, object]) -> PromptTemplates:
    """Overlay individual fields per section onto *base*."""
    merged = base
    for section_name in ("worker", "audit", "rework"):
        section_overlay = overlay.get(section_name)
        if not isinstance(section_overlay, Mapping):
            continue
        section = getattr(merged, section_name)
        known = {f.name for f in fields(section)}
        changes = {
            key: value for key, value in section_overlay.items() if key in known and isinstance(value, str)
        }
        if changes:
            merged = replace(merged, **{section_name: replace(section, **changes)})
    return merged


def build_project_context(project_name: Optional[str], repos: Optional[Mapping[str, str]]) -> str:
    """Render the structural project block (name and repository paths)."""
    lines: list[str] = []
    if project_name:
        lines.append(f"Project: {project_name}")
    if repos:
        lines.append("Repos: " + ", ".join(f"{name} ({path})" for name, path in repos.items()))
    if not lines:
        return ""
    return "## Project Context\n" + "\n".join(lines)


def validate_templates(templates: PromptTemplates) -> list[str]:
    """Return human-readable problems with a template set (empty list means valid)."""
    problems: list[str] = []
    for section_name in ("worker", "audit", "rework"):
        section = getattr(templates, section_name)
        for field_info in fields(section):
            if not getattr(section, field_info.name).strip():
                problems.append(f"{section_name}.{field_info.name} is empty")
    if "{{identifier}}" not in templates.worker.task:
        problems.append("worker.task does not reference {{identifier}}")
    if "{{identifier}}" not in templates.audit.task:
        problems.append("audit.task does not reference {{identifier}}")
    if '"pass"' not in templates.audit.task:
        problems.append('audit.task does not ask for a JSON verdict with a "pass" field')
    if "{{gaps}}" not in templates.rework.addendum:
        problems.append("rework.addendum does not reference {{gaps}}")
    return problems


class PromptCompiler:
    """Builds worker and audit prompts; owns its own template cache."""

    def __init__(
        self,
        *,
        prompts_path: Optional[Path] = None,
        workspace_prompts_relpath: str = WORKSPACE_PROMPTS_RELPATH,
        project_context: str = "",
    ) -> None:
        self._prompts_path = prompts_path
        self._workspace_prompts_relpath = workspace_prompts_relpath
        self._project_context = project_context
        self._installation_templates: Optional[PromptTemplates] = None
        self._workspace_cache: dict[str, PromptTemplates] = {}

    def clear_cache(self) -> None:
        self._installation_templates = None
        self._workspace_cache.clear()

    def load_templates(self, workspace: Optional[str] = None) -> PromptTemplates:
        """Merged templates for *workspace* (installation layer when None)."""
        if self._installation_templates is None:
            base = DEFAULT_PROMPTS
            overlay = _load_prompt_yaml(self._prompts_path) if self._prompts_path else None
            self._installation_templates = merge_prompt_layers(base, overlay) if overlay else base

        if not workspace:
            return self._installation_templates

        cached = self._workspace_cache.get(workspace)
        if cached is not None:
            return cached

        overlay = _load_prompt_yaml(Path(workspace) / self._workspace_prompts_relpath)
        merged = (
            merge_prompt_layers(self._installation_templates, overlay) if overlay else self._installation_templates
        )
        self._workspace_cache[workspace] = merged
        return merged

    def build_worker_prompt(
        self,
        issue: IssueDetails,
        workspace: str,
        *,
        attempt: int = 0,
        gaps: Sequence[str] = (),
        guidance: Optional[str] = None,
        tier: str = "",
    ) -> RenderedPrompt:
        templates = self.load_templates(workspace)
        variables = self._variables(issue, workspace, attempt=attempt, gaps=gaps, guidance=guidance, tier=tier)
        task = render_template(templates.worker.task, variables)
        if attempt > 0 and gaps:
            task += "\n\n" + render_template(templates.rework.addendum, variables)
        return RenderedPrompt(system=render_template(templates.worker.system, variables), task=task)

    def build_audit_prompt(
        self,
        issue: IssueDetails,
        workspace: str,
        *,
        guidance: Optional[str] = None,
        tier: str = "",
    ) -> RenderedPrompt:
        templates = self.load_templates(workspace)
        variables = self._variables(issue, workspace, attempt=0, gaps=(), guidance=guidance, tier=tier)
        return RenderedPrompt(
            system=render_template(templates.audit.system, variables),
            task=render_template(templates.audit.task, variables),
        )

    def _variables(
        self,
        issue: IssueDetails,
        workspace: str,
        *,
        attempt: int,
        gaps: Sequence[str],
        guidance: Optional[str],
        tier: str,
    ) -> dict[str, str]:
        return {
            "identifier": issue.identifier,
            "title": issue.title,
            "description": issue.description or "(no description)",
            "worktreePath": workspace,
            "tier": tier,
            "attempt": str(attempt),
            "gaps": "- " + "\n- ".join(gaps) if gaps else "",
            "guidance": _format_guidance(guidance),
            "projectContext": self._project_context,
        }


def _format_guidance(guidance: Optional[str]) -> str:
    if not guidance:
        return ""
    return (
        "\n---\n## Workspace Guidance (MUST follow)\n"
        "The workspace owner has set the following mandatory instructions:\n\n"
        f"{guidance[:GUIDANCE_MAX_CHARS]}\n---"
    )


def _load_prompt_yaml(path: Optional[Path]) -> Optional[dict[str, object]]:
    if path is None:
        return None
    path = path.expanduser()
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to read prompts file", path=str(path), error=str(exc))
        return None
    if not isinstance(raw, dict):
        logger.warning("Ignoring prompts file with non-mapping root", path=str(path))
        return None
    return raw
