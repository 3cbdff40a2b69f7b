"""Audit verdict model and parser.

Audit runs end their output with a JSON object such as::

    {"pass": false, "criteria": ["tests pass"], "gaps": ["missing test"], "testResults": "3 failed"}

The output may quote earlier verdicts or contain unrelated braces, so the parser
collects every decodable object with a boolean ``pass`` and keeps the last one.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

UNPARSEABLE_VERDICT_GAP = "Audit produced no parseable verdict"


@dataclass(frozen=True)
class AuditVerdict:
    passed: bool
    criteria: tuple[str, ...] = ()
    gaps: tuple[str, ...] = ()
    test_results: str = ""


class VerdictParser(Protocol):
    def parse(self, text: str) -> AuditVerdict | None: ...


class JsonVerdictParser:
    """Extract the last verdict-shaped JSON object from free-form text."""

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()

    def parse(self, text: str) -> AuditVerdict | None:
        if not text:
            return None
        verdict: AuditVerdict | None = None
        index = text.find("{")
        while index != -1:
            try:
                candidate, end = self._decoder.raw_decode(text, index)
            except RecursionError:
                # Too deep to decode; nothing inside the group is read as a verdict.
                index = text.find("{", _skip_bracket_group(text, index))
                continue
            except ValueError:
                index = text.find("{", index + 1)
                continue
            if isinstance(candidate, dict) and isinstance(candidate.get("pass"), bool):
                verdict = _verdict_from_mapping(candidate)
                index = text.find("{", end)
            else:
                # Nested objects may still hold a verdict, so only step one char.
                index = text.find("{", index + 1)
        return verdict


_DEFAULT_PARSER = JsonVerdictParser()


def parse_verdict(text: str) -> AuditVerdict | None:
    """Parse with the default JSON parser."""
    return _DEFAULT_PARSER.parse(text)


def serialize_verdict(verdict: AuditVerdict) -> str:
    return json.dumps(
        {
            "pass": verdict.passed,
            "criteria": list(verdict.criteria),
            "gaps": list(verdict.gaps),
            "testResults": verdict.test_results,
        }
    )


def unparseable_verdict() -> AuditVerdict:
    """Synthetic failing verdict used when the audit output held no verdict."""
    return AuditVerdict(passed=False, gaps=(UNPARSEABLE_VERDICT_GAP,))


def extract_audit_output(result: Any) -> str:
    """Return the flat output text, else the last assistant text from ``result.messages``."""
    output_text = getattr(result, "output_text", "") or ""
    if output_text.strip():
        return output_text

    messages: Sequence[object] = getattr(result, "messages", ()) or ()
    for message in reversed(list(messages)):
        if not isinstance(message, Mapping) or message.get("role") != "assistant":
            continue
        text = _message_text(message.get("content"))
        if text:
            return text
    return ""


def _message_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        block["text"]
        for block in content
        if isinstance(block, Mapping) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return "\n".join(parts)


def _skip_bracket_group(text: str, start: int) -> int:
    """Index just past the bracket group opened at ``start`` (end of text if unbalanced)."""
    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        char = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return pos + 1
    return len(text)


def _verdict_from_mapping(raw: Mapping[str, object]) -> AuditVerdict:
    criteria = raw.get("criteria")
    gaps = raw.get("gaps")
    test_results = raw.get("testResults")
    return AuditVerdict(
        passed=bool(raw["pass"]),
        criteria=tuple(str(item) for item in criteria) if isinstance(criteria, list) else (),
        gaps=tuple(str(item) for item in gaps) if isinstance(gaps, list) else (),
        test_results=test_results if isinstance(test_results, str) else "",
    )
