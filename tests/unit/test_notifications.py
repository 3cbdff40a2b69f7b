"""Unit tests for lifecycle notifications."""

from __future__ import annotations

import pytest

from dispatchloop.config.schema import NotificationsConfig, NotifyTargetConfig
from dispatchloop.notifications import FanoutNotifier, LoggingSink, NoopNotifier, NotifyPayload, format_message
from dispatchloop.notifications.factory import create_notifier


class _ListSink:
    def __init__(self, name: str = "chat", *, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.messages: list[str] = []

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionError("channel offline")
        self.messages.append(message)


def test_format_message_per_kind() -> None:
    payload = NotifyPayload(identifier="ENG-1", title="Add retry budget", status="working", attempt=1)

    assert format_message("dispatch", payload) == "ENG-1 dispatched: Add retry budget"
    assert format_message("working", payload) == "ENG-1 worker started (attempt 1)"
    assert format_message("auditing", payload) == "ENG-1 audit in progress"
    assert format_message("audit_pass", payload) == "ENG-1 passed audit. Ready for review."
    assert (
        format_message("audit_fail", NotifyPayload("ENG-1", "t", "working", attempt=1, gaps=("a", "b")))
        == "ENG-1 failed audit (attempt 1). Gaps: a, b"
    )
    assert format_message("audit_fail", payload).endswith("Gaps: unspecified")
    escalation = NotifyPayload("ENG-1", "t", "stuck", reason="audit failed 3x")
    assert format_message("escalation", escalation) == "ENG-1 needs human review: audit failed 3x"
    assert format_message("stuck", NotifyPayload("ENG-1", "t", "stuck", reason="stale_3h")) == "ENG-1 stuck: stale_3h"
    assert "watchdog" in format_message("watchdog_kill", payload)


@pytest.mark.asyncio
async def test_fanout_sends_to_every_sink_and_isolates_failures() -> None:
    healthy = _ListSink("chat")
    broken = _ListSink("pager", fail=True)
    other = _ListSink("email")
    notifier = FanoutNotifier([healthy, broken, other])

    await notifier.notify("auditing", NotifyPayload(identifier="ENG-1", title="t", status="auditing"))

    assert healthy.messages == ["ENG-1 audit in progress"]
    assert other.messages == ["ENG-1 audit in progress"]


@pytest.mark.asyncio
async def test_fanout_respects_event_toggles() -> None:
    sink = _ListSink()
    notifier = FanoutNotifier([sink], events={"working": False})

    await notifier.notify("working", NotifyPayload(identifier="ENG-1", title="t", status="working"))
    await notifier.notify("audit_pass", NotifyPayload(identifier="ENG-1", title="t", status="done"))

    assert notifier.is_enabled("working") is False
    assert notifier.is_enabled("escalation") is True
    assert sink.messages == ["ENG-1 passed audit. Ready for review."]


@pytest.mark.asyncio
async def test_create_notifier_builds_one_sink_per_target() -> None:
    config = NotificationsConfig(
        events={"auditing": False},
        targets=[NotifyTargetConfig(channel="chat", target="#ops"), NotifyTargetConfig(channel="chat", target="#dev")],
    )
    sinks: dict[str, _ListSink] = {}

    def _factory(target: NotifyTargetConfig) -> _ListSink:
        sinks[target.target] = _ListSink(target.target)
        return sinks[target.target]

    notifier = create_notifier(config, _factory)
    await notifier.notify("auditing", NotifyPayload("ENG-1", "t", "auditing"))
    await notifier.notify("audit_pass", NotifyPayload("ENG-1", "t", "done"))

    assert sinks["#ops"].messages == ["ENG-1 passed audit. Ready for review."]
    assert sinks["#dev"].messages == ["ENG-1 passed audit. Ready for review."]
    assert isinstance(create_notifier(NotificationsConfig(), _factory), NoopNotifier)


@pytest.mark.asyncio
async def test_logging_sink_and_noop_notifier_never_raise() -> None:
    await FanoutNotifier([LoggingSink()]).notify("stuck", NotifyPayload("ENG-1", "t", "stuck"))
    await NoopNotifier().notify("stuck", NotifyPayload("ENG-1", "t", "stuck"))
