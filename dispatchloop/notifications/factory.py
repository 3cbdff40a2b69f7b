"""Build a notifier from the ``notifications`` config section."""

from __future__ import annotations

from typing import Callable

from dispatchloop.config.schema import NotificationsConfig, NotifyTargetConfig
from dispatchloop.notifications.notifier import FanoutNotifier, NoopNotifier, Notifier, NotifySink

SinkFactory = Callable[[NotifyTargetConfig], NotifySink]


def create_notifier(config: NotificationsConfig, sink_factory: SinkFactory) -> Notifier:
    """One sink per configured target; no targets means notifications are off."""
    if not config.targets:
        return NoopNotifier()
    sinks = [sink_factory(target) for target in config.targets]
    return FanoutNotifier(sinks, events=config.events)
