"""Dispatch lifecycle notifications."""

from dispatchloop.notifications.notifier import (
    NOTIFY_KINDS,
    FanoutNotifier,
    LoggingSink,
    NoopNotifier,
    Notifier,
    NotifyKind,
    NotifyPayload,
    NotifySink,
    format_message,
)

__all__ = [
    "NOTIFY_KINDS",
    "FanoutNotifier",
    "LoggingSink",
    "NoopNotifier",
    "Notifier",
    "NotifyKind",
    "NotifyPayload",
    "NotifySink",
    "format_message",
]
