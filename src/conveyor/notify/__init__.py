"""Lifecycle events and the sinks that receive them."""

from conveyor.notify.sinks import AuditLog, CompositeNotifier, LoggingNotifier, Notifier

__all__ = ["Notifier", "LoggingNotifier", "AuditLog", "CompositeNotifier"]
