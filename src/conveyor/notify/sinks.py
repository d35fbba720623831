"""Notifier sinks — where lifecycle events go."""

from __future__ import annotations
import logging
from typing import Protocol

from conveyor.notify.events import Event, RunFailed, StageFailed, StageRollbackFailed

logger = logging.getLogger("conveyor.events")

_WARNING_EVENTS = (StageFailed, StageRollbackFailed, RunFailed)


class Notifier(Protocol):
    async def notify(self, event: Event) -> None:
        ...


class LoggingNotifier:
    """Writes each event as one structured log record."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    async def notify(self, event: Event) -> None:
        level = logging.WARNING if isinstance(event, _WARNING_EVENTS) else logging.INFO
        payload = event.to_dict()
        details = " ".join(f"{k}={v}" for k, v in payload.items() if k not in ("event", "run_id", "at"))
        self.log.log(level, f"{event.name} run={event.run_id} {details}".rstrip(), extra={"event": payload})


class AuditLog:
    """Keeps every event in memory, in arrival order."""

    def __init__(self):
        self.events: list[Event] = []

    async def notify(self, event: Event) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def of_type(self, event_type: type[Event]) -> list[Event]:
        return [e for e in self.events if isinstance(e, event_type)]


class CompositeNotifier:
    """Fans events out to several sinks. A failing sink never stops the others."""

    def __init__(self, *sinks: Notifier):
        self.sinks = list(sinks)

    def add(self, sink: Notifier) -> None:
        self.sinks.append(sink)

    async def notify(self, event: Event) -> None:
        for sink in self.sinks:
            try:
                await sink.notify(event)
            except Exception as e:
                logger.error(f"Notifier {type(sink).__name__} failed on {event.name}: {e}")
