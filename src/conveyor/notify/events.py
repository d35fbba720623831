"""Lifecycle events emitted by the execution engine, in order."""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from datetime import datetime

from conveyor.pipeline.run import utcnow


@dataclass(frozen=True)
class Event:
    run_id: str
    at: datetime = field(default_factory=utcnow, kw_only=True)

    name = "event"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["at"] = self.at.isoformat()
        return {"event": self.name, **data}


@dataclass(frozen=True)
class RunStarted(Event):
    name = "run.started"
    definition: str
    commit: str


@dataclass(frozen=True)
class StageStarted(Event):
    name = "stage.started"
    stage: str
    attempt: int


@dataclass(frozen=True)
class StageSucceeded(Event):
    name = "stage.succeeded"
    stage: str
    attempt: int
    artifact: str | None


@dataclass(frozen=True)
class StageRetrying(Event):
    name = "stage.retrying"
    stage: str
    attempt: int
    delay: float
    error: dict


@dataclass(frozen=True)
class StageFailed(Event):
    name = "stage.failed"
    stage: str
    error: dict


@dataclass(frozen=True)
class StageSkipped(Event):
    name = "stage.skipped"
    stage: str
    reason: str


@dataclass(frozen=True)
class StageRolledBack(Event):
    name = "stage.rolled_back"
    stage: str
    action: str


@dataclass(frozen=True)
class StageRollbackFailed(Event):
    name = "stage.rollback_failed"
    stage: str
    action: str
    error: dict


@dataclass(frozen=True)
class RunSucceeded(Event):
    name = "run.succeeded"


@dataclass(frozen=True)
class RunRolledBack(Event):
    name = "run.rolled_back"
    compensated_stages: list[str]


@dataclass(frozen=True)
class RunFailed(Event):
    name = "run.failed"
    failing_stages: list[str]
    rollback: str
