"""Run and StageExecution — the durable state of one pipeline execution."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from conveyor.pipeline.context import TriggerEvent
from conveyor.pipeline.definition import PipelineDefinition
from conveyor.pipeline.types import RollbackOutcome, RunStatus, StageStatus


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class StageExecution:
    name: str
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    heartbeat_at: datetime | None = None
    artifact: str | None = None
    last_error: dict | None = None
    skip_reason: str | None = None
    rollback_error: dict | None = None

    def evolve(self, **changes: Any) -> "StageExecution":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "artifact": self.artifact,
            "last_error": self.last_error,
            "skip_reason": self.skip_reason,
            "rollback_error": self.rollback_error,
        }


@dataclass
class Run:
    definition_name: str
    definition_version: str
    definition: dict
    trigger: TriggerEvent
    stages: dict[str, StageExecution] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    rollback_outcome: RollbackOutcome = RollbackOutcome.NOT_ATTEMPTED
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def new(cls, definition: PipelineDefinition, trigger: TriggerEvent) -> "Run":
        return cls(
            definition_name=definition.name,
            definition_version=definition.version,
            definition=definition.to_document(),
            trigger=trigger,
            stages={spec.name: StageExecution(name=spec.name) for spec in definition.stages},
        )

    def summary(self) -> "RunSummary":
        return RunSummary(
            id=self.id,
            definition_name=self.definition_name,
            definition_version=self.definition_version,
            commit=self.trigger.commit,
            status=self.status,
            rollback_outcome=self.rollback_outcome,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            stages={name: s.status for name, s in self.stages.items()},
        )


@dataclass(frozen=True)
class RunSummary:
    id: str
    definition_name: str
    definition_version: str
    commit: str
    status: RunStatus
    rollback_outcome: RollbackOutcome
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    stages: dict[str, StageStatus]


@dataclass(frozen=True)
class Transition:
    """One persisted status change of a stage, in commit order."""
    seq: int
    stage: str
    from_status: StageStatus | None
    to_status: StageStatus
    attempt: int
    at: datetime
