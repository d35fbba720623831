"""Pydantic schemas for runs."""

from datetime import datetime
from pydantic import BaseModel

from conveyor.pipeline.context import TriggerEvent
from conveyor.pipeline.run import Run
from conveyor.pipeline.types import RollbackOutcome, RunStatus, StageStatus


class RunCreate(TriggerEvent):
    """Trigger event accepted by POST /runs."""


class StageExecutionResponse(BaseModel):
    name: str
    status: StageStatus
    attempts: int
    started_at: datetime | None
    ended_at: datetime | None
    heartbeat_at: datetime | None
    artifact: str | None
    last_error: dict | None
    skip_reason: str | None
    rollback_error: dict | None

    model_config = {"from_attributes": True}


class RunResponse(BaseModel):
    id: str
    definition_name: str
    definition_version: str
    status: RunStatus
    rollback_outcome: RollbackOutcome
    trigger: TriggerEvent
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    duration_ms: int | None = None
    stages: list[StageExecutionResponse]

    @classmethod
    def from_run(cls, run: Run) -> "RunResponse":
        duration_ms = None
        if run.started_at and run.finished_at:
            duration_ms = int((run.finished_at - run.started_at).total_seconds() * 1000)
        return cls(
            id=run.id,
            definition_name=run.definition_name,
            definition_version=run.definition_version,
            status=run.status,
            rollback_outcome=run.rollback_outcome,
            trigger=run.trigger,
            created_at=run.created_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_ms=duration_ms,
            stages=[StageExecutionResponse.model_validate(s) for s in run.stages.values()],
        )


class RunSummaryResponse(BaseModel):
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

    model_config = {"from_attributes": True}


class RunListResponse(BaseModel):
    runs: list[RunSummaryResponse]
    total: int


class TransitionResponse(BaseModel):
    seq: int
    stage: str
    from_status: StageStatus | None
    to_status: StageStatus
    attempt: int
    at: datetime

    model_config = {"from_attributes": True}


class TransitionListResponse(BaseModel):
    run_id: str
    transitions: list[TransitionResponse]


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
