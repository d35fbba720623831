"""Run state store — durable runs, stage executions and transition log."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from conveyor.core.database import create_tables, make_engine, make_session_factory
from conveyor.core.errors import NotFoundError
from conveyor.models.run import RunRecord, StageExecutionRecord, TransitionRecord
from conveyor.pipeline.context import TriggerEvent
from conveyor.pipeline.run import Run, RunSummary, StageExecution, Transition, utcnow
from conveyor.pipeline.types import RollbackOutcome, RunStatus, StageStatus

logger = logging.getLogger("conveyor.store")


def _aware(dt: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class RunFilter:
    status: RunStatus | None = None
    definition_name: str | None = None
    limit: int = 20


class RunStateStore:
    """Single source of truth for run state.

    Every stage update is one transaction that also appends to the transition
    log. Updates to the same stage are serialized; `get` reads the run and all
    of its stages in one transaction, so callers see a consistent snapshot.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine = make_engine(database_url)
        self._session_factory = make_session_factory(self._engine)
        self._stage_locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def init(self) -> None:
        await create_tables(self._engine)

    async def close(self) -> None:
        await self._engine.dispose()

    def _lock(self, run_id: str, stage: str) -> asyncio.Lock:
        key = (run_id, stage)
        if key not in self._stage_locks:
            self._stage_locks[key] = asyncio.Lock()
        return self._stage_locks[key]

    # ─── Runs ───

    async def create(self, run: Run) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                record = RunRecord(
                    id=run.id,
                    definition_name=run.definition_name,
                    definition_version=run.definition_version,
                    definition=run.definition,
                    trigger=run.trigger.model_dump(mode="json"),
                    status=run.status.value,
                    rollback_outcome=run.rollback_outcome.value,
                    created_at=run.created_at,
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                )
                for position, execution in enumerate(run.stages.values()):
                    record.stages.append(StageExecutionRecord(position=position, **self._stage_columns(execution)))
                session.add(record)
        logger.info(f"Created run {run.id} ({run.definition_name}@{run.definition_version})")
        return run.id

    async def get(self, run_id: str) -> Run:
        async with self._session_factory() as session:
            async with session.begin():
                record = await self._get_record(session, run_id)
                return self._to_run(record)

    async def list(self, run_filter: RunFilter | None = None) -> list[RunSummary]:
        run_filter = run_filter or RunFilter()
        query = select(RunRecord).order_by(RunRecord.created_at.desc()).limit(run_filter.limit)
        if run_filter.status is not None:
            query = query.where(RunRecord.status == run_filter.status.value)
        if run_filter.definition_name is not None:
            query = query.where(RunRecord.definition_name == run_filter.definition_name)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_run(r).summary() for r in result.scalars().all()]

    async def unfinished(self) -> list[str]:
        """Ids of runs that never reached a terminal status, oldest first."""
        open_statuses = [RunStatus.PENDING.value, RunStatus.RUNNING.value]
        async with self._session_factory() as session:
            result = await session.execute(
                select(RunRecord.id)
                .where(RunRecord.status.in_(open_statuses))
                .order_by(RunRecord.created_at)
            )
            return list(result.scalars().all())

    async def set_status(
        self,
        run_id: str,
        status: RunStatus,
        rollback_outcome: RollbackOutcome | None = None,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                record = await self._get_record(session, run_id)
                record.status = status.value
                if rollback_outcome is not None:
                    record.rollback_outcome = rollback_outcome.value
                if started_at is not None:
                    record.started_at = started_at
                if finished_at is not None:
                    record.finished_at = finished_at
        if status.terminal:
            # Nothing writes stages of a finished run
            for key in [k for k in self._stage_locks if k[0] == run_id]:
                del self._stage_locks[key]

    # ─── Stage executions ───

    async def update(self, run_id: str, execution: StageExecution) -> None:
        """Persist one StageExecution and its transition atomically."""
        async with self._lock(run_id, execution.name):
            async with self._session_factory() as session:
                async with session.begin():
                    stage = await self._get_stage(session, run_id, execution.name)
                    previous = stage.status
                    for key, value in self._stage_columns(execution).items():
                        setattr(stage, key, value)
                    if previous != execution.status.value:
                        session.add(
                            TransitionRecord(
                                run_id=run_id,
                                stage=execution.name,
                                from_status=previous,
                                to_status=execution.status.value,
                                attempt=execution.attempts,
                                at=utcnow(),
                            )
                        )

    async def heartbeat(self, run_id: str, stage_name: str) -> None:
        async with self._lock(run_id, stage_name):
            async with self._session_factory() as session:
                async with session.begin():
                    stage = await self._get_stage(session, run_id, stage_name)
                    stage.heartbeat_at = utcnow()

    async def transitions(self, run_id: str) -> list[Transition]:
        async with self._session_factory() as session:
            await self._get_record(session, run_id)
            result = await session.execute(
                select(TransitionRecord)
                .where(TransitionRecord.run_id == run_id)
                .order_by(TransitionRecord.seq)
            )
            return [
                Transition(
                    seq=t.seq,
                    stage=t.stage,
                    from_status=StageStatus(t.from_status) if t.from_status else None,
                    to_status=StageStatus(t.to_status),
                    attempt=t.attempt,
                    at=_aware(t.at),
                )
                for t in result.scalars().all()
            ]

    # ─── Helpers ───

    async def _get_record(self, session: AsyncSession, run_id: str) -> RunRecord:
        result = await session.execute(select(RunRecord).where(RunRecord.id == run_id))
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"Run '{run_id}' not found")
        return record

    async def _get_stage(self, session: AsyncSession, run_id: str, name: str) -> StageExecutionRecord:
        result = await session.execute(
            select(StageExecutionRecord).where(
                StageExecutionRecord.run_id == run_id,
                StageExecutionRecord.name == name,
            )
        )
        stage = result.scalar_one_or_none()
        if stage is None:
            await self._get_record(session, run_id)
            raise NotFoundError(f"Stage '{name}' not found in run '{run_id}'")
        return stage

    @staticmethod
    def _stage_columns(execution: StageExecution) -> dict:
        return {
            "name": execution.name,
            "status": execution.status.value,
            "attempts": execution.attempts,
            "started_at": execution.started_at,
            "ended_at": execution.ended_at,
            "heartbeat_at": execution.heartbeat_at,
            "artifact": execution.artifact,
            "last_error": execution.last_error,
            "skip_reason": execution.skip_reason,
            "rollback_error": execution.rollback_error,
        }

    @staticmethod
    def _to_run(record: RunRecord) -> Run:
        return Run(
            id=record.id,
            definition_name=record.definition_name,
            definition_version=record.definition_version,
            definition=record.definition,
            trigger=TriggerEvent.model_validate(record.trigger),
            status=RunStatus(record.status),
            rollback_outcome=RollbackOutcome(record.rollback_outcome),
            created_at=_aware(record.created_at),
            started_at=_aware(record.started_at),
            finished_at=_aware(record.finished_at),
            stages={
                s.name: StageExecution(
                    name=s.name,
                    status=StageStatus(s.status),
                    attempts=s.attempts,
                    started_at=_aware(s.started_at),
                    ended_at=_aware(s.ended_at),
                    heartbeat_at=_aware(s.heartbeat_at),
                    artifact=s.artifact,
                    last_error=s.last_error,
                    skip_reason=s.skip_reason,
                    rollback_error=s.rollback_error,
                )
                for s in record.stages
            },
        )
