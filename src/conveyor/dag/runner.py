"""Execution engine — drives one run through the stage graph with retries and rollback."""

from __future__ import annotations
import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime

from conveyor.adapters.base import Adapter, error_for, invoke
from conveyor.adapters.registry import AdapterRegistry
from conveyor.core.errors import AdapterError, CancelledError, LoadError, RunActiveError
from conveyor.notify.events import (
    Event,
    RunFailed,
    RunRolledBack,
    RunStarted,
    RunSucceeded,
    StageFailed,
    StageRetrying,
    StageRollbackFailed,
    StageRolledBack,
    StageSkipped,
    StageStarted,
    StageSucceeded,
)
from conveyor.notify.sinks import LoggingNotifier, Notifier
from conveyor.pipeline.context import StageContext, TriggerEvent
from conveyor.pipeline.definition import PipelineDefinition, StageSpec
from conveyor.pipeline.run import Run, StageExecution, utcnow
from conveyor.pipeline.types import RollbackOutcome, RunStatus, StageStatus
from conveyor.repositories.run_repo import RunStateStore

logger = logging.getLogger("conveyor.engine")

_DISPATCHABLE = (StageStatus.PENDING, StageStatus.READY, StageStatus.RETRYING)
DISABLED = "disabled"


@dataclass
class EngineOptions:
    concurrency_limit: int | None = None  # None = unlimited
    run_timeout: float | None = None
    heartbeat_interval: float = 5.0
    heartbeat_timeout: float = 30.0
    cancel_grace: float = 5.0

    @classmethod
    def from_settings(cls, settings) -> "EngineOptions":
        return cls(
            concurrency_limit=settings.max_concurrent or None,
            run_timeout=settings.run_timeout_seconds,
            heartbeat_interval=settings.heartbeat_interval,
            heartbeat_timeout=settings.heartbeat_timeout,
            cancel_grace=settings.cancel_grace_seconds,
        )


@dataclass
class RunResult:
    """Verdict of a run, as reported to the invoker."""
    run_id: str
    status: RunStatus
    rollback: RollbackOutcome
    stages: dict[str, StageExecution] = field(default_factory=dict)
    failed: dict[str, dict | None] = field(default_factory=dict)  # stage → last error
    skipped: list[str] = field(default_factory=list)
    compensated: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None

    @classmethod
    def from_run(cls, run: Run) -> "RunResult":
        duration_ms = None
        if run.started_at and run.finished_at:
            duration_ms = int((run.finished_at - run.started_at).total_seconds() * 1000)
        return cls(
            run_id=run.id,
            status=run.status,
            rollback=run.rollback_outcome,
            stages=dict(run.stages),
            failed={n: s.last_error for n, s in run.stages.items() if s.status is StageStatus.FAILED},
            skipped=[n for n, s in run.stages.items() if s.status is StageStatus.SKIPPED],
            compensated=[n for n, s in run.stages.items() if s.status is StageStatus.ROLLED_BACK],
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "rollback": self.rollback.value,
            "failed": self.failed,
            "skipped": self.skipped,
            "compensated": self.compensated,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "stages": {n: s.to_dict() for n, s in self.stages.items()},
        }


class ExecutionEngine:
    """Drives a single run: dispatch, retry, skip, rollback, verdict.

    Ready stages are dispatched concurrently (optionally bounded). Every
    stage transition is persisted before it is announced to the notifier.
    Once any stage fails, or the run is cancelled, nothing new is started;
    in-flight stages finish and succeeded stages are rolled back in reverse
    topological order.
    """

    def __init__(
        self,
        store: RunStateStore,
        adapters: AdapterRegistry,
        notifier: Notifier | None = None,
        options: EngineOptions | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.adapters = adapters
        self.notifier = notifier or LoggingNotifier()
        self.options = options or EngineOptions()
        self._rng = rng or random.Random()
        self._cancel_event = asyncio.Event()
        self._halt_reason: str | None = None
        self._emit_lock = asyncio.Lock()
        self._slots = (
            asyncio.Semaphore(self.options.concurrency_limit) if self.options.concurrency_limit else None
        )
        self.run_id: str | None = None
        self._trigger: TriggerEvent | None = None

    # ─── Public API ───

    async def run(self, definition: PipelineDefinition, trigger: TriggerEvent) -> RunResult:
        """Create a run for the trigger and drive it to a terminal status.

        Raises LoadError before any run is created if a stage has no
        compatible adapter binding.
        """
        run = await self.submit(definition, trigger)
        return await self.execute(run, definition)

    async def submit(self, definition: PipelineDefinition, trigger: TriggerEvent) -> Run:
        """Validate bindings and persist a pending run without driving it."""
        self._claim()
        self.adapters.validate(definition)
        run = Run.new(definition, trigger)
        await self.store.create(run)
        self.run_id = run.id
        return run

    async def resume(self, run_id: str, definition: PipelineDefinition | None = None) -> RunResult:
        """Continue an in-flight run from its persisted state.

        A run that already reached a terminal status is returned unchanged.
        """
        run, definition = await self.recover(run_id, definition)
        if run.status.terminal:
            return RunResult.from_run(run)
        return await self.execute(run, definition)

    async def recover(
        self,
        run_id: str,
        definition: PipelineDefinition | None = None,
        stale_before: datetime | None = None,
    ) -> tuple[Run, PipelineDefinition]:
        """Load a run and make it resumable.

        Without a definition, the snapshot stored with the run is used. Stages
        left Running by a dead engine are requeued or failed; a live heartbeat
        raises RunActiveError. Heartbeats written before `stale_before` count
        as stale whatever their age.
        """
        self._claim(run_id)
        run = await self.store.get(run_id)
        if run.status.terminal:
            logger.info(f"Run {run_id} already {run.status.value}, nothing to resume")
            return run, definition or PipelineDefinition.from_document(run.definition)

        if definition is None:
            definition = PipelineDefinition.from_document(run.definition)
        elif definition.version != run.definition_version:
            raise LoadError(
                f"Run {run_id} used definition version {run.definition_version}, got {definition.version}"
            )
        self.adapters.validate(definition)
        self.run_id = run.id
        await self._recover_interrupted(run, definition, stale_before)
        return await self.store.get(run_id), definition

    def cancel(self, reason: str = "cancel requested") -> None:
        """Signal running adapters to stop; stages not yet started are skipped."""
        if not self._cancel_event.is_set():
            logger.warning(f"Cancelling run {self.run_id}: {reason}")
            self._halt_reason = self._halt_reason or f"run cancelled: {reason}"
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ─── Run lifecycle ───

    def _claim(self, run_id: str | None = None) -> None:
        if self.run_id is not None and (run_id is None or self.run_id != run_id):
            raise RuntimeError("An ExecutionEngine drives exactly one run")
        self.run_id = run_id or ""

    async def execute(self, run: Run, definition: PipelineDefinition) -> RunResult:
        """Drive a submitted or recovered run to a terminal status."""
        self.run_id = run.id
        self._trigger = run.trigger
        if run.status is RunStatus.PENDING:
            await self.store.set_status(run.id, RunStatus.RUNNING, started_at=utcnow())
            await self._emit(RunStarted(run_id=run.id, definition=definition.name, commit=run.trigger.commit))

        timer = None
        if self.options.run_timeout:
            timer = asyncio.get_running_loop().call_later(
                self.options.run_timeout, self.cancel, f"timed out after {self.options.run_timeout}s"
            )
        try:
            await self._drive(run.id, definition)
        finally:
            if timer:
                timer.cancel()
        return await self._finish(run.id, definition)

    async def _drive(self, run_id: str, definition: PipelineDefinition) -> None:
        in_flight: dict[str, asyncio.Task] = {}
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())

        try:
            snapshot = await self.store.get(run_id)
            for spec in definition.stages:
                if not spec.enabled and snapshot.stages[spec.name].status is StageStatus.PENDING:
                    await self._skip(run_id, snapshot.stages[spec.name], DISABLED)

            while True:
                snapshot = await self.store.get(run_id)
                stages = snapshot.stages
                failed = [n for n, s in stages.items() if s.status is StageStatus.FAILED]
                if failed and self._halt_reason is None:
                    self._halt_reason = f"run halted after stage '{failed[0]}' failed"

                if self._halt_reason is not None:
                    await self._skip_remaining(run_id, definition, stages, in_flight)
                else:
                    for name in self._ready(definition, stages, in_flight):
                        execution = stages[name]
                        if execution.status is StageStatus.PENDING:
                            execution = execution.evolve(status=StageStatus.READY)
                            await self.store.update(run_id, execution)
                        in_flight[name] = asyncio.create_task(
                            self._run_stage(run_id, definition, definition.stage(name), execution, stages),
                            name=f"stage:{name}",
                        )

                if not in_flight:
                    break

                waiters = set(in_flight.values())
                if not cancel_wait.done():
                    waiters.add(cancel_wait)
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

                for name, task in list(in_flight.items()):
                    if task.done():
                        del in_flight[name]
                        task.result()
        finally:
            cancel_wait.cancel()
            for task in in_flight.values():
                task.cancel()

    def _ready(self, definition: PipelineDefinition, stages: dict[str, StageExecution], in_flight) -> list[str]:
        graph = definition.graph
        ready = [
            name
            for name, execution in stages.items()
            if execution.status in _DISPATCHABLE
            and name not in in_flight
            and all(stages[dep].status.satisfies_dependents for dep in graph.dependencies(name))
        ]
        return graph.sort(ready)

    async def _skip_remaining(self, run_id, definition, stages, in_flight) -> None:
        graph = definition.graph
        failed = {n for n, s in stages.items() if s.status is StageStatus.FAILED}
        for name in graph.topological_sort():
            execution = stages[name]
            if name in in_flight or execution.status not in _DISPATCHABLE:
                continue
            upstream_failed = graph.sort(graph.get_upstream(name) & failed)
            if upstream_failed:
                reason = f"upstream stage '{upstream_failed[0]}' failed"
            else:
                reason = self._halt_reason
            await self._skip(run_id, execution, reason)

    async def _skip(self, run_id: str, execution: StageExecution, reason: str) -> None:
        await self.store.update(
            run_id,
            execution.evolve(status=StageStatus.SKIPPED, skip_reason=reason, ended_at=utcnow()),
        )
        await self._emit(StageSkipped(run_id=run_id, stage=execution.name, reason=reason))

    # ─── Stage execution ───

    async def _run_stage(
        self,
        run_id: str,
        definition: PipelineDefinition,
        spec: StageSpec,
        execution: StageExecution,
        snapshot: dict[str, StageExecution],
    ) -> None:
        async with self._slot():
            if self._halt_reason is not None:
                await self._skip(run_id, execution, self._halt_reason)
                return

            adapter = self.adapters.for_stage(spec)
            graph = definition.graph
            upstream = [n for n in graph.topological_sort() if n in graph.get_upstream(spec.name)]
            artifacts = {n: snapshot[n].artifact for n in upstream if snapshot[n].artifact is not None}
            upstream_kinds = {n: definition.stage(n).kind.value for n in upstream}

            while True:
                attempt = execution.attempts + 1
                now = utcnow()
                execution = execution.evolve(
                    status=StageStatus.RUNNING,
                    attempts=attempt,
                    started_at=execution.started_at or now,
                    heartbeat_at=now,
                )
                await self.store.update(run_id, execution)
                await self._emit(StageStarted(run_id=run_id, stage=spec.name, attempt=attempt))

                ctx = StageContext(
                    run_id=run_id,
                    stage=spec.name,
                    trigger=self._trigger,
                    params=spec.params,
                    artifacts=artifacts,
                    upstream_kinds=upstream_kinds,
                    attempt=attempt,
                    cancel_event=self._cancel_event,
                )
                try:
                    artifact = await self._call(run_id, adapter, spec, ctx)
                except CancelledError as e:
                    await self._fail(run_id, execution, {"type": "CancelledError", "message": str(e)})
                    return
                except AdapterError as e:
                    error = e.to_dict()
                except Exception as e:
                    # Adapters are external code: anything they raise is a stage failure
                    error = {"type": type(e).__name__, "message": str(e)}
                else:
                    execution = execution.evolve(
                        status=StageStatus.SUCCEEDED, artifact=artifact, ended_at=utcnow()
                    )
                    await self.store.update(run_id, execution)
                    await self._emit(
                        StageSucceeded(run_id=run_id, stage=spec.name, attempt=attempt, artifact=artifact)
                    )
                    return

                logger.warning(f"Stage {spec.name} attempt {attempt}/{spec.retry.max_attempts} failed: {error['message']}")
                if attempt >= spec.retry.max_attempts or self.cancelled:
                    await self._fail(run_id, execution, error)
                    return

                delay = spec.retry.delay(attempt, self._rng)
                execution = execution.evolve(status=StageStatus.RETRYING, last_error=error)
                await self.store.update(run_id, execution)
                await self._emit(
                    StageRetrying(run_id=run_id, stage=spec.name, attempt=attempt, delay=delay, error=error)
                )
                if await self._backoff(delay):
                    await self._fail(
                        run_id, execution, {"type": "CancelledError", "message": self._halt_reason or "cancelled"}
                    )
                    return

    async def _call(self, run_id: str, adapter: Adapter, spec: StageSpec, ctx: StageContext) -> str:
        """Invoke the adapter, keeping the heartbeat alive and honouring cancellation."""
        call = asyncio.ensure_future(invoke(adapter, spec.kind, ctx))
        heartbeat = asyncio.ensure_future(self._heartbeat(run_id, spec.name))
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancel_wait}, timeout=spec.timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
            if call in done:
                return call.result()
            if cancel_wait in done:
                # The adapter saw the same signal; give it a grace period to return
                done, _ = await asyncio.wait({call}, timeout=self.options.cancel_grace)
                if call in done:
                    return call.result()
                raise CancelledError(f"abandoned after {self.options.cancel_grace}s cancel grace")
            raise error_for(spec.kind)(f"timed out after {spec.timeout_seconds}s")
        finally:
            if not call.done():
                call.cancel()
            heartbeat.cancel()
            cancel_wait.cancel()

    async def _heartbeat(self, run_id: str, stage: str) -> None:
        while True:
            await asyncio.sleep(self.options.heartbeat_interval)
            try:
                await self.store.heartbeat(run_id, stage)
            except Exception as e:
                logger.warning(f"Heartbeat for {stage} failed: {e}")

    async def _backoff(self, delay: float) -> bool:
        """Sleep before a retry. Returns True if the run was cancelled meanwhile."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _fail(self, run_id: str, execution: StageExecution, error: dict) -> None:
        await self.store.update(
            run_id, execution.evolve(status=StageStatus.FAILED, last_error=error, ended_at=utcnow())
        )
        await self._emit(StageFailed(run_id=run_id, stage=execution.name, error=error))

    async def _recover_interrupted(
        self, run: Run, definition: PipelineDefinition, stale_before: datetime | None = None
    ) -> None:
        """Stages left Running by a dead engine count as failed attempts."""
        now = utcnow()
        for name, execution in run.stages.items():
            if execution.status is not StageStatus.RUNNING:
                continue
            beat = execution.heartbeat_at
            live = (
                beat is not None
                and (now - beat).total_seconds() < self.options.heartbeat_timeout
                and (stale_before is None or beat >= stale_before)
            )
            if live:
                raise RunActiveError(f"Run {run.id} stage '{name}' has a live heartbeat")

            error = {"type": "Interrupted", "message": "engine stopped while the stage was running"}
            spec = definition.stage(name)
            if execution.attempts < spec.retry.max_attempts:
                logger.warning(f"Run {run.id}: retrying interrupted stage {name}")
                await self.store.update(
                    run.id, execution.evolve(status=StageStatus.RETRYING, last_error=error)
                )
                await self._emit(
                    StageRetrying(run_id=run.id, stage=name, attempt=execution.attempts, delay=0.0, error=error)
                )
            else:
                await self._fail(run.id, execution, error)

    # ─── Rollback and verdict ───

    async def _rollback(self, run_id: str, definition: PipelineDefinition) -> tuple[RollbackOutcome, list[str]]:
        snapshot = await self.store.get(run_id)
        trigger = snapshot.trigger
        compensated: list[str] = []
        failed: list[str] = []

        for name in reversed(definition.graph.topological_sort()):
            execution = snapshot.stages[name]
            spec = definition.stage(name)
            if execution.status is StageStatus.ROLLED_BACK:
                compensated.append(name)
                continue
            if execution.status is not StageStatus.SUCCEEDED or not spec.rollback:
                continue
            if execution.rollback_error is not None:
                # Rollbacks are never retried
                failed.append(name)
                continue

            ctx = StageContext(
                run_id=run_id,
                stage=name,
                trigger=trigger,
                params=spec.params,
                artifacts={name: execution.artifact} if execution.artifact else {},
                upstream_kinds={name: spec.kind.value},
                attempt=execution.attempts,
            )
            try:
                adapter = self.adapters.for_stage(spec)
                await asyncio.wait_for(adapter.rollback(spec.rollback, ctx), timeout=spec.timeout_seconds)
            except Exception as e:
                error = {"type": type(e).__name__, "message": str(e) or "rollback timed out"}
                logger.error(f"Rollback '{spec.rollback}' of stage {name} failed: {error['message']}")
                await self.store.update(run_id, execution.evolve(rollback_error=error))
                await self._emit(StageRollbackFailed(run_id=run_id, stage=name, action=spec.rollback, error=error))
                failed.append(name)
            else:
                await self.store.update(run_id, execution.evolve(status=StageStatus.ROLLED_BACK))
                await self._emit(StageRolledBack(run_id=run_id, stage=name, action=spec.rollback))
                compensated.append(name)

        if not compensated and not failed:
            return RollbackOutcome.NOT_ATTEMPTED, compensated
        if not failed:
            return RollbackOutcome.COMPLETE, compensated
        if compensated:
            return RollbackOutcome.PARTIAL, compensated
        return RollbackOutcome.FAILED, compensated

    async def _finish(self, run_id: str, definition: PipelineDefinition) -> RunResult:
        snapshot = await self.store.get(run_id)
        failing = [n for n, s in snapshot.stages.items() if s.status is StageStatus.FAILED]
        incomplete = [
            n
            for n, s in snapshot.stages.items()
            if s.status is not StageStatus.SUCCEEDED
            and not (s.status is StageStatus.SKIPPED and s.skip_reason == DISABLED)
        ]

        if not incomplete:
            status, outcome = RunStatus.SUCCEEDED, RollbackOutcome.NOT_ATTEMPTED
            event: Event = RunSucceeded(run_id=run_id)
        else:
            outcome, compensated = await self._rollback(run_id, definition)
            if outcome is RollbackOutcome.COMPLETE:
                status = RunStatus.ROLLED_BACK
                event = RunRolledBack(run_id=run_id, compensated_stages=compensated)
            else:
                status = RunStatus.FAILED
                event = RunFailed(run_id=run_id, failing_stages=failing, rollback=outcome.value)

        await self.store.set_status(run_id, status, rollback_outcome=outcome, finished_at=utcnow())
        await self._emit(event)
        logger.info(f"Run {run_id} finished: {status.value} (rollback: {outcome.value})")
        return RunResult.from_run(await self.store.get(run_id))

    # ─── Helpers ───

    def _slot(self):
        return self._slots if self._slots is not None else contextlib.nullcontext()

    async def _emit(self, event: Event) -> None:
        async with self._emit_lock:
            try:
                await self.notifier.notify(event)
            except Exception as e:
                logger.error(f"Notifier failed on {event.name}: {e}")
