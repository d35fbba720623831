"""Run manager — drives runs in the daemon's event loop, one engine per run."""

from __future__ import annotations
import asyncio
import logging
from datetime import datetime

from conveyor.adapters.registry import AdapterRegistry
from conveyor.core.config import ConveyorSettings
from conveyor.core.errors import ConveyorError, RunActiveError
from conveyor.dag.runner import EngineOptions, ExecutionEngine, RunResult
from conveyor.notify.sinks import Notifier
from conveyor.pipeline.context import TriggerEvent
from conveyor.pipeline.definition import PipelineDefinition
from conveyor.pipeline.loader import load_definition, resolve_definition_ref
from conveyor.pipeline.run import Run, utcnow
from conveyor.repositories.run_repo import RunStateStore

logger = logging.getLogger("conveyor.manager")


class RunManager:
    """Accepts triggers and runs them as background tasks.

    - Each run gets its own ExecutionEngine
    - At most max_active_runs are driven at once; the rest wait as Pending
    - On startup, runs left unfinished by a previous daemon are resumed
    """

    def __init__(
        self,
        settings: ConveyorSettings,
        store: RunStateStore,
        adapters: AdapterRegistry,
        notifier: Notifier | None = None,
    ):
        self.settings = settings
        self.store = store
        self.adapters = adapters
        self.notifier = notifier
        self.max_active_runs = max(1, settings.max_active_runs)
        self._semaphore = asyncio.Semaphore(self.max_active_runs)
        self._engines: dict[str, ExecutionEngine] = {}  # run_id → engine
        self._tasks: dict[str, asyncio.Task] = {}
        self._claimed: set[str] = set()  # runs with an engine here, including ones still recovering
        self.started_at = utcnow()

    @property
    def current_load(self) -> int:
        return len(self._tasks)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._claimed

    def load(self, ref: str) -> PipelineDefinition:
        return load_definition(resolve_definition_ref(ref, self.settings.get_definitions_dir()))

    async def start(self, trigger: TriggerEvent, definition: PipelineDefinition | None = None) -> Run:
        """Create a run for the trigger and drive it in the background.

        Load and binding errors are raised here, before any run exists.
        """
        if definition is None:
            definition = self.load(trigger.definition)
        engine = self._new_engine()
        run = await engine.submit(definition, trigger)
        logger.info(f"Accepted run {run.id} of {definition.name} at {trigger.commit}")
        self._spawn(run.id, engine, engine.execute(run, definition))
        return run

    async def resume(self, run_id: str, stale_before: datetime | None = None) -> Run:
        """Resume an unfinished run from its stored definition snapshot.

        A terminal run is returned as-is. Raises RunActiveError if the run is
        being driven here or elsewhere.
        """
        if self.is_active(run_id):
            raise RunActiveError(f"Run {run_id} is already running")
        self._claimed.add(run_id)
        try:
            engine = self._new_engine()
            run, definition = await engine.recover(run_id, stale_before=stale_before)
        except BaseException:
            self._claimed.discard(run_id)
            raise
        if run.status.terminal:
            self._claimed.discard(run_id)
        else:
            logger.info(f"Resuming run {run_id} of {definition.name}")
            self._spawn(run_id, engine, engine.execute(run, definition))
        return run

    async def cancel(self, run_id: str, reason: str = "cancel requested") -> bool:
        """Cancel a run driven by this daemon. Returns False if it is not active."""
        await self.store.get(run_id)  # NotFoundError for unknown runs
        engine = self._engines.get(run_id)
        if engine is None:
            return False
        engine.cancel(reason)
        return True

    async def recover(self) -> list[str]:
        """Resume every run a previous daemon left unfinished."""
        resumed = []
        for run_id in await self.store.unfinished():
            try:
                # Heartbeats from before this daemon started belong to a dead engine
                await self.resume(run_id, stale_before=self.started_at)
            except ConveyorError as e:
                logger.error(f"Cannot resume run {run_id}: {e}")
                continue
            resumed.append(run_id)
        if resumed:
            logger.info(f"Recovered {len(resumed)} unfinished run(s)")
        return resumed

    async def wait(self, run_id: str) -> RunResult | None:
        """Wait for a background run to finish. None if it is not active."""
        task = self._tasks.get(run_id)
        if task is None:
            return None
        return await task

    async def shutdown(self, reason: str = "daemon shutting down") -> None:
        """Cancel active runs and wait for their rollbacks to finish.

        A stopped daemon leaves no release half applied: runs end RolledBack or
        Failed rather than waiting for a restart to resume them.
        """
        for engine in self._engines.values():
            engine.cancel(reason)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def info(self) -> dict:
        return {
            "max_active_runs": self.max_active_runs,
            "current_load": self.current_load,
            "active_runs": list(self._tasks.keys()),
        }

    def _new_engine(self) -> ExecutionEngine:
        return ExecutionEngine(
            self.store,
            self.adapters,
            notifier=self.notifier,
            options=EngineOptions.from_settings(self.settings),
        )

    def _spawn(self, run_id: str, engine: ExecutionEngine, work) -> None:
        self._claimed.add(run_id)
        self._engines[run_id] = engine
        self._tasks[run_id] = asyncio.create_task(self._drive(run_id, work), name=f"run:{run_id}")

    async def _drive(self, run_id: str, work) -> RunResult | None:
        try:
            async with self._semaphore:
                result = await work
        except Exception:
            logger.exception(f"Run {run_id} crashed; it stays resumable")
            return None
        finally:
            self._engines.pop(run_id, None)
            self._tasks.pop(run_id, None)
            self._claimed.discard(run_id)
        logger.info(f"Run {run_id} finished: {result.status.value}")
        return result
