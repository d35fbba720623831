"""TriggerEvent and StageContext — what an adapter call receives."""

from __future__ import annotations
import asyncio
import logging
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger("conveyor.stage")


class TriggerEvent(BaseModel):
    """The event that starts a run."""
    commit: str
    definition: str
    params: dict[str, Any] = Field(default_factory=dict)


class StageContext:
    """Runtime context for one adapter call.

    Artifacts of upstream stages are exposed read-only by stage name.
    """

    def __init__(
        self,
        run_id: str,
        stage: str,
        trigger: TriggerEvent,
        params: dict | None = None,
        artifacts: dict[str, str] | None = None,
        upstream_kinds: dict[str, str] | None = None,
        attempt: int = 1,
        cancel_event: asyncio.Event | None = None,
    ):
        self.run_id = run_id
        self.stage = stage
        self.trigger = trigger
        self.params = dict(params or {})
        self._artifacts = dict(artifacts or {})
        self._upstream_kinds = dict(upstream_kinds or {})
        self.attempt = attempt
        self._cancel_event = cancel_event or asyncio.Event()

    @property
    def artifacts(self) -> dict[str, str]:
        return dict(self._artifacts)

    def artifact(self, stage: str) -> str | None:
        """Artifact produced by an upstream stage, by name."""
        return self._artifacts.get(stage)

    def latest_artifact(self, *kinds: str) -> str | None:
        """Artifact of the last upstream stage (in execution order) of the given kinds."""
        found = None
        for name, ref in self._artifacts.items():
            if self._upstream_kinds.get(name) in kinds:
                found = ref
        return found

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def wait_cancelled(self) -> None:
        """Block until the engine asks this call to stop."""
        await self._cancel_event.wait()

    def log(self, message: str) -> None:
        logger.info(f"[{self.run_id[:8]}:{self.stage}#{self.attempt}] {message}")

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe view of the call inputs."""
        return {
            "run_id": self.run_id,
            "stage": self.stage,
            "attempt": self.attempt,
            "commit": self.trigger.commit,
            "trigger_params": self.trigger.params,
            "params": self.params,
            "artifacts": self.artifacts,
        }
