"""Conveyor exception taxonomy."""

from __future__ import annotations


class ConveyorError(Exception):
    """Base class for all Conveyor errors."""


class LoadError(ConveyorError):
    """Raised when a pipeline definition or adapter binding is invalid.

    Fatal: no run is created.
    """


class CycleError(ConveyorError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' → '.join(cycle)}")


class NotFoundError(ConveyorError):
    """Raised when a run (or one of its stages) is not in the store."""


class RunActiveError(ConveyorError):
    """Raised when resuming a run that another engine is still driving."""


class CancelledError(ConveyorError):
    """An adapter call was cancelled by the engine.

    Distinct from asyncio.CancelledError: this is an outcome, reported by the
    adapter, never a task cancellation.
    """


class AdapterError(ConveyorError):
    """Base class for adapter failures. Retriable up to the stage policy."""

    operation = "adapter"

    def to_dict(self) -> dict:
        return {"type": type(self).__name__, "message": str(self)}


class ProvisionError(AdapterError):
    operation = "provision"


class BuildError(AdapterError):
    operation = "build"


class DeployError(AdapterError):
    operation = "deploy"


class ConfigError(AdapterError):
    """Configurator failure (not a settings problem)."""

    operation = "configure"
