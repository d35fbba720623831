"""Pipeline types and enums."""

from __future__ import annotations

from enum import Enum


class AdapterKind(str, Enum):
    PROVISION = "provision"
    BUILD = "build"
    PUSH = "push"
    DEPLOY = "deploy"
    CONFIGURE = "configure"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ROLLED_BACK)


class StageStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"

    @property
    def satisfies_dependents(self) -> bool:
        """Dependents may start once an upstream stage reaches one of these."""
        return self in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)

    @property
    def terminal(self) -> bool:
        return self in (
            StageStatus.SUCCEEDED,
            StageStatus.FAILED,
            StageStatus.SKIPPED,
            StageStatus.ROLLED_BACK,
        )


class RollbackOutcome(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
