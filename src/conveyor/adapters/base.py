"""Adapter contracts for the external tools a release pipeline drives.

Every operation receives a StageContext carrying the cancellation signal.
On cancellation an adapter should stop promptly and raise CancelledError;
any other failure is reported with the operation's AdapterError subclass.
Operations must be idempotent for the same inputs: the engine retries them.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from conveyor.core.errors import AdapterError, BuildError, ConfigError, DeployError, ProvisionError
from conveyor.pipeline.context import StageContext
from conveyor.pipeline.types import AdapterKind


@dataclass(frozen=True)
class ResourceSet:
    ref: str
    resources: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ArtifactRef:
    ref: str  # image id before push, registry location after
    digest: str | None = None


@dataclass(frozen=True)
class RolloutStatus:
    ref: str
    ready: bool = True
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfigReport:
    ref: str
    changed: int = 0
    failed_hosts: tuple[str, ...] = ()


class Adapter(ABC):
    """Base class for all adapters."""

    kinds: ClassVar[frozenset[AdapterKind]] = frozenset()
    error_class: ClassVar[type[AdapterError]] = AdapterError

    async def rollback(self, action: str, ctx: StageContext) -> None:
        """Run the compensating action named by a stage."""
        raise self.error_class(f"{type(self).__name__} does not support rollback action '{action}'")

    async def close(self) -> None:
        """Release any held resources."""


class Provisioner(Adapter):
    kinds = frozenset({AdapterKind.PROVISION})
    error_class = ProvisionError

    @abstractmethod
    async def apply(self, plan: dict[str, Any], ctx: StageContext) -> ResourceSet:
        ...


class Builder(Adapter):
    """Image builder and registry."""

    kinds = frozenset({AdapterKind.BUILD, AdapterKind.PUSH})
    error_class = BuildError

    @abstractmethod
    async def build(self, spec: dict[str, Any], ctx: StageContext) -> ArtifactRef:
        ...

    @abstractmethod
    async def push(self, artifact: ArtifactRef, ctx: StageContext) -> ArtifactRef:
        ...

    async def build_and_push(self, spec: dict[str, Any], ctx: StageContext) -> ArtifactRef:
        return await self.push(await self.build(spec, ctx), ctx)


class Deployer(Adapter):
    kinds = frozenset({AdapterKind.DEPLOY})
    error_class = DeployError

    @abstractmethod
    async def deploy(self, artifact: ArtifactRef, manifest: dict[str, Any], ctx: StageContext) -> RolloutStatus:
        ...


class Configurator(Adapter):
    kinds = frozenset({AdapterKind.CONFIGURE})
    error_class = ConfigError

    @abstractmethod
    async def configure(self, targets: list[str], playbook: dict[str, Any], ctx: StageContext) -> ConfigReport:
        ...


_KIND_ERRORS: dict[AdapterKind, type[AdapterError]] = {
    AdapterKind.PROVISION: ProvisionError,
    AdapterKind.BUILD: BuildError,
    AdapterKind.PUSH: BuildError,
    AdapterKind.DEPLOY: DeployError,
    AdapterKind.CONFIGURE: ConfigError,
}


def error_for(kind: AdapterKind) -> type[AdapterError]:
    return _KIND_ERRORS[kind]


async def invoke(adapter: Adapter, kind: AdapterKind, ctx: StageContext) -> str:
    """Call the operation a stage kind maps to. Returns the artifact reference."""
    params = ctx.params
    if kind is AdapterKind.PROVISION:
        result = await adapter.apply(params, ctx)
    elif kind is AdapterKind.BUILD:
        if params.get("push"):
            result = await adapter.build_and_push(params, ctx)
        else:
            result = await adapter.build(params, ctx)
    elif kind is AdapterKind.PUSH:
        result = await adapter.push(ArtifactRef(ref=ctx.latest_artifact(AdapterKind.BUILD.value)), ctx)
    elif kind is AdapterKind.DEPLOY:
        ref = params.get("artifact") or ctx.latest_artifact(AdapterKind.BUILD.value, AdapterKind.PUSH.value)
        result = await adapter.deploy(ArtifactRef(ref=ref), params, ctx)
    else:
        result = await adapter.configure(list(params.get("targets", [])), params, ctx)
    return result.ref
