"""Pipeline definition — immutable, validated stage specs."""

from __future__ import annotations

import hashlib
import json
import random
from functools import cached_property
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from conveyor.core.errors import LoadError
from conveyor.dag.resolver import StageGraph
from conveyor.pipeline.types import AdapterKind

SUPPORTED_SCHEMA_VERSIONS = {1}


class RetryPolicy(BaseModel):
    """Attempt budget and exponential backoff shape for one stage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    base_seconds: float = Field(default=1.0, ge=0)
    cap_seconds: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: Literal["full", "none"] = "full"

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff before the retry that follows failed attempt number `attempt`."""
        ceiling = min(self.cap_seconds, self.base_seconds * self.multiplier ** (attempt - 1))
        if self.jitter == "none":
            return ceiling
        return (rng or random).uniform(0, ceiling)


class StageSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    kind: AdapterKind
    depends_on: tuple[str, ...] = ()
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    rollback: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    adapter: str | None = None
    enabled: bool = True
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("stage name must be a non-empty string")
        return v.strip()

    @property
    def binding(self) -> str:
        """Name of the adapter binding that executes this stage."""
        return self.adapter or self.kind.value


class PipelineDefinition(BaseModel):
    """Ordered set of StageSpecs whose dependencies form a DAG.

    Construction validates the graph, so an instance always holds an acyclic
    definition with resolvable dependencies and consistent artifact wiring.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    schema_version: int = 1
    description: str | None = None
    stages: tuple[StageSpec, ...]

    @field_validator("schema_version")
    @classmethod
    def _known_schema(cls, v: int) -> int:
        if v not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValueError(f"unsupported schema_version {v}; supported: {sorted(SUPPORTED_SCHEMA_VERSIONS)}")
        return v

    @model_validator(mode="after")
    def _validate_graph(self) -> "PipelineDefinition":
        if not self.stages:
            raise LoadError(f"Pipeline '{self.name}' declares no stages")
        graph = StageGraph.build(self.stages)
        by_name = {s.name: s for s in self.stages}
        for spec in self.stages:
            upstream_kinds = {by_name[u].kind for u in graph.get_upstream(spec.name)}
            if spec.kind is AdapterKind.PUSH and AdapterKind.BUILD not in upstream_kinds:
                raise LoadError(f"Push stage '{spec.name}' has no upstream build stage")
            if (
                spec.kind is AdapterKind.DEPLOY
                and not upstream_kinds & {AdapterKind.BUILD, AdapterKind.PUSH}
                and "artifact" not in spec.params
            ):
                raise LoadError(
                    f"Deploy stage '{spec.name}' needs an upstream build/push stage or an 'artifact' param"
                )
        return self

    @cached_property
    def graph(self) -> StageGraph:
        return StageGraph.build(self.stages)

    @cached_property
    def version(self) -> str:
        """Content hash identifying exactly this definition."""
        raw = json.dumps(self.to_document(), sort_keys=True, ensure_ascii=False).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()[:16]

    def stage(self, name: str) -> StageSpec:
        for spec in self.stages:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "PipelineDefinition":
        return cls.model_validate(document)
