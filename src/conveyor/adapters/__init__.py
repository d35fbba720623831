"""Adapter contracts and bindings."""

from conveyor.adapters.base import (
    Adapter,
    ArtifactRef,
    Builder,
    ConfigReport,
    Configurator,
    Deployer,
    Provisioner,
    ResourceSet,
    RolloutStatus,
)
from conveyor.adapters.registry import AdapterOptions, AdapterRegistry

__all__ = [
    "Adapter", "Provisioner", "Builder", "Deployer", "Configurator",
    "ResourceSet", "ArtifactRef", "RolloutStatus", "ConfigReport",
    "AdapterOptions", "AdapterRegistry",
]
