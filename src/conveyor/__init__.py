"""Conveyor — release pipeline orchestration: provision, build, push, deploy, configure."""

__version__ = "0.1.0"

from conveyor.pipeline.context import TriggerEvent
from conveyor.pipeline.definition import PipelineDefinition
from conveyor.pipeline.loader import load_definition

__all__ = ["PipelineDefinition", "TriggerEvent", "load_definition", "__version__"]
