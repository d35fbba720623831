"""Stage graph resolution and run execution."""

from conveyor.dag.resolver import StageGraph

__all__ = ["StageGraph"]
