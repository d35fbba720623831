"""Stage graph — cycle detection, dependency depth, deterministic ordering."""

from __future__ import annotations
import heapq
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence

from conveyor.core.errors import CycleError, LoadError


class _SpecLike(Protocol):
    name: str
    depends_on: Sequence[str]


@dataclass
class StageNode:
    """A node in the stage dependency graph."""
    name: str
    position: int
    upstream: set[str] = field(default_factory=set)
    downstream: set[str] = field(default_factory=set)
    depth: int = 0


class StageGraph:
    """Directed acyclic graph of named stages.

    Built once per pipeline definition with `StageGraph.build`, which rejects
    cycles and unknown dependencies. Ready stages are ordered by dependency
    depth, then declaration order, then name, so scheduling is reproducible.
    """

    def __init__(self):
        self._nodes: dict[str, StageNode] = {}

    @classmethod
    def build(cls, specs: Iterable[_SpecLike]) -> "StageGraph":
        graph = cls()
        spec_list = list(specs)
        for spec in spec_list:
            graph.add_stage(spec.name)
        for spec in spec_list:
            for dep in spec.depends_on:
                if dep not in graph:
                    raise LoadError(f"Stage '{spec.name}' depends on unknown stage '{dep}'")
                graph.add_dependency(upstream=dep, downstream=spec.name)

        cycle = graph.detect_cycles()
        if cycle:
            raise CycleError(cycle)
        graph._compute_depths()
        return graph

    def add_stage(self, name: str) -> None:
        """Register a stage node. Declaration order is kept for tie-breaks."""
        if name in self._nodes:
            raise LoadError(f"Duplicate stage name: {name}")
        self._nodes[name] = StageNode(name=name, position=len(self._nodes))

    def add_dependency(self, upstream: str, downstream: str) -> None:
        """Add a dependency: downstream depends on upstream."""
        self._nodes[upstream].downstream.add(downstream)
        self._nodes[downstream].upstream.add(upstream)

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def dependencies(self, name: str) -> set[str]:
        """Direct upstream dependencies of a stage."""
        return set(self._nodes[name].upstream)

    def depth(self, name: str) -> int:
        return self._nodes[name].depth

    def order_key(self, name: str) -> tuple[int, int, str]:
        node = self._nodes[name]
        return (node.depth, node.position, node.name)

    def sort(self, names: Iterable[str]) -> list[str]:
        """Order stages that are ready at the same time."""
        return sorted(names, key=self.order_key)

    def get_upstream(self, name: str) -> set[str]:
        """Get all transitive upstream dependencies."""
        return self._walk(name, lambda n: n.upstream)

    def get_downstream(self, name: str) -> set[str]:
        """Get all transitive downstream dependents."""
        return self._walk(name, lambda n: n.downstream)

    def _walk(self, name: str, edges) -> set[str]:
        visited = set()
        queue = deque([name])
        while queue:
            node = queue.popleft()
            if node in visited or node not in self._nodes:
                continue
            visited.add(node)
            queue.extend(edges(self._nodes[node]))
        visited.discard(name)
        return visited

    def detect_cycles(self) -> list[str] | None:
        """Detect cycles using DFS. Returns cycle path or None."""
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {n: WHITE for n in self._nodes}
        path: list[str] = []

        def dfs(node: str) -> list[str] | None:
            color[node] = GRAY
            path.append(node)
            for child in self.sort(self._nodes[node].downstream):
                if color[child] == GRAY:
                    # Back-edge: the cycle is the gray path from child to here
                    return path[path.index(child):] + [child]
                if color[child] == WHITE:
                    result = dfs(child)
                    if result:
                        return result
            path.pop()
            color[node] = BLACK
            return None

        for node in self._nodes:
            if color[node] == WHITE:
                result = dfs(node)
                if result:
                    return result
        return None

    def _compute_depths(self) -> None:
        memo: dict[str, int] = {}

        def depth_of(name: str) -> int:
            if name not in memo:
                upstream = self._nodes[name].upstream
                memo[name] = 1 + max(depth_of(u) for u in upstream) if upstream else 0
            return memo[name]

        for name, node in self._nodes.items():
            node.depth = depth_of(name)

    def topological_sort(self) -> list[str]:
        """Return stages in dependency order (upstream first), deterministically."""
        in_degree = {n: len(node.upstream) for n, node in self._nodes.items()}
        heap = [self.order_key(n) for n, d in in_degree.items() if d == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            _, _, node = heapq.heappop(heap)
            result.append(node)
            for child in self._nodes[node].downstream:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(heap, self.order_key(child))

        if len(result) != len(self._nodes):
            raise CycleError(self.detect_cycles() or ["unknown"])
        return result

    def parallel_groups(self) -> list[list[str]]:
        """Return execution groups — stages in the same group can run in parallel."""
        groups: dict[int, list[str]] = {}
        for name, node in self._nodes.items():
            groups.setdefault(node.depth, []).append(name)
        return [self.sort(groups[d]) for d in sorted(groups)]

    def to_dict(self) -> dict:
        """Serialize the graph for JSON output."""
        return {
            "stages": [
                {"name": n.name, "depends_on": self.sort(n.upstream), "depth": n.depth}
                for n in self._nodes.values()
            ],
            "order": self.topological_sort(),
            "groups": self.parallel_groups(),
        }
