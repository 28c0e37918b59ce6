"""Dependency graph utilities.

Projects are stored by index with adjacency lists of indices rather than
references between project records. The graph provides the topological
order used by propagation (dependencies before dependents), direct
dependency lookups, and cycle handling: cycles are either rejected or
collapsed into units whose members are bumped together.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

from .errors import ConfigError, CyclicDependency
from .models import ProjectConfig

CyclePolicy = Literal["reject", "merge"]

_WHITE, _GREY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Directed graph where an edge (a, b) means "a depends on b"."""

    def __init__(
        self, names: Iterable[str], edges: Iterable[tuple[str, str]]
    ) -> None:
        self.names: list[str] = sorted(set(names))
        self.index: dict[str, int] = {name: i for i, name in enumerate(self.names)}
        self._deps: list[list[int]] = [[] for _ in self.names]
        self._rdeps: list[list[int]] = [[] for _ in self.names]
        for src, dst in edges:
            if src not in self.index or dst not in self.index:
                missing = src if src not in self.index else dst
                raise ConfigError(f"Edge {src} → {dst}: unknown project {missing!r}")
            a, b = self.index[src], self.index[dst]
            if b not in self._deps[a]:
                self._deps[a].append(b)
                self._rdeps[b].append(a)
        for adj in (*self._deps, *self._rdeps):
            adj.sort()

    @classmethod
    def build(cls, projects: Iterable[ProjectConfig]) -> DependencyGraph:
        """Build the graph from the depends tables of project configs."""
        projects = list(projects)
        edges = [(p.name, dep) for p in projects for dep in p.depends]
        return cls((p.name for p in projects), edges)

    def __len__(self) -> int:
        return len(self.names)

    def direct_dependencies(self, name: str) -> set[str]:
        return {self.names[i] for i in self._deps[self.index[name]]}

    def dependents(self, name: str) -> set[str]:
        return {self.names[i] for i in self._rdeps[self.index[name]]}

    def find_cycle(self) -> list[str] | None:
        """Return the projects along one dependency cycle, or None.

        Uses an iterative three-colour depth-first search: reaching a node
        that is still in progress (grey) means we followed a back edge.
        """
        color = [_WHITE] * len(self.names)
        for start in range(len(self.names)):
            if color[start] != _WHITE:
                continue
            color[start] = _GREY
            path = [start]
            stack = [(start, 0)]
            while stack:
                node, i = stack[-1]
                if i < len(self._deps[node]):
                    stack[-1] = (node, i + 1)
                    nxt = self._deps[node][i]
                    if color[nxt] == _GREY:
                        return [self.names[n] for n in path[path.index(nxt) :]]
                    if color[nxt] == _WHITE:
                        color[nxt] = _GREY
                        path.append(nxt)
                        stack.append((nxt, 0))
                else:
                    color[node] = _BLACK
                    path.pop()
                    stack.pop()
        return None

    def components(self) -> list[list[str]]:
        """Strongly connected components (Tarjan), each sorted by name.

        Without cycles every component is a single project.
        """
        counter = 0
        order: dict[int, int] = {}
        low: dict[int, int] = {}
        on_stack: set[int] = set()
        stack: list[int] = []
        result: list[list[str]] = []

        def visit(node: int) -> None:
            nonlocal counter
            order[node] = low[node] = counter
            counter += 1
            stack.append(node)
            on_stack.add(node)
            for nxt in self._deps[node]:
                if nxt not in order:
                    visit(nxt)
                    low[node] = min(low[node], low[nxt])
                elif nxt in on_stack:
                    low[node] = min(low[node], order[nxt])
            if low[node] == order[node]:
                members: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    members.append(self.names[member])
                    if member == node:
                        break
                result.append(sorted(members))

        for node in range(len(self.names)):
            if node not in order:
                visit(node)
        return result

    def units(self, cycles: CyclePolicy = "reject") -> list[list[str]]:
        """Group projects into bump units, dependencies first.

        A unit is a single project, or with cycles == "merge" every member
        of a dependency cycle. Uses Kahn's algorithm over the units; ready
        units are taken alphabetically for deterministic output.

        Raises:
            CyclicDependency: If a cycle exists and cycles == "reject".
        """
        if cycles == "reject":
            cycle = self.find_cycle()
            if cycle is not None:
                raise CyclicDependency(cycle)

        units = sorted(self.components())
        unit_of = {name: i for i, unit in enumerate(units) for name in unit}
        # Count incoming edges (dependencies on other units) for each unit
        in_degree = [0] * len(units)
        dependents: list[set[int]] = [set() for _ in units]
        for i, unit in enumerate(units):
            for name in unit:
                for dep in self.direct_dependencies(name):
                    j = unit_of[dep]
                    if j != i and i not in dependents[j]:
                        dependents[j].add(i)
                        in_degree[i] += 1

        # Units are sorted by first member, so index order is name order.
        queue = [i for i, d in enumerate(in_degree) if d == 0]
        order: list[list[str]] = []
        while queue:
            current = queue.pop(0)
            order.append(units[current])
            for dependent in sorted(dependents[current]):
                in_degree[dependent] -= 1
                # When a unit has all deps satisfied, add to queue
                if in_degree[dependent] == 0:
                    queue.append(dependent)
            queue.sort()
        return order

    def topological_order(self, cycles: CyclePolicy = "reject") -> list[str]:
        """Order projects so dependencies come before dependents.

        Raises:
            CyclicDependency: If a cycle exists and cycles == "reject".

        Example:
            If A depends on B, and B depends on C:
            topological_order() → [C, B, A]
        """
        return [name for unit in self.units(cycles) for name in unit]
