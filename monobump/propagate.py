"""Dependency-aware bump propagation.

Each project's effective severity is the strongest of its own severity
(from history) and what each direct dependency's final severity converts
to across the dependency edge. Projects are visited dependencies-first,
so a dependency's final severity is always known before its dependents
are considered. There is no clock and no unordered iteration, so the
same inputs always give the same versions.
"""

from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from typing import NamedTuple

import semver

from .graph import CyclePolicy, DependencyGraph
from .models import ProjectConfig
from .versions import Severity, apply_severity, combine


class Propagation(NamedTuple):
    """Final decision for one project.

    version is None when the project's current version is unknown (its
    read failed); it still takes part in ordering as a NONE severity.
    """

    severity: Severity
    version: semver.Version | None
    inherited_from: list[str]


class BumpPropagator:
    """Combine own severities with severities inherited from dependencies."""

    def __init__(
        self,
        projects: Sequence[ProjectConfig],
        graph: DependencyGraph,
        cycles: CyclePolicy = "reject",
    ) -> None:
        self.projects = {p.name: p for p in projects}
        self.graph = graph
        self.cycles = cycles

    def inherited(
        self, name: str, final: Mapping[str, Severity], unit: Sequence[str] = ()
    ) -> dict[str, Severity]:
        """Severities imposed on a project by its direct dependencies.

        Dependencies inside the same merged unit are skipped; they share
        the unit's severity anyway.
        """
        project = self.projects[name]
        result: dict[str, Severity] = {}
        for dep in sorted(self.graph.direct_dependencies(name)):
            if dep in unit:
                continue
            converted = project.depends[dep].convert(final.get(dep, Severity.NONE))
            if converted > Severity.NONE:
                result[dep] = converted
        return result

    def propagate(
        self,
        own: Mapping[str, Severity],
        current: Mapping[str, semver.Version | None],
        skip: Collection[str] = (),
    ) -> dict[str, Propagation]:
        """Compute every project's final severity and version.

        Args:
            own: Severity accumulated from each project's history.
                 Missing projects count as NONE.
            current: Version each bump applies to (None if unknown).
            skip: Projects that already failed; they stay at NONE and pass
                  nothing on to their dependents.

        Returns:
            Map of project name → Propagation, in topological order.

        Raises:
            CyclicDependency: If the graph has a cycle and cycles == "reject".
        """
        final: dict[str, Severity] = {}
        sources: dict[str, list[str]] = {}

        for unit in self.graph.units(self.cycles):
            for name in unit:
                if name in skip:
                    final[name], sources[name] = Severity.NONE, []
                    continue
                from_deps = self.inherited(name, final, unit)
                final[name] = combine(own.get(name, Severity.NONE), *from_deps.values())
                sources[name] = sorted(from_deps)
            if len(unit) > 1:
                shared = combine(*(final[name] for name in unit))
                for name in unit:
                    if name not in skip:
                        final[name] = shared

        result: dict[str, Propagation] = {}
        for name, severity in final.items():
            version = current.get(name)
            new = apply_severity(version, severity) if version is not None else None
            result[name] = Propagation(severity, new, sources[name])
        return result
