"""Resolution run: scan → propagate → write → mark.

The Resolver is the entry point used by the release pipeline and CLI:

1. Build the dependency graph (a rejected cycle aborts the run here,
   before anything is read or written)
2. Read each project's current and released versions and scan its
   history, in a bounded thread pool
3. Propagate severities through the graph, dependencies first, until
   projects sharing a version location agree
4. Apply: write new versions (and dependency pins), then advance markers

Failures scoped to one project are recorded on its result and never stop
the others.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path, PurePosixPath
from typing import NamedTuple

import semver

from .errors import DependencyNotApplied, LocationError, MonobumpError
from .graph import DependencyGraph
from .history import HistoryScanner, Repository, ScanResult, TagMarkers
from .locators import find_span, location_path, read_text, read_version, write_version
from .models import (
    MonobumpConfig,
    Phase,
    ProjectConfig,
    ProjectFailure,
    ResolutionResult,
    RunReport,
    VersionLocation,
)
from .propagate import BumpPropagator
from .versions import Severity, combine, parse_version


class _Survey(NamedTuple):
    """What the read-only phase learned about one project."""

    current: semver.Version
    released: semver.Version | None
    scan: ScanResult
    keys: list[tuple[str, str]]


def repo_path(project: ProjectConfig, location: VersionLocation) -> str:
    """Repository-relative path of a location's file."""
    return str(PurePosixPath(project.root, location.file))


class Resolver:
    """Decide and apply new versions for every project in a repository.

    Args:
        repo: Repository to read history from and tag.
        config: Validated configuration.
        root: Repository working-tree root.
        markers: Marker store; defaults to git tags in config.tag_format.
        concurrency: Worker threads; defaults to config.concurrency.
        cancel: Once set, no further project is applied, so no further
                marker moves. Applies already underway finish.
    """

    def __init__(
        self,
        repo: Repository,
        config: MonobumpConfig,
        root: Path,
        markers: TagMarkers | None = None,
        *,
        concurrency: int | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.repo = repo
        self.config = config
        self.root = root
        self.markers = markers or TagMarkers(repo, config.tag_format)
        self.concurrency = concurrency or config.concurrency
        self.cancel = cancel or threading.Event()
        self.projects = {p.name: p for p in config.projects}
        self.head: str | None = None
        self._resolved: dict[str, ResolutionResult] = {}
        self._results: dict[str, ResolutionResult] = {}
        self._locks: dict[Path, threading.Lock] = {}
        self._guard = threading.Lock()

    # Read-only phase ------------------------------------------------------

    def project_root(self, project: ProjectConfig) -> Path:
        return self.root / project.root

    def current_version(self, project: ProjectConfig) -> semver.Version:
        """Read a project's version from every one of its locations.

        Raises:
            LocationError: If any location fails to read, or they disagree.
        """
        root = self.project_root(project)
        versions = [read_version(loc, root) for loc in project.versions]
        if any(v != versions[0] for v in versions[1:]):
            found = ", ".join(
                f"{loc.describe()}={v}" for loc, v in zip(project.versions, versions)
            )
            raise LocationError(f"Version locations disagree: {found}")
        return versions[0]

    def version_at(
        self, project: ProjectConfig, commit_id: str
    ) -> semver.Version | None:
        """Version in the project's first location as of a commit.

        Returns None when the file did not exist at that commit.

        Raises:
            LocationError: If the file is not UTF-8 or holds no version.
        """
        location = project.versions[0]
        data = self.repo.file_at(commit_id, repo_path(project, location))
        if data is None:
            return None
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise LocationError(
                f"{location.file} at {commit_id}: not UTF-8 text"
            ) from exc
        return parse_version(find_span(text, location).of(text))

    def released_version(self, project: ProjectConfig) -> semver.Version | None:
        """Version of the project's last release.

        The newest release tag names it. Before the first tag, a configured
        marker's version is read from the project's first location at that
        commit. Returns None for a project that has never been released.
        """
        latest = self.markers.latest(project)
        if latest is not None:
            return latest[1]
        marker = self.markers.find(project)
        if marker is None:
            return None
        return self.version_at(project, marker)

    def check(self, project: ProjectConfig, head: str) -> semver.Version:
        """Validate a project's locations and marker without scanning.

        Raises:
            LocationError: If a location cannot be read or they disagree.
            MarkerNotFound: If the marker is missing or not in head's history.
        """
        current = self.current_version(project)
        self.markers.find(project, head)
        return current

    def _survey(self, project: ProjectConfig, scanner: HistoryScanner) -> _Survey:
        current = self.current_version(project)
        root = self.project_root(project)
        keys = [
            (
                str(location_path(loc, root)),
                loc.model_dump_json(exclude={"file"}),
            )
            for loc in project.versions
        ]
        return _Survey(
            current=current,
            released=self.released_version(project),
            scan=scanner.scan(project),
            keys=keys,
        )

    def _shared_groups(self, surveys: dict[str, _Survey]) -> list[set[str]]:
        """Projects whose version lives at the same location, grouped."""
        owners: dict[tuple[str, str], set[str]] = {}
        for name, survey in surveys.items():
            for key in survey.keys:
                owners.setdefault(key, set()).add(name)

        groups: list[set[str]] = []
        for names in owners.values():
            if len(names) < 2:
                continue
            overlapping = [g for g in groups if g & names]
            merged = set(names).union(*overlapping)
            groups = [g for g in groups if not g & names] + [merged]
        return groups

    def resolve(self) -> list[ResolutionResult]:
        """Compute the next version of every project.

        A bump starts from the project's last released version (or the
        working tree's, before a first release). When the working
        tree already holds that bump or more, the project is forwarded:
        its version stays and only its marker moves.

        Returns:
            One ResolutionResult per project, dependencies first. Projects
            that failed to read or scan carry a failure and no new version.

        Raises:
            CyclicDependency: If the graph has a cycle and cycles == "reject".
            ConfigError: If the dependency graph refers to unknown projects.
        """
        graph = DependencyGraph.build(self.config.projects)
        order = graph.topological_order(self.config.cycles)

        self.head = self.repo.head()
        scanner = HistoryScanner(self.repo, self.markers, self.head)

        surveys: dict[str, _Survey] = {}
        failures: dict[str, ProjectFailure] = {}
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = {
                name: pool.submit(self._survey, self.projects[name], scanner)
                for name in order
            }
            for name, future in futures.items():
                try:
                    surveys[name] = future.result()
                except MonobumpError as exc:
                    failures[name] = ProjectFailure.from_exc(name, "scan", exc)

        own = {name: s.scan.severity for name, s in surveys.items()}
        base = {name: s.released or s.current for name, s in surveys.items()}
        groups = self._shared_groups(surveys)

        # A group raise can change what a member passes on, so propagate
        # again until every group agrees.
        propagator = BumpPropagator(self.config.projects, graph, self.config.cycles)
        while True:
            outcome = propagator.propagate(own, base, skip=failures)
            raised = False
            for group in groups:
                shared = combine(*(outcome[name].severity for name in group))
                for name in group:
                    if outcome[name].severity < shared:
                        own[name] = shared
                        raised = True
            if not raised:
                break

        self._results = {}
        for name in order:
            if name in failures:
                self._results[name] = ResolutionResult(
                    project=name, failure=failures[name]
                )
                continue
            survey, prop = surveys[name], outcome[name]
            result = ResolutionResult(
                project=name,
                previous=str(survey.current),
                new=str(survey.current),
                severity=prop.severity,
                commits=survey.scan.commits,
                inherited_from=prop.inherited_from,
            )
            if prop.severity > Severity.NONE and prop.version is not None:
                if survey.released is not None and prop.version <= survey.current:
                    result.previous = str(survey.released)
                    result.forwarded = True
                else:
                    result.new = str(prop.version)
            self._results[name] = result
        self._resolved = dict(self._results)
        return list(self._results.values())

    # Write phase ----------------------------------------------------------

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(path, threading.Lock())

    def _write(
        self, project: ProjectConfig, location: VersionLocation, version: str
    ) -> tuple[Path, str]:
        """Write one location; returns its file and the text it replaced."""
        root = self.project_root(project)
        path = location_path(location, root)
        with self._lock_for(path):
            original = read_text(location, root)
            write_version(location, version, root)
        return path, original

    def _restore(self, written: Sequence[tuple[Path, str]]) -> str:
        """Put rewritten files back, newest write first.

        Returns a note for the failure message when a file cannot be put
        back, or an empty string.
        """
        stuck: list[str] = []
        for path, original in reversed(written):
            with self._lock_for(path):
                try:
                    path.write_bytes(original.encode("utf-8"))
                except OSError as exc:
                    stuck.append(f"{path}: {exc}")
        if not stuck:
            return ""
        return f" (could not restore {'; '.join(stuck)})"

    def _rollback(
        self,
        updated: ResolutionResult,
        phase: Phase,
        exc: MonobumpError,
        written: Sequence[tuple[Path, str]],
    ) -> ResolutionResult:
        failure = ProjectFailure.from_exc(updated.project, phase, exc)
        failure.message += self._restore(written)
        updated.failure = failure
        updated.pinned = []
        return updated

    def pending_pins(
        self, result: ResolutionResult
    ) -> list[tuple[str, VersionLocation, str]]:
        """Pins in a project to rewrite: (dependency, location, version)."""
        project = self.projects[result.project]
        pins: list[tuple[str, VersionLocation, str]] = []
        for dep, spec in sorted(project.depends.items()):
            dep_result = self._resolved.get(dep)
            if dep_result is None or not dep_result.changed:
                continue
            pins.extend((dep, loc, str(dep_result.new)) for loc in spec.pins)
        return pins

    def needs_apply(self, result: ResolutionResult) -> bool:
        return result.ok and (result.changed or bool(self.pending_pins(result)))

    def apply(self, result: ResolutionResult) -> ResolutionResult:
        """Write a project's new version, then advance its marker.

        Nothing is written while a pinned dependency has failed. The
        marker only moves after every write succeeded; if a write or the
        marker fails, the files already rewritten are put back. A failure
        is recorded on the returned result; nothing is raised for errors
        scoped to this project.
        """
        if not self.needs_apply(result):
            return result
        if self.head is None:
            raise RuntimeError("resolve() must run before apply()")

        project = self.projects[result.project]
        updated = result.model_copy(deep=True)
        if self.cancel.is_set():
            updated.failure = ProjectFailure(
                project=project.name,
                phase="write",
                error="Cancelled",
                message="run cancelled before this project was applied",
            )
            return updated

        pins = self.pending_pins(result)
        written: list[tuple[Path, str]] = []
        try:
            with self._guard:
                failed = {dep for dep, _, _ in pins if not self._results[dep].ok}
            if failed:
                raise DependencyNotApplied(
                    f"{', '.join(sorted(failed))} failed to release; "
                    "pins left unchanged"
                )
            if result.changed and not result.forwarded:
                for location in project.versions:
                    written.append(self._write(project, location, str(result.new)))
            for _, location, version in pins:
                written.append(self._write(project, location, version))
                updated.pinned.append(location.describe())
        except MonobumpError as exc:
            return self._rollback(updated, "write", exc, written)

        if result.changed:
            try:
                self.markers.record(project, str(result.new), self.head)
            except MonobumpError as exc:
                return self._rollback(updated, "marker", exc, written)

        updated.applied = True
        return updated

    def _apply_after(
        self, result: ResolutionResult, waits: list[Future[ResolutionResult]]
    ) -> ResolutionResult:
        wait(waits)
        updated = self.apply(result)
        with self._guard:
            self._results[updated.project] = updated
        return updated

    def apply_all(
        self, results: Iterable[ResolutionResult]
    ) -> list[ResolutionResult]:
        """Apply results concurrently; the returned list keeps their order.

        Results must come dependencies first, as resolve() returns them. A
        project with pins starts once the dependencies it pins are done,
        so it sees whether they failed.
        """
        results = list(results)
        futures: dict[str, Future[ResolutionResult]] = {}
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            try:
                for result in results:
                    deps = {dep for dep, _, _ in self.pending_pins(result)}
                    waits = [futures[dep] for dep in sorted(deps) if dep in futures]
                    futures[result.project] = pool.submit(
                        self._apply_after, result, waits
                    )
                applied = [futures[r.project].result() for r in results]
            except KeyboardInterrupt:
                self.cancel.set()
                raise
        return applied

    def set_version(self, project: ProjectConfig, version: str) -> semver.Version:
        """Write a version to every location of a project by hand.

        The marker is left alone; the next release forwards the project
        if the version already covers what its history asks for.

        Raises:
            MalformedVersion: If version is not a semantic version.
            LocationError: If a location cannot be found.
            WriteError: If a file cannot be written.
        """
        parsed = parse_version(version)
        written: list[tuple[Path, str]] = []
        try:
            for location in project.versions:
                written.append(self._write(project, location, str(parsed)))
        except MonobumpError:
            self._restore(written)
            raise
        return parsed

    def run(self, *, apply: bool = True) -> RunReport:
        """Resolve every project and, unless apply is False, apply them."""
        results = self.resolve()
        if apply:
            results = self.apply_all(results)
        return RunReport(head=self.head, results=results)
