"""Commit history: repository access, release markers and scanning.

The scanner walks the commits reachable from the repository head but not
from a project's last-release marker, classifies each one against the
project, and keeps the strongest severity seen. Each project gets its own
walk; nothing about one scan leaks into another.
"""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol

import semver
from pydantic import BaseModel, Field

from .classify import classify, touches
from .errors import MalformedVersion, MarkerNotFound, UnreachableCommit, WriteError
from .models import Commit, ProjectConfig
from .shell import git, run
from .versions import Severity, combine, parse_version


class Repository(Protocol):
    """Read access to history plus tag creation.

    ``commit`` raises UnreachableCommit for ids it cannot load; ``tags``
    returns names matching a glob, highest version first. ``between``
    lists the ids reachable from head but not from stop, without loading
    anything behind stop.
    """

    def head(self) -> str: ...

    def resolve(self, ref: str) -> str | None: ...

    def commit(self, commit_id: str) -> Commit: ...

    def between(self, head: str, stop: str | None) -> list[str]: ...

    def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...

    def file_at(self, commit_id: str, path: str) -> bytes | None: ...

    def tags(self, pattern: str) -> list[str]: ...

    def create_tag(
        self, name: str, commit_id: str, message: str | None = None
    ) -> None: ...


class GitRepository:
    """Repository backed by the git command line."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._cache: dict[str, Commit] = {}
        self._lock = threading.Lock()

    def head(self) -> str:
        return git("rev-parse", "HEAD", cwd=self.root)

    def resolve(self, ref: str) -> str | None:
        out = git(
            "rev-parse",
            "--verify",
            "--quiet",
            f"{ref}^{{commit}}",
            cwd=self.root,
            check=False,
        )
        return out or None

    def commit(self, commit_id: str) -> Commit:
        with self._lock:
            cached = self._cache.get(commit_id)
        if cached is not None:
            return cached

        try:
            header = git(
                "show", "-s", "--format=%H%x00%P%x00%B", commit_id, cwd=self.root
            )
            names = git(
                "show",
                "--format=",
                "--name-only",
                "--no-renames",
                "-z",
                commit_id,
                cwd=self.root,
            )
        except subprocess.CalledProcessError as exc:
            raise UnreachableCommit(f"Cannot read commit {commit_id}") from exc

        sha, parents, message = header.split("\x00", 2)
        commit = Commit(
            id=sha,
            message=message.strip(),
            parents=tuple(parents.split()),
            files=frozenset(n.strip() for n in names.split("\x00") if n.strip()),
        )
        with self._lock:
            self._cache[commit_id] = commit
            self._cache[sha] = commit
        return commit

    def between(self, head: str, stop: str | None) -> list[str]:
        args = ["rev-list", "--topo-order", head]
        if stop:
            args.append(f"^{stop}")
        try:
            out = git(*args, cwd=self.root)
        except subprocess.CalledProcessError as exc:
            raise UnreachableCommit(
                f"Cannot list commits from {head}: {exc.stderr}"
            ) from exc
        return out.split()

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = run(
            "git",
            "merge-base",
            "--is-ancestor",
            ancestor,
            descendant,
            cwd=self.root,
            check=False,
        )
        return result.returncode == 0

    def file_at(self, commit_id: str, path: str) -> bytes | None:
        result = run(
            "git", "show", f"{commit_id}:{path}", cwd=self.root, check=False
        )
        return result.stdout if result.returncode == 0 else None

    def tags(self, pattern: str) -> list[str]:
        out = git(
            "tag", "--list", pattern, "--sort=-v:refname", cwd=self.root, check=False
        )
        return out.splitlines() if out else []

    def create_tag(
        self, name: str, commit_id: str, message: str | None = None
    ) -> None:
        args = ["tag", name, commit_id]
        if message:
            args = ["tag", "-a", name, commit_id, "-m", message]
        try:
            git(*args, cwd=self.root)
        except subprocess.CalledProcessError as exc:
            raise WriteError(f"Cannot create tag {name}: {exc.stderr}") from exc


class TagMarkers:
    """Last-release markers stored as git tags.

    A project's marker is its newest tag matching the tag format with a
    valid version in it (for example ``core/v1.4.0``). A marker set in
    the project config is used until the project has been tagged at
    least once.
    """

    def __init__(
        self, repo: Repository, tag_format: str = "{name}/v{version}"
    ) -> None:
        self.repo = repo
        self.tag_format = tag_format

    def tag_name(self, project: ProjectConfig, version: str) -> str:
        return self.tag_format.format(name=project.name, version=version)

    def version_of(self, project: ProjectConfig, tag: str) -> semver.Version | None:
        """Version a release tag names, or None if it is not a release tag."""
        prefix, _, suffix = self.tag_format.format(
            name=project.name, version="\x00"
        ).partition("\x00")
        if not tag.startswith(prefix) or not tag.endswith(suffix):
            return None
        try:
            return parse_version(tag[len(prefix) : len(tag) - len(suffix)])
        except MalformedVersion:
            return None

    def latest(self, project: ProjectConfig) -> tuple[str, semver.Version] | None:
        """Commit id and version of the project's newest release tag."""
        pattern = self.tag_format.format(name=project.name, version="*")
        for tag in self.repo.tags(pattern):
            version = self.version_of(project, tag)
            if version is None:
                continue
            commit_id = self.repo.resolve(tag)
            if commit_id is not None:
                return commit_id, version
        return None

    def find(self, project: ProjectConfig, head: str | None = None) -> str | None:
        """Commit id of a project's last release, or None for a first release.

        With head given, the marker must also be an ancestor of head.

        Raises:
            MarkerNotFound: If the configured marker does not resolve, or
                the marker is not in head's history (a rewritten branch).
        """
        configured = None
        if project.marker:
            configured = self.repo.resolve(project.marker)
            if configured is None:
                raise MarkerNotFound(
                    f"{project.name}: marker {project.marker!r} is not in history"
                )

        latest = self.latest(project)
        marker = latest[0] if latest else configured

        if marker and head and not self.repo.is_ancestor(marker, head):
            raise MarkerNotFound(
                f"{project.name}: marker {marker} is not an ancestor of {head}"
            )
        return marker

    def record(
        self,
        project: ProjectConfig,
        version: str,
        commit_id: str,
        message: str | None = None,
    ) -> str:
        """Mark commit_id as the project's release of version."""
        name = self.tag_name(project, version)
        self.repo.create_tag(name, commit_id, message)
        return name


class ScanResult(BaseModel):
    """What a project's history says about its next version.

    Attributes:
        project: Project name.
        severity: Strongest severity across relevant commits.
        commits: Ids of commits with a non-NONE severity, newest first.
        marker: Commit id the scan stopped at, or None if it reached a root.
    """

    project: str
    severity: Severity = Severity.NONE
    commits: list[str] = Field(default_factory=list)
    marker: str | None = None


class HistoryScanner:
    """Walks history from a fixed head, one independent walk per project."""

    def __init__(self, repo: Repository, markers: TagMarkers, head: str) -> None:
        self.repo = repo
        self.markers = markers
        self.head = head

    def walk(self, stop: str | None = None) -> Iterator[Commit]:
        """Yield commits reachable from head but not from stop.

        Commits come out newest first in graph order: a commit is only
        yielded after every commit in range that has it as a parent.
        Each commit appears exactly once, however many paths reach it.
        Only commits inside the range are loaded.
        """
        commits = {
            commit_id: self.repo.commit(commit_id)
            for commit_id in self.repo.between(self.head, stop)
        }

        # Count children inside the range.
        children = dict.fromkeys(commits, 0)
        for commit in commits.values():
            for parent in commit.parents:
                if parent in children:
                    children[parent] += 1

        ready = [self.head] if self.head in commits else []
        while ready:
            commit = commits[ready.pop()]
            yield commit
            for parent in reversed(commit.parents):
                if parent in commits:
                    children[parent] -= 1
                    if children[parent] == 0:
                        ready.append(parent)

    def scan(self, project: ProjectConfig) -> ScanResult:
        """Accumulate a project's severity since its last release.

        Raises:
            MarkerNotFound: If the project's marker cannot be resolved or
                is not an ancestor of head.
            UnreachableCommit: If part of the history cannot be loaded.
        """
        marker = self.markers.find(project, self.head)
        result = ScanResult(project=project.name, marker=marker)
        for commit in self.walk(marker):
            severity = classify(commit, [project])[project.name]
            if severity > Severity.NONE:
                result.commits.append(commit.id)
                result.severity = combine(result.severity, severity)
        return result

    def files(self, project: ProjectConfig) -> list[str]:
        """Paths changed since the project's marker that belong to it."""
        marker = self.markers.find(project, self.head)
        found: set[str] = set()
        for commit in self.walk(marker):
            found.update(p for p in commit.files if touches(project, p))
        return sorted(found)
