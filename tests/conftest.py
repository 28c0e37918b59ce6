"""Shared test fixtures."""

from __future__ import annotations

import re
from collections.abc import Iterable
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any

import pytest

from monobump.config import parse_config
from monobump.errors import UnreachableCommit, WriteError
from monobump.models import Commit, MonobumpConfig


def _version_key(tag: str) -> list[Any]:
    return [int(p) if p.isdigit() else p for p in re.split(r"(\d+)", tag)]


class MemoryRepository:
    """In-memory history with file snapshots and tags.

    Commits get ids c001, c002, ... and, unless told otherwise, the
    previous head as their only parent.
    """

    def __init__(self) -> None:
        self.commits: dict[str, Commit] = {}
        self.snapshots: dict[str, dict[str, bytes]] = {}
        self.tag_refs: dict[str, str] = {}
        self.tag_messages: dict[str, str | None] = {}
        self.current: str | None = None

    def add_commit(
        self,
        message: str,
        files: Iterable[str] = (),
        parents: Iterable[str] | None = None,
        contents: dict[str, str] | None = None,
    ) -> str:
        commit_id = f"c{len(self.commits) + 1:03d}"
        if parents is None:
            parents = [self.current] if self.current else []
        parents = tuple(parents)
        snapshot = dict(self.snapshots.get(parents[0], {})) if parents else {}
        for path, text in (contents or {}).items():
            snapshot[path] = text.encode("utf-8")
        self.commits[commit_id] = Commit(
            id=commit_id,
            message=message,
            parents=parents,
            files=frozenset(files) | frozenset(contents or {}),
        )
        self.snapshots[commit_id] = snapshot
        self.current = commit_id
        return commit_id

    def tag(self, name: str, commit_id: str) -> None:
        self.tag_refs[name] = commit_id

    # Repository protocol

    def head(self) -> str:
        if self.current is None:
            raise UnreachableCommit("repository has no commits")
        return self.current

    def resolve(self, ref: str) -> str | None:
        if ref in self.tag_refs:
            return self.tag_refs[ref]
        return ref if ref in self.commits else None

    def commit(self, commit_id: str) -> Commit:
        try:
            return self.commits[commit_id]
        except KeyError:
            raise UnreachableCommit(f"Cannot read commit {commit_id}") from None

    def _reachable(self, start: str) -> list[str]:
        seen: dict[str, None] = {}
        stack = [start]
        while stack:
            commit_id = stack.pop()
            if commit_id in seen:
                continue
            if commit_id not in self.commits:
                raise UnreachableCommit(f"Cannot read commit {commit_id}")
            seen[commit_id] = None
            stack.extend(self.commits[commit_id].parents)
        return list(seen)

    def between(self, head: str, stop: str | None) -> list[str]:
        excluded = set(self._reachable(stop)) if stop else set()
        return [c for c in self._reachable(head) if c not in excluded]

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return ancestor in self._reachable(descendant)

    def file_at(self, commit_id: str, path: str) -> bytes | None:
        return self.snapshots.get(commit_id, {}).get(path)

    def tags(self, pattern: str) -> list[str]:
        matching = [t for t in self.tag_refs if fnmatchcase(t, pattern)]
        return sorted(matching, key=_version_key, reverse=True)

    def create_tag(
        self, name: str, commit_id: str, message: str | None = None
    ) -> None:
        if name in self.tag_refs:
            raise WriteError(f"Cannot create tag {name}: already exists")
        self.tag_refs[name] = commit_id
        self.tag_messages[name] = message


def toml_version(file: str = "pyproject.toml") -> dict[str, str]:
    return {"kind": "toml", "file": file, "key": "project.version"}


def make_config(*projects: dict[str, Any], **settings: Any) -> MonobumpConfig:
    """Validated config from project tables (each needs name and versions)."""
    return parse_config({**settings, "projects": list(projects)})


def write_pyproject(directory: Path, name: str, version: str, extra: str = "") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "pyproject.toml"
    path.write_text(
        f'[project]\nname = "{name}"  # keep\nversion = "{version}"\n{extra}'
    )
    return path


@pytest.fixture
def repo() -> MemoryRepository:
    """An empty in-memory repository."""
    return MemoryRepository()


@pytest.fixture
def two_projects(tmp_path: Path) -> Path:
    """A workspace where app (1.0.0) depends on lib (1.2.3)."""
    write_pyproject(tmp_path / "lib", "lib", "1.2.3")
    write_pyproject(tmp_path / "app", "app", "1.0.0")
    return tmp_path
