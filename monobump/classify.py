"""Commit classification: which projects a commit touches, and how much.

A commit is relevant to a project when one of its changed files lies
under the project's root, matches an include glob and matches no exclude
glob. Its severity for that project comes from the first commit-message
rule that matches. Everything here is a pure function of the commit and
the project configuration.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from fnmatch import fnmatchcase
from functools import lru_cache

from .models import Commit, ProjectConfig, SeverityRule
from .versions import Severity

# Conventional-commit defaults, tried in order.
DEFAULT_RULES: tuple[SeverityRule, ...] = (
    SeverityRule(pattern=r"^BREAKING[ -]CHANGE:", severity=Severity.MAJOR),
    SeverityRule(pattern=r"\A\s*\w+(\([^)]*\))?!:", severity=Severity.MAJOR),
    SeverityRule(pattern=r"(?i)\A\s*breaking\b", severity=Severity.MAJOR),
    SeverityRule(pattern=r"(?i)\A\s*feat(ure)?\b", severity=Severity.MINOR),
    SeverityRule(
        pattern=r"(?i)\A\s*(fix|perf|refactor|revert|build|deps)\b",
        severity=Severity.PATCH,
    ),
)


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.MULTILINE)


def _glob_match(path: str, pattern: str) -> bool:
    if fnmatchcase(path, pattern):
        return True
    # "**/x" should also match "x" at the top of the project.
    while pattern.startswith("**/"):
        pattern = pattern[3:]
        if fnmatchcase(path, pattern):
            return True
    return False


def relative_to_root(path: str, root: str) -> str | None:
    """Path relative to a project root, or None if it lies outside it.

    Examples:
        relative_to_root("core/src/x.py", "core") → "src/x.py"
        relative_to_root("lib/a.py", "core") → None
        relative_to_root("a.py", ".") → "a.py"
    """
    if root in ("", "."):
        return path
    prefix = root.rstrip("/") + "/"
    if path.startswith(prefix):
        return path[len(prefix) :]
    return None


def touches(project: ProjectConfig, path: str) -> bool:
    """Whether a changed file (repo-relative path) belongs to a project."""
    rel = relative_to_root(path, project.root)
    if rel is None:
        return False
    if not any(_glob_match(rel, pattern) for pattern in project.include):
        return False
    return not any(_glob_match(rel, pattern) for pattern in project.exclude)


def rules_for(project: ProjectConfig) -> tuple[SeverityRule, ...]:
    """A project's own rules followed by the defaults (unless disabled)."""
    if project.default_rules:
        return project.rules + DEFAULT_RULES
    return project.rules


def severity_for(message: str, rules: Iterable[SeverityRule]) -> Severity:
    """Severity of a commit message: the first matching rule wins.

    Examples:
        "feat: add thing" → MINOR
        "fix(core)!: drop py2" → MAJOR
        "docs: typo" → NONE
    """
    for rule in rules:
        if _compiled(rule.pattern).search(message):
            return rule.severity
    return Severity.NONE


def classify(
    commit: Commit, projects: Iterable[ProjectConfig]
) -> dict[str, Severity]:
    """Classify a commit against every project it touches.

    Args:
        commit: The commit to classify.
        projects: Projects to check; each is judged independently.

    Returns:
        Map of project name → severity for every given project. Projects
        the commit does not touch map to NONE.
    """
    result: dict[str, Severity] = {}
    for project in projects:
        if any(touches(project, path) for path in commit.files):
            result[project.name] = severity_for(commit.message, rules_for(project))
        else:
            result[project.name] = Severity.NONE
    return result
