"""Changelog entries and release notes for bumped projects."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .errors import WriteError
from .history import Repository
from .models import ResolutionResult

DEFAULT_HEADER = "# Changelog\n\n"


def build_context(result: ResolutionResult, repo: Repository) -> dict[str, Any]:
    """Template context for one project's release.

    Commits are listed newest first, with their subject line and a short
    id. There are no dates, so the same release always renders the same.
    """
    commits = []
    for commit_id in result.commits:
        commit = repo.commit(commit_id)
        commits.append(
            {"id": commit.id, "short_id": commit.id[:7], "subject": commit.subject}
        )
    return {
        "project": result.project,
        "previous": result.previous,
        "new": result.new,
        "severity": result.severity.label,
        "commits": commits,
        "inherited_from": result.inherited_from,
    }


def prepend_entry(path: Path, entry: str) -> None:
    """Insert entry at the top of a changelog, below its title.

    A missing file is created with a default title. An existing file
    whose first line is a level-one heading keeps it as the first line.

    Raises:
        WriteError: If the changelog cannot be read or written.
    """
    try:
        existing = path.read_text(encoding="utf-8") if path.exists() else ""
    except (OSError, UnicodeDecodeError) as exc:
        raise WriteError(f"Cannot read changelog {path}: {exc}") from exc

    if not existing:
        head, body = DEFAULT_HEADER, ""
    elif existing.startswith("# "):
        title, _, rest = existing.partition("\n")
        head, body = f"{title}\n\n", rest.lstrip("\n")
    else:
        head, body = "", existing

    text = head + entry.rstrip("\n") + "\n"
    if body:
        text += "\n" + body
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise WriteError(f"Cannot write changelog {path}: {exc}") from exc
