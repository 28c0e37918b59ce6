"""TOML reading utilities.

Uses tomlkit so that documents survive a load/modify/save cycle with
their formatting and comments intact. This matters both for config files
and for the version files monobump rewrites in place.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import TOMLKitError

from .errors import ConfigError


def load_toml(path: Path) -> tomlkit.TOMLDocument:
    """Load and parse a TOML file.

    Returns a TOMLDocument that preserves formatting when modified and saved.

    Raises:
        ConfigError: If the file is not valid TOML.
    """
    try:
        return tomlkit.parse(path.read_text())
    except TOMLKitError as exc:
        raise ConfigError(f"{path}: invalid TOML: {exc}") from exc


def get_tool_table(doc: tomlkit.TOMLDocument, tool: str) -> dict[str, Any] | None:
    """Extract [tool.<tool>] from a pyproject.toml as plain Python data.

    Returns None when the table is absent.
    """
    table = doc.get("tool", {}).get(tool)
    if table is None:
        return None
    return table.unwrap() if hasattr(table, "unwrap") else dict(table)
