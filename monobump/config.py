"""Configuration discovery and validation.

Configuration is read from ``monobump.toml`` at the repository root, or
from the ``[tool.monobump]`` table of the root ``pyproject.toml``. The
first one found wins. Everything is validated up front so that a bad
config aborts the run before any history is scanned.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import ConfigError
from .models import MonobumpConfig
from .toml import get_tool_table, load_toml

CONFIG_FILE = "monobump.toml"
PYPROJECT_FILE = "pyproject.toml"


def find_config_data(root: Path) -> tuple[Path, dict[str, Any]]:
    """Locate the raw configuration for a repository.

    Returns:
        Tuple of (file the config came from, raw config mapping).

    Raises:
        ConfigError: If no configuration exists.
    """
    standalone = root / CONFIG_FILE
    if standalone.exists():
        return standalone, load_toml(standalone).unwrap()

    pyproject = root / PYPROJECT_FILE
    if pyproject.exists():
        table = get_tool_table(load_toml(pyproject), "monobump")
        if table is not None:
            return pyproject, table

    raise ConfigError(
        f"No configuration found. Create {CONFIG_FILE} or add a "
        f"[tool.monobump] table to {PYPROJECT_FILE}. Example:\n\n"
        "  [[tool.monobump.projects]]\n"
        '  name = "core"\n'
        '  root = "packages/core"\n'
        '  versions = [{ kind = "toml", file = "pyproject.toml", '
        'key = "project.version" }]'
    )


def parse_config(data: dict[str, Any], source: str = "<config>") -> MonobumpConfig:
    """Validate raw configuration data.

    Raises:
        ConfigError: With every validation problem listed.
    """
    try:
        return MonobumpConfig.model_validate(data)
    except ValidationError as exc:
        problems = "\n".join(
            f"  - {'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"{source}: invalid configuration:\n{problems}") from exc


def load_config(root: Path) -> MonobumpConfig:
    """Find, read and validate the configuration for the repo at root."""
    path, data = find_config_data(root)
    config = parse_config(data, str(path.relative_to(root)))
    for project in config.projects:
        if not (root / project.root).is_dir():
            raise ConfigError(
                f"Project {project.name!r}: root {project.root!r} is not a directory"
            )
    return config
