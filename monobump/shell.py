"""Shell, git and gh utilities.

Thin wrappers around subprocess calls for the external tools monobump
drives (git, gh, gpg), plus the output formatting helpers used by the
release pipeline and CLI.
"""

from __future__ import annotations

import subprocess
from pathlib import Path


def git(*args: str, cwd: Path | str | None = None, check: bool = True) -> str:
    """Run a git command and return stdout.

    Args:
        *args: Arguments to pass to git (e.g., "rev-parse", "HEAD").
        cwd: Repository directory; defaults to the current directory.
        check: If True (default), raise on non-zero exit. Set to False
               for commands that may legitimately fail (e.g., ref lookup).

    Returns:
        Stripped stdout from the git command.
    """
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=check
    )
    return result.stdout.strip()


def gh(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> str:
    """Run a GitHub CLI command and return stdout."""
    result = subprocess.run(
        ["gh", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
        timeout=timeout,
    )
    return result.stdout.strip()


def run(
    *args: str,
    input: bytes | None = None,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[bytes]:
    """Run an arbitrary command, capturing its binary output.

    Args:
        *args: Command and arguments (e.g., "gpg", "--detach-sign").
        input: Bytes fed to the command's stdin.
        cwd: Working directory for the command.
        check: If True (default), raise on non-zero exit.
        timeout: Seconds before the command is killed (TimeoutExpired).

    Returns:
        CompletedProcess with returncode and raw stdout/stderr.
    """
    return subprocess.run(
        args,
        input=input,
        cwd=cwd,
        capture_output=True,
        check=check,
        timeout=timeout,
    )


def step(msg: str) -> None:
    """Print a visually distinct step header.

    Used to separate major phases of the release pipeline in terminal output.
    """
    print(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")
