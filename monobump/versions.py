"""Version parsing, bump severities and bump arithmetic.

Versions are ``semver.Version`` objects. Parsing is strict so that the
text written back to a file is always the text that was read: "1.2" is
rejected rather than padded to "1.2.0".
"""

from __future__ import annotations

from enum import IntEnum

import semver

from .errors import MalformedVersion


class Severity(IntEnum):
    """Semantic significance of a change, ordered from weakest to strongest."""

    NONE = 0
    PATCH = 1
    MINOR = 2
    MAJOR = 3

    @property
    def label(self) -> str:
        return self.name.lower()


def severity_from_name(name: str | Severity) -> Severity:
    """Look up a severity by its lowercase name ("none", "patch", ...).

    Raises:
        ValueError: If the name is not a known severity.
    """
    if isinstance(name, Severity):
        return name
    try:
        return Severity[name.strip().upper()]
    except KeyError:
        valid = ", ".join(s.label for s in Severity)
        raise ValueError(
            f"Unknown severity {name!r} (expected one of: {valid})"
        ) from None


def combine(*severities: Severity) -> Severity:
    """Combine severities observed for the same project.

    The strongest wins, which makes combination commutative, associative
    and idempotent. Combining nothing yields NONE.
    """
    return max(severities, default=Severity.NONE)


def parse_version(version_str: str) -> semver.Version:
    """Parse a full semantic version string.

    Accepts "MAJOR.MINOR.PATCH" with optional "-prerelease" and "+build"
    parts.

    Raises:
        MalformedVersion: If the text is not a valid semantic version.
    """
    try:
        return semver.Version.parse(version_str.strip())
    except (TypeError, ValueError) as exc:
        raise MalformedVersion(f"Not a semantic version: {version_str!r}") from exc


def apply_severity(version: semver.Version, severity: Severity) -> semver.Version:
    """Bump a version by the given severity.

    Examples:
        1.2.3 + MAJOR → 2.0.0
        1.2.3 + MINOR → 1.3.0
        1.2.3 + PATCH → 1.2.4
        1.2.3 + NONE → 1.2.3

    Pre-release and build metadata are dropped by any real bump.
    """
    if severity is Severity.MAJOR:
        return version.bump_major()
    if severity is Severity.MINOR:
        return version.bump_minor()
    if severity is Severity.PATCH:
        return version.bump_patch()
    return version
