"""Exception taxonomy for monobump.

Errors fall into two scopes:

- Whole-run errors (ConfigError, GraphError) abort a run before any
  file is touched.
- Per-project errors (LocationError, HistoryError, WriteError,
  ExternalServiceError) are caught by the resolver and recorded against
  the project; other projects carry on.
"""

from __future__ import annotations

from collections.abc import Iterable


class MonobumpError(Exception):
    """Base class for all monobump errors."""


class ConfigError(MonobumpError):
    """Project configuration is malformed or contradictory."""


class LocationError(MonobumpError):
    """A version location could not be read."""


class LocationNotFound(LocationError):
    """The file named by a version location does not exist."""


class AddressNotFound(LocationError):
    """The location's key path, element path or pattern matched nothing."""


class AmbiguousAddress(LocationError):
    """The location's address matched more than one value."""


class MalformedVersion(LocationError):
    """Text that should hold a version is not a valid semantic version."""


class HistoryError(MonobumpError):
    """The commit history needed for a project could not be walked."""


class MarkerNotFound(HistoryError):
    """A project's last-release marker does not resolve to a commit."""


class UnreachableCommit(HistoryError):
    """A commit referenced by the history cannot be loaded."""


class GraphError(MonobumpError):
    """The dependency graph cannot be used for propagation."""


class CyclicDependency(GraphError):
    """Projects depend on each other in a cycle."""

    def __init__(self, involved: Iterable[str]) -> None:
        self.involved = sorted(involved)
        super().__init__(
            f"Dependency cycle detected involving: {', '.join(self.involved)}"
        )


class WriteError(MonobumpError):
    """A version file or changelog could not be written."""


class DependencyNotApplied(WriteError):
    """A dependency whose version is pinned here failed to release."""


class ExternalServiceError(MonobumpError):
    """Signing, publishing or rendering failed or timed out."""
