"""monobump: version every project in a monorepo from its commit history.

Each project's next version comes from the conventional-commit severity of
the commits that touched it since its last release, raised by whatever its
dependencies' bumps propagate to it.
"""
