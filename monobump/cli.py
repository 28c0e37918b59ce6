"""CLI entry point for monobump."""

from __future__ import annotations

import argparse
import sys
from importlib.metadata import version as pkg_version
from pathlib import Path

from monobump.config import load_config
from monobump.errors import MonobumpError
from monobump.graph import DependencyGraph
from monobump.history import GitRepository, HistoryScanner, TagMarkers
from monobump.models import MonobumpConfig, ProjectConfig
from monobump.pipeline import run_release
from monobump.resolver import Resolver

__version__ = pkg_version("monobump")


def _fatal(msg: str) -> None:
    """Print error and exit."""
    print(f"Error: {msg}", file=sys.stderr)
    sys.exit(1)


def _select(config: MonobumpConfig, names: list[str]) -> list[ProjectConfig]:
    """Projects named on the command line, or all of them."""
    if not names:
        return list(config.projects)
    selected = []
    for name in names:
        try:
            selected.append(config.project(name))
        except KeyError:
            _fatal(f"Unknown project: {name}")
    return selected


def cmd_show(args: argparse.Namespace) -> None:
    """Print each project's current version (and last released version)."""
    root = Path(args.root)
    config = load_config(root)
    resolver = Resolver(GitRepository(root), config, root)

    failed = False
    width = max(len(p.name) for p in config.projects)
    for project in config.projects:
        try:
            line = f"{project.name:<{width}}  {resolver.current_version(project)}"
            if args.prev:
                released = resolver.released_version(project)
                line += f"  (released: {released or 'never'})"
        except MonobumpError as exc:
            failed = True
            line = f"{project.name:<{width}}  ERROR {exc}"
        print(line)
    if failed:
        sys.exit(1)


def cmd_check(args: argparse.Namespace) -> None:
    """Validate the config, every version location and every marker."""
    root = Path(args.root)
    config = load_config(root)
    DependencyGraph.build(config.projects).topological_order(config.cycles)
    repo = GitRepository(root)
    head = repo.head()
    resolver = Resolver(repo, config, root)

    failed = False
    width = max(len(p.name) for p in config.projects)
    for project in config.projects:
        try:
            line = f"{project.name:<{width}}  {resolver.check(project, head)}  ok"
        except MonobumpError as exc:
            failed = True
            line = f"{project.name:<{width}}  ERROR {exc}"
        print(line)
    if failed:
        sys.exit(1)


def cmd_changes(args: argparse.Namespace) -> None:
    """List the commits that count towards each project's next release."""
    root = Path(args.root)
    config = load_config(root)
    repo = GitRepository(root)
    scanner = HistoryScanner(repo, TagMarkers(repo, config.tag_format), repo.head())

    failed = False
    for project in _select(config, args.projects):
        try:
            result = scanner.scan(project)
        except MonobumpError as exc:
            failed = True
            print(f"{project.name}: ERROR {exc}")
            continue
        print(f"{project.name}: {result.severity.label}")
        for commit_id in result.commits:
            print(f"  {commit_id[:7]} {repo.commit(commit_id).subject}")
    if failed:
        sys.exit(1)


def cmd_files(args: argparse.Namespace) -> None:
    """List the changed files attributed to each project since its release."""
    root = Path(args.root)
    config = load_config(root)
    repo = GitRepository(root)
    scanner = HistoryScanner(repo, TagMarkers(repo, config.tag_format), repo.head())

    failed = False
    for project in _select(config, args.projects):
        try:
            files = scanner.files(project)
        except MonobumpError as exc:
            failed = True
            print(f"{project.name}: ERROR {exc}")
            continue
        print(f"{project.name}:")
        for path in files:
            print(f"  {path}")
    if failed:
        sys.exit(1)


def cmd_set(args: argparse.Namespace) -> None:
    """Write a version to every location of one project."""
    root = Path(args.root)
    config = load_config(root)
    (project,) = _select(config, [args.project])
    resolver = Resolver(GitRepository(root), config, root)
    version = resolver.set_version(project, args.version)
    print(f"{project.name}  {version}")


def cmd_plan(args: argparse.Namespace) -> None:
    """Show what a release would do, without writing anything."""
    report = run_release(Path(args.root), dry_run=True, concurrency=args.concurrency)
    if not report.ok:
        sys.exit(1)


def cmd_release(args: argparse.Namespace) -> None:
    """Write new versions, advance markers, then sign and publish."""
    report = run_release(
        Path(args.root),
        commit=args.commit,
        publish=not args.no_publish,
        sign=not args.no_sign,
        concurrency=args.concurrency,
    )
    if not report.ok:
        sys.exit(1)


def _add_concurrency(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-j",
        "--concurrency",
        type=int,
        default=None,
        help="Worker threads for scans and writes. (default: from config)",
    )


def cli(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="monobump",
        description="Monorepo versioning from conventional commits.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-C",
        "--root",
        default=".",
        help="Repository root. (default: current directory)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # show subcommand
    show_parser = subparsers.add_parser(
        "show", help="Print the current version of every project."
    )
    show_parser.add_argument(
        "--prev",
        action="store_true",
        help="Also print the version at each project's last release.",
    )
    show_parser.set_defaults(func=cmd_show)

    # check subcommand
    check_parser = subparsers.add_parser(
        "check", help="Validate config, version locations and markers."
    )
    check_parser.set_defaults(func=cmd_check)

    # changes subcommand
    changes_parser = subparsers.add_parser(
        "changes", help="List commits counted towards each next release."
    )
    changes_parser.add_argument(
        "projects", nargs="*", help="Projects to list. (default: all)"
    )
    changes_parser.set_defaults(func=cmd_changes)

    # files subcommand
    files_parser = subparsers.add_parser(
        "files", help="List changed files attributed to each project."
    )
    files_parser.add_argument(
        "projects", nargs="*", help="Projects to list. (default: all)"
    )
    files_parser.set_defaults(func=cmd_files)

    # set subcommand
    set_parser = subparsers.add_parser(
        "set", help="Write a version to one project by hand."
    )
    set_parser.add_argument("project", help="Project name.")
    set_parser.add_argument("version", help="New semantic version.")
    set_parser.set_defaults(func=cmd_set)

    # plan subcommand
    plan_parser = subparsers.add_parser(
        "plan", help="Resolve next versions without writing anything."
    )
    _add_concurrency(plan_parser)
    plan_parser.set_defaults(func=cmd_plan)

    # release subcommand
    release_parser = subparsers.add_parser(
        "release", help="Write new versions, tag, sign and publish."
    )
    release_parser.add_argument(
        "--commit", action="store_true", help="Commit the rewritten files."
    )
    release_parser.add_argument(
        "--no-publish", action="store_true", help="Skip GitHub releases."
    )
    release_parser.add_argument(
        "--no-sign", action="store_true", help="Skip signing release notes."
    )
    _add_concurrency(release_parser)
    release_parser.set_defaults(func=cmd_release)

    args = parser.parse_args(argv)
    try:
        args.func(args)
    except MonobumpError as exc:
        _fatal(str(exc))
