"""Release pipeline: configure → resolve → apply → changelog → sign → publish.

This module orchestrates a monobump release:
1. Load and validate the repository configuration
2. Resolve every project's next version from its history and dependencies
3. Write the new versions and advance each project's release marker
4. Prepend changelog entries for projects that configure a changelog
5. Optionally commit the rewritten files
6. Sign the release notes and publish a release per bumped project

Steps 3 onwards are skipped on a dry run. Per-project failures never stop
the other projects; they are collected on the returned report.
"""

from __future__ import annotations

import threading
from pathlib import Path

from .changelog import build_context, prepend_entry
from .config import load_config
from .errors import MonobumpError
from .history import GitRepository, Repository, TagMarkers
from .locators import location_path
from .models import MonobumpConfig, ProjectFailure, ResolutionResult, RunReport
from .resolver import Resolver
from .services import (
    GitHubPublisher,
    GpgSigner,
    JinjaRenderer,
    Publisher,
    Renderer,
    Signer,
    call_with_timeout,
)
from .shell import git, step


def describe(result: ResolutionResult) -> str:
    """One line summarizing a result for terminal output."""
    if result.failure is not None:
        return f"FAILED {result.failure}"
    if not result.changed:
        return f"{result.project} {result.previous} (unchanged)"
    line = f"{result.project} {result.previous} → {result.new}"
    line += f" ({result.severity.label}"
    if result.forwarded:
        line += ", already set"
    if result.inherited_from:
        line += f", via {', '.join(result.inherited_from)}"
    return line + ")"


def print_plan(results: list[ResolutionResult]) -> None:
    step("Resolving versions")
    for result in results:
        print(f"  {describe(result)}")


def write_changelogs(
    results: list[ResolutionResult],
    config: MonobumpConfig,
    root: Path,
    repo: Repository,
    renderer: Renderer,
) -> None:
    """Prepend a changelog entry for each applied project that has one."""
    pending = [
        r
        for r in results
        if r.applied and r.changed and config.project(r.project).changelog
    ]
    if not pending:
        return

    step("Writing changelogs")
    for result in pending:
        project = config.project(result.project)
        path = root / project.root / str(project.changelog)
        try:
            entry = renderer.render("changelog.md.j2", build_context(result, repo))
            prepend_entry(path, entry)
        except MonobumpError as exc:
            result.failure = ProjectFailure.from_exc(project.name, "changelog", exc)
            print(f"  {project.name}: FAILED {exc}")
            continue
        print(f"  {path.relative_to(root)}")


def changed_paths(
    results: list[ResolutionResult], config: MonobumpConfig, root: Path
) -> list[str]:
    """Repository-relative paths a release may have rewritten."""
    paths: set[Path] = set()
    for result in results:
        if not result.applied:
            continue
        project = config.project(result.project)
        project_root = root / project.root
        if result.changed:
            paths.update(location_path(loc, project_root) for loc in project.versions)
            if project.changelog:
                paths.add(project_root / project.changelog)
        for spec in project.depends.values():
            paths.update(location_path(loc, project_root) for loc in spec.pins)
    return sorted(str(p.relative_to(root)) for p in paths if p.exists())


def commit_release(
    results: list[ResolutionResult], config: MonobumpConfig, root: Path
) -> None:
    """Commit the rewritten version files and changelogs."""
    step("Committing release")
    paths = changed_paths(results, config, root)
    if not paths:
        print("  No changes to commit")
        return

    git("add", "--", *paths, cwd=root)
    if not git("diff", "--cached", "--name-only", cwd=root):
        print("  No changes to commit")
        return

    # Create commit with summary of version bumps
    summary = "\n".join(
        f"  {r.project}: {r.previous} → {r.new}"
        for r in results
        if r.applied and r.changed
    )
    git("commit", "-m", "chore: release", "-m", summary, cwd=root)
    print("  Committed")


def publish_releases(
    results: list[ResolutionResult],
    resolver: Resolver,
    renderer: Renderer,
    signer: Signer | None,
    publisher: Publisher | None,
    timeout: float,
) -> None:
    """Sign and publish release notes for each bumped project.

    A failure is recorded against the project in the sign or publish
    phase; its files and marker stay as they are.
    """
    released = [r for r in results if r.applied and r.changed]
    if not released or (signer is None and publisher is None):
        return

    step("Publishing releases")
    for result in released:
        project = resolver.projects[result.project]
        tag = resolver.markers.tag_name(project, str(result.new))
        phase = "sign"
        try:
            notes = renderer.render(
                "release-notes.md.j2", build_context(result, resolver.repo)
            )
            if signer is not None:
                signature = call_with_timeout(
                    signer.sign, notes.encode("utf-8"), timeout=timeout
                )
                notes += "\n```\n" + signature.decode("ascii").strip() + "\n```\n"
            if publisher is None:
                print(f"  {tag}: signed")
                continue
            phase = "publish"
            url = call_with_timeout(
                publisher.publish,
                tag,
                f"{project.name} {result.new}",
                notes,
                timeout=timeout,
            )
        except MonobumpError as exc:
            result.failure = ProjectFailure.from_exc(project.name, phase, exc)
            print(f"  {tag}: FAILED [{phase}] {exc}")
            continue
        print(f"  {tag}: {url}")


def run_release(
    root: Path | None = None,
    *,
    dry_run: bool = False,
    commit: bool = False,
    publish: bool = True,
    sign: bool = True,
    concurrency: int | None = None,
    cancel: threading.Event | None = None,
) -> RunReport:
    """Execute the full release pipeline.

    Args:
        root: Repository root; defaults to the current directory.
        dry_run: Only resolve and print the plan; write nothing.
        commit: Commit rewritten files after applying.
        publish: Create a GitHub release per bumped project.
        sign: Sign release notes with gpg.
        concurrency: Worker threads; overrides the configured value.
        cancel: Event that stops further applies once set.

    Returns:
        The report of every project's result.

    Raises:
        ConfigError: If the configuration is missing or invalid.
        CyclicDependency: If projects depend on each other in a cycle and
            the configuration rejects cycles.
    """
    root = root or Path.cwd()

    # Phase 1: Configuration
    step("Loading configuration")
    config = load_config(root)
    print(f"  {len(config.projects)} projects")

    repo = GitRepository(root)
    resolver = Resolver(
        repo,
        config,
        root,
        TagMarkers(repo, config.tag_format),
        concurrency=concurrency,
        cancel=cancel,
    )

    # Phase 2: Resolution
    results = resolver.resolve()
    print_plan(results)
    if dry_run or not any(resolver.needs_apply(r) for r in results):
        if not dry_run:
            print("\nNothing to release.")
        return RunReport(head=resolver.head, results=results)

    # Phase 3: Apply
    step("Writing versions and markers")
    results = resolver.apply_all(results)
    for result in results:
        if result.applied or result.failure is not None:
            print(f"  {describe(result)}")
        for pin in result.pinned:
            print(f"    pinned {pin}")

    # Phase 4: Changelogs and release
    renderer = JinjaRenderer()
    write_changelogs(results, config, root, repo, renderer)
    if commit:
        commit_release(results, config, root)
    timeout = config.service_timeout
    publish_releases(
        results,
        resolver,
        renderer,
        GpgSigner(timeout=timeout) if sign else None,
        GitHubPublisher(root, timeout=timeout) if publish else None,
        timeout,
    )

    report = RunReport(head=resolver.head, results=results)
    if report.ok:
        print(f"\n{'=' * 60}\nDone!\n{'=' * 60}")
    else:
        step(f"{len(report.failed)} project(s) failed")
        for result in report.failed:
            print(f"  {result.failure}")
    return report
