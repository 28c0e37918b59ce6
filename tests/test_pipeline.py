"""Tests for monobump.pipeline."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest
from conftest import MemoryRepository, make_config, toml_version

from monobump.errors import ExternalServiceError
from monobump.models import ProjectFailure, ResolutionResult
from monobump.pipeline import (
    changed_paths,
    commit_release,
    describe,
    publish_releases,
    run_release,
    write_changelogs,
)
from monobump.resolver import Resolver
from monobump.services import JinjaRenderer
from monobump.versions import Severity

CONFIG = """\
[[projects]]
name = "lib"
root = "lib"
changelog = "CHANGELOG.md"
versions = [{ kind = "toml", file = "pyproject.toml", key = "project.version" }]

[[projects]]
name = "app"
root = "app"
depends = ["lib"]
versions = [{ kind = "toml", file = "pyproject.toml", key = "project.version" }]
"""


def _applied(
    project: str, previous: str, new: str, **kwargs: object
) -> ResolutionResult:
    return ResolutionResult(
        project=project, previous=previous, new=new, applied=True, **kwargs
    )


def _config(changelog: str | None = "CHANGELOG.md"):  # type: ignore[no-untyped-def]
    return make_config(
        {
            "name": "lib",
            "root": "lib",
            "versions": [toml_version()],
            "changelog": changelog,
        },
        {
            "name": "app",
            "root": "app",
            "versions": [toml_version()],
            "depends": ["lib"],
        },
    )


@pytest.fixture
def workspace(two_projects: Path) -> Path:
    (two_projects / "monobump.toml").write_text(CONFIG)
    return two_projects


@pytest.fixture
def history(repo: MemoryRepository) -> MemoryRepository:
    """lib and app released at c001, then a fix to lib."""
    first = repo.add_commit("feat: initial import")
    repo.tag("lib/v1.2.3", first)
    repo.tag("app/v1.0.0", first)
    repo.add_commit("fix: lib rounding", files=["lib/src/lib.py"])
    return repo


class TestDescribe:
    """Tests for describe()."""

    def test_bump_from_dependency(self) -> None:
        result = ResolutionResult(
            project="app",
            previous="1.0.0",
            new="1.1.0",
            severity=Severity.MINOR,
            inherited_from=["lib"],
        )
        assert describe(result) == "app 1.0.0 → 1.1.0 (minor, via lib)"

    def test_forwarded(self) -> None:
        result = ResolutionResult(
            project="lib",
            previous="1.2.3",
            new="2.0.0",
            severity=Severity.PATCH,
            forwarded=True,
        )
        assert describe(result) == "lib 1.2.3 → 2.0.0 (patch, already set)"

    def test_unchanged(self) -> None:
        result = ResolutionResult(project="app", previous="1.0.0", new="1.0.0")
        assert describe(result) == "app 1.0.0 (unchanged)"

    def test_failure(self) -> None:
        failure = ProjectFailure(
            project="app", phase="scan", error="MalformedVersion", message="bad"
        )
        result = ResolutionResult(project="app", failure=failure)
        assert describe(result) == "FAILED app [scan] MalformedVersion: bad"


class TestChangedPaths:
    """Tests for changed_paths()."""

    def test_versions_changelogs_and_pins(self, two_projects: Path) -> None:
        (two_projects / "lib/CHANGELOG.md").write_text("# Changelog\n")
        results = [_applied("lib", "1.2.3", "1.2.4"), _applied("app", "1.0.0", "1.0.0")]

        paths = changed_paths(results, _config(), two_projects)

        assert paths == ["lib/CHANGELOG.md", "lib/pyproject.toml"]

    def test_unapplied_results_are_ignored(self, two_projects: Path) -> None:
        results = [ResolutionResult(project="lib", previous="1.2.3", new="1.2.4")]
        assert changed_paths(results, _config(), two_projects) == []


class TestCommitRelease:
    """Tests for commit_release()."""

    @patch("monobump.pipeline.git")
    @patch("monobump.pipeline.step")
    def test_commits_rewritten_files(
        self, mock_step: MagicMock, mock_git: MagicMock, two_projects: Path
    ) -> None:
        mock_git.return_value = "lib/pyproject.toml"
        results = [_applied("lib", "1.2.3", "1.2.4")]

        commit_release(results, _config(changelog=None), two_projects)

        assert mock_git.call_args_list == [
            call("add", "--", "lib/pyproject.toml", cwd=two_projects),
            call("diff", "--cached", "--name-only", cwd=two_projects),
            call(
                "commit",
                "-m",
                "chore: release",
                "-m",
                "  lib: 1.2.3 → 1.2.4",
                cwd=two_projects,
            ),
        ]

    @patch("monobump.pipeline.git")
    @patch("monobump.pipeline.step")
    def test_nothing_staged(
        self, mock_step: MagicMock, mock_git: MagicMock, two_projects: Path
    ) -> None:
        mock_git.return_value = ""

        commit_release(
            [_applied("lib", "1.2.3", "1.2.4")], _config(changelog=None), two_projects
        )

        assert mock_git.call_count == 2

    @patch("monobump.pipeline.git")
    @patch("monobump.pipeline.step")
    def test_no_paths(
        self, mock_step: MagicMock, mock_git: MagicMock, two_projects: Path
    ) -> None:
        commit_release([], _config(), two_projects)
        mock_git.assert_not_called()


class TestWriteChangelogs:
    """Tests for write_changelogs()."""

    @patch("monobump.pipeline.step")
    def test_entry_for_applied_project(
        self, mock_step: MagicMock, two_projects: Path, history: MemoryRepository
    ) -> None:
        result = _applied(
            "lib", "1.2.3", "1.2.4", severity=Severity.PATCH, commits=["c002"]
        )

        write_changelogs([result], _config(), two_projects, history, JinjaRenderer())

        text = (two_projects / "lib/CHANGELOG.md").read_text()
        assert text == "# Changelog\n\n## lib 1.2.4\n\n- fix: lib rounding (c002)\n"
        assert result.ok

    @patch("monobump.pipeline.step")
    def test_failure_is_recorded(
        self, mock_step: MagicMock, two_projects: Path, history: MemoryRepository
    ) -> None:
        renderer = MagicMock()
        renderer.render.side_effect = ExternalServiceError("template broken")
        result = _applied("lib", "1.2.3", "1.2.4")

        write_changelogs([result], _config(), two_projects, history, renderer)

        assert result.failure is not None
        assert result.failure.phase == "changelog"
        assert not (two_projects / "lib/CHANGELOG.md").exists()

    @patch("monobump.pipeline.step")
    def test_projects_without_changelog_are_skipped(
        self, mock_step: MagicMock, two_projects: Path, history: MemoryRepository
    ) -> None:
        renderer = MagicMock()

        write_changelogs(
            [_applied("app", "1.0.0", "1.0.1")],
            _config(),
            two_projects,
            history,
            renderer,
        )

        renderer.render.assert_not_called()
        mock_step.assert_not_called()


class TestPublishReleases:
    """Tests for publish_releases()."""

    @pytest.fixture
    def resolver(self, two_projects: Path, history: MemoryRepository) -> Resolver:
        return Resolver(history, _config(), two_projects)

    @patch("monobump.pipeline.step")
    def test_signs_then_publishes(
        self, mock_step: MagicMock, resolver: Resolver
    ) -> None:
        signer, publisher = MagicMock(), MagicMock()
        signer.sign.return_value = b"-----BEGIN PGP SIGNATURE-----\n"
        publisher.publish.return_value = "https://example.invalid/lib"
        result = _applied("lib", "1.2.3", "1.2.4", severity=Severity.PATCH)

        publish_releases(
            [result], resolver, JinjaRenderer(), signer, publisher, timeout=5
        )

        signed = signer.sign.call_args.args[0].decode()
        tag, title, notes = publisher.publish.call_args.args
        assert tag == "lib/v1.2.4"
        assert title == "lib 1.2.4"
        assert notes.startswith(signed)
        assert notes.endswith("```\n-----BEGIN PGP SIGNATURE-----\n```\n")
        assert result.ok

    @patch("monobump.pipeline.step")
    def test_sign_failure_skips_publish(
        self, mock_step: MagicMock, resolver: Resolver
    ) -> None:
        signer, publisher = MagicMock(), MagicMock()
        signer.sign.side_effect = ExternalServiceError("no secret key")
        result = _applied("lib", "1.2.3", "1.2.4")

        publish_releases(
            [result], resolver, JinjaRenderer(), signer, publisher, timeout=5
        )

        assert result.failure is not None
        assert result.failure.phase == "sign"
        publisher.publish.assert_not_called()

    @patch("monobump.pipeline.step")
    def test_publish_failure(self, mock_step: MagicMock, resolver: Resolver) -> None:
        publisher = MagicMock()
        publisher.publish.side_effect = ExternalServiceError("rate limited")
        results = [_applied("lib", "1.2.3", "1.2.4"), _applied("app", "1.0.0", "1.0.1")]

        publish_releases(results, resolver, JinjaRenderer(), None, publisher, timeout=5)

        assert [r.failure.phase for r in results if r.failure] == ["publish", "publish"]
        assert publisher.publish.call_count == 2

    @patch("monobump.pipeline.step")
    def test_unchanged_projects_are_not_published(
        self, mock_step: MagicMock, resolver: Resolver
    ) -> None:
        publisher = MagicMock()

        publish_releases(
            [_applied("app", "1.0.0", "1.0.0")],
            resolver,
            JinjaRenderer(),
            None,
            publisher,
            timeout=5,
        )

        publisher.publish.assert_not_called()
        mock_step.assert_not_called()


class TestRunRelease:
    """Tests for run_release()."""

    @patch("monobump.pipeline.GitHubPublisher")
    @patch("monobump.pipeline.GpgSigner")
    @patch("monobump.pipeline.GitRepository")
    @patch("monobump.pipeline.step")
    def test_golden_path(
        self,
        mock_step: MagicMock,
        mock_repo: MagicMock,
        mock_signer: MagicMock,
        mock_publisher: MagicMock,
        workspace: Path,
        history: MemoryRepository,
    ) -> None:
        """lib fixed: lib and app bumped, tagged, changelogged, published."""
        mock_repo.return_value = history
        mock_signer.return_value.sign.return_value = b"SIG"
        mock_publisher.return_value.publish.return_value = "https://example.invalid"

        report = run_release(workspace)

        assert report.ok
        assert [(r.project, r.new) for r in report.succeeded] == [
            ("lib", "1.2.4"),
            ("app", "1.0.1"),
        ]
        assert history.tag_refs["lib/v1.2.4"] == "c002"
        assert history.tag_refs["app/v1.0.1"] == "c002"
        assert "## lib 1.2.4" in (workspace / "lib/CHANGELOG.md").read_text()
        mock_signer.assert_called_once_with(timeout=60.0)
        mock_publisher.assert_called_once_with(workspace, timeout=60.0)
        published = [c.args[0] for c in mock_publisher.return_value.publish.mock_calls]
        assert published == ["lib/v1.2.4", "app/v1.0.1"]

    @patch("monobump.pipeline.GitRepository")
    @patch("monobump.pipeline.step")
    def test_dry_run_writes_nothing(
        self,
        mock_step: MagicMock,
        mock_repo: MagicMock,
        workspace: Path,
        history: MemoryRepository,
    ) -> None:
        mock_repo.return_value = history
        before = (workspace / "lib/pyproject.toml").read_text()

        report = run_release(workspace, dry_run=True)

        assert [r.new for r in report.results] == ["1.2.4", "1.0.1"]
        assert not any(r.applied for r in report.results)
        assert (workspace / "lib/pyproject.toml").read_text() == before
        assert sorted(history.tag_refs) == ["app/v1.0.0", "lib/v1.2.3"]

    @patch("monobump.pipeline.publish_releases")
    @patch("monobump.pipeline.commit_release")
    @patch("monobump.pipeline.write_changelogs")
    @patch("monobump.pipeline.GitRepository")
    @patch("monobump.pipeline.step")
    def test_nothing_to_release_exits_early(
        self,
        mock_step: MagicMock,
        mock_repo: MagicMock,
        mock_changelogs: MagicMock,
        mock_commit: MagicMock,
        mock_publish: MagicMock,
        workspace: Path,
        repo: MemoryRepository,
    ) -> None:
        first = repo.add_commit("feat: initial import")
        repo.tag("lib/v1.2.3", first)
        repo.tag("app/v1.0.0", first)
        repo.add_commit("docs: readme", files=["lib/README.md"])
        mock_repo.return_value = repo

        report = run_release(workspace, commit=True)

        assert report.ok
        assert not any(r.changed for r in report.results)
        mock_changelogs.assert_not_called()
        mock_commit.assert_not_called()
        mock_publish.assert_not_called()

    @patch("monobump.pipeline.commit_release")
    @patch("monobump.pipeline.GitRepository")
    @patch("monobump.pipeline.step")
    def test_commit_without_publishing(
        self,
        mock_step: MagicMock,
        mock_repo: MagicMock,
        mock_commit: MagicMock,
        workspace: Path,
        history: MemoryRepository,
    ) -> None:
        mock_repo.return_value = history

        report = run_release(workspace, commit=True, publish=False, sign=False)

        assert report.ok
        mock_commit.assert_called_once()
        results, config, root = mock_commit.call_args.args
        assert root == workspace
        assert [r.project for r in results if r.applied] == ["lib", "app"]
