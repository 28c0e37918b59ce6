"""Tests for monobump.services."""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from monobump.errors import ExternalServiceError, WriteError
from monobump.services import (
    GitHubPublisher,
    GpgSigner,
    JinjaRenderer,
    call_with_timeout,
)


class TestGpgSigner:
    @patch("monobump.services.run")
    def test_detached_armored_signature(self, mock_run: MagicMock) -> None:
        mock_run.return_value = subprocess.CompletedProcess([], 0, b"SIG", b"")

        signature = GpgSigner(key="ABCD", timeout=5).sign(b"notes")

        assert signature == b"SIG"
        mock_run.assert_called_once_with(
            "gpg",
            "--batch",
            "--detach-sign",
            "--armor",
            "--local-user",
            "ABCD",
            input=b"notes",
            timeout=5,
        )

    @patch("monobump.services.run")
    def test_gpg_failure(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.CalledProcessError(
            2, ["gpg"], stderr=b"no secret key"
        )
        with pytest.raises(ExternalServiceError, match="no secret key"):
            GpgSigner().sign(b"notes")

    @patch("monobump.services.run")
    def test_gpg_missing(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = FileNotFoundError("gpg")
        with pytest.raises(ExternalServiceError, match="not installed"):
            GpgSigner().sign(b"notes")

    @patch("monobump.services.run")
    def test_gpg_timeout(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.TimeoutExpired(["gpg"], 3)
        with pytest.raises(ExternalServiceError, match="timed out after 3"):
            GpgSigner(timeout=3).sign(b"notes")


class TestGitHubPublisher:
    @patch("monobump.services.gh")
    @patch("monobump.services.git")
    def test_pushes_tag_then_creates_release(
        self, mock_git: MagicMock, mock_gh: MagicMock
    ) -> None:
        mock_gh.return_value = "https://github.com/o/r/releases/tag/core/v1.0.0"

        url = GitHubPublisher(Path("/repo")).publish("core/v1.0.0", "core 1.0.0", "n")

        assert url.endswith("core/v1.0.0")
        mock_git.assert_called_once_with(
            "push", "origin", "core/v1.0.0", cwd=Path("/repo")
        )
        mock_gh.assert_called_once_with(
            "release",
            "create",
            "core/v1.0.0",
            "--verify-tag",
            "--title",
            "core 1.0.0",
            "--notes",
            "n",
            cwd=Path("/repo"),
            timeout=None,
        )

    @patch("monobump.services.gh")
    @patch("monobump.services.git")
    def test_push_failure_skips_release(
        self, mock_git: MagicMock, mock_gh: MagicMock
    ) -> None:
        mock_git.side_effect = subprocess.CalledProcessError(
            1, ["git", "push"], stderr="rejected"
        )

        with pytest.raises(ExternalServiceError, match="rejected"):
            GitHubPublisher().publish("core/v1.0.0", "core 1.0.0", "n")

        mock_gh.assert_not_called()

    @patch("monobump.services.gh")
    @patch("monobump.services.git")
    def test_release_failure(self, mock_git: MagicMock, mock_gh: MagicMock) -> None:
        mock_gh.side_effect = subprocess.CalledProcessError(1, ["gh"], stderr="")
        with pytest.raises(ExternalServiceError, match="exit status 1"):
            GitHubPublisher().publish("core/v1.0.0", "core 1.0.0", "n")


class TestJinjaRenderer:
    def test_release_notes(self) -> None:
        context = {
            "project": "core",
            "previous": "1.0.0",
            "new": "1.1.0",
            "severity": "minor",
            "commits": [{"id": "abc1234567", "short_id": "abc1234", "subject": "x"}],
            "inherited_from": ["base"],
        }

        notes = JinjaRenderer().render("release-notes.md.j2", context)

        assert notes.startswith("**core** 1.0.0 → 1.1.0 (minor)\n")
        assert "### Changes" in notes
        assert "- x (abc1234)" in notes
        assert "Bumped because base changed." in notes

    def test_changelog_entry(self) -> None:
        context = {
            "project": "core",
            "new": "2.0.0",
            "commits": [],
            "inherited_from": ["a", "b"],
        }

        entry = JinjaRenderer().render("changelog.md.j2", context)

        assert entry.startswith("## core 2.0.0\n")
        assert "- Dependency updates: a, b" in entry

    def test_missing_template(self, tmp_path: Path) -> None:
        with pytest.raises(ExternalServiceError, match="Cannot read template"):
            JinjaRenderer(tmp_path).render("nope.j2", {})

    def test_broken_template(self, tmp_path: Path) -> None:
        (tmp_path / "bad.j2").write_text("{% if %}")
        with pytest.raises(ExternalServiceError, match="Cannot render bad.j2"):
            JinjaRenderer(tmp_path).render("bad.j2", {})


class TestCallWithTimeout:
    def test_returns_result(self) -> None:
        assert call_with_timeout(lambda a, b: a + b, 2, 3, timeout=1) == 5

    def test_times_out(self) -> None:
        def slow() -> None:
            time.sleep(0.5)

        with pytest.raises(ExternalServiceError, match="slow timed out"):
            call_with_timeout(slow, timeout=0.01)

    def test_monobump_errors_pass_through(self) -> None:
        def fail() -> None:
            raise WriteError("disk full")

        with pytest.raises(WriteError, match="disk full"):
            call_with_timeout(fail, timeout=1)

    def test_other_errors_are_wrapped(self) -> None:
        def fail() -> None:
            raise ValueError("bad payload")

        with pytest.raises(ExternalServiceError, match="bad payload"):
            call_with_timeout(fail, timeout=1)
