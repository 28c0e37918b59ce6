"""External collaborators: signing, publishing and template rendering.

The release pipeline talks to these through small protocols so tests and
other hosting setups can swap them out. Every call made by the pipeline
goes through call_with_timeout; failures come back as
ExternalServiceError and are never retried here.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Protocol, TypeVar

import jinja2

from .errors import ExternalServiceError, MonobumpError
from .shell import gh, git, run

T = TypeVar("T")

TEMPLATES_DIR = Path(__file__).parent / "templates"


class Signer(Protocol):
    def sign(self, payload: bytes) -> bytes: ...


class Publisher(Protocol):
    def publish(self, tag: str, title: str, notes: str) -> str: ...


class Renderer(Protocol):
    def render(self, template: str, context: dict[str, Any]) -> str: ...


def _stderr(exc: subprocess.CalledProcessError) -> str:
    err = exc.stderr
    if isinstance(err, bytes):
        err = err.decode("utf-8", "replace")
    return (err or "").strip() or f"exit status {exc.returncode}"


class GpgSigner:
    """Detached, ASCII-armored signatures made by gpg.

    Args:
        key: Key id passed to --local-user; gpg's default key if None.
        timeout: Seconds allowed for one signature.
    """

    def __init__(self, key: str | None = None, timeout: float | None = None) -> None:
        self.key = key
        self.timeout = timeout

    def sign(self, payload: bytes) -> bytes:
        args = ["gpg", "--batch", "--detach-sign", "--armor"]
        if self.key:
            args += ["--local-user", self.key]
        try:
            result = run(*args, input=payload, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise ExternalServiceError("gpg is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalServiceError(f"gpg timed out after {exc.timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            raise ExternalServiceError(f"gpg failed: {_stderr(exc)}") from exc
        return result.stdout


class GitHubPublisher:
    """Publish a release on GitHub for an existing marker tag.

    The tag is pushed first so the release attaches to the tagged commit
    instead of gh creating a new tag from the default branch.
    """

    def __init__(
        self,
        root: Path | None = None,
        remote: str = "origin",
        timeout: float | None = None,
    ) -> None:
        self.root = root
        self.remote = remote
        self.timeout = timeout

    def publish(self, tag: str, title: str, notes: str) -> str:
        try:
            git("push", self.remote, tag, cwd=self.root)
            return gh(
                "release",
                "create",
                tag,
                "--verify-tag",
                "--title",
                title,
                "--notes",
                notes,
                cwd=self.root,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ExternalServiceError("gh is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalServiceError(
                f"publishing {tag} timed out after {exc.timeout}s"
            ) from exc
        except subprocess.CalledProcessError as exc:
            raise ExternalServiceError(
                f"publishing {tag} failed: {_stderr(exc)}"
            ) from exc


class JinjaRenderer:
    """Render templates from a directory with jinja2.

    Example:
        >>> JinjaRenderer().render("release-notes.md.j2", {...})
    """

    def __init__(self, templates_dir: Path = TEMPLATES_DIR) -> None:
        self.templates_dir = templates_dir

    def render(self, template: str, context: dict[str, Any]) -> str:
        path = self.templates_dir / template
        try:
            source = path.read_text(encoding="utf-8")
            return jinja2.Template(source, keep_trailing_newline=True).render(
                **context
            )
        except OSError as exc:
            raise ExternalServiceError(f"Cannot read template {path}") from exc
        except jinja2.TemplateError as exc:
            raise ExternalServiceError(f"Cannot render {template}: {exc}") from exc


def call_with_timeout(fn: Callable[..., T], *args: Any, timeout: float) -> T:
    """Call fn(*args), giving up after timeout seconds.

    The call runs on a worker thread; on timeout the caller stops waiting
    and the worker is abandoned.

    Raises:
        ExternalServiceError: If fn fails or does not return in time.
    """
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        return pool.submit(fn, *args).result(timeout=timeout)
    except FutureTimeout as exc:
        name = getattr(fn, "__qualname__", repr(fn))
        raise ExternalServiceError(f"{name} timed out after {timeout}s") from exc
    except MonobumpError:
        raise
    except Exception as exc:
        raise ExternalServiceError(str(exc) or type(exc).__name__) from exc
    finally:
        pool.shutdown(wait=False)
