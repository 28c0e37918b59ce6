"""Data models for monobump.

These Pydantic models represent the configuration and the results that
flow through a resolution run. Configuration models are frozen: a
project's description never changes during a run, only its current
version does, and that lives with the resolver.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Union

from packaging.utils import canonicalize_name
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .versions import Severity, severity_from_name

KeyPath = Union[str, tuple[Union[str, int], ...]]


class _Location(BaseModel):
    """Fields shared by every version location.

    Attributes:
        file: Path of the file holding the version, relative to the
              project root.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    file: str

    def describe(self) -> str:
        return f"{self.file} ({self.kind})"  # type: ignore[attr-defined]


class _KeyedLocation(_Location):
    """A location addressed by a key path into nested mappings/sequences.

    The key may be a dotted string ("project.version") or an explicit
    list of parts, where integers index into sequences. Use the list form
    when a key itself contains a dot.
    """

    key: KeyPath

    def parts(self) -> list[str | int]:
        if isinstance(self.key, str):
            return [int(p) if p.isdigit() else p for p in self.key.split(".")]
        return list(self.key)

    def describe(self) -> str:
        return f"{self.file}:{'.'.join(str(p) for p in self.parts())}"


class TomlLocation(_KeyedLocation):
    kind: Literal["toml"] = "toml"


class YamlLocation(_KeyedLocation):
    kind: Literal["yaml"] = "yaml"


class JsonLocation(_KeyedLocation):
    kind: Literal["json"] = "json"


class XmlLocation(_Location):
    """An element addressed by a dotted path from the document root.

    "project.version" selects <version> directly under the root
    <project>; a "*" part matches any element name.
    """

    kind: Literal["xml"] = "xml"
    path: str

    def parts(self) -> list[str]:
        return self.path.split(".")

    def describe(self) -> str:
        return f"{self.file}:<{self.path}>"


class PatternLocation(_Location):
    """A version captured by group 1 of a regular expression."""

    kind: Literal["pattern"] = "pattern"
    pattern: str

    @field_validator("pattern")
    @classmethod
    def _one_group(cls, value: str) -> str:
        try:
            compiled = re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        if compiled.groups != 1:
            raise ValueError("pattern must have exactly one capture group")
        return value

    def describe(self) -> str:
        return f"{self.file}:/{self.pattern}/"


class FileLocation(_Location):
    """The whole file is the version (e.g. a bare VERSION file)."""

    kind: Literal["file"] = "file"


VersionLocation = Annotated[
    Union[
        TomlLocation,
        YamlLocation,
        JsonLocation,
        XmlLocation,
        PatternLocation,
        FileLocation,
    ],
    Field(discriminator="kind"),
]


def _coerce_severity(value: Any) -> Any:
    if isinstance(value, str):
        return severity_from_name(value)
    return value


class SeverityRule(BaseModel):
    """Map commit messages matching a pattern to a bump severity.

    The pattern is searched (not anchored) in the full commit message
    with re.MULTILINE, so "^docs" matches a subject starting with "docs".
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pattern: str
    severity: Severity

    @field_validator("severity", mode="before")
    @classmethod
    def _severity_by_name(cls, value: Any) -> Any:
        return _coerce_severity(value)

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        return value


# Dependency severity → dependent severity when no mapping is configured.
DEFAULT_PROPAGATION: dict[Severity, Severity] = {
    Severity.NONE: Severity.NONE,
    Severity.PATCH: Severity.PATCH,
    Severity.MINOR: Severity.PATCH,
    Severity.MAJOR: Severity.MINOR,
}


def _propagation_shorthand(name: str) -> dict[Severity, Severity]:
    if name == "default":
        return dict(DEFAULT_PROPAGATION)
    if name == "match":
        return {s: s for s in Severity}
    fixed = severity_from_name(name)
    return {s: (fixed if s is not Severity.NONE else Severity.NONE) for s in Severity}


class DependsSpec(BaseModel):
    """How a dependency's bump reaches the project that depends on it.

    Attributes:
        propagation: Dependency severity → severity imposed on the
                     dependent. Accepts "default", "match", a fixed level
                     ("none", "patch", "minor", "major") or a table;
                     levels missing from a table use the default rule.
        pins: Locations inside the dependent that record the dependency's
              version. They are rewritten with the dependency's new
              version when it changes.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    propagation: dict[Severity, Severity] = Field(
        default_factory=lambda: dict(DEFAULT_PROPAGATION)
    )
    pins: tuple[VersionLocation, ...] = ()

    @field_validator("propagation", mode="before")
    @classmethod
    def _expand(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _propagation_shorthand(value)
        if isinstance(value, dict):
            mapping = dict(DEFAULT_PROPAGATION)
            for k, v in value.items():
                mapping[severity_from_name(k)] = severity_from_name(v)
            return mapping
        return value

    def convert(self, severity: Severity) -> Severity:
        return self.propagation.get(severity, Severity.NONE)


class ProjectConfig(BaseModel):
    """Static description of one project in the monorepo.

    Attributes:
        name: Unique project name, normalized per PEP 503.
        root: Project directory relative to the repository root.
        include: Globs (relative to root) of files that belong to the project.
        exclude: Globs of files under root that do not count as changes.
        versions: Where the project's version is declared. The first
                  location is authoritative when reading.
        depends: Dependency name → DependsSpec.
        rules: Commit-message rules tried before the default rules.
        default_rules: Whether the conventional-commit defaults apply.
        changelog: Changelog file relative to root, if any.
        marker: Explicit last-release marker (tag or commit id).
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str
    root: str = "."
    include: tuple[str, ...] = ("**",)
    exclude: tuple[str, ...] = ()
    versions: tuple[VersionLocation, ...] = Field(min_length=1)
    depends: dict[str, DependsSpec] = Field(default_factory=dict)
    rules: tuple[SeverityRule, ...] = ()
    default_rules: bool = Field(True, alias="default-rules")
    changelog: str | None = None
    marker: str | None = None

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("project name must not be empty")
        return canonicalize_name(value)

    @field_validator("root")
    @classmethod
    def _normalize_root(cls, value: str) -> str:
        return value.strip("/") or "."

    @field_validator("depends", mode="before")
    @classmethod
    def _normalize_depends(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            value = {name: {} for name in value}
        if isinstance(value, dict):
            return {
                canonicalize_name(name): (
                    {"propagation": spec} if isinstance(spec, str) else spec
                )
                for name, spec in value.items()
            }
        return value


class MonobumpConfig(BaseModel):
    """Top-level configuration for a repository.

    Attributes:
        concurrency: Worker threads for history scans and file writes.
        cycles: "reject" fails the run on a dependency cycle; "merge"
                treats each cycle as one unit sharing its strongest bump.
        tag_format: Marker tag name, formatted with name and version.
        service_timeout: Seconds allowed for each signing/publishing call.
        projects: The projects in the repository.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    concurrency: int = Field(4, ge=1)
    cycles: Literal["reject", "merge"] = "reject"
    tag_format: str = Field("{name}/v{version}", alias="tag-format")
    service_timeout: float = Field(60.0, gt=0, alias="service-timeout")
    projects: tuple[ProjectConfig, ...] = Field(min_length=1)

    @field_validator("tag_format")
    @classmethod
    def _tag_placeholders(cls, value: str) -> str:
        if "{name}" not in value or "{version}" not in value:
            raise ValueError("tag-format must contain {name} and {version}")
        return value

    @model_validator(mode="after")
    def _check_projects(self) -> MonobumpConfig:
        seen: set[str] = set()
        for project in self.projects:
            if project.name in seen:
                raise ValueError(f"duplicate project name {project.name!r}")
            seen.add(project.name)
        for project in self.projects:
            for dep in project.depends:
                if dep not in seen:
                    raise ValueError(
                        f"project {project.name!r} depends on unknown project {dep!r}"
                    )
        return self

    def project(self, name: str) -> ProjectConfig:
        for project in self.projects:
            if project.name == name:
                return project
        raise KeyError(name)


class Commit(BaseModel):
    """A commit read from the repository history."""

    model_config = ConfigDict(frozen=True)

    id: str
    message: str = ""
    parents: tuple[str, ...] = ()
    files: frozenset[str] = frozenset()

    @property
    def subject(self) -> str:
        return self.message.strip().splitlines()[0] if self.message.strip() else ""


Phase = Literal["scan", "propagate", "write", "marker", "changelog", "sign", "publish"]


class ProjectFailure(BaseModel):
    """Why a project could not be resolved, applied or published."""

    project: str
    phase: Phase
    error: str
    message: str

    @classmethod
    def from_exc(
        cls, project: str, phase: Phase, exc: BaseException
    ) -> ProjectFailure:
        return cls(
            project=project,
            phase=phase,
            error=type(exc).__name__,
            message=str(exc) or type(exc).__name__,
        )

    def __str__(self) -> str:
        return f"{self.project} [{self.phase}] {self.error}: {self.message}"


class ResolutionResult(BaseModel):
    """The version decision for a single project.

    Attributes:
        project: Project name.
        previous: Version found in the working tree before the run, or the
            released version when the tree already carries the new one.
        new: Version the project should have after the run.
        severity: Effective severity after dependency propagation.
        commits: Commits that contributed a non-NONE severity, newest first.
        inherited_from: Dependencies whose bump propagated to this project.
        forwarded: The working tree already holds the new version (set by
            hand), so applying only advances the marker.
        applied: Files were written and the marker was advanced.
        pinned: Pin locations rewritten for bumped dependencies.
        failure: Set when any phase failed for this project.
    """

    project: str
    previous: str | None = None
    new: str | None = None
    severity: Severity = Severity.NONE
    commits: list[str] = Field(default_factory=list)
    inherited_from: list[str] = Field(default_factory=list)
    forwarded: bool = False
    applied: bool = False
    pinned: list[str] = Field(default_factory=list)
    failure: ProjectFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def changed(self) -> bool:
        """Whether applying this result writes a version or moves a marker."""
        return self.ok and self.new != self.previous


class RunReport(BaseModel):
    """Outcome of a full resolve-and-apply run."""

    head: str | None = None
    results: list[ResolutionResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[ResolutionResult]:
        return [r for r in self.results if r.ok and r.applied]

    @property
    def failed(self) -> list[ResolutionResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failed
