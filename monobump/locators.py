"""Read and write a version string embedded in a file.

Every supported syntax provides one function, ``find(text, location) ->
Span``, that locates exactly one scalar value and reports where its text
sits in the file. Writing is syntax-independent: the file's raw content
is re-read, the span is located again and only that span is replaced.
Everything else (comments, quoting, whitespace, key order, line endings)
is left byte-for-byte as it was.

Adding a format means adding a location model in ``models`` and a span
finder registered in ``_FINDERS``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any, NamedTuple
from xml.parsers import expat

import semver
import tomlkit
import yaml
from tomlkit.exceptions import TOMLKitError

from .errors import (
    AddressNotFound,
    AmbiguousAddress,
    LocationError,
    LocationNotFound,
    MalformedVersion,
    WriteError,
)
from .models import (
    FileLocation,
    JsonLocation,
    PatternLocation,
    TomlLocation,
    VersionLocation,
    XmlLocation,
    YamlLocation,
)
from .versions import parse_version


class Span(NamedTuple):
    """Character offsets of a value inside a file's text."""

    start: int
    end: int

    def of(self, text: str) -> str:
        return text[self.start : self.end]


def _unique_marker(text: str) -> str:
    n = 0
    while f"monobump{n}marker" in text:
        n += 1
    return f"monobump{n}marker"


# TOML -------------------------------------------------------------------


def _toml_child(node: Any, part: str | int, where: str) -> Any:
    if isinstance(part, int):
        if isinstance(node, list) and 0 <= part < len(node):
            return node[part]
    elif isinstance(node, dict) and part in node:
        return node[part]
    raise AddressNotFound(f"{where}: no {part!r}")


def _find_toml(text: str, location: TomlLocation) -> Span:
    try:
        doc = tomlkit.parse(text)
    except TOMLKitError as exc:
        raise LocationError(f"{location.file}: invalid TOML: {exc}") from exc

    parts = location.parts()
    parent: Any = doc
    for part in parts[:-1]:
        parent = _toml_child(parent, part, location.describe())
    item = _toml_child(parent, parts[-1], location.describe())
    if not isinstance(item, tomlkit.items.String):
        raise MalformedVersion(f"{location.describe()}: value is not a string")

    # tomlkit keeps no offsets, but it dumps unmodified content losslessly:
    # swap the value for a marker string and find where the marker lands.
    original = item.as_string()
    quote = 3 if original[:3] in ('"""', "'''") else 1
    marker = _unique_marker(text)
    parent[parts[-1]] = tomlkit.string(marker)
    begin = tomlkit.dumps(doc).index(marker) - 1
    return Span(begin + quote, begin + len(original) - quote)


# YAML / JSON ------------------------------------------------------------


def _yaml_child(node: yaml.Node, part: str | int, where: str) -> yaml.Node:
    if isinstance(node, yaml.MappingNode):
        found = [
            value
            for key, value in node.value
            if isinstance(key, yaml.ScalarNode) and key.value == str(part)
        ]
        if len(found) > 1:
            raise AmbiguousAddress(f"{where}: key {part!r} appears {len(found)} times")
        if found:
            return found[0]
    elif isinstance(node, yaml.SequenceNode) and isinstance(part, int):
        if 0 <= part < len(node.value):
            return node.value[part]
    raise AddressNotFound(f"{where}: no {part!r}")


def _scalar_span(node: yaml.Node, where: str) -> Span:
    if not isinstance(node, yaml.ScalarNode):
        raise MalformedVersion(f"{where}: value is not a scalar")
    if node.style in ("|", ">"):
        raise MalformedVersion(f"{where}: block scalars are not supported")
    start, end = node.start_mark.index, node.end_mark.index
    if node.style in ('"', "'"):
        start, end = start + 1, end - 1
    return Span(start, end)


def _compose(text: str, where: str) -> yaml.Node:
    try:
        root = yaml.compose(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError as exc:
        raise LocationError(f"{where}: cannot parse: {exc}") from exc
    if root is None:
        raise AddressNotFound(f"{where}: document is empty")
    return root


def _find_keyed(text: str, location: YamlLocation | JsonLocation) -> Span:
    where = location.describe()
    node = _compose(text, where)
    for part in location.parts():
        node = _yaml_child(node, part, where)
    return _scalar_span(node, where)


def _find_yaml(text: str, location: YamlLocation) -> Span:
    return _find_keyed(text, location)


def _find_json(text: str, location: JsonLocation) -> Span:
    # JSON is a flow-style subset of YAML, so the YAML composer gives us
    # node marks for it; json itself is the arbiter of validity.
    try:
        json.loads(text)
    except json.JSONDecodeError as exc:
        raise LocationError(f"{location.file}: invalid JSON: {exc}") from exc
    # YAML forbids tab indentation. Valid JSON only has tabs between
    # tokens, and a space keeps every offset.
    return _find_keyed(text.replace("\t", " "), location)


# XML --------------------------------------------------------------------


class _XmlMatch:
    def __init__(self, depth: int) -> None:
        self.depth = depth
        self.start: int | None = None
        self.end: int | None = None
        self.has_children = False


def _find_xml(text: str, location: XmlLocation) -> Span:
    raw = text.encode("utf-8")
    parts = location.parts()
    stack: list[str] = []
    matches: list[_XmlMatch] = []
    parser = expat.ParserCreate()

    def on_start(name: str, attrs: dict[str, str]) -> None:
        if matches and matches[-1].end is None and len(stack) == matches[-1].depth:
            matches[-1].has_children = True
        stack.append(name)
        if len(stack) == len(parts) and all(
            p in ("*", n) for p, n in zip(parts, stack)
        ):
            matches.append(_XmlMatch(len(stack)))

    def on_text(data: str) -> None:
        if matches and matches[-1].end is None and len(stack) == matches[-1].depth:
            if matches[-1].start is None:
                matches[-1].start = parser.CurrentByteIndex

    def on_end(name: str) -> None:
        if matches and matches[-1].end is None and len(stack) == matches[-1].depth:
            matches[-1].end = parser.CurrentByteIndex
        stack.pop()

    parser.StartElementHandler = on_start
    parser.CharacterDataHandler = on_text
    parser.EndElementHandler = on_end
    try:
        parser.Parse(raw, True)
    except expat.ExpatError as exc:
        raise LocationError(f"{location.file}: invalid XML: {exc}") from exc

    where = location.describe()
    if not matches:
        raise AddressNotFound(f"{where}: no such element")
    if len(matches) > 1:
        raise AmbiguousAddress(f"{where}: {len(matches)} elements match")
    match = matches[0]
    if match.has_children:
        raise MalformedVersion(f"{where}: element has child elements")
    if match.start is None or match.end is None:
        raise MalformedVersion(f"{where}: element is empty")

    start = len(raw[: match.start].decode("utf-8"))
    end = len(raw[: match.end].decode("utf-8"))
    return _trimmed(text, Span(start, end))


# Free text --------------------------------------------------------------


def _trimmed(text: str, span: Span) -> Span:
    value = span.of(text)
    start = span.start + (len(value) - len(value.lstrip()))
    end = span.end - (len(value) - len(value.rstrip()))
    return Span(start, max(start, end))


def _find_pattern(text: str, location: PatternLocation) -> Span:
    where = location.describe()
    found = [
        m.span(1)
        for m in re.finditer(location.pattern, text, re.MULTILINE)
        if m.group(1) is not None
    ]
    if not found:
        raise AddressNotFound(f"{where}: pattern does not match")
    if len(found) > 1:
        raise AmbiguousAddress(f"{where}: pattern matches {len(found)} times")
    return Span(*found[0])


def _find_file(text: str, location: FileLocation) -> Span:
    return _trimmed(text, Span(0, len(text)))


_FINDERS: dict[str, Callable[[str, Any], Span]] = {
    "toml": _find_toml,
    "yaml": _find_yaml,
    "json": _find_json,
    "xml": _find_xml,
    "pattern": _find_pattern,
    "file": _find_file,
}


# Public API -------------------------------------------------------------


def location_path(location: VersionLocation, root: Path) -> Path:
    """Absolute path of the file a location points into."""
    return (root / location.file).resolve()


def read_text(location: VersionLocation, root: Path) -> str:
    """Read a location's file without newline translation.

    Raises:
        LocationNotFound: If the file does not exist.
    """
    path = location_path(location, root)
    try:
        return path.read_bytes().decode("utf-8")
    except FileNotFoundError as exc:
        raise LocationNotFound(f"{location.file}: no such file") from exc
    except UnicodeDecodeError as exc:
        raise LocationError(f"{location.file}: not UTF-8 text") from exc


def find_span(text: str, location: VersionLocation) -> Span:
    """Locate a version's value span in already-read file text."""
    return _FINDERS[location.kind](text, location)


def locate(location: VersionLocation, root: Path) -> tuple[str, Span]:
    """Read a location's file and find its value span.

    Returns:
        Tuple of (full file text, span of the version value).
    """
    text = read_text(location, root)
    return text, find_span(text, location)


def read_version(location: VersionLocation, root: Path) -> semver.Version:
    """Read the version declared at a location.

    Raises:
        LocationNotFound: The file is missing.
        AddressNotFound: Nothing matches the location's address.
        AmbiguousAddress: More than one value matches.
        MalformedVersion: The value is not a semantic version.
    """
    text, span = locate(location, root)
    try:
        return parse_version(span.of(text))
    except MalformedVersion as exc:
        raise MalformedVersion(f"{location.describe()}: {exc}") from exc


def replace_span(text: str, span: Span, value: str) -> str:
    return text[: span.start] + value + text[span.end :]


def write_version(
    location: VersionLocation, version: semver.Version | str, root: Path
) -> None:
    """Replace the version at a location, leaving every other byte alone.

    Raises:
        LocationError: If the location can no longer be found.
        WriteError: If the file cannot be written.
    """
    text, span = locate(location, root)
    updated = replace_span(text, span, str(version))
    if updated == text:
        return
    try:
        location_path(location, root).write_bytes(updated.encode("utf-8"))
    except OSError as exc:
        raise WriteError(f"{location.file}: {exc}") from exc
