# commands.py
"""
Workflow command protocol.

Steps talk back to the engine by printing lines such as

    ::add-mask::hunter2
    ::group::Install
    ::warning file=app.js,line=10::Deprecated call
    ::set-output name=version::1.2.3

and by appending to the files named in GITHUB_ENV / GITHUB_OUTPUT:

    NAME=value
    NOTES<<EOF
    multi
    line
    EOF

This module only turns text into typed commands; the step executor applies them.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union


# ----------------------------------------------------------------------
# Command variants
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class SetEnv:
    name: str
    value: str


@dataclass(frozen=True)
class SetOutput:
    name: str
    value: str


@dataclass(frozen=True)
class AddMask:
    value: str


@dataclass(frozen=True)
class Group:
    title: str


@dataclass(frozen=True)
class EndGroup:
    pass


@dataclass(frozen=True)
class Annotation:
    level: str  # warning | error | notice
    message: str
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Debug:
    message: str


@dataclass(frozen=True)
class Cancel:
    message: str = ""


@dataclass(frozen=True)
class Fail:
    message: str = ""


@dataclass(frozen=True)
class Echo:
    """A plain log line (not a command)."""
    text: str


Command = Union[SetEnv, SetOutput, AddMask, Group, EndGroup, Annotation, Debug, Cancel, Fail]


# ----------------------------------------------------------------------
# Line parser
# ----------------------------------------------------------------------

_COMMAND_LINE = re.compile(r"^::([A-Za-z][A-Za-z0-9_-]*)(?: ([^:]*))?::(.*)$")


def unescape_data(value: str) -> str:
    return value.replace("%0D", "\r").replace("%0A", "\n").replace("%25", "%")


def unescape_property(value: str) -> str:
    return (
        value.replace("%0D", "\r")
        .replace("%0A", "\n")
        .replace("%3A", ":")
        .replace("%2C", ",")
        .replace("%25", "%")
    )


def _properties(raw: Optional[str]) -> Dict[str, str]:
    props: Dict[str, str] = {}
    if not raw:
        return props
    for part in raw.split(","):
        if "=" not in part:
            continue
        key, _, value = part.partition("=")
        props[key.strip()] = unescape_property(value.strip())
    return props


def parse_line(line: str) -> Optional[Command]:
    """Parse one output line. Returns None when the line is not a known command."""
    m = _COMMAND_LINE.match(line.strip())
    if not m:
        return None
    name = m.group(1).lower()
    props = _properties(m.group(2))
    data = unescape_data(m.group(3))

    if name == "set-env":
        if "name" not in props:
            return None
        return SetEnv(props["name"], data)
    if name == "set-output":
        if "name" not in props:
            return None
        return SetOutput(props["name"], data)
    if name == "add-mask":
        return AddMask(data)
    if name == "group":
        return Group(data)
    if name == "endgroup":
        return EndGroup()
    if name in ("warning", "error", "notice"):
        return Annotation(name, data, props)
    if name == "debug":
        return Debug(data)
    if name == "cancel":
        return Cancel(data)
    if name == "fail":
        return Fail(data)
    return None


class CommandParser:
    """
    Stateful parser over a step's output stream.

    Handles `::stop-commands::<token>`: until `::<token>::` is seen, lines
    are passed through as plain text.
    """

    def __init__(self) -> None:
        self._resume_token: Optional[str] = None

    def feed(self, lines: Iterable[str]) -> Iterator[Union[Command, Echo]]:
        for line in lines:
            yield self.parse(line)

    def parse(self, line: str) -> Union[Command, Echo]:
        stripped = line.strip()
        if self._resume_token is not None:
            if stripped == f"::{self._resume_token}::":
                self._resume_token = None
            return Echo(line)

        m = _COMMAND_LINE.match(stripped)
        if m and m.group(1).lower() == "stop-commands":
            self._resume_token = m.group(3) or uuid.uuid4().hex
            return Echo(line)

        cmd = parse_line(line)
        if cmd is None:
            return Echo(line)
        return cmd


# ----------------------------------------------------------------------
# Environment / output files
# ----------------------------------------------------------------------

class FileCommandError(ValueError):
    pass


def parse_file_commands(text: str) -> Dict[str, str]:
    """
    Parse the contents of a GITHUB_ENV / GITHUB_OUTPUT file.

    Later assignments win. Raises FileCommandError on an unterminated
    heredoc or a line without '='.
    """
    values: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, _, delimiter = line.partition("<<")
            delimiter = delimiter.strip()
            body: List[str] = []
            while True:
                if i >= len(lines):
                    raise FileCommandError(f"unterminated heredoc for {name!r} (delimiter {delimiter!r})")
                if lines[i] == delimiter:
                    i += 1
                    break
                body.append(lines[i])
                i += 1
            values[name.strip()] = "\n".join(body)
            continue
        if "=" not in line:
            raise FileCommandError(f"invalid line (expected NAME=value): {line!r}")
        name, _, value = line.partition("=")
        values[name.strip()] = value
    return values


def read_file_commands(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    return parse_file_commands(path.read_text(encoding="utf-8"))


# ----------------------------------------------------------------------
# Masking
# ----------------------------------------------------------------------

MASK = "***"


class Masker:
    """Replace registered values with *** using plain substring replacement."""

    def __init__(self, values: Iterable[str] = ()):
        self._values: List[str] = []
        for v in values:
            self.add(v)

    def add(self, value: str) -> None:
        for candidate in [value, *value.splitlines()]:
            if candidate and candidate.strip() and candidate not in self._values:
                self._values.append(candidate)
        # longest first so a value that contains another is masked whole
        self._values.sort(key=len, reverse=True)

    @property
    def values(self) -> List[str]:
        return list(self._values)

    def __call__(self, text: str) -> str:
        for value in self._values:
            if value in text:
                text = text.replace(value, MASK)
        return text
