"""
Command descriptors for the process runner.

- parse_command_string(): shell-style tokenizing into (exe, args)
- Command: immutable description of one process to run
"""

from __future__ import annotations

import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from procmux.errors import CommandError, CommandParseError, EmptyCommandError


def parse_command_string(command: str) -> tuple[str, list[str]]:
    """Split a shell-style command string into the executable and its arguments."""
    try:
        words = shlex.split(command, posix=True)
    except ValueError as exc:
        raise CommandParseError(command, str(exc)) from exc
    if not words:
        raise EmptyCommandError()
    return words[0], words[1:]


@dataclass(slots=True, frozen=True)
class Command:
    """External process start specification."""

    name: str
    exe: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    env: Mapping[str, str] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise CommandError("Command name must not be empty")
        if not self.exe:
            raise EmptyCommandError()
        # accept any sequence / path-like at construction, store canonical forms
        object.__setattr__(self, "args", tuple(self.args))
        if self.cwd is not None:
            object.__setattr__(self, "cwd", Path(self.cwd))
        if self.env is not None:
            object.__setattr__(self, "env", dict(self.env))

    @classmethod
    def from_string(cls, name: str, command: str) -> Command:
        exe, args = parse_command_string(command)
        return cls(name=name, exe=exe, args=tuple(args))

    @classmethod
    def from_args(cls, name: str, exe: str, *args: str) -> Command:
        return cls(name=name, exe=exe, args=args)

    def with_cwd(self, cwd: str | Path | None) -> Command:
        return replace(self, cwd=Path(cwd) if cwd is not None else None)

    def with_env(self, env: Mapping[str, str] | None) -> Command:
        return replace(self, env=dict(env) if env is not None else None)

    @property
    def argv(self) -> list[str]:
        return [self.exe, *self.args]

    def display(self) -> str:
        return shlex.join(self.argv)


__all__ = ["Command", "parse_command_string"]
