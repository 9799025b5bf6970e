"""
procmux: run several commands at once and merge their output into one feed.
"""

from __future__ import annotations

from .command import Command, parse_command_string
from .errors import (
    CommandError,
    CommandParseError,
    DuplicateCommandError,
    EmptyCommandError,
    NoCommandsError,
    ProcmuxError,
)
from .runner import ControlledHandle, RestartPolicy, RunOptions, Runner


__version__ = "0.1.0"

__all__ = [
    "Command",
    "CommandError",
    "CommandParseError",
    "ControlledHandle",
    "DuplicateCommandError",
    "EmptyCommandError",
    "NoCommandsError",
    "ProcmuxError",
    "RestartPolicy",
    "RunOptions",
    "Runner",
    "parse_command_string",
]
