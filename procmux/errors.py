from __future__ import annotations


class ProcmuxError(Exception):
    """Base class for configuration-time errors raised before any process is spawned."""


class CommandError(ProcmuxError):
    """Invalid command descriptor."""


class EmptyCommandError(CommandError):
    def __init__(self) -> None:
        super().__init__("Command string contains no tokens")


class CommandParseError(CommandError):
    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Unable to parse command {command!r}: {reason}")
        self.command = command
        self.reason = reason


class DuplicateCommandError(ProcmuxError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate command name: {name!r}")
        self.name = name


class NoCommandsError(ProcmuxError):
    def __init__(self) -> None:
        super().__init__("At least one command is required")


class MissingConfigError(ProcmuxError):
    """Raised when a config file is missing or malformed."""


__all__ = [
    "CommandError",
    "CommandParseError",
    "DuplicateCommandError",
    "EmptyCommandError",
    "MissingConfigError",
    "NoCommandsError",
    "ProcmuxError",
]
