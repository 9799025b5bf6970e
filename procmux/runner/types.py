"""
Type definitions for the process runner: run options and the output message protocol.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import TypeAlias

from .backoff import BackoffPolicy


class RestartPolicy(StrEnum):
    """What happens to the fleet when one worker terminates."""

    # leave the others running
    CONTINUE = "continue"
    # the first termination cancels every remaining worker
    KILL_OTHERS = "kill-others"
    # only a failed termination cancels the rest
    KILL_OTHERS_ON_FAIL = "kill-others-on-fail"
    # restart the terminated worker
    RESTART = "restart"
    # restart the terminated worker only after a failure
    RESTART_ON_FAIL = "restart-on-fail"


class LineEnding(Enum):
    """Terminator that ended a captured chunk."""

    NEWLINE = "\n"
    CARRIAGE_RETURN = "\r"

    @property
    def is_carriage_return(self) -> bool:
        return self is LineEnding.CARRIAGE_RETURN


@dataclass(slots=True, frozen=True)
class RunOptions:
    """Per-run settings, fixed when the run starts."""

    verbose: bool = False
    show_stream_flags: bool = False
    restart_policy: RestartPolicy = RestartPolicy.CONTINUE
    # treat an exit without status (killed by a signal) as a failure
    abnormal_exit_is_failure: bool = True
    # TERM -> wait -> KILL -> wait
    stop_timeout_sec: float = 5.0
    kill_timeout_sec: float = 2.0
    # how long to wait for stdout/stderr to reach EOF once the process has exited
    drain_timeout_sec: float = 2.0
    # read size for the stream framers
    read_chunk_size: int = 4096
    # a trailing "\r" with no more bytes after this long is emitted as CARRIAGE_RETURN
    cr_grace_sec: float = 0.05
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)


# --- message payloads ----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Started:
    pid: int | None = None


@dataclass(slots=True, frozen=True)
class Finished:
    # None when the process did not exit normally (e.g. killed by a signal)
    exit_code: int | None = None


@dataclass(slots=True, frozen=True)
class StdoutChunk:
    ending: LineEnding
    data: bytes


@dataclass(slots=True, frozen=True)
class StderrChunk:
    ending: LineEnding
    data: bytes


@dataclass(slots=True, frozen=True)
class WorkerError:
    message: str
    # False for stream errors reported while the process keeps running
    terminal: bool = True


OutputPayload: TypeAlias = Started | Finished | StdoutChunk | StderrChunk | WorkerError


@dataclass(slots=True, frozen=True)
class OutputMessage:
    """One event of one worker, as delivered to the consumer."""

    name: str
    payload: OutputPayload

    @property
    def is_terminal(self) -> bool:
        payload = self.payload
        if isinstance(payload, Finished):
            return True
        return isinstance(payload, WorkerError) and payload.terminal


__all__ = [
    "Finished",
    "LineEnding",
    "OutputMessage",
    "OutputPayload",
    "RestartPolicy",
    "RunOptions",
    "Started",
    "StderrChunk",
    "StdoutChunk",
    "WorkerError",
]
