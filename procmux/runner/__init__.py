"""
Public API for the process runner.
"""

from __future__ import annotations

from .backoff import BackoffPolicy
from .channel import Channel, ChannelClosed
from .framing import LineFramer, frame_stream
from .handle import ControlledHandle
from .policy import EngineState, PolicyEngine
from .runner import OutputChannel, RunConfig, Runner
from .types import (
    Finished,
    LineEnding,
    OutputMessage,
    OutputPayload,
    RestartPolicy,
    RunOptions,
    Started,
    StderrChunk,
    StdoutChunk,
    WorkerError,
)
from .worker import Worker


__all__ = [
    "BackoffPolicy",
    "Channel",
    "ChannelClosed",
    "ControlledHandle",
    "EngineState",
    "Finished",
    "LineEnding",
    "LineFramer",
    "OutputChannel",
    "OutputMessage",
    "OutputPayload",
    "PolicyEngine",
    "RestartPolicy",
    "RunConfig",
    "RunOptions",
    "Runner",
    "Started",
    "StderrChunk",
    "StdoutChunk",
    "Worker",
    "WorkerError",
    "frame_stream",
]
