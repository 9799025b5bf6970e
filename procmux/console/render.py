from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterable, Mapping
from dataclasses import dataclass, field
from typing import BinaryIO, assert_never

from procmux.runner import (
    ControlledHandle,
    Finished,
    OutputMessage,
    Runner,
    RunOptions,
    Started,
    StderrChunk,
    StdoutChunk,
    WorkerError,
)
from procmux.runner.types import LineEnding

from .colors import Color, assign_colors, close_sequence, open_sequence


@dataclass(slots=True)
class ConsoleRenderer:
    """Turns output messages into colored, name-prefixed terminal lines."""

    colors: Mapping[str, Color]
    options: RunOptions
    worker_count: int
    sink: BinaryIO = field(default_factory=lambda: sys.stdout.buffer)
    # last terminal payload seen per worker
    results: dict[str, Finished | WorkerError] = field(default_factory=dict)

    def format(self, message: OutputMessage) -> bytes:
        name = message.name
        color = open_sequence(self.colors.get(name, Color.WHITE))
        reset = close_sequence()
        verbose = self.options.verbose

        match message.payload:
            case Started():
                if not verbose:
                    return b""
                text = f"{color}SYSTEM: starting process {name}{reset}\n"
            case Finished(exit_code=None):
                if not verbose:
                    return b""
                text = f"{color}{name}:{reset} process exited without exit status\n"
            case Finished(exit_code=exit_code):
                if not verbose:
                    return b""
                text = f"{color}{name}:{reset} process exited with status: {exit_code}\n"
            case StdoutChunk(ending=ending, data=data):
                return self._line(name, color, reset, "(o)", ending, data)
            case StderrChunk(ending=ending, data=data):
                return self._line(name, color, reset, "(e)", ending, data)
            case WorkerError(message=error):
                text = (
                    f"{color}SYSTEM (e): Encountered error with process {name}: {error}{reset}\n"
                )
            case _:
                assert_never(message.payload)
        return text.encode()

    def render(self, message: OutputMessage) -> None:
        if message.is_terminal:
            self.results[message.name] = message.payload  # type: ignore[assignment]
        rendered = self.format(message)
        if rendered:
            self.sink.write(rendered)
            self.sink.flush()

    def _line(
        self, name: str, color: str, reset: str, flag: str, ending: LineEnding, data: bytes
    ) -> bytes:
        flag = flag if self.options.show_stream_flags else ""
        prefix = f"{color}{name} {flag}:{reset} ".encode()
        # with several workers an in-place "\r" update would overwrite another worker's line
        terminator = b"\r" if self.worker_count == 1 and ending.is_carriage_return else b"\n"
        return prefix + data + terminator

    async def consume(self, feed: AsyncIterable[OutputMessage]) -> None:
        async for message in feed:
            self.render(message)


class ConsoleHandle:
    """Run handle whose join() also waits for the renderer to drain the feed."""

    def __init__(
        self,
        inner: ControlledHandle,
        render_task: asyncio.Task[None],
        renderer: ConsoleRenderer,
    ) -> None:
        self._inner = inner
        self._render_task = render_task
        self.renderer = renderer

    @property
    def results(self) -> dict[str, Finished | WorkerError]:
        return self.renderer.results

    @property
    def done(self) -> bool:
        return self._inner.done and self._render_task.done()

    async def join(self) -> None:
        try:
            await self._inner.join()
        finally:
            await asyncio.shield(self._render_task)

    def cancel(self, reason: str = "manual") -> None:
        self._inner.cancel(reason)


async def run_console(
    runner: Runner,
    colors: Mapping[str, Color] | None = None,
    *,
    sink: BinaryIO | None = None,
) -> ConsoleHandle:
    """Start the runner and render its feed to the console in a background task."""
    config = runner.finalize()
    preferred = {name: (colors or {}).get(name, Color.RANDOM) for name in config.names}
    renderer = ConsoleRenderer(
        colors=assign_colors(preferred),
        options=config.options,
        worker_count=len(config.commands),
        sink=sink if sink is not None else sys.stdout.buffer,
    )

    handle, feed = await runner.run()
    render_task = asyncio.create_task(renderer.consume(feed), name="console.render")
    return ConsoleHandle(handle, render_task, renderer)


__all__ = ["ConsoleHandle", "ConsoleRenderer", "run_console"]
