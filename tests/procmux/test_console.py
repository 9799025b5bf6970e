from __future__ import annotations

import io
import random

import pytest
from _helpers import py_command

from procmux.console.colors import COLOR_POOL, Color, assign_colors, close_sequence, open_sequence
from procmux.console.render import ConsoleRenderer, run_console
from procmux.runner import (
    Finished,
    LineEnding,
    OutputMessage,
    Runner,
    RunOptions,
    Started,
    StderrChunk,
    StdoutChunk,
    WorkerError,
)


RED = open_sequence(Color.RED)
RESET = close_sequence()


def _renderer(worker_count: int = 2, **options) -> ConsoleRenderer:
    return ConsoleRenderer(
        colors={"web": Color.RED},
        options=RunOptions(**options),
        worker_count=worker_count,
        sink=io.BytesIO(),
    )


# ---- colors ----
def test_assign_colors_keeps_explicit_and_fills_random() -> None:
    colors = assign_colors(
        {"a": Color.RED, "b": Color.RANDOM, "c": Color.RANDOM}, rng=random.Random(7)
    )
    assert colors["a"] is Color.RED
    assert colors["b"] in COLOR_POOL and colors["c"] in COLOR_POOL
    assert len({colors["a"], colors["b"], colors["c"]}) == 3


def test_assign_colors_reuses_when_pool_is_exhausted() -> None:
    names = {f"w{i}": Color.RANDOM for i in range(len(COLOR_POOL) + 3)}
    colors = assign_colors(names, rng=random.Random(1))
    assert set(colors) == set(names)
    assert len(set(colors.values())) == len(COLOR_POOL)


def test_assign_colors_returns_new_mapping() -> None:
    preferred = {"a": Color.RANDOM}
    colors = assign_colors(preferred)
    assert preferred == {"a": Color.RANDOM}
    assert colors["a"] is not Color.RANDOM


# ---- rendering ----
def test_stdout_line_is_prefixed() -> None:
    message = OutputMessage("web", StdoutChunk(LineEnding.NEWLINE, b"hello"))
    assert _renderer().format(message) == f"{RED}web :{RESET} hello\n".encode()


def test_stream_flags() -> None:
    renderer = _renderer(show_stream_flags=True)
    out = renderer.format(OutputMessage("web", StdoutChunk(LineEnding.NEWLINE, b"x")))
    err = renderer.format(OutputMessage("web", StderrChunk(LineEnding.NEWLINE, b"y")))
    assert out == f"{RED}web (o):{RESET} x\n".encode()
    assert err == f"{RED}web (e):{RESET} y\n".encode()


@pytest.mark.parametrize(("count", "terminator"), [(1, b"\r"), (2, b"\n")])
def test_carriage_return_only_passes_through_for_a_single_worker(
    count: int, terminator: bytes
) -> None:
    message = OutputMessage("web", StdoutChunk(LineEnding.CARRIAGE_RETURN, b"50%"))
    assert _renderer(worker_count=count).format(message).endswith(b"50%" + terminator)


def test_lifecycle_lines_only_when_verbose() -> None:
    quiet = _renderer()
    assert quiet.format(OutputMessage("web", Started(pid=1))) == b""
    assert quiet.format(OutputMessage("web", Finished(0))) == b""

    verbose = _renderer(verbose=True)
    assert verbose.format(OutputMessage("web", Started(pid=1))) == (
        f"{RED}SYSTEM: starting process web{RESET}\n".encode()
    )
    assert verbose.format(OutputMessage("web", Finished(4))) == (
        f"{RED}web:{RESET} process exited with status: 4\n".encode()
    )
    assert verbose.format(OutputMessage("web", Finished(None))) == (
        f"{RED}web:{RESET} process exited without exit status\n".encode()
    )


def test_errors_always_rendered() -> None:
    message = OutputMessage("web", WorkerError("program not found: nope"))
    assert _renderer().format(message) == (
        f"{RED}SYSTEM (e): Encountered error with process web: program not found: nope{RESET}\n"
    ).encode()


def test_render_records_terminal_results() -> None:
    renderer = _renderer()
    renderer.render(OutputMessage("web", Started(pid=1)))
    renderer.render(OutputMessage("web", Finished(0)))
    assert renderer.results == {"web": Finished(0)}
    assert renderer.sink.getvalue() == b""  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_run_console_renders_all_workers() -> None:
    sink = io.BytesIO()
    runner = Runner().command(py_command("a", "print('from a')")).command(
        py_command("b", "print('from b')")
    )

    handle = await run_console(runner, {"a": Color.GREEN}, sink=sink)
    await handle.join()

    output = sink.getvalue()
    assert b"from a" in output
    assert b"from b" in output
    assert open_sequence(Color.GREEN).encode() in output
    assert handle.results == {"a": Finished(0), "b": Finished(0)}
    assert handle.done
