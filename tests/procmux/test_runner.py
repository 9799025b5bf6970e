"""Runner / Worker tests against real subprocesses (the current interpreter)."""

from __future__ import annotations

import asyncio
import io
import logging
import os
from pathlib import Path

import pytest
import structlog
from _helpers import by_worker, collect, py_command

from procmux.command import Command
from procmux.errors import DuplicateCommandError, NoCommandsError
from procmux.runner import (
    BackoffPolicy,
    Finished,
    LineEnding,
    OutputMessage,
    RestartPolicy,
    Runner,
    RunOptions,
    Started,
    StderrChunk,
    StdoutChunk,
    WorkerError,
)
from procmux.runner.worker import Worker


SLEEPER = "import time; print('up'); time.sleep(30)"


def _fast_runner(*commands: Command) -> Runner:
    return Runner(commands).timeouts(stop_sec=2.0, kill_sec=2.0, drain_sec=1.0)


def _assert_well_formed(messages: list[OutputMessage]) -> None:
    """Started (or a lone error) first, then chunks, then exactly one terminal message."""
    assert messages
    first, *rest = messages
    if isinstance(first.payload, WorkerError):
        assert first.is_terminal
        assert rest == []
        return
    assert isinstance(first.payload, Started)
    assert rest and rest[-1].is_terminal
    assert not any(message.is_terminal for message in rest[:-1])
    assert not any(isinstance(message.payload, Started) for message in rest)


# ---- construction errors ----
def test_duplicate_names_rejected() -> None:
    runner = Runner().command(Command.from_string("a", "ls"))
    with pytest.raises(DuplicateCommandError):
        runner.command(Command.from_string("a", "ls -la"))


@pytest.mark.asyncio
async def test_run_without_commands_fails() -> None:
    with pytest.raises(NoCommandsError):
        await Runner().run()


def test_finalize_freezes_options() -> None:
    runner = Runner().command(Command.from_string("a", "ls")).restart("kill-others")
    config = runner.finalize()

    runner.verbose(True)

    assert config.options.restart_policy is RestartPolicy.KILL_OTHERS
    assert config.options.verbose is False
    assert config.names == ["a"]


# ---- output capture ----
@pytest.mark.asyncio
async def test_captures_stdout_and_stderr_in_order() -> None:
    code = (
        "import sys\n"
        "print('one'); print('two')\n"
        "sys.stderr.write('oops\\n')\n"
        "sys.exit(3)\n"
    )
    handle, feed = await _fast_runner(py_command("w", code)).run()
    messages = await collect(feed)
    await handle.join()

    _assert_well_formed(messages)
    stdout = [m.payload.data for m in messages if isinstance(m.payload, StdoutChunk)]
    stderr = [m.payload.data for m in messages if isinstance(m.payload, StderrChunk)]
    assert stdout == [b"one", b"two"]
    assert stderr == [b"oops"]
    assert messages[-1].payload == Finished(exit_code=3)


@pytest.mark.asyncio
async def test_carriage_return_is_preserved() -> None:
    code = "import sys; sys.stdout.write('abc\\rdef\\n'); sys.stdout.flush()"
    handle, feed = await _fast_runner(py_command("p", code)).run()
    messages = await collect(feed)
    await handle.join()

    chunks = [
        (m.payload.ending, m.payload.data)
        for m in messages
        if isinstance(m.payload, StdoutChunk)
    ]
    assert chunks == [(LineEnding.CARRIAGE_RETURN, b"abc"), (LineEnding.NEWLINE, b"def")]


@pytest.mark.asyncio
async def test_working_directory_is_used(tmp_path: Path) -> None:
    command = py_command("cwd", "import os; print(os.getcwd())").with_cwd(tmp_path)
    handle, feed = await _fast_runner(command).run()
    messages = await collect(feed)
    await handle.join()

    lines = [m.payload.data for m in messages if isinstance(m.payload, StdoutChunk)]
    assert Path(lines[0].decode()).resolve() == tmp_path.resolve()


@pytest.mark.asyncio
async def test_env_is_passed_to_the_process() -> None:
    command = py_command("env", "import os; print(os.environ['PROCMUX_TEST'])").with_env(
        {"PROCMUX_TEST": "hello"}
    )
    handle, feed = await _fast_runner(command).run()
    messages = await collect(feed)
    await handle.join()

    assert [m.payload.data for m in messages if isinstance(m.payload, StdoutChunk)] == [b"hello"]


@pytest.mark.asyncio
async def test_every_worker_gets_started_and_one_terminal_message() -> None:
    commands = [py_command(f"w{i}", f"print({i})") for i in range(5)]
    handle, feed = await _fast_runner(*commands).run()
    messages = await collect(feed)
    await handle.join()

    grouped = by_worker(messages)
    assert set(grouped) == {f"w{i}" for i in range(5)}
    for worker_messages in grouped.values():
        _assert_well_formed(worker_messages)
        assert worker_messages[-1].payload == Finished(exit_code=0)


# ---- spawn errors ----
@pytest.mark.asyncio
async def test_missing_program_reports_error_and_others_complete() -> None:
    missing = Command.from_string("ghost", "/definitely/not/a/real/program --flag")
    ok = py_command("ok", "print('fine')")
    handle, feed = await _fast_runner(missing, ok).run()
    messages = await collect(feed)
    await handle.join()

    grouped = by_worker(messages)
    assert len(grouped["ghost"]) == 1
    error = grouped["ghost"][0].payload
    assert isinstance(error, WorkerError)
    assert "not found" in error.message
    assert grouped["ok"][-1].payload == Finished(exit_code=0)


@pytest.mark.asyncio
async def test_missing_working_directory_reports_error(tmp_path: Path) -> None:
    command = py_command("w", "print(1)").with_cwd(tmp_path / "nope")
    handle, feed = await _fast_runner(command).run()
    messages = await collect(feed)
    await handle.join()

    assert len(messages) == 1
    assert isinstance(messages[0].payload, WorkerError)


# ---- policy: kill others ----
@pytest.mark.asyncio
async def test_kill_others_stops_the_fleet_after_first_exit() -> None:
    runner = _fast_runner(
        py_command("quick", "import sys; sys.exit(1)"),
        py_command("slow1", SLEEPER),
        py_command("slow2", SLEEPER),
    ).restart(RestartPolicy.KILL_OTHERS)

    handle, feed = await runner.run()
    messages = await asyncio.wait_for(collect(feed), timeout=20)
    await asyncio.wait_for(handle.join(), timeout=5)

    grouped = by_worker(messages)
    assert grouped["quick"][-1].payload == Finished(exit_code=1)
    for name in ("slow1", "slow2"):
        _assert_well_formed(grouped[name])
        terminal = grouped[name][-1].payload
        # killed by a signal, or never started because cancellation came first
        assert terminal == Finished(exit_code=None) or isinstance(terminal, WorkerError)
    assert handle.done


@pytest.mark.asyncio
async def test_continue_policy_lets_others_finish() -> None:
    runner = _fast_runner(
        py_command("bad", "import sys; sys.exit(2)"),
        py_command("good", "import time; time.sleep(0.3); print('done')"),
    ).restart(RestartPolicy.CONTINUE)

    handle, feed = await runner.run()
    messages = await collect(feed)
    await handle.join()

    grouped = by_worker(messages)
    assert grouped["bad"][-1].payload == Finished(exit_code=2)
    assert grouped["good"][-1].payload == Finished(exit_code=0)


# ---- policy: restart ----
@pytest.mark.asyncio
async def test_restart_on_fail_restarts_until_give_up() -> None:
    backoff = BackoffPolicy(base_sec=0.05, jitter_sec=0.0, max_restarts_in_window=2)
    runner = (
        _fast_runner(py_command("flaky", "import sys; sys.exit(1)"))
        .restart(RestartPolicy.RESTART_ON_FAIL)
        .backoff(backoff)
    )

    handle, feed = await runner.run()
    messages = await asyncio.wait_for(collect(feed), timeout=20)
    await handle.join()

    starts = [m for m in messages if isinstance(m.payload, Started)]
    finishes = [m for m in messages if isinstance(m.payload, Finished)]
    # first run + two restarts, then the worker is given up
    assert len(starts) == 3
    assert len(finishes) == 3


@pytest.mark.asyncio
async def test_cancel_during_restart_delay_ends_the_run() -> None:
    backoff = BackoffPolicy(base_sec=30.0, jitter_sec=0.0)
    runner = (
        _fast_runner(py_command("flaky", "import sys; sys.exit(1)"))
        .restart(RestartPolicy.RESTART)
        .backoff(backoff)
    )

    handle, feed = await runner.run()
    first = [await feed.receive(), await feed.receive()]
    assert first[-1].payload == Finished(exit_code=1)

    handle.cancel()
    await asyncio.wait_for(handle.join(), timeout=5)
    assert await collect(feed) == []


# ---- handle ----
@pytest.mark.asyncio
async def test_external_cancel_is_idempotent_and_safe_after_join() -> None:
    handle, feed = await _fast_runner(py_command("a", SLEEPER), py_command("b", SLEEPER)).run()

    # wait until both are up
    started: set[str] = set()
    while started != {"a", "b"}:
        message = await feed.receive()
        if isinstance(message.payload, Started):
            started.add(message.name)

    handle.cancel()
    handle.cancel()
    await asyncio.wait_for(handle.join(), timeout=10)

    handle.cancel()
    await handle.join()

    rest = await collect(feed)
    terminals = {m.name: m.payload for m in rest if m.is_terminal}
    assert terminals == {"a": Finished(exit_code=None), "b": Finished(exit_code=None)}


@pytest.mark.asyncio
async def test_join_works_without_consuming_the_feed() -> None:
    handle, feed = await _fast_runner(py_command("a", "print('x' * 10)")).run()
    await asyncio.wait_for(handle.join(), timeout=10)

    messages = await collect(feed)
    _assert_well_formed(messages)


# ---- progress output ----
@pytest.mark.asyncio
async def test_progress_update_is_delivered_before_the_next_write() -> None:
    code = (
        "import sys, time\n"
        "sys.stdout.write('50%\\r'); sys.stdout.flush()\n"
        "time.sleep(2)\n"
        "print('100%')\n"
    )
    loop = asyncio.get_running_loop()
    began = loop.time()
    handle, feed = await _fast_runner(py_command("p", code)).run()

    message = await feed.receive()
    while not isinstance(message.payload, StdoutChunk):
        message = await feed.receive()
    elapsed = loop.time() - began

    assert message.payload == StdoutChunk(LineEnding.CARRIAGE_RETURN, b"50%")
    assert elapsed < 1.5

    rest = await collect(feed)
    await handle.join()
    assert [m.payload for m in rest if isinstance(m.payload, StdoutChunk)] == [
        StdoutChunk(LineEnding.NEWLINE, b"100%")
    ]


# ---- failures inside a worker ----
@pytest.mark.asyncio
async def test_read_failure_is_reported_without_ending_the_worker() -> None:
    worker = Worker(py_command("w", "pass"), RunOptions())
    reader = asyncio.StreamReader()
    reader.set_exception(ConnectionResetError("pipe reset"))
    emitted: list = []

    await worker._drain(reader, StderrChunk, emitted.append)

    assert emitted == [WorkerError("error reading stderr: pipe reset", terminal=False)]
    assert not OutputMessage("w", emitted[0]).is_terminal


@pytest.mark.asyncio
async def test_stream_errors_still_end_with_finished(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _failing_frames(reader, **_):
        raise OSError("read failed")
        yield  # makes this an async generator

    monkeypatch.setattr("procmux.runner.worker.frame_stream", _failing_frames)
    handle, feed = await _fast_runner(py_command("w", "print('lost')")).run()
    messages = await asyncio.wait_for(collect(feed), timeout=10)
    await handle.join()

    _assert_well_formed(messages)
    errors = [m for m in messages if isinstance(m.payload, WorkerError)]
    assert len(errors) == 2
    assert not any(m.is_terminal for m in errors)
    assert messages[-1].payload == Finished(exit_code=0)


@pytest.mark.asyncio
async def test_spawn_error_is_reported_even_when_logging_fails() -> None:
    broken = io.StringIO()
    broken.close()
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
        logger_factory=structlog.PrintLoggerFactory(file=broken),
    )

    handle, feed = await _fast_runner(Command.from_string("ghost", "/no/such/program")).run()
    messages = await asyncio.wait_for(collect(feed), timeout=5)
    await asyncio.wait_for(handle.join(), timeout=5)

    assert len(messages) == 1
    assert isinstance(messages[0].payload, WorkerError)
    assert messages[0].is_terminal


@pytest.mark.asyncio
async def test_worker_crash_after_start_stops_the_process(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _explode(self, process, cancel_event):
        raise RuntimeError("boom")

    monkeypatch.setattr(Worker, "_wait_or_cancel", _explode)
    handle, feed = await _fast_runner(py_command("w", SLEEPER)).run()
    messages = await asyncio.wait_for(collect(feed), timeout=10)
    await asyncio.wait_for(handle.join(), timeout=5)

    _assert_well_formed(messages)
    assert messages[-1].payload == WorkerError("internal error: boom")
    started = messages[0].payload
    assert isinstance(started, Started) and started.pid is not None
    with pytest.raises(ProcessLookupError):
        os.kill(started.pid, 0)
