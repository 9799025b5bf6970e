from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from collections.abc import Callable, Mapping
from enum import StrEnum
from pathlib import Path
from typing import TypedDict

from structlog.typing import FilteringBoundLogger

from procmux.command import Command
from procmux.logger import get_logger

from .channel import Channel
from .framing import frame_stream
from .types import (
    Finished,
    OutputMessage,
    OutputPayload,
    RunOptions,
    Started,
    StderrChunk,
    StdoutChunk,
    WorkerError,
)


Emit = Callable[[OutputPayload], None]


class WorkerState(StrEnum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    FINISHED = "finished"


class PopenKwargs(TypedDict, total=False):
    stdin: int | None
    stdout: int | None
    stderr: int | None
    cwd: str | Path | None
    env: Mapping[str, str] | None
    start_new_session: bool


class Worker:
    """Owns one spawned process and streams its events into the shared channel."""

    def __init__(
        self,
        command: Command,
        options: RunOptions,
        *,
        log_event: FilteringBoundLogger | None = None,
    ) -> None:
        self.command = command
        self.options = options
        self.state = WorkerState.NOT_STARTED
        self.exit_code: int | None = None
        self.started_monotonic: float | None = None
        # set once the terminal message is in the channel
        self.terminal_sent = False
        self._process: asyncio.subprocess.Process | None = None
        self._drainers: tuple[asyncio.Task[None], ...] = ()
        self._log = (log_event or get_logger("proc.event")).bind(name=command.name)

    @property
    def name(self) -> str:
        return self.command.name

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def uptime_seconds(self) -> float:
        if self.started_monotonic is None:
            return 0.0
        return max(0.0, time.monotonic() - self.started_monotonic)

    async def run(self, channel: Channel[OutputMessage], cancel_event: asyncio.Event) -> None:
        """Spawn, drain and wait; always ends with exactly one terminal message."""
        if self.state is not WorkerState.NOT_STARTED:
            raise RuntimeError(f"worker {self.name!r} already ran; create a new one to restart")

        def emit(payload: OutputPayload) -> None:
            message = OutputMessage(name=self.name, payload=payload)
            channel.send(message)
            if message.is_terminal:
                self.terminal_sent = True

        if cancel_event.is_set():
            self.state = WorkerState.FINISHED
            emit(WorkerError("cancelled before start"))
            self._log.info("proc.skip", reason="cancelled")
            return

        try:
            process = await self._spawn()
        except Exception as exc:
            self.state = WorkerState.FINISHED
            emit(WorkerError(_describe_spawn_error(self.command, exc)))
            self._log.error(
                "proc.start_error",
                error=repr(exc),
                exe=self.command.exe,
                args=list(self.command.args),
            )
            return

        self._process = process
        self.started_monotonic = time.monotonic()
        self.state = WorkerState.RUNNING
        emit(Started(pid=process.pid))
        self._log.info(
            "proc.started",
            pid=process.pid,
            cwd=str(self.command.cwd) if self.command.cwd else None,
            exe=self.command.exe,
            args=list(self.command.args),
        )

        stdout_task = asyncio.create_task(
            self._drain(process.stdout, StdoutChunk, emit), name=f"drain:{self.name}:stdout"
        )
        stderr_task = asyncio.create_task(
            self._drain(process.stderr, StderrChunk, emit), name=f"drain:{self.name}:stderr"
        )
        self._drainers = (stdout_task, stderr_task)

        try:
            return_code = await self._wait_or_cancel(process, cancel_event)
            await self._finish_drainers(stdout_task, stderr_task)
        except asyncio.CancelledError:
            # task cancelled from outside: kill the process, but still report the exit
            with contextlib.suppress(Exception):
                await asyncio.shield(self.stop(reason="task_cancelled"))
            for task in (stdout_task, stderr_task):
                task.cancel()
            self._settle(process.returncode, emit)
            raise

        self._settle(return_code, emit)

    async def abort(self) -> None:
        """Cancel the drainers and stop the process after `run` failed half-way."""
        for task in self._drainers:
            task.cancel()
        if self._drainers:
            await asyncio.gather(*self._drainers, return_exceptions=True)
        await self.stop(reason="aborted")
        self.state = WorkerState.FINISHED

    def _settle(self, return_code: int | None, emit: Emit) -> None:
        # negative return codes mean the process was terminated by a signal
        exit_code = return_code if return_code is not None and return_code >= 0 else None
        self.exit_code = exit_code
        self.state = WorkerState.FINISHED
        emit(Finished(exit_code=exit_code))
        self._log.info(
            "proc.exit",
            pid=self.pid,
            returncode=return_code,
            uptime_s=round(self.uptime_seconds, 3),
        )

    async def _spawn(self) -> asyncio.subprocess.Process:
        env = None
        if self.command.env:
            env = os.environ.copy()
            env.update(self.command.env)

        popen_kwargs: PopenKwargs = {
            "cwd": self.command.cwd,
            "env": env,
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "start_new_session": True,
        }
        return await asyncio.create_subprocess_exec(
            self.command.exe,
            *self.command.args,
            **popen_kwargs,
        )

    async def _drain(
        self,
        reader: asyncio.StreamReader | None,
        chunk_type: type[StdoutChunk] | type[StderrChunk],
        emit: Emit,
    ) -> None:
        if reader is None:
            return
        try:
            frames = frame_stream(
                reader,
                chunk_size=self.options.read_chunk_size,
                cr_grace_sec=self.options.cr_grace_sec,
            )
            async for ending, data in frames:
                emit(chunk_type(ending, data))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            stream = "stdout" if chunk_type is StdoutChunk else "stderr"
            emit(WorkerError(f"error reading {stream}: {exc}", terminal=False))
            self._log.warning("proc.out_error", stream=stream, error=repr(exc))

    async def _wait_or_cancel(
        self, process: asyncio.subprocess.Process, cancel_event: asyncio.Event
    ) -> int | None:
        """Wait until the process exits or cancellation is requested."""
        proc_wait = asyncio.create_task(process.wait(), name=f"wait:{self.name}")
        cancel_wait = asyncio.create_task(cancel_event.wait(), name=f"wait:cancel:{self.name}")

        try:
            done, _ = await asyncio.wait(
                {proc_wait, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (proc_wait, cancel_wait):
                if not task.done():
                    task.cancel()
            await asyncio.gather(proc_wait, cancel_wait, return_exceptions=True)

        if proc_wait in done:
            return process.returncode

        await self.stop(reason="cancelled")
        return process.returncode

    async def _finish_drainers(self, *drainers: asyncio.Task[None]) -> None:
        """Let drainers reach EOF so every chunk precedes the terminal message."""
        _, pending = await asyncio.wait(drainers, timeout=self.options.drain_timeout_sec)
        if pending:
            # a grandchild may still hold the pipes open
            self._log.warning("drainer.timeout", pending=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def stop(self, reason: str = "manual") -> None:
        """TERM(process group) -> wait -> KILL(process group) -> wait. No-op once exited."""
        process = self._process
        if process is None or process.returncode is not None:
            return

        _signal_group(process, signal.SIGTERM, self._log)
        self._log.info("proc.terminate_sent", pid=process.pid, reason=reason)

        try:
            await asyncio.wait_for(process.wait(), timeout=self.options.stop_timeout_sec)
            self._log.info("proc.terminated", pid=process.pid, returncode=process.returncode)
            return
        except asyncio.TimeoutError:  # noqa: UP041
            pass

        _signal_group(process, _KILL_SIGNAL, self._log)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.options.kill_timeout_sec)
            self._log.info("proc.killed", pid=process.pid, returncode=process.returncode)
        except asyncio.TimeoutError:  # noqa: UP041
            self._log.error("proc.kill_timeout", pid=process.pid)


_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


def _signal_group(
    process: asyncio.subprocess.Process, sig: signal.Signals, log: FilteringBoundLogger
) -> None:
    if process.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            try:
                pgid = os.getpgid(process.pid)
            except ProcessLookupError:
                return
            os.killpg(pgid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        # already gone
        return
    except OSError as exc:
        log.warning("signal.error", signal=sig.name, error=repr(exc))


def _describe_spawn_error(command: Command, exc: Exception) -> str:
    if isinstance(exc, FileNotFoundError):
        if command.cwd is not None and not command.cwd.is_dir():
            return f"working directory not found: {command.cwd}"
        return f"program not found: {command.exe}"
    if isinstance(exc, PermissionError):
        return f"permission denied: {command.exe}"
    return f"failed to start {command.exe}: {exc}"


__all__ = ["Worker", "WorkerState"]
