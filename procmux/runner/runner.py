from __future__ import annotations

import asyncio
import dataclasses
import platform
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from structlog.typing import FilteringBoundLogger

from procmux.command import Command
from procmux.errors import DuplicateCommandError, NoCommandsError
from procmux.logger import get_logger

from .backoff import BackoffPolicy
from .channel import Channel
from .handle import ControlledHandle
from .policy import Decision, DecisionAction, PolicyEngine
from .types import OutputMessage, RestartPolicy, RunOptions, WorkerError
from .worker import Worker


OutputChannel = Channel[OutputMessage]


@dataclass(slots=True, frozen=True)
class RunConfig:
    """Finalized, immutable configuration of one run."""

    commands: tuple[Command, ...]
    options: RunOptions

    @property
    def names(self) -> list[str]:
        return [command.name for command in self.commands]


@dataclass(slots=True, frozen=True)
class _RestartAbandoned:
    name: str


class Runner:
    """Collects commands and options; `run()` starts them all and returns a handle."""

    def __init__(self, commands: Iterable[Command] = (), options: RunOptions | None = None) -> None:
        self._commands: dict[str, Command] = {}
        self._options = options or RunOptions()
        for command in commands:
            self.command(command)

    @property
    def commands(self) -> list[Command]:
        return list(self._commands.values())

    @property
    def options(self) -> RunOptions:
        return self._options

    def command(self, command: Command) -> Runner:
        if command.name in self._commands:
            raise DuplicateCommandError(command.name)
        self._commands[command.name] = command
        return self

    def restart(self, policy: RestartPolicy | str) -> Runner:
        return self._replace(restart_policy=RestartPolicy(policy))

    def verbose(self, enabled: bool = True) -> Runner:
        return self._replace(verbose=enabled)

    def stream_flags(self, enabled: bool = True) -> Runner:
        return self._replace(show_stream_flags=enabled)

    def backoff(self, policy: BackoffPolicy) -> Runner:
        return self._replace(backoff=policy)

    def timeouts(
        self,
        *,
        stop_sec: float | None = None,
        kill_sec: float | None = None,
        drain_sec: float | None = None,
    ) -> Runner:
        changes: dict[str, Any] = {}
        if stop_sec is not None:
            changes["stop_timeout_sec"] = stop_sec
        if kill_sec is not None:
            changes["kill_timeout_sec"] = kill_sec
        if drain_sec is not None:
            changes["drain_timeout_sec"] = drain_sec
        return self._replace(**changes)

    def finalize(self) -> RunConfig:
        if not self._commands:
            raise NoCommandsError()
        return RunConfig(commands=tuple(self._commands.values()), options=self._options)

    async def run(self) -> tuple[ControlledHandle, OutputChannel]:
        """Start every command at once; returns the handle and the single output feed."""
        supervision = Supervision(self.finalize())
        handle = supervision.start()
        return handle, supervision.outbound

    def _replace(self, **changes: Any) -> Runner:
        self._options = dataclasses.replace(self._options, **changes)
        return self


class Supervision:
    """One run: the workers, the policy engine and the forwarding loop between them."""

    def __init__(self, config: RunConfig) -> None:
        self.config = config
        self.inbound: Channel[OutputMessage | _RestartAbandoned] = Channel()
        self.outbound: OutputChannel = Channel()
        self.cancel_event = asyncio.Event()
        self.engine = PolicyEngine(names=config.names, options=config.options)
        self.workers: dict[str, Worker] = {}

        self.log_event: FilteringBoundLogger = get_logger("proc.event")
        self._commands: dict[str, Command] = {command.name: command for command in config.commands}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._supervise_task: asyncio.Task[None] | None = None

    def start(self) -> ControlledHandle:
        if self._supervise_task is not None:
            raise RuntimeError("run already started")

        for command in self.config.commands:
            self._spawn(command)

        self.log_event.info(
            "runner.started",
            platform=platform.platform(),
            python=sys.version.split()[0],
            worker_count=len(self._commands),
            restart_policy=str(self.config.options.restart_policy),
        )
        self._supervise_task = asyncio.create_task(self._supervise(), name="runner.supervise")
        return ControlledHandle(self._supervise_task, self.cancel)

    def cancel(self, reason: str = "manual") -> None:
        """Broadcast cancellation to every worker (idempotent)."""
        if self.engine.complete:
            return
        if self.engine.request_cancel(reason):
            self.log_event.info("runner.cancel", reason=reason, live=self.engine.live_count)
        self.cancel_event.set()

    # --- internals -------------------------------------------------------------------------------

    def _track_task(self, task: asyncio.Task[Any]) -> None:
        """Keep a reference to the task and log unhandled exceptions."""
        self._tasks.add(task)

        def _done(tracked_task: asyncio.Task[Any]) -> None:
            self._tasks.discard(tracked_task)
            if tracked_task.cancelled():
                return
            exception = tracked_task.exception()
            if exception is not None:
                self.log_event.error(
                    "task.unhandled_exception", task=tracked_task.get_name(), error=str(exception)
                )

        task.add_done_callback(_done)

    def _spawn(self, command: Command) -> None:
        # a fresh Worker per start: workers never restart in place
        worker = Worker(command, self.config.options, log_event=self.log_event)
        self.workers[command.name] = worker
        task = asyncio.create_task(self._run_worker(worker), name=f"worker:{command.name}")
        self._track_task(task)

    async def _run_worker(self, worker: Worker) -> None:
        try:
            await worker.run(self.inbound, self.cancel_event)
        except Exception as exc:
            # keep the one-terminal-message guarantee even if the worker itself blew up
            if not worker.terminal_sent:
                try:
                    await worker.abort()
                finally:
                    worker.terminal_sent = True
                    self.inbound.send(
                        OutputMessage(
                            name=worker.name, payload=WorkerError(f"internal error: {exc}")
                        )
                    )
            raise

    async def _restart_later(self, name: str, delay_sec: float) -> None:
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay_sec)
        except asyncio.TimeoutError:  # noqa: UP041
            pass

        if self.cancel_event.is_set():
            self.inbound.send(_RestartAbandoned(name))
            return
        self._spawn(self._commands[name])

    async def _supervise(self) -> None:
        try:
            while not self.engine.complete:
                item = await self.inbound.receive()
                if isinstance(item, _RestartAbandoned):
                    self.log_event.info("proc.restart_abandoned", name=item.name)
                    self.engine.abandon(item.name)
                    continue

                decision = self.engine.observe(item)
                # the engine observes and decides; every message is forwarded unchanged
                self.outbound.send(item)
                self._act(decision)
        except BaseException:
            self.cancel_event.set()
            await self._cancel_all_tasks()
            raise
        finally:
            self.outbound.close()
            self.log_event.info("runner.stopped", state=str(self.engine.state))

        # workers are past their terminal message; let them return
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _act(self, decision: Decision) -> None:
        if decision.action is DecisionAction.NONE:
            return

        self.log_event.info(
            "policy.decision",
            action=str(decision.action),
            name=decision.name,
            delay_s=round(decision.delay_sec, 3),
        )
        if decision.action is DecisionAction.CANCEL_ALL:
            self.cancel_event.set()
        elif decision.action is DecisionAction.RESTART:
            task = asyncio.create_task(
                self._restart_later(decision.name, decision.delay_sec),
                name=f"restart:{decision.name}",
            )
            self._track_task(task)
        elif decision.action is DecisionAction.GIVE_UP:
            self.log_event.error("proc.giveup", name=decision.name, reason="too_many_restarts")

    async def _cancel_all_tasks(self) -> None:
        if not self._tasks:
            return
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = ["OutputChannel", "RunConfig", "Runner", "Supervision"]
