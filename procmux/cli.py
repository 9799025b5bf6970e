from __future__ import annotations

import asyncio
import re
import signal
from pathlib import Path

import typer

from procmux.command import Command
from procmux.config import AppConfig
from procmux.console import ConsoleHandle, run_console
from procmux.errors import ProcmuxError
from procmux.logger import configure_logging, get_logger
from procmux.runner import Finished, RestartPolicy
from procmux.runner.signals import install_signal_handlers


app = typer.Typer(help="Run several commands at once and merge their output")


@app.callback()
def _root() -> None:
    """Run several commands at once and merge their output."""


_NAMED_COMMAND: re.Pattern[str] = re.compile(r"^(?P<name>[A-Za-z0-9_.-]+)=(?P<cmd>.+)$", re.S)


def parse_command_arg(index: int, raw: str) -> Command:
    """`name=command` or a bare command, which is then named by its position."""
    match = _NAMED_COMMAND.match(raw)
    if match:
        return Command.from_string(match.group("name"), match.group("cmd"))
    return Command.from_string(str(index), raw)


def exit_code_for(handle: ConsoleHandle) -> int:
    results = handle.results.values()
    if results and all(isinstance(r, Finished) and r.exit_code == 0 for r in results):
        return 0
    return 1


async def _run(config: AppConfig, extra: list[Command]) -> int:
    log = get_logger("procmux.cli")
    runner, colors = config.build_runner()
    for command in extra:
        runner.command(command)

    handle = await run_console(runner, colors)

    def _on_signal(received: signal.Signals) -> None:
        log.warning("signal.received", signal=received.name)
        handle.cancel(reason=f"signal_{received.name.lower()}")

    uninstall = install_signal_handlers(asyncio.get_running_loop(), _on_signal)
    try:
        await handle.join()
    finally:
        uninstall()
    return exit_code_for(handle)


@app.command()
def run(
    commands: list[str] = typer.Argument(None, help="NAME=COMMAND entries to run"),
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML config file"),
    restart: RestartPolicy | None = typer.Option(None, "--restart", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    flags: bool = typer.Option(False, "--flags", help="Mark lines with (o)/(e)"),
    log_level: str | None = typer.Option(None, "--log-level"),
) -> None:
    try:
        cfg = AppConfig.from_yaml(config)
        if restart is not None:
            cfg.run.restart = restart
        if verbose:
            cfg.run.verbose = True
        if flags:
            cfg.run.show_stream_flags = True
        if log_level:
            cfg.logging.level = log_level

        configure_logging(cfg.logging.level, json=cfg.logging.json_output)
        extra = [parse_command_arg(i, raw) for i, raw in enumerate(commands or [])]
        code = asyncio.run(_run(cfg, extra))
    except ProcmuxError as exc:
        typer.echo(f"procmux: {exc}", err=True)
        raise typer.Exit(2) from exc
    raise typer.Exit(code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
