from __future__ import annotations

import os
from pathlib import Path
from typing import ClassVar

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from procmux.command import Command
from procmux.console.colors import Color
from procmux.errors import MissingConfigError
from procmux.runner.backoff import BackoffPolicy
from procmux.runner.runner import Runner
from procmux.runner.types import RestartPolicy, RunOptions


class RunSettings(BaseModel):
    verbose: bool = Field(default=False)
    show_stream_flags: bool = Field(default=False)
    restart: RestartPolicy = Field(default=RestartPolicy.CONTINUE)
    abnormal_exit_is_failure: bool = Field(default=True)
    stop_timeout_sec: float = Field(default=5.0, gt=0)
    kill_timeout_sec: float = Field(default=2.0, gt=0)
    drain_timeout_sec: float = Field(default=2.0, gt=0)


class BackoffSettings(BaseModel):
    """Restart delays, mirrored 1:1 onto BackoffPolicy."""

    base_sec: float = Field(default=0.5, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_sec: float = Field(default=30.0, ge=0)
    jitter_sec: float = Field(default=0.4, ge=0)
    reset_after_ok_sec: float = Field(default=60.0, ge=0)
    window_sec: float = Field(default=300.0, gt=0)
    max_restarts_in_window: int = Field(default=20, ge=0)


class LoggingSettings(BaseModel):
    level: str = Field(default="WARNING")
    json_output: bool = Field(default=False)


class CommandSettings(BaseModel):
    name: str
    cmd: str
    cwd: Path | None = Field(default=None)
    env: dict[str, str] = Field(default_factory=dict)
    color: Color = Field(default=Color.RANDOM)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command name must not be empty")
        return value

    def to_command(self) -> Command:
        command = Command.from_string(self.name, self.cmd)
        if self.cwd is not None:
            command = command.with_cwd(self.cwd)
        if self.env:
            command = command.with_env(self.env)
        return command


class AppConfig(BaseSettings):
    """
    Application settings.

    Source of truth:
      1) YAML file (structured config)
      2) a few flat PROCMUX_* env overrides, merged explicitly in from_yaml().
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        case_sensitive=False,
    )

    run: RunSettings = Field(default_factory=RunSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    commands: list[CommandSettings] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> AppConfig:
        """
        Load config from YAML, then overlay env overrides.
        Search order if path is not provided:
          ./procmux.yaml
          ./procmux.yml
        An explicitly given path must exist.
        """
        candidates: list[Path] = []
        if path is not None:
            if not path.exists():
                raise MissingConfigError(f"Config file not found: {path}")
            candidates.append(path)
        else:
            candidates.extend([Path("procmux.yaml"), Path("procmux.yml")])

        raw: dict[str, object] = {}
        for p in candidates:
            if p.exists():
                text = p.read_text(encoding="utf-8")
                try:
                    loaded = yaml.safe_load(text) or {}
                except yaml.YAMLError as exc:
                    raise MissingConfigError(f"Invalid YAML in {p}: {exc}") from exc
                if not isinstance(loaded, dict):
                    raise MissingConfigError(f"YAML at {p} must define a mapping at the root")
                raw = loaded
                break

        try:
            cfg = cls.model_validate(raw)
        except ValidationError as exc:
            raise MissingConfigError(f"Invalid configuration: {exc}") from exc

        # ---- explicit env merge ----
        verbose = os.getenv("PROCMUX_VERBOSE")
        if verbose:
            cfg.run.verbose = verbose.strip().lower() in {"1", "true", "yes", "on"}

        restart = os.getenv("PROCMUX_RESTART")
        if restart:
            try:
                cfg.run.restart = RestartPolicy(restart.strip().lower())
            except ValueError as exc:
                raise MissingConfigError(
                    f"Unknown restart policy in PROCMUX_RESTART: {restart}"
                ) from exc

        level = os.getenv("PROCMUX_LOG_LEVEL")
        if level:
            cfg.logging.level = level.strip().upper()

        return cfg

    def run_options(self) -> RunOptions:
        return RunOptions(
            verbose=self.run.verbose,
            show_stream_flags=self.run.show_stream_flags,
            restart_policy=self.run.restart,
            abnormal_exit_is_failure=self.run.abnormal_exit_is_failure,
            stop_timeout_sec=self.run.stop_timeout_sec,
            kill_timeout_sec=self.run.kill_timeout_sec,
            drain_timeout_sec=self.run.drain_timeout_sec,
            backoff=BackoffPolicy(**self.backoff.model_dump()),
        )

    def build_runner(self) -> tuple[Runner, dict[str, Color]]:
        """Runner with every configured command, plus the preferred color per name."""
        runner = Runner(options=self.run_options())
        colors: dict[str, Color] = {}
        for entry in self.commands:
            runner.command(entry.to_command())
            colors[entry.name] = entry.color
        return runner, colors


__all__ = [
    "AppConfig",
    "BackoffSettings",
    "CommandSettings",
    "LoggingSettings",
    "RunSettings",
]
