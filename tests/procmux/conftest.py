from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("PROCMUX_VERBOSE", "PROCMUX_RESTART", "PROCMUX_LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    # configure_logging binds the stderr of the moment; CliRunner closes its capture afterwards
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
