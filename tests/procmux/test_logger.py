from __future__ import annotations

import json

import pytest

from procmux.logger import configure_logging, get_logger


def test_named_events_carry_the_run_id(capsys: pytest.CaptureFixture[str]) -> None:
    run_id = configure_logging("INFO")

    get_logger("proc.event").info("proc.started", pid=42)

    err = capsys.readouterr().err
    assert "proc.started" in err
    assert "proc.event" in err
    assert "pid=42" in err
    assert run_id in err


def test_json_output_respects_the_level(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("warning", json=True)
    log = get_logger("proc.event")

    log.info("proc.exit", returncode=0)
    log.warning("drainer.timeout", pending=1)

    lines = capsys.readouterr().err.splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["event"] == "drainer.timeout"
    assert record["logger_name"] == "proc.event"
    assert record["level"] == "warning"
    assert record["pending"] == 1


def test_stdout_stays_clean(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("DEBUG")
    get_logger("proc.event").error("proc.start_error", exe="nope")
    assert capsys.readouterr().out == ""
