from __future__ import annotations

import json
import logging
from pathlib import Path

import pandas as pd
import pytest

from ordersync.ops import JsonEventLogger


def test_emit_writes_json_lines_and_keeps_records(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "sync.jsonl"
    logger = JsonEventLogger(path=log_path)

    logger.emit(
        level="INFO",
        event="frame_applied",
        session_id="C1",
        order_id="O1",
        at=pd.Timestamp("2024-01-01T00:00:00Z"),
        path=Path("x/y"),
    )
    logger.emit(level="warning", event="frame_invalid", session_id="C1")

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["level"] == "info"
    assert first["event"] == "frame_applied"
    assert first["session_id"] == "C1"
    assert first["at"] == "2024-01-01T00:00:00+00:00"
    assert first["path"] == str(Path("x/y"))
    assert [record["event"] for record in logger.events()] == ["frame_applied", "frame_invalid"]
    assert len(logger.events("frame_invalid")) == 1


def test_records_are_bounded() -> None:
    logger = JsonEventLogger(max_records=2)
    for index in range(4):
        logger.emit(level="info", event=f"e{index}")

    assert [record["event"] for record in logger.events()] == ["e2", "e3"]


def test_records_forward_to_standard_logging(caplog: pytest.LogCaptureFixture) -> None:
    logger = JsonEventLogger(logger_name="ordersync.test")
    with caplog.at_level(logging.WARNING, logger="ordersync.test"):
        logger.emit(level="warning", event="connection_lost", error="reset")
        logger.emit(level="debug", event="quiet")

    assert len(caplog.records) == 1
    assert json.loads(caplog.records[0].getMessage())["event"] == "connection_lost"


def test_negative_max_records_rejected() -> None:
    with pytest.raises(ValueError, match="max_records"):
        JsonEventLogger(max_records=-1)
