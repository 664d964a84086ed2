from __future__ import annotations

import csv
from pathlib import Path

import pytest

from ordersync.ops import COUNTER_NAMES, SyncMetrics


def test_counters_increment_and_snapshot() -> None:
    metrics = SyncMetrics()
    metrics.increment("received", 3)
    metrics.increment("applied")
    metrics.finalize()

    snapshot = metrics.snapshot()
    assert snapshot.received == 3
    assert snapshot.applied == 1
    assert snapshot.duplicates == 0
    assert snapshot.events_per_second > 0
    assert set(COUNTER_NAMES).issubset(metrics.as_dict())


def test_unknown_counter_is_rejected() -> None:
    with pytest.raises(KeyError, match="Unknown metric counter"):
        SyncMetrics().increment("bogus")


def test_prometheus_and_csv_exports(tmp_path: Path) -> None:
    metrics = SyncMetrics()
    metrics.increment("reconnects", 2)
    metrics.finalize()

    prometheus_path = metrics.export_prometheus(tmp_path / "out" / "sync.prom")
    csv_path = metrics.export_csv(tmp_path / "out" / "sync.csv")

    text = prometheus_path.read_text(encoding="utf-8")
    assert "# TYPE ordersync_reconnects_total counter" in text
    assert "ordersync_reconnects_total 2" in text
    assert "ordersync_events_per_second" in text

    with csv_path.open(encoding="utf-8", newline="") as csv_file:
        rows = list(csv.DictReader(csv_file))
    assert len(rows) == 1
    assert rows[0]["reconnects"] == "2"
