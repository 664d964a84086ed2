"""Pipeline counters and export helpers."""

from __future__ import annotations

import csv
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

import pandas as pd

COUNTER_NAMES: tuple[str, ...] = (
    "received",
    "applied",
    "noops",
    "duplicates",
    "out_of_scope",
    "invalid",
    "decode_errors",
    "rejected_transitions",
    "reconcile_requests",
    "reconcile_fetches",
    "reconcile_failures",
    "reconnects",
    "notifications",
)

_HELP = {
    "received": "Frames received from the push channel.",
    "applied": "Patches that changed the local store.",
    "noops": "Patches that left the store unchanged.",
    "duplicates": "Deliveries absorbed by the idempotency deduper.",
    "out_of_scope": "Events dropped by the scope filter.",
    "invalid": "Events dropped by payload validation.",
    "decode_errors": "Frames that could not be decoded.",
    "rejected_transitions": "Patches rejected as non-monotonic status changes.",
    "reconcile_requests": "Reconciliation requests (before debounce).",
    "reconcile_fetches": "Authoritative refetches performed.",
    "reconcile_failures": "Reconciliations that exhausted their retries.",
    "reconnects": "Successful push-channel reconnects.",
    "notifications": "Notifications delivered to channels.",
}


@dataclass(slots=True)
class SyncMetricsSnapshot:
    """Point-in-time copy of the sync counters."""

    received: int
    applied: int
    noops: int
    duplicates: int
    out_of_scope: int
    invalid: int
    decode_errors: int
    rejected_transitions: int
    reconcile_requests: int
    reconcile_fetches: int
    reconcile_failures: int
    reconnects: int
    notifications: int
    events_per_second: float
    uptime_seconds: float


class SyncMetrics:
    """Thread-safe pipeline counters with Prometheus text / CSV export."""

    def __init__(self) -> None:
        self.start_time = pd.Timestamp.now(tz="UTC")
        self.end_time: pd.Timestamp | None = None
        self._counts = {name: 0 for name in COUNTER_NAMES}
        self._lock = threading.Lock()

    def increment(self, name: str, count: int = 1) -> None:
        if name not in self._counts:
            msg = f"Unknown metric counter: {name!r}"
            raise KeyError(msg)
        with self._lock:
            self._counts[name] += int(count)

    def count(self, name: str) -> int:
        with self._lock:
            return int(self._counts[name])

    def finalize(self) -> None:
        """Mark metrics collection end timestamp."""
        self.end_time = pd.Timestamp.now(tz="UTC")

    def snapshot(self) -> SyncMetricsSnapshot:
        with self._lock:
            counts = dict(self._counts)
        elapsed_seconds = self._elapsed_seconds()
        return SyncMetricsSnapshot(
            **counts,
            events_per_second=float(counts["received"] / elapsed_seconds),
            uptime_seconds=float(elapsed_seconds),
        )

    def as_dict(self) -> dict[str, float]:
        return asdict(self.snapshot())

    def export_prometheus(self, path: str | Path) -> Path:
        """Export counters in simple Prometheus text format."""
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        metrics = self.snapshot()
        lines: list[str] = []
        for name in COUNTER_NAMES:
            metric_name = f"ordersync_{name}_total"
            lines.extend(
                [
                    f"# HELP {metric_name} {_HELP[name]}",
                    f"# TYPE {metric_name} counter",
                    f"{metric_name} {getattr(metrics, name)}",
                ]
            )
        lines.extend(
            [
                "# HELP ordersync_events_per_second Received frames per second.",
                "# TYPE ordersync_events_per_second gauge",
                f"ordersync_events_per_second {metrics.events_per_second:.10f}",
            ]
        )
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path

    def export_csv(self, path: str | Path) -> Path:
        """Export counters as single-row CSV."""
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        row = asdict(self.snapshot())
        with output_path.open("w", encoding="utf-8", newline="") as csv_file:
            writer = csv.DictWriter(csv_file, fieldnames=list(row))
            writer.writeheader()
            writer.writerow(row)
        return output_path

    def _elapsed_seconds(self) -> float:
        stop_time = self.end_time or pd.Timestamp.now(tz="UTC")
        elapsed_seconds = (stop_time - self.start_time).total_seconds()
        return max(float(elapsed_seconds), 1e-9)
