"""Command-line interface for ordersync."""

from __future__ import annotations

import argparse
import json
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from ordersync.config import SyncConfig, load_sync_config
from ordersync.connectors.rest import OrdersApiClient
from ordersync.core.models import ROLES, Session
from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import SyncMetrics
from ordersync.ops.notifications import (
    ConsoleNotificationChannel,
    NotificationChannel,
    NotificationSink,
    RecordingNotificationChannel,
)
from ordersync.ops.secrets import CredentialStore, mask_secret, read_secret_env
from ordersync.sync.dedup import IdempotencyDeduper
from ordersync.sync.pipeline import SyncEngine
from ordersync.sync.reconciler import Reconciler
from ordersync.sync.runtime import SessionRuntime
from ordersync.sync.store import StateStore


@dataclass(slots=True)
class ReplaySummary:
    """What a frame capture did to a fresh session."""

    frames: int
    outcomes: dict[str, int]
    notifications: list[dict[str, Any]]
    pending_reconciliations: list[list[str]]
    reconciliations: list[dict[str, Any]] = field(default_factory=list)
    tracked_orders: int = 0
    tracked_factory_orders: int = 0
    metrics: dict[str, float] = field(default_factory=dict)
    orders_csv_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_session(args: argparse.Namespace) -> Session:
    """Build the viewer session from `--session-*` arguments."""
    return Session(
        user_id=str(args.session_user),
        role=str(args.session_role),  # type: ignore[arg-type]
        branch_id=args.branch,
        chef_id=args.chef,
        department_id=args.department,
        name=str(args.session_name or ""),
    )


def replay_frames(
    config: SyncConfig,
    frames_path: Path,
    session: Session,
    *,
    reconcile: bool = False,
    orders_csv_path: Path | None = None,
) -> ReplaySummary:
    """Push a JSON-lines frame capture through a fresh pipeline."""
    if not frames_path.exists():
        msg = f"Frames file not found: {frames_path}"
        raise FileNotFoundError(msg)

    logger = JsonEventLogger(path=config.log_path)
    metrics = SyncMetrics()
    store = StateStore(logger=logger)
    api = OrdersApiClient(
        base_url=config.api.base_url,
        credentials=CredentialStore.from_env(config.token_env),
        orders_path=config.api.orders_path,
        factory_orders_path=config.api.factory_orders_path,
        timeout_seconds=config.api.timeout_seconds,
        retry_limit=config.api.retry_limit,
        retry_backoff_seconds=config.api.retry_backoff_seconds,
    )
    reconciler = Reconciler(
        store,
        api,
        debounce_seconds=config.reconcile.debounce_seconds,
        retry_limit=config.reconcile.retry_limit,
        retry_backoff_seconds=config.reconcile.retry_backoff_seconds,
        logger=logger,
        metrics=metrics,
    )
    recorder = RecordingNotificationChannel()
    sink = NotificationSink(
        IdempotencyDeduper(config.dedup_capacity),
        channels=[recorder],
        capacity=config.notifications.capacity,
        logger=logger,
        metrics=metrics,
    )
    engine = SyncEngine(
        session,
        store,
        reconciler,
        sink,
        deduper=IdempotencyDeduper(config.dedup_capacity),
        logger=logger,
        metrics=metrics,
    )

    outcomes: Counter[str] = Counter()
    frame_count = 0
    with frames_path.open("r", encoding="utf-8") as frames_file:
        for line in frames_file:
            raw_line = line.strip()
            if not raw_line or raw_line.startswith("#"):
                continue
            frame_count += 1
            outcomes[engine.handle_frame(raw_line).status] += 1

    reconciliations: list[dict[str, Any]] = []
    if reconcile:
        reconciliations = [
            asdict(outcome) for outcome in reconciler.run_due(now=float("inf"))
        ]

    snapshot = store.get_snapshot()
    written_csv: str | None = None
    if orders_csv_path is not None:
        orders_csv_path.parent.mkdir(parents=True, exist_ok=True)
        snapshot.orders_frame().to_csv(orders_csv_path, index=False)
        written_csv = str(orders_csv_path.resolve())

    metrics.finalize()
    return ReplaySummary(
        frames=frame_count,
        outcomes=dict(sorted(outcomes.items())),
        notifications=[notification.to_dict() for notification in reversed(recorder.sent)],
        pending_reconciliations=[list(key) for key in reconciler.pending()],
        reconciliations=reconciliations,
        tracked_orders=len(snapshot.orders),
        tracked_factory_orders=len(snapshot.factory_orders),
        metrics=metrics.as_dict(),
        orders_csv_path=written_csv,
    )


def listen(
    config: SyncConfig,
    session: Session,
    *,
    duration_seconds: float | None = None,
    load_orders: bool = False,
    metrics_dir: Path | None = None,
) -> SessionRuntime:
    """Connect live and print notifications until interrupted or the connection fails."""
    channels: list[NotificationChannel] = [
        ConsoleNotificationChannel(json_mode=config.notifications.json_mode)
    ]
    runtime = SessionRuntime(config, channels=channels)
    runtime.login(session)
    connection = runtime.connection
    if load_orders:
        loaded = runtime.load_initial_orders()
        print(f"Loaded orders: {loaded}")

    deadline = None if duration_seconds is None else time.monotonic() + duration_seconds
    try:
        while not runtime.requires_login and connection.connection_state != "failed":
            if deadline is not None and time.monotonic() >= deadline:
                break
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass

    if connection.connection_state == "failed":
        print(f"Connection failed: {connection.failure_reason}")
    if runtime.requires_login:
        print("Credential rejected; log in again.")
    if runtime.logged_in:
        if metrics_dir is not None:
            runtime.metrics.export_prometheus(metrics_dir / "ordersync.prom")
            runtime.metrics.export_csv(metrics_dir / "ordersync.csv")
        runtime.logout()
    return runtime


def check_config(config_path: Path) -> list[str]:
    """Validate a config file and describe it in printable lines."""
    config = load_sync_config(config_path)
    token = read_secret_env(config.token_env)
    return [
        f"Config OK: {config_path.resolve()}",
        f"Push endpoint: {config.connection.url}",
        f"REST endpoint: {config.api.base_url}",
        f"Reconcile debounce: {config.reconcile.debounce_seconds}s",
        f"Token ({config.token_env}): {mask_secret(token)}",
    ]


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""
    parser = argparse.ArgumentParser(
        prog="ordersync",
        description="Real-time order and production event sync.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    replay_parser = subparsers.add_parser(
        "replay",
        help="Replay a JSON-lines frame capture through the sync pipeline.",
    )
    replay_parser.add_argument("--config", required=True, help="Path to config.toml")
    replay_parser.add_argument(
        "--frames",
        required=True,
        help="JSON-lines file with one push frame per line.",
    )
    replay_parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Fetch pending reconciliations from the REST API after the replay.",
    )
    replay_parser.add_argument(
        "--orders-csv",
        default=None,
        help="Optional path for a CSV export of the resulting orders.",
    )
    _add_session_arguments(replay_parser)

    listen_parser = subparsers.add_parser(
        "listen",
        help="Connect to the push channel and print notifications.",
    )
    listen_parser.add_argument("--config", required=True, help="Path to config.toml")
    listen_parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds. Default: run until interrupted.",
    )
    listen_parser.add_argument(
        "--load-orders",
        action="store_true",
        help="Seed the store from the REST order listing after login.",
    )
    listen_parser.add_argument(
        "--metrics-dir",
        default=None,
        help="Directory for Prometheus/CSV metrics written on exit.",
    )
    _add_session_arguments(listen_parser)

    check_parser = subparsers.add_parser(
        "check-config",
        help="Validate a config file.",
    )
    check_parser.add_argument("--config", required=True, help="Path to config.toml")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "replay":
            summary = replay_frames(
                config=load_sync_config(Path(args.config)),
                frames_path=Path(args.frames),
                session=build_session(args),
                reconcile=bool(args.reconcile),
                orders_csv_path=Path(args.orders_csv) if args.orders_csv else None,
            )
            print(json.dumps(summary.to_dict(), indent=2, sort_keys=True, default=str))
            return 0

        if args.command == "listen":
            runtime = listen(
                config=load_sync_config(Path(args.config)),
                session=build_session(args),
                duration_seconds=args.duration,
                load_orders=bool(args.load_orders),
                metrics_dir=Path(args.metrics_dir) if args.metrics_dir else None,
            )
            return 1 if runtime.requires_login else 0

        if args.command == "check-config":
            for line in check_config(Path(args.config)):
                print(line)
            return 0
    except Exception as error:
        parser.exit(status=1, message=f"Error: {error}\n")

    parser.print_help()
    return 1


def _add_session_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--session-role",
        required=True,
        choices=sorted(ROLES),
        help="Viewer role.",
    )
    parser.add_argument("--session-user", required=True, help="Viewer user id.")
    parser.add_argument("--session-name", default=None, help="Viewer display name.")
    parser.add_argument("--branch", default=None, help="Branch id (branch role).")
    parser.add_argument("--chef", default=None, help="Chef id (defaults to the user id).")
    parser.add_argument("--department", default=None, help="Department id (production role).")
