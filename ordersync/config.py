"""TOML configuration for a sync session runtime."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class ConnectionConfig:
    """Push-channel endpoint and reconnect policy."""

    url: str
    reconnect_attempts: int = 10
    reconnect_min_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    handshake_timeout_seconds: float = 10.0
    credential_retry_limit: int = 5
    credential_retry_delay_seconds: float = 1.0


@dataclass(slots=True)
class ApiConfig:
    """Pull-side REST endpoint."""

    base_url: str
    orders_path: str = "/orders"
    factory_orders_path: str = "/factory-orders"
    timeout_seconds: float = 30.0
    retry_limit: int = 3
    retry_backoff_seconds: float = 0.4
    rate_limit_max_calls: int = 30
    rate_limit_window_seconds: float = 1.0


@dataclass(slots=True)
class ReconcileConfig:
    debounce_seconds: float = 0.5
    retry_limit: int = 3
    retry_backoff_seconds: float = 0.25
    poll_interval_seconds: float = 0.05


@dataclass(slots=True)
class NotificationConfig:
    capacity: int = 100
    console: bool = True
    json_mode: bool = False


@dataclass(slots=True)
class SyncConfig:
    """Everything a `SessionRuntime` needs except the bearer token."""

    connection: ConnectionConfig
    api: ApiConfig
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    dedup_capacity: int = 1024
    log_path: Path | None = None
    token_env: str = "ORDERSYNC_TOKEN"
    raw_config: dict[str, Any] = field(default_factory=dict)


def load_sync_config(config_path: Path) -> SyncConfig:
    """Load and validate a sync config from TOML."""
    if not config_path.exists():
        msg = f"Config file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open("rb") as config_file:
        raw_config = tomllib.load(config_file)

    required_keys = {"connection", "api"}
    missing = sorted(required_keys.difference(raw_config))
    if missing:
        msg = f"config is missing required keys: {', '.join(missing)}"
        raise ValueError(msg)

    connection_raw = _table(raw_config, "connection")
    url = str(connection_raw.get("url", "")).strip()
    if not url:
        msg = "`connection.url` is required."
        raise ValueError(msg)

    api_raw = _table(raw_config, "api")
    base_url = str(api_raw.get("base_url", "")).strip()
    if not base_url:
        msg = "`api.base_url` is required."
        raise ValueError(msg)

    reconcile_raw = _table(raw_config, "reconcile")
    dedup_raw = _table(raw_config, "dedup")
    notifications_raw = _table(raw_config, "notifications")
    logging_raw = _table(raw_config, "logging")

    connection = ConnectionConfig(
        url=url,
        reconnect_attempts=int(connection_raw.get("reconnect_attempts", 10)),
        reconnect_min_seconds=float(connection_raw.get("reconnect_min_seconds", 1.0)),
        reconnect_max_seconds=float(connection_raw.get("reconnect_max_seconds", 30.0)),
        handshake_timeout_seconds=float(connection_raw.get("handshake_timeout_seconds", 10.0)),
        credential_retry_limit=int(connection_raw.get("credential_retry_limit", 5)),
        credential_retry_delay_seconds=float(
            connection_raw.get("credential_retry_delay_seconds", 1.0)
        ),
    )
    if connection.reconnect_attempts < 1:
        msg = "`connection.reconnect_attempts` must be >= 1."
        raise ValueError(msg)

    api = ApiConfig(
        base_url=base_url,
        orders_path=str(api_raw.get("orders_path", "/orders")),
        factory_orders_path=str(api_raw.get("factory_orders_path", "/factory-orders")),
        timeout_seconds=float(api_raw.get("timeout_seconds", 30.0)),
        retry_limit=int(api_raw.get("retry_limit", 3)),
        retry_backoff_seconds=float(api_raw.get("retry_backoff_seconds", 0.4)),
        rate_limit_max_calls=int(api_raw.get("rate_limit_max_calls", 30)),
        rate_limit_window_seconds=float(api_raw.get("rate_limit_window_seconds", 1.0)),
    )

    reconcile = ReconcileConfig(
        debounce_seconds=float(reconcile_raw.get("debounce_seconds", 0.5)),
        retry_limit=int(reconcile_raw.get("retry_limit", 3)),
        retry_backoff_seconds=float(reconcile_raw.get("retry_backoff_seconds", 0.25)),
        poll_interval_seconds=float(reconcile_raw.get("poll_interval_seconds", 0.05)),
    )
    if reconcile.debounce_seconds < 0:
        msg = "`reconcile.debounce_seconds` cannot be negative."
        raise ValueError(msg)
    if reconcile.retry_limit < 1:
        msg = "`reconcile.retry_limit` must be >= 1."
        raise ValueError(msg)

    dedup_capacity = int(dedup_raw.get("capacity", 1024))
    if dedup_capacity < 1:
        msg = "`dedup.capacity` must be >= 1."
        raise ValueError(msg)

    notifications = NotificationConfig(
        capacity=int(notifications_raw.get("capacity", 100)),
        console=bool(notifications_raw.get("console", True)),
        json_mode=bool(notifications_raw.get("json", False)),
    )
    if notifications.capacity < 1:
        msg = "`notifications.capacity` must be >= 1."
        raise ValueError(msg)

    log_path_raw = logging_raw.get("path")
    log_path = (
        None
        if log_path_raw is None
        else _resolve_path(base_dir=config_path.parent, raw_path=str(log_path_raw))
    )
    token_env = str(raw_config.get("token_env", "ORDERSYNC_TOKEN")).strip()
    if not token_env:
        msg = "`token_env` cannot be blank."
        raise ValueError(msg)
    if "token" in connection_raw or "token" in api_raw:
        msg = "Tokens are read from the environment, not from the config file."
        raise ValueError(msg)

    return SyncConfig(
        connection=connection,
        api=api,
        reconcile=reconcile,
        notifications=notifications,
        dedup_capacity=dedup_capacity,
        log_path=log_path,
        token_env=token_env,
        raw_config=dict(raw_config),
    )


def _table(raw_config: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw_config.get(name, {})
    if not isinstance(value, dict):
        msg = f"`{name}` must be a TOML table."
        raise ValueError(msg)
    return value


def _resolve_path(base_dir: Path, raw_path: str) -> Path:
    candidate = Path(raw_path)
    if candidate.is_absolute():
        return candidate
    return (base_dir / candidate).resolve()
