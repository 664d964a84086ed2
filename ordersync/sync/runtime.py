"""Per-login wiring of connection, REST client, store, reconciler and pipeline."""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from functools import partial
from typing import Any

from ordersync.config import SyncConfig
from ordersync.connectors.base import HttpTransport, WebSocketFactory
from ordersync.connectors.push import ConnectionManager
from ordersync.connectors.rest import OrdersApiClient
from ordersync.core.models import Session
from ordersync.errors import ValidationError
from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import SyncMetrics
from ordersync.ops.notifications import (
    ConsoleNotificationChannel,
    NotificationChannel,
    NotificationSink,
)
from ordersync.ops.secrets import CredentialStore
from ordersync.sync.dedup import IdempotencyDeduper
from ordersync.sync.normalizer import order_from_wire, returns_from_wire
from ordersync.sync.pipeline import SyncEngine
from ordersync.sync.reconciler import Reconciler
from ordersync.sync.store import StateStore


class SessionRuntime:
    """Own every per-session component and tear them all down on logout.

    A fresh store, deduper, inbox and engine are built on each `login`, so no
    state leaks from one authenticated user to the next.
    """

    def __init__(
        self,
        config: SyncConfig,
        websocket_factory: WebSocketFactory | None = None,
        http_transport: HttpTransport | None = None,
        *,
        logger: JsonEventLogger | None = None,
        channels: list[NotificationChannel] | None = None,
    ) -> None:
        self.config = config
        self.logger = (
            logger if logger is not None else JsonEventLogger(path=config.log_path)
        )
        self._websocket_factory = websocket_factory
        self._http_transport = http_transport
        self._channels = list(channels) if channels is not None else None
        self._lock = threading.RLock()
        self._engine: SyncEngine | None = None
        self._connection: ConnectionManager | None = None
        self._api: OrdersApiClient | None = None
        self._metrics: SyncMetrics | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self.requires_login = False

    @property
    def engine(self) -> SyncEngine:
        return self._require(self._engine)

    @property
    def connection(self) -> ConnectionManager:
        return self._require(self._connection)

    @property
    def api(self) -> OrdersApiClient:
        return self._require(self._api)

    @property
    def metrics(self) -> SyncMetrics:
        return self._require(self._metrics)

    @property
    def logged_in(self) -> bool:
        return self._engine is not None

    def login(self, session: Session, token: str | None = None) -> SyncEngine:
        """Start a session; without `token` the configured env var is consulted."""
        with self._lock:
            self.logout()
            credentials = (
                CredentialStore(token)
                if token
                else CredentialStore.from_env(self.config.token_env)
            )
            metrics = SyncMetrics()
            api = OrdersApiClient(
                base_url=self.config.api.base_url,
                credentials=credentials,
                orders_path=self.config.api.orders_path,
                factory_orders_path=self.config.api.factory_orders_path,
                timeout_seconds=self.config.api.timeout_seconds,
                retry_limit=self.config.api.retry_limit,
                retry_backoff_seconds=self.config.api.retry_backoff_seconds,
                rate_limit_max_calls=self.config.api.rate_limit_max_calls,
                rate_limit_window_seconds=self.config.api.rate_limit_window_seconds,
                http_transport=self._http_transport,
            )
            store = StateStore(logger=self.logger)
            reconciler = Reconciler(
                store,
                api,
                debounce_seconds=self.config.reconcile.debounce_seconds,
                retry_limit=self.config.reconcile.retry_limit,
                retry_backoff_seconds=self.config.reconcile.retry_backoff_seconds,
                poll_interval_seconds=self.config.reconcile.poll_interval_seconds,
                logger=self.logger,
                metrics=metrics,
            )
            sink = NotificationSink(
                IdempotencyDeduper(self.config.dedup_capacity),
                channels=self._build_channels(),
                capacity=self.config.notifications.capacity,
                logger=self.logger,
                metrics=metrics,
            )
            engine = SyncEngine(
                session,
                store,
                reconciler,
                sink,
                deduper=IdempotencyDeduper(self.config.dedup_capacity),
                logger=self.logger,
                metrics=metrics,
            )
            connection = ConnectionManager(
                url=self.config.connection.url,
                credentials=credentials,
                websocket_factory=self._websocket_factory,
                credential_retry_limit=self.config.connection.credential_retry_limit,
                credential_retry_delay_seconds=(
                    self.config.connection.credential_retry_delay_seconds
                ),
                reconnect_attempts=self.config.connection.reconnect_attempts,
                reconnect_min_seconds=self.config.connection.reconnect_min_seconds,
                reconnect_max_seconds=self.config.connection.reconnect_max_seconds,
                handshake_timeout_seconds=self.config.connection.handshake_timeout_seconds,
                logger=self.logger,
                metrics=metrics,
            )

            self._unsubscribers = [
                connection.add_frame_listener(engine.handle_frame),
                connection.add_reconnect_listener(engine.on_reconnect),
                connection.add_auth_failure_listener(partial(self._on_auth_failure, connection)),
                sink.add_read_listener(self._on_notification_read),
                sink.add_all_read_listener(partial(self._emit_inbox_frame, "allNotificationsRead")),
                sink.add_cleared_listener(partial(self._emit_inbox_frame, "notificationsCleared")),
            ]
            self._engine = engine
            self._connection = connection
            self._api = api
            self._metrics = metrics
            self.requires_login = False

            connection.connect(session)
            reconciler.start()
        self.logger.emit(
            level="info",
            event="session_started",
            session_id=session.user_id,
            role=session.role,
        )
        return engine

    def logout(self) -> None:
        """Disconnect, stop reconciliation and drop every per-session component."""
        with self._lock:
            engine = self._engine
            connection = self._connection
            for unsubscribe in self._unsubscribers:
                unsubscribe()
            self._unsubscribers = []
            self._engine = None
            self._connection = None
            self._api = None
            if self._metrics is not None:
                self._metrics.finalize()
            self._metrics = None
        if connection is not None:
            connection.disconnect()
        if engine is not None:
            engine.reconciler.stop()
            engine.close()
            engine.deduper.clear()
            engine.notifications.clear()
            self.logger.emit(
                level="info",
                event="session_ended",
                session_id=engine.session.user_id,
            )

    def load_initial_orders(self, params: Mapping[str, Any] | None = None) -> int:
        """Seed the store from the REST order listing; malformed rows are skipped."""
        engine = self.engine
        orders = []
        returns = []
        for payload in self.api.list_orders(params):
            try:
                orders.append(order_from_wire(payload))
                returns.extend(returns_from_wire(payload))
            except ValidationError as error:
                self.logger.emit(
                    level="warning",
                    event="initial_order_invalid",
                    session_id=engine.session.user_id,
                    message=error.message,
                )
        loaded = engine.store.load_orders(orders, returns)
        self.logger.emit(
            level="info",
            event="initial_orders_loaded",
            session_id=engine.session.user_id,
            count=loaded,
        )
        return loaded

    def _build_channels(self) -> list[NotificationChannel]:
        if self._channels is not None:
            return list(self._channels)
        if not self.config.notifications.console:
            return []
        return [ConsoleNotificationChannel(json_mode=self.config.notifications.json_mode)]

    def _on_auth_failure(self, connection: ConnectionManager, message: str) -> None:
        with self._lock:
            if self._connection is not connection:
                # A connection from an earlier login; the current session is unaffected.
                self.logger.emit(level="debug", event="stale_auth_failure_ignored", message=message)
                return
            self.logger.emit(level="warning", event="session_auth_failed", message=message)
            # Runs on the connection thread; disconnect() skips joining itself.
            self.logout()
            self.requires_login = True

    def _on_notification_read(self, notification_id: str) -> None:
        connection = self._connection
        engine = self._engine
        if connection is None or engine is None:
            return
        connection.emit(
            "notificationRead",
            {"notificationId": notification_id, "userId": engine.session.user_id},
        )

    def _emit_inbox_frame(self, name: str) -> None:
        connection = self._connection
        engine = self._engine
        if connection is None or engine is None:
            return
        connection.emit(name, {"userId": engine.session.user_id})

    @staticmethod
    def _require(component: Any) -> Any:
        if component is None:
            msg = "No active session; call login() first."
            raise RuntimeError(msg)
        return component
