"""Authenticated push-channel connection with bounded reconnect and room subscription."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from typing import Any

from ordersync.connectors.base import (
    ConnectionState,
    FailureReason,
    WebSocketConnection,
    WebSocketFactory,
)
from ordersync.core.envelope import build_frame
from ordersync.core.models import Session
from ordersync.errors import AuthenticationRejected
from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import SyncMetrics
from ordersync.ops.secrets import CredentialStore

_AUTH_STATUS_CODES = {401, 403}
_AUTH_HINTS = ("auth", "token", "unauthorized", "forbidden", "jwt")

FrameListener = Callable[[str | bytes], None]
ReconnectListener = Callable[[int], None]
StateListener = Callable[[ConnectionState, FailureReason | None], None]
AuthFailureListener = Callable[[str], None]


def default_websocket_factory(
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
) -> WebSocketConnection:
    try:
        import websocket  # type: ignore[import-not-found]
    except ImportError as error:
        msg = "Push-channel connections require the `websocket-client` package."
        raise RuntimeError(msg) from error

    header_lines = [
        f"{header_name}: {header_value}"
        for header_name, header_value in headers.items()
    ]
    return websocket.create_connection(url, header=header_lines, timeout=timeout_seconds)


class ConnectionManager:
    """Own the single push connection of one session.

    The receive loop runs on a daemon thread. Frames are handed to frame
    listeners on that thread; state changes, reconnects and credential
    rejections are published to their own listener lists.
    """

    def __init__(
        self,
        *,
        url: str,
        credentials: CredentialStore,
        websocket_factory: WebSocketFactory | None = None,
        credential_retry_limit: int = 5,
        credential_retry_delay_seconds: float = 1.0,
        reconnect_attempts: int = 10,
        reconnect_min_seconds: float = 1.0,
        reconnect_max_seconds: float = 30.0,
        handshake_timeout_seconds: float = 10.0,
        logger: JsonEventLogger | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        if not str(url).strip():
            msg = "url must be non-empty."
            raise ValueError(msg)
        if credential_retry_limit < 1:
            msg = "credential_retry_limit must be >= 1."
            raise ValueError(msg)
        if credential_retry_delay_seconds < 0:
            msg = "credential_retry_delay_seconds cannot be negative."
            raise ValueError(msg)
        if reconnect_attempts < 1:
            msg = "reconnect_attempts must be >= 1."
            raise ValueError(msg)
        if reconnect_min_seconds <= 0:
            msg = "reconnect_min_seconds must be positive."
            raise ValueError(msg)
        if reconnect_max_seconds < reconnect_min_seconds:
            msg = "reconnect_max_seconds must be >= reconnect_min_seconds."
            raise ValueError(msg)
        if handshake_timeout_seconds <= 0:
            msg = "handshake_timeout_seconds must be positive."
            raise ValueError(msg)

        self.url = str(url)
        self.credentials = credentials
        self.credential_retry_limit = int(credential_retry_limit)
        self.credential_retry_delay_seconds = float(credential_retry_delay_seconds)
        self.reconnect_attempts = int(reconnect_attempts)
        self.reconnect_min_seconds = float(reconnect_min_seconds)
        self.reconnect_max_seconds = float(reconnect_max_seconds)
        self.handshake_timeout_seconds = float(handshake_timeout_seconds)
        self.logger = logger
        self.metrics = metrics
        self._websocket_factory = websocket_factory or default_websocket_factory

        self._lock = threading.RLock()
        self._state: ConnectionState = "disconnected"
        self._failure_reason: FailureReason | None = None
        self._session: Session | None = None
        self._connection: WebSocketConnection | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._connected_event = threading.Event()

        self._frame_listeners: list[FrameListener] = []
        self._reconnect_listeners: list[ReconnectListener] = []
        self._state_listeners: list[StateListener] = []
        self._auth_failure_listeners: list[AuthFailureListener] = []

    @property
    def connection_state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def failure_reason(self) -> FailureReason | None:
        with self._lock:
            return self._failure_reason

    @property
    def connected(self) -> bool:
        return self._connected_event.is_set()

    @property
    def session(self) -> Session | None:
        with self._lock:
            return self._session

    def wait_until_connected(self, timeout: float = 3.0) -> bool:
        return self._connected_event.wait(timeout=timeout)

    def add_frame_listener(self, listener: FrameListener) -> Callable[[], None]:
        return self._register(self._frame_listeners, listener)

    def add_reconnect_listener(self, listener: ReconnectListener) -> Callable[[], None]:
        """Called with the attempt count after every successful reconnect."""
        return self._register(self._reconnect_listeners, listener)

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        return self._register(self._state_listeners, listener)

    def add_auth_failure_listener(self, listener: AuthFailureListener) -> Callable[[], None]:
        """Called once when the server rejects the credential (force login)."""
        return self._register(self._auth_failure_listeners, listener)

    def connect(self, session: Session) -> None:
        """Start the connection loop for `session`, replacing any other session's loop."""
        with self._lock:
            running = self._thread is not None and self._thread.is_alive()
            if running and self._session == session:
                return
        if running:
            self.disconnect()
        with self._lock:
            self._session = session
            self._failure_reason = None
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(session, self._stop_event),
                name="ordersync-push",
                daemon=True,
            )
            self._thread.start()

    def disconnect(self, join_timeout_seconds: float = 3.0) -> None:
        """Stop the loop, close the socket and wait briefly for the thread to exit."""
        with self._lock:
            self._stop_event.set()
            connection = self._connection
            thread = self._thread
        if connection is not None:
            self._close_quietly(connection)
        if (
            thread is not None
            and thread.is_alive()
            and thread is not threading.current_thread()
        ):
            thread.join(timeout=join_timeout_seconds)
        self._connected_event.clear()
        with self._lock:
            self._connection = None
            if self._state not in {"failed", "disconnected"}:
                self._set_state_locked("disconnected", None)
                changed = True
            else:
                changed = False
        if changed:
            self._publish_state("disconnected", None)

    def emit(self, name: str, payload: dict[str, Any] | None = None) -> bool:
        """Send one frame if connected; otherwise log and return False."""
        with self._lock:
            connection = self._connection if self._connected_event.is_set() else None
            state = self._state
        if connection is None:
            self._log("warning", "emit_skipped", name=str(name), state=state)
            return False
        try:
            connection.send(build_frame(name, payload))
        except Exception as error:
            self._log("warning", "emit_failed", name=str(name), error=repr(error))
            return False
        return True

    def _run_loop(self, session: Session, stop_event: threading.Event) -> None:
        token = self._acquire_credential(stop_event)
        if token is None:
            if not stop_event.is_set():
                self._fail("unauthenticated", "No credential available for the push channel.")
            return

        failures = 0
        connected_once = False
        reconnect_delay = self.reconnect_min_seconds
        while not stop_event.is_set():
            self._transition("reconnecting" if connected_once or failures else "connecting")
            try:
                connection = self._websocket_factory(
                    url=self.url,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout_seconds=self.handshake_timeout_seconds,
                )
            except Exception as error:
                if self._looks_like_auth_rejection(error):
                    self._reject_credential(str(error))
                    return
                failures += 1
                self._log(
                    "warning",
                    "connect_failed",
                    attempt=failures,
                    max_attempts=self.reconnect_attempts,
                    error=repr(error),
                )
                if failures >= self.reconnect_attempts:
                    self._fail(
                        "connection_unavailable",
                        f"Push channel unavailable after {failures} attempt(s).",
                    )
                    return
                if stop_event.wait(reconnect_delay):
                    return
                reconnect_delay = min(reconnect_delay * 2.0, self.reconnect_max_seconds)
                continue

            with self._lock:
                if stop_event.is_set():
                    self._close_quietly(connection)
                    return
                self._connection = connection
            self._connected_event.set()
            self._transition("connected")
            attempts_needed = failures + 1
            failures = 0
            reconnect_delay = self.reconnect_min_seconds
            self.emit("joinRoom", session.join_room_payload())
            if connected_once:
                if self.metrics is not None:
                    self.metrics.increment("reconnects")
                self._publish(self._reconnect_listeners, attempts_needed)
            connected_once = True

            rejected = self._receive_until_closed(connection, stop_event)
            self._connected_event.clear()
            with self._lock:
                if self._connection is connection:
                    self._connection = None
            self._close_quietly(connection)
            if rejected is not None:
                self._reject_credential(rejected)
                return
            if stop_event.is_set():
                return
            failures = 0
            if stop_event.wait(reconnect_delay):
                return

    def _receive_until_closed(
        self,
        connection: WebSocketConnection,
        stop_event: threading.Event,
    ) -> str | None:
        """Pump frames to listeners; returns an auth rejection message if one arrives."""
        try:
            while not stop_event.is_set():
                try:
                    raw_message = connection.recv()
                except Exception as receive_error:
                    if self._looks_like_timeout(receive_error):
                        continue
                    raise

                if raw_message in {"", b"", None}:
                    msg = "WebSocket returned empty payload."
                    raise RuntimeError(msg)
                rejection = self._auth_error_message(raw_message)
                if rejection is not None:
                    return rejection
                self._publish(self._frame_listeners, raw_message)
        except Exception as error:
            if not stop_event.is_set():
                self._log("warning", "connection_lost", error=repr(error))
        return None

    def _acquire_credential(self, stop_event: threading.Event) -> str | None:
        for attempt in range(self.credential_retry_limit):
            token = self.credentials.get()
            if token:
                return token
            self._log(
                "warning",
                "credential_missing",
                attempt=attempt + 1,
                max_attempts=self.credential_retry_limit,
            )
            if attempt + 1 < self.credential_retry_limit and stop_event.wait(
                self.credential_retry_delay_seconds
            ):
                return None
        return None

    def _reject_credential(self, message: str) -> None:
        self.credentials.clear()
        self._fail("auth_rejected", message or "Credential rejected by server.")
        self._publish(self._auth_failure_listeners, message or "Credential rejected by server.")

    def _fail(self, reason: FailureReason, message: str) -> None:
        self._connected_event.clear()
        with self._lock:
            self._failure_reason = reason
        self._log("error", "connection_failed", reason=reason, message=message)
        self._transition("failed", reason)

    def _transition(self, state: ConnectionState, reason: FailureReason | None = None) -> None:
        with self._lock:
            if self._state == state:
                return
            self._set_state_locked(state, reason)
        self._publish_state(state, reason)

    def _set_state_locked(self, state: ConnectionState, reason: FailureReason | None) -> None:
        previous = self._state
        self._state = state
        self._log(
            "info",
            "connection_state_changed",
            previous=previous,
            state=state,
            reason=reason,
        )

    def _publish_state(self, state: ConnectionState, reason: FailureReason | None) -> None:
        with self._lock:
            listeners = list(self._state_listeners)
        for listener in listeners:
            try:
                listener(state, reason)
            except Exception as error:
                self._log("error", "listener_failed", kind="state", error=repr(error))

    def _publish(self, listeners: list[Callable[[Any], None]], value: Any) -> None:
        with self._lock:
            snapshot = list(listeners)
        for listener in snapshot:
            try:
                listener(value)
            except Exception as error:
                self._log("error", "listener_failed", error=repr(error))

    def _register(self, listeners: list[Any], listener: Any) -> Callable[[], None]:
        with self._lock:
            listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def _log(self, level: str, event: str, **fields: Any) -> None:
        if self.logger is None:
            return
        session = self._session
        self.logger.emit(
            level=level,
            event=event,
            session_id=None if session is None else session.user_id,
            **fields,
        )

    @staticmethod
    def _looks_like_timeout(error: Exception) -> bool:
        if isinstance(error, TimeoutError):
            return True
        return "timed out" in str(error).lower()

    @staticmethod
    def _looks_like_auth_rejection(error: Exception) -> bool:
        if isinstance(error, AuthenticationRejected):
            return True
        status_code = getattr(error, "status_code", None)
        return isinstance(status_code, int) and status_code in _AUTH_STATUS_CODES

    @staticmethod
    def _auth_error_message(raw_message: str | bytes) -> str | None:
        text = raw_message.decode("utf-8", "replace") if isinstance(raw_message, bytes) else raw_message
        if "connect_error" not in text:
            return None
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            return None
        if isinstance(decoded, list) and len(decoded) == 2:
            name, payload = decoded
        elif isinstance(decoded, dict):
            name = decoded.get("name", decoded.get("event"))
            payload = decoded.get("payload", decoded.get("data"))
        else:
            return None
        if name != "connect_error":
            return None
        message = payload.get("message", "") if isinstance(payload, dict) else str(payload or "")
        if any(hint in str(message).lower() for hint in _AUTH_HINTS):
            return str(message)
        return None

    @staticmethod
    def _close_quietly(connection: WebSocketConnection) -> None:
        try:
            connection.close()
        except Exception:
            pass
