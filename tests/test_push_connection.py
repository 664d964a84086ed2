from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any

import pytest

from ordersync.connectors.push import ConnectionManager
from ordersync.core.models import Session
from ordersync.errors import AuthenticationRejected
from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import SyncMetrics
from ordersync.ops.secrets import CredentialStore


class FakeWebSocketConnection:
    def __init__(self, scripted_messages: list[str]) -> None:
        self._messages = list(scripted_messages)
        self.sent_payloads: list[str] = []
        self.closed = False

    def recv(self) -> str:
        if self._messages:
            message = self._messages.pop(0)
            if message == "__TIMEOUT__":
                raise TimeoutError("timed out")
            if message == "__CLOSE__":
                raise RuntimeError("socket closed")
            return message
        time.sleep(0.01)
        raise TimeoutError("timed out")

    def send(self, payload: str) -> None:
        self.sent_payloads.append(payload)

    def close(self) -> None:
        self.closed = True


class FakeHandshakeError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"handshake status {status_code}")
        self.status_code = status_code


def _wait_for(condition: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def _sent_names(connection: FakeWebSocketConnection) -> list[str]:
    return [json.loads(payload)["name"] for payload in connection.sent_payloads]


def _manager(factory: Any, **kwargs: Any) -> ConnectionManager:
    options: dict[str, Any] = {
        "url": "wss://orders.example/ws",
        "credentials": CredentialStore("token-abc"),
        "websocket_factory": factory,
        "reconnect_min_seconds": 0.01,
        "reconnect_max_seconds": 0.02,
        "credential_retry_delay_seconds": 0.01,
    }
    options.update(kwargs)
    return ConnectionManager(**options)


SESSION = Session(user_id="C1", role="chef")


def test_connect_joins_room_and_forwards_frames() -> None:
    frame = json.dumps({"name": "taskAssigned", "payload": {"eventId": "e1"}})
    connection = FakeWebSocketConnection(["__TIMEOUT__", frame])
    handshakes: list[dict[str, Any]] = []

    def factory(url: str, headers: dict[str, str], timeout_seconds: float) -> Any:
        handshakes.append({"url": url, "headers": headers, "timeout": timeout_seconds})
        return connection

    frames: list[str | bytes] = []
    states: list[tuple[str, str | None]] = []
    manager = _manager(factory, handshake_timeout_seconds=4.0)
    manager.add_frame_listener(frames.append)
    manager.add_state_listener(lambda state, reason: states.append((state, reason)))
    manager.connect(SESSION)
    try:
        assert manager.wait_until_connected(timeout=2.0)
        assert _wait_for(lambda: len(frames) == 1)
    finally:
        manager.disconnect()

    assert handshakes[0]["headers"] == {"Authorization": "Bearer token-abc"}
    assert handshakes[0]["timeout"] == 4.0
    join = json.loads(connection.sent_payloads[0])
    assert join["name"] == "joinRoom"
    assert join["payload"]["chefId"] == "C1"
    assert frames == [frame]
    assert ("connected", None) in states
    assert manager.connection_state == "disconnected"
    assert connection.closed


def test_reconnect_rejoins_room_and_notifies_listeners() -> None:
    connections = [
        FakeWebSocketConnection(["__CLOSE__"]),
        FakeWebSocketConnection([]),
    ]
    handed_out: list[FakeWebSocketConnection] = []

    def factory(url: str, headers: dict[str, str], timeout_seconds: float) -> Any:
        del url, headers, timeout_seconds
        connection = connections.pop(0) if connections else FakeWebSocketConnection([])
        handed_out.append(connection)
        return connection

    metrics = SyncMetrics()
    reconnects: list[int] = []
    manager = _manager(factory, metrics=metrics)
    manager.add_reconnect_listener(reconnects.append)
    manager.connect(SESSION)
    try:
        assert _wait_for(lambda: reconnects == [1])
    finally:
        manager.disconnect()

    assert len(handed_out) >= 2
    assert _sent_names(handed_out[0]) == ["joinRoom"]
    assert _sent_names(handed_out[1]) == ["joinRoom"]
    assert metrics.count("reconnects") == 1


def test_bounded_reconnect_attempts_end_in_failed_state() -> None:
    attempts: list[int] = []

    def factory(url: str, headers: dict[str, str], timeout_seconds: float) -> Any:
        attempts.append(1)
        raise ConnectionRefusedError("refused")

    logger = JsonEventLogger()
    manager = _manager(factory, reconnect_attempts=3, logger=logger)
    manager.connect(SESSION)
    try:
        assert _wait_for(lambda: manager.connection_state == "failed")
    finally:
        manager.disconnect()

    assert len(attempts) == 3
    assert manager.failure_reason == "connection_unavailable"
    assert len(logger.events("connect_failed")) == 3
    assert logger.events("connection_failed")[0]["reason"] == "connection_unavailable"


@pytest.mark.parametrize(
    "error",
    [AuthenticationRejected("jwt expired"), FakeHandshakeError(401)],
)
def test_handshake_auth_rejection_clears_credential_without_retry(error: Exception) -> None:
    attempts: list[int] = []

    def factory(url: str, headers: dict[str, str], timeout_seconds: float) -> Any:
        attempts.append(1)
        raise error

    credentials = CredentialStore("token-abc")
    rejections: list[str] = []
    manager = _manager(factory, credentials=credentials)
    manager.add_auth_failure_listener(rejections.append)
    manager.connect(SESSION)
    try:
        assert _wait_for(lambda: manager.connection_state == "failed")
    finally:
        manager.disconnect()

    assert attempts == [1]
    assert manager.failure_reason == "auth_rejected"
    assert credentials.get() is None
    assert len(rejections) == 1


def test_connect_error_frame_with_auth_hint_forces_login() -> None:
    rejection = json.dumps({"name": "connect_error", "payload": {"message": "Invalid token"}})
    connection = FakeWebSocketConnection([rejection])
    rejections: list[str] = []
    frames: list[str | bytes] = []
    manager = _manager(lambda **kwargs: connection)
    manager.add_auth_failure_listener(rejections.append)
    manager.add_frame_listener(frames.append)
    manager.connect(SESSION)
    try:
        assert _wait_for(lambda: rejections == ["Invalid token"])
    finally:
        manager.disconnect()

    assert frames == []
    assert manager.failure_reason == "auth_rejected"


def test_missing_credential_fails_unauthenticated() -> None:
    calls: list[int] = []

    def factory(url: str, headers: dict[str, str], timeout_seconds: float) -> Any:
        calls.append(1)
        return FakeWebSocketConnection([])

    manager = _manager(factory, credentials=CredentialStore(), credential_retry_limit=2)
    manager.connect(SESSION)
    try:
        assert _wait_for(lambda: manager.connection_state == "failed")
    finally:
        manager.disconnect()

    assert calls == []
    assert manager.failure_reason == "unauthenticated"


def test_emit_is_skipped_while_disconnected_and_new_session_replaces_old() -> None:
    logger = JsonEventLogger()
    connections: list[FakeWebSocketConnection] = []

    def factory(url: str, headers: dict[str, str], timeout_seconds: float) -> Any:
        connection = FakeWebSocketConnection([])
        connections.append(connection)
        return connection

    manager = _manager(factory, logger=logger)
    assert manager.emit("notificationRead", {"notificationId": "n1"}) is False
    assert logger.events("emit_skipped")

    manager.connect(SESSION)
    try:
        assert manager.wait_until_connected(timeout=2.0)
        manager.connect(SESSION)
        assert len(connections) == 1

        manager.connect(Session(user_id="A1", role="admin"))
        assert _wait_for(lambda: len(connections) == 2 and bool(connections[1].sent_payloads))
        assert manager.emit("notificationRead", {"notificationId": "n1"}) is True
    finally:
        manager.disconnect()

    assert connections[0].closed
    assert manager.session is not None and manager.session.user_id == "A1"
    assert json.loads(connections[1].sent_payloads[0])["payload"]["role"] == "admin"
    assert _sent_names(connections[1])[-1] == "notificationRead"


def test_constructor_validation() -> None:
    with pytest.raises(ValueError, match="url"):
        ConnectionManager(url=" ", credentials=CredentialStore("t"))
    with pytest.raises(ValueError, match="reconnect_attempts"):
        ConnectionManager(url="wss://x", credentials=CredentialStore("t"), reconnect_attempts=0)
