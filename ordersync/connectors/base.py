"""Transport interfaces shared by the push and pull connectors."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

ConnectionState = Literal["disconnected", "connecting", "connected", "reconnecting", "failed"]
FailureReason = Literal["unauthenticated", "auth_rejected", "connection_unavailable"]


@dataclass(slots=True, frozen=True)
class HttpResponse:
    status_code: int
    payload: Any
    headers: dict[str, str]


class HttpTransport(Protocol):
    """Protocol for injectable REST transport."""

    def __call__(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any] | None,
        timeout_seconds: float,
    ) -> HttpResponse: ...


class WebSocketConnection(Protocol):
    """Protocol for websocket connection abstraction used by the background loop."""

    def recv(self) -> str | bytes: ...

    def send(self, payload: str) -> None: ...

    def close(self) -> None: ...


class WebSocketFactory(Protocol):
    """Factory protocol creating websocket connections."""

    def __call__(
        self,
        url: str,
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> WebSocketConnection: ...


@runtime_checkable
class OrdersApi(Protocol):
    """Authoritative pull-side collaborator used for reconciliation."""

    def get_order_by_id(self, order_id: str) -> Mapping[str, Any] | None:
        """Return the order snapshot, or None when the server no longer has it."""

    def get_factory_order_by_id(self, factory_order_id: str) -> Mapping[str, Any] | None:
        """Return the factory order snapshot, or None when it is gone."""
