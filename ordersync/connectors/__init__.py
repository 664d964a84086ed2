"""Push-channel connection manager and pull-side REST client."""

from ordersync.connectors.base import (
    ConnectionState,
    FailureReason,
    HttpResponse,
    HttpTransport,
    OrdersApi,
    WebSocketConnection,
    WebSocketFactory,
)
from ordersync.connectors.push import ConnectionManager, default_websocket_factory
from ordersync.connectors.rest import OrdersApiClient, default_http_transport

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "FailureReason",
    "HttpResponse",
    "HttpTransport",
    "OrdersApi",
    "OrdersApiClient",
    "WebSocketConnection",
    "WebSocketFactory",
    "default_http_transport",
    "default_websocket_factory",
]
