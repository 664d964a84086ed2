from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from ordersync.connectors.rest import OrdersApiClient
from ordersync.errors import ApiAuthError, ApiError
from ordersync.ops.secrets import CredentialStore


@dataclass(slots=True)
class FakeHttpResponse:
    status_code: int
    payload: Any
    headers: dict[str, str]


class ScriptedTransport:
    def __init__(self, responses: list[FakeHttpResponse | Exception]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def __call__(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any] | None,
        timeout_seconds: float,
    ) -> FakeHttpResponse:
        self.calls.append(
            {
                "method": method,
                "url": url,
                "headers": headers,
                "payload": payload,
                "timeout": timeout_seconds,
            }
        )
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(transport: ScriptedTransport, **kwargs: Any) -> OrdersApiClient:
    return OrdersApiClient(
        base_url="https://api.example/",
        credentials=CredentialStore("token-xyz"),
        retry_backoff_seconds=0.1,
        http_transport=transport,
        **kwargs,
    )


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr("ordersync.connectors.rest.time.sleep", recorded.append)
    return recorded


def test_get_order_sends_bearer_header_and_unwraps_payload() -> None:
    transport = ScriptedTransport(
        [FakeHttpResponse(200, {"data": {"_id": "O1", "status": "approved"}}, {})]
    )
    client = _client(transport, timeout_seconds=5.0)

    order = client.get_order_by_id("O 1")

    assert order == {"_id": "O1", "status": "approved"}
    call = transport.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://api.example/orders/O%201"
    assert call["headers"]["Authorization"] == "Bearer token-xyz"
    assert call["timeout"] == 5.0


def test_missing_entities_map_to_none() -> None:
    transport = ScriptedTransport(
        [
            FakeHttpResponse(404, {"message": "not found"}, {}),
            FakeHttpResponse(404, {}, {}),
        ]
    )
    client = _client(transport)

    assert client.get_order_by_id("O404") is None
    assert client.get_factory_order_by_id("F404") is None
    assert transport.calls[1]["url"] == "https://api.example/factory-orders/F404"


@pytest.mark.parametrize("status_code", [401, 403])
def test_auth_rejections_raise_without_retry(status_code: int, sleeps: list[float]) -> None:
    transport = ScriptedTransport([FakeHttpResponse(status_code, {}, {})])
    client = _client(transport)

    with pytest.raises(ApiAuthError) as raised:
        client.get_order_by_id("O1")

    assert raised.value.status_code == status_code
    assert len(transport.calls) == 1
    assert sleeps == []


def test_transient_statuses_are_retried_with_backoff(sleeps: list[float]) -> None:
    transport = ScriptedTransport(
        [
            FakeHttpResponse(503, {}, {}),
            FakeHttpResponse(502, {}, {}),
            FakeHttpResponse(200, {"order": {"_id": "O1"}}, {}),
        ]
    )
    client = _client(transport, retry_limit=3)

    assert client.get_order_by_id("O1") == {"_id": "O1"}
    assert sleeps == [0.1, 0.2]


def test_retry_after_header_overrides_backoff(sleeps: list[float]) -> None:
    transport = ScriptedTransport(
        [
            FakeHttpResponse(429, {}, {"retry-after": "1.5"}),
            FakeHttpResponse(200, {"_id": "O1"}, {}),
        ]
    )
    client = _client(transport)

    client.get_order_by_id("O1")

    assert sleeps == [1.5]


def test_exhausted_retries_raise_api_error(sleeps: list[float]) -> None:
    transport = ScriptedTransport(
        [
            ConnectionResetError("reset"),
            FakeHttpResponse(500, {}, {}),
            FakeHttpResponse(500, {}, {}),
        ]
    )
    client = _client(transport, retry_limit=2)

    with pytest.raises(ApiError) as raised:
        client.get_order_by_id("O1")

    assert raised.value.status_code == 500
    assert len(transport.calls) == 3
    assert sleeps == [0.1, 0.2]


def test_transport_errors_exhausting_retries_are_wrapped(sleeps: list[float]) -> None:
    transport = ScriptedTransport([TimeoutError("slow"), TimeoutError("slow")])
    client = _client(transport, retry_limit=1)

    with pytest.raises(ApiError, match="failed after retries"):
        client.get_factory_order_by_id("F1")
    assert sleeps == [0.1]


def test_list_orders_encodes_query_and_extracts_rows() -> None:
    transport = ScriptedTransport(
        [
            FakeHttpResponse(
                200,
                {"orders": [{"_id": "O1"}, "garbage", {"_id": "O2"}]},
                {},
            ),
            FakeHttpResponse(200, [{"_id": "O3"}], {}),
        ]
    )
    client = _client(transport)

    rows = client.list_orders({"status": "approved", "branch": "B1", "empty": ""})
    bare_rows = client.list_orders()

    assert rows == [{"_id": "O1"}, {"_id": "O2"}]
    assert bare_rows == [{"_id": "O3"}]
    assert transport.calls[0]["url"] == "https://api.example/orders?branch=B1&status=approved"
    assert transport.calls[1]["url"] == "https://api.example/orders"


def test_update_task_status_patches_task_resource() -> None:
    transport = ScriptedTransport(
        [FakeHttpResponse(200, {"data": {"_id": "O1", "status": "in_production"}}, {})]
    )
    client = _client(transport)

    result = client.update_task_status("O1", "T1", "in_progress")

    assert result == {"_id": "O1", "status": "in_production"}
    call = transport.calls[0]
    assert call["method"] == "PATCH"
    assert call["url"] == "https://api.example/orders/O1/tasks/T1/status"
    assert call["payload"] == {"status": "in_progress"}


def test_missing_credential_sends_no_authorization_header() -> None:
    transport = ScriptedTransport([FakeHttpResponse(200, {"_id": "O1"}, {})])
    client = OrdersApiClient(base_url="https://api.example", http_transport=transport)

    client.get_order_by_id("O1")

    assert "Authorization" not in transport.calls[0]["headers"]


def test_constructor_validation() -> None:
    with pytest.raises(ValueError, match="base_url"):
        OrdersApiClient(base_url="  ")
    with pytest.raises(ValueError, match="retry_limit"):
        OrdersApiClient(base_url="https://api.example", retry_limit=-1)
    with pytest.raises(ValueError, match="max_calls"):
        OrdersApiClient(base_url="https://api.example", rate_limit_max_calls=0)
