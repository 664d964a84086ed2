"""Pull-side REST client used for authoritative refetches and initial loads."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Mapping
from typing import Any
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

from ordersync.connectors.base import HttpResponse, HttpTransport
from ordersync.errors import ApiAuthError, ApiError
from ordersync.ops.secrets import CredentialStore

_RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
_AUTH_STATUS_CODES = {401, 403}


class _FixedWindowRateLimiter:
    """Thread-safe fixed-window limiter for outbound REST calls."""

    def __init__(self, max_calls: int, window_seconds: float) -> None:
        if max_calls <= 0:
            msg = "max_calls must be positive."
            raise ValueError(msg)
        if window_seconds <= 0:
            msg = "window_seconds must be positive."
            raise ValueError(msg)

        self.max_calls = int(max_calls)
        self.window_seconds = float(window_seconds)
        self._window_start = time.monotonic()
        self._calls_in_window = 0
        self._lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self._lock:
                now = time.monotonic()
                elapsed = now - self._window_start
                if elapsed >= self.window_seconds:
                    self._window_start = now
                    self._calls_in_window = 0

                if self._calls_in_window < self.max_calls:
                    self._calls_in_window += 1
                    return

                sleep_seconds = max(self.window_seconds - elapsed, 0.0)

            time.sleep(max(sleep_seconds, 0.001))


def _decode_body(raw_body: str) -> Any:
    if not raw_body:
        return {}
    try:
        return json.loads(raw_body)
    except json.JSONDecodeError:
        return {"raw": raw_body}


def default_http_transport(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout_seconds: float,
) -> HttpResponse:
    body: bytes | None = None
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")

    request_obj = urllib_request.Request(url=url, data=body, method=method.upper())
    for header_name, header_value in headers.items():
        request_obj.add_header(header_name, header_value)

    try:
        with urllib_request.urlopen(request_obj, timeout=timeout_seconds) as response:
            raw_body = response.read().decode("utf-8").strip()
            return HttpResponse(
                status_code=int(response.status),
                payload=_decode_body(raw_body),
                headers={key.lower(): value for key, value in response.headers.items()},
            )
    except urllib_error.HTTPError as http_error:
        raw_body = http_error.read().decode("utf-8").strip()
        header_items = http_error.headers.items() if http_error.headers is not None else []
        return HttpResponse(
            status_code=int(http_error.code),
            payload=_decode_body(raw_body),
            headers={key.lower(): value for key, value in header_items},
        )


class OrdersApiClient:
    """Bearer-authenticated REST client for order and factory order snapshots.

    404 maps to None, 401/403 raise `ApiAuthError`, anything else that is not
    2xx raises `ApiError`. Transport errors and 429/5xx are retried with
    exponential backoff (honoring `Retry-After`).
    """

    def __init__(
        self,
        *,
        base_url: str,
        credentials: CredentialStore | None = None,
        orders_path: str = "/orders",
        factory_orders_path: str = "/factory-orders",
        timeout_seconds: float = 30.0,
        retry_limit: int = 3,
        retry_backoff_seconds: float = 0.4,
        rate_limit_max_calls: int = 30,
        rate_limit_window_seconds: float = 1.0,
        static_headers: dict[str, str] | None = None,
        http_transport: HttpTransport | None = None,
    ) -> None:
        if not str(base_url).strip():
            msg = "base_url must be non-empty."
            raise ValueError(msg)
        if timeout_seconds <= 0:
            msg = "timeout_seconds must be positive."
            raise ValueError(msg)
        if retry_limit < 0:
            msg = "retry_limit cannot be negative."
            raise ValueError(msg)
        if retry_backoff_seconds <= 0:
            msg = "retry_backoff_seconds must be positive."
            raise ValueError(msg)

        self.base_url = str(base_url).rstrip("/")
        self.credentials = credentials if credentials is not None else CredentialStore()
        self.orders_path = str(orders_path)
        self.factory_orders_path = str(factory_orders_path)
        self.timeout_seconds = float(timeout_seconds)
        self.retry_limit = int(retry_limit)
        self.retry_backoff_seconds = float(retry_backoff_seconds)
        self.static_headers = dict(static_headers or {})
        self._http_transport = http_transport or default_http_transport
        self._rate_limiter = _FixedWindowRateLimiter(
            max_calls=rate_limit_max_calls,
            window_seconds=rate_limit_window_seconds,
        )

    def get_order_by_id(self, order_id: str) -> dict[str, Any] | None:
        path = f"{self.orders_path}/{urllib_parse.quote(str(order_id), safe='')}"
        return self._get_entity(path)

    def get_factory_order_by_id(self, factory_order_id: str) -> dict[str, Any] | None:
        path = f"{self.factory_orders_path}/{urllib_parse.quote(str(factory_order_id), safe='')}"
        return self._get_entity(path)

    def list_orders(self, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        """List order snapshots visible to the current credential."""
        query = {
            str(key): str(value)
            for key, value in (params or {}).items()
            if value is not None and value != ""
        }
        path = self.orders_path
        if query:
            path = f"{path}?{urllib_parse.urlencode(sorted(query.items()))}"
        response = self._checked("GET", path, None)
        if response is None:
            return []
        return _extract_entity_list(response.payload)

    def update_task_status(self, order_id: str, task_id: str, status: str) -> dict[str, Any] | None:
        """Report a chef's progress on one task."""
        path = (
            f"{self.orders_path}/{urllib_parse.quote(str(order_id), safe='')}"
            f"/tasks/{urllib_parse.quote(str(task_id), safe='')}/status"
        )
        response = self._checked("PATCH", path, {"status": str(status)})
        if response is None:
            return None
        return _extract_entity(response.payload)

    def _get_entity(self, path: str) -> dict[str, Any] | None:
        response = self._checked("GET", path, None)
        if response is None:
            return None
        return _extract_entity(response.payload)

    def _checked(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
    ) -> HttpResponse | None:
        response = self._request_with_retries(method, path, payload)
        if response.status_code == 404:
            return None
        if response.status_code in _AUTH_STATUS_CODES:
            msg = f"REST {method} {path} rejected credential ({response.status_code})."
            raise ApiAuthError(msg, status_code=response.status_code)
        if not 200 <= response.status_code < 300:
            msg = f"REST {method} {path} failed with status {response.status_code}."
            raise ApiError(msg, status_code=response.status_code)
        return response

    def _compose_url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        token = self.credentials.get()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        headers.update(self.static_headers)
        return headers

    def _request_with_retries(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
    ) -> HttpResponse:
        url = self._compose_url(path)
        response: HttpResponse | None = None
        for attempt in range(self.retry_limit + 1):
            self._rate_limiter.acquire()
            try:
                response = self._http_transport(
                    method=method,
                    url=url,
                    headers=self._build_headers(),
                    payload=payload,
                    timeout_seconds=self.timeout_seconds,
                )
            except Exception as error:
                if attempt >= self.retry_limit:
                    msg = f"REST {method} {url} failed after retries."
                    raise ApiError(msg) from error
                time.sleep(self._retry_delay(attempt))
                continue

            if response.status_code in _RETRY_STATUS_CODES and attempt < self.retry_limit:
                retry_after_seconds = self._retry_after_seconds(response.headers)
                time.sleep(retry_after_seconds or self._retry_delay(attempt))
                continue
            return response

        if response is None:
            msg = f"REST {method} {url} failed without response."
            raise ApiError(msg)
        return response

    def _retry_delay(self, attempt: int) -> float:
        return self.retry_backoff_seconds * (2**attempt)

    @staticmethod
    def _retry_after_seconds(headers: dict[str, str]) -> float | None:
        retry_after_value = headers.get("retry-after")
        if retry_after_value is None:
            return None
        try:
            parsed = float(retry_after_value)
        except (TypeError, ValueError):
            return None
        if parsed <= 0:
            return None
        return parsed


def _extract_entity(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, Mapping):
        return None
    for key in ("data", "order", "factoryOrder"):
        nested = payload.get(key)
        if isinstance(nested, Mapping):
            return dict(nested)
    return dict(payload)


def _extract_entity_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [dict(item) for item in payload if isinstance(item, Mapping)]
    if isinstance(payload, Mapping):
        for key in ("orders", "data", "items"):
            nested = payload.get(key)
            if isinstance(nested, list):
                return [dict(item) for item in nested if isinstance(item, Mapping)]
    return []
