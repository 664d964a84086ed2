"""Debounced authoritative refetch that replaces local entities with server truth."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from ordersync.connectors.base import OrdersApi
from ordersync.errors import ApiError, ReconciliationFailed, ValidationError
from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import SyncMetrics
from ordersync.sync.normalizer import factory_order_from_wire, order_from_wire, returns_from_wire
from ordersync.sync.store import StateStore

ReconcileKind = Literal["order", "factory_order"]
ReconcileKey = tuple[ReconcileKind, str]
ReconcileStatus = Literal["replaced", "missing", "failed", "cancelled"]

_KINDS = frozenset({"order", "factory_order"})


@dataclass(slots=True, frozen=True)
class ReconcileOutcome:
    """Result of one reconciliation run."""

    kind: ReconcileKind
    entity_id: str
    status: ReconcileStatus
    attempts: int
    reasons: tuple[str, ...] = ()
    error: str = ""


@dataclass(slots=True)
class _PendingRequest:
    due_at: float
    reasons: list[str] = field(default_factory=list)


class Reconciler:
    """Coalesce refetch requests per entity and write the fetched snapshot to the store.

    Requests for the same entity inside `debounce_seconds` of the first one
    share a single fetch; the window is not extended by later requests.
    Cancelling an entity whose fetch is already running discards that fetch:
    the snapshot is not written, or is evicted again if it landed first.
    """

    def __init__(
        self,
        store: StateStore,
        api: OrdersApi,
        *,
        debounce_seconds: float = 0.5,
        retry_limit: int = 3,
        retry_backoff_seconds: float = 0.25,
        poll_interval_seconds: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: JsonEventLogger | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        if debounce_seconds < 0:
            msg = "debounce_seconds cannot be negative."
            raise ValueError(msg)
        if retry_limit < 1:
            msg = "retry_limit must be >= 1."
            raise ValueError(msg)
        if retry_backoff_seconds < 0:
            msg = "retry_backoff_seconds cannot be negative."
            raise ValueError(msg)
        if poll_interval_seconds <= 0:
            msg = "poll_interval_seconds must be positive."
            raise ValueError(msg)

        self.store = store
        self.api = api
        self.debounce_seconds = float(debounce_seconds)
        self.retry_limit = int(retry_limit)
        self.retry_backoff_seconds = float(retry_backoff_seconds)
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.logger = logger
        self.metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._pending: dict[ReconcileKey, _PendingRequest] = {}
        self._in_flight: set[ReconcileKey] = set()
        self._cancelled: set[ReconcileKey] = set()
        self._lock = threading.Lock()
        self._worker: threading.Thread | None = None
        self._stop_event = threading.Event()

    def request(self, kind: ReconcileKind, entity_id: str, reason: str = "") -> bool:
        """Schedule a refetch; returns False when coalesced into a pending one."""
        key = _key(kind, entity_id)
        if self.metrics is not None:
            self.metrics.increment("reconcile_requests")
        with self._lock:
            self._cancelled.discard(key)
            pending = self._pending.get(key)
            if pending is not None:
                if reason and reason not in pending.reasons:
                    pending.reasons.append(reason)
                return False
            self._pending[key] = _PendingRequest(
                due_at=self._clock() + self.debounce_seconds,
                reasons=[reason] if reason else [],
            )
        self._log("debug", "reconcile_scheduled", kind=key[0], entity_id=key[1], reason=reason)
        return True

    def pending(self) -> list[ReconcileKey]:
        with self._lock:
            return sorted(self._pending)

    def cancel(self, kind: ReconcileKind, entity_id: str) -> bool:
        return self.cancel_many([(kind, entity_id)]) == 1

    def cancel_many(self, keys: Iterable[ReconcileKey]) -> int:
        """Drop pending requests and discard fetches already running for `keys`."""
        cancelled = 0
        with self._lock:
            for kind, entity_id in keys:
                key = _key(kind, entity_id)
                dropped = self._pending.pop(key, None) is not None
                if key in self._in_flight:
                    self._cancelled.add(key)
                    dropped = True
                if dropped:
                    cancelled += 1
        return cancelled

    def run_due(self, now: float | None = None) -> list[ReconcileOutcome]:
        """Perform every pending refetch whose debounce window has elapsed."""
        current = self._clock() if now is None else float(now)
        with self._lock:
            due = sorted(
                (
                    (key, pending)
                    for key, pending in self._pending.items()
                    if pending.due_at <= current
                ),
                key=lambda entry: entry[0],
            )
            for key, _ in due:
                del self._pending[key]
                self._in_flight.add(key)
        return [
            self._reconcile(kind, entity_id, tuple(pending.reasons))
            for (kind, entity_id), pending in due
        ]

    def reconcile_now(
        self,
        kind: ReconcileKind,
        entity_id: str,
        reason: str = "manual",
    ) -> ReconcileOutcome:
        """Fetch immediately, absorbing any pending request for the same entity."""
        key = _key(kind, entity_id)
        with self._lock:
            pending = self._pending.pop(key, None)
            self._in_flight.add(key)
            self._cancelled.discard(key)
        reasons = [reason] if reason else []
        if pending is not None:
            reasons.extend(item for item in pending.reasons if item not in reasons)
        return self._reconcile(key[0], key[1], tuple(reasons))

    def start(self) -> None:
        """Run `run_due` on a background thread every `poll_interval_seconds`."""
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stop_event = threading.Event()
            self._worker = threading.Thread(
                target=self._run_worker,
                args=(self._stop_event,),
                name="ordersync-reconciler",
                daemon=True,
            )
            self._worker.start()

    def stop(self, join_timeout_seconds: float = 3.0) -> None:
        with self._lock:
            self._stop_event.set()
            worker = self._worker
        if (
            worker is not None
            and worker.is_alive()
            and worker is not threading.current_thread()
        ):
            worker.join(timeout=join_timeout_seconds)

    @property
    def running(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    def _run_worker(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.poll_interval_seconds):
            self.run_due()

    def _reconcile(
        self,
        kind: ReconcileKind,
        entity_id: str,
        reasons: tuple[str, ...],
    ) -> ReconcileOutcome:
        try:
            return self._fetch_and_replace(kind, entity_id, reasons)
        finally:
            self._settle((kind, entity_id))

    def _fetch_and_replace(
        self,
        kind: ReconcileKind,
        entity_id: str,
        reasons: tuple[str, ...],
    ) -> ReconcileOutcome:
        key: ReconcileKey = (kind, entity_id)
        fetch = self.api.get_order_by_id if kind == "order" else self.api.get_factory_order_by_id
        last_error = ""
        for attempt in range(1, self.retry_limit + 1):
            if self.metrics is not None:
                self.metrics.increment("reconcile_fetches")
            try:
                payload = fetch(entity_id)
            except ApiError as error:
                if error.status_code == 404:
                    payload = None
                else:
                    last_error = repr(error)
                    self._backoff(kind, entity_id, attempt, last_error)
                    continue
            except Exception as error:
                last_error = repr(error)
                self._backoff(kind, entity_id, attempt, last_error)
                continue

            if payload is None:
                self._log("warning", "reconcile_missing", kind=kind, entity_id=entity_id)
                return ReconcileOutcome(kind, entity_id, "missing", attempt, reasons)

            if self._is_cancelled(key):
                return self._discarded(kind, entity_id, attempt, reasons)
            try:
                self._replace(kind, payload)
            except ValidationError as error:
                return self._failed(kind, entity_id, attempt, reasons, f"invalid snapshot: {error}")
            if self._is_cancelled(key):
                # Cancelled while the snapshot was being written.
                self._evict(kind, entity_id)
                return self._discarded(kind, entity_id, attempt, reasons)
            self._log(
                "info",
                "reconcile_applied",
                kind=kind,
                entity_id=entity_id,
                attempts=attempt,
                reasons=list(reasons),
            )
            return ReconcileOutcome(kind, entity_id, "replaced", attempt, reasons)

        return self._failed(kind, entity_id, self.retry_limit, reasons, last_error)

    def _is_cancelled(self, key: ReconcileKey) -> bool:
        with self._lock:
            return key in self._cancelled

    def _settle(self, key: ReconcileKey) -> None:
        with self._lock:
            self._in_flight.discard(key)
            self._cancelled.discard(key)

    def _evict(self, kind: ReconcileKind, entity_id: str) -> None:
        if kind == "order":
            self.store.evict_orders([entity_id])
        else:
            self.store.evict_factory_orders([entity_id])

    def _discarded(
        self,
        kind: ReconcileKind,
        entity_id: str,
        attempts: int,
        reasons: tuple[str, ...],
    ) -> ReconcileOutcome:
        self._log("debug", "reconcile_cancelled", kind=kind, entity_id=entity_id)
        return ReconcileOutcome(kind, entity_id, "cancelled", attempts, reasons)

    def _replace(self, kind: ReconcileKind, payload: Any) -> None:
        if not isinstance(payload, Mapping):
            msg = f"Snapshot must be an object, got {type(payload).__name__}."
            raise ValidationError(kind, msg)
        if kind == "order":
            self.store.replace_order(order_from_wire(payload), returns_from_wire(payload))
        else:
            self.store.replace_factory_order(factory_order_from_wire(payload))

    def _backoff(self, kind: str, entity_id: str, attempt: int, error: str) -> None:
        self._log(
            "warning",
            "reconcile_retry",
            kind=kind,
            entity_id=entity_id,
            attempt=attempt,
            error=error,
        )
        if attempt < self.retry_limit and self.retry_backoff_seconds > 0:
            self._sleep(self.retry_backoff_seconds * (2 ** (attempt - 1)))

    def _failed(
        self,
        kind: ReconcileKind,
        entity_id: str,
        attempts: int,
        reasons: tuple[str, ...],
        error: str,
    ) -> ReconcileOutcome:
        failure = ReconciliationFailed(kind, entity_id, attempts)
        if self.metrics is not None:
            self.metrics.increment("reconcile_failures")
        self._log(
            "error",
            "reconcile_failed",
            kind=kind,
            entity_id=entity_id,
            attempts=attempts,
            message=str(failure),
            error=error,
        )
        return ReconcileOutcome(kind, entity_id, "failed", attempts, reasons, error)

    def _log(self, level: str, event: str, **fields: object) -> None:
        if self.logger is not None:
            self.logger.emit(level=level, event=event, **fields)


def _key(kind: str, entity_id: str) -> ReconcileKey:
    if kind not in _KINDS:
        msg = f"Unsupported reconcile kind: {kind!r}"
        raise ValueError(msg)
    normalized = str(entity_id).strip()
    if not normalized:
        msg = "entity_id must be non-empty."
        raise ValueError(msg)
    return (kind, normalized)  # type: ignore[return-value]
