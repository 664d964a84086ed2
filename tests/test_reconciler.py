from __future__ import annotations

import time
from typing import Any

import pytest

from ordersync.core.models import Order, OrderItem
from ordersync.core.patches import ItemStatusPatch, OrderUpsert
from ordersync.errors import ApiError
from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import SyncMetrics
from ordersync.sync.reconciler import Reconciler
from ordersync.sync.store import StateStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class FakeOrdersApi:
    def __init__(self, responses: dict[str, list[Any]] | None = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, str]] = []

    def get_order_by_id(self, order_id: str) -> dict[str, Any] | None:
        return self._next("order", order_id)

    def get_factory_order_by_id(self, factory_order_id: str) -> dict[str, Any] | None:
        return self._next("factory_order", factory_order_id)

    def _next(self, kind: str, entity_id: str) -> Any:
        self.calls.append((kind, entity_id))
        queue = self.responses.get(entity_id, [None])
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


def _server_order(order_id: str, status: str) -> dict[str, Any]:
    return {
        "_id": order_id,
        "orderNumber": f"N-{order_id}",
        "branch": {"_id": "B1", "name": "North"},
        "status": status,
        "items": [{"_id": "I1", "status": "completed", "assignedTo": {"_id": "C1"}}],
    }


def _build(
    api: FakeOrdersApi,
    clock: FakeClock,
    **kwargs: Any,
) -> tuple[Reconciler, StateStore, list[float], SyncMetrics, JsonEventLogger]:
    store = StateStore()
    sleeps: list[float] = []
    metrics = SyncMetrics()
    logger = JsonEventLogger()
    reconciler = Reconciler(
        store,
        api,
        clock=clock,
        sleep=sleeps.append,
        metrics=metrics,
        logger=logger,
        **kwargs,
    )
    return reconciler, store, sleeps, metrics, logger


def test_requests_inside_debounce_window_share_one_fetch() -> None:
    clock = FakeClock()
    api = FakeOrdersApi({"O1": [_server_order("O1", "completed")]})
    reconciler, store, _, metrics, _ = _build(api, clock, debounce_seconds=0.5)

    assert reconciler.request("order", "O1", "all_items_completed") is True
    clock.now += 0.3
    assert reconciler.request("order", "O1", "reconnect") is False
    assert reconciler.run_due() == []

    clock.now += 0.25
    outcomes = reconciler.run_due()

    assert api.calls == [("order", "O1")]
    assert len(outcomes) == 1
    assert outcomes[0].status == "replaced"
    assert outcomes[0].reasons == ("all_items_completed", "reconnect")
    assert store.get_order("O1").status == "completed"  # type: ignore[union-attr]
    assert reconciler.pending() == []
    assert metrics.count("reconcile_requests") == 2
    assert metrics.count("reconcile_fetches") == 1


def test_fetched_snapshot_overrides_optimistic_local_state() -> None:
    clock = FakeClock()
    api = FakeOrdersApi({"O1": [_server_order("O1", "approved")]})
    reconciler, store, _, _, _ = _build(api, clock)
    store.apply(
        OrderUpsert(
            order=Order(
                order_id="O1",
                order_number="N-O1",
                items=(OrderItem(item_id="I1", assignee_id="C1", status="assigned"),),
            )
        )
    )
    for status in ("in_progress", "completed"):
        store.apply(ItemStatusPatch(order_id="O1", item_id="I1", status=status), optimistic=True)

    outcome = reconciler.reconcile_now("order", "O1")

    order = store.get_order("O1")
    assert outcome.status == "replaced"
    assert order is not None
    assert order.status == "approved"
    assert order.branch_name == "North"
    assert store.optimistic_order_ids() == []


def test_missing_entity_is_not_retried_and_keeps_local_state() -> None:
    clock = FakeClock()
    api = FakeOrdersApi({"O1": [ApiError("gone", status_code=404)]})
    reconciler, _, sleeps, metrics, logger = _build(api, clock)

    outcome = reconciler.reconcile_now("order", "O1")

    assert outcome.status == "missing"
    assert outcome.attempts == 1
    assert sleeps == []
    assert metrics.count("reconcile_failures") == 0
    assert logger.events("reconcile_missing")


def test_failures_retry_with_backoff_then_give_up() -> None:
    clock = FakeClock()
    api = FakeOrdersApi({"O1": [TimeoutError("slow"), ApiError("boom", status_code=503)]})
    reconciler, store, sleeps, metrics, logger = _build(
        api,
        clock,
        retry_limit=3,
        retry_backoff_seconds=0.1,
    )

    outcome = reconciler.reconcile_now("order", "O1")

    assert outcome.status == "failed"
    assert outcome.attempts == 3
    assert len(api.calls) == 3
    assert sleeps == pytest.approx([0.1, 0.2])
    assert metrics.count("reconcile_failures") == 1
    assert store.get_order("O1") is None
    failed = logger.events("reconcile_failed")
    assert failed and failed[0]["level"] == "error"


def test_transient_failure_then_success() -> None:
    clock = FakeClock()
    api = FakeOrdersApi({"F1": [RuntimeError("reset"), {"_id": "F1", "status": "approved"}]})
    reconciler, store, sleeps, _, _ = _build(api, clock, retry_backoff_seconds=0.05)

    outcome = reconciler.reconcile_now("factory_order", "F1")

    assert outcome.status == "replaced"
    assert outcome.attempts == 2
    assert sleeps == pytest.approx([0.05])
    assert store.get_factory_order("F1").status == "approved"  # type: ignore[union-attr]


def test_unparseable_snapshot_fails_without_retry() -> None:
    clock = FakeClock()
    api = FakeOrdersApi({"O1": [["not", "an", "object"]]})
    reconciler, _, sleeps, _, _ = _build(api, clock)

    outcome = reconciler.reconcile_now("order", "O1")

    assert outcome.status == "failed"
    assert outcome.attempts == 1
    assert "invalid snapshot" in outcome.error
    assert sleeps == []


def test_cancel_and_validation() -> None:
    clock = FakeClock()
    reconciler, _, _, _, _ = _build(FakeOrdersApi(), clock)
    reconciler.request("order", "O1")
    reconciler.request("factory_order", "F1")

    assert reconciler.cancel("order", "O1") is True
    assert reconciler.cancel("order", "O1") is False
    assert reconciler.cancel_many([("factory_order", "F1"), ("order", "O2")]) == 1
    assert reconciler.pending() == []

    with pytest.raises(ValueError, match="kind"):
        reconciler.request("customer", "X")  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="entity_id"):
        reconciler.request("order", " ")
    with pytest.raises(ValueError, match="retry_limit"):
        Reconciler(StateStore(), FakeOrdersApi(), retry_limit=0)


def test_cancel_while_fetching_discards_the_snapshot() -> None:
    clock = FakeClock()
    api = FakeOrdersApi({"O1": [_server_order("O1", "completed")]})
    reconciler, store, _, _, _ = _build(api, clock, debounce_seconds=0.0)
    fetch = api.get_order_by_id

    def fetch_then_cancel(order_id: str) -> dict[str, Any] | None:
        payload = fetch(order_id)
        assert reconciler.cancel("order", order_id) is True
        return payload

    api.get_order_by_id = fetch_then_cancel  # type: ignore[method-assign]
    reconciler.request("order", "O1")
    outcomes = reconciler.run_due()

    assert [outcome.status for outcome in outcomes] == ["cancelled"]
    assert store.get_order("O1") is None
    assert reconciler.cancel("order", "O1") is False

    api.get_order_by_id = fetch  # type: ignore[method-assign]
    reconciler.request("order", "O1")
    assert [outcome.status for outcome in reconciler.run_due()] == ["replaced"]
    assert store.get_order("O1") is not None


def test_cancel_after_snapshot_landed_evicts_it_again() -> None:
    clock = FakeClock()
    api = FakeOrdersApi({"O1": [_server_order("O1", "completed")]})
    reconciler, store, _, _, _ = _build(api, clock, debounce_seconds=0.0)
    store.subscribe(
        lambda change: reconciler.cancel("order", "O1") if change.source == "reconcile" else None
    )

    reconciler.request("order", "O1")
    outcomes = reconciler.run_due()

    assert [outcome.status for outcome in outcomes] == ["cancelled"]
    assert store.get_order("O1") is None
    assert list(store.get_snapshot().tasks) == []



def test_background_worker_runs_due_requests() -> None:
    api = FakeOrdersApi({"O1": [_server_order("O1", "completed")]})
    store = StateStore()
    reconciler = Reconciler(store, api, debounce_seconds=0.0, poll_interval_seconds=0.01)
    reconciler.start()
    try:
        reconciler.request("order", "O1")
        deadline = 200
        while store.get_order("O1") is None and deadline:
            deadline -= 1
            time.sleep(0.01)
    finally:
        reconciler.stop()

    assert store.get_order("O1") is not None
    assert not reconciler.running
