from __future__ import annotations

import pandas as pd
import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from ordersync.core.models import (
    ORDER_STATUSES,
    FactoryOrder,
    Order,
    OrderItem,
    ReturnRecord,
    StatusChange,
    can_transition_order,
)
from ordersync.core.patches import (
    FactoryItemStatusPatch,
    FactoryTaskAssignmentPatch,
    ItemStatusPatch,
    MissingAssignmentPatch,
    OrderStatusPatch,
    OrderUpsert,
    ReturnPatch,
    ServerNotice,
    TaskAssignmentPatch,
)
from ordersync.ops.logging import JsonEventLogger
from ordersync.sync.store import StateStore, StoreChange


def _order(order_id: str = "O1", status: str = "pending", **overrides: object) -> Order:
    fields: dict[str, object] = {
        "order_id": order_id,
        "order_number": f"N-{order_id}",
        "branch_id": "B1",
        "branch_name": "North",
        "items": (
            OrderItem(item_id="I1", assignee_id="C1", status="assigned"),
            OrderItem(item_id="I2", status="pending"),
        ),
        "status": status,
        "created_at": pd.Timestamp("2024-05-01T08:00:00Z"),
    }
    fields.update(overrides)
    return Order(**fields)  # type: ignore[arg-type]


def _status_patch(order_id: str, status: str, minute: int = 0) -> OrderStatusPatch:
    return OrderStatusPatch(
        order_id=order_id,
        order_number=f"N-{order_id}",
        status=status,
        change=StatusChange(
            status=status,
            changed_at=pd.Timestamp("2024-05-01T09:00:00Z") + pd.Timedelta(minutes=minute),
        ),
    )


def test_upsert_creates_order_and_tasks_for_assigned_items() -> None:
    store = StateStore()
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    result = store.apply(OrderUpsert(order=_order()))

    assert result.status == "applied"
    snapshot = store.get_snapshot()
    assert list(snapshot.orders) == ["O1"]
    assert list(snapshot.tasks) == ["I1"]
    assert snapshot.tasks_for_order("O1")[0].chef_id == "C1"
    assert changes[0].source == "event"
    assert changes[0].entity_keys == (("order", "O1"),)

    again = store.apply(OrderUpsert(order=_order()))
    assert again.status == "noop"
    assert store.version == 1


def test_status_patches_follow_transition_graph() -> None:
    store = StateStore()
    store.apply(OrderUpsert(order=_order()))

    assert store.apply(_status_patch("O1", "approved")).status == "applied"
    assert store.apply(_status_patch("O1", "approved")).status == "noop"
    rejected = store.apply(_status_patch("O1", "delivered"))
    assert rejected.status == "rejected_transition"
    assert rejected.reason == "approved -> delivered"

    order = store.get_order("O1")
    assert order is not None
    assert order.status == "approved"
    assert [entry.status for entry in order.status_history] == ["approved"]

    unknown = store.apply(_status_patch("O9", "approved"))
    assert unknown.status == "unknown_entity"
    assert unknown.needs_reconcile


def test_task_assignment_for_unknown_order_creates_task_and_requests_reconcile() -> None:
    store = StateStore()
    patch = TaskAssignmentPatch(
        order_id="O1",
        order_number="N-1",
        items=(OrderItem(item_id="I1", assignee_id="C1", status="assigned"),),
    )

    result = store.apply(patch)

    assert result.status == "applied"
    assert result.needs_reconcile
    assert store.get_snapshot().tasks["I1"].status == "assigned"
    assert store.apply(patch).status == "noop"


def test_task_assignment_updates_known_order_items_and_clears_missing_mark() -> None:
    store = StateStore()
    store.apply(OrderUpsert(order=_order()))
    store.apply(
        MissingAssignmentPatch(order_id="O1", item_id="I2", order_number="N-O1", product_name="Cake")
    )
    assert store.get_order("O1").missing_assignment_item_ids == frozenset({"I2"})  # type: ignore[union-attr]

    store.apply(
        TaskAssignmentPatch(
            order_id="O1",
            order_number="N-O1",
            items=(OrderItem(item_id="I2", assignee_id="C2", status="assigned"),),
        )
    )

    order = store.get_order("O1")
    assert order is not None
    assert order.item("I2").assignee_id == "C2"  # type: ignore[union-attr]
    assert order.item("I2").status == "assigned"  # type: ignore[union-attr]
    assert order.missing_assignment_item_ids == frozenset()
    assert store.get_snapshot().tasks["I2"].chef_id == "C2"


def test_partial_upsert_keeps_known_assignee_product_and_branch() -> None:
    store = StateStore()
    unassigned = _order(
        items=(OrderItem(item_id="I1", product_name="Cake", unit="box", status="pending"),)
    )
    store.apply(OrderUpsert(order=unassigned))
    store.apply(
        TaskAssignmentPatch(
            order_id="O1",
            order_number="N-O1",
            items=(
                OrderItem(item_id="I1", assignee_id="C1", assignee_name="Sam", status="assigned"),
            ),
        )
    )
    version = store.version

    again = store.apply(OrderUpsert(order=unassigned))
    sparse = store.apply(
        OrderUpsert(order=_order(branch_id="unknown", items=(OrderItem(item_id="I1"),)))
    )

    assert again.status == "noop"
    assert sparse.status == "noop"
    assert store.version == version
    order = store.get_order("O1")
    assert order is not None
    item = order.item("I1")
    assert item is not None
    assert item.assignee_id == "C1"
    assert item.assignee_name == "Sam"
    assert item.product_name == "Cake"
    assert item.unit == "box"
    assert item.status == "assigned"
    assert order.branch_id == "B1"
    assert store.get_snapshot().tasks["I1"].chef_id == "C1"


def test_item_status_advances_item_and_task_only_forward() -> None:
    store = StateStore()
    store.apply(OrderUpsert(order=_order()))

    progressed = store.apply(ItemStatusPatch(order_id="O1", item_id="I1", status="in_progress"))
    regressed = store.apply(ItemStatusPatch(order_id="O1", item_id="I1", status="assigned"))
    missing = store.apply(ItemStatusPatch(order_id="O1", item_id="I9", status="completed"))

    assert progressed.status == "applied"
    assert regressed.status == "rejected_transition"
    assert missing.status == "unknown_entity"
    assert store.get_order("O1").item("I1").status == "in_progress"  # type: ignore[union-attr]
    assert store.get_snapshot().tasks["I1"].status == "in_progress"


def test_all_items_completed_checks_order_or_tasks() -> None:
    store = StateStore()
    store.apply(OrderUpsert(order=_order()))
    store.apply(ItemStatusPatch(order_id="O1", item_id="I1", status="completed"))
    assert not store.all_items_completed("O1")
    store.apply(ItemStatusPatch(order_id="O1", item_id="I2", status="completed"))
    assert store.all_items_completed("O1")

    store.apply(
        TaskAssignmentPatch(
            order_id="O7",
            order_number="N-7",
            items=(OrderItem(item_id="T7", assignee_id="C1", status="completed"),),
        )
    )
    assert store.all_items_completed("O7")
    assert not store.all_items_completed("missing")


def test_returns_are_created_linked_and_transitioned() -> None:
    store = StateStore()
    store.apply(OrderUpsert(order=_order()))

    created = store.apply(
        ReturnPatch(order_id="O1", return_id="R1", status="pending_approval", created=True)
    )
    duplicate = store.apply(
        ReturnPatch(order_id="O1", return_id="R1", status="pending_approval", created=True)
    )
    approved = store.apply(ReturnPatch(order_id="O1", return_id="R1", status="approved"))
    reopened = store.apply(ReturnPatch(order_id="O1", return_id="R1", status="rejected"))
    orphan = store.apply(ReturnPatch(order_id="O1", return_id="R5", status="approved"))

    assert created.status == "applied" and not created.needs_reconcile
    assert duplicate.status == "noop"
    assert approved.status == "applied"
    assert reopened.status == "rejected_transition"
    assert orphan.needs_reconcile
    snapshot = store.get_snapshot()
    assert snapshot.returns["R1"].status == "approved"
    assert snapshot.orders["O1"].return_ids == frozenset({"R1", "R5"})


def test_optimistic_mark_is_cleared_by_reconcile_replace() -> None:
    store = StateStore()
    store.apply(OrderUpsert(order=_order()))
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    store.apply(ItemStatusPatch(order_id="O1", item_id="I1", status="in_progress"), optimistic=True)
    assert store.optimistic_order_ids() == ["O1"]
    assert store.get_snapshot().orders_frame().loc[0, "optimistic"]

    store.replace_order(_order(status="approved"), (ReturnRecord(return_id="R1", order_id="O1"),))

    assert store.optimistic_order_ids() == []
    order = store.get_order("O1")
    assert order is not None
    assert order.status == "approved"
    assert order.item("I1").status == "assigned"  # type: ignore[union-attr]
    assert order.return_ids == frozenset({"R1"})
    assert [change.source for change in changes] == ["optimistic", "reconcile"]


def test_load_and_evict_orders() -> None:
    store = StateStore()
    assert store.load_orders([]) == 0
    second = _order("O2", items=(OrderItem(item_id="I3", assignee_id="C1"),))
    assert store.load_orders([_order("O1"), second]) == 2
    assert store.tracked_order_ids() == ["O1", "O2"]

    frame = store.get_snapshot().orders_frame()
    assert list(frame["order_id"]) == ["O1", "O2"]
    assert set(frame.columns) >= {"status", "items", "completed_items", "optimistic"}

    assert store.evict_orders(["O1", "missing"]) == 1
    assert store.tracked_order_ids() == ["O2"]
    assert list(store.get_snapshot().tasks) == ["I3"]


def test_factory_orders_follow_the_same_rules() -> None:
    store = StateStore()
    store.load_factory_orders(
        [
            FactoryOrder(
                factory_order_id="F1",
                order_number="F-1",
                items=(OrderItem(item_id="FI1", status="pending"),),
            )
        ]
    )

    assigned = store.apply(
        FactoryTaskAssignmentPatch(
            factory_order_id="F1",
            order_number="F-1",
            items=(OrderItem(item_id="FI1", assignee_id="C1", status="assigned"),),
        )
    )
    completed = store.apply(
        FactoryItemStatusPatch(factory_order_id="F1", item_id="FI1", status="completed")
    )

    assert assigned.status == "applied"
    assert completed.status == "applied"
    assert store.all_factory_items_completed("F1")
    assert store.get_snapshot().factory_tasks["FI1"].status == "completed"
    assert store.evict_factory_orders(["F1"]) == 1
    assert len(store.get_snapshot().factory_tasks) == 0


def test_server_notice_is_noop_and_unknown_patch_raises() -> None:
    store = StateStore()
    notice = ServerNotice(notification_id="N1", level="info", message="hi", data={})

    assert store.apply(notice).status == "noop"
    with pytest.raises(TypeError, match="Unsupported patch"):
        store.apply("bogus")  # type: ignore[arg-type]


def test_listener_failure_is_logged_and_does_not_break_apply() -> None:
    logger = JsonEventLogger()
    store = StateStore(logger=logger)

    def broken(change: StoreChange) -> None:
        raise RuntimeError("listener boom")

    unsubscribe = store.subscribe(broken)
    assert store.apply(OrderUpsert(order=_order())).status == "applied"
    assert logger.events("store_listener_failed")
    unsubscribe()
    store.apply(_status_patch("O1", "approved"))
    assert len(logger.events("store_listener_failed")) == 1


@settings(
    max_examples=80,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
@given(proposals=st.lists(st.sampled_from(ORDER_STATUSES), min_size=1, max_size=25))
def test_property_status_path_is_a_forward_walk(proposals: list[str]) -> None:
    store = StateStore()
    store.apply(OrderUpsert(order=_order()))
    path = ["pending"]

    for minute, proposed in enumerate(proposals):
        before = store.get_order("O1").status  # type: ignore[union-attr]
        result = store.apply(_status_patch("O1", proposed, minute))
        after = store.get_order("O1").status  # type: ignore[union-attr]
        if result.status == "applied":
            assert can_transition_order(before, after)
            path.append(after)
        else:
            assert after == before

    for current, following in zip(path, path[1:]):
        assert can_transition_order(current, following)
