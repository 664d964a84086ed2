"""Single-writer in-memory projection of orders, tasks, returns and factory orders."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Literal, Mapping

import pandas as pd

from ordersync.core.models import (
    UNKNOWN_PRODUCT,
    UNKNOWN_REF,
    UNKNOWN_UNIT,
    FactoryOrder,
    FactoryTask,
    Order,
    OrderItem,
    ReturnRecord,
    StatusChange,
    Task,
    can_advance_item,
    can_transition_order,
    can_transition_return,
    factory_task_from_item,
    task_from_item,
)
from ordersync.core.patches import (
    DomainPatch,
    EntityKey,
    FactoryItemStatusPatch,
    FactoryOrderStatusPatch,
    FactoryOrderUpsert,
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

ApplyStatus = Literal["applied", "noop", "rejected_transition", "unknown_entity"]
ChangeSource = Literal["event", "optimistic", "reconcile", "load", "evict"]


@dataclass(slots=True, frozen=True)
class ApplyResult:
    """Outcome of one `StateStore.apply` call."""

    status: ApplyStatus
    entity_key: EntityKey | None = None
    reason: str = ""
    needs_reconcile: bool = False

    @property
    def changed(self) -> bool:
        return self.status == "applied"


@dataclass(slots=True, frozen=True)
class StoreChange:
    """Change notification delivered to store subscribers."""

    version: int
    source: ChangeSource
    entity_keys: tuple[EntityKey, ...]
    event_name: str = ""


@dataclass(slots=True, frozen=True)
class StoreSnapshot:
    """Immutable read view of the store at one version."""

    version: int
    orders: Mapping[str, Order]
    tasks: Mapping[str, Task]
    returns: Mapping[str, ReturnRecord]
    factory_orders: Mapping[str, FactoryOrder]
    factory_tasks: Mapping[str, FactoryTask]
    optimistic: frozenset[EntityKey] = field(default_factory=frozenset)

    def tasks_for_order(self, order_id: str) -> list[Task]:
        return [task for task in self.tasks.values() if task.order_id == order_id]

    def orders_frame(self) -> pd.DataFrame:
        """Tabular order summary (one row per order, sorted by creation time)."""
        columns = [
            "order_id",
            "order_number",
            "branch_name",
            "status",
            "items",
            "completed_items",
            "total_amount",
            "returns",
            "optimistic",
            "created_at",
        ]
        rows = [
            {
                "order_id": order.order_id,
                "order_number": order.order_number,
                "branch_name": order.branch_name,
                "status": order.status,
                "items": len(order.items),
                "completed_items": sum(1 for item in order.items if item.status == "completed"),
                "total_amount": float(order.total_amount),
                "returns": len(order.return_ids),
                "optimistic": ("order", order.order_id) in self.optimistic,
                "created_at": order.created_at,
            }
            for order in self.orders.values()
        ]
        frame = pd.DataFrame(rows, columns=columns)
        if frame.empty:
            return frame
        return frame.sort_values(["created_at", "order_id"]).reset_index(drop=True)


StoreListener = Callable[[StoreChange], None]


class StateStore:
    """Serialized apply path for event patches, optimistic actions and reconciliation."""

    def __init__(self, logger: JsonEventLogger | None = None) -> None:
        self.logger = logger
        self._lock = threading.RLock()
        self._version = 0
        self._orders: dict[str, Order] = {}
        self._tasks: dict[str, Task] = {}
        self._returns: dict[str, ReturnRecord] = {}
        self._factory_orders: dict[str, FactoryOrder] = {}
        self._factory_tasks: dict[str, FactoryTask] = {}
        self._optimistic: set[EntityKey] = set()
        self._listeners: list[StoreListener] = []

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def get_snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                version=self._version,
                orders=MappingProxyType(dict(self._orders)),
                tasks=MappingProxyType(dict(self._tasks)),
                returns=MappingProxyType(dict(self._returns)),
                factory_orders=MappingProxyType(dict(self._factory_orders)),
                factory_tasks=MappingProxyType(dict(self._factory_tasks)),
                optimistic=frozenset(self._optimistic),
            )

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def get_order(self, order_id: str) -> Order | None:
        with self._lock:
            return self._orders.get(order_id)

    def get_factory_order(self, factory_order_id: str) -> FactoryOrder | None:
        with self._lock:
            return self._factory_orders.get(factory_order_id)

    def tracked_order_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._orders)

    def tracked_factory_order_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._factory_orders)

    def optimistic_order_ids(self) -> list[str]:
        """Orders carrying an optimistic local change not yet confirmed by the server."""
        with self._lock:
            return sorted(entity_id for kind, entity_id in self._optimistic if kind == "order")

    def all_items_completed(self, order_id: str) -> bool:
        """Whether every item of the order (or its tasks when unknown) is completed locally."""
        with self._lock:
            order = self._orders.get(order_id)
            if order is not None:
                return order.all_items_completed
            tasks = [task for task in self._tasks.values() if task.order_id == order_id]
            return bool(tasks) and all(task.status == "completed" for task in tasks)

    def all_factory_items_completed(self, factory_order_id: str) -> bool:
        with self._lock:
            order = self._factory_orders.get(factory_order_id)
            return order is not None and order.all_items_completed

    def apply(self, patch: DomainPatch, *, optimistic: bool = False) -> ApplyResult:
        """Apply one normalized patch under the single-writer lock."""
        with self._lock:
            result = self._dispatch(patch)
            key = result.entity_key
            change: StoreChange | None = None
            if key is not None:
                if optimistic and result.changed:
                    self._optimistic.add(key)
                elif not optimistic and result.status in {"applied", "noop"}:
                    self._optimistic.discard(key)
            if result.changed:
                change = self._bump(
                    "optimistic" if optimistic else "event",
                    (key,) if key is not None else (),
                    patch.event_name,
                )
        if change is not None:
            self._notify(change)
        return result

    def replace_order(
        self,
        order: Order,
        returns: Iterable[ReturnRecord] = (),
        *,
        source: ChangeSource = "reconcile",
    ) -> None:
        """Overwrite one order with an authoritative snapshot (server truth wins)."""
        with self._lock:
            self._replace_order_locked(order, tuple(returns))
            change = self._bump(source, (("order", order.order_id),))
        self._notify(change)

    def replace_factory_order(
        self,
        order: FactoryOrder,
        *,
        source: ChangeSource = "reconcile",
    ) -> None:
        with self._lock:
            self._replace_factory_order_locked(order)
            change = self._bump(source, (("factory_order", order.factory_order_id),))
        self._notify(change)

    def load_orders(
        self,
        orders: Iterable[Order],
        returns: Iterable[ReturnRecord] = (),
    ) -> int:
        """Seed the store from an initial pull; returns the number of orders loaded."""
        returns_by_order: dict[str, list[ReturnRecord]] = {}
        for record in returns:
            returns_by_order.setdefault(record.order_id, []).append(record)
        keys: list[EntityKey] = []
        with self._lock:
            for order in orders:
                self._replace_order_locked(order, tuple(returns_by_order.get(order.order_id, ())))
                keys.append(("order", order.order_id))
            if not keys:
                return 0
            change = self._bump("load", tuple(keys))
        self._notify(change)
        return len(keys)

    def load_factory_orders(self, orders: Iterable[FactoryOrder]) -> int:
        keys: list[EntityKey] = []
        with self._lock:
            for order in orders:
                self._replace_factory_order_locked(order)
                keys.append(("factory_order", order.factory_order_id))
            if not keys:
                return 0
            change = self._bump("load", tuple(keys))
        self._notify(change)
        return len(keys)

    def evict_orders(self, order_ids: Iterable[str]) -> int:
        """Drop orders with their tasks and returns (view unmounted)."""
        keys: list[EntityKey] = []
        with self._lock:
            for order_id in set(order_ids):
                known = order_id in self._orders
                known = self._drop_order_children(order_id) or known
                self._orders.pop(order_id, None)
                self._optimistic.discard(("order", order_id))
                if known:
                    keys.append(("order", order_id))
            if not keys:
                return 0
            change = self._bump("evict", tuple(sorted(keys)))
        self._notify(change)
        return len(keys)

    def evict_factory_orders(self, factory_order_ids: Iterable[str]) -> int:
        keys: list[EntityKey] = []
        with self._lock:
            for order_id in set(factory_order_ids):
                known = self._factory_orders.pop(order_id, None) is not None
                for task_id in [
                    task_id
                    for task_id, task in self._factory_tasks.items()
                    if task.factory_order_id == order_id
                ]:
                    known = True
                    del self._factory_tasks[task_id]
                self._optimistic.discard(("factory_order", order_id))
                if known:
                    keys.append(("factory_order", order_id))
            if not keys:
                return 0
            change = self._bump("evict", tuple(sorted(keys)))
        self._notify(change)
        return len(keys)

    def _dispatch(self, patch: DomainPatch) -> ApplyResult:
        if isinstance(patch, OrderUpsert):
            return self._apply_order_upsert(patch)
        if isinstance(patch, OrderStatusPatch):
            return self._apply_order_status(patch)
        if isinstance(patch, TaskAssignmentPatch):
            return self._apply_task_assignment(patch)
        if isinstance(patch, ItemStatusPatch):
            return self._apply_item_status(patch)
        if isinstance(patch, ReturnPatch):
            return self._apply_return(patch)
        if isinstance(patch, MissingAssignmentPatch):
            return self._apply_missing_assignment(patch)
        if isinstance(patch, FactoryOrderUpsert):
            return self._apply_factory_upsert(patch)
        if isinstance(patch, FactoryOrderStatusPatch):
            return self._apply_factory_status(patch)
        if isinstance(patch, FactoryTaskAssignmentPatch):
            return self._apply_factory_assignment(patch)
        if isinstance(patch, FactoryItemStatusPatch):
            return self._apply_factory_item_status(patch)
        if isinstance(patch, ServerNotice):
            return ApplyResult(status="noop")
        msg = f"Unsupported patch type: {type(patch).__name__}"
        raise TypeError(msg)

    def _apply_order_upsert(self, patch: OrderUpsert) -> ApplyResult:
        incoming = patch.order
        key: EntityKey = ("order", incoming.order_id)
        existing = self._orders.get(incoming.order_id)
        if existing is None:
            self._orders[incoming.order_id] = incoming
            self._sync_tasks(incoming)
            return ApplyResult(status="applied", entity_key=key)

        status = existing.status
        if incoming.status != existing.status and can_transition_order(
            existing.status, incoming.status
        ):
            status = incoming.status
        merged = replace(
            existing,
            order_number=incoming.order_number or existing.order_number,
            branch_id=_known(incoming.branch_id, existing.branch_id, UNKNOWN_REF),
            branch_name=incoming.branch_name or existing.branch_name,
            items=_merge_items(existing.items, incoming.items),
            status=status,
            status_history=_merge_history(existing.status_history, incoming.status_history),
            return_ids=existing.return_ids | incoming.return_ids,
            total_amount=incoming.total_amount or existing.total_amount,
        )
        if merged == existing:
            return ApplyResult(status="noop", entity_key=key)
        self._orders[incoming.order_id] = merged
        self._sync_tasks(merged)
        return ApplyResult(status="applied", entity_key=key)

    def _apply_order_status(self, patch: OrderStatusPatch) -> ApplyResult:
        key: EntityKey = ("order", patch.order_id)
        existing = self._orders.get(patch.order_id)
        if existing is None:
            return ApplyResult(
                status="unknown_entity",
                entity_key=key,
                reason="order not tracked",
                needs_reconcile=True,
            )
        if existing.status == patch.status:
            return ApplyResult(status="noop", entity_key=key)
        if not can_transition_order(existing.status, patch.status):
            return ApplyResult(
                status="rejected_transition",
                entity_key=key,
                reason=f"{existing.status} -> {patch.status}",
            )
        self._orders[patch.order_id] = replace(
            existing,
            status=patch.status,
            status_history=_merge_history(existing.status_history, (patch.change,)),
        )
        return ApplyResult(status="applied", entity_key=key)

    def _apply_task_assignment(self, patch: TaskAssignmentPatch) -> ApplyResult:
        key: EntityKey = ("order", patch.order_id)
        existing = self._orders.get(patch.order_id)
        changed = False
        if existing is not None:
            items = _assign_items(existing.items, patch.items)
            assigned_ids = {item.item_id for item in patch.items}
            updated = replace(
                existing,
                items=items,
                missing_assignment_item_ids=existing.missing_assignment_item_ids - assigned_ids,
            )
            if updated != existing:
                self._orders[patch.order_id] = updated
                changed = True
            source_items = [updated.item(item.item_id) or item for item in patch.items]
        else:
            source_items = list(patch.items)

        for item in source_items:
            previous = self._tasks.get(item.item_id)
            task = task_from_item(item, patch.order_id, patch.order_number)
            if previous is not None:
                status = previous.status
                if can_advance_item(previous.status, task.status):
                    status = task.status
                task = replace(task, status=status, updated_at=previous.updated_at)
                if _same_task(previous, task):
                    continue
            self._tasks[item.item_id] = task
            changed = True

        return ApplyResult(
            status="applied" if changed else "noop",
            entity_key=key,
            needs_reconcile=existing is None,
            reason="" if existing is not None else "order not tracked",
        )

    def _apply_item_status(self, patch: ItemStatusPatch) -> ApplyResult:
        key: EntityKey = ("order", patch.order_id)
        existing = self._orders.get(patch.order_id)
        item = existing.item(patch.item_id) if existing is not None else None
        task = self._tasks.get(patch.item_id)
        if item is None and task is None:
            return ApplyResult(
                status="unknown_entity",
                entity_key=key,
                reason="item not tracked",
                needs_reconcile=True,
            )
        current = item.status if item is not None else task.status  # type: ignore[union-attr]
        if current == patch.status:
            return ApplyResult(status="noop", entity_key=key)
        if not can_advance_item(current, patch.status):
            return ApplyResult(
                status="rejected_transition",
                entity_key=key,
                reason=f"{current} -> {patch.status}",
            )
        if existing is not None and item is not None:
            self._orders[patch.order_id] = replace(
                existing,
                items=tuple(
                    replace(candidate, status=patch.status)
                    if candidate.item_id == patch.item_id
                    else candidate
                    for candidate in existing.items
                ),
            )
        if task is not None:
            self._tasks[patch.item_id] = replace(
                task,
                status=patch.status,
                updated_at=pd.Timestamp.now(tz="UTC"),
            )
        elif item is not None and item.assignee_id:
            self._tasks[patch.item_id] = task_from_item(
                replace(item, status=patch.status),
                patch.order_id,
                existing.order_number if existing is not None else patch.order_number,
            )
        return ApplyResult(
            status="applied",
            entity_key=key,
            needs_reconcile=existing is None,
        )

    def _apply_return(self, patch: ReturnPatch) -> ApplyResult:
        key: EntityKey = ("order", patch.order_id)
        order = self._orders.get(patch.order_id)
        previous = self._returns.get(patch.return_id)
        if previous is not None and not patch.created:
            if previous.status == patch.status:
                return ApplyResult(status="noop", entity_key=key)
            if not can_transition_return(previous.status, patch.status):
                return ApplyResult(
                    status="rejected_transition",
                    entity_key=key,
                    reason=f"{previous.status} -> {patch.status}",
                )
            self._returns[patch.return_id] = replace(previous, status=patch.status)
        elif previous is not None:
            return ApplyResult(status="noop", entity_key=key)
        else:
            self._returns[patch.return_id] = ReturnRecord(
                return_id=patch.return_id,
                order_id=patch.order_id,
                branch_id=patch.branch_id or (order.branch_id if order is not None else "unknown"),
                items=patch.items,
                status=patch.status,
                reason=patch.reason,
            )
        if order is not None and patch.return_id not in order.return_ids:
            self._orders[patch.order_id] = replace(
                order,
                return_ids=order.return_ids | {patch.return_id},
            )
        relation_missing = order is None or (
            not patch.created and previous is None
        )
        return ApplyResult(
            status="applied",
            entity_key=key,
            needs_reconcile=relation_missing,
        )

    def _apply_missing_assignment(self, patch: MissingAssignmentPatch) -> ApplyResult:
        key: EntityKey = ("order", patch.order_id)
        order = self._orders.get(patch.order_id)
        if order is None:
            return ApplyResult(
                status="unknown_entity",
                entity_key=key,
                reason="order not tracked",
                needs_reconcile=True,
            )
        if patch.item_id in order.missing_assignment_item_ids:
            return ApplyResult(status="noop", entity_key=key)
        self._orders[patch.order_id] = replace(
            order,
            missing_assignment_item_ids=order.missing_assignment_item_ids | {patch.item_id},
        )
        return ApplyResult(
            status="applied",
            entity_key=key,
            needs_reconcile=order.item(patch.item_id) is None,
        )

    def _apply_factory_upsert(self, patch: FactoryOrderUpsert) -> ApplyResult:
        incoming = patch.order
        key: EntityKey = ("factory_order", incoming.factory_order_id)
        existing = self._factory_orders.get(incoming.factory_order_id)
        if existing is None:
            self._factory_orders[incoming.factory_order_id] = incoming
            self._sync_factory_tasks(incoming)
            return ApplyResult(status="applied", entity_key=key)
        status = existing.status
        if incoming.status != existing.status and can_transition_order(
            existing.status, incoming.status
        ):
            status = incoming.status
        merged = replace(
            existing,
            items=_merge_items(existing.items, incoming.items),
            status=status,
            status_history=_merge_history(existing.status_history, incoming.status_history),
        )
        if merged == existing:
            return ApplyResult(status="noop", entity_key=key)
        self._factory_orders[incoming.factory_order_id] = merged
        self._sync_factory_tasks(merged)
        return ApplyResult(status="applied", entity_key=key)

    def _apply_factory_status(self, patch: FactoryOrderStatusPatch) -> ApplyResult:
        key: EntityKey = ("factory_order", patch.factory_order_id)
        existing = self._factory_orders.get(patch.factory_order_id)
        if existing is None:
            return ApplyResult(
                status="unknown_entity",
                entity_key=key,
                reason="factory order not tracked",
                needs_reconcile=True,
            )
        if existing.status == patch.status:
            return ApplyResult(status="noop", entity_key=key)
        if not can_transition_order(existing.status, patch.status):
            return ApplyResult(
                status="rejected_transition",
                entity_key=key,
                reason=f"{existing.status} -> {patch.status}",
            )
        self._factory_orders[patch.factory_order_id] = replace(
            existing,
            status=patch.status,
            status_history=_merge_history(existing.status_history, (patch.change,)),
        )
        return ApplyResult(status="applied", entity_key=key)

    def _apply_factory_assignment(self, patch: FactoryTaskAssignmentPatch) -> ApplyResult:
        key: EntityKey = ("factory_order", patch.factory_order_id)
        existing = self._factory_orders.get(patch.factory_order_id)
        changed = False
        if existing is not None:
            updated = replace(existing, items=_assign_items(existing.items, patch.items))
            if updated != existing:
                self._factory_orders[patch.factory_order_id] = updated
                changed = True
            source_items = [updated.item(item.item_id) or item for item in patch.items]
        else:
            source_items = list(patch.items)
        for item in source_items:
            previous = self._factory_tasks.get(item.item_id)
            task = factory_task_from_item(item, patch.factory_order_id, patch.order_number)
            if previous is not None:
                status = previous.status
                if can_advance_item(previous.status, task.status):
                    status = task.status
                task = replace(task, status=status, updated_at=previous.updated_at)
                if task == previous:
                    continue
            self._factory_tasks[item.item_id] = task
            changed = True
        return ApplyResult(
            status="applied" if changed else "noop",
            entity_key=key,
            needs_reconcile=existing is None,
        )

    def _apply_factory_item_status(self, patch: FactoryItemStatusPatch) -> ApplyResult:
        key: EntityKey = ("factory_order", patch.factory_order_id)
        existing = self._factory_orders.get(patch.factory_order_id)
        item = existing.item(patch.item_id) if existing is not None else None
        task = self._factory_tasks.get(patch.item_id)
        if item is None and task is None:
            return ApplyResult(
                status="unknown_entity",
                entity_key=key,
                reason="factory item not tracked",
                needs_reconcile=True,
            )
        current = item.status if item is not None else task.status  # type: ignore[union-attr]
        if current == patch.status:
            return ApplyResult(status="noop", entity_key=key)
        if not can_advance_item(current, patch.status):
            return ApplyResult(
                status="rejected_transition",
                entity_key=key,
                reason=f"{current} -> {patch.status}",
            )
        if existing is not None and item is not None:
            self._factory_orders[patch.factory_order_id] = replace(
                existing,
                items=tuple(
                    replace(candidate, status=patch.status)
                    if candidate.item_id == patch.item_id
                    else candidate
                    for candidate in existing.items
                ),
            )
        if task is not None:
            self._factory_tasks[patch.item_id] = replace(
                task,
                status=patch.status,
                updated_at=pd.Timestamp.now(tz="UTC"),
            )
        return ApplyResult(status="applied", entity_key=key, needs_reconcile=existing is None)

    def _replace_order_locked(self, order: Order, returns: tuple[ReturnRecord, ...]) -> None:
        self._drop_order_children(order.order_id, keep_returns=not returns)
        self._orders[order.order_id] = order
        self._sync_tasks(order)
        for record in returns:
            self._returns[record.return_id] = record
        if returns:
            extra_ids = frozenset(record.return_id for record in returns) - order.return_ids
            if extra_ids:
                self._orders[order.order_id] = replace(
                    order,
                    return_ids=order.return_ids | extra_ids,
                )
        self._optimistic.discard(("order", order.order_id))

    def _replace_factory_order_locked(self, order: FactoryOrder) -> None:
        for task_id in [
            task_id
            for task_id, task in self._factory_tasks.items()
            if task.factory_order_id == order.factory_order_id
        ]:
            del self._factory_tasks[task_id]
        self._factory_orders[order.factory_order_id] = order
        self._sync_factory_tasks(order)
        self._optimistic.discard(("factory_order", order.factory_order_id))

    def _drop_order_children(self, order_id: str, *, keep_returns: bool = False) -> bool:
        dropped = False
        for task_id in [
            task_id for task_id, task in self._tasks.items() if task.order_id == order_id
        ]:
            del self._tasks[task_id]
            dropped = True
        if not keep_returns:
            for return_id in [
                return_id
                for return_id, record in self._returns.items()
                if record.order_id == order_id
            ]:
                del self._returns[return_id]
                dropped = True
        return dropped

    def _sync_tasks(self, order: Order) -> None:
        for item in order.items:
            if not item.assignee_id:
                continue
            task = task_from_item(item, order.order_id, order.order_number)
            previous = self._tasks.get(item.item_id)
            if previous is not None and _same_task(previous, task):
                continue
            self._tasks[item.item_id] = task

    def _sync_factory_tasks(self, order: FactoryOrder) -> None:
        for item in order.items:
            if not item.assignee_id:
                continue
            task = factory_task_from_item(item, order.factory_order_id, order.order_number)
            previous = self._factory_tasks.get(item.item_id)
            if previous is not None and _same_task(previous, task):
                continue
            self._factory_tasks[item.item_id] = task

    def _bump(
        self,
        source: ChangeSource,
        entity_keys: tuple[EntityKey, ...],
        event_name: str = "",
    ) -> StoreChange:
        self._version += 1
        return StoreChange(
            version=self._version,
            source=source,
            entity_keys=entity_keys,
            event_name=event_name,
        )

    def _notify(self, change: StoreChange) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception as error:
                if self.logger is not None:
                    self.logger.emit(
                        level="error",
                        event="store_listener_failed",
                        version=change.version,
                        error=repr(error),
                    )


def _merge_items(
    existing: tuple[OrderItem, ...],
    incoming: tuple[OrderItem, ...],
) -> tuple[OrderItem, ...]:
    """Merge matching items by id (keeping the more advanced status), append new ones."""
    incoming_by_id = {item.item_id: item for item in incoming}
    merged: list[OrderItem] = []
    for item in existing:
        update = incoming_by_id.pop(item.item_id, None)
        if update is None:
            merged.append(item)
            continue
        merged.append(_merge_item(item, update))
    merged.extend(item for item in incoming if item.item_id in incoming_by_id)
    return tuple(merged)


def _merge_item(known: OrderItem, update: OrderItem) -> OrderItem:
    # Defaulted fields in a partial payload never erase what is already known.
    status = update.status if can_advance_item(known.status, update.status) else known.status
    return replace(
        update,
        product_id=_known(update.product_id, known.product_id, UNKNOWN_REF),
        product_name=_known(update.product_name, known.product_name, UNKNOWN_PRODUCT),
        unit=_known(update.unit, known.unit, UNKNOWN_UNIT),
        unit_price=update.unit_price or known.unit_price,
        department_id=_known(update.department_id, known.department_id, UNKNOWN_REF),
        status=status,
        assignee_id=update.assignee_id or known.assignee_id,
        assignee_name=update.assignee_name or known.assignee_name,
        returned_quantity=max(update.returned_quantity, known.returned_quantity),
    )


def _known(incoming: str, current: str, sentinel: str) -> str:
    if not incoming or incoming == sentinel:
        return current
    return incoming


def _assign_items(
    existing: tuple[OrderItem, ...],
    assignments: tuple[OrderItem, ...],
) -> tuple[OrderItem, ...]:
    by_id = {item.item_id: item for item in assignments}
    updated: list[OrderItem] = []
    for item in existing:
        assignment = by_id.pop(item.item_id, None)
        if assignment is None:
            updated.append(item)
            continue
        status = (
            assignment.status
            if can_advance_item(item.status, assignment.status)
            else item.status
        )
        updated.append(
            replace(
                item,
                assignee_id=assignment.assignee_id,
                assignee_name=assignment.assignee_name or item.assignee_name,
                status=status,
            )
        )
    updated.extend(item for item in assignments if item.item_id in by_id)
    return tuple(updated)


def _merge_history(
    existing: tuple[StatusChange, ...],
    incoming: Iterable[StatusChange],
) -> tuple[StatusChange, ...]:
    seen = {entry.identity for entry in existing}
    merged = list(existing)
    for entry in incoming:
        if entry.identity in seen:
            continue
        seen.add(entry.identity)
        merged.append(entry)
    return tuple(merged)


def _same_task(left: Task | FactoryTask, right: Task | FactoryTask) -> bool:
    return replace(left, updated_at=right.updated_at) == right
