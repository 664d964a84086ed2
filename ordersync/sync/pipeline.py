"""Inbound event pipeline: decode, scope, dedup, normalize, apply, reconcile, notify."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any, Literal

from ordersync.core.envelope import EventEnvelope, parse_frame
from ordersync.core.models import Session
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
from ordersync.errors import FrameDecodeError
from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import SyncMetrics
from ordersync.ops.notifications import Notification, NotificationSink
from ordersync.sync.dedup import IdempotencyDeduper
from ordersync.sync.normalizer import normalize
from ordersync.sync.reconciler import Reconciler
from ordersync.sync.scope import is_visible, visible_items
from ordersync.sync.store import ApplyResult, StateStore, StoreChange, StoreSnapshot

OutcomeStatus = Literal[
    "applied",
    "noop",
    "duplicate",
    "out_of_scope",
    "invalid",
    "rejected_transition",
    "decode_error",
]

_ORDER_EVENT_MESSAGES = {
    "orderConfirmed": "Order {number} was approved",
    "orderApproved": "Order {number} was approved",
    "orderRejected": "Order {number} was rejected",
    "orderInTransit": "Order {number} is in transit",
    "orderCompleted": "Order {number} is completed",
    "orderShipped": "Order {number} is in transit",
    "orderDelivered": "Order {number} was delivered",
}
_SUCCESS_STATUSES = frozenset({"approved", "completed", "delivered"})
_WARNING_STATUSES = frozenset({"cancelled", "rejected"})


@dataclass(slots=True, frozen=True)
class PipelineOutcome:
    """What happened to one inbound event."""

    status: OutcomeStatus
    event_name: str = ""
    idempotency_key: str = ""
    reason: str = ""
    notifications: tuple[Notification, ...] = ()
    reconcile_requested: tuple[EntityKey, ...] = ()


class ViewHandle:
    """A consumer's interest in a set of entities.

    `close()` unsubscribes the listener, cancels pending reconciliation and
    evicts entities no other open view tracks. It never touches the connection.
    """

    def __init__(
        self,
        engine: SyncEngine,
        view_id: int,
        name: str,
        listener: Callable[[StoreChange], None] | None,
    ) -> None:
        self.engine = engine
        self.view_id = view_id
        self.name = str(name)
        self.order_ids: set[str] = set()
        self.factory_order_ids: set[str] = set()
        self.closed = False
        self._listener = listener
        self._unsubscribe: Callable[[], None] | None = None
        if listener is not None:
            self._unsubscribe = engine.store.subscribe(self._forward)

    @property
    def entity_keys(self) -> set[EntityKey]:
        keys: set[EntityKey] = {("order", order_id) for order_id in self.order_ids}
        keys.update(("factory_order", order_id) for order_id in self.factory_order_ids)
        return keys

    def track(self, order_ids: Iterable[str] = (), factory_order_ids: Iterable[str] = ()) -> None:
        if self.closed:
            msg = f"View {self.name!r} is closed."
            raise RuntimeError(msg)
        self.order_ids.update(str(order_id) for order_id in order_ids)
        self.factory_order_ids.update(str(order_id) for order_id in factory_order_ids)

    def snapshot(self) -> StoreSnapshot:
        return self.engine.store.get_snapshot()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.engine._close_view(self)

    def _forward(self, change: StoreChange) -> None:
        if self._listener is None or self.closed:
            return
        keys = self.entity_keys
        if not keys or keys.intersection(change.entity_keys):
            self._listener(change)


class SyncEngine:
    """The shared pipeline every push frame of a session goes through.

    Stages run in a fixed order under one lock: decode, scope filter,
    idempotency check, normalization, store apply, reconciliation triggers and
    notification. Every stage reports through `PipelineOutcome`; nothing raises.
    """

    def __init__(
        self,
        session: Session,
        store: StateStore,
        reconciler: Reconciler,
        notifications: NotificationSink,
        deduper: IdempotencyDeduper | None = None,
        logger: JsonEventLogger | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.session = session
        self.store = store
        self.reconciler = reconciler
        self.notifications = notifications
        self.deduper = deduper if deduper is not None else IdempotencyDeduper()
        self.logger = logger
        self.metrics = metrics if metrics is not None else SyncMetrics()
        self._lock = threading.RLock()
        self._views: dict[int, ViewHandle] = {}
        self._view_ids = itertools.count(1)

    def handle_frame(self, raw: str | bytes | dict[str, Any] | list[Any]) -> PipelineOutcome:
        """Run one raw push frame through the pipeline."""
        self.metrics.increment("received")
        try:
            envelope = parse_frame(raw)
        except FrameDecodeError as error:
            self.metrics.increment("decode_errors")
            self._log("warning", "frame_decode_failed", error=str(error))
            return PipelineOutcome(status="decode_error", reason=str(error))
        return self._process(envelope)

    def handle_envelope(self, envelope: EventEnvelope) -> PipelineOutcome:
        self.metrics.increment("received")
        return self._process(envelope)

    def on_reconnect(self, attempt: int = 1) -> list[EntityKey]:
        """Treat a reconnect as a data-loss window: refetch everything tracked."""
        snapshot = self.store.get_snapshot()
        order_ids = set(snapshot.orders)
        order_ids.update(task.order_id for task in snapshot.tasks.values())
        factory_ids = set(snapshot.factory_orders)
        factory_ids.update(task.factory_order_id for task in snapshot.factory_tasks.values())
        keys: list[EntityKey] = [("order", order_id) for order_id in sorted(order_ids)]
        keys.extend(("factory_order", order_id) for order_id in sorted(factory_ids))
        for kind, entity_id in keys:
            self.reconciler.request(kind, entity_id, "reconnect")
        self._log("info", "reconnect_reconcile", attempt=int(attempt), entities=len(keys))
        return keys

    def apply_local_action(self, patch: DomainPatch) -> ApplyResult:
        """Apply a user-initiated change optimistically and schedule confirmation."""
        with self._lock:
            result = self.store.apply(patch, optimistic=True)
            if result.status == "rejected_transition":
                self._log(
                    "warning",
                    "transition_rejected",
                    event_name=patch.event_name,
                    reason=result.reason,
                    optimistic=True,
                )
            elif result.entity_key is not None:
                kind, entity_id = result.entity_key
                self.reconciler.request(kind, entity_id, "optimistic")
                self._log(
                    "info",
                    "local_action_applied",
                    event_name=patch.event_name,
                    kind=kind,
                    entity_id=entity_id,
                    status=result.status,
                )
            return result

    def open_view(
        self,
        name: str,
        order_ids: Iterable[str] = (),
        factory_order_ids: Iterable[str] = (),
        listener: Callable[[StoreChange], None] | None = None,
    ) -> ViewHandle:
        with self._lock:
            view = ViewHandle(self, next(self._view_ids), name, listener)
            view.track(order_ids, factory_order_ids)
            self._views[view.view_id] = view
            return view

    @property
    def open_views(self) -> list[ViewHandle]:
        with self._lock:
            return list(self._views.values())

    def close(self) -> None:
        """Close every open view."""
        for view in self.open_views:
            view.close()

    def _close_view(self, view: ViewHandle) -> None:
        with self._lock:
            self._views.pop(view.view_id, None)
            still_tracked: set[EntityKey] = set()
            for other in self._views.values():
                still_tracked.update(other.entity_keys)
            exclusive = view.entity_keys - still_tracked
            cancelled = self.reconciler.cancel_many(sorted(exclusive))
            evicted = self.store.evict_orders(
                entity_id for kind, entity_id in exclusive if kind == "order"
            )
            evicted += self.store.evict_factory_orders(
                entity_id for kind, entity_id in exclusive if kind == "factory_order"
            )
        self._log(
            "debug",
            "view_closed",
            view=view.name,
            cancelled_reconciliations=cancelled,
            evicted=evicted,
        )

    def _process(self, envelope: EventEnvelope) -> PipelineOutcome:
        with self._lock:
            name = envelope.name
            key = envelope.idempotency_key
            if not is_visible(envelope, self.session):
                self.metrics.increment("out_of_scope")
                self._log("debug", "event_out_of_scope", event_name=name, key=key)
                return PipelineOutcome(status="out_of_scope", event_name=name, idempotency_key=key)

            if not envelope.key_synthetic and not self.deduper.should_apply(key):
                self.metrics.increment("duplicates")
                self._log("debug", "event_duplicate", event_name=name, key=key)
                return PipelineOutcome(status="duplicate", event_name=name, idempotency_key=key)

            normalized = normalize(name, envelope.payload)
            if not normalized.ok or normalized.patch is None:
                error = normalized.error
                self.metrics.increment("invalid")
                self._log(
                    "warning",
                    "event_invalid",
                    event_name=name,
                    key=key,
                    message="" if error is None else error.message,
                    missing_fields=[] if error is None else list(error.missing_fields),
                )
                return PipelineOutcome(
                    status="invalid",
                    event_name=name,
                    idempotency_key=key,
                    reason="" if error is None else error.message,
                )

            patch = normalized.patch
            if isinstance(patch, (TaskAssignmentPatch, FactoryTaskAssignmentPatch)):
                # Chefs only keep their own assignments.
                patch = replace(patch, items=tuple(visible_items(patch.items, self.session)))
            result = self.store.apply(patch)
            reconcile_keys = self._reconcile_triggers(patch, result)

            if result.status == "rejected_transition":
                self.metrics.increment("rejected_transitions")
                self._log(
                    "warning",
                    "transition_rejected",
                    event_name=name,
                    key=key,
                    reason=result.reason,
                )
                return PipelineOutcome(
                    status="rejected_transition",
                    event_name=name,
                    idempotency_key=key,
                    reason=result.reason,
                    reconcile_requested=reconcile_keys,
                )

            if result.status == "applied":
                self.metrics.increment("applied")
                self._log("debug", "event_applied", event_name=name, key=key)
            else:
                self.metrics.increment("noops")

            delivered: tuple[Notification, ...] = ()
            if result.status in {"applied", "unknown_entity"} or isinstance(patch, ServerNotice):
                delivered = self._notify(envelope, patch)
            return PipelineOutcome(
                status="applied" if result.status == "applied" else "noop",
                event_name=name,
                idempotency_key=key,
                reason=result.reason,
                notifications=delivered,
                reconcile_requested=reconcile_keys,
            )

    def _reconcile_triggers(
        self,
        patch: DomainPatch,
        result: ApplyResult,
    ) -> tuple[EntityKey, ...]:
        requested: list[tuple[EntityKey, str]] = []
        key = result.entity_key
        if key is not None and (result.needs_reconcile or result.status == "unknown_entity"):
            requested.append((key, "missing_relation"))
        elif key is not None and result.status == "rejected_transition":
            requested.append((key, "rejected_transition"))
        if result.status == "applied":
            if isinstance(patch, ItemStatusPatch) and self.store.all_items_completed(
                patch.order_id
            ):
                requested.append((("order", patch.order_id), "all_items_completed"))
            elif isinstance(
                patch, FactoryItemStatusPatch
            ) and self.store.all_factory_items_completed(patch.factory_order_id):
                requested.append(
                    (("factory_order", patch.factory_order_id), "all_items_completed")
                )
        keys: list[EntityKey] = []
        for (kind, entity_id), reason in requested:
            self.reconciler.request(kind, entity_id, reason)
            if (kind, entity_id) not in keys:
                keys.append((kind, entity_id))
        return tuple(keys)

    def _notify(self, envelope: EventEnvelope, patch: DomainPatch) -> tuple[Notification, ...]:
        key = envelope.idempotency_key
        delivered: list[Notification] = []
        for notification_key, message, level, data in self._render(envelope, patch):
            notification = self.notifications.notify(
                notification_key if notification_key else key,
                message,
                level=level,
                event_name=envelope.name,
                data=data,
            )
            if notification is not None:
                delivered.append(notification)
        return tuple(delivered)

    def _render(
        self,
        envelope: EventEnvelope,
        patch: DomainPatch,
    ) -> list[tuple[str, str, str, dict[str, Any]]]:
        key = envelope.idempotency_key
        if isinstance(patch, (TaskAssignmentPatch, FactoryTaskAssignmentPatch)):
            order_id = (
                patch.order_id
                if isinstance(patch, TaskAssignmentPatch)
                else patch.factory_order_id
            )
            rendered = []
            for item in patch.items:
                rendered.append(
                    (
                        f"{key}-{item.item_id}",
                        f"New task: {_quantity(item.quantity)} {item.unit} of "
                        f"{item.product_name} for order {patch.order_number}",
                        "info",
                        {"orderId": order_id, "itemId": item.item_id, "eventId": key},
                    )
                )
            return rendered
        message, level, data = render_message(patch)
        if isinstance(patch, ServerNotice) and patch.notification_id:
            return [(patch.notification_id, message, level, data)]
        return [(key, message, level, data)]

    def _log(self, level: str, event: str, **fields: Any) -> None:
        if self.logger is not None:
            self.logger.emit(level=level, event=event, session_id=self.session.user_id, **fields)


def render_message(patch: DomainPatch) -> tuple[str, str, dict[str, Any]]:
    """Plain-English notification text, level and data for one patch."""
    if isinstance(patch, OrderUpsert):
        order = patch.order
        branch = f" from {order.branch_name}" if order.branch_name else ""
        return (
            f"New order {order.order_number}{branch}",
            "info",
            {"orderId": order.order_id},
        )
    if isinstance(patch, OrderStatusPatch):
        template = _ORDER_EVENT_MESSAGES.get(
            patch.event_name,
            "Order {number} status changed to {status}",
        )
        return (
            template.format(number=patch.order_number, status=_label(patch.status)),
            _status_level(patch.status),
            {"orderId": patch.order_id, "status": patch.status},
        )
    if isinstance(patch, ItemStatusPatch):
        subject = "Task" if patch.event_name in {"taskStatusUpdated", "taskCompleted"} else "Item"
        return (
            f"{subject} in order {patch.order_number or patch.order_id} "
            f"is now {_label(patch.status)}",
            _status_level(patch.status),
            {"orderId": patch.order_id, "itemId": patch.item_id, "status": patch.status},
        )
    if isinstance(patch, ReturnPatch):
        data = {"orderId": patch.order_id, "returnId": patch.return_id, "status": patch.status}
        if patch.created:
            return (f"New return for order {patch.order_number}", "info", data)
        return (
            f"Return for order {patch.order_number} was {_label(patch.status)}",
            _status_level(patch.status),
            data,
        )
    if isinstance(patch, MissingAssignmentPatch):
        return (
            f"Order {patch.order_number}: {patch.product_name} has no assigned chef",
            "warning",
            {"orderId": patch.order_id, "itemId": patch.item_id},
        )
    if isinstance(patch, FactoryOrderUpsert):
        return (
            f"New factory order {patch.order.order_number}",
            "info",
            {"factoryOrderId": patch.order.factory_order_id},
        )
    if isinstance(patch, FactoryOrderStatusPatch):
        return (
            f"Factory order {patch.order_number or patch.factory_order_id} "
            f"status changed to {_label(patch.status)}",
            _status_level(patch.status),
            {"factoryOrderId": patch.factory_order_id, "status": patch.status},
        )
    if isinstance(patch, FactoryItemStatusPatch):
        return (
            f"Item in factory order {patch.order_number or patch.factory_order_id} "
            f"is now {_label(patch.status)}",
            _status_level(patch.status),
            {
                "factoryOrderId": patch.factory_order_id,
                "itemId": patch.item_id,
                "status": patch.status,
            },
        )
    if isinstance(patch, ServerNotice):
        return (patch.message, patch.level, dict(patch.data))
    if isinstance(patch, (TaskAssignmentPatch, FactoryTaskAssignmentPatch)):
        return (
            f"New tasks for order {patch.order_number}",
            "info",
            {"itemIds": [item.item_id for item in patch.items]},
        )
    msg = f"Unsupported patch type: {type(patch).__name__}"
    raise TypeError(msg)


def _label(status: str) -> str:
    return status.replace("_", " ")


def _status_level(status: str) -> str:
    if status in _SUCCESS_STATUSES:
        return "success"
    if status in _WARNING_STATUSES:
        return "warning"
    return "info"


def _quantity(value: float) -> str:
    return f"{value:g}"
