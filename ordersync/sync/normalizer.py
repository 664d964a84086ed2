"""Map raw, partially-optional push payloads into canonical patches.

Every handler reads the payload through alias lists (the server has shipped
several payload shapes over time) and fills descriptive fields with
deterministic defaults so the store always sees fully-populated entities.
Handlers raise `ValidationError` internally; `normalize` converts that into a
`NormalizeResult` so nothing escapes into the pipeline.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

import pandas as pd

from ordersync.core.models import (
    UNKNOWN_PRODUCT,
    UNKNOWN_REF,
    UNKNOWN_UNIT,
    FactoryOrder,
    Order,
    OrderItem,
    ReturnRecord,
    StatusChange,
)
from ordersync.core.patches import (
    DomainPatch,
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
from ordersync.errors import ValidationError

_ORDER_ID = ("orderId", "order_id", "_id", "id")
_FACTORY_ORDER_ID = ("factoryOrderId", "factory_order_id", "orderId", "_id", "id")
_ORDER_NUMBER = ("orderNumber", "order_number", "order.orderNumber")
_BRANCH_NAME = ("branchName", "branch.name", "branch_name")
_BRANCH_ID = ("branchId", "branch._id", "branch.id", "branch_id")
_ITEM_ID = ("itemId", "_id", "id", "item_id")
_ASSIGNEE_ID = ("assigneeId", "assignedTo._id", "assignedTo.id", "chefId", "chef._id")
_STATUS = ("status", "state")
_CHANGED_AT = ("changedAt", "updatedAt", "timestamp", "createdAt")

_ORDER_STATUS_ALIASES: dict[str, str] = {
    "pending": "pending",
    "new": "pending",
    "approved": "approved",
    "confirmed": "approved",
    "in_production": "in_production",
    "inproduction": "in_production",
    "in_progress": "in_production",
    "completed": "completed",
    "complete": "completed",
    "done": "completed",
    "in_transit": "in_transit",
    "intransit": "in_transit",
    "shipped": "in_transit",
    "delivered": "delivered",
    "cancelled": "cancelled",
    "canceled": "cancelled",
}
_ITEM_STATUS_ALIASES: dict[str, str] = {
    "pending": "pending",
    "assigned": "assigned",
    "in_progress": "in_progress",
    "inprogress": "in_progress",
    "started": "in_progress",
    "completed": "completed",
    "complete": "completed",
    "done": "completed",
}
_RETURN_STATUS_ALIASES: dict[str, str] = {
    "pending": "pending_approval",
    "pending_approval": "pending_approval",
    "approved": "approved",
    "rejected": "rejected",
}

_IMPLIED_ORDER_STATUS: dict[str, str] = {
    "orderConfirmed": "approved",
    "orderApproved": "approved",
    "orderRejected": "cancelled",
    "orderInTransit": "in_transit",
    "orderCompleted": "completed",
    "orderShipped": "in_transit",
    "orderDelivered": "delivered",
}
_IMPLIED_ITEM_STATUS: dict[str, str] = {"taskCompleted": "completed"}


@dataclass(slots=True, frozen=True)
class NormalizeResult:
    """Either a canonical patch or the validation error explaining the drop."""

    patch: DomainPatch | None = None
    error: ValidationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.patch is not None


def normalize(event_name: str, payload: Mapping[str, Any]) -> NormalizeResult:
    """Convert one raw payload into a patch without mutating it."""
    handler = _HANDLERS.get(str(event_name))
    if handler is None:
        return NormalizeResult(
            error=ValidationError(event_name, f"Unsupported event name: {event_name!r}")
        )
    if not isinstance(payload, Mapping):
        return NormalizeResult(error=ValidationError(event_name, "Payload must be an object."))
    try:
        return NormalizeResult(patch=handler(str(event_name), payload))
    except ValidationError as error:
        if error.event_name != event_name:
            error = ValidationError(event_name, error.message, error.missing_fields)
        return NormalizeResult(error=error)
    except (TypeError, ValueError) as error:
        return NormalizeResult(error=ValidationError(event_name, f"Malformed payload: {error}"))


def order_from_wire(payload: Mapping[str, Any]) -> Order:
    """Parse an authoritative order snapshot (REST) or an `orderCreated` payload."""
    order_id = _require_text(payload, _ORDER_ID, "orderCreated", "orderId")
    order_number = _text(payload, _ORDER_NUMBER) or order_id
    items = _items_from_wire(payload.get("items"), order_id=order_id, default_status="pending")
    status = _order_status(_first_present(payload, _STATUS) or "pending", "orderCreated")
    history = _history_from_wire(payload.get("statusHistory"), _order_status)
    created_at = _normalize_timestamp(_first_present(payload, ("createdAt", "created_at")))
    return Order(
        order_id=order_id,
        order_number=order_number,
        branch_id=_text(payload, _BRANCH_ID) or UNKNOWN_REF,
        branch_name=_text(payload, _BRANCH_NAME),
        items=items,
        status=status,
        status_history=history,
        return_ids=frozenset(_return_ids(payload.get("returns"))),
        total_amount=_as_float(_first_present(payload, ("totalAmount", "total")), 0.0),
        priority=_text(payload, ("priority",)) or "medium",
        notes=_text(payload, ("notes",)),
        created_at=created_at,
    )


def returns_from_wire(payload: Mapping[str, Any]) -> tuple[ReturnRecord, ...]:
    """Parse embedded return objects of an order snapshot; bare ids are skipped."""
    order_id = _require_text(payload, _ORDER_ID, "orderSnapshot", "orderId")
    raw_returns = payload.get("returns")
    if not isinstance(raw_returns, list):
        return ()
    records: list[ReturnRecord] = []
    for raw in raw_returns:
        if not isinstance(raw, Mapping):
            continue
        return_id = _text(raw, ("returnId", "_id", "id"))
        if not return_id:
            continue
        records.append(
            ReturnRecord(
                return_id=return_id,
                order_id=order_id,
                branch_id=_text(raw, _BRANCH_ID) or _text(payload, _BRANCH_ID) or UNKNOWN_REF,
                items=_items_from_wire(raw.get("items"), order_id=return_id),
                status=_return_status(_first_present(raw, _STATUS) or "pending", "orderSnapshot"),
                reason=_text(raw, ("reason", "returnReason")),
            )
        )
    return tuple(records)


def factory_order_from_wire(payload: Mapping[str, Any]) -> FactoryOrder:
    """Parse an authoritative factory order snapshot or `factoryOrderCreated` payload."""
    order_id = _require_text(payload, _FACTORY_ORDER_ID, "factoryOrderCreated", "factoryOrderId")
    items = _items_from_wire(payload.get("items"), order_id=order_id, default_status="pending")
    status = _order_status(_first_present(payload, _STATUS) or "pending", "factoryOrderCreated")
    return FactoryOrder(
        factory_order_id=order_id,
        order_number=_text(payload, _ORDER_NUMBER) or order_id,
        items=items,
        status=status,
        status_history=_history_from_wire(payload.get("statusHistory"), _order_status),
        priority=_text(payload, ("priority",)) or "medium",
        notes=_text(payload, ("notes",)),
        created_at=_normalize_timestamp(_first_present(payload, ("createdAt", "created_at"))),
    )


def _normalize_order_created(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    _require(event_name, payload, {"orderId": _ORDER_ID, "orderNumber": _ORDER_NUMBER,
                                   "branchName": _BRANCH_NAME})
    _require_list(event_name, payload, "items")
    return OrderUpsert(order=order_from_wire(payload), event_name=event_name)


def _normalize_order_status(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    required = {"orderId": _ORDER_ID, "orderNumber": _ORDER_NUMBER, "branchName": _BRANCH_NAME}
    implied = _IMPLIED_ORDER_STATUS.get(event_name)
    if implied is None:
        required["status"] = _STATUS
    _require(event_name, payload, required)
    status = implied or _order_status(_first_present(payload, _STATUS), event_name)
    return OrderStatusPatch(
        order_id=_text(payload, _ORDER_ID),
        order_number=_text(payload, _ORDER_NUMBER),
        status=status,
        change=_status_change(payload, status),
        branch_id=_text(payload, _BRANCH_ID) or None,
        branch_name=_text(payload, _BRANCH_NAME),
        event_name=event_name,
    )


def _normalize_task_assigned(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    _require(event_name, payload, {"orderId": _ORDER_ID, "orderNumber": _ORDER_NUMBER,
                                   "branchName": _BRANCH_NAME})
    order_id = _text(payload, _ORDER_ID)
    items = _assigned_items(event_name, payload, order_id)
    return TaskAssignmentPatch(
        order_id=order_id,
        order_number=_text(payload, _ORDER_NUMBER),
        items=items,
        branch_id=_text(payload, _BRANCH_ID) or None,
        branch_name=_text(payload, _BRANCH_NAME),
        event_name=event_name,
    )


def _normalize_item_status(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    _require(
        event_name,
        payload,
        {
            "orderId": _ORDER_ID[:2],
            "itemId": ("itemId", "item_id"),
            "status": _STATUS,
            "orderNumber": _ORDER_NUMBER,
            "branchName": _BRANCH_NAME,
        },
    )
    return ItemStatusPatch(
        order_id=_text(payload, _ORDER_ID[:2]),
        item_id=_text(payload, ("itemId", "item_id")),
        status=_item_status(_first_present(payload, _STATUS), event_name),
        order_number=_text(payload, _ORDER_NUMBER),
        branch_name=_text(payload, _BRANCH_NAME),
        chef_id=_text(payload, ("chefId", "assignedTo._id")) or None,
        event_name=event_name,
    )


def _normalize_task_status(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    required = {
        "orderId": _ORDER_ID[:2],
        "taskId": ("taskId", "task_id", "itemId"),
        "orderNumber": _ORDER_NUMBER,
    }
    implied = _IMPLIED_ITEM_STATUS.get(event_name)
    if implied is None:
        required["status"] = _STATUS
    _require(event_name, payload, required)
    return ItemStatusPatch(
        order_id=_text(payload, _ORDER_ID[:2]),
        item_id=_text(payload, ("taskId", "task_id", "itemId")),
        status=implied or _item_status(_first_present(payload, _STATUS), event_name),
        order_number=_text(payload, _ORDER_NUMBER),
        branch_name=_text(payload, _BRANCH_NAME),
        chef_id=_text(payload, ("chefId", "assignedTo._id")) or None,
        event_name=event_name,
    )


def _normalize_return(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    created = event_name == "returnCreated"
    required = {
        "orderId": _ORDER_ID[:2],
        "returnId": ("returnId", "return_id"),
        "orderNumber": _ORDER_NUMBER,
    }
    if not created:
        required["status"] = _STATUS
    _require(event_name, payload, required)
    raw_status = _first_present(payload, _STATUS) or "pending_approval"
    order_id = _text(payload, _ORDER_ID[:2])
    return ReturnPatch(
        order_id=order_id,
        return_id=_text(payload, ("returnId", "return_id")),
        status=_return_status(raw_status, event_name),
        order_number=_text(payload, _ORDER_NUMBER),
        branch_id=_text(payload, _BRANCH_ID) or None,
        items=_items_from_wire(payload.get("items"), order_id=order_id) if created else (),
        reason=_text(payload, ("reason", "returnReason")),
        created=created,
        event_name=event_name,
    )


def _normalize_missing_assignments(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    _require(
        event_name,
        payload,
        {
            "orderId": _ORDER_ID[:2],
            "itemId": ("itemId", "item_id"),
            "orderNumber": _ORDER_NUMBER,
            "productName": ("productName", "product.name"),
        },
    )
    return MissingAssignmentPatch(
        order_id=_text(payload, _ORDER_ID[:2]),
        item_id=_text(payload, ("itemId", "item_id")),
        order_number=_text(payload, _ORDER_NUMBER),
        product_name=_text(payload, ("productName", "product.name")),
        event_name=event_name,
    )


def _normalize_factory_order_created(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    _require(event_name, payload, {"factoryOrderId": _FACTORY_ORDER_ID,
                                   "orderNumber": _ORDER_NUMBER})
    _require_list(event_name, payload, "items")
    return FactoryOrderUpsert(order=factory_order_from_wire(payload), event_name=event_name)


def _normalize_factory_task_assigned(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    _require(event_name, payload, {"factoryOrderId": _FACTORY_ORDER_ID,
                                   "orderNumber": _ORDER_NUMBER})
    order_id = _text(payload, _FACTORY_ORDER_ID)
    return FactoryTaskAssignmentPatch(
        factory_order_id=order_id,
        order_number=_text(payload, _ORDER_NUMBER),
        items=_assigned_items(event_name, payload, order_id),
        event_name=event_name,
    )


def _normalize_factory_item_status(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    _require(
        event_name,
        payload,
        {
            "factoryOrderId": ("factoryOrderId", "factory_order_id", "orderId"),
            "itemId": ("itemId", "item_id", "taskId"),
            "status": _STATUS,
        },
    )
    return FactoryItemStatusPatch(
        factory_order_id=_text(payload, ("factoryOrderId", "factory_order_id", "orderId")),
        item_id=_text(payload, ("itemId", "item_id", "taskId")),
        status=_item_status(_first_present(payload, _STATUS), event_name),
        order_number=_text(payload, _ORDER_NUMBER),
        chef_id=_text(payload, ("chefId", "assignedTo._id")) or None,
        event_name=event_name,
    )


def _normalize_factory_order_status(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    required = {"factoryOrderId": ("factoryOrderId", "factory_order_id", "orderId")}
    if event_name == "factoryOrderCompleted":
        required["orderNumber"] = _ORDER_NUMBER
        status = "completed"
    else:
        required["status"] = _STATUS
        status = ""
    _require(event_name, payload, required)
    if not status:
        status = _order_status(_first_present(payload, _STATUS), event_name)
    return FactoryOrderStatusPatch(
        factory_order_id=_text(payload, ("factoryOrderId", "factory_order_id", "orderId")),
        order_number=_text(payload, _ORDER_NUMBER),
        status=status,
        change=_status_change(payload, status),
        event_name=event_name,
    )


def _normalize_server_notice(event_name: str, payload: Mapping[str, Any]) -> DomainPatch:
    _require(event_name, payload, {"message": ("message",), "type": ("type", "level")})
    raw_data = payload.get("data")
    data = dict(raw_data) if isinstance(raw_data, Mapping) else {}
    level = _text(payload, ("type", "level")).lower()
    if level not in {"success", "info", "warning", "error"}:
        level = "info"
    return ServerNotice(
        notification_id=_text(payload, ("_id", "id")) or _text(data, ("eventId",)),
        level=level,
        message=_text(payload, ("message",))[:100],
        data=data,
        event_name=event_name,
    )


_Handler = Callable[[str, Mapping[str, Any]], DomainPatch]
_HANDLERS: dict[str, _Handler] = {
    "orderCreated": _normalize_order_created,
    "orderConfirmed": _normalize_order_status,
    "orderApproved": _normalize_order_status,
    "orderRejected": _normalize_order_status,
    "orderStatusUpdated": _normalize_order_status,
    "orderCompleted": _normalize_order_status,
    "orderShipped": _normalize_order_status,
    "orderInTransit": _normalize_order_status,
    "orderDelivered": _normalize_order_status,
    "taskAssigned": _normalize_task_assigned,
    "itemStatusUpdated": _normalize_item_status,
    "taskStatusUpdated": _normalize_task_status,
    "taskCompleted": _normalize_task_status,
    "returnCreated": _normalize_return,
    "returnStatusUpdated": _normalize_return,
    "missingAssignments": _normalize_missing_assignments,
    "factoryOrderCreated": _normalize_factory_order_created,
    "factoryTaskAssigned": _normalize_factory_task_assigned,
    "factoryItemStatusUpdated": _normalize_factory_item_status,
    "factoryOrderStatusUpdated": _normalize_factory_order_status,
    "factoryOrderCompleted": _normalize_factory_order_status,
    "newNotification": _normalize_server_notice,
}


def _assigned_items(
    event_name: str,
    payload: Mapping[str, Any],
    order_id: str,
) -> tuple[OrderItem, ...]:
    _require_list(event_name, payload, "items")
    assigned = tuple(
        replace(item, status="assigned") if item.status == "pending" else item
        for item in _items_from_wire(payload["items"], order_id=order_id, default_status="assigned")
        if item.assignee_id
    )
    if not assigned:
        raise ValidationError(
            event_name,
            "No item in the assignment carries an assignee id.",
            missing_fields=("items[].assigneeId",),
        )
    return assigned


def _items_from_wire(
    raw_items: Any,
    *,
    order_id: str,
    default_status: str = "pending",
) -> tuple[OrderItem, ...]:
    if not isinstance(raw_items, list):
        return ()
    items: list[OrderItem] = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, Mapping):
            continue
        quantity = _as_float(_first_present(raw, ("quantity", "qty")), 1.0)
        raw_status = _first_present(raw, _STATUS)
        items.append(
            OrderItem(
                item_id=_text(raw, _ITEM_ID) or f"{order_id}:{index}",
                product_id=_text(raw, ("productId", "product._id", "product.id")) or UNKNOWN_REF,
                product_name=_text(raw, ("productName", "product.name")) or UNKNOWN_PRODUCT,
                quantity=quantity if quantity > 0 else 1.0,
                unit=_text(raw, ("unit", "product.unit")) or UNKNOWN_UNIT,
                unit_price=_as_float(_first_present(raw, ("price", "unitPrice")), 0.0),
                department_id=(
                    _text(raw, ("departmentId", "department._id", "product.department._id"))
                    or UNKNOWN_REF
                ),
                status=(
                    _item_status(raw_status, "items")
                    if raw_status is not None
                    else default_status
                ),
                assignee_id=_text(raw, _ASSIGNEE_ID) or None,
                assignee_name=_text(raw, ("assignedTo.name", "assigneeName", "chefName")),
                returned_quantity=_as_float(_first_present(raw, ("returnedQuantity",)), 0.0),
            )
        )
    return tuple(items)


def _history_from_wire(
    raw_history: Any,
    status_parser: Callable[[Any, str], str],
) -> tuple[StatusChange, ...]:
    if not isinstance(raw_history, list):
        return ()
    entries: list[StatusChange] = []
    seen: set[tuple[pd.Timestamp, str]] = set()
    for raw in raw_history:
        if not isinstance(raw, Mapping) or _first_present(raw, _STATUS) is None:
            continue
        change = StatusChange(
            status=status_parser(_first_present(raw, _STATUS), "statusHistory"),
            changed_at=_normalize_timestamp(_first_present(raw, _CHANGED_AT)),
            changed_by=_text(raw, ("changedBy.name", "changedBy", "updatedBy")),
            note=_text(raw, ("notes", "note")),
        )
        if change.identity in seen:
            continue
        seen.add(change.identity)
        entries.append(change)
    return tuple(entries)


def _status_change(payload: Mapping[str, Any], status: str) -> StatusChange:
    return StatusChange(
        status=status,
        changed_at=_normalize_timestamp(_first_present(payload, _CHANGED_AT)),
        changed_by=_text(payload, ("changedBy.name", "changedBy", "updatedBy.name")),
        note=_text(payload, ("notes", "note")),
    )


def _return_ids(raw_returns: Any) -> list[str]:
    if not isinstance(raw_returns, list):
        return []
    identifiers: list[str] = []
    for raw in raw_returns:
        if isinstance(raw, Mapping):
            value = _text(raw, ("returnId", "_id", "id"))
        else:
            value = str(raw).strip() if raw is not None else ""
        if value:
            identifiers.append(value)
    return identifiers


def _order_status(value: Any, event_name: str) -> str:
    return _aliased(value, _ORDER_STATUS_ALIASES, event_name, "order status")


def _item_status(value: Any, event_name: str) -> str:
    return _aliased(value, _ITEM_STATUS_ALIASES, event_name, "item status")


def _return_status(value: Any, event_name: str) -> str:
    return _aliased(value, _RETURN_STATUS_ALIASES, event_name, "return status")


def _aliased(value: Any, aliases: Mapping[str, str], event_name: str, label: str) -> str:
    normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if normalized not in aliases:
        raise ValidationError(event_name, f"Unsupported {label}: {value!r}")
    return aliases[normalized]


def _require(
    event_name: str,
    payload: Mapping[str, Any],
    required: Mapping[str, Sequence[str]],
) -> None:
    missing = [name for name, aliases in required.items() if not _text(payload, aliases)]
    if missing:
        msg = f"{event_name} payload missing required field(s): {', '.join(missing)}"
        raise ValidationError(event_name, msg, missing_fields=missing)


def _require_list(event_name: str, payload: Mapping[str, Any], key: str) -> None:
    if not isinstance(payload.get(key), list):
        msg = f"{event_name} payload field {key!r} must be a list."
        raise ValidationError(event_name, msg, missing_fields=(key,))


def _require_text(
    payload: Mapping[str, Any],
    aliases: Sequence[str],
    event_name: str,
    label: str,
) -> str:
    value = _text(payload, aliases)
    if not value:
        msg = f"{event_name} payload missing required field(s): {label}"
        raise ValidationError(event_name, msg, missing_fields=(label,))
    return value


def _lookup(payload: Mapping[str, Any], path: str) -> Any:
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _first_present(payload: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = _lookup(payload, key)
        if value is not None and value != "":
            return value
    return None


def _text(payload: Mapping[str, Any], keys: Sequence[str]) -> str:
    value = _first_present(payload, keys)
    if value is None or isinstance(value, (Mapping, list)):
        return ""
    return str(value).strip()


def _as_float(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if parsed != parsed:
        return default
    return parsed


def _normalize_timestamp(value: Any) -> pd.Timestamp:
    if value is None:
        return pd.Timestamp.now(tz="UTC")
    try:
        parsed = pd.Timestamp(value)
    except (TypeError, ValueError):
        return pd.Timestamp.now(tz="UTC")
    if parsed is pd.NaT:
        return pd.Timestamp.now(tz="UTC")
    if parsed.tzinfo is None:
        return parsed.tz_localize("UTC")
    return parsed.tz_convert("UTC")
