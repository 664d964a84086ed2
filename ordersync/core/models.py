"""Canonical domain entities, session identity, and status transition graphs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

import pandas as pd

Role = Literal["admin", "branch", "chef", "production"]
OrderStatus = Literal[
    "pending",
    "approved",
    "in_production",
    "completed",
    "in_transit",
    "delivered",
    "cancelled",
]
ItemStatus = Literal["pending", "assigned", "in_progress", "completed"]
ReturnStatus = Literal["pending_approval", "approved", "rejected"]

ROLES: frozenset[str] = frozenset({"admin", "branch", "chef", "production"})
ORDER_STATUSES: tuple[str, ...] = (
    "pending",
    "approved",
    "in_production",
    "completed",
    "in_transit",
    "delivered",
    "cancelled",
)
ITEM_STATUSES: tuple[str, ...] = ("pending", "assigned", "in_progress", "completed")
RETURN_STATUSES: tuple[str, ...] = ("pending_approval", "approved", "rejected")

ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"approved", "cancelled"}),
    "approved": frozenset({"in_production", "cancelled"}),
    "in_production": frozenset({"completed", "cancelled"}),
    "completed": frozenset({"in_transit"}),
    "in_transit": frozenset({"delivered"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}
RETURN_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending_approval": frozenset({"approved", "rejected"}),
    "approved": frozenset(),
    "rejected": frozenset(),
}
_ITEM_RANK = {status: rank for rank, status in enumerate(ITEM_STATUSES)}

UNKNOWN_UNIT = "unknown unit"
UNKNOWN_PRODUCT = "unknown product"
UNKNOWN_REF = "unknown"


def _utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


def can_transition_order(current: str, proposed: str) -> bool:
    """Whether `proposed` is directly reachable from `current` in the order graph."""
    return proposed in ORDER_TRANSITIONS.get(current, frozenset())


def can_advance_item(current: str, proposed: str) -> bool:
    """Whether an item/task status strictly advances (skipping forward is allowed)."""
    if current not in _ITEM_RANK or proposed not in _ITEM_RANK:
        return False
    return _ITEM_RANK[proposed] > _ITEM_RANK[current]


def can_transition_return(current: str, proposed: str) -> bool:
    """Whether a return approval status may move from `current` to `proposed`."""
    return proposed in RETURN_TRANSITIONS.get(current, frozenset())


def is_terminal_order_status(status: str) -> bool:
    return not ORDER_TRANSITIONS.get(status)


@dataclass(slots=True, frozen=True)
class Session:
    """Authenticated viewer identity and organizational scope."""

    user_id: str
    role: Role
    branch_id: str | None = None
    chef_id: str | None = None
    department_id: str | None = None
    name: str = ""

    def __post_init__(self) -> None:
        if not str(self.user_id).strip():
            msg = "user_id must be non-empty."
            raise ValueError(msg)
        if self.role not in ROLES:
            msg = f"Unsupported role: {self.role!r}"
            raise ValueError(msg)
        if self.role == "branch" and not self.branch_id:
            msg = "branch sessions require branch_id."
            raise ValueError(msg)
        if self.role == "chef" and self.chef_id is None:
            object.__setattr__(self, "chef_id", str(self.user_id))

    def join_room_payload(self) -> dict[str, str]:
        """Subscription scope sent to the server on every (re)connect."""
        payload = {"role": str(self.role), "userId": str(self.user_id)}
        if self.branch_id:
            payload["branchId"] = str(self.branch_id)
        if self.role == "chef" and self.chef_id:
            payload["chefId"] = str(self.chef_id)
        if self.role == "production" and self.department_id:
            payload["departmentId"] = str(self.department_id)
        return payload


@dataclass(slots=True, frozen=True)
class StatusChange:
    """One append-only status history entry."""

    status: str
    changed_at: pd.Timestamp
    changed_by: str = ""
    note: str = ""

    @property
    def identity(self) -> tuple[pd.Timestamp, str]:
        return (self.changed_at, self.status)


@dataclass(slots=True, frozen=True)
class OrderItem:
    """Line item of an order; doubles as the production task descriptor."""

    item_id: str
    product_id: str = UNKNOWN_REF
    product_name: str = UNKNOWN_PRODUCT
    quantity: float = 1.0
    unit: str = UNKNOWN_UNIT
    unit_price: float = 0.0
    department_id: str = UNKNOWN_REF
    status: str = "pending"
    assignee_id: str | None = None
    assignee_name: str = ""
    returned_quantity: float = 0.0


@dataclass(slots=True, frozen=True)
class Order:
    """Branch order projection."""

    order_id: str
    order_number: str
    branch_id: str = UNKNOWN_REF
    branch_name: str = ""
    items: tuple[OrderItem, ...] = ()
    status: str = "pending"
    status_history: tuple[StatusChange, ...] = ()
    return_ids: frozenset[str] = frozenset()
    total_amount: float = 0.0
    priority: str = "medium"
    notes: str = ""
    created_at: pd.Timestamp = field(default_factory=_utc_now)
    missing_assignment_item_ids: frozenset[str] = frozenset()

    def item(self, item_id: str) -> OrderItem | None:
        for candidate in self.items:
            if candidate.item_id == item_id:
                return candidate
        return None

    @property
    def all_items_completed(self) -> bool:
        return bool(self.items) and all(item.status == "completed" for item in self.items)


@dataclass(slots=True, frozen=True)
class Task:
    """Production assignment of one order item to a chef."""

    task_id: str
    order_id: str
    order_number: str = ""
    product_id: str = UNKNOWN_REF
    product_name: str = UNKNOWN_PRODUCT
    quantity: float = 1.0
    unit: str = UNKNOWN_UNIT
    status: str = "assigned"
    chef_id: str | None = None
    updated_at: pd.Timestamp = field(default_factory=_utc_now)


@dataclass(slots=True, frozen=True)
class ReturnRecord:
    """Branch return request against an order."""

    return_id: str
    order_id: str
    branch_id: str = UNKNOWN_REF
    items: tuple[OrderItem, ...] = ()
    status: str = "pending_approval"
    reason: str = ""


@dataclass(slots=True, frozen=True)
class FactoryOrder:
    """Internal production order (no branch)."""

    factory_order_id: str
    order_number: str
    items: tuple[OrderItem, ...] = ()
    status: str = "pending"
    status_history: tuple[StatusChange, ...] = ()
    priority: str = "medium"
    notes: str = ""
    created_at: pd.Timestamp = field(default_factory=_utc_now)

    def item(self, item_id: str) -> OrderItem | None:
        for candidate in self.items:
            if candidate.item_id == item_id:
                return candidate
        return None

    @property
    def all_items_completed(self) -> bool:
        return bool(self.items) and all(item.status == "completed" for item in self.items)


@dataclass(slots=True, frozen=True)
class FactoryTask:
    """Chef assignment inside a factory order."""

    task_id: str
    factory_order_id: str
    order_number: str = ""
    product_id: str = UNKNOWN_REF
    product_name: str = UNKNOWN_PRODUCT
    quantity: float = 1.0
    unit: str = UNKNOWN_UNIT
    status: str = "assigned"
    chef_id: str | None = None
    updated_at: pd.Timestamp = field(default_factory=_utc_now)


def task_from_item(item: OrderItem, order_id: str, order_number: str) -> Task:
    """Derive the task view of an assigned order item."""
    return Task(
        task_id=item.item_id,
        order_id=order_id,
        order_number=order_number,
        product_id=item.product_id,
        product_name=item.product_name,
        quantity=item.quantity,
        unit=item.unit,
        status=item.status,
        chef_id=item.assignee_id,
    )


def factory_task_from_item(item: OrderItem, factory_order_id: str, order_number: str) -> FactoryTask:
    return FactoryTask(
        task_id=item.item_id,
        factory_order_id=factory_order_id,
        order_number=order_number,
        product_id=item.product_id,
        product_name=item.product_name,
        quantity=item.quantity,
        unit=item.unit,
        status=item.status,
        chef_id=item.assignee_id,
    )
