"""Tagged-variant patches produced by the normalizer and consumed by the state store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

from ordersync.core.models import FactoryOrder, Order, OrderItem, StatusChange

EntityKind = Literal["order", "factory_order"]
EntityKey: TypeAlias = tuple[EntityKind, str]


@dataclass(slots=True, frozen=True)
class OrderUpsert:
    """A new order observed on the push channel."""

    order: Order
    event_name: str = "orderCreated"

    @property
    def entity_key(self) -> EntityKey:
        return ("order", self.order.order_id)


@dataclass(slots=True, frozen=True)
class OrderStatusPatch:
    """Aggregate order status change (confirmed, updated, completed, shipped, delivered)."""

    order_id: str
    order_number: str
    status: str
    change: StatusChange
    branch_id: str | None = None
    branch_name: str = ""
    event_name: str = "orderStatusUpdated"

    @property
    def entity_key(self) -> EntityKey:
        return ("order", self.order_id)


@dataclass(slots=True, frozen=True)
class TaskAssignmentPatch:
    """Chef assignments for one or more items of an order."""

    order_id: str
    order_number: str
    items: tuple[OrderItem, ...]
    branch_id: str | None = None
    branch_name: str = ""
    event_name: str = "taskAssigned"

    @property
    def entity_key(self) -> EntityKey:
        return ("order", self.order_id)


@dataclass(slots=True, frozen=True)
class ItemStatusPatch:
    """Status change of one order item (and the task mirroring it)."""

    order_id: str
    item_id: str
    status: str
    order_number: str = ""
    branch_name: str = ""
    chef_id: str | None = None
    event_name: str = "itemStatusUpdated"

    @property
    def entity_key(self) -> EntityKey:
        return ("order", self.order_id)


@dataclass(slots=True, frozen=True)
class ReturnPatch:
    """Return created or moved through approval."""

    order_id: str
    return_id: str
    status: str
    order_number: str = ""
    branch_id: str | None = None
    items: tuple[OrderItem, ...] = ()
    reason: str = ""
    created: bool = False
    event_name: str = "returnStatusUpdated"

    @property
    def entity_key(self) -> EntityKey:
        return ("order", self.order_id)


@dataclass(slots=True, frozen=True)
class MissingAssignmentPatch:
    """Server flagged an order item that still has no chef."""

    order_id: str
    item_id: str
    order_number: str
    product_name: str
    event_name: str = "missingAssignments"

    @property
    def entity_key(self) -> EntityKey:
        return ("order", self.order_id)


@dataclass(slots=True, frozen=True)
class FactoryOrderUpsert:
    """A new internal production order."""

    order: FactoryOrder
    event_name: str = "factoryOrderCreated"

    @property
    def entity_key(self) -> EntityKey:
        return ("factory_order", self.order.factory_order_id)


@dataclass(slots=True, frozen=True)
class FactoryTaskAssignmentPatch:
    factory_order_id: str
    order_number: str
    items: tuple[OrderItem, ...]
    event_name: str = "factoryTaskAssigned"

    @property
    def entity_key(self) -> EntityKey:
        return ("factory_order", self.factory_order_id)


@dataclass(slots=True, frozen=True)
class FactoryItemStatusPatch:
    factory_order_id: str
    item_id: str
    status: str
    order_number: str = ""
    chef_id: str | None = None
    event_name: str = "factoryItemStatusUpdated"

    @property
    def entity_key(self) -> EntityKey:
        return ("factory_order", self.factory_order_id)


@dataclass(slots=True, frozen=True)
class FactoryOrderStatusPatch:
    factory_order_id: str
    order_number: str
    status: str
    change: StatusChange
    event_name: str = "factoryOrderStatusUpdated"

    @property
    def entity_key(self) -> EntityKey:
        return ("factory_order", self.factory_order_id)


@dataclass(slots=True, frozen=True)
class ServerNotice:
    """Server-pushed notification; carries no state change."""

    notification_id: str
    level: str
    message: str
    data: dict[str, Any]
    event_name: str = "newNotification"

    @property
    def entity_key(self) -> EntityKey | None:
        return None


DomainPatch: TypeAlias = (
    OrderUpsert
    | OrderStatusPatch
    | TaskAssignmentPatch
    | ItemStatusPatch
    | ReturnPatch
    | MissingAssignmentPatch
    | FactoryOrderUpsert
    | FactoryTaskAssignmentPatch
    | FactoryItemStatusPatch
    | FactoryOrderStatusPatch
    | ServerNotice
)
