"""Domain model, wire envelope, and patch variants."""

from ordersync.core.envelope import (
    EVENT_NAMES,
    EventEnvelope,
    build_frame,
    parse_frame,
    synthesize_key,
)
from ordersync.core.models import (
    ORDER_TRANSITIONS,
    FactoryOrder,
    FactoryTask,
    Order,
    OrderItem,
    ReturnRecord,
    Session,
    StatusChange,
    Task,
    can_advance_item,
    can_transition_order,
    can_transition_return,
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

__all__ = [
    "EVENT_NAMES",
    "ORDER_TRANSITIONS",
    "DomainPatch",
    "EventEnvelope",
    "FactoryItemStatusPatch",
    "FactoryOrder",
    "FactoryOrderStatusPatch",
    "FactoryOrderUpsert",
    "FactoryTask",
    "FactoryTaskAssignmentPatch",
    "ItemStatusPatch",
    "MissingAssignmentPatch",
    "Order",
    "OrderItem",
    "OrderStatusPatch",
    "OrderUpsert",
    "ReturnPatch",
    "ReturnRecord",
    "ServerNotice",
    "Session",
    "StatusChange",
    "Task",
    "TaskAssignmentPatch",
    "build_frame",
    "can_advance_item",
    "can_transition_order",
    "can_transition_return",
    "parse_frame",
    "synthesize_key",
]
