"""Role and organizational-scope visibility rules for inbound events."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from ordersync.core.envelope import EventEnvelope
from ordersync.core.models import OrderItem, Session

ChefScope = Literal["none", "field", "items", "items_if_present"]
DepartmentScope = Literal["none", "field", "items"]

_ALL_ROLES = frozenset({"admin", "branch", "chef", "production"})
_BRANCH_ID_KEYS = ("branchId", "branch._id", "branch.id", "branch_id", "data.branchId")
_CHEF_ID_KEYS = ("chefId", "assigneeId", "assignedTo._id", "data.chefId")
_DEPARTMENT_ID_KEYS = ("departmentId", "department._id", "data.departmentId")
_ITEM_ASSIGNEE_KEYS = ("assigneeId", "assignedTo._id", "assignedTo.id", "chefId")
_ITEM_DEPARTMENT_KEYS = ("departmentId", "department._id", "product.department._id")


@dataclass(slots=True, frozen=True)
class VisibilityRule:
    """Which roles may see an event and which scope must additionally match."""

    roles: frozenset[str]
    branch_scoped: bool = False
    chef_scope: ChefScope = "none"
    department_scope: DepartmentScope = "none"


_ORDER_LIFECYCLE = VisibilityRule(
    roles=frozenset({"admin", "branch", "production"}),
    branch_scoped=True,
)
_ITEM_PROGRESS = VisibilityRule(
    roles=frozenset({"admin", "production", "chef"}),
    chef_scope="field",
)
_FACTORY_LIFECYCLE = VisibilityRule(
    roles=frozenset({"admin", "production", "chef"}),
    chef_scope="items_if_present",
    department_scope="items",
)

EVENT_VISIBILITY: dict[str, VisibilityRule] = {
    "orderCreated": VisibilityRule(
        roles=frozenset({"admin", "branch", "production"}),
        branch_scoped=True,
        department_scope="items",
    ),
    "orderConfirmed": VisibilityRule(roles=frozenset({"admin", "branch"}), branch_scoped=True),
    "orderApproved": _ORDER_LIFECYCLE,
    "orderRejected": _ORDER_LIFECYCLE,
    "orderStatusUpdated": _ORDER_LIFECYCLE,
    "orderCompleted": _ORDER_LIFECYCLE,
    "orderShipped": _ORDER_LIFECYCLE,
    "orderInTransit": _ORDER_LIFECYCLE,
    "orderDelivered": _ORDER_LIFECYCLE,
    "returnCreated": _ORDER_LIFECYCLE,
    "returnStatusUpdated": _ORDER_LIFECYCLE,
    "taskAssigned": VisibilityRule(
        roles=frozenset({"admin", "production", "chef"}),
        chef_scope="items",
        department_scope="items",
    ),
    "itemStatusUpdated": _ITEM_PROGRESS,
    "taskStatusUpdated": _ITEM_PROGRESS,
    "taskCompleted": _ITEM_PROGRESS,
    "missingAssignments": VisibilityRule(
        roles=frozenset({"admin", "production"}),
        department_scope="field",
    ),
    "factoryOrderCreated": _FACTORY_LIFECYCLE,
    "factoryOrderStatusUpdated": _FACTORY_LIFECYCLE,
    "factoryOrderCompleted": _FACTORY_LIFECYCLE,
    "factoryTaskAssigned": VisibilityRule(
        roles=frozenset({"admin", "production", "chef"}),
        chef_scope="items",
        department_scope="items",
    ),
    "factoryItemStatusUpdated": _ITEM_PROGRESS,
}


def is_visible(envelope: EventEnvelope, session: Session) -> bool:
    """Decide whether `session` may observe `envelope`. Pure; never raises."""
    if envelope.name == "newNotification":
        return _notification_targets(envelope.payload, session)

    rule = EVENT_VISIBILITY.get(envelope.name)
    if rule is None or session.role not in rule.roles:
        return False

    payload = envelope.payload
    if session.role == "branch" and rule.branch_scoped:
        return _text(payload, _BRANCH_ID_KEYS) == str(session.branch_id)

    if session.role == "chef":
        return _chef_matches(rule.chef_scope, payload, str(session.chef_id or session.user_id))

    if session.role == "production" and session.department_id:
        return _department_matches(rule.department_scope, payload, str(session.department_id))

    return True


def visible_items(items: Iterable[OrderItem], session: Session) -> list[OrderItem]:
    """Assigned items this session may act on (chefs see their own only)."""
    if session.role != "chef":
        return list(items)
    chef_id = str(session.chef_id or session.user_id)
    return [item for item in items if item.assignee_id == chef_id]


def _chef_matches(scope: ChefScope, payload: Mapping[str, Any], chef_id: str) -> bool:
    if scope == "none":
        return True
    if scope == "field":
        return _text(payload, _CHEF_ID_KEYS) == chef_id
    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        return scope == "items_if_present"
    return any(
        isinstance(item, Mapping) and _text(item, _ITEM_ASSIGNEE_KEYS) == chef_id
        for item in raw_items
    )


def _department_matches(
    scope: DepartmentScope,
    payload: Mapping[str, Any],
    department_id: str,
) -> bool:
    if scope == "none":
        return True
    if scope == "field":
        declared = _text(payload, _DEPARTMENT_ID_KEYS)
        return not declared or declared == department_id
    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        return True
    return any(
        isinstance(item, Mapping) and _text(item, _ITEM_DEPARTMENT_KEYS) == department_id
        for item in raw_items
    )


def _notification_targets(payload: Mapping[str, Any], session: Session) -> bool:
    if session.role not in _ALL_ROLES:
        return False
    target_user = _text(payload, ("user", "userId", "user._id"))
    if target_user:
        return target_user == str(session.user_id)
    if session.role == "branch":
        declared = _text(payload, _BRANCH_ID_KEYS)
        return not declared or declared == str(session.branch_id)
    if session.role == "chef":
        declared = _text(payload, _CHEF_ID_KEYS)
        return not declared or declared == str(session.chef_id or session.user_id)
    if session.role == "production" and session.department_id:
        declared = _text(payload, _DEPARTMENT_ID_KEYS)
        return not declared or declared == str(session.department_id)
    return True


def _text(payload: Mapping[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        current: Any = payload
        for part in key.split("."):
            if not isinstance(current, Mapping) or part not in current:
                current = None
                break
            current = current[part]
        if current is not None and not isinstance(current, (Mapping, list)):
            text_value = str(current).strip()
            if text_value:
                return text_value
    return ""
