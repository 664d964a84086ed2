"""Push-channel wire contract: frame decoding, outbound encoding, idempotency keys."""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from ordersync.errors import FrameDecodeError

SYNTHETIC_KEY_PREFIX = "synthetic:"

ORDER_EVENT_NAMES: tuple[str, ...] = (
    "orderCreated",
    "orderConfirmed",
    "orderApproved",
    "orderRejected",
    "orderStatusUpdated",
    "taskAssigned",
    "itemStatusUpdated",
    "taskStatusUpdated",
    "taskCompleted",
    "orderCompleted",
    "orderShipped",
    "orderInTransit",
    "orderDelivered",
    "returnCreated",
    "returnStatusUpdated",
    "missingAssignments",
)
FACTORY_EVENT_NAMES: tuple[str, ...] = (
    "factoryOrderCreated",
    "factoryTaskAssigned",
    "factoryItemStatusUpdated",
    "factoryOrderStatusUpdated",
    "factoryOrderCompleted",
)
EVENT_NAMES: frozenset[str] = frozenset(
    ORDER_EVENT_NAMES + FACTORY_EVENT_NAMES + ("newNotification",)
)


def _utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


def synthesize_key() -> str:
    """Receiver-side fallback key; unique per delivery, so it never deduplicates."""
    return f"{SYNTHETIC_KEY_PREFIX}{uuid.uuid4()}"


@dataclass(slots=True, frozen=True)
class EventEnvelope:
    """One decoded push message."""

    name: str
    idempotency_key: str
    payload: Mapping[str, Any]
    key_synthetic: bool = False
    received_at: pd.Timestamp = field(default_factory=_utc_now)

    @classmethod
    def create(cls, name: str, payload: Mapping[str, Any]) -> EventEnvelope:
        """Build an envelope, taking the key from `eventId` or synthesizing one."""
        event_id = payload.get("eventId")
        if event_id is None and isinstance(payload.get("data"), Mapping):
            event_id = payload["data"].get("eventId")
        key = str(event_id).strip() if event_id is not None else ""
        if key:
            return cls(name=str(name), idempotency_key=key, payload=payload)
        return cls(
            name=str(name),
            idempotency_key=synthesize_key(),
            payload=payload,
            key_synthetic=True,
        )


def parse_frame(raw: str | bytes | Mapping[str, Any] | list[Any]) -> EventEnvelope:
    """Decode `{"name": ..., "payload": {...}}` or `[name, payload]` into an envelope."""
    decoded: Any = raw
    if isinstance(raw, bytes):
        try:
            decoded = raw.decode("utf-8")
        except UnicodeDecodeError as error:
            msg = "Frame is not valid UTF-8."
            raise FrameDecodeError(msg) from error
    if isinstance(decoded, str):
        stripped = decoded.strip()
        if not stripped:
            msg = "Frame is empty."
            raise FrameDecodeError(msg)
        try:
            decoded = json.loads(stripped)
        except json.JSONDecodeError as error:
            msg = f"Frame is not valid JSON: {stripped[:80]!r}"
            raise FrameDecodeError(msg) from error

    if isinstance(decoded, list):
        if len(decoded) != 2:
            msg = "List frames must be [name, payload]."
            raise FrameDecodeError(msg)
        name_value, payload_value = decoded
    elif isinstance(decoded, Mapping):
        name_value = decoded.get("name", decoded.get("event"))
        payload_value = decoded.get("payload", decoded.get("data"))
    else:
        msg = f"Unsupported frame type: {type(decoded).__name__}"
        raise FrameDecodeError(msg)

    name = str(name_value or "").strip()
    if not name:
        msg = "Frame is missing the event name."
        raise FrameDecodeError(msg)
    if payload_value is None:
        payload_value = {}
    if not isinstance(payload_value, Mapping):
        msg = f"Frame payload for {name!r} must be an object."
        raise FrameDecodeError(msg)
    return EventEnvelope.create(name=name, payload=dict(payload_value))


def build_frame(name: str, payload: Mapping[str, Any] | None = None) -> str:
    """Encode an outbound frame, attaching an `eventId` when the payload has none."""
    event_name = str(name).strip()
    if not event_name:
        msg = "Outbound event name must be non-empty."
        raise ValueError(msg)
    outbound = dict(payload or {})
    if not outbound.get("eventId"):
        outbound["eventId"] = str(uuid.uuid4())
    return json.dumps({"name": event_name, "payload": outbound}, ensure_ascii=False)
