"""User-facing notification sink: exactly-once delivery, inbox state and channels."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol, TextIO

import pandas as pd

from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import SyncMetrics

if TYPE_CHECKING:
    from ordersync.sync.dedup import IdempotencyDeduper

NotificationLevel = Literal["success", "info", "warning", "error"]
NotificationCategory = Literal["orders", "tasks", "returns", "factory"]

_LEVELS = frozenset({"success", "info", "warning", "error"})
_TASK_EVENTS = frozenset(
    {
        "taskAssigned",
        "itemStatusUpdated",
        "taskStatusUpdated",
        "taskCompleted",
        "missingAssignments",
    }
)
_RETURN_EVENTS = frozenset({"returnCreated", "returnStatusUpdated"})


@dataclass(slots=True, frozen=True)
class SoundProfile:
    """Sound asset and vibration pattern played with a notification."""

    sound: str
    vibrate: tuple[int, ...]


DEFAULT_SOUND = SoundProfile(sound="/sounds/notification.mp3", vibrate=(200, 100, 200))
SOUND_PROFILES: dict[str, SoundProfile] = {
    "taskAssigned": SoundProfile(sound="/sounds/task-assigned.mp3", vibrate=(400, 100, 400)),
    "factoryTaskAssigned": SoundProfile(
        sound="/sounds/task-assigned.mp3",
        vibrate=(400, 100, 400),
    ),
    "itemStatusUpdated": SoundProfile(sound="/sounds/task-updated.mp3", vibrate=(200, 100, 200)),
    "taskStatusUpdated": SoundProfile(sound="/sounds/task-updated.mp3", vibrate=(200, 100, 200)),
    "taskCompleted": SoundProfile(sound="/sounds/task-updated.mp3", vibrate=(200, 100, 200)),
    "factoryItemStatusUpdated": SoundProfile(
        sound="/sounds/task-updated.mp3",
        vibrate=(200, 100, 200),
    ),
}


def _utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


def category_for_event(event_name: str) -> NotificationCategory:
    """Inbox bucket an event's notification is counted under."""
    if event_name in _TASK_EVENTS:
        return "tasks"
    if event_name in _RETURN_EVENTS:
        return "returns"
    if event_name.startswith("factory"):
        return "factory"
    return "orders"


@dataclass(slots=True)
class Notification:
    """One delivered notification; `read` flips when the user acknowledges it."""

    notification_id: str
    message: str
    level: NotificationLevel = "info"
    event_name: str = ""
    category: NotificationCategory = "orders"
    data: dict[str, Any] = field(default_factory=dict)
    sound: SoundProfile = DEFAULT_SOUND
    created_at: pd.Timestamp = field(default_factory=_utc_now)
    read: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "message": self.message,
            "level": self.level,
            "event_name": self.event_name,
            "category": self.category,
            "data": _to_jsonable(self.data),
            "sound": self.sound.sound,
            "vibrate": list(self.sound.vibrate),
            "created_at": self.created_at.isoformat(),
            "read": self.read,
        }


class NotificationChannel(Protocol):
    """Protocol shared by notification delivery channels."""

    name: str

    def send(self, notification: Notification) -> None:
        """Deliver one notification."""


class ConsoleNotificationChannel:
    """Write notification lines to a console stream."""

    name = "console"

    def __init__(self, stream: TextIO | None = None, json_mode: bool = False) -> None:
        self._stream = stream
        self.json_mode = bool(json_mode)

    def send(self, notification: Notification) -> None:
        payload = notification.to_dict()
        if self.json_mode:
            line = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        else:
            line = (
                f"[{payload['created_at']}] [{payload['level']}:{payload['event_name'] or '-'}] "
                f"{payload['message']}"
            )
        destination = self._stream
        if destination is None:
            print(line)
            return
        destination.write(line + "\n")
        destination.flush()


class RecordingNotificationChannel:
    """Keep delivered notifications in `sent` (replays, tests)."""

    name = "recording"

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)


ReadListener = Callable[[str], None]
InboxListener = Callable[[], None]


class NotificationSink:
    """Deliver each notification key at most once and keep a capped inbox."""

    def __init__(
        self,
        deduper: IdempotencyDeduper | None = None,
        channels: list[NotificationChannel] | None = None,
        capacity: int = 100,
        *,
        logger: JsonEventLogger | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        if capacity < 1:
            msg = "capacity must be >= 1."
            raise ValueError(msg)
        if deduper is None:
            from ordersync.sync.dedup import IdempotencyDeduper

            deduper = IdempotencyDeduper()
        self.deduper = deduper
        self.channels: list[NotificationChannel] = list(channels or [])
        self.capacity = int(capacity)
        self.logger = logger
        self.metrics = metrics
        self._inbox: list[Notification] = []
        self._read_listeners: list[ReadListener] = []
        self._all_read_listeners: list[InboxListener] = []
        self._cleared_listeners: list[InboxListener] = []
        self._lock = threading.RLock()

    def add_channel(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)

    def add_read_listener(self, listener: ReadListener) -> Callable[[], None]:
        """Called with the notification id whenever a single one is marked read."""
        return self._register(self._read_listeners, listener)

    def add_all_read_listener(self, listener: InboxListener) -> Callable[[], None]:
        """Called once per `mark_all_as_read`, instead of once per notification."""
        return self._register(self._all_read_listeners, listener)

    def add_cleared_listener(self, listener: InboxListener) -> Callable[[], None]:
        return self._register(self._cleared_listeners, listener)

    def _register(self, listeners: list[Any], listener: Any) -> Callable[[], None]:
        with self._lock:
            listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def notify(
        self,
        key: str,
        message: str,
        *,
        level: str = "info",
        event_name: str = "",
        data: dict[str, Any] | None = None,
    ) -> Notification | None:
        """Deliver a notification unless `key` was already delivered."""
        if not self.deduper.should_apply(key):
            return None
        normalized_level = str(level).lower()
        notification = Notification(
            notification_id=str(key),
            message=str(message),
            level=normalized_level if normalized_level in _LEVELS else "info",  # type: ignore[arg-type]
            event_name=str(event_name),
            category=category_for_event(str(event_name)),
            data=dict(data or {}),
            sound=SOUND_PROFILES.get(str(event_name), DEFAULT_SOUND),
        )
        with self._lock:
            self._inbox.insert(0, notification)
            del self._inbox[self.capacity :]
        for channel in list(self.channels):
            try:
                channel.send(notification)
            except Exception as error:
                if self.logger is not None:
                    self.logger.emit(
                        level="error",
                        event="notification_channel_failed",
                        channel=getattr(channel, "name", type(channel).__name__),
                        notification_id=notification.notification_id,
                        error=repr(error),
                    )
        if self.metrics is not None:
            self.metrics.increment("notifications")
        return notification

    @property
    def notifications(self) -> list[Notification]:
        """Inbox, newest first."""
        with self._lock:
            return list(self._inbox)

    @property
    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for notification in self._inbox if not notification.read)

    def unread_by_category(self) -> dict[str, int]:
        counts = {"orders": 0, "tasks": 0, "returns": 0, "factory": 0}
        with self._lock:
            for notification in self._inbox:
                if not notification.read:
                    counts[notification.category] += 1
        return counts

    def mark_as_read(self, notification_id: str) -> bool:
        with self._lock:
            target = next(
                (item for item in self._inbox if item.notification_id == notification_id),
                None,
            )
            if target is None or target.read:
                return False
            target.read = True
            listeners = list(self._read_listeners)
        self._call_listeners(
            listeners,
            "notification_read_listener_failed",
            notification_id,
            notification_id=notification_id,
        )
        return True

    def mark_all_as_read(self) -> int:
        with self._lock:
            changed = [item for item in self._inbox if not item.read]
            for item in changed:
                item.read = True
            listeners = list(self._all_read_listeners)
        self._call_listeners(listeners, "notification_all_read_listener_failed")
        return len(changed)

    def clear(self) -> None:
        """Empty the inbox; delivered keys stay deduplicated."""
        with self._lock:
            self._inbox.clear()
            listeners = list(self._cleared_listeners)
        self._call_listeners(listeners, "notification_cleared_listener_failed")

    def _call_listeners(
        self,
        listeners: list[Any],
        failure_event: str,
        *args: Any,
        **log_fields: Any,
    ) -> None:
        for listener in listeners:
            try:
                listener(*args)
            except Exception as error:
                if self.logger is not None:
                    self.logger.emit(
                        level="warning",
                        event=failure_event,
                        error=repr(error),
                        **log_fields,
                    )


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _to_jsonable(raw) for key, raw in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


__all__ = [
    "DEFAULT_SOUND",
    "SOUND_PROFILES",
    "ConsoleNotificationChannel",
    "Notification",
    "NotificationChannel",
    "NotificationSink",
    "RecordingNotificationChannel",
    "SoundProfile",
    "category_for_event",
]
