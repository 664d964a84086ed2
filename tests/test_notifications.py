from __future__ import annotations

import io
import json

import pytest

from ordersync.ops import JsonEventLogger, SyncMetrics
from ordersync.ops.notifications import (
    DEFAULT_SOUND,
    SOUND_PROFILES,
    ConsoleNotificationChannel,
    NotificationSink,
    RecordingNotificationChannel,
    category_for_event,
)
from ordersync.sync.dedup import IdempotencyDeduper


class ExplodingChannel:
    name = "exploding"

    def send(self, notification: object) -> None:
        raise RuntimeError("channel down")


def test_each_key_is_delivered_once() -> None:
    recorder = RecordingNotificationChannel()
    metrics = SyncMetrics()
    sink = NotificationSink(IdempotencyDeduper(), channels=[recorder], metrics=metrics)

    first = sink.notify("evt-1", "Order N-1 approved", level="success", event_name="orderApproved")
    second = sink.notify("evt-1", "Order N-1 approved", level="success", event_name="orderApproved")

    assert first is not None
    assert second is None
    assert [item.notification_id for item in recorder.sent] == ["evt-1"]
    assert metrics.count("notifications") == 1


def test_inbox_is_newest_first_and_capped() -> None:
    sink = NotificationSink(capacity=2)
    for index in range(3):
        sink.notify(f"evt-{index}", f"message {index}")

    assert [item.notification_id for item in sink.notifications] == ["evt-2", "evt-1"]
    assert sink.unread_count == 2


def test_unknown_level_falls_back_to_info_and_sound_follows_event() -> None:
    sink = NotificationSink()
    assigned = sink.notify("a", "New task", level="LOUD", event_name="taskAssigned")
    plain = sink.notify("b", "Order created", level="Warning", event_name="orderCreated")

    assert assigned is not None and plain is not None
    assert assigned.level == "info"
    assert assigned.sound == SOUND_PROFILES["taskAssigned"]
    assert plain.level == "warning"
    assert plain.sound == DEFAULT_SOUND


@pytest.mark.parametrize(
    ("event_name", "category"),
    [
        ("taskAssigned", "tasks"),
        ("missingAssignments", "tasks"),
        ("returnStatusUpdated", "returns"),
        ("factoryOrderCreated", "factory"),
        ("orderDelivered", "orders"),
        ("newNotification", "orders"),
    ],
)
def test_category_for_event(event_name: str, category: str) -> None:
    assert category_for_event(event_name) == category


def test_read_state_and_listeners() -> None:
    sink = NotificationSink()
    read_ids: list[str] = []
    bulk_reads: list[str] = []
    unsubscribe = sink.add_read_listener(read_ids.append)
    unsubscribe_bulk = sink.add_all_read_listener(lambda: bulk_reads.append("all"))
    sink.notify("t1", "task", event_name="taskAssigned")
    sink.notify("r1", "return", event_name="returnCreated")
    sink.notify("o1", "order", event_name="orderCreated")

    assert sink.unread_by_category() == {"orders": 1, "tasks": 1, "returns": 1, "factory": 0}
    assert sink.mark_as_read("t1") is True
    assert sink.mark_as_read("t1") is False
    assert sink.mark_as_read("unknown") is False
    assert sink.mark_all_as_read() == 2
    assert sink.unread_count == 0
    assert read_ids == ["t1"]
    assert bulk_reads == ["all"]

    unsubscribe()
    unsubscribe_bulk()
    sink.notify("o2", "order", event_name="orderCreated")
    sink.mark_as_read("o2")
    sink.mark_all_as_read()
    assert read_ids == ["t1"]
    assert bulk_reads == ["all"]


def test_clear_keeps_keys_deduplicated() -> None:
    sink = NotificationSink()
    cleared: list[int] = []
    sink.add_cleared_listener(lambda: cleared.append(len(sink.notifications)))
    sink.notify("evt-1", "hello")
    sink.clear()

    assert sink.notifications == []
    assert cleared == [0]
    assert sink.notify("evt-1", "hello") is None


def test_channel_failures_are_logged_and_do_not_block_other_channels() -> None:
    logger = JsonEventLogger()
    recorder = RecordingNotificationChannel()
    sink = NotificationSink(channels=[ExplodingChannel(), recorder], logger=logger)

    sink.notify("evt-1", "hello")

    assert len(recorder.sent) == 1
    failure = logger.events("notification_channel_failed")[0]
    assert failure["channel"] == "exploding"
    assert "channel down" in failure["error"]


def test_console_channel_text_and_json_modes() -> None:
    text_stream = io.StringIO()
    json_stream = io.StringIO()
    sink = NotificationSink(
        channels=[
            ConsoleNotificationChannel(stream=text_stream),
            ConsoleNotificationChannel(stream=json_stream, json_mode=True),
        ]
    )

    sink.notify(
        "evt-1",
        "Order N-1 delivered",
        level="success",
        event_name="orderDelivered",
        data={"orderId": "O1"},
    )

    assert "[success:orderDelivered] Order N-1 delivered" in text_stream.getvalue()
    decoded = json.loads(json_stream.getvalue())
    assert decoded["notification_id"] == "evt-1"
    assert decoded["category"] == "orders"
    assert decoded["data"] == {"orderId": "O1"}
    assert decoded["vibrate"] == list(DEFAULT_SOUND.vibrate)


def test_capacity_validation() -> None:
    with pytest.raises(ValueError, match="capacity"):
        NotificationSink(capacity=0)
