"""Operational utilities for logging, metrics, credentials and notifications."""

from ordersync.ops.logging import JsonEventLogger
from ordersync.ops.metrics import COUNTER_NAMES, SyncMetrics, SyncMetricsSnapshot
from ordersync.ops.notifications import (
    DEFAULT_SOUND,
    SOUND_PROFILES,
    ConsoleNotificationChannel,
    Notification,
    NotificationChannel,
    NotificationSink,
    RecordingNotificationChannel,
    SoundProfile,
    category_for_event,
)
from ordersync.ops.secrets import (
    CredentialStore,
    SecretValue,
    is_ci_environment,
    mask_secret,
    read_secret_env,
    sanitize_logging_payload,
)

__all__ = [
    "COUNTER_NAMES",
    "DEFAULT_SOUND",
    "SOUND_PROFILES",
    "ConsoleNotificationChannel",
    "CredentialStore",
    "JsonEventLogger",
    "Notification",
    "NotificationChannel",
    "NotificationSink",
    "RecordingNotificationChannel",
    "SecretValue",
    "SoundProfile",
    "SyncMetrics",
    "SyncMetricsSnapshot",
    "category_for_event",
    "is_ci_environment",
    "mask_secret",
    "read_secret_env",
    "sanitize_logging_payload",
]
