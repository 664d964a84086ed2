"""Structured JSON logging for the sync runtime."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

import pandas as pd

from ordersync.ops.secrets import sanitize_logging_payload

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


class JsonEventLogger:
    """JSON-lines event logger.

    Every record is kept in `records` (bounded by `max_records`), appended to
    `path` when one is configured, and forwarded to the standard library
    logger `logger_name` so host applications can route it.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        logger_name: str = "ordersync",
        max_records: int = 10_000,
    ) -> None:
        if max_records < 0:
            msg = "max_records must be >= 0."
            raise ValueError(msg)
        self.path = None if path is None else Path(path)
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.max_records = int(max_records)
        self.records: list[dict[str, Any]] = []
        self._logger = logging.getLogger(logger_name)
        self._lock = threading.Lock()

    def emit(
        self,
        *,
        level: str,
        event: str,
        session_id: str | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        """Record one event with timestamp, level, event name and sanitized fields."""
        normalized_level = str(level).lower()
        payload: dict[str, Any] = {
            "timestamp": _utc_now().isoformat(),
            "level": normalized_level,
            "event": str(event),
        }
        if session_id is not None:
            payload["session_id"] = str(session_id)

        safe_fields = sanitize_logging_payload(fields)
        for key, value in safe_fields.items():
            payload[key] = _to_jsonable(value)

        line = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        with self._lock:
            if self.max_records:
                self.records.append(payload)
                overflow = len(self.records) - self.max_records
                if overflow > 0:
                    del self.records[:overflow]
            if self.path is not None:
                with self.path.open("a", encoding="utf-8") as log_file:
                    log_file.write(line + "\n")

        self._logger.log(_LEVELS.get(normalized_level, logging.INFO), line)
        return payload

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        """Kept records, optionally filtered by event name."""
        with self._lock:
            if name is None:
                return list(self.records)
            return [record for record in self.records if record["event"] == name]


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(key): _to_jsonable(raw) for key, raw in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_jsonable(item) for item in value]
    return str(value)
