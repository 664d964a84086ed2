"""Credential handling: env loading, bearer-token store, and safe logging."""

from __future__ import annotations

import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Mapping

_SENSITIVE_KEY_TOKENS = ("secret", "token", "password", "authorization", "api_key", "credential")
_CI_VARIABLES = ("CI", "GITHUB_ACTIONS")
_FALSE_VALUES = frozenset({"", "0", "false", "no", "off"})
_VISIBLE_CHARS = 2


def is_ci_environment(env: Mapping[str, str] | None = None) -> bool:
    """CI runs redact every secret fully, even in masked form."""
    env_map = env if env is not None else os.environ
    return any(
        str(env_map.get(name, "")).strip().lower() not in _FALSE_VALUES for name in _CI_VARIABLES
    )


def mask_secret(value: str | None, *, force_full_redaction: bool = False) -> str:
    """Keep the first and last two characters of a token, star the rest."""
    if value is None:
        return "[MISSING]"
    text_value = str(value)
    if not text_value:
        return "[EMPTY]"
    if force_full_redaction or is_ci_environment():
        return "[REDACTED]"
    hidden = len(text_value) - 2 * _VISIBLE_CHARS
    if hidden <= 0:
        return "*" * len(text_value)
    return text_value[:_VISIBLE_CHARS] + "*" * hidden + text_value[-_VISIBLE_CHARS:]


@dataclass(slots=True, frozen=True)
class SecretValue:
    """A token together with where it came from; prints masked."""

    name: str
    raw_value: str
    source: str

    def reveal(self) -> str:
        return self.raw_value

    def masked(self, *, force_full_redaction: bool = False) -> str:
        return mask_secret(self.raw_value, force_full_redaction=force_full_redaction)

    def __str__(self) -> str:
        return self.masked()

    def __repr__(self) -> str:
        return f"SecretValue(name={self.name!r}, source={self.source!r})"


def read_secret_env(env_var: str, *, required: bool = False) -> str | None:
    """Token from the environment; blank values count as absent."""
    env_name = str(env_var).strip()
    if not env_name:
        msg = "env_var cannot be blank."
        raise ValueError(msg)
    value = os.environ.get(env_name, "").strip()
    if not value and required:
        msg = f"Missing required environment secret: {env_name}"
        raise KeyError(msg)
    return value or None


class CredentialStore:
    """Thread-safe holder of the session bearer token.

    When empty, `get()` asks the optional `provider` (for example an env
    lookup) so a token that appears later is picked up on the next attempt.
    `clear()` drops the token after the server rejects it.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        provider: Callable[[], str | None] | None = None,
        name: str = "session_token",
    ) -> None:
        self.name = str(name)
        self._provider = provider
        self._lock = threading.Lock()
        self._secret: SecretValue | None = None
        if token:
            self._secret = SecretValue(name=self.name, raw_value=str(token), source="login")

    @classmethod
    def from_env(cls, env_var: str = "ORDERSYNC_TOKEN") -> CredentialStore:
        return cls(provider=lambda: read_secret_env(env_var), name=env_var)

    def get(self) -> str | None:
        with self._lock:
            if self._secret is not None:
                return self._secret.reveal()
            provider = self._provider
        if provider is None:
            return None
        token = provider()
        if not token:
            return None
        with self._lock:
            self._secret = SecretValue(name=self.name, raw_value=str(token), source="provider")
            return self._secret.reveal()

    def set(self, token: str, *, source: str = "login") -> None:
        if not str(token).strip():
            msg = "token cannot be blank."
            raise ValueError(msg)
        with self._lock:
            self._secret = SecretValue(name=self.name, raw_value=str(token), source=source)

    def clear(self) -> None:
        """Forget the token and stop consulting the provider."""
        with self._lock:
            self._secret = None
            self._provider = None

    @property
    def secret(self) -> SecretValue | None:
        with self._lock:
            return self._secret

    def __repr__(self) -> str:
        return f"CredentialStore(name={self.name!r}, secret={self.secret!r})"


def sanitize_logging_payload(
    fields: Mapping[str, Any],
    *,
    force_full_redaction: bool | None = None,
) -> dict[str, Any]:
    """Mask values under secret-looking keys, at any nesting depth."""
    full = is_ci_environment() if force_full_redaction is None else bool(force_full_redaction)
    return {str(key): _sanitize_value(str(key), value, full) for key, value in fields.items()}


def _sanitize_value(key_name: str, value: Any, full: bool) -> Any:
    if isinstance(value, SecretValue):
        return value.masked(force_full_redaction=full)
    lowered = key_name.strip().lower()
    if lowered and any(token in lowered for token in _SENSITIVE_KEY_TOKENS):
        return mask_secret(str(value), force_full_redaction=full)
    if isinstance(value, Mapping):
        return {str(key): _sanitize_value(str(key), item, full) for key, item in value.items()}
    if isinstance(value, list):
        return [_sanitize_value(key_name, item, full) for item in value]
    if isinstance(value, tuple):
        return tuple(_sanitize_value(key_name, item, full) for item in value)
    return value


__all__ = [
    "CredentialStore",
    "SecretValue",
    "is_ci_environment",
    "mask_secret",
    "read_secret_env",
    "sanitize_logging_payload",
]
