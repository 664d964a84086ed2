"""Exception types shared across the sync engine."""

from __future__ import annotations

from collections.abc import Sequence


class OrderSyncError(Exception):
    """Base class for ordersync failures."""


class FrameDecodeError(OrderSyncError, ValueError):
    """Raised when a push-channel frame cannot be decoded into an envelope."""


class ValidationError(OrderSyncError, ValueError):
    """Payload failed normalization (missing required fields or bad values)."""

    def __init__(
        self,
        event_name: str,
        message: str,
        missing_fields: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.event_name = str(event_name)
        self.message = str(message)
        self.missing_fields = tuple(missing_fields)


class ConnectionFailure(OrderSyncError):
    """Push-channel connection could not be established or was lost for good."""

    def __init__(self, message: str, reason: str = "connection_unavailable") -> None:
        super().__init__(message)
        self.reason = reason


class AuthenticationRejected(ConnectionFailure):
    """Server rejected the bearer credential during the handshake."""

    def __init__(self, message: str = "Credential rejected by server.") -> None:
        super().__init__(message, reason="auth_rejected")


class ApiError(OrderSyncError):
    """Pull-side REST call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiAuthError(ApiError):
    """REST call rejected with 401/403."""


class ReconciliationFailed(OrderSyncError):
    """Authoritative refetch exhausted its retries."""

    def __init__(self, kind: str, entity_id: str, attempts: int) -> None:
        msg = f"Reconciliation of {kind}={entity_id!r} failed after {attempts} attempt(s)."
        super().__init__(msg)
        self.kind = kind
        self.entity_id = entity_id
        self.attempts = attempts
