"""
Gateway error taxonomy.

Every error a client action can trigger derives from GatewayError and carries
a machine-readable code. The WebSocket endpoint turns these into `error`
events; the connection stays open.

Usage:
    from ws_gateway.components.core.exceptions import PresenceError

    raise PresenceError("Cannot set presence while offline", user_id=user_id)
"""

from typing import Any


class GatewayError(Exception):
    """Base class for errors surfaced to clients as `error` events."""

    code: str = "gateway_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_payload(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code}


# =============================================================================
# Store Errors
# =============================================================================


class StoreUnavailableError(GatewayError):
    """The shared store could not be reached or rejected the command."""

    code = "store_unavailable"

    def __init__(self, message: str = "Shared store unavailable", **context: Any):
        super().__init__(message, **context)


class CorruptValueError(GatewayError):
    """A stored value could not be decoded where integrity is required."""

    code = "corrupt_value"


# =============================================================================
# Client Action Errors
# =============================================================================


class NotAuthenticatedError(GatewayError):
    code = "not_authenticated"

    def __init__(self, message: str = "Not authenticated", **context: Any):
        super().__init__(message, **context)


class RateLimitExceededError(GatewayError):
    code = "rate_limited"

    def __init__(self, limit: int, window: int, **context: Any):
        super().__init__(
            f"Rate limit exceeded: {limit} actions per {window}s",
            limit=limit,
            window=window,
            **context,
        )
        self.limit = limit
        self.window = window


class InvalidEventError(GatewayError):
    """Unknown or malformed event (client frame or broker payload)."""

    code = "invalid_event"


class PresenceError(GatewayError):
    code = "presence_offline"


class RoomAccessError(GatewayError):
    code = "not_in_room"


class UnknownConnectionError(GatewayError):
    code = "unknown_connection"
