"""
WebSocket Gateway Constants.

Centralized constants with documentation explaining each value.
"""

import logging
from enum import IntEnum
from typing import Final

__all__ = [
    "WSCloseCode",
    "WSConstants",
    "MSG_PING_PLAIN",
    "MSG_PONG_EVENT",
    "DEFAULT_ALLOWED_ORIGINS",
    "validate_websocket_origin",
]

_logger = logging.getLogger(__name__)


class WSCloseCode(IntEnum):
    """
    WebSocket close codes used by the gateway.

    Standard codes (1000-1999) from RFC 6455.
    Custom codes (4000-4999) for application-specific errors.
    """

    # Standard codes (RFC 6455)
    NORMAL = 1000  # Normal closure
    GOING_AWAY = 1001  # Server shutting down or heartbeat timeout
    POLICY_VIOLATION = 1008  # Generic policy violation
    MESSAGE_TOO_BIG = 1009  # Message too large to process
    SERVER_ERROR = 1011  # Unexpected server error (store unavailable on connect)
    SERVER_OVERLOADED = 1013  # Connection cap reached, try again later

    # Custom application codes (4000-4999)
    AUTH_FAILED = 4001  # Token missing, invalid or expired
    FORBIDDEN = 4003  # Origin not allowed


class WSConstants:
    """
    WebSocket Gateway operational constants.

    Tunables that operators change live in settings; these are the
    implementation details that do not vary per deployment.
    """

    # ==========================================================================
    # Timeout Constants
    # ==========================================================================

    # WS_RECEIVE_TIMEOUT: 90 seconds
    # Longer than the client ping interval (25s) times three, so a single
    # delayed ping does not drop the connection.
    WS_RECEIVE_TIMEOUT: Final[float] = 90.0

    # ==========================================================================
    # Circuit Breaker Constants
    # ==========================================================================

    # CIRCUIT_FAILURE_THRESHOLD: 5 consecutive failures before opening.
    CIRCUIT_FAILURE_THRESHOLD: Final[int] = 5

    # CIRCUIT_RECOVERY_TIMEOUT: 30 seconds in OPEN before a trial attempt.
    CIRCUIT_RECOVERY_TIMEOUT: Final[float] = 30.0

    # CIRCUIT_HALF_OPEN_MAX_CALLS: trial attempts allowed while HALF_OPEN.
    CIRCUIT_HALF_OPEN_MAX_CALLS: Final[int] = 3

    # ==========================================================================
    # Heartbeat Constants
    # ==========================================================================

    # HEARTBEAT_CLEANUP_INTERVAL: 30 seconds
    # Matches typical client ping cadence. Stale and dead local connections
    # are evicted on this tick.
    HEARTBEAT_CLEANUP_INTERVAL: Final[float] = 30.0

    # ==========================================================================
    # Broadcast Constants
    # ==========================================================================

    # MAX_DEAD_CONNECTIONS: 500
    # Upper bound on connections queued for eviction after a failed send.
    MAX_DEAD_CONNECTIONS: Final[int] = 500

    # MAX_ENVELOPE_SIZE: 256 KB
    # Envelopes larger than this on the broadcast channel are dropped unread.
    MAX_ENVELOPE_SIZE: Final[int] = 256 * 1024


# Heartbeat protocol frames
MSG_PING_PLAIN: Final[str] = "ping"
MSG_PONG_EVENT: Final[str] = "pong"


# Default development origins
DEFAULT_ALLOWED_ORIGINS: Final[tuple[str, ...]] = (
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
)


def validate_websocket_origin(origin: str | None, settings: object) -> bool:
    """
    Validate WebSocket origin header against allowed origins.

    Args:
        origin: The Origin header value, or None if not present.
        settings: Settings object with environment and allowed_origins attributes.

    Returns:
        True if origin is allowed, False otherwise.
    """
    allowed_origins_str = getattr(settings, "allowed_origins", None)
    if allowed_origins_str:
        allowed = [o.strip() for o in allowed_origins_str.split(",") if o.strip()]
    else:
        allowed = list(DEFAULT_ALLOWED_ORIGINS)

    # Non-browser clients send no Origin; only tolerated in development
    if not origin:
        if getattr(settings, "environment", "production") == "development":
            return True
        _logger.warning(
            "WebSocket connection rejected: missing Origin header in production",
        )
        return False

    if origin in allowed or "*" in allowed:
        return True

    _logger.warning(
        "WebSocket connection rejected: origin not in allowed list",
        extra={"origin": origin, "allowed_count": len(allowed)},
    )
    return False
