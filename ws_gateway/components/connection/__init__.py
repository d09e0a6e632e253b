"""
Connection management components.

Local connection registry, heartbeat tracking, the cluster reaper and
per-user rate limiting.
"""

from ws_gateway.components.connection.heartbeat import HeartbeatTracker, handle_heartbeat
from ws_gateway.components.connection.rate_limiter import UserRateLimiter
from ws_gateway.components.connection.reaper import ConnectionReaper
from ws_gateway.components.connection.registry import (
    Connection,
    ConnectionRegistry,
    is_ws_connected,
)

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "ConnectionReaper",
    "HeartbeatTracker",
    "handle_heartbeat",
    "UserRateLimiter",
    "is_ws_connected",
]
