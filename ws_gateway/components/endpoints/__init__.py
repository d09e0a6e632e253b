"""
WebSocket endpoint components.

Base class, mixins, and the chat endpoint.
"""

from ws_gateway.components.endpoints.mixins import (
    ConnectionLifecycleMixin,
    HeartbeatMixin,
    MessageValidationMixin,
    OriginValidationMixin,
    TokenAuthMixin,
)
from ws_gateway.components.endpoints.base import WebSocketEndpointBase
from ws_gateway.components.endpoints.chat import ChatEndpoint

__all__ = [
    # Mixins
    "ConnectionLifecycleMixin",
    "HeartbeatMixin",
    "MessageValidationMixin",
    "OriginValidationMixin",
    "TokenAuthMixin",
    # Endpoints
    "WebSocketEndpointBase",
    "ChatEndpoint",
]
