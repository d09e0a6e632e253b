"""
Core WebSocket Gateway components.

Foundational components: constants, client identity, and the error taxonomy.
"""

from ws_gateway.components.core.constants import WSCloseCode, WSConstants
from ws_gateway.components.core.context import (
    ClientIdentity,
    WebSocketContext,
    iso_timestamp,
)
from ws_gateway.components.core.exceptions import GatewayError

__all__ = [
    # Constants
    "WSCloseCode",
    "WSConstants",
    # Context
    "ClientIdentity",
    "WebSocketContext",
    "iso_timestamp",
    # Errors
    "GatewayError",
]
