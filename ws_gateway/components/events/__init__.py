"""
Event handling components.

Event names, client payload schemas, and the broker dispatcher.
"""

from ws_gateway.components.events.types import (
    ClientEvent,
    ServerEvent,
    RoutingKey,
    CONSUMED_ROUTING_KEYS,
    VALID_CLIENT_EVENTS,
    UNMETERED_CLIENT_EVENTS,
    parse_payload,
)
from ws_gateway.components.events.dispatcher import InboundEventDispatcher

__all__ = [
    # Event types
    "ClientEvent",
    "ServerEvent",
    "RoutingKey",
    "CONSUMED_ROUTING_KEYS",
    "VALID_CLIENT_EVENTS",
    "UNMETERED_CLIENT_EVENTS",
    "parse_payload",
    # Broker dispatcher
    "InboundEventDispatcher",
]
