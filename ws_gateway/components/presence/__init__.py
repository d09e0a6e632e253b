"""
Presence components.

Cluster-wide user presence and typing indicators.
"""

from ws_gateway.components.presence.tracker import (
    PresenceStatus,
    PresenceTracker,
    UserPresence,
)
from ws_gateway.components.presence.typing_indicator import TypingIndicator

__all__ = [
    "PresenceStatus",
    "PresenceTracker",
    "UserPresence",
    "TypingIndicator",
]
