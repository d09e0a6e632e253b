"""
Broadcasting components.

Room membership, local delivery and the cross-instance envelope.
"""

from ws_gateway.components.broadcast.envelope import BroadcastEnvelope
from ws_gateway.components.broadcast.router import (
    BatchBroadcastStrategy,
    BroadcastRouter,
)

__all__ = [
    "BroadcastEnvelope",
    "BatchBroadcastStrategy",
    "BroadcastRouter",
]
