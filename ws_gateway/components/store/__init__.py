"""
Shared store access: the KVS client used for all cross-instance state.
"""

from ws_gateway.components.store.kvs import KVSClient

__all__ = ["KVSClient"]
