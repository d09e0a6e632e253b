"""
Metrics components.

Cluster-wide counters kept in the shared store.
"""

from ws_gateway.components.metrics.collector import GatewayMetrics

__all__ = ["GatewayMetrics"]
