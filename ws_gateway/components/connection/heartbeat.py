"""
Heartbeat Tracker for WebSocket Gateway.

Tracks the last activity time of every local connection so the cleanup loop
can evict connections whose transport died without a close frame.
"""

from __future__ import annotations

import json
import threading
import time
from typing import TYPE_CHECKING, Callable

from shared.config.logging import get_logger
from ws_gateway.components.core.constants import MSG_PING_PLAIN, MSG_PONG_EVENT

if TYPE_CHECKING:
    from fastapi import WebSocket

logger = get_logger(__name__)


class HeartbeatTracker:
    """
    Tracks heartbeat timestamps for local connections, keyed by connection id.

    A connection's timestamp is refreshed when it is established and on every
    inbound frame (heartbeats included). Connections idle longer than the
    timeout are stale.
    """

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            timeout_seconds: Seconds without activity before a connection is stale.
            clock: Time source, replaceable in tests.
        """
        self._timeout = timeout_seconds
        self._clock = clock
        self._last_heartbeat: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def tracked_count(self) -> int:
        with self._lock:
            return len(self._last_heartbeat)

    def record(self, connection_id: str, timestamp: float | None = None) -> None:
        with self._lock:
            self._last_heartbeat[connection_id] = (
                timestamp if timestamp is not None else self._clock()
            )

    def remove(self, connection_id: str) -> None:
        with self._lock:
            self._last_heartbeat.pop(connection_id, None)

    def is_stale(self, connection_id: str) -> bool:
        """Unknown connections count as stale."""
        with self._lock:
            last_time = self._last_heartbeat.get(connection_id)
        if last_time is None:
            return True
        return self._clock() - last_time > self._timeout

    def cleanup_stale(self) -> list[str]:
        """
        Remove and return the ids of stale connections in one step.

        The caller is responsible for closing and disconnecting them.
        """
        now = self._clock()
        stale = []
        with self._lock:
            for connection_id, last_time in list(self._last_heartbeat.items()):
                if now - last_time > self._timeout:
                    stale.append(connection_id)
                    del self._last_heartbeat[connection_id]
        return stale

    def get_stats(self) -> dict[str, float | int]:
        with self._lock:
            now = self._clock()
            ages = [now - t for t in self._last_heartbeat.values()]
            tracked = len(self._last_heartbeat)

        return {
            "tracked_connections": tracked,
            "timeout_seconds": self._timeout,
            "oldest_heartbeat_age": max(ages) if ages else 0,
            "average_heartbeat_age": sum(ages) / len(ages) if ages else 0,
        }


def is_ping_frame(data: str) -> bool:
    """Accept both a bare `ping` and `{"event": "ping"}`."""
    if data == MSG_PING_PLAIN:
        return True
    if not data.startswith("{") or "ping" not in data:
        return False
    try:
        frame = json.loads(data)
    except json.JSONDecodeError:
        return False
    return isinstance(frame, dict) and frame.get("event") == MSG_PING_PLAIN


async def handle_heartbeat(ws: WebSocket, data: str) -> bool:
    """
    Answer ping frames with a pong event.

    Returns:
        True if the frame was a heartbeat and was handled, False otherwise.
    """
    if not is_ping_frame(data):
        return False
    try:
        await ws.send_json({"event": MSG_PONG_EVENT, "data": {"timestamp": time.time()}})
    except (ConnectionError, RuntimeError, OSError) as e:
        # Connection may have closed; the receive loop handles cleanup
        logger.debug("Could not answer heartbeat", error=str(e))
    return True
