"""
WebSocket Connection Manager.

Thin orchestrator that composes the gateway components:
- ConnectionRegistry: local connection table and its store mirror
- PresenceTracker: cluster-wide user presence
- BroadcastRouter: room membership and local + cross-instance delivery
- ConnectionReaper: liveness heartbeat and cleanup of dead instances
- InboundEventDispatcher: broker events into the router

The endpoint talks to this class; components never reach into each other
except through the references wired here.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any

from shared.config.logging import get_logger
from shared.config.settings import settings
from ws_gateway.components.broadcast.router import BroadcastRouter
from ws_gateway.components.connection.heartbeat import HeartbeatTracker
from ws_gateway.components.connection.rate_limiter import UserRateLimiter
from ws_gateway.components.connection.reaper import ConnectionReaper
from ws_gateway.components.connection.registry import Connection, ConnectionRegistry
from ws_gateway.components.core.constants import WSCloseCode
from ws_gateway.components.core.context import ClientIdentity
from ws_gateway.components.core.exceptions import StoreUnavailableError
from ws_gateway.components.events.dispatcher import InboundEventDispatcher
from ws_gateway.components.metrics.collector import GatewayMetrics
from ws_gateway.components.presence.tracker import PresenceTracker
from ws_gateway.components.presence.typing_indicator import TypingIndicator

if TYPE_CHECKING:
    from fastapi import WebSocket
    from ws_gateway.components.store.kvs import KVSClient

logger = get_logger(__name__)

__all__ = ["ConnectionManager"]


class ConnectionManager:
    """
    Manages WebSocket connections for one gateway instance.

    Configuration from settings:
    - ws_max_connections_per_user: Max connections per user on this instance
    - ws_max_total_connections: Connection cap for this instance
    - ws_broadcast_batch_size: Parallel send batch size
    - ws_heartbeat_timeout: Seconds of silence before a connection is stale
    - rate_limit_max_actions / rate_limit_window_seconds: Per-user action budget
    """

    def __init__(self, kvs: "KVSClient", instance_id: str | None = None) -> None:
        self._kvs = kvs
        self.instance_id = instance_id or settings.instance_id or uuid.uuid4().hex[:12]
        self._shutting_down = False

        self.metrics = GatewayMetrics(kvs)
        self.presence = PresenceTracker(kvs, channel=settings.broadcast_channel)
        self.registry = ConnectionRegistry(
            kvs,
            presence=self.presence,
            metrics=self.metrics,
            instance_id=self.instance_id,
            max_total_connections=settings.ws_max_total_connections,
            max_connections_per_user=settings.ws_max_connections_per_user,
        )
        self.router = BroadcastRouter(
            kvs,
            registry=self.registry,
            presence=self.presence,
            instance_id=self.instance_id,
            channel=settings.broadcast_channel,
            batch_size=settings.ws_broadcast_batch_size,
        )
        self.typing = TypingIndicator(kvs, ttl=settings.typing_indicator_ttl)
        self.rate_limiter = UserRateLimiter(
            kvs,
            max_actions=settings.rate_limit_max_actions,
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.heartbeat = HeartbeatTracker(timeout_seconds=settings.ws_heartbeat_timeout)
        self.reaper = ConnectionReaper(
            kvs,
            registry=self.registry,
            presence=self.presence,
            router=self.router,
            instance_id=self.instance_id,
        )
        self.dispatcher = InboundEventDispatcher(self.router, self.presence)

        self._subscriber_task: asyncio.Task | None = None

    @property
    def kvs(self) -> "KVSClient":
        return self._kvs

    @property
    def total_connections(self) -> int:
        return self.registry.total_connections

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Announce this instance and start consuming the broadcast channel."""
        try:
            await self.reaper.heartbeat()
        except StoreUnavailableError:
            logger.warning("Initial instance heartbeat failed", instance_id=self.instance_id)
        self._subscriber_task = self.router.subscribe()
        logger.info("Connection manager started", instance_id=self.instance_id)

    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def shutdown(self) -> int:
        """Graceful shutdown: close every local socket and run its disconnect path."""
        self._shutting_down = True
        logger.info("WebSocket manager shutting down", instance_id=self.instance_id)

        connections = self.registry.all_connections()

        async def close_one(conn: Connection) -> bool:
            try:
                await conn.websocket.close(code=WSCloseCode.GOING_AWAY, reason="Server shutdown")
                return True
            except (RuntimeError, ConnectionError, OSError):
                return False

        results = await asyncio.gather(
            *[close_one(conn) for conn in connections],
            return_exceptions=True,
        )
        closed = sum(1 for r in results if r is True)

        for conn in connections:
            await self.disconnect(conn.connection_id)

        if self._subscriber_task is not None:
            self._subscriber_task.cancel()
            try:
                await self._subscriber_task
            except asyncio.CancelledError:
                pass
            self._subscriber_task = None

        await self.dispatcher.close()
        logger.info("WebSocket shutdown complete", closed=closed)
        return closed

    # =========================================================================
    # Connection management
    # =========================================================================

    async def connect(self, identity: ClientIdentity | None, websocket: "WebSocket") -> Connection | None:
        """
        Register an accepted socket.

        Raises:
            ConnectionError: Registration refused; the socket is closed.
        """
        if self._shutting_down:
            await websocket.close(code=WSCloseCode.GOING_AWAY, reason="Server shutting down")
            raise ConnectionError("Server is shutting down")

        conn = await self.registry.on_connect(identity, websocket)
        if conn is not None:
            self.heartbeat.record(conn.connection_id)
        return conn

    async def disconnect(self, connection_id: str) -> None:
        """Remove a connection from presence, the mirror and its rooms. Idempotent."""
        self.heartbeat.remove(connection_id)
        conn = await self.registry.on_disconnect(connection_id)
        if conn is None:
            return
        await self.router.release_connection(conn)

    async def record_activity(self, connection_id: str) -> None:
        self.heartbeat.record(connection_id)
        await self.registry.on_activity(connection_id)

    async def check_rate_limit(self, user_id: str, action: str) -> None:
        """
        Raises:
            RateLimitExceededError: If the user's action budget is spent.
        """
        await self.rate_limiter.check(user_id, action=action)

    # =========================================================================
    # Rooms
    # =========================================================================

    async def join_room(self, connection_id: str, room_id: str) -> list[str]:
        """
        Join a room and return the users of the room currently online.

        Raises:
            UnknownConnectionError: If the connection is not registered here.
            StoreUnavailableError: If membership could not be recorded.
        """
        conn = self.registry.require(connection_id)
        already_joined = room_id in conn.room_ids
        await self.registry.join_room(connection_id, room_id)
        if not already_joined:
            try:
                await self.router.join(conn, room_id)
            except StoreUnavailableError:
                await self.registry.leave_room(connection_id, room_id)
                raise
        return await self.router.online_users_in_room(room_id)

    async def leave_room(self, connection_id: str, room_id: str) -> bool:
        """
        Returns:
            True if the connection had joined the room.

        Raises:
            StoreUnavailableError: If the shared membership cannot be released.
                The connection stays in the room so the leave can be retried.
        """
        conn = self.registry.require(connection_id)
        if not await self.registry.leave_room(connection_id, room_id):
            return False
        try:
            await self.router.leave(conn, room_id)
        except StoreUnavailableError:
            await self.registry.restore_room(connection_id, room_id)
            raise
        return True

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def cleanup_stale_connections(self) -> int:
        """Close and remove connections silent for longer than the heartbeat timeout."""
        stale = self.heartbeat.cleanup_stale()
        for connection_id in stale:
            conn = self.registry.get(connection_id)
            if conn is not None:
                try:
                    await conn.websocket.close(code=WSCloseCode.GOING_AWAY, reason="Heartbeat timeout")
                except (RuntimeError, ConnectionError, OSError) as e:
                    logger.debug("Close on stale socket failed", connection_id=connection_id, error=str(e))
            await self.disconnect(connection_id)
        if stale:
            logger.info("Stale connections removed", count=len(stale))
        return len(stale)

    async def cleanup_dead_connections(self) -> int:
        """Remove connections whose sends failed since the last pass."""
        dead = self.registry.pop_dead()
        for connection_id in dead:
            await self.disconnect(connection_id)
        if dead:
            logger.info("Dead connections removed", count=len(dead))
        return len(dead)

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats_sync(self) -> dict[str, Any]:
        """Local statistics, no store round-trips (sync health check)."""
        return {
            **self.registry.get_stats_sync(),
            "shutting_down": self._shutting_down,
            "heartbeat": self.heartbeat.get_stats(),
            "router": self.router.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
            "reaper": self.reaper.get_stats(),
            "broker": self.dispatcher.get_stats(),
        }

    async def get_stats(self) -> dict[str, Any]:
        snapshot = await self.registry.stats_snapshot()
        return {**self.get_stats_sync(), "cluster": snapshot["cluster"]}
