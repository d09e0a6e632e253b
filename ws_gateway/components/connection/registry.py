"""
Connection Registry.

Authoritative table of the sockets this process has accepted, keyed by
connection id, plus a mirror of each record in the `socket_connections` hash
so other instances (and the reaper) can find any connection in the cluster.

The local table is owned by this process and only touched from the event
loop; the mirror is never read back to make local decisions.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from starlette.websockets import WebSocketDisconnect, WebSocketState

from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.infrastructure.redis.constants import SOCKET_CONNECTIONS
from ws_gateway.components.core.constants import WSCloseCode, WSConstants
from ws_gateway.components.core.context import ClientIdentity
from ws_gateway.components.core.exceptions import (
    StoreUnavailableError,
    UnknownConnectionError,
)

if TYPE_CHECKING:
    from fastapi import WebSocket
    from ws_gateway.components.metrics.collector import GatewayMetrics
    from ws_gateway.components.presence.tracker import PresenceTracker
    from ws_gateway.components.store.kvs import KVSClient

logger = get_logger(__name__)

CONNECTED_EVENT = "connected"


def is_ws_connected(ws: "WebSocket") -> bool:
    """Both sides of the socket still consider it open."""
    return (
        ws.client_state == WebSocketState.CONNECTED
        and ws.application_state == WebSocketState.CONNECTED
    )


@dataclass
class Connection:
    """One live socket accepted by this process."""

    connection_id: str
    identity: ClientIdentity
    websocket: "WebSocket"
    connected_at: float
    last_activity: float
    room_ids: set[str] = field(default_factory=set)

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def username(self) -> str:
        return self.identity.username

    def to_mirror(self, instance_id: str) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "user_id": self.identity.user_id,
            "username": self.identity.username,
            "instance_id": instance_id,
            "connected_at": self.connected_at,
            "last_activity": self.last_activity,
            "room_ids": sorted(self.room_ids),
        }


class ConnectionRegistry:
    """
    Local connection table with a cluster-visible mirror.

    Usage:
        conn = await registry.on_connect(identity, websocket)
        await registry.join_room(conn.connection_id, "general")
        ...
        removed = await registry.on_disconnect(conn.connection_id)
    """

    def __init__(
        self,
        kvs: "KVSClient",
        presence: "PresenceTracker",
        metrics: "GatewayMetrics",
        instance_id: str,
        max_total_connections: int = settings.ws_max_total_connections,
        max_connections_per_user: int = settings.ws_max_connections_per_user,
        clock: Callable[[], float] = time.time,
    ):
        self._kvs = kvs
        self._presence = presence
        self._metrics = metrics
        self._instance_id = instance_id
        self._max_total_connections = max_total_connections
        self._max_connections_per_user = max_connections_per_user
        self._clock = clock

        self._connections: dict[str, Connection] = {}
        self._by_user: dict[str, set[str]] = {}
        # connection_id -> time it was marked dead (send failure)
        self._dead: dict[str, float] = {}

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def total_connections(self) -> int:
        return len(self._connections)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def on_connect(
        self,
        identity: ClientIdentity | None,
        websocket: "WebSocket",
    ) -> Connection | None:
        """
        Register an accepted, authenticated socket.

        Returns None (after closing the socket) when there is no identity.

        Raises:
            ConnectionError: If the process or user is at capacity, the
                shared store could not record the connection, or the client
                left before the acknowledgement. Nothing of the connection is
                left registered in any case.
        """
        if identity is None:
            await self._close(websocket, WSCloseCode.AUTH_FAILED, "Authentication required")
            return None

        if len(self._connections) >= self._max_total_connections:
            await self._close(websocket, WSCloseCode.SERVER_OVERLOADED, "Server at capacity")
            raise ConnectionError(
                f"Server at capacity ({self._max_total_connections} connections)"
            )

        if len(self._by_user.get(identity.user_id, ())) >= self._max_connections_per_user:
            await self._close(websocket, WSCloseCode.POLICY_VIOLATION, "Too many connections")
            raise ConnectionError(
                f"User {identity.user_id} at connection limit ({self._max_connections_per_user})"
            )

        now = self._clock()
        conn = Connection(
            connection_id=uuid.uuid4().hex,
            identity=identity,
            websocket=websocket,
            connected_at=now,
            last_activity=now,
        )
        self._add_local(conn)

        try:
            await self._kvs.hash_set(
                SOCKET_CONNECTIONS, conn.connection_id, conn.to_mirror(self._instance_id)
            )
            await self._presence.mark_connected(identity.user_id, conn.connection_id)
        except StoreUnavailableError:
            self._remove_local(conn.connection_id)
            await self._forget_mirror(conn.connection_id)
            await self._close(websocket, WSCloseCode.SERVER_ERROR, "Store unavailable")
            raise ConnectionError("Shared store unavailable, connection refused")

        await self._metrics.record_connection()

        logger.info(
            "Connection registered",
            connection_id=conn.connection_id,
            user_id=identity.user_id,
            total_connections=len(self._connections),
        )

        try:
            await websocket.send_json({
                "event": CONNECTED_EVENT,
                "data": {
                    "connectionId": conn.connection_id,
                    "userId": identity.user_id,
                    "message": "Connected to chat server",
                },
            })
        except (WebSocketDisconnect, RuntimeError, ConnectionError, OSError) as e:
            logger.info(
                "Client left before connection acknowledgement",
                connection_id=conn.connection_id,
                error_type=type(e).__name__,
            )
            await self.on_disconnect(conn.connection_id)
            raise ConnectionError("Client disconnected during registration") from e
        return conn

    async def on_disconnect(self, connection_id: str) -> Connection | None:
        """
        Forget a connection. No-op for unknown ids.

        Store failures are logged; the reaper removes whatever is left.
        The returned Connection still carries its room ids so the caller
        can release memberships.
        """
        conn = self._remove_local(connection_id)
        if conn is None:
            return None

        try:
            await self._kvs.hash_delete_field(SOCKET_CONNECTIONS, connection_id)
            await self._presence.mark_disconnected(conn.user_id, connection_id)
        except StoreUnavailableError:
            logger.warning(
                "Disconnect not fully recorded in store",
                connection_id=connection_id,
                user_id=conn.user_id,
            )

        await self._metrics.record_disconnection()
        logger.info(
            "Connection removed",
            connection_id=connection_id,
            user_id=conn.user_id,
            total_connections=len(self._connections),
        )
        return conn

    async def on_activity(self, connection_id: str) -> None:
        """Best-effort last-activity refresh, locally, in the mirror and in presence."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        conn.last_activity = self._clock()
        try:
            await self._write_mirror(conn)
            await self._presence.touch(conn.user_id)
        except StoreUnavailableError:
            logger.debug("Activity not recorded, store unavailable", connection_id=connection_id)

    # =========================================================================
    # Rooms (local set + mirror; membership sets belong to the router)
    # =========================================================================

    async def join_room(self, connection_id: str, room_id: str) -> Connection:
        """
        Raises:
            UnknownConnectionError: If the connection is not registered here.
            StoreUnavailableError: If the mirror cannot be updated.
        """
        conn = self.require(connection_id)
        if room_id in conn.room_ids:
            return conn
        conn.room_ids.add(room_id)
        try:
            await self._write_mirror(conn)
        except StoreUnavailableError:
            conn.room_ids.discard(room_id)
            raise
        return conn

    async def leave_room(self, connection_id: str, room_id: str) -> bool:
        """
        Returns:
            True if the connection had joined the room.
        """
        conn = self.require(connection_id)
        if room_id not in conn.room_ids:
            return False
        conn.room_ids.discard(room_id)
        try:
            await self._write_mirror(conn)
        except StoreUnavailableError:
            logger.warning(
                "Room leave not mirrored",
                connection_id=connection_id,
                room_id=room_id,
            )
        return True

    async def restore_room(self, connection_id: str, room_id: str) -> None:
        """Undo leave_room after the shared membership could not be released."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        conn.room_ids.add(room_id)
        try:
            await self._write_mirror(conn)
        except StoreUnavailableError:
            logger.debug("Room restore not mirrored", connection_id=connection_id, room_id=room_id)

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def require(self, connection_id: str) -> Connection:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise UnknownConnectionError(
                "Connection is not registered", connection_id=connection_id
            )
        return conn

    def connections_for_user(self, user_id: str) -> list[Connection]:
        return [
            self._connections[cid]
            for cid in self._by_user.get(user_id, ())
            if cid in self._connections
        ]

    def all_connections(self) -> list[Connection]:
        return list(self._connections.values())

    # =========================================================================
    # Dead connections (failed sends)
    # =========================================================================

    def mark_dead(self, connection_id: str) -> None:
        if connection_id not in self._connections:
            return
        if len(self._dead) >= WSConstants.MAX_DEAD_CONNECTIONS:
            oldest = min(self._dead, key=self._dead.__getitem__)
            del self._dead[oldest]
        self._dead[connection_id] = self._clock()

    def pop_dead(self) -> list[str]:
        dead = list(self._dead)
        self._dead.clear()
        return dead

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats_sync(self) -> dict[str, Any]:
        """Local-only stats, safe to call from a sync health check."""
        return {
            "instance_id": self._instance_id,
            "total_connections": len(self._connections),
            "active_users": len(self._by_user),
            "dead_connections": len(self._dead),
            "max_total_connections": self._max_total_connections,
        }

    async def stats_snapshot(self) -> dict[str, Any]:
        """Local counts plus the cluster counters kept in the store."""
        return {
            **self.get_stats_sync(),
            "cluster": await self._metrics.snapshot(),
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _add_local(self, conn: Connection) -> None:
        self._connections[conn.connection_id] = conn
        self._by_user.setdefault(conn.user_id, set()).add(conn.connection_id)

    def _remove_local(self, connection_id: str) -> Connection | None:
        conn = self._connections.pop(connection_id, None)
        self._dead.pop(connection_id, None)
        if conn is None:
            return None
        user_connections = self._by_user.get(conn.user_id)
        if user_connections is not None:
            user_connections.discard(connection_id)
            if not user_connections:
                del self._by_user[conn.user_id]
        return conn

    async def _write_mirror(self, conn: Connection) -> None:
        await self._kvs.hash_set(
            SOCKET_CONNECTIONS, conn.connection_id, conn.to_mirror(self._instance_id)
        )

    async def _forget_mirror(self, connection_id: str) -> None:
        try:
            await self._kvs.hash_delete_field(SOCKET_CONNECTIONS, connection_id)
        except StoreUnavailableError:
            logger.debug("Mirror entry left for reaper", connection_id=connection_id)

    async def _close(self, websocket: "WebSocket", code: int, reason: str) -> None:
        try:
            await websocket.close(code=code, reason=reason)
        except (RuntimeError, ConnectionError, OSError) as e:
            logger.debug("Close on rejected socket failed", code=code, error=str(e))
