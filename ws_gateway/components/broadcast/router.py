"""
Room/Broadcast Router.

Owns room membership and fan-out. No single process knows every socket in
a room, so delivery always takes two paths: this instance emits to its own
sockets directly, and an envelope on the shared channel tells every other
instance to do the same for theirs.

Membership is per user. The user-level sets in the store
(`room:{room_id}:users`, `user:{user_id}:rooms`) only lose a room when no
connection of that user, on any instance, still has it joined.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol

from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.infrastructure.redis.constants import (
    ONLINE_USERS,
    SOCKET_CONNECTIONS,
    room_users_key,
    user_rooms_key,
)
from ws_gateway.components.broadcast.envelope import BroadcastEnvelope
from ws_gateway.components.connection.registry import Connection, is_ws_connected
from ws_gateway.components.core.context import iso_timestamp
from ws_gateway.components.core.exceptions import StoreUnavailableError

if TYPE_CHECKING:
    from ws_gateway.components.connection.registry import ConnectionRegistry
    from ws_gateway.components.presence.tracker import PresenceTracker
    from ws_gateway.components.store.kvs import KVSClient

logger = get_logger(__name__)

USER_JOINED_ROOM_EVENT = "user_joined_room"
USER_LEFT_ROOM_EVENT = "user_left_room"


class DeadConnectionTracker(Protocol):
    """Anything that can queue a connection for cleanup after a failed send."""

    def mark_dead(self, connection_id: str) -> None:
        ...


class BatchBroadcastStrategy:
    """
    Emits one frame to many local connections in parallel batches.

    A connection whose socket is closed, or whose send fails or times out,
    is marked dead so the cleanup loop can disconnect it.
    """

    def __init__(
        self,
        batch_size: int,
        dead_tracker: DeadConnectionTracker | None = None,
        send_timeout: float = settings.ws_send_timeout,
    ) -> None:
        self._batch_size = batch_size
        self._dead_tracker = dead_tracker
        self._send_timeout = send_timeout

    async def _send_single(self, conn: Connection, frame: dict[str, Any]) -> bool:
        if not is_ws_connected(conn.websocket):
            self._mark_dead(conn)
            return False
        try:
            await asyncio.wait_for(conn.websocket.send_json(frame), timeout=self._send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.debug("Send timed out", connection_id=conn.connection_id)
        except Exception as e:
            logger.debug("Send failed", connection_id=conn.connection_id, error=str(e))
        self._mark_dead(conn)
        return False

    def _mark_dead(self, conn: Connection) -> None:
        if self._dead_tracker is not None:
            self._dead_tracker.mark_dead(conn.connection_id)

    async def send_to_connections(
        self,
        connections: list[Connection],
        frame: dict[str, Any],
        context: str,
    ) -> tuple[int, int]:
        """
        Returns:
            Tuple of (sent_count, failed_count).
        """
        sent = 0
        failed = 0
        for i in range(0, len(connections), self._batch_size):
            batch = connections[i:i + self._batch_size]
            results = await asyncio.gather(
                *[self._send_single(conn, frame) for conn in batch],
                return_exceptions=True,
            )
            for result in results:
                if result is True:
                    sent += 1
                else:
                    failed += 1
                    if isinstance(result, Exception):
                        logger.debug("Batch send exception", context=context, error=str(result))

        if failed:
            logger.debug(
                "Broadcast completed with failures",
                context=context,
                sent=sent,
                failed=failed,
            )
        return sent, failed


class BroadcastRouter:
    """
    Room membership plus local and cross-instance delivery.

    Usage:
        router = BroadcastRouter(kvs, registry, presence, instance_id)
        task = router.subscribe()
        await router.join(conn, "general")
        await router.deliver_to_room("general", "new_message", payload)
    """

    def __init__(
        self,
        kvs: "KVSClient",
        registry: "ConnectionRegistry",
        presence: "PresenceTracker",
        instance_id: str,
        channel: str = settings.broadcast_channel,
        batch_size: int = settings.ws_broadcast_batch_size,
        send_timeout: float = settings.ws_send_timeout,
    ):
        self._kvs = kvs
        self._registry = registry
        self._presence = presence
        self._instance_id = instance_id
        self._channel = channel
        self._strategy = BatchBroadcastStrategy(
            batch_size=batch_size,
            dead_tracker=registry,
            send_timeout=send_timeout,
        )
        # room_id -> local connection ids joined to it
        self._room_connections: dict[str, set[str]] = {}

        self._envelopes_published = 0
        self._envelopes_received = 0
        self._envelopes_skipped = 0
        self._envelopes_invalid = 0

    # =========================================================================
    # Membership
    # =========================================================================

    async def join(self, conn: Connection, room_id: str) -> None:
        """
        Add the connection to the room and tell the other members.

        The notice to other instances is best-effort once membership is stored.

        Raises:
            StoreUnavailableError: If the membership sets cannot be updated.
        """
        self._room_connections.setdefault(room_id, set()).add(conn.connection_id)
        try:
            await self._kvs.set_add(room_users_key(room_id), conn.user_id)
            await self._kvs.set_add(user_rooms_key(conn.user_id), room_id)
        except StoreUnavailableError:
            self._discard_local(room_id, conn.connection_id)
            raise

        try:
            await self.deliver_to_room(
                room_id,
                USER_JOINED_ROOM_EVENT,
                {
                    "userId": conn.user_id,
                    "username": conn.username,
                    "roomId": room_id,
                    "timestamp": iso_timestamp(),
                },
                exclude_connection_id=conn.connection_id,
            )
        except StoreUnavailableError:
            logger.warning(
                "Join notice not published",
                connection_id=conn.connection_id,
                room_id=room_id,
            )

    async def leave(self, conn: Connection, room_id: str) -> bool:
        """
        Remove the connection from the room.

        The caller has already dropped the room from the connection's own
        set (ConnectionRegistry.leave_room). Returns True when the user-level
        membership was removed.

        Raises:
            StoreUnavailableError: If the membership sets cannot be updated;
                the connection still receives the room's events.
        """
        self._discard_local(room_id, conn.connection_id)
        try:
            return await self._release_user_membership(
                conn.user_id, conn.username, room_id, conn.connection_id
            )
        except StoreUnavailableError:
            self._room_connections.setdefault(room_id, set()).add(conn.connection_id)
            raise

    async def release_connection(self, conn: Connection) -> None:
        """Drop every room of a disconnected connection. Store failures are logged."""
        for room_id in sorted(conn.room_ids):
            self._discard_local(room_id, conn.connection_id)
            await self._release_quietly(conn.user_id, conn.username, room_id, conn.connection_id)

    async def release_orphan(self, mirror: dict[str, Any]) -> None:
        """
        Drop the rooms of a mirror entry whose owning instance is gone.

        Used by the reaper; there is no local connection to update.
        """
        user_id = str(mirror.get("user_id") or "")
        connection_id = str(mirror.get("connection_id") or "")
        if not user_id or not connection_id:
            return
        for room_id in sorted(mirror.get("room_ids") or ()):
            await self._release_quietly(user_id, mirror.get("username"), str(room_id), connection_id)

    async def _release_quietly(
        self, user_id: str, username: str | None, room_id: str, connection_id: str
    ) -> None:
        try:
            await self._release_user_membership(user_id, username, room_id, connection_id)
        except StoreUnavailableError:
            logger.warning(
                "Room membership not released",
                connection_id=connection_id,
                user_id=user_id,
                room_id=room_id,
            )

    async def _release_user_membership(
        self, user_id: str, username: str | None, room_id: str, connection_id: str
    ) -> bool:
        if await self.user_still_in_room(user_id, room_id, exclude=connection_id):
            return False

        await self._kvs.set_remove(room_users_key(room_id), user_id)
        await self._kvs.set_remove(user_rooms_key(user_id), room_id)
        try:
            await self.deliver_to_room(
                room_id,
                USER_LEFT_ROOM_EVENT,
                {
                    "userId": user_id,
                    "username": username,
                    "roomId": room_id,
                    "timestamp": iso_timestamp(),
                },
            )
        except StoreUnavailableError:
            logger.warning("Leave notice not published", user_id=user_id, room_id=room_id)
        return True

    async def user_still_in_room(self, user_id: str, room_id: str, exclude: str) -> bool:
        """Whether any other connection of the user, here or elsewhere, holds the room."""
        local_ids = set()
        for other in self._registry.connections_for_user(user_id):
            local_ids.add(other.connection_id)
            if other.connection_id != exclude and room_id in other.room_ids:
                return True

        remote_ids = await self._presence.connection_ids(user_id) - local_ids - {exclude}
        if not remote_ids:
            return False
        mirrors = await self._kvs.hash_get_many(SOCKET_CONNECTIONS, sorted(remote_ids))
        return any(
            room_id in (mirror.get("room_ids") or ())
            for mirror in mirrors.values()
            if isinstance(mirror, dict)
        )

    async def online_users_in_room(self, room_id: str) -> list[str]:
        members = await self._kvs.set_members(room_users_key(room_id))
        online = await self._kvs.set_members(ONLINE_USERS)
        return sorted(members & online)

    def local_room_connections(self, room_id: str) -> list[Connection]:
        return [
            conn
            for cid in self._room_connections.get(room_id, ())
            if (conn := self._registry.get(cid)) is not None
        ]

    def _discard_local(self, room_id: str, connection_id: str) -> None:
        members = self._room_connections.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._room_connections[room_id]

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver_to_room(
        self,
        room_id: str,
        event: str,
        payload: dict[str, Any],
        exclude_connection_id: str | None = None,
    ) -> int:
        """
        Emit to local members of the room and publish for every other instance.

        Returns:
            Number of local connections reached.

        Raises:
            StoreUnavailableError: If the envelope could not be published.
        """
        envelope = BroadcastEnvelope(
            event=event,
            payload=payload,
            room_ids=(room_id,),
            exclude_connection_id=exclude_connection_id,
            origin=self._instance_id,
        )
        sent = await self.deliver_local(envelope)
        await self.publish(envelope)
        return sent

    async def deliver_to_user(self, user_id: str, event: str, payload: dict[str, Any]) -> int:
        """
        Emit to every connection of the user, wherever it lives.

        Connection ids come from presence plus this instance's own table;
        the ones owned elsewhere are addressed by id in a published envelope.
        """
        local_ids = {conn.connection_id for conn in self._registry.connections_for_user(user_id)}
        all_ids = await self._presence.connection_ids(user_id) | local_ids
        remote_ids = tuple(sorted(all_ids - local_ids))

        sent = await self.deliver_local(
            BroadcastEnvelope(event=event, payload=payload, user_ids=(user_id,))
        )
        if remote_ids:
            await self.publish(BroadcastEnvelope(
                event=event,
                payload=payload,
                connection_ids=remote_ids,
                origin=self._instance_id,
            ))
        return sent

    async def deliver_local(self, envelope: BroadcastEnvelope) -> int:
        targets = self.resolve_local_targets(envelope)
        if not targets:
            return 0
        sent, _ = await self._strategy.send_to_connections(
            targets, envelope.to_frame(), envelope.event
        )
        return sent

    def resolve_local_targets(self, envelope: BroadcastEnvelope) -> list[Connection]:
        """Local connections addressed by the envelope, each once."""
        targets: dict[str, Connection] = {}
        for room_id in envelope.room_ids:
            for conn in self.local_room_connections(room_id):
                targets[conn.connection_id] = conn
        for user_id in envelope.user_ids:
            for conn in self._registry.connections_for_user(user_id):
                targets[conn.connection_id] = conn
        for connection_id in envelope.connection_ids:
            conn = self._registry.get(connection_id)
            if conn is not None:
                targets[connection_id] = conn
        if envelope.exclude_connection_id is not None:
            targets.pop(envelope.exclude_connection_id, None)
        return list(targets.values())

    # =========================================================================
    # Cross-instance channel
    # =========================================================================

    async def publish(self, envelope: BroadcastEnvelope) -> None:
        await self._kvs.publish(self._channel, envelope.to_dict())
        self._envelopes_published += 1

    def subscribe(self) -> asyncio.Task:
        """Start consuming the shared channel in a background task."""
        return self._kvs.subscribe(self._channel, self.on_broadcast_received)

    async def on_broadcast_received(self, message: Any) -> None:
        """Deliver an envelope from the shared channel to local connections."""
        try:
            envelope = BroadcastEnvelope.from_dict(message)
        except ValueError as e:
            self._envelopes_invalid += 1
            logger.warning("Discarding malformed envelope", error=str(e))
            return

        if envelope.origin is not None and envelope.origin == self._instance_id:
            self._envelopes_skipped += 1
            return

        self._envelopes_received += 1
        sent = await self.deliver_local(envelope)
        logger.debug(
            "Envelope delivered",
            envelope_id=envelope.envelope_id,
            event=envelope.event,
            origin=envelope.origin,
            sent=sent,
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "local_rooms": len(self._room_connections),
            "envelopes_published": self._envelopes_published,
            "envelopes_received": self._envelopes_received,
            "envelopes_skipped_own": self._envelopes_skipped,
            "envelopes_invalid": self._envelopes_invalid,
        }

