"""
Presence Tracker.

Cluster-wide presence per user, stored as one JSON record per user in the
`user_presence` hash. A user's status is derived from their connection ids:
offline exactly when the set is empty. While at least one connection is open
the client chooses between online, away and busy.

Updates are read-modify-write on the whole record and last writer wins.
Two instances connecting or disconnecting the same user at the same moment
can lose one of the updates; the reaper repairs entries left by dead
instances.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.infrastructure.redis.constants import (
    ONLINE_USERS,
    USER_PRESENCE,
    user_rooms_key,
)
from ws_gateway.components.broadcast.envelope import BroadcastEnvelope
from ws_gateway.components.core.context import iso_timestamp
from ws_gateway.components.core.exceptions import (
    PresenceError,
    StoreUnavailableError,
)

if TYPE_CHECKING:
    from ws_gateway.components.store.kvs import KVSClient

logger = get_logger(__name__)

PRESENCE_UPDATE_EVENT = "presence_update"


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


# Statuses a client may pick while connected
SELECTABLE_STATUSES: frozenset[PresenceStatus] = frozenset({
    PresenceStatus.ONLINE,
    PresenceStatus.AWAY,
    PresenceStatus.BUSY,
})


@dataclass
class UserPresence:
    """Presence record for one user, aggregated over all of their connections."""

    user_id: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen: float = 0.0
    connection_ids: set[str] = field(default_factory=set)
    active_chat_id: str | None = None
    custom_status: str | None = None

    @property
    def is_online(self) -> bool:
        return bool(self.connection_ids)

    def to_store(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "last_seen": self.last_seen,
            "connection_ids": sorted(self.connection_ids),
            "active_chat_id": self.active_chat_id,
            "custom_status": self.custom_status,
        }

    @classmethod
    def from_store(cls, data: Any) -> "UserPresence | None":
        """Rebuild from a stored record; None if the record is unusable."""
        if not isinstance(data, dict) or not data.get("user_id"):
            return None
        try:
            status = PresenceStatus(data.get("status", PresenceStatus.OFFLINE.value))
        except ValueError:
            status = PresenceStatus.OFFLINE
        connection_ids = data.get("connection_ids") or []
        return cls(
            user_id=str(data["user_id"]),
            status=status,
            last_seen=float(data.get("last_seen") or 0.0),
            connection_ids={str(c) for c in connection_ids},
            active_chat_id=data.get("active_chat_id"),
            custom_status=data.get("custom_status"),
        )

    def to_payload(self) -> dict[str, Any]:
        """Client-facing form (camelCase, connection ids reduced to a count)."""
        return {
            "userId": self.user_id,
            "status": self.status.value,
            "lastSeen": iso_timestamp(self.last_seen) if self.last_seen else None,
            "activeChatId": self.active_chat_id,
            "customStatus": self.custom_status,
            "connectionCount": len(self.connection_ids),
        }


class PresenceTracker:
    """
    Maintains UserPresence records and announces changes.

    Changes are published as `presence_update` envelopes addressed to the
    rooms the user is joined to and to the user's own connections. Presence
    envelopes carry no origin, so every instance (the publisher included)
    delivers them to its local sockets. Publishing is best-effort: the
    persisted record is the source of truth and can always be queried.
    """

    def __init__(
        self,
        kvs: "KVSClient",
        channel: str = settings.broadcast_channel,
        clock: Callable[[], float] = time.time,
    ):
        self._kvs = kvs
        self._channel = channel
        self._clock = clock

    # =========================================================================
    # Connection-driven transitions
    # =========================================================================

    async def mark_connected(self, user_id: str, connection_id: str) -> UserPresence:
        """
        Add a connection to the user's presence, going online if offline.

        Raises:
            StoreUnavailableError: If the record cannot be read or written.
        """
        presence = await self.get_presence(user_id) or UserPresence(user_id=user_id)
        presence.connection_ids.add(connection_id)
        if presence.status == PresenceStatus.OFFLINE:
            presence.status = PresenceStatus.ONLINE
        presence.last_seen = self._clock()

        await self._save(presence)
        await self._kvs.set_add(ONLINE_USERS, user_id)
        await self._publish(presence)
        return presence

    async def mark_disconnected(self, user_id: str, connection_id: str) -> UserPresence | None:
        """
        Remove a connection; the user goes offline when it was the last one.

        A presence update is published whether or not the status changed.
        Returns None when the user has no presence record.
        """
        presence = await self.get_presence(user_id)
        if presence is None:
            return None

        presence.connection_ids.discard(connection_id)
        presence.last_seen = self._clock()
        if not presence.connection_ids:
            presence.status = PresenceStatus.OFFLINE
            presence.active_chat_id = None

        await self._save(presence)
        if presence.status == PresenceStatus.OFFLINE:
            await self._kvs.set_remove(ONLINE_USERS, user_id)
        await self._publish(presence)
        return presence

    # =========================================================================
    # Client-driven updates
    # =========================================================================

    async def set_status(
        self,
        user_id: str,
        status: PresenceStatus | str,
        custom_status: str | None = None,
    ) -> UserPresence:
        """
        Change the status of a connected user.

        Raises:
            PresenceError: If the user has no open connection, or the status
                is not one a client may pick.
        """
        try:
            status = PresenceStatus(status)
        except ValueError:
            raise PresenceError(f"Unknown presence status: {status}", user_id=user_id)

        if status not in SELECTABLE_STATUSES:
            raise PresenceError(
                "Offline is derived from connections and cannot be set",
                user_id=user_id,
            )

        presence = await self.get_presence(user_id)
        if presence is None or not presence.is_online:
            raise PresenceError("Cannot set presence while offline", user_id=user_id)

        presence.status = status
        presence.custom_status = custom_status
        presence.last_seen = self._clock()
        await self._save(presence)
        await self._publish(presence)
        return presence

    async def set_active_chat(self, user_id: str, chat_id: str | None) -> None:
        """Persist the chat the user is looking at. Not published."""
        presence = await self.get_presence(user_id)
        if presence is None:
            return
        presence.active_chat_id = chat_id
        await self._save(presence)

    async def clear_active_chat(self, user_id: str) -> None:
        await self.set_active_chat(user_id, None)

    async def touch(self, user_id: str) -> None:
        """Refresh last-seen without announcing anything."""
        presence = await self.get_presence(user_id)
        if presence is None:
            return
        presence.last_seen = self._clock()
        await self._save(presence)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_presence(self, user_id: str) -> UserPresence | None:
        return UserPresence.from_store(await self._kvs.hash_get(USER_PRESENCE, user_id))

    async def get_bulk_presence(self, user_ids: Iterable[str]) -> dict[str, UserPresence]:
        """Presence for the requested users; unknown users are omitted."""
        records = await self._kvs.hash_get_many(USER_PRESENCE, list(dict.fromkeys(user_ids)))
        result = {}
        for user_id, data in records.items():
            presence = UserPresence.from_store(data)
            if presence is not None:
                result[user_id] = presence
        return result

    async def is_online(self, user_id: str) -> bool:
        return await self._kvs.set_contains(ONLINE_USERS, user_id)

    async def list_online_users(self) -> set[str]:
        return await self._kvs.set_members(ONLINE_USERS)

    async def connection_ids(self, user_id: str) -> set[str]:
        presence = await self.get_presence(user_id)
        return set(presence.connection_ids) if presence else set()

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def prune_offline(self, older_than: float) -> int:
        """
        Delete offline records whose last-seen is more than older_than seconds ago.

        Returns:
            Number of records removed.
        """
        cutoff = self._clock() - older_than
        records = await self._kvs.hash_get_all(USER_PRESENCE)
        stale = []
        for user_id, data in records.items():
            presence = UserPresence.from_store(data)
            if presence is None:
                stale.append(user_id)
            elif not presence.is_online and presence.last_seen < cutoff:
                stale.append(user_id)

        if stale:
            await self._kvs.hash_delete_field(USER_PRESENCE, *stale)
            logger.info("Pruned offline presence records", count=len(stale))
        return len(stale)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _save(self, presence: UserPresence) -> None:
        await self._kvs.hash_set(USER_PRESENCE, presence.user_id, presence.to_store())

    async def _publish(self, presence: UserPresence) -> None:
        try:
            room_ids = await self._kvs.set_members(user_rooms_key(presence.user_id))
            envelope = BroadcastEnvelope(
                event=PRESENCE_UPDATE_EVENT,
                payload={"userId": presence.user_id, "presence": presence.to_payload()},
                room_ids=tuple(sorted(room_ids)),
                user_ids=(presence.user_id,),
            )
            await self._kvs.publish(self._channel, envelope.to_dict())
        except StoreUnavailableError:
            logger.warning(
                "Presence update not published",
                user_id=presence.user_id,
                status=presence.status.value,
            )
