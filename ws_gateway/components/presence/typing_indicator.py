"""
Typing indicators.

One short-lived key per (room, user). Keys expire on their own; stop() only
makes the indicator disappear sooner.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from shared.config.settings import settings
from shared.infrastructure.redis.constants import room_users_key, typing_key

if TYPE_CHECKING:
    from ws_gateway.components.store.kvs import KVSClient


class TypingIndicator:
    def __init__(self, kvs: "KVSClient", ttl: int = settings.typing_indicator_ttl):
        self._kvs = kvs
        self._ttl = ttl

    @property
    def ttl(self) -> int:
        return self._ttl

    async def start(self, room_id: str, user_id: str, username: str | None = None) -> None:
        """Set or refresh the indicator. Each call restarts the TTL."""
        await self._kvs.set(
            typing_key(room_id, user_id),
            {"user_id": user_id, "username": username, "started_at": time.time()},
            ttl=self._ttl,
        )

    async def stop(self, room_id: str, user_id: str) -> None:
        await self._kvs.delete(typing_key(room_id, user_id))

    async def is_typing(self, room_id: str, user_id: str) -> bool:
        return await self._kvs.get(typing_key(room_id, user_id)) is not None

    async def typing_users(self, room_id: str) -> list[str]:
        """Room members whose indicator has not expired."""
        members = await self._kvs.set_members(room_users_key(room_id))
        return [
            user_id
            for user_id in sorted(members)
            if await self._kvs.get(typing_key(room_id, user_id)) is not None
        ]
