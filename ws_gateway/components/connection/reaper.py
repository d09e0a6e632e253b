"""
Cluster reaper for connections orphaned by dead gateway instances.

Every instance keeps `instance:{instance_id}:alive` fresh with a short TTL.
A mirror entry in `socket_connections` whose owner's liveness key has
expired belongs to a process that died without running its disconnect
path; the reaper removes it, takes the connection out of presence and
releases its room memberships. Any instance may reap any other's entries;
running the same cleanup twice is harmless.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Callable

from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.infrastructure.redis.constants import (
    GATEWAY_INSTANCES,
    SOCKET_CONNECTIONS,
    instance_alive_key,
)
from ws_gateway.components.core.exceptions import StoreUnavailableError

if TYPE_CHECKING:
    from ws_gateway.components.broadcast.router import BroadcastRouter
    from ws_gateway.components.connection.registry import ConnectionRegistry
    from ws_gateway.components.presence.tracker import PresenceTracker
    from ws_gateway.components.store.kvs import KVSClient

logger = get_logger(__name__)


class ConnectionReaper:
    def __init__(
        self,
        kvs: "KVSClient",
        registry: "ConnectionRegistry",
        presence: "PresenceTracker",
        router: "BroadcastRouter",
        instance_id: str,
        heartbeat_ttl: int = settings.instance_heartbeat_ttl,
        retention_seconds: int = settings.presence_retention_seconds,
        clock: Callable[[], float] = time.time,
    ):
        self._kvs = kvs
        self._registry = registry
        self._presence = presence
        self._router = router
        self._instance_id = instance_id
        self._heartbeat_ttl = heartbeat_ttl
        self._retention_seconds = retention_seconds
        self._clock = clock

        self._reaped_total = 0
        self._runs = 0

    async def heartbeat(self) -> None:
        """Announce this instance as alive for another TTL period."""
        await self._kvs.set(
            instance_alive_key(self._instance_id),
            {"instance_id": self._instance_id, "ts": self._clock()},
            ttl=self._heartbeat_ttl,
        )
        await self._kvs.set_add(GATEWAY_INSTANCES, self._instance_id)

    async def reap(self) -> int:
        """
        Remove mirror entries whose owner is gone.

        Entries owned by this instance are orphans when the local registry no
        longer knows them (a previous process that reused the instance id).

        Returns:
            Number of connections reaped.
        """
        entries = await self._kvs.hash_get_all(SOCKET_CONNECTIONS)
        liveness: dict[str, bool] = {}
        reaped = 0

        for connection_id, mirror in entries.items():
            if not isinstance(mirror, dict):
                await self._kvs.hash_delete_field(SOCKET_CONNECTIONS, connection_id)
                reaped += 1
                continue

            owner = str(mirror.get("instance_id") or "")
            if owner == self._instance_id:
                if self._registry.get(connection_id) is not None:
                    continue
            else:
                if owner not in liveness:
                    liveness[owner] = bool(owner) and await self._is_alive(owner)
                if liveness[owner]:
                    continue

            await self._reap_entry(connection_id, mirror)
            reaped += 1

        dead_instances = [owner for owner, alive in liveness.items() if owner and not alive]
        if dead_instances:
            await self._kvs.set_remove(GATEWAY_INSTANCES, *dead_instances)

        self._reaped_total += reaped
        if reaped:
            logger.info(
                "Reaped orphaned connections",
                count=reaped,
                dead_instances=dead_instances,
            )
        return reaped

    async def run_once(self) -> int:
        """One reaper pass: orphaned connections, then stale offline presence."""
        self._runs += 1
        reaped = await self.reap()
        await self._presence.prune_offline(self._retention_seconds)
        return reaped

    async def _is_alive(self, instance_id: str) -> bool:
        return await self._kvs.get(instance_alive_key(instance_id)) is not None

    async def _reap_entry(self, connection_id: str, mirror: dict[str, Any]) -> None:
        await self._kvs.hash_delete_field(SOCKET_CONNECTIONS, connection_id)
        user_id = mirror.get("user_id")
        if user_id:
            await self._presence.mark_disconnected(str(user_id), connection_id)
        await self._router.release_orphan(mirror)
        logger.debug(
            "Reaped connection",
            connection_id=connection_id,
            user_id=user_id,
            owner=mirror.get("instance_id"),
        )

    # =========================================================================
    # Background loops
    # =========================================================================

    async def run_heartbeat_loop(self, interval: float = settings.instance_heartbeat_interval) -> None:
        while True:
            try:
                await self.heartbeat()
            except StoreUnavailableError:
                logger.warning("Instance heartbeat failed", instance_id=self._instance_id)
            await asyncio.sleep(interval)

    async def run_reaper_loop(self, interval: float = settings.reaper_interval) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_once()
            except StoreUnavailableError:
                logger.warning("Reaper pass skipped, store unavailable")
            except Exception as e:
                logger.error("Error in reaper pass", error=str(e), exc_info=True)

    def get_stats(self) -> dict[str, Any]:
        return {"runs": self._runs, "reaped_total": self._reaped_total}
