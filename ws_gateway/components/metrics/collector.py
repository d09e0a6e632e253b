"""
Gateway metrics kept in the shared store.

Counters are cluster-wide: every instance increments the same keys. All
writes are best-effort; a store outage loses samples, never a client action.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable

from shared.config.logging import get_logger
from shared.infrastructure.redis import constants as keys
from ws_gateway.components.core.exceptions import StoreUnavailableError

if TYPE_CHECKING:
    from ws_gateway.components.store.kvs import KVSClient

logger = get_logger(__name__)


class GatewayMetrics:
    """
    Connection and message counters.

    Usage:
        metrics = GatewayMetrics(kvs)
        await metrics.record_connection()
        await metrics.record_message("general", size=len(content))
        snapshot = await metrics.snapshot()
    """

    def __init__(self, kvs: "KVSClient", clock: Callable[[], float] = time.time):
        self._kvs = kvs
        self._clock = clock
        self._dropped_samples = 0

    # =========================================================================
    # Bucket keys
    # =========================================================================

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def minute_bucket(self) -> str:
        return self._now().strftime("%Y-%m-%d-%H-%M")

    def hour_bucket(self) -> str:
        return self._now().strftime("%Y-%m-%d-%H")

    # =========================================================================
    # Recording
    # =========================================================================

    async def record_connection(self) -> None:
        try:
            total = await self._kvs.increment(keys.METRICS_CONNECTIONS_TOTAL)
            peak = await self._kvs.get_int(keys.METRICS_CONNECTIONS_PEAK)
            if total > peak:
                await self._kvs.set(keys.METRICS_CONNECTIONS_PEAK, total)
            await self._kvs.increment_in_window(
                keys.METRICS_CONNECTIONS_MINUTE_PREFIX + self.minute_bucket(),
                keys.METRICS_MINUTE_TTL,
            )
        except StoreUnavailableError:
            self._dropped("connection")

    async def record_disconnection(self) -> None:
        try:
            total = await self._kvs.decrement(keys.METRICS_CONNECTIONS_TOTAL)
            if total < 0:
                await self._kvs.set(keys.METRICS_CONNECTIONS_TOTAL, 0)
        except StoreUnavailableError:
            self._dropped("disconnection")

    async def record_message(self, room_id: str | None, size: int) -> None:
        try:
            await self._kvs.increment(keys.METRICS_MESSAGES_TOTAL)
            await self._kvs.increment(keys.METRICS_MESSAGES_BYTES, size)
            await self._kvs.increment_in_window(
                keys.METRICS_MESSAGES_MINUTE_PREFIX + self.minute_bucket(),
                keys.METRICS_MINUTE_TTL,
            )
            await self._kvs.increment_in_window(
                keys.METRICS_MESSAGES_HOUR_PREFIX + self.hour_bucket(),
                keys.METRICS_HOUR_TTL,
            )
            if room_id:
                await self._kvs.increment(keys.chat_messages_key(room_id))
        except StoreUnavailableError:
            self._dropped("message")

    async def record_error(self, code: str) -> None:
        try:
            await self._kvs.increment(keys.METRICS_ERRORS_PREFIX + code)
        except StoreUnavailableError:
            self._dropped("error")

    def _dropped(self, kind: str) -> None:
        self._dropped_samples += 1
        logger.debug("Metrics sample dropped, store unavailable", kind=kind)

    # =========================================================================
    # Reading
    # =========================================================================

    async def snapshot(self) -> dict[str, Any]:
        """Current cluster counters; empty with an error flag when the store is down."""
        try:
            return {
                "connections_total": await self._kvs.get_int(keys.METRICS_CONNECTIONS_TOTAL),
                "connections_peak": await self._kvs.get_int(keys.METRICS_CONNECTIONS_PEAK),
                "connections_this_minute": await self._kvs.get_int(
                    keys.METRICS_CONNECTIONS_MINUTE_PREFIX + self.minute_bucket()
                ),
                "messages_total": await self._kvs.get_int(keys.METRICS_MESSAGES_TOTAL),
                "messages_this_minute": await self._kvs.get_int(
                    keys.METRICS_MESSAGES_MINUTE_PREFIX + self.minute_bucket()
                ),
                "messages_this_hour": await self._kvs.get_int(
                    keys.METRICS_MESSAGES_HOUR_PREFIX + self.hour_bucket()
                ),
                "message_bytes": await self._kvs.get_int(keys.METRICS_MESSAGES_BYTES),
                "dropped_samples": self._dropped_samples,
            }
        except StoreUnavailableError:
            return {"error": "store_unavailable", "dropped_samples": self._dropped_samples}
