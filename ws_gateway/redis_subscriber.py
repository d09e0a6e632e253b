"""
Redis pub/sub subscriber for the WebSocket gateway.

Keeps one subscription alive for the life of the process: messages on the
subscribed channels are handed to a callback, connection errors trigger a
jittered reconnect guarded by a circuit breaker. The loop never gives up on
its own; it only ends when cancelled.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import redis.asyncio as redis
import redis.exceptions

from shared.config.settings import settings
from shared.config.logging import get_logger
from ws_gateway.components.core.constants import WSConstants
from ws_gateway.components.resilience.circuit_breaker import CircuitBreaker
from ws_gateway.components.resilience.retry import (
    calculate_delay_with_jitter,
    create_redis_retry_config,
)

logger = get_logger(__name__)

MAX_RECONNECT_ATTEMPTS = settings.redis_max_reconnect_attempts
PUBSUB_CLEANUP_TIMEOUT = settings.redis_pubsub_cleanup_timeout
PUBSUB_RECONNECT_TOTAL_TIMEOUT = settings.redis_pubsub_reconnect_total_timeout

# Circuit breaker shared by every subscription in this process
_redis_circuit_breaker = CircuitBreaker(
    name="redis_subscriber",
    failure_threshold=WSConstants.CIRCUIT_FAILURE_THRESHOLD,
    recovery_timeout=WSConstants.CIRCUIT_RECOVERY_TIMEOUT,
)

_retry_config = create_redis_retry_config(
    max_delay=settings.redis_max_reconnect_delay,
    max_attempts=MAX_RECONNECT_ATTEMPTS,
)

_stats = {
    "received": 0,
    "oversized": 0,
    "callback_errors": 0,
    "reconnects": 0,
    # Subscription loops currently without a live pubsub
    "disconnected_subscriptions": 0,
}


async def run_subscriber(
    client: "redis.Redis",
    channels: list[str],
    on_message: Callable[[str], Awaitable[None]],
) -> None:
    """
    Subscribe to Redis channels and dispatch raw message data.

    Runs until cancelled. A failing callback is logged and does not stop
    the loop. Connection errors, including ones raised while subscribing,
    are retried with jittered backoff for as long as Redis stays down; once
    the reconnect budget is spent the outage is escalated in the logs.

    Args:
        client: Redis client to open pub/sub connections from.
        channels: Exact channel names to subscribe to.
        on_message: Async callback receiving the raw message payload.
    """
    pubsub: Any = None
    reconnect_attempts = 0
    _stats["disconnected_subscriptions"] += 1

    try:
        while True:
            try:
                if pubsub is None:
                    pubsub = await _open_pubsub(client, channels)
                    _stats["disconnected_subscriptions"] -= 1
                    if reconnect_attempts:
                        _stats["reconnects"] += 1
                        logger.info("Redis subscriber reconnected", channels=channels)
                    else:
                        logger.info("Redis subscriber started", channels=channels)
                    reconnect_attempts = 0

                if not _redis_circuit_breaker.allow_request():
                    logger.warning(
                        "Circuit breaker is open, waiting for recovery",
                        state=_redis_circuit_breaker.state.value,
                    )
                    await asyncio.sleep(WSConstants.CIRCUIT_RECOVERY_TIMEOUT / 2)
                    continue

                msg = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if msg is None:
                    await asyncio.sleep(0.01)
                    continue

                if msg.get("type") != "message":
                    continue

                _redis_circuit_breaker.record_success()
                await _handle_message(msg, on_message)

            except redis.exceptions.TimeoutError:
                # Normal for pubsub - continue listening
                continue

            except redis.exceptions.ConnectionError as e:
                _redis_circuit_breaker.record_failure(e)
                if pubsub is not None:
                    stale, pubsub = pubsub, None
                    _stats["disconnected_subscriptions"] += 1
                    await _discard_pubsub(stale, channels)
                reconnect_attempts += 1

                if reconnect_attempts == MAX_RECONNECT_ATTEMPTS + 1:
                    logger.error(
                        "Redis subscriber still disconnected after max reconnection attempts",
                        attempts=reconnect_attempts,
                        max_attempts=MAX_RECONNECT_ATTEMPTS,
                        channels=channels,
                    )

                delay = calculate_delay_with_jitter(reconnect_attempts - 1, _retry_config)
                logger.warning(
                    "Redis connection error, reconnecting with jitter...",
                    error=str(e),
                    attempt=reconnect_attempts,
                    delay_with_jitter=round(delay, 2),
                    circuit_state=_redis_circuit_breaker.state.value,
                )
                await asyncio.sleep(delay)

    except asyncio.CancelledError:
        logger.info("Redis subscriber cancelled", channels=channels)
        raise
    finally:
        if pubsub is None:
            _stats["disconnected_subscriptions"] -= 1
        else:
            await _discard_pubsub(pubsub, channels)


async def _handle_message(
    msg: dict[str, Any],
    on_message: Callable[[str], Awaitable[None]],
) -> None:
    data = msg.get("data")
    if not isinstance(data, str):
        return
    if len(data) > WSConstants.MAX_ENVELOPE_SIZE:
        _stats["oversized"] += 1
        logger.warning(
            "Dropping oversized pubsub message",
            channel=msg.get("channel"),
            size=len(data),
        )
        return

    _stats["received"] += 1
    try:
        await on_message(data)
    except Exception as e:
        _stats["callback_errors"] += 1
        logger.error(
            "Subscriber callback failed",
            channel=msg.get("channel"),
            error=str(e),
            exc_info=True,
        )


async def _open_pubsub(client: "redis.Redis", channels: list[str]) -> Any:
    """
    Open a fresh subscription.

    Raises:
        redis.exceptions.ConnectionError: If Redis is unreachable or the
            subscription does not complete within the reconnect timeout.
    """
    pubsub = client.pubsub()
    try:
        await asyncio.wait_for(
            pubsub.subscribe(*channels),
            timeout=PUBSUB_RECONNECT_TOTAL_TIMEOUT,
        )
    except (asyncio.TimeoutError, redis.exceptions.RedisError) as e:
        await _discard_pubsub(pubsub, channels)
        if isinstance(e, redis.exceptions.ConnectionError):
            raise
        raise redis.exceptions.ConnectionError(f"Subscribe failed: {e!r}") from e
    return pubsub


async def _discard_pubsub(pubsub: Any, channels: list[str]) -> None:
    """Unsubscribe and close a pubsub handle, tolerating a dead connection."""
    try:
        await asyncio.wait_for(
            pubsub.unsubscribe(*channels),
            timeout=PUBSUB_CLEANUP_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning("Pubsub unsubscribe timed out", timeout=PUBSUB_CLEANUP_TIMEOUT)
    except Exception as e:
        logger.debug("Error during pubsub cleanup", error=str(e))

    try:
        await asyncio.wait_for(pubsub.aclose(), timeout=PUBSUB_CLEANUP_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Pubsub close timed out", timeout=PUBSUB_CLEANUP_TIMEOUT)
    except Exception as e:
        logger.debug("Error closing pubsub", error=str(e))


def get_subscriber_metrics() -> dict[str, Any]:
    """Subscriber counters and circuit breaker state for health checks."""
    return {
        **_stats,
        "circuit_breaker": _redis_circuit_breaker.get_stats(),
    }
