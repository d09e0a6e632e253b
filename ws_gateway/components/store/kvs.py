"""
Shared Key-Value Store client.

Thin async wrapper over redis.asyncio that every cluster-visible piece of
gateway state goes through. Values are JSON-encoded on write and decoded on
read; there is no local caching, every lookup round-trips to Redis.

Error contract:
- Any redis.exceptions.RedisError becomes StoreUnavailableError.
- A value that fails to decode is treated as absent, unless the caller asks
  for strict=True, in which case CorruptValueError is raised.
"""

from __future__ import annotations

import asyncio
import functools
import json
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import redis.asyncio as redis
from redis.exceptions import NoScriptError, RedisError

from shared.config.logging import get_logger
from ws_gateway.components.core.exceptions import (
    CorruptValueError,
    StoreUnavailableError,
)
from ws_gateway.components.store.lua_scripts import INCR_WINDOW_SCRIPT

logger = get_logger(__name__)

T = TypeVar("T")

MessageHandler = Callable[[Any], Awaitable[None]]


def _store_call(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Translate Redis failures into StoreUnavailableError."""

    @functools.wraps(func)
    async def wrapper(self: "KVSClient", *args: Any, **kwargs: Any) -> T:
        try:
            return await func(self, *args, **kwargs)
        except RedisError as e:
            logger.warning(
                "Store command failed",
                command=func.__name__,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise StoreUnavailableError(command=func.__name__) from e

    return wrapper


def encode(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


def decode(raw: str | None, *, key: str, strict: bool = False) -> Any:
    """
    Decode a stored JSON value.

    Args:
        raw: Raw string from Redis (None when absent).
        key: Key or hash field, for error reporting.
        strict: Raise instead of returning None on malformed data.
    """
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        if strict:
            raise CorruptValueError(f"Corrupt value at {key}", key=key) from e
        logger.warning("Discarding undecodable store value", key=key)
        return None


def _report_subscription_end(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    logger.error(
        "Store subscription stopped, cross-instance delivery is down",
        task=task.get_name(),
        error=repr(task.exception()),
    )


class KVSClient:
    """
    Async client for the shared store.

    Usage:
        kvs = KVSClient(await get_redis_pool())
        await kvs.hash_set("user_presence", user_id, presence.to_store())
        task = kvs.subscribe("ws:broadcast", router.on_broadcast_received)
    """

    def __init__(self, client: redis.Redis):
        self._redis = client
        self._subscriptions: list[asyncio.Task] = []
        self._incr_window_sha: str | None = None
        self._script_lock = asyncio.Lock()

    @property
    def redis(self) -> redis.Redis:
        return self._redis

    # =========================================================================
    # Strings
    # =========================================================================

    @_store_call
    async def get(self, key: str, strict: bool = False) -> Any:
        return decode(await self._redis.get(key), key=key, strict=strict)

    @_store_call
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        await self._redis.set(key, encode(value), ex=ttl)

    @_store_call
    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._redis.delete(*keys)

    @_store_call
    async def increment(self, key: str, amount: int = 1) -> int:
        return await self._redis.incrby(key, amount)

    @_store_call
    async def increment_in_window(self, key: str, window_seconds: int) -> int:
        """
        Increment a counter and make sure it expires within the window.

        INCR and EXPIRE run as one Lua script, so the key always carries a TTL.
        Returns the count for the current window.
        """
        async with self._script_lock:
            if self._incr_window_sha is None:
                self._incr_window_sha = await self._redis.script_load(INCR_WINDOW_SCRIPT)
            sha = self._incr_window_sha
        try:
            result = await self._redis.evalsha(sha, 1, key, window_seconds)
        except NoScriptError:
            # Script cache was flushed on the server
            logger.debug("Lua script cache miss, re-registering", key=key)
            self._incr_window_sha = await self._redis.script_load(INCR_WINDOW_SCRIPT)
            result = await self._redis.evalsha(self._incr_window_sha, 1, key, window_seconds)
        return int(result[0])

    @_store_call
    async def decrement(self, key: str, amount: int = 1) -> int:
        return await self._redis.decrby(key, amount)

    @_store_call
    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._redis.expire(key, seconds))

    @_store_call
    async def get_int(self, key: str) -> int:
        """Read a counter written by increment(); absent reads as 0."""
        raw = await self._redis.get(key)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            logger.warning("Counter holds a non-integer value", key=key)
            return 0

    # =========================================================================
    # Hashes
    # =========================================================================

    @_store_call
    async def hash_set(self, name: str, key: str, value: Any) -> None:
        await self._redis.hset(name, key, encode(value))

    @_store_call
    async def hash_get(self, name: str, key: str, strict: bool = False) -> Any:
        raw = await self._redis.hget(name, key)
        return decode(raw, key=f"{name}[{key}]", strict=strict)

    @_store_call
    async def hash_get_many(self, name: str, keys: Iterable[str]) -> dict[str, Any]:
        """Fetch several fields at once; missing or undecodable fields are omitted."""
        fields = list(keys)
        if not fields:
            return {}
        raws = await self._redis.hmget(name, fields)
        result = {}
        for field_name, raw in zip(fields, raws):
            value = decode(raw, key=f"{name}[{field_name}]")
            if value is not None:
                result[field_name] = value
        return result

    @_store_call
    async def hash_delete_field(self, name: str, *keys: str) -> int:
        if not keys:
            return 0
        return await self._redis.hdel(name, *keys)

    @_store_call
    async def hash_get_all(self, name: str) -> dict[str, Any]:
        """
        Read a whole hash.

        Fields that do not decode as JSON are returned as their raw string.
        """
        raw_map = await self._redis.hgetall(name)
        result: dict[str, Any] = {}
        for field_name, raw in raw_map.items():
            try:
                result[field_name] = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                result[field_name] = raw
        return result

    # =========================================================================
    # Sets
    # =========================================================================

    @_store_call
    async def set_add(self, name: str, *members: str) -> int:
        if not members:
            return 0
        return await self._redis.sadd(name, *members)

    @_store_call
    async def set_remove(self, name: str, *members: str) -> int:
        if not members:
            return 0
        return await self._redis.srem(name, *members)

    @_store_call
    async def set_members(self, name: str) -> set[str]:
        return set(await self._redis.smembers(name))

    @_store_call
    async def set_contains(self, name: str, member: str) -> bool:
        return bool(await self._redis.sismember(name, member))

    # =========================================================================
    # Pub/Sub
    # =========================================================================

    @_store_call
    async def publish(self, channel: str, message: Any) -> int:
        """Publish a JSON-encoded message. Returns the number of receivers."""
        return await self._redis.publish(channel, encode(message))

    def subscribe(self, channel: str, handler: MessageHandler) -> asyncio.Task:
        """
        Start a background subscription to a channel.

        The handler receives each decoded message. The subscription runs in
        its own task with reconnect and circuit breaking; cancel the task to
        stop it (close() cancels all of them).
        """
        # Import here: the subscriber pulls in resilience components
        from ws_gateway.redis_subscriber import run_subscriber

        async def on_raw(raw: str) -> None:
            message = decode(raw, key=channel)
            if message is None:
                return
            await handler(message)

        task = asyncio.create_task(
            run_subscriber(self._redis, [channel], on_raw),
            name=f"kvs_subscriber:{channel}",
        )
        task.add_done_callback(_report_subscription_end)
        self._subscriptions.append(task)
        return task

    @property
    def failed_subscriptions(self) -> int:
        """Subscription tasks that ended without being cancelled."""
        return sum(1 for task in self._subscriptions if task.done() and not task.cancelled())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @_store_call
    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        """Cancel subscription tasks. The underlying pool is owned by the caller."""
        for task in self._subscriptions:
            task.cancel()
        for task in self._subscriptions:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Subscription ended with error", error=str(e))
        self._subscriptions.clear()
