"""
Shared fixtures for the gateway test suite.

FakeRedis stands in for redis.asyncio at the wire boundary, so every test
runs the real KVSClient on top of it. Keys expire against a controllable
clock, and PUBLISH hands the message to every in-process subscriber before
returning, which lets several ConnectionManager instances share one store
and observe each other's broadcasts deterministically.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from typing import Any, Awaitable, Callable

import pytest
from fastapi import WebSocketDisconnect
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError
from starlette.websockets import WebSocketState

from shared.security.auth import sign_jwt
from ws_gateway.components.core.context import ClientIdentity
from ws_gateway.components.store.kvs import KVSClient, decode
from ws_gateway.components.store.lua_scripts import INCR_WINDOW_SCRIPT
from ws_gateway.connection_manager import ConnectionManager


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Callable clock; advance() moves time forward."""

    def __init__(self, start: float | None = None):
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Redis double
# =============================================================================


class FakeRedis:
    """The subset of redis.asyncio.Redis the KVS client uses."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.down = False
        self._strings: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._sets: dict[str, set[str]] = {}
        self._subscribers: dict[str, list[Callable[[str], Awaitable[None]]]] = {}
        self.published: list[tuple[str, str]] = []
        self._scripts: dict[str, str] = {}

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    def _purge(self, key: str) -> None:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self._strings.pop(key, None)
            self._expires.pop(key, None)

    # Strings

    async def get(self, key: str) -> str | None:
        self._check()
        self._purge(key)
        return self._strings.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self._strings[key] = value
        if ex is not None:
            self._expires[key] = self.clock() + ex
        else:
            self._expires.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            self._purge(key)
            for store in (self._strings, self._hashes, self._sets):
                if key in store:
                    del store[key]
                    removed += 1
            self._expires.pop(key, None)
        return removed

    async def incrby(self, key: str, amount: int) -> int:
        self._check()
        self._purge(key)
        value = int(self._strings.get(key, "0")) + amount
        self._strings[key] = str(value)
        return value

    async def decrby(self, key: str, amount: int) -> int:
        return await self.incrby(key, -amount)

    async def expire(self, key: str, seconds: int) -> int:
        self._check()
        self._purge(key)
        if key not in self._strings:
            return 0
        self._expires[key] = self.clock() + seconds
        return 1

    # Scripts

    async def script_load(self, script: str) -> str:
        self._check()
        sha = hashlib.sha1(script.encode()).hexdigest()
        self._scripts[sha] = script
        return sha

    async def evalsha(self, sha: str, numkeys: int, *args: Any) -> list[int]:
        self._check()
        if sha not in self._scripts:
            raise NoScriptError("No matching script. Please use EVAL.")
        assert self._scripts[sha] == INCR_WINDOW_SCRIPT
        key, window = args[0], int(args[1])
        count = await self.incrby(key, 1)
        if key not in self._expires:
            self._expires[key] = self.clock() + window
        return [count, int(self._expires[key] - self.clock())]

    def flush_scripts(self) -> None:
        self._scripts.clear()

    # Hashes

    async def hset(self, name: str, key: str, value: str) -> int:
        self._check()
        fields = self._hashes.setdefault(name, {})
        is_new = key not in fields
        fields[key] = value
        return int(is_new)

    async def hget(self, name: str, key: str) -> str | None:
        self._check()
        return self._hashes.get(name, {}).get(key)

    async def hmget(self, name: str, keys: list[str]) -> list[str | None]:
        self._check()
        fields = self._hashes.get(name, {})
        return [fields.get(k) for k in keys]

    async def hdel(self, name: str, *keys: str) -> int:
        self._check()
        fields = self._hashes.get(name, {})
        removed = sum(1 for k in keys if fields.pop(k, None) is not None)
        if not fields:
            self._hashes.pop(name, None)
        return removed

    async def hgetall(self, name: str) -> dict[str, str]:
        self._check()
        return dict(self._hashes.get(name, {}))

    # Sets

    async def sadd(self, name: str, *members: str) -> int:
        self._check()
        members_set = self._sets.setdefault(name, set())
        before = len(members_set)
        members_set.update(members)
        return len(members_set) - before

    async def srem(self, name: str, *members: str) -> int:
        self._check()
        members_set = self._sets.get(name, set())
        removed = sum(1 for m in members if m in members_set)
        members_set.difference_update(members)
        if not members_set:
            self._sets.pop(name, None)
        return removed

    async def smembers(self, name: str) -> set[str]:
        self._check()
        return set(self._sets.get(name, set()))

    async def sismember(self, name: str, member: str) -> int:
        self._check()
        return int(member in self._sets.get(name, set()))

    # Pub/Sub

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        handlers = list(self._subscribers.get(channel, ()))
        for handler in handlers:
            await handler(message)
        return len(handlers)

    def add_subscriber(self, channel: str, handler: Callable[[str], Awaitable[None]]) -> None:
        self._subscribers.setdefault(channel, []).append(handler)

    async def ping(self) -> bool:
        self._check()
        return True

    # Introspection for assertions

    def raw_set(self, name: str) -> set[str]:
        return set(self._sets.get(name, set()))

    def raw_hash(self, name: str) -> dict[str, Any]:
        return {k: json.loads(v) for k, v in self._hashes.get(name, {}).items()}

    def key_exists(self, key: str) -> bool:
        self._purge(key)
        return key in self._strings

    def has_ttl(self, key: str) -> bool:
        self._purge(key)
        return key in self._expires


class InMemoryKVS(KVSClient):
    """KVSClient whose subscriptions are fed by FakeRedis.publish."""

    def __init__(self, fake: FakeRedis):
        super().__init__(fake)  # type: ignore[arg-type]
        self.fake = fake

    def subscribe(self, channel, handler):
        async def on_raw(raw: str) -> None:
            message = decode(raw, key=channel)
            if message is not None:
                await handler(message)

        self.fake.add_subscriber(channel, on_raw)
        task = asyncio.get_running_loop().create_future()
        self._subscriptions.append(task)
        return task


# =============================================================================
# WebSocket double
# =============================================================================


class FakeWebSocket:
    """Records what the server sends; replays queued client frames."""

    def __init__(
        self,
        frames: list[str] | None = None,
        headers: dict[str, str] | None = None,
        query_params: dict[str, str] | None = None,
    ):
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING
        self.headers = headers or {}
        self.query_params = query_params or {}
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.accepted = False
        self.fail_sends = False
        self._frames: list[str] = list(frames or [])

    @classmethod
    def connected(cls, **kwargs: Any) -> "FakeWebSocket":
        ws = cls(**kwargs)
        ws.client_state = WebSocketState.CONNECTED
        ws.application_state = WebSocketState.CONNECTED
        ws.accepted = True
        return ws

    async def accept(self) -> None:
        self.accepted = True
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail_sends:
            raise RuntimeError("Cannot call send once a close message has been sent")
        self.sent.append(json.loads(json.dumps(data)))

    async def receive_text(self) -> str:
        if self.close_code is not None or not self._frames:
            raise WebSocketDisconnect(code=1000)
        return self._frames.pop(0)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_code = code
        self.close_reason = reason
        self.client_state = WebSocketState.DISCONNECTED
        self.application_state = WebSocketState.DISCONNECTED

    def events(self, name: str) -> list[dict[str, Any]]:
        return [frame["data"] for frame in self.sent if frame.get("event") == name]

    def event_names(self) -> list[str]:
        return [frame.get("event") for frame in self.sent]


def frame(event: str, **data: Any) -> str:
    return json.dumps({"event": event, "data": data})


def make_token(user_id: str = "u1", username: str = "alice", **extra: Any) -> str:
    return sign_jwt({"sub": user_id, "username": username, **extra})


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def kvs(fake_redis) -> InMemoryKVS:
    return InMemoryKVS(fake_redis)


@pytest.fixture
def manager_factory(kvs):
    """Build ConnectionManagers that share one store, one per instance id."""
    created: list[ConnectionManager] = []

    async def factory(instance_id: str = "inst-1") -> ConnectionManager:
        manager = ConnectionManager(kvs, instance_id=instance_id)
        await manager.start()
        created.append(manager)
        return manager

    return factory


@pytest.fixture
def alice() -> ClientIdentity:
    return ClientIdentity(user_id="u1", username="alice", email="alice@example.com")


@pytest.fixture
def bob() -> ClientIdentity:
    return ClientIdentity(user_id="u2", username="bob")
