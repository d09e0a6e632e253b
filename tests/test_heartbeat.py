"""
Tests for heartbeat tracking and local connection cleanup.

Tests verify:
- Ping frame detection and pong replies
- Staleness against a controllable clock
- Stale connections are closed with 1001 and fully disconnected
- Connections with failed sends are removed on the next pass
- Shutdown closes every socket and refuses new ones
"""

import pytest

from shared.infrastructure.redis.constants import SOCKET_CONNECTIONS, USER_PRESENCE
from ws_gateway.components.connection.heartbeat import (
    HeartbeatTracker,
    handle_heartbeat,
    is_ping_frame,
)
from ws_gateway.components.core.constants import WSCloseCode

from tests.conftest import FakeWebSocket


class TestPingFrames:
    """Heartbeat frame recognition."""

    @pytest.mark.parametrize("data", ["ping", '{"event": "ping"}', '{"event":"ping","data":{}}'])
    def test_ping_frames(self, data):
        assert is_ping_frame(data)

    @pytest.mark.parametrize("data", ["pong", '{"event": "join_room"}', '{"event": "ping"', "[]"])
    def test_other_frames(self, data):
        assert not is_ping_frame(data)

    @pytest.mark.asyncio
    async def test_pong_reply(self):
        ws = FakeWebSocket.connected()
        assert await handle_heartbeat(ws, "ping") is True
        assert ws.event_names() == ["pong"]
        assert await handle_heartbeat(ws, '{"event": "join_room"}') is False

    @pytest.mark.asyncio
    async def test_pong_on_closed_socket(self):
        ws = FakeWebSocket.connected()
        ws.fail_sends = True
        assert await handle_heartbeat(ws, "ping") is True


class TestHeartbeatTracker:
    """Staleness bookkeeping."""

    def test_stale_after_timeout(self, clock):
        tracker = HeartbeatTracker(timeout_seconds=60, clock=clock)
        tracker.record("c1")
        clock.advance(30)
        tracker.record("c2")
        clock.advance(31)

        assert tracker.is_stale("c1")
        assert not tracker.is_stale("c2")
        assert tracker.is_stale("unknown")
        assert tracker.cleanup_stale() == ["c1"]
        assert tracker.tracked_count == 1

    def test_record_refreshes(self, clock):
        tracker = HeartbeatTracker(timeout_seconds=10, clock=clock)
        tracker.record("c1")
        clock.advance(8)
        tracker.record("c1")
        clock.advance(8)
        assert tracker.cleanup_stale() == []

    def test_stats(self, clock):
        tracker = HeartbeatTracker(timeout_seconds=10, clock=clock)
        assert tracker.get_stats()["oldest_heartbeat_age"] == 0
        tracker.record("c1")
        clock.advance(4)
        stats = tracker.get_stats()
        assert stats["tracked_connections"] == 1
        assert stats["oldest_heartbeat_age"] == pytest.approx(4)


class TestCleanup:
    """ConnectionManager cleanup passes."""

    @pytest.mark.asyncio
    async def test_stale_connections_closed_and_removed(
        self, manager_factory, clock, fake_redis, alice, bob
    ):
        manager = await manager_factory()
        manager.heartbeat = HeartbeatTracker(timeout_seconds=60, clock=clock)
        alice_ws = FakeWebSocket.connected()
        bob_ws = FakeWebSocket.connected()
        alice_conn = await manager.connect(alice, alice_ws)
        clock.advance(45)
        bob_conn = await manager.connect(bob, bob_ws)
        clock.advance(20)

        assert await manager.cleanup_stale_connections() == 1

        assert alice_ws.close_code == WSCloseCode.GOING_AWAY
        assert manager.registry.get(alice_conn.connection_id) is None
        assert alice_conn.connection_id not in fake_redis.raw_hash(SOCKET_CONNECTIONS)
        assert fake_redis.raw_hash(USER_PRESENCE)["u1"]["status"] == "offline"
        assert manager.registry.get(bob_conn.connection_id) is bob_conn
        assert bob_ws.close_code is None

    @pytest.mark.asyncio
    async def test_activity_keeps_connection(self, manager_factory, clock, alice):
        manager = await manager_factory()
        manager.heartbeat = HeartbeatTracker(timeout_seconds=60, clock=clock)
        conn = await manager.connect(alice, FakeWebSocket.connected())
        clock.advance(50)
        await manager.record_activity(conn.connection_id)
        clock.advance(50)

        assert await manager.cleanup_stale_connections() == 0

    @pytest.mark.asyncio
    async def test_dead_connections_removed(self, manager_factory, alice):
        manager = await manager_factory()
        ws = FakeWebSocket.connected()
        conn = await manager.connect(alice, ws)
        ws.fail_sends = True

        assert await manager.router.deliver_to_user("u1", "notification", {}) == 0
        assert manager.get_stats_sync()["dead_connections"] == 1
        assert await manager.cleanup_dead_connections() == 1
        assert manager.registry.get(conn.connection_id) is None
        assert await manager.cleanup_dead_connections() == 0


class TestShutdown:
    """Graceful shutdown of one instance."""

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, manager_factory, fake_redis, alice, bob):
        manager = await manager_factory()
        sockets = [FakeWebSocket.connected(), FakeWebSocket.connected()]
        await manager.connect(alice, sockets[0])
        await manager.connect(bob, sockets[1])

        assert await manager.shutdown() == 2

        assert [ws.close_code for ws in sockets] == [WSCloseCode.GOING_AWAY] * 2
        assert manager.total_connections == 0
        assert fake_redis.raw_hash(SOCKET_CONNECTIONS) == {}

        late = FakeWebSocket.connected()
        with pytest.raises(ConnectionError):
            await manager.connect(alice, late)
        assert late.close_code == WSCloseCode.GOING_AWAY
        assert manager.get_stats_sync()["shutting_down"] is True
