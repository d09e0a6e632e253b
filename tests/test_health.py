"""
Tests for the HTTP surface and the WebSocket route.

The application lifespan is not entered: each test installs a
ConnectionManager over the in-memory store on app.state itself.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from ws_gateway.connection_manager import ConnectionManager
from ws_gateway.main import app

from tests.conftest import make_token


@pytest.fixture
def client(kvs):
    app.state.manager = ConnectionManager(kvs, instance_id="inst-http")
    yield TestClient(app)
    del app.state.manager


class TestHealth:
    """Health endpoints."""

    def test_basic_health(self, client):
        response = client.get("/ws/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "ws-gateway"
        assert body["instance_id"] == "inst-http"
        assert body["total_connections"] == 0
        assert body["broker"]["connected"] is False

    def test_detailed_health(self, client):
        response = client.get("/ws/health/detailed")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["dependencies"]["redis"]["status"] == "healthy"
        assert body["dependencies"]["broker"]["status"] == "disconnected"
        assert body["connections"]["cluster"]["connections_total"] == 0
        assert "circuit_breaker" in body["subscriber_metrics"]

    def test_detailed_health_store_down(self, client, fake_redis):
        fake_redis.down = True

        response = client.get("/ws/health/detailed")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["dependencies"]["redis"]["status"] == "unhealthy"
        assert body["connections"]["cluster"]["error"] == "store_unavailable"

    def test_detailed_health_subscriber_down(self, client):
        metrics = {"disconnected_subscriptions": 1, "circuit_breaker": {"state": "closed"}}
        with patch("ws_gateway.main.get_subscriber_metrics", return_value=metrics):
            response = client.get("/ws/health/detailed")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["dependencies"]["redis_subscriber"]["status"] == "disconnected"


class TestWebSocketRoute:
    """The /ws/chat route end to end through Starlette."""

    def test_invalid_token_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/chat?token=garbage"):
                pass
        assert exc_info.value.code == 4001

    def test_connect_and_join(self, client):
        with client.websocket_connect(f"/ws/chat?token={make_token()}") as ws:
            connected = ws.receive_json()
            assert connected["event"] == "connected"
            assert connected["data"]["userId"] == "u1"

            ws.send_json({"event": "join_room", "data": {"roomId": "general"}})
            joined = ws.receive_json()
            assert joined == {
                "event": "room_joined",
                "data": {"roomId": "general", "onlineUsers": ["u1"]},
            }
