"""
Tests for the Presence Tracker and typing indicators.

Tests verify:
- Offline exactly when a user has no connections
- Client status changes only while connected
- Active chat is stored without an announcement
- Bulk lookups omit unknown users
- Pruning of old offline records
- Typing indicators expire on their own
"""

import json

import pytest

from shared.infrastructure.redis.constants import ONLINE_USERS, USER_PRESENCE, room_users_key
from ws_gateway.components.core.exceptions import PresenceError
from ws_gateway.components.presence.tracker import (
    PresenceStatus,
    PresenceTracker,
    UserPresence,
)
from ws_gateway.components.presence.typing_indicator import TypingIndicator


@pytest.fixture
def tracker(kvs, clock):
    return PresenceTracker(kvs, channel="ws:broadcast", clock=clock)


def published_events(fake_redis):
    return [json.loads(message) for _, message in fake_redis.published]


class TestConnectionTransitions:
    """Presence follows the user's open connections."""

    @pytest.mark.asyncio
    async def test_online_until_last_connection_closes(self, tracker, fake_redis):
        await tracker.mark_connected("u1", "c1")
        await tracker.mark_connected("u1", "c2")

        presence = await tracker.mark_disconnected("u1", "c1")
        assert presence.status == PresenceStatus.ONLINE
        assert presence.connection_ids == {"c2"}
        assert await tracker.is_online("u1")

        presence = await tracker.mark_disconnected("u1", "c2")
        assert presence.status == PresenceStatus.OFFLINE
        assert presence.connection_ids == set()
        assert not await tracker.is_online("u1")
        assert "u1" not in fake_redis.raw_set(ONLINE_USERS)

    @pytest.mark.asyncio
    async def test_offline_clears_active_chat(self, tracker):
        await tracker.mark_connected("u1", "c1")
        await tracker.set_active_chat("u1", "chat-9")

        presence = await tracker.mark_disconnected("u1", "c1")

        assert presence.active_chat_id is None

    @pytest.mark.asyncio
    async def test_reconnect_keeps_chosen_status(self, tracker):
        await tracker.mark_connected("u1", "c1")
        await tracker.set_status("u1", "busy")

        presence = await tracker.mark_connected("u1", "c2")

        assert presence.status == PresenceStatus.BUSY

    @pytest.mark.asyncio
    async def test_disconnect_without_record(self, tracker):
        assert await tracker.mark_disconnected("ghost", "c1") is None

    @pytest.mark.asyncio
    async def test_transitions_are_announced(self, tracker, fake_redis, kvs):
        await kvs.set_add("user:u1:rooms", "general")
        await tracker.mark_connected("u1", "c1")

        envelope = published_events(fake_redis)[-1]
        assert envelope["event"] == "presence_update"
        assert envelope["room_ids"] == ["general"]
        assert envelope["user_ids"] == ["u1"]
        assert envelope["origin"] is None
        assert envelope["payload"]["presence"]["status"] == "online"
        assert envelope["payload"]["presence"]["connectionCount"] == 1

    @pytest.mark.asyncio
    async def test_publish_failure_is_not_fatal(self, tracker, fake_redis):
        await tracker.mark_connected("u1", "c1")
        original_publish = fake_redis.publish

        async def failing_publish(channel, message):
            fake_redis.down = True
            try:
                return await original_publish(channel, message)
            finally:
                fake_redis.down = False

        fake_redis.publish = failing_publish
        presence = await tracker.set_status("u1", "away")

        assert presence.status == PresenceStatus.AWAY
        assert (await tracker.get_presence("u1")).status == PresenceStatus.AWAY


class TestClientStatus:
    """Status changes requested by clients."""

    @pytest.mark.asyncio
    async def test_set_status_with_custom_text(self, tracker):
        await tracker.mark_connected("u1", "c1")

        presence = await tracker.set_status("u1", "away", custom_status="lunch")

        assert presence.status == PresenceStatus.AWAY
        stored = await tracker.get_presence("u1")
        assert stored.custom_status == "lunch"

    @pytest.mark.asyncio
    async def test_set_status_while_offline(self, tracker):
        with pytest.raises(PresenceError) as exc_info:
            await tracker.set_status("u1", "online")
        assert exc_info.value.code == "presence_offline"

        await tracker.mark_connected("u1", "c1")
        await tracker.mark_disconnected("u1", "c1")
        with pytest.raises(PresenceError):
            await tracker.set_status("u1", "away")

    @pytest.mark.asyncio
    async def test_offline_cannot_be_chosen(self, tracker):
        await tracker.mark_connected("u1", "c1")
        with pytest.raises(PresenceError):
            await tracker.set_status("u1", "offline")

    @pytest.mark.asyncio
    async def test_unknown_status(self, tracker):
        await tracker.mark_connected("u1", "c1")
        with pytest.raises(PresenceError, match="Unknown presence status"):
            await tracker.set_status("u1", "sleeping")

    @pytest.mark.asyncio
    async def test_active_chat_is_not_announced(self, tracker, fake_redis):
        await tracker.mark_connected("u1", "c1")
        before = len(fake_redis.published)

        await tracker.set_active_chat("u1", "chat-1")
        assert (await tracker.get_presence("u1")).active_chat_id == "chat-1"
        await tracker.clear_active_chat("u1")
        assert (await tracker.get_presence("u1")).active_chat_id is None

        assert len(fake_redis.published) == before


class TestQueries:
    """Bulk lookups and listing."""

    @pytest.mark.asyncio
    async def test_bulk_presence_omits_unknown(self, tracker):
        await tracker.mark_connected("u1", "c1")
        await tracker.mark_connected("u2", "c2")
        await tracker.mark_disconnected("u2", "c2")

        result = await tracker.get_bulk_presence(["u1", "u2", "nobody", "u1"])

        assert set(result) == {"u1", "u2"}
        assert result["u1"].status == PresenceStatus.ONLINE
        assert result["u2"].status == PresenceStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_list_online_users(self, tracker):
        await tracker.mark_connected("u1", "c1")
        await tracker.mark_connected("u2", "c2")
        assert await tracker.list_online_users() == {"u1", "u2"}
        assert await tracker.connection_ids("u2") == {"c2"}
        assert await tracker.connection_ids("nobody") == set()

    def test_payload_is_camel_case(self):
        presence = UserPresence(
            user_id="u1",
            status=PresenceStatus.AWAY,
            last_seen=0.0,
            connection_ids={"a", "b"},
        )
        assert presence.to_payload() == {
            "userId": "u1",
            "status": "away",
            "lastSeen": None,
            "activeChatId": None,
            "customStatus": None,
            "connectionCount": 2,
        }

    def test_unusable_store_record(self):
        assert UserPresence.from_store("not a dict") is None
        assert UserPresence.from_store({"status": "online"}) is None
        restored = UserPresence.from_store({"user_id": "u1", "status": "weird"})
        assert restored.status == PresenceStatus.OFFLINE


class TestPruning:
    """Retention of offline records."""

    @pytest.mark.asyncio
    async def test_prune_offline_records(self, tracker, clock, fake_redis):
        await tracker.mark_connected("gone", "c1")
        await tracker.mark_disconnected("gone", "c1")
        await tracker.mark_connected("here", "c2")
        await fake_redis.hset(USER_PRESENCE, "broken", "{")

        clock.advance(100)
        removed = await tracker.prune_offline(older_than=50)

        assert removed == 2
        assert set(fake_redis.raw_hash(USER_PRESENCE)) == {"here"}

    @pytest.mark.asyncio
    async def test_recent_offline_records_are_kept(self, tracker, clock):
        await tracker.mark_connected("u1", "c1")
        await tracker.mark_disconnected("u1", "c1")
        clock.advance(10)

        assert await tracker.prune_offline(older_than=50) == 0


class TestTypingIndicator:
    """Typing keys expire after their TTL."""

    @pytest.mark.asyncio
    async def test_start_expires(self, kvs, clock):
        typing = TypingIndicator(kvs, ttl=5)
        await typing.start("general", "u1", "alice")
        assert await typing.is_typing("general", "u1")

        clock.advance(6)
        assert not await typing.is_typing("general", "u1")

    @pytest.mark.asyncio
    async def test_restart_refreshes_ttl(self, kvs, clock):
        typing = TypingIndicator(kvs, ttl=5)
        await typing.start("general", "u1")
        clock.advance(4)
        await typing.start("general", "u1")
        clock.advance(4)
        assert await typing.is_typing("general", "u1")

    @pytest.mark.asyncio
    async def test_stop_and_typing_users(self, kvs):
        typing = TypingIndicator(kvs, ttl=5)
        await kvs.set_add(room_users_key("general"), "u1", "u2", "u3")
        await typing.start("general", "u1")
        await typing.start("general", "u3")
        assert await typing.typing_users("general") == ["u1", "u3"]

        await typing.stop("general", "u1")
        assert await typing.typing_users("general") == ["u3"]
