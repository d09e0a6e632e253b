"""
Inbound Event Dispatcher.

Consumes domain events from the broker (topic exchange `chat.events`) and
turns each one into a room- or user-scoped delivery on the BroadcastRouter.

Delivery contract:
- A message is acked only after its handler returned.
- A message whose body cannot be decoded, whose routing key is unknown, or
  whose handler failed is rejected without requeue. Redelivering a poison
  message would fail the same way forever.
- While the broker is unreachable nothing is buffered. The consume loop
  reconnects after a fixed delay and declares the exchange, queue and
  bindings again on every connection.

Usage:
    dispatcher = InboundEventDispatcher(router, presence)
    task = asyncio.create_task(dispatcher.run())
    ...
    task.cancel()
    await dispatcher.close()
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
)
from aio_pika.exceptions import AMQPError

from shared.config.logging import get_logger
from shared.config.settings import settings
from ws_gateway.components.core.context import iso_timestamp
from ws_gateway.components.core.exceptions import InvalidEventError, PresenceError
from ws_gateway.components.events.types import (
    CONSUMED_ROUTING_KEYS,
    RoutingKey,
    ServerEvent,
)

if TYPE_CHECKING:
    from ws_gateway.components.broadcast.router import BroadcastRouter
    from ws_gateway.components.presence.tracker import PresenceTracker

logger = get_logger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[int]]

BROKER_CONNECT_TIMEOUT = 10.0


def require_fields(payload: dict[str, Any], routing_key: str, *fields: str) -> None:
    """
    Raises:
        InvalidEventError: Naming the first missing field.
    """
    for name in fields:
        if payload.get(name) in (None, ""):
            raise InvalidEventError(
                f"Missing required field '{name}' for {routing_key}",
                routing_key=routing_key,
                field=name,
            )


class InboundEventDispatcher:
    """Bridges broker events to the BroadcastRouter."""

    def __init__(
        self,
        router: "BroadcastRouter",
        presence: "PresenceTracker",
        url: str = settings.rabbitmq_url,
        exchange_name: str = settings.broker_exchange,
        queue_name: str = settings.broker_queue,
        outbound_queue: str = settings.broker_outbound_queue,
        reconnect_delay: float = settings.broker_reconnect_delay,
        prefetch_count: int = settings.broker_prefetch_count,
    ):
        self._router = router
        self._presence = presence
        self._url = url
        self._exchange_name = exchange_name
        self._queue_name = queue_name
        self._outbound_queue = outbound_queue
        self._reconnect_delay = reconnect_delay
        self._prefetch_count = prefetch_count

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None

        self._handlers: dict[str, EventHandler] = {
            RoutingKey.MESSAGE_SENT.value: self._on_message_sent,
            RoutingKey.MESSAGE_UPDATED.value: self._on_message_updated,
            RoutingKey.MESSAGE_DELETED.value: self._on_message_deleted,
            RoutingKey.REACTION_ADDED.value: self._on_reaction_added,
            RoutingKey.REACTION_REMOVED.value: self._on_reaction_removed,
            RoutingKey.CHAT_CREATED.value: self._on_chat_created,
            RoutingKey.CHAT_UPDATED.value: self._on_chat_updated,
            RoutingKey.MEMBER_ADDED.value: self._on_member_added,
            RoutingKey.MEMBER_REMOVED.value: self._on_member_removed,
            RoutingKey.USER_STATUS_UPDATED.value: self._on_user_status_updated,
            RoutingKey.NOTIFICATION_PUSH.value: self._on_notification_push,
        }

        self._processed = 0
        self._rejected = 0
        self._reconnects = 0
        self._forwarded = 0

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    # =========================================================================
    # Consume loop
    # =========================================================================

    async def run(self) -> None:
        """Consume until cancelled, reconnecting after a fixed delay on failure."""
        while True:
            try:
                await self._consume()
                logger.warning("Broker consumer stopped, reconnecting")
            except asyncio.CancelledError:
                raise
            except (AMQPError, ConnectionError, OSError, asyncio.TimeoutError) as e:
                logger.warning(
                    "Broker unavailable",
                    error=str(e),
                    retry_in=self._reconnect_delay,
                )
            finally:
                await self.close()

            self._reconnects += 1
            await asyncio.sleep(self._reconnect_delay)

    async def _consume(self) -> None:
        self._connection = await aio_pika.connect(self._url, timeout=BROKER_CONNECT_TIMEOUT)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._prefetch_count)

        queue = await self.declare_topology(self._channel)
        logger.info(
            "Broker consumer started",
            exchange=self._exchange_name,
            queue=self._queue_name,
            routing_keys=len(CONSUMED_ROUTING_KEYS),
        )

        async with queue.iterator() as messages:
            async for message in messages:
                await self.handle_message(message)

    async def declare_topology(self, channel: AbstractChannel) -> Any:
        """Declare exchange, queues and bindings. Safe to repeat."""
        exchange = await channel.declare_exchange(
            self._exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
        )
        queue = await channel.declare_queue(self._queue_name, durable=True)
        for routing_key in CONSUMED_ROUTING_KEYS:
            await queue.bind(exchange, routing_key=routing_key)
        await channel.declare_queue(self._outbound_queue, durable=True)
        return queue

    async def handle_message(self, message: AbstractIncomingMessage) -> None:
        routing_key = message.routing_key or ""
        try:
            payload = self.decode(message.body, routing_key)
            await self.dispatch(routing_key, payload)
        except Exception as e:
            self._rejected += 1
            logger.error(
                "Dropping broker event",
                routing_key=routing_key,
                error=str(e),
                exc_info=not isinstance(e, InvalidEventError),
            )
            await message.reject(requeue=False)
            return

        self._processed += 1
        await message.ack()

    @staticmethod
    def decode(body: bytes, routing_key: str) -> dict[str, Any]:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidEventError(
                f"Undecodable payload for {routing_key}", routing_key=routing_key
            ) from e
        if not isinstance(payload, dict):
            raise InvalidEventError(
                f"Payload for {routing_key} is not an object", routing_key=routing_key
            )
        return payload

    async def dispatch(self, routing_key: str, payload: dict[str, Any]) -> int:
        """
        Run the handler for a routing key.

        Returns:
            Number of local connections reached.

        Raises:
            InvalidEventError: Unknown routing key or missing fields.
        """
        handler = self._handlers.get(routing_key)
        if handler is None:
            raise InvalidEventError(
                f"Unhandled routing key: {routing_key}", routing_key=routing_key
            )
        sent = await handler(payload)
        logger.debug("Broker event dispatched", routing_key=routing_key, sent=sent)
        return sent

    # =========================================================================
    # Message handlers
    # =========================================================================

    async def _on_message_sent(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.MESSAGE_SENT.value, "messageId", "chatId", "senderId")
        return await self._router.deliver_to_room(
            str(data["chatId"]),
            ServerEvent.NEW_MESSAGE.value,
            {
                "id": data["messageId"],
                "chatId": data["chatId"],
                "senderId": data["senderId"],
                "senderName": data.get("senderName"),
                "content": data.get("content"),
                "type": data.get("type", "text"),
                "parentId": data.get("parentId"),
                "attachments": data.get("attachments") or [],
                "timestamp": data.get("createdAt") or iso_timestamp(),
                "status": "delivered",
            },
        )

    async def _on_message_updated(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.MESSAGE_UPDATED.value, "messageId", "chatId")
        return await self._router.deliver_to_room(
            str(data["chatId"]),
            ServerEvent.MESSAGE_EDITED.value,
            {
                "messageId": data["messageId"],
                "chatId": data["chatId"],
                "newContent": data.get("content"),
                "editedBy": data.get("editedBy"),
                "editedAt": data.get("updatedAt") or iso_timestamp(),
            },
        )

    async def _on_message_deleted(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.MESSAGE_DELETED.value, "messageId", "chatId")
        return await self._router.deliver_to_room(
            str(data["chatId"]),
            ServerEvent.MESSAGE_DELETED.value,
            {
                "messageId": data["messageId"],
                "chatId": data["chatId"],
                "deletedBy": data.get("deletedBy"),
                "deletedAt": data.get("deletedAt") or iso_timestamp(),
            },
        )

    async def _on_reaction_added(self, data: dict[str, Any]) -> int:
        require_fields(
            data, RoutingKey.REACTION_ADDED.value, "messageId", "chatId", "emoji", "userId"
        )
        return await self._router.deliver_to_room(
            str(data["chatId"]),
            ServerEvent.REACTION_ADDED.value,
            {
                "messageId": data["messageId"],
                "chatId": data["chatId"],
                "emoji": data["emoji"],
                "userId": data["userId"],
                "username": data.get("username"),
                "timestamp": data.get("createdAt") or iso_timestamp(),
            },
        )

    async def _on_reaction_removed(self, data: dict[str, Any]) -> int:
        require_fields(
            data, RoutingKey.REACTION_REMOVED.value, "messageId", "chatId", "emoji", "userId"
        )
        return await self._router.deliver_to_room(
            str(data["chatId"]),
            ServerEvent.REACTION_REMOVED.value,
            {
                "messageId": data["messageId"],
                "chatId": data["chatId"],
                "emoji": data["emoji"],
                "userId": data["userId"],
                "timestamp": data.get("deletedAt") or iso_timestamp(),
            },
        )

    # =========================================================================
    # Chat handlers
    # =========================================================================

    async def _on_chat_created(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.CHAT_CREATED.value, "chatId", "members")
        members = data["members"]
        if not isinstance(members, list):
            raise InvalidEventError(
                "members must be a list", routing_key=RoutingKey.CHAT_CREATED.value
            )

        payload = {
            "chatId": data["chatId"],
            "name": data.get("name"),
            "type": data.get("type"),
            "createdBy": data.get("createdBy"),
            "members": members,
            "timestamp": data.get("createdAt") or iso_timestamp(),
        }
        sent = 0
        for user_id in _member_user_ids(members):
            sent += await self._router.deliver_to_user(
                user_id, ServerEvent.CHAT_CREATED.value, payload
            )
        return sent

    async def _on_chat_updated(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.CHAT_UPDATED.value, "chatId")
        return await self._router.deliver_to_room(
            str(data["chatId"]),
            ServerEvent.CHAT_UPDATED.value,
            {
                "chatId": data["chatId"],
                "changes": data.get("changes") or {},
                "updatedBy": data.get("updatedBy"),
                "timestamp": data.get("updatedAt") or iso_timestamp(),
            },
        )

    async def _on_member_added(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.MEMBER_ADDED.value, "chatId", "member")
        member = data["member"]
        payload = {
            "chatId": data["chatId"],
            "member": member,
            "addedBy": data.get("addedBy"),
            "timestamp": data.get("timestamp") or iso_timestamp(),
        }
        sent = await self._router.deliver_to_room(
            str(data["chatId"]), ServerEvent.MEMBER_ADDED.value, payload
        )
        added_user = member.get("userId") if isinstance(member, dict) else member
        if added_user:
            sent += await self._router.deliver_to_user(
                str(added_user), ServerEvent.MEMBER_ADDED.value, payload
            )
        return sent

    async def _on_member_removed(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.MEMBER_REMOVED.value, "chatId", "memberId")
        payload = {
            "chatId": data["chatId"],
            "memberId": data["memberId"],
            "removedBy": data.get("removedBy"),
            "timestamp": data.get("timestamp") or iso_timestamp(),
        }
        sent = await self._router.deliver_to_room(
            str(data["chatId"]), ServerEvent.MEMBER_REMOVED.value, payload
        )
        sent += await self._router.deliver_to_user(
            str(data["memberId"]), ServerEvent.MEMBER_REMOVED.value, payload
        )
        return sent

    # =========================================================================
    # User handlers
    # =========================================================================

    async def _on_user_status_updated(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.USER_STATUS_UPDATED.value, "userId", "status")
        try:
            await self._presence.set_status(str(data["userId"]), data["status"])
        except PresenceError as e:
            logger.info(
                "Status update skipped",
                user_id=data["userId"],
                status=data["status"],
                reason=e.message,
            )
        return 0

    async def _on_notification_push(self, data: dict[str, Any]) -> int:
        require_fields(data, RoutingKey.NOTIFICATION_PUSH.value, "userId")
        user_id = str(data["userId"])

        if await self._presence.is_online(user_id):
            return await self._router.deliver_to_user(
                user_id,
                ServerEvent.NOTIFICATION.value,
                {
                    "title": data.get("title"),
                    "message": data.get("message"),
                    "chatId": data.get("chatId"),
                    "data": data.get("data") or {},
                    "timestamp": data.get("timestamp") or iso_timestamp(),
                },
            )

        if data.get("shouldPush"):
            logger.info("Push notification required", user_id=user_id, chat_id=data.get("chatId"))
        return 0

    # =========================================================================
    # Outbound
    # =========================================================================

    async def publish_to_queue(self, payload: dict[str, Any]) -> bool:
        """
        Forward a client action to the chat service queue.

        The payload is framed as {"action": ..., "data": ...}, where action is
        the client event that produced it (send_message or message_reaction).

        Best-effort: returns False instead of raising when the broker is down.
        """
        if self._channel is None or self._channel.is_closed:
            logger.debug("Outbound message not forwarded, broker disconnected")
            return False
        try:
            await self._channel.default_exchange.publish(
                aio_pika.Message(
                    body=json.dumps(payload).encode(),
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                ),
                routing_key=self._outbound_queue,
            )
        except (AMQPError, ConnectionError, OSError) as e:
            logger.warning("Outbound message not forwarded", error=str(e))
            return False
        self._forwarded += 1
        return True

    async def close(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except (AMQPError, ConnectionError, OSError) as e:
                logger.debug("Broker connection close failed", error=str(e))

    def get_stats(self) -> dict[str, Any]:
        return {
            "connected": self.is_connected,
            "processed": self._processed,
            "rejected": self._rejected,
            "reconnects": self._reconnects,
            "forwarded": self._forwarded,
        }


def _member_user_ids(members: list[Any]) -> list[str]:
    """Members arrive either as user ids or as objects carrying userId."""
    user_ids = []
    for member in members:
        user_id = member.get("userId") if isinstance(member, dict) else member
        if user_id:
            user_ids.append(str(user_id))
    return list(dict.fromkeys(user_ids))
