"""
Chat WebSocket endpoint (`/ws/chat`).

Authentication:
- A token in the `token` query parameter or a Bearer header is verified
  before the socket is accepted; an invalid one closes it with 4001.
- Without a token the socket is accepted anonymously. Until a valid
  `authenticate` frame arrives every other action is answered with a
  `not_authenticated` error; after `ws_auth_timeout` the socket is closed.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from fastapi import WebSocket

from shared.config.logging import get_logger
from shared.config.settings import settings
from ws_gateway.components.connection.heartbeat import handle_heartbeat
from ws_gateway.components.core.constants import WSCloseCode
from ws_gateway.components.core.context import ClientIdentity, iso_timestamp
from ws_gateway.components.core.exceptions import (
    GatewayError,
    InvalidEventError,
    NotAuthenticatedError,
    RoomAccessError,
)
from ws_gateway.components.endpoints.base import WebSocketEndpointBase
from ws_gateway.components.endpoints.mixins import TokenAuthMixin
from ws_gateway.components.events.types import (
    AuthenticatePayload,
    ClientEvent,
    GetOnlineUsersPayload,
    GetPresencePayload,
    MessageReactionPayload,
    RoomPayload,
    SendMessagePayload,
    ServerEvent,
    SetActiveChatPayload,
    UpdatePresencePayload,
    parse_payload,
)

if TYPE_CHECKING:
    from ws_gateway.components.connection.registry import Connection
    from ws_gateway.connection_manager import ConnectionManager

logger = get_logger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


class ChatEndpoint(TokenAuthMixin, WebSocketEndpointBase):
    """Real-time chat endpoint: rooms, messages, typing and presence."""

    def __init__(
        self,
        websocket: WebSocket,
        manager: "ConnectionManager",
        auth_timeout: float = settings.ws_auth_timeout,
        **kwargs: Any,
    ):
        super().__init__(websocket, manager, "/ws/chat", **kwargs)
        self.auth_timeout = auth_timeout
        self._authenticated_by_frame = False

        self._handlers: dict[str, EventHandler] = {
            ClientEvent.AUTHENTICATE.value: self._on_authenticate,
            ClientEvent.JOIN_ROOM.value: self._on_join_room,
            ClientEvent.LEAVE_ROOM.value: self._on_leave_room,
            ClientEvent.SEND_MESSAGE.value: self._on_send_message,
            ClientEvent.TYPING_START.value: self._on_typing_start,
            ClientEvent.TYPING_STOP.value: self._on_typing_stop,
            ClientEvent.UPDATE_PRESENCE.value: self._on_update_presence,
            ClientEvent.SET_ACTIVE_CHAT.value: self._on_set_active_chat,
            ClientEvent.GET_ONLINE_USERS.value: self._on_get_online_users,
            ClientEvent.GET_PRESENCE.value: self._on_get_presence,
            ClientEvent.MESSAGE_REACTION.value: self._on_message_reaction,
        }

    # =========================================================================
    # Authentication
    # =========================================================================

    async def authenticate(self) -> ClientIdentity | None:
        token = self.get_presented_token()
        if token:
            identity = self.verify_token(token)
            if identity is None:
                await self.websocket.close(
                    code=WSCloseCode.AUTH_FAILED, reason="Authentication failed"
                )
                return None
            await self.websocket.accept()
            return identity

        await self.websocket.accept()
        return await self._await_authenticate_frame()

    async def _await_authenticate_frame(self) -> ClientIdentity | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.auth_timeout

        while (remaining := deadline - loop.time()) > 0:
            data = await self._receive_with_timeout(remaining)
            if data is None:
                break
            if not await self.validate_message_size(data):
                return None
            if await handle_heartbeat(self.websocket, data):
                continue

            event: str | None = None
            try:
                event, payload = self.parse_frame(data)
                if event != ClientEvent.AUTHENTICATE.value:
                    raise NotAuthenticatedError(event=event)
                token = parse_payload(AuthenticatePayload, payload, event).token
            except GatewayError as e:
                await self.send_error(e.to_payload(), event)
                continue

            identity = self.verify_token(token)
            if identity is None:
                await self.websocket.close(
                    code=WSCloseCode.AUTH_FAILED, reason="Authentication failed"
                )
                return None
            self._authenticated_by_frame = True
            return identity

        logger.info("Authentication timed out", endpoint=self.endpoint_name, timeout=self.auth_timeout)
        self.context.audit("AUTH_FAILED", reason="auth_timeout")
        await self.websocket.close(code=WSCloseCode.AUTH_FAILED, reason="Authentication timeout")
        return None

    async def on_registered(self) -> None:
        if self._authenticated_by_frame and self.context.identity is not None:
            await self.send(
                ServerEvent.AUTHENTICATED.value,
                {
                    "userId": self.context.identity.user_id,
                    "username": self.context.identity.username,
                },
            )

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle_event(self, event: str, payload: dict[str, Any]) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            raise InvalidEventError(f"Unknown event: {event}", event=event)
        await handler(payload)

    @property
    def identity(self) -> ClientIdentity:
        if self.context.identity is None:
            raise NotAuthenticatedError()
        return self.context.identity

    def _connection(self) -> "Connection":
        return self.manager.registry.require(self.connection_id or "")

    def _require_joined(self, room_id: str) -> None:
        if room_id not in self._connection().room_ids:
            raise RoomAccessError("Join the room first", room_id=room_id)

    # =========================================================================
    # Rooms
    # =========================================================================

    async def _on_authenticate(self, payload: dict[str, Any]) -> None:
        raise InvalidEventError("Already authenticated", event=ClientEvent.AUTHENTICATE.value)

    async def _on_join_room(self, payload: dict[str, Any]) -> None:
        room_id = parse_payload(RoomPayload, payload, ClientEvent.JOIN_ROOM.value).room_id
        online_users = await self.manager.join_room(self.connection_id or "", room_id)
        await self.send(
            ServerEvent.ROOM_JOINED.value,
            {"roomId": room_id, "onlineUsers": online_users},
        )

    async def _on_leave_room(self, payload: dict[str, Any]) -> None:
        room_id = parse_payload(RoomPayload, payload, ClientEvent.LEAVE_ROOM.value).room_id
        await self.manager.leave_room(self.connection_id or "", room_id)
        await self.send(ServerEvent.ROOM_LEFT.value, {"roomId": room_id})

    # =========================================================================
    # Messages
    # =========================================================================

    async def _on_send_message(self, payload: dict[str, Any]) -> None:
        message = parse_payload(SendMessagePayload, payload, ClientEvent.SEND_MESSAGE.value)
        identity = self.identity
        if message.room_id:
            self._require_joined(message.room_id)

        message_id = str(uuid.uuid4())
        timestamp = iso_timestamp()
        data = {
            "messageId": message_id,
            "roomId": message.room_id,
            "recipientId": message.recipient_id,
            "senderId": identity.user_id,
            "senderName": identity.username,
            "content": message.content,
            "type": message.type,
            "replyTo": message.reply_to,
            "attachments": message.attachments,
            "timestamp": timestamp,
        }

        if message.room_id:
            await self.manager.router.deliver_to_room(
                message.room_id,
                ServerEvent.NEW_MESSAGE.value,
                data,
                exclude_connection_id=self.connection_id,
            )
        else:
            await self.manager.router.deliver_to_user(
                message.recipient_id or "", ServerEvent.NEW_MESSAGE.value, data
            )

        await self.manager.metrics.record_message(
            message.room_id, size=len(message.content.encode("utf-8"))
        )
        await self.manager.dispatcher.publish_to_queue(
            {"action": ClientEvent.SEND_MESSAGE.value, "data": data}
        )
        await self.send(
            ServerEvent.MESSAGE_SENT.value,
            {"messageId": message_id, "timestamp": timestamp},
        )

    async def _on_message_reaction(self, payload: dict[str, Any]) -> None:
        reaction = parse_payload(
            MessageReactionPayload, payload, ClientEvent.MESSAGE_REACTION.value
        )
        self._require_joined(reaction.room_id)
        data = {
            "messageId": reaction.message_id,
            "roomId": reaction.room_id,
            "emoji": reaction.emoji,
            "userId": self.identity.user_id,
            "username": self.identity.username,
            "timestamp": iso_timestamp(),
        }
        await self.manager.router.deliver_to_room(
            reaction.room_id, ServerEvent.MESSAGE_REACTION_ADDED.value, data
        )
        await self.manager.dispatcher.publish_to_queue(
            {"action": ClientEvent.MESSAGE_REACTION.value, "data": data}
        )

    # =========================================================================
    # Typing
    # =========================================================================

    async def _on_typing_start(self, payload: dict[str, Any]) -> None:
        await self._typing(payload, ClientEvent.TYPING_START.value, is_typing=True)

    async def _on_typing_stop(self, payload: dict[str, Any]) -> None:
        await self._typing(payload, ClientEvent.TYPING_STOP.value, is_typing=False)

    async def _typing(self, payload: dict[str, Any], event: str, is_typing: bool) -> None:
        room_id = parse_payload(RoomPayload, payload, event).room_id
        self._require_joined(room_id)
        identity = self.identity
        if is_typing:
            await self.manager.typing.start(room_id, identity.user_id, identity.username)
        else:
            await self.manager.typing.stop(room_id, identity.user_id)
        await self.manager.router.deliver_to_room(
            room_id,
            ServerEvent.USER_TYPING.value,
            {
                "userId": identity.user_id,
                "username": identity.username,
                "roomId": room_id,
                "isTyping": is_typing,
            },
            exclude_connection_id=self.connection_id,
        )

    # =========================================================================
    # Presence
    # =========================================================================

    async def _on_update_presence(self, payload: dict[str, Any]) -> None:
        update = parse_payload(UpdatePresencePayload, payload, ClientEvent.UPDATE_PRESENCE.value)
        await self.manager.presence.set_status(
            self.identity.user_id, update.status, update.custom_status
        )

    async def _on_set_active_chat(self, payload: dict[str, Any]) -> None:
        chat_id = parse_payload(
            SetActiveChatPayload, payload, ClientEvent.SET_ACTIVE_CHAT.value
        ).chat_id
        if chat_id:
            await self.manager.presence.set_active_chat(self.identity.user_id, chat_id)
        else:
            await self.manager.presence.clear_active_chat(self.identity.user_id)

    async def _on_get_online_users(self, payload: dict[str, Any]) -> None:
        room_id = parse_payload(
            GetOnlineUsersPayload, payload, ClientEvent.GET_ONLINE_USERS.value
        ).room_id
        if room_id:
            users = await self.manager.router.online_users_in_room(room_id)
        else:
            users = sorted(await self.manager.presence.list_online_users())
        await self.send(ServerEvent.ONLINE_USERS.value, {"roomId": room_id, "users": users})

    async def _on_get_presence(self, payload: dict[str, Any]) -> None:
        user_ids = parse_payload(GetPresencePayload, payload, ClientEvent.GET_PRESENCE.value).user_ids
        found = await self.manager.presence.get_bulk_presence(user_ids)
        await self.send(
            ServerEvent.PRESENCE_BULK.value,
            {"presence": {user_id: p.to_payload() for user_id, p in found.items()}},
        )
