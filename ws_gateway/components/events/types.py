"""
Event names and payload schemas.

Three vocabularies meet in the gateway:
- ClientEvent: frames sent by clients over the socket.
- ServerEvent: frames the gateway emits to clients.
- RoutingKey: broker routing keys consumed from the chat.events exchange.

Client payloads use camelCase field names on the wire; the models below
accept those names (and `chatId` wherever a `roomId` is expected) and expose
snake_case attributes.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)

from ws_gateway.components.core.exceptions import InvalidEventError

MAX_ID_LENGTH = 128
MAX_CONTENT_LENGTH = 10_000
MAX_BULK_PRESENCE_USERS = 200


class ClientEvent(str, Enum):
    AUTHENTICATE = "authenticate"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    UPDATE_PRESENCE = "update_presence"
    SET_ACTIVE_CHAT = "set_active_chat"
    GET_ONLINE_USERS = "get_online_users"
    GET_PRESENCE = "get_presence"
    MESSAGE_REACTION = "message_reaction"
    PING = "ping"


VALID_CLIENT_EVENTS: frozenset[str] = frozenset(e.value for e in ClientEvent)

# Actions that do not consume rate-limit budget
UNMETERED_CLIENT_EVENTS: frozenset[str] = frozenset({
    ClientEvent.AUTHENTICATE.value,
    ClientEvent.PING.value,
})


class ServerEvent(str, Enum):
    # Session
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    PONG = "pong"
    ERROR = "error"

    # Rooms
    ROOM_JOINED = "room_joined"
    ROOM_LEFT = "room_left"
    USER_JOINED_ROOM = "user_joined_room"
    USER_LEFT_ROOM = "user_left_room"

    # Messages
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    MESSAGE_REACTION_ADDED = "message_reaction_added"
    REACTION_ADDED = "reaction_added"
    REACTION_REMOVED = "reaction_removed"

    # Presence
    USER_TYPING = "user_typing"
    PRESENCE_UPDATE = "presence_update"
    ONLINE_USERS = "online_users"
    PRESENCE_BULK = "presence_bulk"

    # Chats
    CHAT_CREATED = "chat_created"
    CHAT_UPDATED = "chat_updated"
    MEMBER_ADDED = "member_added"
    MEMBER_REMOVED = "member_removed"
    NOTIFICATION = "notification"


class RoutingKey(str, Enum):
    MESSAGE_SENT = "chat.message.sent"
    MESSAGE_UPDATED = "chat.message.updated"
    MESSAGE_DELETED = "chat.message.deleted"
    REACTION_ADDED = "chat.message.reaction.added"
    REACTION_REMOVED = "chat.message.reaction.removed"
    CHAT_CREATED = "chat.created"
    CHAT_UPDATED = "chat.updated"
    MEMBER_ADDED = "chat.member.added"
    MEMBER_REMOVED = "chat.member.removed"
    USER_STATUS_UPDATED = "user.status.updated"
    NOTIFICATION_PUSH = "notification.push"


CONSUMED_ROUTING_KEYS: tuple[str, ...] = tuple(k.value for k in RoutingKey)


# =============================================================================
# Client payloads
# =============================================================================

_ROOM_ID_ALIASES = AliasChoices("roomId", "chatId", "room_id")


class ClientPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class AuthenticatePayload(ClientPayload):
    token: str = Field(min_length=1)


class RoomPayload(ClientPayload):
    """join_room, leave_room, typing_start, typing_stop."""

    room_id: str = Field(
        validation_alias=_ROOM_ID_ALIASES, min_length=1, max_length=MAX_ID_LENGTH
    )


class SendMessagePayload(ClientPayload):
    room_id: str | None = Field(
        default=None, validation_alias=_ROOM_ID_ALIASES, max_length=MAX_ID_LENGTH
    )
    recipient_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("recipientId", "recipient_id"),
        max_length=MAX_ID_LENGTH,
    )
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH)
    type: str = Field(default="text", max_length=32)
    reply_to: str | None = Field(
        default=None, validation_alias=AliasChoices("replyTo", "reply_to")
    )
    attachments: list[dict[str, Any]] = Field(default_factory=list, max_length=20)

    @model_validator(mode="after")
    def _needs_target(self) -> "SendMessagePayload":
        if not self.room_id and not self.recipient_id:
            raise ValueError("roomId or recipientId is required")
        return self


class UpdatePresencePayload(ClientPayload):
    status: Literal["online", "away", "busy"]
    custom_status: str | None = Field(
        default=None,
        validation_alias=AliasChoices("customStatus", "custom_status"),
        max_length=100,
    )


class SetActiveChatPayload(ClientPayload):
    chat_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("chatId", "roomId", "chat_id"),
        max_length=MAX_ID_LENGTH,
    )


class GetOnlineUsersPayload(ClientPayload):
    room_id: str | None = Field(
        default=None, validation_alias=_ROOM_ID_ALIASES, max_length=MAX_ID_LENGTH
    )


class GetPresencePayload(ClientPayload):
    user_ids: list[str] = Field(
        validation_alias=AliasChoices("userIds", "user_ids"),
        max_length=MAX_BULK_PRESENCE_USERS,
    )


class MessageReactionPayload(ClientPayload):
    message_id: str = Field(
        validation_alias=AliasChoices("messageId", "message_id"),
        min_length=1,
        max_length=MAX_ID_LENGTH,
    )
    room_id: str = Field(
        validation_alias=_ROOM_ID_ALIASES, min_length=1, max_length=MAX_ID_LENGTH
    )
    emoji: str = Field(min_length=1, max_length=32)


P = TypeVar("P", bound=ClientPayload)


def parse_payload(model: type[P], data: Any, event: str) -> P:
    """
    Validate a client payload.

    Raises:
        InvalidEventError: With the first validation problem as message.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidEventError(f"Payload for {event} must be an object", event=event)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        raise InvalidEventError(
            f"Invalid {event} payload: {location}: {first.get('msg')}",
            event=event,
        ) from e
