"""
Broadcast envelope carried on the cross-instance pub/sub channel.

Every instance publishes envelopes to and consumes envelopes from a single
channel. An envelope names the event to emit and who should receive it; each
receiving instance resolves the targets against its own local connections.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Self


def _str_tuple(data: dict[str, Any], name: str) -> tuple[str, ...]:
    value = data.get(name) or ()
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"{name} must be a list")
    return tuple(str(v) for v in value)


@dataclass(frozen=True, slots=True)
class BroadcastEnvelope:
    """
    Immutable unit of cross-instance fan-out.

    A receiver delivers to the union of its local connections that are
    joined to any of room_ids, owned by any of user_ids, or listed in
    connection_ids, minus exclude_connection_id.

    Attributes:
        event: Outbound event name (e.g. "new_message").
        payload: Event data, already in wire (camelCase) form.
        room_ids: Target rooms.
        user_ids: Target users (all of their connections).
        connection_ids: Target connections by id.
        exclude_connection_id: Connection that must not receive the event,
            typically the sender.
        origin: Publishing instance id. Receivers with the same id skip the
            envelope because the publisher already delivered locally. None
            means every instance delivers, the publisher included.
        envelope_id: Unique id, for log correlation.
        created_at: Unix timestamp of publication.
    """

    event: str
    payload: dict[str, Any] = field(default_factory=dict)
    room_ids: tuple[str, ...] = ()
    user_ids: tuple[str, ...] = ()
    connection_ids: tuple[str, ...] = ()
    exclude_connection_id: str | None = None
    origin: str | None = None
    envelope_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    @property
    def has_targets(self) -> bool:
        return bool(self.room_ids or self.user_ids or self.connection_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "payload": self.payload,
            "room_ids": list(self.room_ids),
            "user_ids": list(self.user_ids),
            "connection_ids": list(self.connection_ids),
            "exclude_connection_id": self.exclude_connection_id,
            "origin": self.origin,
            "envelope_id": self.envelope_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Self:
        """
        Parse a decoded envelope.

        Raises:
            ValueError: If the data is not a well-formed envelope.
        """
        if not isinstance(data, dict):
            raise ValueError("Envelope must be a JSON object")

        event = data.get("event")
        if not isinstance(event, str) or not event:
            raise ValueError("Envelope has no event name")

        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("Envelope payload must be an object")

        exclude = data.get("exclude_connection_id")
        origin = data.get("origin")
        created_at = data.get("created_at")

        return cls(
            event=event,
            payload=payload,
            room_ids=_str_tuple(data, "room_ids"),
            user_ids=_str_tuple(data, "user_ids"),
            connection_ids=_str_tuple(data, "connection_ids"),
            exclude_connection_id=str(exclude) if exclude is not None else None,
            origin=str(origin) if origin is not None else None,
            envelope_id=str(data.get("envelope_id") or uuid.uuid4().hex),
            created_at=float(created_at) if isinstance(created_at, (int, float)) else time.time(),
        )

    def to_frame(self) -> dict[str, Any]:
        """The frame sent to each target socket."""
        return {"event": self.event, "data": self.payload}
