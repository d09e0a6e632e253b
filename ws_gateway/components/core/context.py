"""
Client identity and audit context.

The identity is attached to a connection exactly once, at successful
authentication, and is immutable afterwards.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TYPE_CHECKING

from shared.config.logging import audit_ws_connection, mask_email

if TYPE_CHECKING:
    from fastapi import WebSocket


def iso_timestamp(ts: float | None = None) -> str:
    """UTC ISO-8601 string for a Unix timestamp (now when omitted)."""
    return datetime.fromtimestamp(time.time() if ts is None else ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class ClientIdentity:
    """Authenticated user behind a connection."""

    user_id: str
    username: str
    email: str | None = None

    @classmethod
    def from_jwt_claims(cls, claims: dict[str, Any]) -> "ClientIdentity":
        """Build an identity from verified JWT claims (sub, username, email)."""
        return cls(
            user_id=str(claims["sub"]),
            username=str(claims["username"]),
            email=claims.get("email"),
        )


@dataclass
class WebSocketContext:
    """
    Context object for WebSocket connection metadata.

    Usage:
        ctx = WebSocketContext.from_websocket(websocket, "/ws/chat")
        ctx.audit("AUTH_FAILED", reason="jwt_validation_failed")
        ...
        ctx = ctx.with_identity(identity, connection_id)
        ctx.audit("CONNECT")
    """

    endpoint: str
    origin: str | None = None
    identity: ClientIdentity | None = None
    connection_id: str | None = None

    @classmethod
    def from_websocket(cls, websocket: "WebSocket", endpoint: str) -> "WebSocketContext":
        return cls(endpoint=endpoint, origin=websocket.headers.get("origin"))

    @property
    def identifier(self) -> str:
        """Short identifier for log lines."""
        if self.identity is not None:
            return f"user:{self.identity.user_id}"
        return "anonymous"

    def with_identity(
        self, identity: ClientIdentity, connection_id: str | None = None
    ) -> "WebSocketContext":
        return WebSocketContext(
            endpoint=self.endpoint,
            origin=self.origin,
            identity=identity,
            connection_id=connection_id,
        )

    def to_audit_dict(self, event_type: str, **extra: Any) -> dict[str, Any]:
        """Flatten the context into logging kwargs."""
        data: dict[str, Any] = {
            "event_type": event_type,
            "endpoint": self.endpoint,
            "origin": self.origin,
            "connection_id": self.connection_id,
        }
        if self.identity is not None:
            data["user_id"] = self.identity.user_id
            data["email"] = mask_email(self.identity.email)
        data.update(extra)
        return data

    def audit(self, event_type: str, reason: str | None = None, **extra: Any) -> None:
        audit_ws_connection(
            event_type=event_type,
            endpoint=self.endpoint,
            user_id=self.identity.user_id if self.identity else None,
            connection_id=self.connection_id,
            origin=self.origin,
            reason=reason,
            **extra,
        )
