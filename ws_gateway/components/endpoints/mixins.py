"""
WebSocket Endpoint Mixins.

Each mixin handles a single concern for WebSocket endpoints.

Mixins:
    MessageValidationMixin: Frame size, frame decoding and rate limit checks
    OriginValidationMixin: WebSocket origin header validation
    TokenAuthMixin: Token lookup and JWT verification
    HeartbeatMixin: Activity recording
    ConnectionLifecycleMixin: Lifecycle logging

Usage:
    class MyEndpoint(MessageValidationMixin, OriginValidationMixin, WebSocketEndpointBase):
        ...
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Protocol

from fastapi import HTTPException, WebSocket

from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.security.auth import extract_bearer_token, verify_jwt
from ws_gateway.components.core.constants import WSCloseCode, validate_websocket_origin
from ws_gateway.components.core.context import ClientIdentity
from ws_gateway.components.core.exceptions import InvalidEventError
from ws_gateway.components.events.types import UNMETERED_CLIENT_EVENTS

if TYPE_CHECKING:
    from ws_gateway.connection_manager import ConnectionManager
    from ws_gateway.components.core.context import WebSocketContext

logger = get_logger(__name__)


# =============================================================================
# Protocols for mixin dependencies
# =============================================================================


class HasWebSocket(Protocol):
    """Protocol for classes with websocket attribute."""

    websocket: WebSocket
    endpoint_name: str
    context: "WebSocketContext"


class HasManager(Protocol):
    """Protocol for classes with manager attribute."""

    manager: "ConnectionManager"
    connection_id: str | None


# =============================================================================
# MessageValidationMixin
# =============================================================================


class MessageValidationMixin:
    """
    Mixin for inbound frame validation.

    Requires:
        - self.websocket: WebSocket
        - self.manager: ConnectionManager
        - self.endpoint_name: str
        - self.context: WebSocketContext
    """

    async def validate_message_size(self: HasWebSocket, data: str) -> bool:
        """
        Returns:
            True if valid, False if too large (connection closed).
        """
        max_size = settings.ws_max_message_size
        if len(data) > max_size:
            logger.warning(
                "Message size exceeded limit",
                endpoint=self.endpoint_name,
                identifier=self.context.identifier,
                size=len(data),
                max_size=max_size,
            )
            await self.websocket.close(
                code=WSCloseCode.MESSAGE_TOO_BIG,
                reason="Message too large",
            )
            return False
        return True

    @staticmethod
    def parse_frame(data: str) -> tuple[str, dict[str, Any]]:
        """
        Decode a `{"event": name, "data": {...}}` frame.

        Raises:
            InvalidEventError: If the frame is not JSON or has no event name.
        """
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            raise InvalidEventError("Malformed frame: invalid JSON")
        if not isinstance(frame, dict):
            raise InvalidEventError("Malformed frame: expected an object")

        event = frame.get("event")
        if not isinstance(event, str) or not event:
            raise InvalidEventError("Malformed frame: missing event name")

        payload = frame.get("data")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidEventError(f"Payload for {event} must be an object", event=event)
        return event, payload

    async def check_rate_limit(self: "HasWebSocket & HasManager", event: str) -> None:
        """
        Consume rate-limit budget for the action.

        Raises:
            RateLimitExceededError: If the user's budget is spent.
        """
        identity = self.context.identity
        if identity is None or event in UNMETERED_CLIENT_EVENTS:
            return
        await self.manager.check_rate_limit(identity.user_id, event)


# =============================================================================
# OriginValidationMixin
# =============================================================================


class OriginValidationMixin:
    """
    Mixin for WebSocket origin header validation.

    Requires:
        - self.websocket: WebSocket
    """

    def validate_origin(self: HasWebSocket) -> bool:
        return validate_websocket_origin(self.get_origin(), settings)

    def get_origin(self: HasWebSocket) -> str | None:
        return self.websocket.headers.get("origin")


# =============================================================================
# TokenAuthMixin
# =============================================================================


class TokenAuthMixin:
    """
    Mixin for JWT authentication.

    The token comes from the `token` query parameter or an
    `Authorization: Bearer` header, or later from an `authenticate` frame.

    Requires:
        - self.websocket: WebSocket
        - self.context: WebSocketContext
    """

    def get_presented_token(self: HasWebSocket) -> str | None:
        token = self.websocket.query_params.get("token")
        if token:
            return token
        return extract_bearer_token(self.websocket.headers.get("authorization"))

    def verify_token(self: HasWebSocket, token: str) -> ClientIdentity | None:
        """
        Returns:
            The identity behind the token, or None when it is invalid
            (the failure is audited).
        """
        try:
            claims = verify_jwt(token)
        except HTTPException as e:
            logger.warning(
                "WebSocket JWT validation failed",
                error=str(e.detail),
                origin=self.context.origin,
            )
            self.context.audit("AUTH_FAILED", reason="jwt_validation_failed")
            return None
        return ClientIdentity.from_jwt_claims(claims)


# =============================================================================
# HeartbeatMixin
# =============================================================================


class HeartbeatMixin:
    """
    Mixin for activity recording.

    Requires:
        - self.manager: ConnectionManager
        - self.connection_id: str | None
    """

    async def record_heartbeat(self: HasManager) -> None:
        if self.connection_id is not None:
            await self.manager.record_activity(self.connection_id)


# =============================================================================
# ConnectionLifecycleMixin
# =============================================================================


class ConnectionLifecycleMixin:
    """
    Mixin for connection lifecycle logging.

    Requires:
        - self.endpoint_name: str
        - self.context: WebSocketContext
    """

    def log_connect(self: HasWebSocket) -> None:
        logger.info("Client connected", **self.context.to_audit_dict("CONNECT"))
        self.context.audit("CONNECT")

    def log_disconnect(self: HasWebSocket, reason: str = "client_disconnect") -> None:
        logger.info(
            "Client disconnected",
            **self.context.to_audit_dict("DISCONNECT", reason=reason),
        )
        self.context.audit("DISCONNECT", reason=reason)

    def log_connect_rejected(self: HasWebSocket, reason: str) -> None:
        logger.warning(
            "Connection rejected",
            endpoint=self.endpoint_name,
            identifier=self.context.identifier,
            reason=reason,
        )
        self.context.audit("CONNECT_REJECTED", reason=reason)


__all__ = [
    "MessageValidationMixin",
    "OriginValidationMixin",
    "TokenAuthMixin",
    "HeartbeatMixin",
    "ConnectionLifecycleMixin",
    # Protocols
    "HasWebSocket",
    "HasManager",
]
