"""
WebSocket Endpoint Base Class.

Owns the connection lifecycle every endpoint shares: origin check,
authentication, registration with the ConnectionManager, the receive loop
and the disconnect path. Subclasses decide how a client authenticates and
what each event does.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket, WebSocketDisconnect

from shared.config.logging import get_logger
from shared.infrastructure.correlation import bind_connection_id
from ws_gateway.components.connection.heartbeat import handle_heartbeat
from ws_gateway.components.core.constants import WSCloseCode, WSConstants
from ws_gateway.components.core.context import (
    ClientIdentity,
    WebSocketContext,
    iso_timestamp,
)
from ws_gateway.components.core.exceptions import GatewayError
from ws_gateway.components.endpoints.mixins import (
    ConnectionLifecycleMixin,
    HeartbeatMixin,
    MessageValidationMixin,
    OriginValidationMixin,
)

if TYPE_CHECKING:
    from ws_gateway.connection_manager import ConnectionManager

logger = get_logger(__name__)

ERROR_EVENT = "error"
INTERNAL_ERROR_CODE = "internal_error"


class WebSocketEndpointBase(
    MessageValidationMixin,
    OriginValidationMixin,
    HeartbeatMixin,
    ConnectionLifecycleMixin,
    ABC,
):
    """
    Base class for WebSocket endpoints.

    Subclasses implement:
    - authenticate(): Resolve the client identity (accepting the socket), or
      close the socket and return None.
    - handle_event(): Process one decoded client event.

    Usage:
        endpoint = ChatEndpoint(websocket, manager)
        await endpoint.run()
    """

    def __init__(
        self,
        websocket: WebSocket,
        manager: "ConnectionManager",
        endpoint_name: str,
        receive_timeout: float = WSConstants.WS_RECEIVE_TIMEOUT,
    ):
        self.websocket = websocket
        self.manager = manager
        self.endpoint_name = endpoint_name
        self.receive_timeout = receive_timeout

        self.context = WebSocketContext.from_websocket(websocket, endpoint_name)
        self.connection_id: str | None = None
        self._is_running = False

    @abstractmethod
    async def authenticate(self) -> ClientIdentity | None:
        """
        Returns:
            The client identity with the socket accepted, or None if the
            socket was closed.
        """

    @abstractmethod
    async def handle_event(self, event: str, payload: dict[str, Any]) -> None:
        """
        Raises:
            GatewayError: Reported to the client as an `error` event.
        """

    async def on_registered(self) -> None:
        """Hook called once the connection is registered."""

    async def run(self) -> None:
        """
        Main entry point - run the WebSocket endpoint.

        1. Validate origin
        2. Authenticate
        3. Register connection
        4. Message loop
        5. Unregister on disconnect
        """
        if not self.validate_origin():
            logger.warning(
                "WebSocket connection rejected - invalid origin",
                origin=self.context.origin,
            )
            self.context.audit("AUTH_FAILED", reason="invalid_origin")
            await self.websocket.close(code=WSCloseCode.FORBIDDEN, reason="Origin not allowed")
            return

        try:
            identity = await self.authenticate()
        except WebSocketDisconnect:
            logger.debug("Client left before authenticating", endpoint=self.endpoint_name)
            return
        if identity is None:
            return
        self.context = self.context.with_identity(identity)

        try:
            conn = await self.manager.connect(identity, self.websocket)
        except ConnectionError as e:
            self.log_connect_rejected(str(e))
            return
        if conn is None:
            return

        self.connection_id = conn.connection_id
        self.context = self.context.with_identity(identity, conn.connection_id)

        with bind_connection_id(conn.connection_id):
            self._is_running = True
            try:
                self.log_connect()
                await self.on_registered()
                await self._message_loop()
            except WebSocketDisconnect:
                self.log_disconnect("client_disconnect")
            finally:
                self._is_running = False
                await self.manager.disconnect(conn.connection_id)

    async def _message_loop(self) -> None:
        while self._is_running:
            data = await self._receive_with_timeout()
            if data is None:
                logger.info(
                    "Connection timed out (no messages)",
                    endpoint=self.endpoint_name,
                    identifier=self.context.identifier,
                    timeout=self.receive_timeout,
                )
                await self.websocket.close(code=WSCloseCode.NORMAL, reason="Connection timeout")
                break

            if not await self.validate_message_size(data):
                break

            await self.record_heartbeat()

            if await handle_heartbeat(self.websocket, data):
                continue

            await self.process_frame(data)

    async def process_frame(self, data: str) -> None:
        """Decode, meter and handle one frame; failures become `error` events."""
        event: str | None = None
        try:
            event, payload = self.parse_frame(data)
            await self.check_rate_limit(event)
            await self.handle_event(event, payload)
        except GatewayError as e:
            logger.debug(
                "Client action rejected",
                event=event,
                code=e.code,
                error=e.message,
            )
            await self.send_error(e.to_payload(), event)
        except WebSocketDisconnect:
            raise
        except Exception as e:
            logger.error(
                "Error handling client event",
                event=event,
                identifier=self.context.identifier,
                error=str(e),
                exc_info=True,
            )
            await self.send_error(
                {"message": "Internal server error", "code": INTERNAL_ERROR_CODE}, event
            )

    async def send(self, event: str, data: dict[str, Any]) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    async def send_error(self, error: dict[str, Any], event: str | None) -> None:
        await self.manager.metrics.record_error(error.get("code", INTERNAL_ERROR_CODE))
        try:
            await self.send(
                ERROR_EVENT,
                {**error, "event": event, "timestamp": iso_timestamp()},
            )
        except (RuntimeError, ConnectionError, OSError) as e:
            logger.debug("Could not deliver error event", event=event, error=str(e))

    async def _receive_with_timeout(self, timeout: float | None = None) -> str | None:
        """
        Returns:
            Message data, or None on timeout.
        """
        try:
            return await asyncio.wait_for(
                self.websocket.receive_text(),
                timeout=timeout if timeout is not None else self.receive_timeout,
            )
        except asyncio.TimeoutError:
            return None
