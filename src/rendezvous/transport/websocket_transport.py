"""WebSocket transport implementation.

Provides WebSocket-based client connections for the relay. Plain HTTP
requests on the same port receive a static confirmation string, which
serves as the health check for load balancers.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from http import HTTPStatus
from typing import Any

import websockets
from pydantic import BaseModel
from websockets.asyncio.server import ServerConnection
from websockets.http11 import Request, Response
from websockets.protocol import State

from src.rendezvous.protocol import (
    ClientMessage,
    ConnectedMessage,
    encode_message,
    parse_client_message,
)
from src.rendezvous.transport.base import Transport, TransportSession

logger = logging.getLogger(__name__)

HEALTH_TEXT = "Rendezvous relay running"


class WebSocketSession(TransportSession):
    """WebSocket-based transport session.

    Implements the TransportSession interface for WebSocket connections,
    handling JSON message serialization.
    """

    def __init__(self, websocket: ServerConnection, session_id: str) -> None:
        """Initialize WebSocket session.

        Args:
            websocket: WebSocket connection
            session_id: Unique connection identifier
        """
        self._websocket = websocket
        self._session_id = session_id
        self._connected = True

        logger.info(
            "WebSocket session initialized",
            extra={"session_id": session_id, "remote": websocket.remote_address},
        )

    @property
    def session_id(self) -> str:
        """Get unique connection identifier."""
        return self._session_id

    @property
    def is_connected(self) -> bool:
        """Check if the session connection is still active."""
        return self._connected and self._websocket.state == State.OPEN

    async def send_message(self, message: BaseModel) -> None:
        """Send a server message to the client.

        Args:
            message: Server → client protocol message

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        try:
            await self._websocket.send(encode_message(message))
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

    async def send_connected(self) -> None:
        """Tell the client its connection id."""
        await self.send_message(ConnectedMessage(id=self._session_id))

    async def receive_messages(self) -> AsyncIterator[ClientMessage]:
        """Receive validated messages from the client.

        Malformed frames are logged and skipped. The iterator ends when the
        connection closes.

        Yields:
            ClientMessage: Parsed client message
        """
        try:
            async for raw_message in self._websocket:
                if not isinstance(raw_message, str):
                    logger.warning(
                        "Received non-text WebSocket message, skipping",
                        extra={"session_id": self._session_id},
                    )
                    continue

                try:
                    message = parse_client_message(raw_message)
                except ValueError as e:
                    logger.warning(
                        "Invalid client message, skipping",
                        extra={"session_id": self._session_id, "error": str(e)},
                    )
                    continue

                logger.debug(
                    "Client message received",
                    extra={"session_id": self._session_id, "type": message.type},
                )
                yield message

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by client",
                extra={"session_id": self._session_id},
            )
        finally:
            self._connected = False

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if not self._connected:
            return

        logger.info("Closing WebSocket session", extra={"session_id": self._session_id})

        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during session close",
                extra={"session_id": self._session_id, "error": str(e)},
            )
        finally:
            self._connected = False


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages WebSocket server lifecycle and creates WebSocketSession instances
    for incoming client connections.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 4000,
        max_connections: int = 1000,
        max_message_bytes: int = 2**16,
        ping_interval_s: float | None = 20.0,
        allowed_origins: list[str] | None = None,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum size of one inbound frame
            ping_interval_s: Keepalive ping interval (None disables)
            allowed_origins: Browser origins allowed to connect (None for any)
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._ping_interval_s = ping_interval_s
        self._allowed_origins = allowed_origins
        self._server: Any = None  # websockets.Server type
        self._running = False
        self._session_queue: asyncio.Queue[WebSocketSession] = asyncio.Queue()
        self._active_connections = 0

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def port(self) -> int:
        """Bound port (resolved after start when configured as 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info(
            "Starting WebSocket server", extra={"host": self._host, "port": self._port}
        )

        # Clients without an Origin header (non-browser) are always accepted
        origins = None if self._allowed_origins is None else [*self._allowed_origins, None]

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
                ping_interval=self._ping_interval_s,
                origins=origins,
                process_request=self._process_request,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.port},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error(
                "Failed to start WebSocket server",
                extra={"error": str(e)},
            )
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server, closing all open connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_session(self) -> TransportSession:
        """Accept a new client session.

        Returns:
            TransportSession: New client session

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._session_queue.get()

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        """Answer plain HTTP requests; let WebSocket upgrades through.

        Args:
            connection: Connection being opened
            request: Parsed HTTP request

        Returns:
            HTTP response, or None to continue the WebSocket handshake
        """
        if request.headers.get("Upgrade", "").lower() == "websocket":
            if self._active_connections >= self._max_connections:
                logger.warning(
                    "Connection limit reached, rejecting client",
                    extra={"max_connections": self._max_connections},
                )
                return connection.respond(HTTPStatus.SERVICE_UNAVAILABLE, "Too many connections\n")
            return None

        if request.path.split("?", 1)[0] != "/":
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

        response = connection.respond(HTTPStatus.OK, HEALTH_TEXT)
        origin = request.headers.get("Origin")
        if self._allowed_origins is None:
            response.headers["Access-Control-Allow-Origin"] = "*"
        elif origin in self._allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        return response

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle incoming WebSocket connection.

        Args:
            websocket: WebSocket connection
        """
        session_id = f"ws-{uuid.uuid4().hex}"
        self._active_connections += 1

        logger.info(
            "New WebSocket connection",
            extra={
                "session_id": session_id,
                "remote": websocket.remote_address,
            },
        )

        session = WebSocketSession(websocket, session_id)

        try:
            await session.send_connected()

            # Queue session for the relay to accept
            await self._session_queue.put(session)

            # Keep connection alive until closed
            await websocket.wait_closed()
        except ConnectionError:
            logger.info(
                "Connection closed before session start",
                extra={"session_id": session_id},
            )
        finally:
            self._active_connections -= 1
            logger.info(
                "WebSocket connection closed",
                extra={"session_id": session_id},
            )
