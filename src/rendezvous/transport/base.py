"""Base transport abstraction for client connections.

Defines the interface a transport implementation must provide to the relay:
a connection with a stable identifier, point-to-point message delivery, and
a message stream that ends when the connection is lost.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from pydantic import BaseModel

from src.rendezvous.protocol import ClientMessage


class TransportSession(ABC):
    """Base class for transport-specific sessions.

    Each transport implementation provides a concrete session type that handles
    framing and serialization while conforming to this interface.
    """

    @abstractmethod
    async def send_message(self, message: BaseModel) -> None:
        """Send a server message to the client.

        Args:
            message: Server → client protocol message

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    async def receive_messages(self) -> AsyncIterator[ClientMessage]:
        """Receive validated messages from the client.

        The iterator ends when the connection closes. Malformed frames are
        skipped by the implementation and never surface here.

        Yields:
            ClientMessage: Parsed client message
        """
        # Using yield to make this an async generator
        if False:
            yield

    @abstractmethod
    async def close(self) -> None:
        """Clean session shutdown."""
        pass

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Unique connection identifier, stable for the connection lifetime."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the session connection is still active."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a specific transport type and creates sessions
    for incoming client connections.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        This should be non-blocking and return once the server is ready.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails (for network transports)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and release its resources."""
        pass

    @abstractmethod
    async def accept_session(self) -> TransportSession:
        """Accept a new client session.

        Blocks until a new client connection is established.

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
