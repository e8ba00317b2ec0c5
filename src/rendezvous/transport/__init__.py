"""Transport layer for relay client connections.

Provides abstraction over the connection mechanism so the coordinator only
ever sees connection ids and protocol messages.
"""

from src.rendezvous.transport.base import Transport, TransportSession
from src.rendezvous.transport.websocket_transport import (
    WebSocketSession,
    WebSocketTransport,
)

__all__ = [
    "Transport",
    "TransportSession",
    "WebSocketSession",
    "WebSocketTransport",
]
