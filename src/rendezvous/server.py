"""Rendezvous relay server.

Main server implementation that:
1. Starts the WebSocket transport (signaling plus a static HTTP health check)
2. Provides HTTP health check and stats endpoints
3. Accepts client sessions
4. Routes client events into the session coordinator
5. Delivers the coordinator's notifications to the addressed connections
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import AppRunner, TCPSite

from src.rendezvous.config import RendezvousConfig
from src.rendezvous.coordinator import Outbound, SessionCoordinator
from src.rendezvous.health import create_health_app
from src.rendezvous.protocol import (
    ChatMessage,
    ClientMessage,
    JoinMessage,
    LeaveMessage,
    ServerMessage,
    SignalMessage,
)
from src.rendezvous.transport.base import TransportSession
from src.rendezvous.transport.websocket_transport import WebSocketTransport
from src.rendezvous.utils.logging import setup_logging

logger = logging.getLogger(__name__)


class RendezvousServer:
    """Relay server state: the coordinator plus the live session registry.

    The registry provides the send-to-identifier primitive the coordinator's
    notifications are addressed through. Each registered session owns an
    outbox drained by a single writer task, so notifications reach a peer in
    the order the coordinator produced them, and a slow peer never blocks the
    connection whose event triggered the notification.

    Thread-safety: The session registry is NOT thread-safe. Use from a single
    event loop.
    """

    def __init__(self, config: RendezvousConfig) -> None:
        """Initialize relay server.

        Args:
            config: Server configuration
        """
        self.config = config
        self.coordinator = SessionCoordinator(
            enforce_signal_partner=config.matching.enforce_signal_partner,
        )
        self.sessions: dict[str, TransportSession] = {}
        self._outboxes: dict[str, asyncio.Queue[ServerMessage | None]] = {}
        self._writers: set[asyncio.Task[None]] = set()

        logger.info(
            "Rendezvous server initialized: "
            f"enforce_signal_partner={config.matching.enforce_signal_partner}"
        )

    @property
    def connection_count(self) -> int:
        """Number of registered live sessions."""
        return len(self.sessions)

    def register_session(self, session: TransportSession) -> None:
        """Make a session addressable by its connection id.

        Must be called from within the running event loop; starts the
        session's writer task.
        """
        outbox: asyncio.Queue[ServerMessage | None] = asyncio.Queue()
        self.sessions[session.session_id] = session
        self._outboxes[session.session_id] = outbox

        writer = asyncio.create_task(self._write_loop(session, outbox))
        self._writers.add(writer)
        writer.add_done_callback(self._writers.discard)

    def unregister_session(self, session_id: str) -> None:
        """Remove a session from the registry.

        Notifications already queued for it are still attempted before its
        writer task exits.
        """
        self.sessions.pop(session_id, None)
        outbox = self._outboxes.pop(session_id, None)
        if outbox is not None:
            outbox.put_nowait(None)

    def handle_message(self, session_id: str, message: ClientMessage) -> list[Outbound]:
        """Apply one client event to the coordinator.

        Args:
            session_id: Connection id the message arrived on
            message: Parsed client message

        Returns:
            Notifications to deliver
        """
        if isinstance(message, JoinMessage):
            return self.coordinator.join(session_id)
        if isinstance(message, SignalMessage):
            return self.coordinator.signal(session_id, message.to, message.data)
        if isinstance(message, ChatMessage):
            return self.coordinator.chat(session_id, message.text)
        if isinstance(message, LeaveMessage):
            return self.coordinator.leave(session_id)

        logger.warning(
            "Unhandled client message",
            extra={"session_id": session_id, "type": type(message).__name__},
        )
        return []

    def dispatch(self, outbound: list[Outbound]) -> None:
        """Queue notifications for delivery, best effort.

        Never awaits, so calling it right after a coordinator operation fixes
        the per-peer delivery order to the order of state changes.
        Notifications for connections that are gone, or whose send fails, are
        dropped without retry.

        Args:
            outbound: Notifications returned by the coordinator
        """
        for item in outbound:
            outbox = self._outboxes.get(item.target)
            if outbox is None:
                logger.debug(
                    "Dropping notification for unknown connection",
                    extra={"session_id": item.target, "type": item.message.type},
                )
                continue

            outbox.put_nowait(item.message)

    async def wait_idle(self) -> None:
        """Wait until every registered session's outbox has been drained."""
        await asyncio.gather(*(outbox.join() for outbox in list(self._outboxes.values())))

    async def close_writers(self, timeout_s: float) -> None:
        """Wait for writer tasks to finish, cancelling any still pending."""
        if not self._writers:
            return

        _, pending = await asyncio.wait(set(self._writers), timeout=timeout_s)
        for task in pending:
            task.cancel()

    async def _write_loop(
        self, session: TransportSession, outbox: asyncio.Queue[ServerMessage | None]
    ) -> None:
        """Send queued notifications to one session until it is unregistered."""
        while True:
            message = await outbox.get()
            try:
                if message is None:
                    return

                if not session.is_connected:
                    logger.debug(
                        "Dropping notification for closed connection",
                        extra={"session_id": session.session_id, "type": message.type},
                    )
                    continue

                try:
                    await session.send_message(message)
                except ConnectionError as e:
                    logger.debug(
                        "Dropping notification, connection lost",
                        extra={"session_id": session.session_id, "error": str(e)},
                    )
            finally:
                outbox.task_done()


async def handle_session(session: TransportSession, server: RendezvousServer) -> None:
    """Handle a single client connection.

    Registers the session, applies each inbound event to the coordinator, and
    on connection loss disconnects it from the coordinator so a paired
    partner is notified and requeued.

    Args:
        session: Transport session for this connection
        server: Relay server instance
    """
    session_id = session.session_id
    message_count = 0

    server.register_session(session)
    logger.info("Session started", extra={"session_id": session_id})

    try:
        async for message in session.receive_messages():
            message_count += 1
            try:
                outbound = server.handle_message(session_id, message)
                server.dispatch(outbound)
            except Exception as e:
                # One connection's bad event must not end its session
                logger.exception(
                    "Error handling client message",
                    extra={"session_id": session_id, "error": str(e)},
                )

    except ConnectionError as e:
        logger.info(
            "Session connection lost",
            extra={"session_id": session_id, "error": str(e)},
        )
    finally:
        outbound = server.coordinator.disconnect(session_id)
        server.unregister_session(session_id)
        server.dispatch(outbound)

        logger.info(
            "Session ended",
            extra={"session_id": session_id, "message_count": message_count},
        )


async def start_server(config_path: Path | None, server: RendezvousServer | None = None) -> None:
    """Start the relay with configured transports.

    Initializes all components (config, transport, health checks) and runs the
    main server loop until interrupted or error.

    Args:
        config_path: Path to YAML config file (defaults and environment are
            used when absent)
        server: Optional pre-created server (for testing)

    Raises:
        OSError: If a listening port cannot be bound
    """
    config = server.config if server is not None else RendezvousConfig.from_yaml_with_defaults(config_path)

    setup_logging(config.log_level)
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if server is None:
        server = RendezvousServer(config)

    ws_config = config.transport.websocket
    transport = WebSocketTransport(
        host=ws_config.host,
        port=ws_config.port,
        max_connections=ws_config.max_connections,
        max_message_bytes=ws_config.max_message_bytes,
        ping_interval_s=ws_config.ping_interval_s,
        allowed_origins=None if config.cors.allow_any_origin else config.cors.allowed_origins,
    )

    await transport.start()
    logger.info("WebSocket transport started", extra={"port": ws_config.port})

    runner: AppRunner | None = None
    session_tasks: set[asyncio.Task[None]] = set()
    try:
        if config.health.enabled:
            health_app = create_health_app(
                coordinator=server.coordinator,
                connection_count=lambda: server.connection_count,
                cors=config.cors,
            )
            runner = AppRunner(health_app)
            await runner.setup()
            site = TCPSite(runner, config.health.host, config.health_port)
            await site.start()
            logger.info("Health check server started", extra={"port": config.health_port})

        logger.info(f"Rendezvous server listening on port {ws_config.port}")

        # Main server loop: accept sessions and spawn handlers
        while True:
            session = await transport.accept_session()
            task = asyncio.create_task(handle_session(session, server))
            session_tasks.add(task)
            task.add_done_callback(session_tasks.discard)

    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        logger.info("Shutting down rendezvous server")

        # Closing the transport ends every session's receive loop
        await transport.stop()

        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")

        if session_tasks:
            logger.info("Waiting for sessions to complete", extra={"count": len(session_tasks)})
            _, pending = await asyncio.wait(
                session_tasks, timeout=config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()

        await server.close_writers(config.graceful_shutdown_timeout_s)

        logger.info(
            "Rendezvous server stopped",
            extra={"summary": server.coordinator.get_summary()},
        )


def main() -> None:
    """Entry point for the rendezvous relay."""
    parser = argparse.ArgumentParser(description="Rendezvous and signaling relay")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "rendezvous.yaml",
        help="Path to relay config YAML file (defaults are used if missing)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Rendezvous server interrupted")


if __name__ == "__main__":
    main()
