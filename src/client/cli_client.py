"""WebSocket CLI client for testing the rendezvous relay.

Provides a command-line interface for connecting to the relay, joining the
waiting queue, and chatting with the matched partner.
"""

import argparse
import asyncio
import logging
import signal
import sys

import websockets
from websockets.asyncio.client import ClientConnection

from src.rendezvous.protocol import (
    ChatMessage,
    ChatRelayMessage,
    ConnectedMessage,
    JoinMessage,
    LeaveMessage,
    MatchedMessage,
    PartnerLeftMessage,
    SignalRelayMessage,
    WaitingMessage,
    encode_message,
    parse_server_message,
)

# Configure logging
logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /join   - Find a partner
  /leave  - Leave the queue or the current partner
  /quit   - Exit client
  /help   - Show this help
"""


class CLIClient:
    """WebSocket CLI client for relay communication."""

    def __init__(self, server_url: str, auto_join: bool = False, verbose: bool = False) -> None:
        """Initialize CLI client.

        Args:
            server_url: WebSocket server URL (e.g., ws://localhost:4000)
            auto_join: Send join as soon as the connection is established
            verbose: Enable verbose logging
        """
        self.server_url = server_url
        self.auto_join = auto_join
        self.verbose = verbose
        self.connection_id: str | None = None
        self.partner_id: str | None = None
        self.running = True

        # Setup logging
        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    async def send_join(self, websocket: ClientConnection) -> None:
        """Ask the relay for a partner."""
        await websocket.send(encode_message(JoinMessage()))
        logger.debug("Sent join")

    async def send_leave(self, websocket: ClientConnection) -> None:
        """Leave the queue or the current partner."""
        await websocket.send(encode_message(LeaveMessage()))
        self.partner_id = None
        logger.debug("Sent leave")

    async def send_chat(self, websocket: ClientConnection, text: str) -> None:
        """Send chat text to the current partner.

        Args:
            websocket: WebSocket connection
            text: Chat text
        """
        if self.partner_id is None:
            print("Not paired yet. Type /join to find a partner.")
            return

        message = ChatMessage(to=self.partner_id, text=text)
        await websocket.send(encode_message(message))
        logger.debug(f"Sent: {text}")

    def handle_message(self, message_data: str) -> None:
        """Handle incoming message from server.

        Args:
            message_data: Raw JSON message from server
        """
        try:
            msg = parse_server_message(message_data)
        except ValueError as e:
            logger.error(f"Failed to handle message: {e}")
            return

        if isinstance(msg, ConnectedMessage):
            self.connection_id = msg.id
            print(f"\nConnected as {msg.id}")

        elif isinstance(msg, WaitingMessage):
            self.partner_id = None
            print("\nWaiting for a partner...")

        elif isinstance(msg, MatchedMessage):
            self.partner_id = msg.partnerId
            role = "initiator" if msg.initiator else "responder"
            print(f"\nMatched with {msg.partnerId} ({role})")

        elif isinstance(msg, ChatRelayMessage):
            print(f"\nPartner: {msg.text}")

        elif isinstance(msg, SignalRelayMessage):
            logger.info(f"Signal from {msg.from_}: {msg.data!r}")

        elif isinstance(msg, PartnerLeftMessage):
            self.partner_id = None
            print("\nPartner left.")

    async def receive_messages(self, websocket: ClientConnection) -> None:
        """Receive and handle messages from server.

        Args:
            websocket: WebSocket connection
        """
        try:
            async for message in websocket:
                # WebSocket messages can be str or bytes, convert bytes to str
                if isinstance(message, bytes):
                    message_str = message.decode("utf-8")
                else:
                    message_str = message
                self.handle_message(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")
        finally:
            self.running = False

    async def handle_input(self, websocket: ClientConnection, text: str) -> None:
        """Handle one line of user input.

        Args:
            websocket: WebSocket connection
            text: Stripped input line
        """
        if not text.startswith("/"):
            await self.send_chat(websocket, text)
            return

        command = text[1:].lower()

        if command == "quit":
            self.running = False
            print("\nGoodbye!")
        elif command == "help":
            print(HELP_TEXT)
        elif command == "join":
            await self.send_join(websocket)
        elif command == "leave":
            await self.send_leave(websocket)
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self, websocket: ClientConnection) -> None:
        """Handle user input from stdin.

        Args:
            websocket: WebSocket connection
        """
        print("\n" + "=" * 60)
        print("Rendezvous CLI Client")
        print("=" * 60)
        print(HELP_TEXT)
        print("Enter chat text, or a command (starting with /):\n")

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                # Read input asynchronously
                text = await loop.run_in_executor(None, input, "You: ")
                text = text.strip()

                if text:
                    await self.handle_input(websocket, text)

            except EOFError:
                # Handle Ctrl+D
                self.running = False
            except websockets.exceptions.ConnectionClosed:
                logger.info("Connection closed")
                self.running = False

    async def run(self) -> None:
        """Run the CLI client."""
        try:
            async with websockets.connect(self.server_url) as websocket:
                logger.info(f"Connected to {self.server_url}")

                # Setup signal handlers
                def signal_handler() -> None:
                    self.running = False

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, signal_handler)

                if self.auto_join:
                    await self.send_join(websocket)

                receiver = asyncio.create_task(self.receive_messages(websocket))
                try:
                    await self.input_loop(websocket)
                finally:
                    # Cleanup signal handlers
                    for sig in (signal.SIGINT, signal.SIGTERM):
                        loop.remove_signal_handler(sig)
                    receiver.cancel()

        except OSError as e:
            logger.error(f"Client error: {e}")
            sys.exit(1)


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="WebSocket CLI client for the rendezvous relay")
    parser.add_argument(
        "--host",
        type=str,
        default="ws://localhost:4000",
        help="WebSocket server URL (default: ws://localhost:4000)",
    )
    parser.add_argument(
        "--join",
        action="store_true",
        help="Join the waiting queue immediately",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    try:
        asyncio.run(CLIClient(args.host, auto_join=args.join, verbose=args.verbose).run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
