"""Two-peer pairing example.

Demonstrates:
- Two WebSocket connections to the relay
- Join and match (with initiator selection)
- Offer/answer signaling relay
- Chat relay
- Partner-left and requeue when one peer disconnects

Usage:
    python examples/pairing_demo.py
    python examples/pairing_demo.py --url ws://localhost:4000
"""

import argparse
import asyncio
import json
import sys
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection


async def recv_json(ws: ClientConnection, expected_type: str) -> dict[str, Any]:
    """Receive one message and check its type.

    Args:
        ws: WebSocket connection
        expected_type: Message type the relay should send next

    Returns:
        Decoded message

    Raises:
        RuntimeError: If a different message type is received
    """
    response: dict[str, Any] = json.loads(await asyncio.wait_for(ws.recv(), timeout=5.0))
    if response["type"] != expected_type:
        raise RuntimeError(f"Expected {expected_type}, got {response['type']}")
    return response


async def connect_peer(url: str, name: str) -> tuple[ClientConnection, str]:
    """Open a connection and read the assigned connection id."""
    ws = await websockets.connect(url)
    connected = await recv_json(ws, "connected")
    print(f"✓ {name} connected as {connected['id']}")
    return ws, connected["id"]


async def run_demo(url: str = "ws://localhost:4000") -> None:
    """Pair two peers, relay a handshake and a chat line, then disconnect one.

    Args:
        url: WebSocket URL of the relay
    """
    alice, alice_id = await connect_peer(url, "alice")
    bob, bob_id = await connect_peer(url, "bob")

    try:
        await alice.send(json.dumps({"type": "join"}))
        await recv_json(alice, "waiting")
        print("← alice waiting")

        await bob.send(json.dumps({"type": "join"}))
        bob_match = await recv_json(bob, "matched")
        alice_match = await recv_json(alice, "matched")
        print(f"← bob matched with {bob_match['partnerId']} (initiator={bob_match['initiator']})")
        print(
            f"← alice matched with {alice_match['partnerId']} "
            f"(initiator={alice_match['initiator']})"
        )

        # The initiator makes the offer
        offer = {"sdp": {"type": "offer", "sdp": "v=0..."}}
        await bob.send(json.dumps({"type": "signal", "to": alice_id, "data": offer}))
        relayed = await recv_json(alice, "signal")
        print(f"← alice received signal from {relayed['from']}: {relayed['data']}")

        answer = {"sdp": {"type": "answer", "sdp": "v=0..."}}
        await alice.send(json.dumps({"type": "signal", "to": bob_id, "data": answer}))
        relayed = await recv_json(bob, "signal")
        print(f"← bob received signal from {relayed['from']}: {relayed['data']}")

        await alice.send(json.dumps({"type": "chat-message", "text": "hello"}))
        chat = await recv_json(bob, "chat-message")
        print(f"← bob received chat from {chat['from']}: {chat['text']}")

        await bob.close()
        await recv_json(alice, "partner-left")
        await recv_json(alice, "waiting")
        print("← alice partner-left, back to waiting")

    finally:
        await alice.close()
        await bob.close()

    print("\n✓ Demo complete")


def main() -> None:
    """Parse arguments and run demo."""
    parser = argparse.ArgumentParser(description="Two-peer pairing demo")
    parser.add_argument(
        "--url",
        default="ws://localhost:4000",
        help="WebSocket URL of the relay (default: ws://localhost:4000)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(run_demo(url=args.url))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(1)
    except (OSError, RuntimeError) as e:
        print(f"✗ Demo failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
