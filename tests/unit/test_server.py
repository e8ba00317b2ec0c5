"""Unit tests for the relay server.

Tests message routing into the coordinator, best-effort dispatch, and the
per-connection session lifecycle using in-memory transport sessions.
"""

import asyncio
from collections.abc import AsyncIterator

import pytest
from pydantic import BaseModel

from src.rendezvous.config import MatchingConfig, RendezvousConfig
from src.rendezvous.coordinator import Outbound, ParticipantState
from src.rendezvous.protocol import (
    ChatMessage,
    ClientMessage,
    JoinMessage,
    LeaveMessage,
    SignalMessage,
    WaitingMessage,
)
from src.rendezvous.server import RendezvousServer, handle_session
from src.rendezvous.transport.base import TransportSession


class MockSession(TransportSession):
    """Mock transport session for testing.

    Inbound messages are fed through an asyncio queue; None ends the stream
    as if the connection dropped.
    """

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._connected = True
        self._inbound: asyncio.Queue[ClientMessage | None] = asyncio.Queue()
        self.sent: list[BaseModel] = []
        self.fail_sends = False

    async def send_message(self, message: BaseModel) -> None:
        """Mock send message."""
        if not self._connected or self.fail_sends:
            raise ConnectionError("Not connected")
        self.sent.append(message)

    async def receive_messages(self) -> AsyncIterator[ClientMessage]:
        """Mock receive messages."""
        while True:
            message = await self._inbound.get()
            if message is None:
                self._connected = False
                return
            yield message

    async def close(self) -> None:
        """Mock close."""
        self._connected = False

    @property
    def session_id(self) -> str:
        """Return session ID."""
        return self._session_id

    @property
    def is_connected(self) -> bool:
        """Check connection status."""
        return self._connected

    def feed(self, message: ClientMessage | None) -> None:
        """Queue an inbound message (None disconnects)."""
        self._inbound.put_nowait(message)

    def sent_types(self) -> list[str]:
        """Types of messages sent to this session."""
        return [message.type for message in self.sent]  # type: ignore[attr-defined]


class GatedSession(MockSession):
    """Mock session whose sends block until the gate is opened."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.gate = asyncio.Event()

    async def send_message(self, message: BaseModel) -> None:
        """Wait for the gate, then record the message."""
        await self.gate.wait()
        await super().send_message(message)


async def settle() -> None:
    """Let session tasks process queued messages."""
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def server() -> RendezvousServer:
    """Create a relay server with default config."""
    return RendezvousServer(RendezvousConfig())


def test_handle_message_routing(server: RendezvousServer) -> None:
    """Test each client message type reaches the matching coordinator operation."""
    assert server.handle_message("A", JoinMessage()) == [Outbound("A", WaitingMessage())]
    assert server.coordinator.state_of("A") == ParticipantState.WAITING

    outbound = server.handle_message("B", JoinMessage())
    assert [item.target for item in outbound] == ["B", "A"]

    outbound = server.handle_message("A", SignalMessage(to="B", data={"sdp": "x"}))
    assert [item.message.type for item in outbound] == ["signal"]

    # "to" on chat is ignored in favour of the recorded partner
    outbound = server.handle_message("A", ChatMessage(to="Z", text="hi"))
    assert [item.target for item in outbound] == ["B"]

    outbound = server.handle_message("A", LeaveMessage())
    assert [item.message.type for item in outbound] == ["partner-left", "waiting"]


def test_enforce_signal_partner_from_config() -> None:
    """Test the signal policy is taken from configuration."""
    server = RendezvousServer(
        RendezvousConfig(matching=MatchingConfig(enforce_signal_partner=True))
    )

    assert server.coordinator.enforce_signal_partner is True


@pytest.mark.asyncio
async def test_dispatch_delivers_in_order(server: RendezvousServer) -> None:
    """Test notifications reach registered sessions in order."""
    session = MockSession("A")
    server.register_session(session)

    server.dispatch(server.coordinator.join("A"))
    await server.wait_idle()

    assert session.sent_types() == ["waiting"]

    server.unregister_session("A")
    await server.close_writers(timeout_s=1.0)


@pytest.mark.asyncio
async def test_dispatch_drops_unknown_and_failed_targets(server: RendezvousServer) -> None:
    """Test undeliverable notifications are dropped without raising."""
    broken = MockSession("B")
    broken.fail_sends = True
    server.register_session(broken)

    server.dispatch(
        [
            Outbound("ghost", WaitingMessage()),
            Outbound("B", WaitingMessage()),
        ]
    )
    await server.wait_idle()

    assert broken.sent == []

    server.unregister_session("B")
    await server.close_writers(timeout_s=1.0)


@pytest.mark.asyncio
async def test_session_pairing_flow(server: RendezvousServer) -> None:
    """Test two sessions are paired and can exchange signal and chat."""
    a, b = MockSession("A"), MockSession("B")
    tasks = [asyncio.create_task(handle_session(s, server)) for s in (a, b)]
    await settle()

    a.feed(JoinMessage())
    await settle()
    b.feed(JoinMessage())
    await settle()

    assert a.sent_types() == ["waiting", "matched"]
    assert b.sent_types() == ["matched"]
    assert b.sent[0].initiator is True  # type: ignore[attr-defined]

    b.feed(SignalMessage(to="A", data={"sdp": {"type": "offer"}}))
    a.feed(ChatMessage(text="hello"))
    await settle()

    assert a.sent[-1].data == {"sdp": {"type": "offer"}}  # type: ignore[attr-defined]
    assert b.sent[-1].text == "hello"  # type: ignore[attr-defined]
    assert b.sent[-1].from_ == "A"  # type: ignore[attr-defined]

    a.feed(None)
    b.feed(None)
    await asyncio.gather(*tasks)


@pytest.mark.asyncio
async def test_disconnect_requeues_partner(server: RendezvousServer) -> None:
    """Test a dropped connection notifies and requeues its partner exactly once."""
    a, b = MockSession("A"), MockSession("B")
    task_a = asyncio.create_task(handle_session(a, server))
    task_b = asyncio.create_task(handle_session(b, server))
    await settle()

    a.feed(JoinMessage())
    await settle()
    b.feed(JoinMessage())
    await settle()

    # Explicit leave followed by connection loss
    a.feed(LeaveMessage())
    a.feed(None)
    await task_a
    await server.wait_idle()

    assert b.sent_types() == ["matched", "partner-left", "waiting"]
    assert server.coordinator.waiting_ids() == ["B"]
    assert "A" not in server.sessions

    b.feed(None)
    await task_b
    assert server.coordinator.waiting_ids() == []
    assert server.connection_count == 0


@pytest.mark.asyncio
async def test_bad_event_does_not_end_session(
    server: RendezvousServer, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test an error while handling one event leaves the session running."""
    a = MockSession("A")
    task = asyncio.create_task(handle_session(a, server))
    await settle()

    calls = {"count": 0}
    original = server.coordinator.chat

    def flaky_chat(sender_id: str, text: str | None) -> list[Outbound]:
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("boom")
        return original(sender_id, text)

    monkeypatch.setattr(server.coordinator, "chat", flaky_chat)

    a.feed(ChatMessage(text="first"))
    a.feed(JoinMessage())
    await settle()

    assert a.sent_types() == ["waiting"]
    assert not task.done()

    a.feed(None)
    await task


@pytest.mark.asyncio
async def test_slow_peer_keeps_notification_order(server: RendezvousServer) -> None:
    """Test a peer with a stalled socket receives notifications in state order.

    B's partner drops and C joins while B's sends are blocked. B must still
    see partner-left and waiting before the new match, and neither A's
    teardown nor C's join may wait on B.
    """
    a, b, c = MockSession("A"), GatedSession("B"), MockSession("C")
    tasks = {s.session_id: asyncio.create_task(handle_session(s, server)) for s in (a, b, c)}
    await settle()

    b.feed(JoinMessage())
    await settle()
    a.feed(JoinMessage())
    await settle()

    a.feed(None)
    await asyncio.wait_for(tasks["A"], timeout=1.0)

    c.feed(JoinMessage())
    await settle()

    assert c.sent_types() == ["matched"]
    assert b.sent == []

    b.gate.set()
    await server.wait_idle()

    assert b.sent_types() == ["waiting", "matched", "partner-left", "waiting", "matched"]
    assert b.sent[-1].partnerId == "C"  # type: ignore[attr-defined]
    assert server.coordinator.state_of("B") == ParticipantState.PAIRED
    assert server.coordinator.partner_of("B") == "C"

    b.feed(None)
    c.feed(None)
    await asyncio.gather(tasks["B"], tasks["C"])
