"""WebSocket message protocol definitions.

Defines Pydantic models for the rendezvous wire protocol. Every frame is a
JSON object whose "type" field names the event; payload fields sit beside it.
Signaling payloads ("data") are opaque JSON and are never interpreted.
"""

from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    TypeAdapter,
    model_serializer,
)

# Client → Server


class JoinMessage(BaseModel):
    """Client → Server: Request a partner."""

    type: Literal["join"] = "join"


class SignalMessage(BaseModel):
    """Client → Server: Session-negotiation payload for another peer."""

    type: Literal["signal"] = "signal"
    to: str | None = Field(default=None, description="Target connection id")
    data: Any = Field(default=None, description="Opaque signaling payload")


class ChatMessage(BaseModel):
    """Client → Server: Chat text for the current partner.

    The "to" field is accepted but ignored; chat is always routed to the
    sender's recorded partner.
    """

    type: Literal["chat-message"] = "chat-message"
    to: str | None = Field(default=None, description="Ignored")
    text: str | None = Field(default=None, description="Chat text")


class LeaveMessage(BaseModel):
    """Client → Server: Leave the queue or the current pair."""

    type: Literal["leave"] = "leave"


# Server → Client


class ConnectedMessage(BaseModel):
    """Server → Client: Connection established.

    Tells the client its own connection id.
    """

    type: Literal["connected"] = "connected"
    id: str = Field(..., description="Connection id assigned by the transport")


class WaitingMessage(BaseModel):
    """Server → Client: Queued, waiting for a partner."""

    type: Literal["waiting"] = "waiting"


class MatchedMessage(BaseModel):
    """Server → Client: Paired with a partner.

    Exactly one side of a pair receives initiator=True and is expected to
    begin the negotiation handshake.
    """

    type: Literal["matched"] = "matched"
    partnerId: str = Field(..., description="Partner connection id")  # noqa: N815
    initiator: bool = Field(default=False, description="Whether this peer makes the offer")


class SignalRelayMessage(BaseModel):
    """Server → Client: Signaling payload relayed from another peer."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["signal"] = "signal"
    from_: str = Field(..., alias="from", description="Sender connection id")
    data: Any = Field(default=None, description="Opaque signaling payload")

    @model_serializer(mode="wrap")
    def omit_missing_data(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        # A signal sent without data is relayed without a data field
        serialized: dict[str, Any] = handler(self)
        if self.data is None:
            serialized.pop("data", None)
        return serialized


class ChatRelayMessage(BaseModel):
    """Server → Client: Chat text relayed from the partner."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["chat-message"] = "chat-message"
    from_: str = Field(..., alias="from", description="Sender connection id")
    text: str = Field(..., description="Chat text")


class PartnerLeftMessage(BaseModel):
    """Server → Client: The partner left or disconnected."""

    type: Literal["partner-left"] = "partner-left"


# Union type for all client → server messages
ClientMessage = Annotated[
    JoinMessage | SignalMessage | ChatMessage | LeaveMessage,
    Field(discriminator="type"),
]

# Union type for all server → client messages
ServerMessage = Annotated[
    ConnectedMessage
    | WaitingMessage
    | MatchedMessage
    | SignalRelayMessage
    | ChatRelayMessage
    | PartnerLeftMessage,
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse a client frame.

    Args:
        raw: JSON text frame

    Returns:
        Validated client message

    Raises:
        ValueError: If the frame is not valid JSON or not a known message
    """
    return _client_adapter.validate_json(raw)


def parse_server_message(raw: str | bytes) -> ServerMessage:
    """Parse a server frame (used by clients).

    Raises:
        ValueError: If the frame is not valid JSON or not a known message
    """
    return _server_adapter.validate_json(raw)


def encode_message(message: BaseModel) -> str:
    """Serialize a message to a JSON text frame using wire field names."""
    return message.model_dump_json(by_alias=True)
