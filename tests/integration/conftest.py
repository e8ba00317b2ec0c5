"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Free port allocation
- Relay server lifecycle on localhost
- WebSocket client helpers
"""

import asyncio
import json
import logging
import socket
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
import websockets
import yaml
from websockets.asyncio.client import ClientConnection

from src.rendezvous.config import (
    HealthConfig,
    RendezvousConfig,
    TransportConfig,
    WebSocketConfig,
)
from src.rendezvous.server import start_server

logger = logging.getLogger(__name__)


# ============================================================================
# Utility Functions for Port Allocation
# ============================================================================


def get_free_port() -> int:
    """Get a free TCP port for binding.

    Returns:
        Available port number

    Notes:
        Uses ephemeral port allocation (port=0) to avoid conflicts.
        The port is freed immediately after discovery, so there's a small
        race condition window, but this is acceptable for tests.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


# ============================================================================
# Client Helpers
# ============================================================================


async def recv_json(ws: ClientConnection, timeout_s: float = 2.0) -> dict[str, Any]:
    """Receive and decode one JSON frame."""
    message: dict[str, Any] = json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout_s))
    return message


async def send_json(ws: ClientConnection, message: dict[str, Any]) -> None:
    """Encode and send one JSON frame."""
    await ws.send(json.dumps(message))


async def assert_silent(ws: ClientConnection, timeout_s: float = 0.2) -> None:
    """Assert no frame arrives within the timeout."""
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout=timeout_s)


# ============================================================================
# Relay Server Fixtures
# ============================================================================


@pytest.fixture
def relay_config(tmp_path: Path) -> tuple[RendezvousConfig, Path]:
    """Build a relay configuration on free localhost ports and write it to YAML."""
    config = RendezvousConfig(
        transport=TransportConfig(
            websocket=WebSocketConfig(
                host="127.0.0.1",
                port=get_free_port(),
                max_connections=10,
            ),
        ),
        health=HealthConfig(enabled=True, host="127.0.0.1", port=get_free_port()),
        log_level="INFO",
    )

    config_path = tmp_path / "rendezvous.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config.model_dump(mode="json"), f)

    return config, config_path


@pytest_asyncio.fixture
async def relay_server(
    relay_config: tuple[RendezvousConfig, Path], monkeypatch: pytest.MonkeyPatch
) -> AsyncIterator[RendezvousConfig]:
    """Start the relay server in the background.

    Yields:
        Relay configuration
    """
    config, config_path = relay_config
    for name in ["PORT", "HOST", "HEALTH_PORT", "LOG_LEVEL", "ENFORCE_SIGNAL_PARTNER"]:
        monkeypatch.delenv(name, raising=False)

    ws_port = config.transport.websocket.port
    server_task = asyncio.create_task(start_server(config_path))

    # Wait for server to be ready
    ws_url = f"ws://127.0.0.1:{ws_port}"
    for attempt in range(30):
        try:
            async with websockets.connect(ws_url) as ws:
                data = await recv_json(ws, timeout_s=1.0)
                if data.get("type") == "connected":
                    logger.info(f"Relay server ready at {ws_url}")
                    break
        except (OSError, TimeoutError):
            if attempt == 29:
                server_task.cancel()
                raise RuntimeError(f"Relay server failed to start on port {ws_port}") from None
            await asyncio.sleep(0.1)

    try:
        yield config
    finally:
        logger.info("Stopping relay server")
        server_task.cancel()
        try:
            await server_task
        except asyncio.CancelledError:
            pass


@pytest_asyncio.fixture
async def connect(relay_server: RendezvousConfig) -> AsyncIterator[Any]:
    """Factory fixture opening clients; yields (connection, connection_id).

    All opened connections are closed at teardown.
    """
    ws_url = f"ws://127.0.0.1:{relay_server.transport.websocket.port}"
    opened: list[ClientConnection] = []

    async def _connect() -> tuple[ClientConnection, str]:
        ws = await websockets.connect(ws_url)
        opened.append(ws)
        data = await recv_json(ws)
        assert data["type"] == "connected"
        return ws, data["id"]

    try:
        yield _connect
    finally:
        for ws in opened:
            await ws.close()
