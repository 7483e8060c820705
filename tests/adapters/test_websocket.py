"""Tests for the WebSocket connector."""

import pytest

from coversync import MemoryTokenStore
from coversync.adapters import websocket
from coversync.adapters.websocket import websocket_connector


@pytest.fixture
def opened(monkeypatch) -> list:
    """Record connect() calls instead of opening sockets."""
    calls = []

    async def fake_connect(url, **kwargs):
        calls.append((url, kwargs))
        return object()

    monkeypatch.setattr(websocket, "ws_connect", fake_connect)
    return calls


class TestWebsocketConnector:
    """Tests for websocket_connector function."""

    async def test_sends_bearer_token(self, opened) -> None:
        connect = websocket_connector("wss://console.test/ws", MemoryTokenStore("abc"))
        await connect()

        url, kwargs = opened[0]
        assert url == "wss://console.test/ws"
        assert kwargs["additional_headers"] == {"Authorization": "Bearer abc"}
        assert kwargs["open_timeout"] == 10.0

    async def test_token_read_per_connect(self, opened) -> None:
        tokens = MemoryTokenStore("first")
        connect = websocket_connector("wss://console.test/ws", tokens)
        await connect()
        tokens.set("second")
        await connect()

        assert opened[1][1]["additional_headers"] == {"Authorization": "Bearer second"}

    async def test_without_token(self, opened) -> None:
        connect = websocket_connector("wss://console.test/ws", ping_interval=None)
        await connect()

        assert opened[0][1]["additional_headers"] == {}
        assert opened[0][1]["ping_interval"] is None
