"""WebSocket connector for the push channel."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from websockets.asyncio.client import connect as ws_connect

from coversync.adapters.base import Connection, TokenStore

logger = logging.getLogger(__name__)


def websocket_connector(
    url: str,
    token_store: TokenStore | None = None,
    *,
    open_timeout: float = 10.0,
    ping_interval: float | None = 20.0,
) -> Callable[[], Awaitable[Connection]]:
    """Build the ``connect`` callable the event bus uses.

    Each call opens a new connection, authenticating with the current
    session token when one is stored.

    Example:
        connect = websocket_connector("wss://console.example.com/ws", tokens)
        bus = EventBus(connect, router, graph, registry)
    """

    async def connect() -> Connection:
        headers: dict[str, str] = {}
        token = token_store.get() if token_store is not None else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        logger.debug("Opening push channel to %s", url)
        return await ws_connect(
            url,
            additional_headers=headers,
            open_timeout=open_timeout,
            ping_interval=ping_interval,
        )

    return connect
