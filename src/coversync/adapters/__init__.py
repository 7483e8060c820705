"""Transport adapters for the sync engine."""

from coversync.adapters.base import Connection, TokenStore
from coversync.adapters.http import (
    HttpTransport,
    MutationRoute,
    RequestDescriptor,
    describe_query,
    unwrap_envelope,
)
from coversync.adapters.tokens import FileTokenStore, MemoryTokenStore
from coversync.adapters.websocket import websocket_connector

__all__ = [
    "Connection",
    "FileTokenStore",
    "HttpTransport",
    "MemoryTokenStore",
    "MutationRoute",
    "RequestDescriptor",
    "TokenStore",
    "describe_query",
    "unwrap_envelope",
    "websocket_connector",
]
