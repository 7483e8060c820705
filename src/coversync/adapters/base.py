"""Protocols for the transports the sync engine consumes."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class TokenStore(Protocol):
    """Durable storage for the session's bearer token."""

    def get(self) -> str | None:
        """Read the current token; called before every request."""
        ...

    def set(self, token: str) -> None:
        """Store a new token."""
        ...

    def clear(self) -> None:
        """Drop the token (on 401 or sign-out)."""
        ...


@runtime_checkable
class Connection(Protocol):
    """A persistent message-oriented connection (the push channel)."""

    async def send(self, message: str) -> None:
        """Send one text frame."""
        ...

    async def recv(self) -> str | bytes:
        """Receive one frame; raises once the connection is closed."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...
