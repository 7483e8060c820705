"""Shared pytest fixtures."""

import asyncio
import json
from typing import Any

import pytest

from coversync import CacheStore, QueryKey, define_keys


class FakeClock:
    """Manually advanced clock for staleness tests."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection:
    """In-memory push channel: frames are fed by the test."""

    def __init__(self) -> None:
        self.sent: list[Any] = []
        self.closed = False
        self._frames: asyncio.Queue[Any] = asyncio.Queue()

    def push(self, frame: Any) -> None:
        if not isinstance(frame, (str, bytes)):
            frame = json.dumps(frame)
        self._frames.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the server going away."""
        self._frames.put_nowait(ConnectionError("connection lost"))

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self) -> Any:
        frame = await self._frames.get()
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def close(self) -> None:
        self.closed = True


async def settle(rounds: int = 10) -> None:
    """Let spawned tasks run to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> CacheStore:
    """Create a fresh CacheStore for each test."""
    return CacheStore(default_stale_after="30s", clock=clock)


@pytest.fixture
def keys() -> dict:
    """Create common key definitions for tests."""
    return define_keys(
        {
            "claims": lambda **filters: QueryKey.of("claims", **filters),
            "claim": lambda id: ("claims", id),
            "claim_notes": lambda id: ("claims", id, "notes"),
            "dashboard": lambda: ("dashboardStats",),
        }
    )
