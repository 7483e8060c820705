"""Real-time event bus: connection state machine over a push channel."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping
from contextlib import suppress
from enum import Enum
from typing import Any

from coversync.adapters.base import Connection
from coversync.duration import parse_duration
from coversync.errors import DecodeError
from coversync.events import EventRouter, decode_event
from coversync.invalidation import InvalidationGraph
from coversync.keys import QueryKey
from coversync.subscriptions import SubscriptionRegistry
from coversync.types import Duration, PushEvent

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


Connect = Callable[[], Awaitable[Connection]]
StatusListener = Callable[[bool], None]
EventListener = Callable[[PushEvent], None]


class EventBus:
    """Keeps the push channel open and feeds its events into the cache.

    Pushed events are an optimization, not the source of truth: every
    (re)connect triggers a catch-up fetch of the summary keys, and staleness
    keeps everything else eventually correct while the channel is down.
    """

    def __init__(
        self,
        connect: Connect | None,
        router: EventRouter,
        graph: InvalidationGraph,
        registry: SubscriptionRegistry,
        *,
        summary_keys: Iterable[QueryKey] = (),
        subscribe_frames: Iterable[Mapping[str, Any]] = (),
        reconnect_base_delay: Duration = "1s",
        reconnect_max_delay: Duration = "30s",
        max_reconnect_attempts: int | None = 5,
        dedup_window: int = 256,
    ) -> None:
        if max_reconnect_attempts is not None and max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if dedup_window < 0:
            raise ValueError("dedup_window must not be negative")
        self._connect = connect
        self._router = router
        self._graph = graph
        self._registry = registry
        self._summary_keys = tuple(summary_keys)
        self._subscribe_frames = tuple(subscribe_frames)
        self._reconnect_base_delay = parse_duration(reconnect_base_delay)
        self._reconnect_max_delay = parse_duration(reconnect_max_delay)
        self._max_reconnect_attempts = max_reconnect_attempts
        self._seen: deque[str] = deque(maxlen=dedup_window or None)
        self._dedup_window = dedup_window
        self._state = ConnectionState.DISCONNECTED
        self._status_listeners: list[StatusListener] = []
        self._event_listeners: list[EventListener] = []
        self._connection: Connection | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def on_status(self, listener: StatusListener) -> Callable[[], None]:
        """Observe ``connected`` flips (e.g. for an "Offline" indicator)."""
        self._status_listeners.append(listener)
        return lambda: self._remove(self._status_listeners, listener)

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        """Observe events after they reached the cache, once per event."""
        self._event_listeners.append(listener)
        return lambda: self._remove(self._event_listeners, listener)

    def start(self) -> None:
        if self._connect is None:
            logger.debug("No push channel configured")
            return
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(self._connect))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self._close_connection()
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self) -> None:
        """Wait until the connection loop gives up or is stopped."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def handle_frame(self, frame: str | bytes | Mapping[str, Any]) -> PushEvent | None:
        """Decode and apply one frame. Never raises."""
        try:
            event = decode_event(frame)
        except DecodeError as exc:
            logger.warning("Dropping undecodable push frame: %s", exc)
            return None
        if event is None:
            return None

        if event.event_id is not None and self._dedup_window:
            if event.event_id in self._seen:
                logger.debug("Ignoring redelivered event %s", event.event_id)
                return None

        try:
            self._router.apply(event)
        except Exception:
            logger.exception("Failed to apply push event %s", event.type.value)
            return None
        if event.event_id is not None and self._dedup_window:
            self._seen.append(event.event_id)

        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Push event listener failed")
        return event

    # -------------------------------------------------------------------------
    # Connection loop
    # -------------------------------------------------------------------------

    async def _run(self, connect: Connect) -> None:
        failures = 0
        self._set_state(ConnectionState.CONNECTING)
        while True:
            try:
                connection = await connect()
            except Exception as exc:
                failures += 1
                if (
                    self._max_reconnect_attempts is not None
                    and failures >= self._max_reconnect_attempts
                ):
                    logger.error(
                        "Giving up on push channel after %d attempts: %s",
                        failures,
                        exc,
                    )
                    self._set_state(ConnectionState.DISCONNECTED)
                    return
                delay = self._backoff(failures - 1)
                logger.warning(
                    "Push channel connect failed, retrying in %.2fs: %s", delay, exc
                )
                self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(delay)
                continue

            failures = 0
            await self._serve(connection)
            self._set_state(ConnectionState.DISCONNECTED)
            self._set_state(ConnectionState.RECONNECTING)
            await asyncio.sleep(self._backoff(0))

    async def _serve(self, connection: Connection) -> None:
        self._connection = connection
        try:
            for frame in self._subscribe_frames:
                await connection.send(json.dumps(frame))
            self._set_state(ConnectionState.CONNECTED)
            self._catch_up()
            while True:
                self.handle_frame(await connection.recv())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Push channel dropped: %s", exc)
        finally:
            await self._close_connection()

    def _catch_up(self) -> None:
        """Refresh the summary keys the channel may have missed updates for."""
        if not self._summary_keys:
            return
        self._graph.apply(self._summary_keys)
        for key in self._summary_keys:
            self._registry.prefetch(key)

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as exc:
            logger.debug("Error closing push channel: %s", exc)

    def _backoff(self, attempt: int) -> float:
        return min(self._reconnect_base_delay * 2**attempt, self._reconnect_max_delay)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        was_connected = self.connected
        self._state = state
        logger.info("Push channel %s", state.value)
        if was_connected == self.connected:
            return
        for listener in list(self._status_listeners):
            try:
                listener(self.connected)
            except Exception:
                logger.exception("Connection status listener failed")

    @staticmethod
    def _remove(listeners: list[Any], listener: Any) -> None:
        if listener in listeners:
            listeners.remove(listener)
