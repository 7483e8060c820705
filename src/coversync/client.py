"""Sync client: the consumer-facing surface of the engine."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from functools import wraps
from typing import Any, ParamSpec

from coversync.adapters.base import TokenStore
from coversync.adapters.http import HttpTransport, MutationRoute
from coversync.adapters.websocket import websocket_connector
from coversync.bus import Connect, ConnectionState, EventBus, EventListener
from coversync.config import SyncConfig
from coversync.events import EventRoute, EventRouter
from coversync.fetcher import Fetcher, FetchFn
from coversync.invalidation import InvalidationGraph, InvalidationRule
from coversync.keys import QueryKey
from coversync.mutations import MutateFn, MutationRunner
from coversync.rules import DEFAULT_ROUTES, DEFAULT_RULES, MUTATION_ROUTES
from coversync.store import CacheStore
from coversync.subscriptions import OnChange, SubscriptionRegistry
from coversync.types import (
    CacheEntry,
    MutationResult,
    OptimisticTransform,
    PushEvent,
    PushEventType,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")


class SyncClient:
    """Shared cache, fetch dedup, invalidation and push updates in one place.

    Example:
        client = SyncClient(api.fetch, api.mutate, rules=DEFAULT_RULES)
        stop = client.subscribe(keys["claim"](7), render)
        await client.mutate("claim.statusChanged", {"id": 7, "status": "approved"})
    """

    def __init__(
        self,
        fetch_fn: FetchFn,
        mutate_fn: MutateFn,
        *,
        connect: Connect | None = None,
        rules: Iterable[InvalidationRule] = (),
        routes: Mapping[PushEventType, EventRoute] | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        config = config or SyncConfig()
        self._config = config
        self._on_close = on_close
        self._store = CacheStore(
            default_stale_after=config.default_stale_after,
            stale_times=config.stale_times,
            max_list_entries=config.max_list_entries,
            clock=clock,
        )
        self._fetcher = Fetcher(
            self._store,
            fetch_fn,
            retry_attempts=config.retry_attempts,
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
        )
        self._registry = SubscriptionRegistry(
            self._store, self._fetcher, eviction_grace=config.eviction_grace
        )
        self._graph = InvalidationGraph(self._store, self._fetcher, rules)
        self._runner = MutationRunner(self._store, self._graph, mutate_fn)
        self._router = EventRouter(self._store, self._graph, routes or {})
        self._bus = EventBus(
            connect,
            self._router,
            self._graph,
            self._registry,
            summary_keys=config.summary_keys,
            subscribe_frames=config.subscribe_frames,
            reconnect_base_delay=config.reconnect_base_delay,
            reconnect_max_delay=config.reconnect_max_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            dedup_window=config.event_dedup_window,
        )
        self._closed = False

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def graph(self) -> InvalidationGraph:
        return self._graph

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def subscribe(self, key: QueryKey, on_change: OnChange) -> Callable[[], None]:
        """Observe ``key``; a stale or missing value is fetched in the background.

        Returns:
            Function that ends the subscription (safe to call twice)
        """
        return self._registry.subscribe(key, on_change)

    def get(self, key: QueryKey) -> CacheEntry[Any] | None:
        """Current entry for ``key`` without fetching."""
        return self._store.get(key)

    async def ensure_fresh(self, key: QueryKey, fetch_fn: FetchFn | None = None) -> Any:
        """Cached value when fresh, otherwise the (shared) fetch result."""
        return await self._fetcher.ensure_fresh(key, fetch_fn)

    def prefetch(self, key: QueryKey) -> None:
        self._registry.prefetch(key)

    def set(self, key: QueryKey, value: Any) -> bool:
        """Write a complete value directly, as if it had been fetched."""
        return self._store.write(key, value)

    def invalidate(self, *prefixes: QueryKey) -> list[QueryKey]:
        """Mark keys under ``prefixes`` stale and refetch the watched ones.

        Returns:
            Keys whose refetch was started
        """
        return self._graph.apply(prefixes)

    def evict(self, key: QueryKey) -> bool:
        return self._store.evict(key)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def mutate(
        self,
        effect: str,
        payload: Mapping[str, Any] | None = None,
        optimistic: OptimisticTransform | None = None,
    ) -> MutationResult[Any]:
        """Run a mutation and ripple its effect through the cache.

        Args:
            effect: Effect tag, e.g. ``"claim.statusChanged"``
            payload: Request payload; also fills the rule's key templates
            optimistic: Pure transform applied to the cached value of the
                rule's primary key until the server answers

        Returns:
            The result; ``result.error`` is set instead of raising
        """
        return await self._runner.mutate(effect, payload, optimistic)

    def mutation(
        self,
        effect: str,
        *,
        optimistic: Callable[[Mapping[str, Any]], OptimisticTransform] | None = None,
    ) -> Callable[
        [Callable[P, Awaitable[Mapping[str, Any]]]],
        Callable[P, Awaitable[MutationResult[Any]]],
    ]:
        """Decorator that turns a payload builder into a mutation.

        Example:
            @client.mutation(
                "claim.statusChanged",
                optimistic=lambda p: lambda claim: {**claim, "status": p["status"]},
            )
            async def change_status(claim_id: int, status: str):
                return {"id": claim_id, "status": status}
        """

        def decorator(
            fn: Callable[P, Awaitable[Mapping[str, Any]]],
        ) -> Callable[P, Awaitable[MutationResult[Any]]]:
            @wraps(fn)
            async def wrapper(*args: P.args, **kwargs: P.kwargs) -> MutationResult[Any]:
                payload = await fn(*args, **kwargs)
                transform = optimistic(payload) if optimistic is not None else None
                return await self.mutate(effect, payload, transform)

            return wrapper

        return decorator

    # -------------------------------------------------------------------------
    # Push channel
    # -------------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._bus.connected

    @property
    def connection_state(self) -> ConnectionState:
        return self._bus.state

    def on_connection_change(
        self, listener: Callable[[bool], None]
    ) -> Callable[[], None]:
        return self._bus.on_status(listener)

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        return self._bus.on_event(listener)

    def handle_frame(self, frame: str | bytes | Mapping[str, Any]) -> PushEvent | None:
        """Apply a push frame received outside the managed channel."""
        return self._bus.handle_frame(frame)

    def start(self) -> None:
        """Open the push channel (no-op without one)."""
        if self._closed:
            raise RuntimeError("Client is closed")
        self._bus.start()

    async def drain(self) -> None:
        """Wait for in-flight mutations and background fetches."""
        await self._runner.drain()
        await self._fetcher.drain()

    async def close(self) -> None:
        """Close the push channel and cancel background work."""
        if self._closed:
            return
        self._closed = True
        await self._bus.stop()
        await self._runner.drain()
        self._registry.close()
        await self._fetcher.close()
        if self._on_close is not None:
            await self._on_close()
        logger.debug("Sync client closed")


def create_client(
    *,
    base_url: str,
    token_store: TokenStore,
    ws_url: str | None = None,
    config: SyncConfig | None = None,
    rules: Iterable[InvalidationRule] = DEFAULT_RULES,
    routes: Mapping[PushEventType, EventRoute] = DEFAULT_ROUTES,
    mutation_routes: Mapping[str, MutationRoute] = MUTATION_ROUTES,
    timeout: float = 30.0,
) -> SyncClient:
    """Create a sync client wired to the console's REST API and push channel.

    Args:
        base_url: REST API root, e.g. "https://console.example.com/api"
        token_store: Where the session token is kept
        ws_url: Push channel URL (None: polling through staleness only)
        config: Engine tunables (default: ``SyncConfig.console()``)
        rules: Invalidation rules per mutation effect
        routes: How each push event type reaches the cache
        mutation_routes: HTTP method and path per mutation effect
        timeout: HTTP timeout in seconds

    Returns:
        SyncClient; call ``start()`` inside the event loop to connect
    """
    if timeout <= 0:
        raise ValueError("timeout must be positive")

    transport = HttpTransport(
        base_url, token_store, routes=mutation_routes, timeout=timeout
    )
    connect = websocket_connector(ws_url, token_store) if ws_url else None
    return SyncClient(
        transport.fetch,
        transport.mutate,
        connect=connect,
        rules=rules,
        routes=routes,
        config=config or SyncConfig.console(),
        on_close=transport.close,
    )


__all__ = ["SyncClient", "create_client"]
