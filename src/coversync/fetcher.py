"""Fetcher/dedup layer: read-through fetching with one request per key.

This module wraps the caller-supplied read function:
- ensure_fresh(): cached value, joined in-flight fetch, or a new fetch
- refresh(): fire-and-forget ensure_fresh for background revalidation
- revalidate(): refetch stale keys that somebody is watching
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from coversync.duration import parse_duration
from coversync.errors import is_retryable
from coversync.keys import QueryKey
from coversync.store import CacheStore
from coversync.types import Duration, EntryStatus

logger = logging.getLogger(__name__)

FetchFn = Callable[[QueryKey], Awaitable[Any]]


class Fetcher:
    """Deduplicating, retrying read-through layer over a ``CacheStore``."""

    def __init__(
        self,
        store: CacheStore,
        fetch_fn: FetchFn,
        *,
        retry_attempts: int = 3,
        retry_base_delay: Duration = "1s",
        retry_max_delay: Duration = "30s",
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self._store = store
        self._fetch_fn = fetch_fn
        self._retry_attempts = retry_attempts
        self._retry_base_delay = parse_duration(retry_base_delay)
        self._retry_max_delay = parse_duration(retry_max_delay)
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def store(self) -> CacheStore:
        return self._store

    async def ensure_fresh(self, key: QueryKey, fetch_fn: FetchFn | None = None) -> Any:
        """Return the value for ``key``, fetching it only when needed.

        Args:
            key: Query key to read
            fetch_fn: Read function for this call (default: the configured one)

        Returns:
            The cached value when fresh, otherwise the fetched value

        Raises:
            The fetch error once retries are exhausted. The error is also
            recorded on the entry for subscribers.
        """
        entry = self._store.get(key)

        if entry is not None and entry.status is EntryStatus.FRESH:
            return entry.value

        if (
            entry is not None
            and entry.status is EntryStatus.FETCHING
            and entry.in_flight is not None
        ):
            # Join the request already in flight; never issue a second one
            return await asyncio.shield(entry.in_flight)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        issued = self._store.mark_fetching(key, future)
        self._spawn(
            self._run(key, fetch_fn or self._fetch_fn, future, issued.invalidations)
        )
        return await asyncio.shield(future)

    def refresh(self, key: QueryKey) -> None:
        """Revalidate ``key`` in the background."""

        async def refresh() -> None:
            try:
                await self.ensure_fresh(key)
            except Exception as exc:
                # Already recorded on the entry for subscribers
                logger.debug("Background refresh of %s failed: %s", key, exc)

        self._spawn(refresh())

    def revalidate(self, prefix: QueryKey, *, exact: bool = False) -> list[QueryKey]:
        """Refetch stale entries under ``prefix`` that have subscribers."""
        keys = [prefix] if exact else self._store.keys(prefix)
        refreshed: list[QueryKey] = []
        for key in keys:
            entry = self._store.get(key)
            if entry is None or entry.ref_count == 0:
                continue
            if entry.status in (EntryStatus.STALE, EntryStatus.EMPTY):
                self.refresh(key)
                refreshed.append(key)
        return refreshed

    async def drain(self) -> None:
        """Wait for background fetches started so far."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _backoff(self, attempt: int) -> float:
        return min(self._retry_base_delay * 2 ** (attempt - 1), self._retry_max_delay)

    async def _call_with_retry(self, key: QueryKey, fetch_fn: FetchFn) -> Any:
        attempt = 1
        while True:
            try:
                return await fetch_fn(key)
            except Exception as exc:
                if not is_retryable(exc) or attempt >= self._retry_attempts:
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    "Fetch of %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    key,
                    attempt,
                    self._retry_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _run(
        self,
        key: QueryKey,
        fetch_fn: FetchFn,
        future: asyncio.Future[Any],
        invalidations: int,
    ) -> None:
        try:
            value = await self._call_with_retry(key, fetch_fn)
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as exc:
            if self._owns(key, future):
                self._store.set_error(key, exc)
            if not future.done():
                future.set_exception(exc)
            return

        if self._owns(key, future):
            current = self._store.get(key)
            invalidated = (
                current is not None and current.invalidations != invalidations
            )
            self._store.put(key, value)
            if invalidated:
                # Invalidated while in flight: this result may predate the write
                self._store.mark_stale(key, exact=True)
                self.revalidate(key, exact=True)
        else:
            logger.debug("Discarding fetch result for %s (evicted or superseded)", key)
        if not future.done():
            future.set_result(value)

    def _owns(self, key: QueryKey, future: asyncio.Future[Any]) -> bool:
        """Whether the entry still points at this fetch."""
        entry = self._store.get(key)
        return entry is not None and entry.in_flight is future
