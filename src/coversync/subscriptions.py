"""Subscription registry: binds consumers to query keys."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from coversync.duration import parse_duration
from coversync.fetcher import Fetcher
from coversync.keys import QueryKey
from coversync.store import CacheStore
from coversync.types import CacheEntry, Duration, EntryStatus

logger = logging.getLogger(__name__)

OnChange = Callable[[CacheEntry[Any]], None]

_NEEDS_FETCH = (EntryStatus.EMPTY, EntryStatus.STALE, EntryStatus.ERROR)


@dataclass(eq=False, slots=True)
class Subscription:
    """A consumer's binding to exactly one key."""

    key: QueryKey
    on_change: OnChange
    active: bool = True


class SubscriptionRegistry:
    """Tracks which consumers watch which keys.

    - Subscribing on stale or absent data triggers a background fetch.
    - Every transition of a key is delivered to that key's subscribers,
      synchronously and in registration order.
    - Entries nobody watches are evicted after a grace period; a new
      subscription within the grace period keeps the entry.
    """

    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        *,
        eviction_grace: Duration = "10m",
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._eviction_grace = parse_duration(eviction_grace)
        self._subscriptions: dict[QueryKey, list[Subscription]] = {}
        self._eviction_timers: dict[QueryKey, asyncio.TimerHandle] = {}
        self._remove_listener = store.add_listener(self._dispatch)

    def subscribe(self, key: QueryKey, on_change: OnChange) -> Callable[[], None]:
        """Start observing ``key``. Returns the function that stops it."""
        subscription = Subscription(key, on_change)
        self._subscriptions.setdefault(key, []).append(subscription)
        self._cancel_eviction(key)
        self._store.retain(key)

        entry = self._store.get(key)
        if entry is not None and entry.status in _NEEDS_FETCH:
            self._fetcher.refresh(key)

        def unsubscribe() -> None:
            self._unsubscribe(subscription)

        return unsubscribe

    def prefetch(self, key: QueryKey) -> None:
        """Warm ``key`` without subscribing; unwatched entries still expire."""
        entry = self._store.get(key)
        if entry is None or entry.status in _NEEDS_FETCH:
            self._fetcher.refresh(key)

    def subscriber_count(self, key: QueryKey) -> int:
        return len(self._subscriptions.get(key, ()))

    def eviction_pending(self, key: QueryKey) -> bool:
        return key in self._eviction_timers

    def close(self) -> None:
        for handle in self._eviction_timers.values():
            handle.cancel()
        self._eviction_timers.clear()
        self._subscriptions.clear()
        self._remove_listener()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _unsubscribe(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        key = subscription.key
        subscriptions = self._subscriptions.get(key, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            self._subscriptions.pop(key, None)

        # An in-flight fetch is left running for later subscribers
        if self._store.release(key) == 0:
            self._schedule_eviction(key)

    def _dispatch(self, key: QueryKey, entry: CacheEntry[Any] | None) -> None:
        if entry is None:
            self._cancel_eviction(key)
            return

        for subscription in list(self._subscriptions.get(key, ())):
            if not subscription.active:
                continue
            try:
                subscription.on_change(entry)
            except Exception:
                logger.exception("Subscriber callback failed for %s", key)

        if entry.ref_count == 0 and key not in self._eviction_timers:
            self._schedule_eviction(key)

    def _schedule_eviction(self, key: QueryKey) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside a loop nothing could fire the timer
            return
        self._cancel_eviction(key)
        self._eviction_timers[key] = loop.call_later(
            self._eviction_grace, self._evict_if_unused, key
        )

    def _cancel_eviction(self, key: QueryKey) -> None:
        handle = self._eviction_timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _evict_if_unused(self, key: QueryKey) -> None:
        self._eviction_timers.pop(key, None)
        entry = self._store.get(key)
        if entry is not None and entry.ref_count == 0:
            self._store.evict(key)
