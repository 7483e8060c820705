"""In-memory cache store with staleness and LRU eviction of list entries."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any

from coversync.duration import parse_duration
from coversync.keys import QueryKey, is_prefix
from coversync.types import CacheEntry, Duration, EntryStatus

logger = logging.getLogger(__name__)

# Called with the new entry, or None once the key is evicted
Listener = Callable[[QueryKey, CacheEntry[Any] | None], None]


class CacheStore:
    """Keyed map from QueryKey to CacheEntry.

    The store owns staleness and eviction policy. Every operation is
    synchronous and listeners observe the transition before it returns.
    """

    def __init__(
        self,
        *,
        default_stale_after: Duration = "5m",
        stale_times: Mapping[QueryKey | str, Duration] | None = None,
        max_list_entries: int | None = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_list_entries is not None and max_list_entries < 1:
            raise ValueError("max_list_entries must be at least 1")
        self._entries: OrderedDict[QueryKey, CacheEntry[Any]] = OrderedDict()
        self._listeners: list[Listener] = []
        self._default_stale_after = parse_duration(default_stale_after)
        self._stale_times = [
            (prefix if isinstance(prefix, QueryKey) else QueryKey.of(prefix),
             parse_duration(duration))
            for prefix, duration in (stale_times or {}).items()
        ]
        # Most specific prefix wins
        self._stale_times.sort(key=lambda item: len(item[0].segments), reverse=True)
        self._max_list_entries = max_list_entries
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def stale_after_for(self, key: QueryKey) -> float:
        """Resolve the stale time configured for a key."""
        for prefix, duration in self._stale_times:
            if is_prefix(prefix, key):
                return duration
        return self._default_stale_after

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: QueryKey) -> CacheEntry[Any] | None:
        """Get an entry; a fresh entry past its stale time reads as stale."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)  # LRU touch
        if entry.status is EntryStatus.FRESH and entry.is_expired(self.now()):
            entry = replace(entry, status=EntryStatus.STALE)
            self._entries[key] = entry
        return entry

    def keys(self, prefix: QueryKey | None = None) -> list[QueryKey]:
        if prefix is None:
            return list(self._entries)
        return [k for k in self._entries if is_prefix(prefix, k)]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def put(
        self,
        key: QueryKey,
        value: Any,
        stale_after: Duration | None = None,
    ) -> CacheEntry[Any]:
        """Overwrite the value, reset ``fetched_at`` and mark the entry fresh."""
        current = self._entries.get(key) or CacheEntry(key=key)
        entry = replace(
            current,
            value=value,
            status=EntryStatus.FRESH,
            fetched_at=self.now(),
            stale_after=(
                parse_duration(stale_after)
                if stale_after is not None
                else self.stale_after_for(key)
            ),
            error=None,
            in_flight=None,
        )
        self._set(entry)
        return entry

    def write(self, key: QueryKey, value: Any) -> bool:
        """Direct write from a push event or an optimistic update.

        Writing the value an entry already holds fresh is a no-op, so
        redelivered events do not notify twice. A write supersedes any
        in-flight fetch for the key.
        """
        current = self.get(key)
        if (
            current is not None
            and current.status is EntryStatus.FRESH
            and current.value == value
        ):
            return False
        self.put(key, value)
        return True

    def mark_fetching(
        self, key: QueryKey, future: asyncio.Future[Any]
    ) -> CacheEntry[Any]:
        current = self._entries.get(key) or CacheEntry(key=key)
        entry = replace(
            current, status=EntryStatus.FETCHING, in_flight=future, error=None
        )
        self._set(entry)
        return entry

    def set_error(self, key: QueryKey, error: BaseException) -> CacheEntry[Any]:
        """Record a failed fetch, keeping the last good value visible."""
        current = self._entries.get(key) or CacheEntry(key=key)
        entry = replace(current, status=EntryStatus.ERROR, error=error, in_flight=None)
        self._set(entry)
        return entry

    def mark_stale(self, prefix: QueryKey, *, exact: bool = False) -> list[QueryKey]:
        """Flag entries for background refresh without discarding their value.

        By default every entry under ``prefix`` is affected; with
        ``exact=True`` only the entry for that very key. Entries being
        fetched keep their status but remember the invalidation so the
        result in flight is re-flagged when it lands.
        """
        if exact:
            matched = [prefix] if prefix in self._entries else []
        else:
            matched = self.keys(prefix)
        marked: list[QueryKey] = []
        for key in matched:
            # The list cap may drop a later key while earlier ones are marked
            entry = self._entries.get(key)
            if entry is None:
                continue
            marked.append(key)
            if entry.status in (EntryStatus.FRESH, EntryStatus.ERROR):
                self._set(
                    replace(
                        entry,
                        status=EntryStatus.STALE,
                        error=None,
                        invalidations=entry.invalidations + 1,
                    )
                )
            elif entry.status is not EntryStatus.EMPTY:
                self._entries[key] = replace(
                    entry, invalidations=entry.invalidations + 1
                )
        return marked

    def restore(self, snapshot: CacheEntry[Any]) -> CacheEntry[Any]:
        """Put back a snapshot's value (rollback) and flag it stale."""
        current = self._entries.get(snapshot.key) or CacheEntry(key=snapshot.key)
        entry = replace(
            current,
            value=snapshot.value,
            fetched_at=snapshot.fetched_at,
            stale_after=snapshot.stale_after,
            status=EntryStatus.STALE if snapshot.has_value else EntryStatus.EMPTY,
            error=None,
            in_flight=None,
            invalidations=current.invalidations + 1,
        )
        self._set(entry)
        return entry

    def evict(self, key: QueryKey) -> bool:
        """Remove the entry entirely. A fetch in flight for it is abandoned."""
        if self._entries.pop(key, None) is None:
            return False
        logger.debug("Evicted %s", key)
        self._notify(key, None)
        return True

    def clear(self) -> None:
        for key in list(self._entries):
            self.evict(key)

    # -------------------------------------------------------------------------
    # Reference counting (subscriptions)
    # -------------------------------------------------------------------------

    def retain(self, key: QueryKey) -> CacheEntry[Any]:
        current = self._entries.get(key) or CacheEntry(key=key)
        entry = replace(current, ref_count=current.ref_count + 1)
        self._entries[key] = entry
        self._entries.move_to_end(key)
        return entry

    def release(self, key: QueryKey) -> int:
        current = self._entries.get(key)
        if current is None:
            return 0
        remaining = max(current.ref_count - 1, 0)
        self._entries[key] = replace(current, ref_count=remaining)
        return remaining

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set(self, entry: CacheEntry[Any]) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        logger.debug("%s -> %s", entry.key, entry.status.value)
        self._notify(entry.key, entry)
        if entry.key.is_list:
            self._enforce_list_cap(keep=entry.key)

    def _enforce_list_cap(self, keep: QueryKey) -> None:
        if self._max_list_entries is None:
            return
        list_keys = [k for k in self._entries if k.is_list]
        excess = len(list_keys) - self._max_list_entries
        # Oldest first; entries with subscribers are never dropped by the cap
        for key in list_keys:
            if excess <= 0:
                break
            if key == keep or self._entries[key].ref_count > 0:
                continue
            self.evict(key)
            excess -= 1

    def _notify(self, key: QueryKey, entry: CacheEntry[Any] | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, entry)
            except Exception:
                logger.exception("Cache listener failed for %s", key)
