"""Core types for the coversync engine."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Generic, TypeVar

from coversync.keys import QueryKey

T = TypeVar("T")

# "30s", "5m", "2h", "1d", "250ms", a timedelta, or seconds
Duration = str | int | float | timedelta

# Pure function from the cached value to a provisional one
OptimisticTransform = Callable[[Any], Any]


class EntryStatus(str, Enum):
    EMPTY = "empty"
    FETCHING = "fetching"
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached value with metadata.

    Entries are immutable: every transition replaces the entry in the store,
    so a held reference is a consistent snapshot.
    """

    key: QueryKey
    value: T | None = None
    status: EntryStatus = EntryStatus.EMPTY
    fetched_at: float | None = None  # loop clock, seconds
    stale_after: float = 0.0
    error: BaseException | None = field(default=None, compare=False)
    in_flight: asyncio.Future[Any] | None = field(
        default=None, compare=False, repr=False
    )
    ref_count: int = field(default=0, compare=False)
    invalidations: int = field(default=0, compare=False)

    @property
    def has_value(self) -> bool:
        return self.fetched_at is not None

    def is_expired(self, now: float) -> bool:
        """Check if a fresh entry has outlived its ``stale_after``."""
        if self.fetched_at is None:
            return False
        return now > self.fetched_at + self.stale_after


@dataclass(frozen=True, slots=True)
class MutationDescriptor:
    """One user-initiated write. Created, executed and discarded per call."""

    effect: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    optimistic: OptimisticTransform | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Typed outcome of a mutation; failures are returned, never raised."""

    effect: str
    data: T | None = None
    error: BaseException | None = None
    invalidated: frozenset[QueryKey] = frozenset()

    @property
    def ok(self) -> bool:
        return self.error is None


class PushEventType(str, Enum):
    MESSAGE = "message"
    NEW_MESSAGE = "new_message"
    NOTIFICATION = "notification"
    NEW_NOTIFICATION = "new_notification"
    PROFILE_UPDATE = "profile_update"
    NEW_ACTIVITY = "NEW_ACTIVITY"
    ACTIVITY_UPDATED = "ACTIVITY_UPDATED"
    INITIAL_ACTIVITIES = "INITIAL_ACTIVITIES"
    ACTIVITY_STATS = "ACTIVITY_STATS"
    ENTITY_UPDATED = "entity_updated"
    ENTITY_CHANGED = "entity_changed"


@dataclass(frozen=True, slots=True)
class PushEvent:
    """A decoded frame from the real-time channel."""

    type: PushEventType
    entity_kind: str | None = None
    entity_id: str | None = None
    data: Any = None
    event_id: str | None = None
