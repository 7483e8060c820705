"""Engine configuration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from coversync.duration import parse_duration
from coversync.keys import QueryKey
from coversync.rules import DEFAULT_STALE_TIMES, SUBSCRIBE_FRAMES, SUMMARY_KEYS
from coversync.types import Duration

_DURATION_FIELDS = (
    "default_stale_after",
    "eviction_grace",
    "retry_base_delay",
    "retry_max_delay",
    "reconnect_base_delay",
    "reconnect_max_delay",
)


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Tunables of the sync engine. Validated on construction.

    Attributes:
        default_stale_after: Stale time of keys without an override
        stale_times: Stale time per key prefix, most specific prefix wins
        eviction_grace: How long an unwatched entry is kept
        max_list_entries: Cap on unwatched list-type entries (None: no cap)
        retry_attempts: Fetch attempts for transient failures, first included
        retry_base_delay: First retry delay, doubled per attempt
        retry_max_delay: Ceiling for the retry delay
        reconnect_base_delay: First reconnect delay, doubled per attempt
        reconnect_max_delay: Ceiling for the reconnect delay
        max_reconnect_attempts: Failed connects before giving up (None: never)
        summary_keys: Keys refetched on every (re)connect
        subscribe_frames: Frames sent once the push channel opens
        event_dedup_window: Number of recent event ids remembered
    """

    default_stale_after: Duration = "5m"
    stale_times: Mapping[QueryKey | str, Duration] = field(default_factory=dict)
    eviction_grace: Duration = "10m"
    max_list_entries: int | None = 100
    retry_attempts: int = 3
    retry_base_delay: Duration = "1s"
    retry_max_delay: Duration = "30s"
    reconnect_base_delay: Duration = "1s"
    reconnect_max_delay: Duration = "30s"
    max_reconnect_attempts: int | None = 5
    summary_keys: tuple[QueryKey, ...] = ()
    subscribe_frames: tuple[Mapping[str, Any], ...] = ()
    event_dedup_window: int = 256

    def __post_init__(self) -> None:
        for name in _DURATION_FIELDS:
            parse_duration(getattr(self, name))
        for duration in self.stale_times.values():
            parse_duration(duration)

        if self.max_list_entries is not None and self.max_list_entries < 1:
            raise ValueError("max_list_entries must be at least 1")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if self.event_dedup_window < 0:
            raise ValueError("event_dedup_window must not be negative")
        if parse_duration(self.retry_max_delay) < parse_duration(self.retry_base_delay):
            raise ValueError("retry_max_delay must not be below retry_base_delay")
        if parse_duration(self.reconnect_max_delay) < parse_duration(
            self.reconnect_base_delay
        ):
            raise ValueError(
                "reconnect_max_delay must not be below reconnect_base_delay"
            )

        object.__setattr__(self, "stale_times", dict(self.stale_times))
        object.__setattr__(self, "summary_keys", tuple(self.summary_keys))
        object.__setattr__(self, "subscribe_frames", tuple(self.subscribe_frames))

    @classmethod
    def console(cls, **overrides: Any) -> SyncConfig:
        """Defaults of the insurance console: its stale times and summary keys."""
        values: dict[str, Any] = {
            "stale_times": DEFAULT_STALE_TIMES,
            "summary_keys": SUMMARY_KEYS,
            "subscribe_frames": SUBSCRIBE_FRAMES,
        }
        values.update(overrides)
        return cls(**values)
