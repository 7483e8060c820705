"""Push-event decoding and routing into the cache.

Frames arrive as JSON objects ``{"type": ..., ...payload}``. Each recognized
type maps to an ``EventRoute`` that either writes complete values straight
into the store, or invalidates keys so subscribers refetch.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from coversync.errors import DecodeError
from coversync.invalidation import InvalidationGraph
from coversync.keys import QueryKey
from coversync.store import CacheStore
from coversync.types import PushEvent, PushEventType

logger = logging.getLogger(__name__)

_ENVELOPE_FIELDS = frozenset(
    {
        "type",
        "entityKind",
        "entity_kind",
        "entityId",
        "entity_id",
        "eventId",
        "event_id",
    }
)


def _first(frame: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if frame.get(name) is not None:
            return frame[name]
    return None


def decode_event(frame: str | bytes | Mapping[str, Any]) -> PushEvent | None:
    """Decode one frame.

    Returns:
        The event, or None for a well-formed frame of an unknown type

    Raises:
        DecodeError: The frame is not a JSON object with a string ``type``
    """
    if isinstance(frame, (str, bytes)):
        try:
            frame = json.loads(frame)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecodeError(f"Invalid JSON frame: {exc}", frame=frame) from exc

    if not isinstance(frame, Mapping):
        raise DecodeError("Frame is not an object", frame=frame)

    raw_type = frame.get("type")
    if not isinstance(raw_type, str):
        raise DecodeError("Frame has no type", frame=frame)

    try:
        event_type = PushEventType(raw_type)
    except ValueError:
        logger.debug("Ignoring push event of unknown type %r", raw_type)
        return None

    if "data" in frame:
        data = frame["data"]
    else:
        data = {k: v for k, v in frame.items() if k not in _ENVELOPE_FIELDS} or None

    entity_id = _first(frame, "entityId", "entity_id")
    event_id = _first(frame, "eventId", "event_id")
    return PushEvent(
        type=event_type,
        entity_kind=_first(frame, "entityKind", "entity_kind"),
        entity_id=str(entity_id) if entity_id is not None else None,
        data=data,
        event_id=str(event_id) if event_id is not None else None,
    )


@dataclass(frozen=True, slots=True)
class EventRoute:
    """How one event type reaches the cache.

    Attributes:
        writes: (key, value) pairs written directly; no network round-trip
        invalidates: Key prefixes to mark stale
        effect: Invalidation rule to run with the event as payload
    """

    writes: Callable[[PushEvent], Iterable[tuple[QueryKey, Any]]] | None = None
    invalidates: Callable[[PushEvent], Iterable[QueryKey]] | None = None
    effect: Callable[[PushEvent], str | None] | None = None


def event_payload(event: PushEvent) -> dict[str, Any]:
    """Payload handed to invalidation rules for a push event."""
    payload: dict[str, Any] = {}
    if isinstance(event.data, Mapping):
        payload.update(event.data)
    if event.entity_id is not None:
        payload["id"] = event.entity_id
    if event.entity_kind is not None:
        payload["kind"] = event.entity_kind
    return payload


class EventRouter:
    """Applies decoded push events to the shared store."""

    def __init__(
        self,
        store: CacheStore,
        graph: InvalidationGraph,
        routes: Mapping[PushEventType, EventRoute],
    ) -> None:
        self._store = store
        self._graph = graph
        self._routes = dict(routes)

    def apply(self, event: PushEvent) -> bool:
        """Apply ``event``; returns False when no route handles its type.

        Invalidations run before direct writes so a key that is both
        invalidated and written ends up fresh with the pushed value.
        """
        route = self._routes.get(event.type)
        if route is None:
            logger.debug("No route for push event %s", event.type.value)
            return False

        prefixes: set[QueryKey] = set()
        if route.invalidates is not None:
            prefixes.update(route.invalidates(event))
        if route.effect is not None:
            effect = route.effect(event)
            if effect is not None:
                prefixes |= self._graph.resolve(effect, event_payload(event))
        if prefixes:
            self._graph.apply(prefixes)

        if route.writes is not None:
            for key, value in route.writes(event):
                self._store.write(key, value)
        return True
