"""Declarative invalidation graph: effect tag -> dependent query keys."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from coversync.fetcher import Fetcher
from coversync.keys import KeySpec, QueryKey
from coversync.store import CacheStore

logger = logging.getLogger(__name__)

KeySource = Union[
    QueryKey,
    KeySpec,
    Callable[[Mapping[str, Any]], "QueryKey | Iterable[QueryKey] | None"],
]


def _expand(source: KeySource, payload: Mapping[str, Any]) -> set[QueryKey]:
    if isinstance(source, QueryKey):
        return {source}
    if isinstance(source, KeySpec):
        return {source.build(payload)}
    built = source(payload)
    if built is None:
        return set()
    if isinstance(built, QueryKey):
        return {built}
    return set(built)


def _expand_all(
    effect: str, sources: Iterable[KeySource], payload: Mapping[str, Any]
) -> set[QueryKey]:
    keys: set[QueryKey] = set()
    for source in sources:
        try:
            keys |= _expand(source, payload)
        except (KeyError, ValueError) as exc:
            # Payload lacks a field this source needs; resolve the others
            logger.warning("Skipping %r for %s: %s", source, effect, exc)
    return keys


@dataclass(frozen=True, slots=True)
class InvalidationRule:
    """What a mutation's effect makes stale.

    Attributes:
        effect: Effect tag, e.g. ``"claim.statusChanged"``
        invalidates: Key prefixes marked stale once the mutation settles
        primary: Key the optimistic transform is applied to
        removes: Keys evicted outright (e.g. the detail of a deleted record)
    """

    effect: str
    invalidates: tuple[KeySource, ...] = ()
    primary: KeySource | None = None
    removes: tuple[KeySource, ...] = ()


def rule(
    effect: str,
    *invalidates: KeySource,
    primary: KeySource | None = None,
    removes: Iterable[KeySource] = (),
) -> InvalidationRule:
    """Shorthand for an ``InvalidationRule``.

    Example:
        rule(
            "claim.statusChanged",
            template("claims", "{id}"),
            key("claims"),
            key("dashboardStats"),
            primary=template("claims", "{id}"),
        )
    """
    return InvalidationRule(effect, tuple(invalidates), primary, tuple(removes))


class InvalidationGraph:
    """Static rule table executed after a mutation or a push signal."""

    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        rules: Iterable[InvalidationRule] = (),
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._rules: dict[str, InvalidationRule] = {}
        for item in rules:
            self.register(item)

    def register(self, item: InvalidationRule) -> None:
        if item.effect in self._rules:
            raise ValueError(f"Duplicate invalidation rule for {item.effect!r}")
        self._rules[item.effect] = item

    def __contains__(self, effect: object) -> bool:
        return effect in self._rules

    def resolve(self, effect: str, payload: Mapping[str, Any]) -> set[QueryKey]:
        """Key prefixes invalidated by ``effect`` applied with ``payload``."""
        item = self._rules.get(effect)
        if item is None:
            logger.debug("No invalidation rule for %s", effect)
            return set()
        return _expand_all(effect, item.invalidates, payload)

    def primary_key(self, effect: str, payload: Mapping[str, Any]) -> QueryKey | None:
        item = self._rules.get(effect)
        if item is None or item.primary is None:
            return None
        keys = _expand(item.primary, payload)
        if len(keys) != 1:
            raise ValueError(f"Primary key of {effect!r} must resolve to one key")
        return next(iter(keys))

    def removals(self, effect: str, payload: Mapping[str, Any]) -> set[QueryKey]:
        item = self._rules.get(effect)
        if item is None:
            return set()
        return _expand_all(effect, item.removes, payload)

    def apply(self, prefixes: Iterable[QueryKey]) -> list[QueryKey]:
        """Mark every prefix stale, then refetch the watched stale keys.

        Returns:
            Keys whose refetch was started
        """
        prefixes = list(prefixes)
        for prefix in prefixes:
            self._store.mark_stale(prefix)

        refetched: list[QueryKey] = []
        for prefix in prefixes:
            for key in self._fetcher.revalidate(prefix):
                if key not in refetched:
                    refetched.append(key)
        if prefixes:
            logger.debug(
                "Invalidated %s; refetching %s",
                ", ".join(str(p) for p in prefixes),
                ", ".join(str(k) for k in refetched) or "nothing",
            )
        return refetched

    def invalidate(self, effect: str, payload: Mapping[str, Any]) -> set[QueryKey]:
        """Run the full rule for ``effect``: removals, then invalidation."""
        for removed in self.removals(effect, payload):
            self._store.evict(removed)
        prefixes = self.resolve(effect, payload)
        self.apply(prefixes)
        return prefixes
