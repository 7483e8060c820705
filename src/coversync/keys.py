"""Query keys: hierarchical, structurally comparable cache identifiers."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

_ESCAPE_MAP = {"\\": "\\\\", ":": "\\:", "?": "\\?"}
_UNESCAPE_MAP = {"\\\\": "\\", "\\:": ":", "\\?": "?"}


def _escape(part: str) -> str:
    result = part
    for char, escaped in _ESCAPE_MAP.items():
        result = result.replace(char, escaped)
    return result


def _canonical_params(params: tuple[tuple[str, Any], ...]) -> str:
    return json.dumps(dict(params), sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True, slots=True, eq=False)
class QueryKey:
    """Identifier for a unit of cached data.

    A key is a domain tag, zero or more scoping segments and an optional
    parameter bag (filters, pagination, sort). Two keys are equal iff their
    canonical serializations are equal; parameter order never matters and
    ``None`` parameters are dropped.

        QueryKey.of("claims")                 # claims
        QueryKey.of("claims", 42, "notes")    # claims:42:notes
        QueryKey.of("claims", page=2)         # claims?{"page":2}
    """

    segments: tuple[str, ...]
    params: tuple[tuple[str, Any], ...] = ()
    _canonical: str = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.segments:
            raise ValueError("QueryKey needs at least a domain segment")
        segments = tuple(str(s) for s in self.segments)
        params = tuple(
            sorted((str(k), v) for k, v in dict(self.params).items() if v is not None)
        )
        canonical = ":".join(_escape(s) for s in segments)
        if params:
            canonical = f"{canonical}?{_canonical_params(params)}"
        object.__setattr__(self, "segments", segments)
        object.__setattr__(self, "params", params)
        object.__setattr__(self, "_canonical", canonical)

    @classmethod
    def of(cls, *segments: Any, **params: Any) -> QueryKey:
        return cls(tuple(segments), tuple(params.items()))

    @classmethod
    def parse(cls, serialized: str) -> QueryKey:
        """Rebuild a key from its canonical serialization."""
        parts: list[str] = []
        current = ""
        params: dict[str, Any] = {}
        i = 0

        while i < len(serialized):
            char = serialized[i]
            if char == "\\":
                escaped = serialized[i : i + 2]
                if escaped in _UNESCAPE_MAP:
                    current += _UNESCAPE_MAP[escaped]
                    i += 2
                    continue
                current += char
                i += 1
            elif char == ":":
                parts.append(current)
                current = ""
                i += 1
            elif char == "?":
                params = json.loads(serialized[i + 1 :])
                break
            else:
                current += char
                i += 1

        parts.append(current)
        return cls(tuple(parts), tuple(params.items()))

    @property
    def domain(self) -> str:
        return self.segments[0]

    @property
    def is_list(self) -> bool:
        """Parameterized keys (filters, pages) are list-type entries."""
        return bool(self.params)

    def child(self, *segments: Any) -> QueryKey:
        return QueryKey((*self.segments, *segments), self.params)

    def with_params(self, **params: Any) -> QueryKey:
        return QueryKey(self.segments, tuple({**dict(self.params), **params}.items()))

    def is_prefix_of(self, other: QueryKey) -> bool:
        return is_prefix(self, other)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QueryKey):
            return NotImplemented
        return self._canonical == other._canonical

    def __hash__(self) -> int:
        return hash(self._canonical)

    def __str__(self) -> str:
        return self._canonical


def key(*segments: Any, **params: Any) -> QueryKey:
    """Shorthand for ``QueryKey.of``."""
    return QueryKey.of(*segments, **params)


def is_prefix(parent: QueryKey, child: QueryKey) -> bool:
    """Check if parent is a prefix of child (for invalidation).

    A parent carrying parameters only matches keys with the same segments
    whose parameters include all of the parent's.
    """
    if len(parent.segments) > len(child.segments):
        return False
    if child.segments[: len(parent.segments)] != parent.segments:
        return False
    if not parent.params:
        return True
    if parent.segments != child.segments:
        return False
    child_params = dict(child.params)
    return all(
        name in child_params and child_params[name] == value
        for name, value in parent.params
    )


@dataclass(frozen=True, slots=True)
class KeySpec:
    """A key template filled from a payload: ``KeySpec(("claims", "{id}"))``."""

    segments: tuple[str, ...]
    params: tuple[tuple[str, Any], ...] = ()

    def build(self, payload: Mapping[str, Any]) -> QueryKey:
        """Build a concrete key by substituting ``{field}`` placeholders."""
        try:
            segments = tuple(seg.format_map(payload) for seg in self.segments)
        except KeyError as exc:
            raise ValueError(f"{self!r} needs payload field {exc}") from exc
        return QueryKey(segments, self.params)

    def __repr__(self) -> str:
        return f"KeySpec({':'.join(self.segments)})"


def template(*segments: str, **params: Any) -> KeySpec:
    """Shorthand for a ``KeySpec``."""
    return KeySpec(tuple(segments), tuple(params.items()))


def define_keys(
    definitions: dict[str, Callable[..., tuple[Any, ...] | QueryKey]],
) -> dict[str, Callable[..., QueryKey]]:
    """
    Define query key factories in a centralized location.

    Example:
        keys = define_keys({
            "claim": lambda id: ("claims", id),
            "claim_notes": lambda id: ("claims", id, "notes"),
            "claims": lambda **filters: QueryKey.of("claims", **filters),
        })

        keys["claim"](42)        # claims:42
        keys["claim_notes"](42)  # claims:42:notes
    """
    result: dict[str, Callable[..., QueryKey]] = {}
    for name, fn in definitions.items():

        def make_key(
            *args: Any,
            _fn: Callable[..., tuple[Any, ...] | QueryKey] = fn,
            **kwargs: Any,
        ) -> QueryKey:
            built = _fn(*args, **kwargs)
            if isinstance(built, QueryKey):
                return built
            return QueryKey(tuple(built))

        result[name] = make_key
    return result
