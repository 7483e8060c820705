"""Mutation execution with optimistic updates and rollback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from coversync.errors import StaleOptimisticRollbackError
from coversync.invalidation import InvalidationGraph
from coversync.store import CacheStore
from coversync.types import (
    CacheEntry,
    MutationDescriptor,
    MutationResult,
    OptimisticTransform,
)

logger = logging.getLogger(__name__)

MutateFn = Callable[[MutationDescriptor], Awaitable[Any]]


class MutationRunner:
    """Executes writes through the mutator and ripples their effects."""

    def __init__(
        self,
        store: CacheStore,
        graph: InvalidationGraph,
        mutate_fn: MutateFn,
    ) -> None:
        self._store = store
        self._graph = graph
        self._mutate_fn = mutate_fn
        self._pending: set[asyncio.Task[MutationResult[Any]]] = set()

    async def mutate(
        self,
        effect: str,
        payload: Mapping[str, Any] | None = None,
        optimistic: OptimisticTransform | None = None,
    ) -> MutationResult[Any]:
        """Run a mutation and return its typed result.

        Failures are returned, not raised; any optimistic value has been
        rolled back by the time this returns. Cancelling the caller does not
        cancel the write.
        """
        descriptor = MutationDescriptor(effect, dict(payload or {}), optimistic)
        task = asyncio.create_task(self._execute(descriptor))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for mutations still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _execute(self, descriptor: MutationDescriptor) -> MutationResult[Any]:
        effect, payload = descriptor.effect, descriptor.payload
        try:
            snapshot = self._apply_optimistic(descriptor)
        except Exception as exc:
            logger.warning("Optimistic update for %s failed: %s", effect, exc)
            return MutationResult(effect, error=exc)

        try:
            data = await self._mutate_fn(descriptor)
        except Exception as exc:
            logger.warning("Mutation %s failed: %s", effect, exc)
            if snapshot is None:
                return MutationResult(effect, error=exc)
            self._store.restore(snapshot)
            prefixes = self._graph.resolve(effect, payload) | {snapshot.key}
            self._graph.apply(prefixes)
            return MutationResult(
                effect,
                error=StaleOptimisticRollbackError(effect, snapshot.key, exc),
                invalidated=frozenset(prefixes),
            )

        self._write_response(descriptor, data)
        prefixes = self._graph.invalidate(effect, payload)
        return MutationResult(effect, data=data, invalidated=frozenset(prefixes))

    def _write_response(self, descriptor: MutationDescriptor, data: Any) -> None:
        """Store the entity the server returned under the rule's primary key."""
        if not isinstance(data, Mapping) or not data:
            return
        try:
            key = self._graph.primary_key(descriptor.effect, descriptor.payload)
        except ValueError as exc:
            logger.warning("Response of %s not cached: %s", descriptor.effect, exc)
            return
        if key is not None:
            self._store.write(key, data)

    def _apply_optimistic(
        self, descriptor: MutationDescriptor
    ) -> CacheEntry[Any] | None:
        """Write the provisional value; returns the snapshot to roll back to."""
        if descriptor.optimistic is None:
            return None
        key = self._graph.primary_key(descriptor.effect, descriptor.payload)
        if key is None:
            logger.warning(
                "Optimistic update for %s skipped: rule has no primary key",
                descriptor.effect,
            )
            return None
        snapshot = self._store.get(key)
        if snapshot is None or not snapshot.has_value:
            # Nothing cached to transform
            return None
        self._store.write(key, descriptor.optimistic(snapshot.value))
        return snapshot
