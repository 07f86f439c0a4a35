"""
Mutation Guard

Tracks which entities have a status-changing request in flight so a
double click on "Accept" sends one request, not two. A rejected request
is a no-op, not an error.

The guard is per engine instance and in-memory. Two different clients
racing on the same order are resolved by the backend's own transition
validation.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from kot_engine.models import EntityId

logger = logging.getLogger(__name__)

EntityKey = tuple[str, str]


def entity_key(kind: str, entity_id: EntityId) -> EntityKey:
    """Build a guard key, e.g. entity_key("order", 42) -> ("order", "42")."""
    return (kind, str(entity_id))


class MutationGuard:
    """
    In-flight set of entity keys.

    All engine code runs on one event loop, and try_acquire() does its
    check and insert without yielding, so no lock is needed.

    Example:
        >>> guard = MutationGuard()
        >>> async with guard.hold(entity_key("order", 7)) as admitted:
        ...     if admitted:
        ...         await backend.update_order_status(7, OrderStatus.READY)
    """

    def __init__(self):
        self._in_flight: set[EntityKey] = set()

    @property
    def in_flight(self) -> frozenset[EntityKey]:
        return frozenset(self._in_flight)

    def is_in_flight(self, key: EntityKey) -> bool:
        return key in self._in_flight

    def try_acquire(self, key: EntityKey) -> bool:
        if key in self._in_flight:
            logger.debug(f"Guard: rejected duplicate mutation for {key[0]} {key[1]}")
            return False
        self._in_flight.add(key)
        return True

    def release(self, key: EntityKey) -> None:
        self._in_flight.discard(key)

    @asynccontextmanager
    async def hold(self, key: EntityKey) -> AsyncIterator[bool]:
        """
        Hold `key` for the duration of the block.

        Yields True when admitted. The key is released on exit whatever
        the outcome, including exceptions and cancellation.
        """
        admitted = self.try_acquire(key)
        try:
            yield admitted
        finally:
            if admitted:
                self.release(key)
