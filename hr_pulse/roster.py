"""Roster tracking: turns roster snapshots into Added / Removed / Reset events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .models import Added, Entity, Removed, Reset, RosterEvent
from .store import RecordStore, Subscription

logger = logging.getLogger(__name__)

RosterListener = Callable[[RosterEvent], None]
RosterErrorListener = Callable[[BaseException], None]


def entities_from_snapshot(value: Any, *, active_only: bool = True) -> Dict[str, Entity]:
    """Build the id → entity mapping carried by one roster snapshot."""

    if isinstance(value, list):
        items = [(str(index), item) for index, item in enumerate(value) if item is not None]
    elif isinstance(value, dict):
        items = [(str(key), item) for key, item in value.items()]
    else:
        items = []
    entities: Dict[str, Entity] = {}
    for entity_id, item in items:
        entity = Entity.from_snapshot(entity_id, item)
        if active_only and entity.status not in (None, "active"):
            continue
        entities[entity_id] = entity
    return entities


class EntitySetTracker:
    """Keeps the last known roster and emits the set difference on every change.

    The first snapshot of a subscription is announced as ``Reset``. After a
    store error the tracker goes quiet until ``start`` is called again; it
    never reports a failed read as an empty roster.
    """

    def __init__(self, store: RecordStore, path: str, *, active_only: bool = True) -> None:
        self._store = store
        self._path = path
        self._active_only = active_only
        self._known: Dict[str, Entity] = {}
        self._listeners: List[RosterListener] = []
        self._error_listeners: List[RosterErrorListener] = []
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._seen_first = False
        self._ready = asyncio.Event()
        self.error: Optional[BaseException] = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def entities(self) -> Mapping[str, Entity]:
        return dict(self._known)

    @property
    def active(self) -> bool:
        return self._subscription is not None and self.error is None

    def add_listener(self, listener: RosterListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def add_error_listener(self, listener: RosterErrorListener) -> None:
        self._error_listeners.append(listener)

    async def start(self) -> None:
        """Subscribe to the roster path. Errors opening the subscription propagate."""

        if self._subscription is not None and self.error is None:
            return
        self._release()
        generation = self._generation
        self.error = None
        self._seen_first = False
        self._ready.clear()
        subscription = await self._store.subscribe(
            self._path,
            lambda value: self._on_snapshot(generation, value),
            lambda exc: self._on_error(generation, exc),
        )
        if generation != self._generation or self.error is not None:
            subscription.unsubscribe()
            return
        self._subscription = subscription

    def stop(self) -> None:
        """Drop the roster subscription. A later ``start`` may run on a new event loop."""

        self._release()
        self._ready = asyncio.Event()

    def _release(self) -> None:
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.unsubscribe()

    async def wait_ready(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _on_snapshot(self, generation: int, value: Any) -> None:
        if generation != self._generation or self.error is not None:
            return
        current = entities_from_snapshot(value, active_only=self._active_only)
        if not self._seen_first:
            self._seen_first = True
            self._known = current
            self._ready.set()
            self._emit(Reset(tuple(current.values())))
            return
        previous = self._known
        self._known = current
        for entity_id in previous.keys() - current.keys():
            self._emit(Removed(entity_id))
        for entity_id in current.keys() - previous.keys():
            self._emit(Added(current[entity_id]))

    def _on_error(self, generation: int, exc: BaseException) -> None:
        if generation != self._generation:
            return
        self.error = exc
        self._release()
        logger.warning("Roster subscription on %s failed: %s", self._path, exc)
        for listener in list(self._error_listeners):
            try:
                listener(exc)
            except Exception:  # noqa: BLE001
                logger.exception("Roster error listener failed")

    def _emit(self, event: RosterEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Roster listener failed for %s", event)


__all__ = ["EntitySetTracker", "entities_from_snapshot"]
