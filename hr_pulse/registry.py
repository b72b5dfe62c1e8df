"""Per-entity subscription ownership for one record kind."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .errors import PartialEntityFailure, StoreError
from .models import Added, Entity, RecordKind, Removed, Reset, RosterEvent
from .retry import Backoff
from .store import RecordStore, StorePaths, Subscription

logger = logging.getLogger(__name__)

SnapshotSink = Callable[[str, Any], None]
FailureListener = Callable[[PartialEntityFailure], None]
RecoveryListener = Callable[[RecordKind, str], None]


class _Slot:
    __slots__ = ("entity_id", "subscription", "opener", "closed", "failures", "reported")

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        self.subscription: Optional[Subscription] = None
        self.opener: Optional[asyncio.Task[None]] = None
        self.closed = False
        self.failures = 0
        self.reported = False


class SubscriptionRegistry:
    """Holds exactly one live subscription per tracked entity.

    Every snapshot is forwarded to ``sink`` as ``(entity_id, value)``; removing
    an entity forwards ``(entity_id, None)`` so its records are purged. A
    callback that arrives after its slot was released is dropped.
    """

    def __init__(
        self,
        store: RecordStore,
        kind: RecordKind,
        paths: StorePaths,
        sink: SnapshotSink,
        *,
        max_attempts: int = 5,
        backoff: Optional[Backoff] = None,
        on_failure: Optional[FailureListener] = None,
        on_recovered: Optional[RecoveryListener] = None,
    ) -> None:
        self._store = store
        self._kind = kind
        self._paths = paths
        self._sink = sink
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff or Backoff()
        self._on_failure = on_failure
        self._on_recovered = on_recovered
        self._slots: Dict[str, _Slot] = {}
        self._detached: Set[str] = set()
        self._closed = False

    @property
    def kind(self) -> RecordKind:
        return self._kind

    @property
    def closed(self) -> bool:
        return self._closed

    def registered(self) -> List[str]:
        return list(self._slots)

    def live(self) -> List[str]:
        """Entity ids whose subscription is currently established."""

        return [entity_id for entity_id, slot in self._slots.items() if slot.subscription is not None]

    def failing(self) -> List[str]:
        return [entity_id for entity_id, slot in self._slots.items() if slot.reported]

    # region Roster events
    def handle(self, event: RosterEvent) -> None:
        if isinstance(event, Added):
            self.add(event.entity)
        elif isinstance(event, Removed):
            self.remove(event.entity_id)
        elif isinstance(event, Reset):
            self.reset(event.entities)

    def add(self, entity: Entity) -> None:
        if self._closed or entity.id in self._slots:
            return
        self._detached.discard(entity.id)
        slot = _Slot(entity.id)
        self._slots[entity.id] = slot
        slot.opener = asyncio.create_task(self._open(slot), name=f"subscribe:{self._kind.value}:{entity.id}")

    def remove(self, entity_id: str) -> None:
        slot = self._slots.pop(entity_id, None)
        if slot is not None:
            self._release(slot)
        elif entity_id in self._detached:
            self._detached.discard(entity_id)
        else:
            return
        self._sink(entity_id, None)

    def reset(self, entities: Iterable[Entity]) -> None:
        wanted = {entity.id: entity for entity in entities}
        for entity_id in [known for known in [*self._slots, *self._detached] if known not in wanted]:
            self.remove(entity_id)
        for entity in wanted.values():
            self.add(entity)

    def close(self) -> None:
        """Release every subscription; later callbacks become no-ops.

        Records already forwarded stay with the sink, so a view keeps serving
        its last known data. The released ids are remembered and purged by the
        first ``reset`` after ``reopen`` if the roster no longer lists them.
        """

        self._closed = True
        slots, self._slots = self._slots, {}
        self._detached.update(slots)
        for slot in slots.values():
            self._release(slot)

    def reopen(self) -> None:
        """Accept roster events again after ``close``."""

        self._closed = False

    # endregion

    async def wait_idle(self, timeout: float) -> bool:
        """Wait for pending subscription attempts; True when none is left."""

        pending = [slot.opener for slot in self._slots.values() if slot.opener and not slot.opener.done()]
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending

    def _live(self, slot: _Slot) -> bool:
        return not slot.closed and self._slots.get(slot.entity_id) is slot

    def _release(self, slot: _Slot) -> None:
        slot.closed = True
        opener, slot.opener = slot.opener, None
        if opener is not None and not opener.done() and opener is not asyncio.current_task():
            opener.cancel()
        subscription, slot.subscription = slot.subscription, None
        if subscription is not None:
            subscription.unsubscribe()

    def _deliver(self, slot: _Slot, value: Any) -> None:
        if self._live(slot):
            self._sink(slot.entity_id, value)

    def _lost(self, slot: _Slot, exc: BaseException) -> None:
        if not self._live(slot):
            return
        logger.warning("%s subscription for %s dropped, reconnecting: %s", self._kind.value, slot.entity_id, exc)
        subscription, slot.subscription = slot.subscription, None
        if subscription is not None:
            subscription.unsubscribe()
        slot.opener = asyncio.create_task(
            self._open(slot, delay=self._backoff.delay(1)),
            name=f"resubscribe:{self._kind.value}:{slot.entity_id}",
        )

    async def _open(self, slot: _Slot, delay: float = 0.0) -> None:
        if delay:
            await asyncio.sleep(delay)
        path = self._paths.records(slot.entity_id, self._kind)
        while self._live(slot):
            try:
                subscription = await self._store.subscribe(
                    path,
                    lambda value: self._deliver(slot, value),
                    lambda exc: self._lost(slot, exc),
                )
            except StoreError as exc:
                slot.failures += 1
                if slot.failures >= self._max_attempts and not slot.reported:
                    slot.reported = True
                    failure = PartialEntityFailure(self._kind.value, slot.entity_id, slot.failures, exc)
                    logger.warning("%s", failure)
                    if self._on_failure is not None:
                        self._on_failure(failure)
                else:
                    logger.info("Subscribing %s failed (attempt %s): %s", path, slot.failures, exc)
                await asyncio.sleep(self._backoff.delay(slot.failures))
                continue
            if not self._live(slot) or slot.opener is not asyncio.current_task():
                subscription.unsubscribe()
                return
            slot.subscription = subscription
            slot.failures = 0
            if slot.reported:
                slot.reported = False
                logger.info("%s subscription for %s recovered", self._kind.value, slot.entity_id)
                if self._on_recovered is not None:
                    self._on_recovered(self._kind, slot.entity_id)
            return


__all__ = ["SubscriptionRegistry"]
