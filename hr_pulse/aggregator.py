"""Merges per-entity snapshots into one sorted, immutable view per record kind."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import InvariantViolation
from .models import (
    MergedView,
    Record,
    RecordKind,
    combine_date_time,
    leave_days,
    leave_range,
    meeting_duration,
    parse_instant,
)

logger = logging.getLogger(__name__)

ViewListener = Callable[[MergedView], None]
ViolationListener = Callable[[InvariantViolation], None]


@dataclass(slots=True, frozen=True)
class Ordering:
    """Where a kind keeps its ordering key and which direction the view runs."""

    stamp_fields: Tuple[str, ...]
    date_fields: Tuple[str, ...]
    time_field: Optional[str]
    descending: bool

    def instant(self, data: Mapping[str, Any], tz: tzinfo) -> Optional[datetime]:
        for name in self.stamp_fields:
            if data.get(name) is not None:
                return parse_instant(data[name], tz)
        for name in self.date_fields:
            if data.get(name) is not None:
                time_value = data.get(self.time_field) if self.time_field else None
                return combine_date_time(data[name], time_value, tz)
        return None


ORDERINGS: Dict[RecordKind, Ordering] = {
    RecordKind.ATTENDANCE: Ordering(("ts", "timestamp", "createdAt"), ("date",), "punchIn", descending=True),
    RecordKind.LEAVES: Ordering(("ts", "timestamp", "appliedAt", "createdAt"), ("startDate", "date"), None, descending=True),
    RecordKind.MEETINGS: Ordering((), ("date",), "time", descending=False),
}


def _snapshot_items(value: Any) -> List[Tuple[str, Any]]:
    if isinstance(value, dict):
        return [(str(key), item) for key, item in value.items()]
    if isinstance(value, list):
        return [(str(index), item) for index, item in enumerate(value) if item is not None]
    return []


class Aggregator:
    """Last-snapshot-wins merge of every entity's records of one kind.

    Records are held per entity and keyed by record id, so the global key is
    always ``(entity_id, record_id)``. Each snapshot replaces the entity's
    previous contribution in full, then the view is rebuilt in one pass and
    published. Ties on the ordering key keep entity processing order.
    """

    def __init__(
        self,
        kind: RecordKind,
        *,
        tz: tzinfo = timezone.utc,
        on_violation: Optional[ViolationListener] = None,
    ) -> None:
        self._kind = kind
        self._ordering = ORDERINGS[kind]
        self._tz = tz
        self._on_violation = on_violation
        self._by_entity: Dict[str, Dict[str, Record]] = {}
        self._view = MergedView(kind)
        self._listeners: List[ViewListener] = []
        self.violations = 0

    @property
    def kind(self) -> RecordKind:
        return self._kind

    @property
    def view(self) -> MergedView:
        return self._view

    def entities(self) -> List[str]:
        """Entity ids currently contributing at least one record."""

        return list(self._by_entity)

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_entity_snapshot(self, entity_id: str, value: Any) -> None:
        records = self._normalize(entity_id, value)
        if records:
            self._by_entity[entity_id] = records
        else:
            self._by_entity.pop(entity_id, None)
        self._republish()

    def _normalize(self, entity_id: str, value: Any) -> Dict[str, Record]:
        records: Dict[str, Record] = {}
        for record_id, data in _snapshot_items(value):
            if not isinstance(data, dict):
                self._violation(entity_id, record_id, "record is not an object")
                continue
            if record_id in records:
                self._violation(entity_id, record_id, "duplicate record id in snapshot")
                continue
            instant = self._ordering.instant(data, self._tz)
            if instant is None:
                self._violation(entity_id, record_id, "missing or unparseable ordering key")
                continue
            if self._kind is RecordKind.MEETINGS:
                duration = meeting_duration(data)
                if duration is None or duration < timedelta(0):
                    self._violation(entity_id, record_id, f"invalid duration {data.get('duration')!r}")
                    continue
            elif self._kind is RecordKind.LEAVES:
                span = leave_range(data, self._tz)
                if span is not None and leave_days(*span) < 1:
                    self._violation(entity_id, record_id, "negative leave duration")
                    continue
            records[record_id] = Record(
                kind=self._kind,
                entity_id=entity_id,
                record_id=record_id,
                instant=instant,
                data=MappingProxyType(copy.deepcopy(data)),
            )
        return records

    def _republish(self) -> None:
        merged: List[Record] = []
        seen = set()
        for records in self._by_entity.values():
            for record in records.values():
                if record.key in seen:
                    self._violation(record.entity_id, record.record_id, "duplicate composite key")
                    continue
                seen.add(record.key)
                merged.append(record)
        merged.sort(key=lambda record: record.instant, reverse=self._ordering.descending)
        records = tuple(merged)
        if records == self._view.records:
            return
        self._view = MergedView(self._kind, self._view.version + 1, records)
        for listener in list(self._listeners):
            try:
                listener(self._view)
            except Exception:  # noqa: BLE001
                logger.exception("%s view listener failed", self._kind.value)

    def _violation(self, entity_id: str, record_id: str, reason: str) -> None:
        violation = InvariantViolation(self._kind.value, entity_id, record_id, reason)
        self.violations += 1
        logger.warning("%s", violation)
        if self._on_violation is not None:
            self._on_violation(violation)


__all__ = ["Aggregator", "Ordering", "ORDERINGS"]
