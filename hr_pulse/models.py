"""Dataclasses representing HR Pulse domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Union

DEFAULT_MEETING_MINUTES = 60
CANCELLED_STATUSES = frozenset({"cancelled", "canceled"})

_TIME_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M:%S %p")


class RecordKind(str, Enum):
    ATTENDANCE = "attendance"
    LEAVES = "leaves"
    MEETINGS = "meetings"


class AlertKind(str, Enum):
    REMINDER = "reminder"
    START = "start"


@dataclass(slots=True, frozen=True)
class Entity:
    id: str
    name: str
    department: Optional[str] = None
    status: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_snapshot(cls, entity_id: str, value: Any) -> "Entity":
        data = value if isinstance(value, dict) else {}
        attributes = {
            k: v
            for k, v in data.items()
            if k not in {"name", "department", "status"} and not isinstance(v, (dict, list))
        }
        return cls(
            id=entity_id,
            name=str(data.get("name") or entity_id),
            department=data.get("department") or None,
            status=data.get("status") or None,
            attributes=MappingProxyType(attributes),
        )


@dataclass(slots=True, frozen=True)
class Record:
    """One attendance punch, leave request or meeting owned by a single entity."""

    kind: RecordKind
    entity_id: str
    record_id: str
    instant: datetime
    data: Mapping[str, Any]

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_id, self.record_id)

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            **dict(self.data),
            "id": self.record_id,
            "entityId": self.entity_id,
            "kind": self.kind.value,
            "instant": self.instant.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class MergedView:
    """Immutable, sorted snapshot of every live record of one kind."""

    kind: RecordKind
    version: int = 0
    records: tuple[Record, ...] = ()

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def keys(self) -> list[tuple[str, str]]:
        return [record.key for record in self.records]

    def find(self, entity_id: str, record_id: str) -> Optional[Record]:
        for record in self.records:
            if record.entity_id == entity_id and record.record_id == record_id:
                return record
        return None


@dataclass(slots=True, frozen=True)
class Added:
    entity: Entity


@dataclass(slots=True, frozen=True)
class Removed:
    entity_id: str


@dataclass(slots=True, frozen=True)
class Reset:
    entities: tuple[Entity, ...]


RosterEvent = Union[Added, Removed, Reset]


@dataclass(slots=True, frozen=True)
class Alert:
    kind: AlertKind
    entity_id: str
    record_id: str
    title: str
    starts_at: datetime
    fired_at: datetime
    meeting_link: Optional[str] = None

    @property
    def message(self) -> str:
        if self.kind is AlertKind.REMINDER:
            return f"'{self.title}' starts at {self.starts_at:%H:%M}"
        return f"'{self.title}' is starting now"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entityId": self.entity_id,
            "meetingId": self.record_id,
            "title": self.title,
            "message": self.message,
            "startsAt": self.starts_at.isoformat(),
            "firedAt": self.fired_at.isoformat(),
            "meetingLink": self.meeting_link,
        }


def parse_instant(value: Any, tz: tzinfo) -> Optional[datetime]:
    """Turn an epoch number or ISO string into an aware datetime, or None.

    Numbers above 1e11 are treated as epoch milliseconds.
    """

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=tz)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)
    return None


def parse_clock(value: Any) -> Optional[tuple[int, int, int]]:
    if not isinstance(value, str) or not value.strip():
        return None
    for fmt in _TIME_FORMATS:
        try:
            parsed = datetime.strptime(value.strip().upper(), fmt)
        except ValueError:
            continue
        return parsed.hour, parsed.minute, parsed.second
    return None


def combine_date_time(day_value: Any, time_value: Any, tz: tzinfo) -> Optional[datetime]:
    """Combine a ``date`` field and an optional ``time`` field into an aware datetime."""

    base = parse_instant(day_value, tz)
    if base is None:
        return None
    clock = parse_clock(time_value)
    if clock is None:
        return base
    hour, minute, second = clock
    return base.replace(hour=hour, minute=minute, second=second, microsecond=0)


def meeting_duration(data: Mapping[str, Any]) -> Optional[timedelta]:
    """Return the meeting length, or None when ``duration`` is not a number."""

    raw = data.get("duration")
    if raw is None or raw == "":
        return timedelta(minutes=DEFAULT_MEETING_MINUTES)
    try:
        minutes = float(raw)
    except (TypeError, ValueError):
        return None
    if minutes != minutes:
        return None
    return timedelta(minutes=minutes)


def is_cancelled(data: Mapping[str, Any]) -> bool:
    status = data.get("status")
    return isinstance(status, str) and status.lower() in CANCELLED_STATUSES


def leave_range(data: Mapping[str, Any], tz: tzinfo) -> Optional[tuple[date, date]]:
    """First and last calendar day of a leave request, or None when either end is missing."""

    start = parse_instant(data.get("startDate"), tz)
    end = parse_instant(data.get("endDate"), tz)
    if start is None or end is None:
        return None
    return start.astimezone(tz).date(), end.astimezone(tz).date()


def leave_days(start: date, end: date) -> int:
    """Inclusive number of calendar days covered by a leave request."""

    return (end - start).days + 1


__all__ = [
    "DEFAULT_MEETING_MINUTES",
    "RecordKind",
    "AlertKind",
    "Entity",
    "Record",
    "MergedView",
    "Added",
    "Removed",
    "Reset",
    "RosterEvent",
    "Alert",
    "parse_instant",
    "parse_clock",
    "combine_date_time",
    "meeting_duration",
    "is_cancelled",
    "leave_range",
    "leave_days",
]
