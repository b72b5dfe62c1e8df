"""Polling notification scheduler for upcoming meetings.

Each tick re-evaluates every meeting in the merged view against the
absolute wall clock:

* ``start - lead <= now < start`` and ``reminded5MinBefore`` unset: reminder
* ``start <= now < end`` and ``notifiedAtStart`` unset: start alert
* ``now >= end`` or the meeting is cancelled: nothing, ever again

A flag is written to the store with a single patch before the alert is
emitted. If the patch cannot be made durable the alert is withheld and the
next tick tries again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

from .aggregator import Aggregator
from .errors import PersistenceRaceError, StoreError
from .models import Alert, AlertKind, Record, RecordKind, is_cancelled, meeting_duration
from .retry import Backoff, retry_async
from .store import RecordStore, StorePaths
from .tasks import RepeatingTask

logger = logging.getLogger(__name__)

REMINDER_FLAG = "reminded5MinBefore"
START_FLAG = "notifiedAtStart"
FLAGS = {AlertKind.REMINDER: REMINDER_FLAG, AlertKind.START: START_FLAG}

AlertListener = Callable[[Alert], None]
PersistenceFailureListener = Callable[[PersistenceRaceError], None]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MeetingState(str, Enum):
    SCHEDULED = "scheduled"
    REMINDER_DUE = "reminder_due"
    REMINDED = "reminded"
    START_DUE = "start_due"
    NOTIFIED = "notified"
    TERMINAL = "terminal"


def meeting_window(meeting: Record) -> Tuple[datetime, datetime]:
    duration = meeting_duration(meeting.data) or timedelta(0)
    return meeting.instant, meeting.instant + duration


class NotificationScheduler:
    def __init__(
        self,
        store: RecordStore,
        meetings: Aggregator,
        paths: StorePaths,
        *,
        clock: Optional[Clock] = None,
        lead: timedelta = timedelta(minutes=5),
        interval: float = 60.0,
        persist_attempts: int = 3,
        backoff: Optional[Backoff] = None,
        on_persistence_failure: Optional[PersistenceFailureListener] = None,
    ) -> None:
        if meetings.kind is not RecordKind.MEETINGS:
            raise ValueError("NotificationScheduler needs the meetings aggregator")
        self._store = store
        self._meetings = meetings
        self._paths = paths
        self._clock = clock or utc_now
        self._lead = lead
        self._persist_attempts = max(1, persist_attempts)
        self._backoff = backoff or Backoff(base=0.5, cap=5.0)
        self._on_persistence_failure = on_persistence_failure
        self._listeners: List[AlertListener] = []
        self._fired: Set[Tuple[str, str, str, str]] = set()
        self._lock = asyncio.Lock()
        self._task = RepeatingTask("meeting-notifications", self.tick, interval)

    @property
    def running(self) -> bool:
        return self._task.running

    def on_alert(self, listener: AlertListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
        self._lock = asyncio.Lock()

    def now(self) -> datetime:
        return self._clock()

    def state(self, meeting: Record, now: Optional[datetime] = None) -> MeetingState:
        now = now or self._clock()
        start, end = meeting_window(meeting)
        if is_cancelled(meeting.data) or now >= end:
            return MeetingState.TERMINAL
        if now >= start:
            return MeetingState.NOTIFIED if self._flagged(meeting, AlertKind.START) else MeetingState.START_DUE
        if now >= start - self._lead:
            return MeetingState.REMINDED if self._flagged(meeting, AlertKind.REMINDER) else MeetingState.REMINDER_DUE
        return MeetingState.SCHEDULED

    async def tick(self) -> List[Alert]:
        """Evaluate every meeting once; returns the alerts emitted by this tick."""

        async with self._lock:
            now = self._clock()
            view = self._meetings.view
            emitted: List[Alert] = []
            for meeting in view:
                state = self.state(meeting, now)
                if state is MeetingState.REMINDER_DUE:
                    boundary = AlertKind.REMINDER
                elif state is MeetingState.START_DUE:
                    boundary = AlertKind.START
                else:
                    continue
                if not await self._persist(meeting, boundary):
                    continue
                self._fired.add(self._memo_key(meeting, boundary))
                alert = Alert(
                    kind=boundary,
                    entity_id=meeting.entity_id,
                    record_id=meeting.record_id,
                    title=str(meeting.get("title") or "Meeting"),
                    starts_at=meeting.instant,
                    fired_at=now,
                    meeting_link=meeting.get("meetingLink") or None,
                )
                self._emit(alert)
                emitted.append(alert)
            self._forget_stale(now)
            return emitted

    def _flagged(self, meeting: Record, boundary: AlertKind) -> bool:
        return bool(meeting.get(FLAGS[boundary])) or self._memo_key(meeting, boundary) in self._fired

    @staticmethod
    def _memo_key(meeting: Record, boundary: AlertKind) -> Tuple[str, str, str, str]:
        return (meeting.entity_id, meeting.record_id, FLAGS[boundary], meeting.instant.isoformat())

    async def _persist(self, meeting: Record, boundary: AlertKind) -> bool:
        flag = FLAGS[boundary]
        current = self._meetings.view.find(meeting.entity_id, meeting.record_id)
        if current is None or is_cancelled(current.data):
            return False
        path = self._paths.record(meeting.entity_id, RecordKind.MEETINGS, meeting.record_id)
        try:
            await retry_async(
                lambda: self._store.patch(path, {flag: True}),
                attempts=self._persist_attempts,
                backoff=self._backoff,
                description=f"patch {path}",
            )
        except StoreError as exc:
            failure = PersistenceRaceError(meeting.entity_id, meeting.record_id, flag, exc)
            logger.warning("%s; alert withheld until the next tick", failure)
            if self._on_persistence_failure is not None:
                self._on_persistence_failure(failure)
            return False
        return True

    def _emit(self, alert: Alert) -> None:
        logger.info("Meeting %s alert for %s/%s", alert.kind.value, alert.entity_id, alert.record_id)
        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception:  # noqa: BLE001
                logger.exception("Alert listener failed")

    def _forget_stale(self, now: datetime) -> None:
        view = self._meetings.view
        live = {
            self._memo_key(meeting, boundary)
            for meeting in view
            if self.state(meeting, now) is not MeetingState.TERMINAL
            for boundary in AlertKind
        }
        self._fired &= live


__all__ = [
    "NotificationScheduler",
    "MeetingState",
    "meeting_window",
    "REMINDER_FLAG",
    "START_FLAG",
    "utc_now",
]
