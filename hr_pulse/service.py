"""Core orchestration logic for HR Pulse."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, deque
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional
from zoneinfo import ZoneInfo

from .aggregator import Aggregator
from .config import Settings
from .db import Database
from .errors import InvariantViolation, PartialEntityFailure, PersistenceRaceError, StoreError
from .models import Alert, MergedView, Record, RecordKind, RosterEvent, leave_days, leave_range
from .registry import SubscriptionRegistry
from .retry import Backoff
from .roster import EntitySetTracker
from .scheduler import Clock, NotificationScheduler, START_FLAG, REMINDER_FLAG
from .store import RecordStore, StorePaths

logger = logging.getLogger(__name__)

ViewListener = Callable[[MergedView], None]
AlertListener = Callable[[Alert], None]

LEAVE_DECISIONS = {"approved": "approvedAt", "rejected": "rejectedAt"}
MEETING_FIELDS = ("title", "description", "date", "time", "duration", "type", "department", "meetingLink", "agenda")


class DashboardService:
    """High-level service that keeps the merged views live and exposes query helpers."""

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        database: Database,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.database = database
        self.paths = StorePaths(settings.admin_id)
        self.tz = ZoneInfo(settings.timezone)
        self._backoff = Backoff(base=settings.retry_base_seconds, cap=settings.retry_max_seconds)

        self.tracker = EntitySetTracker(store, self.paths.roster(), active_only=settings.roster_active_only)
        self.aggregators: Dict[RecordKind, Aggregator] = {
            kind: Aggregator(kind, tz=self.tz, on_violation=self._record_violation) for kind in RecordKind
        }
        self.registries: Dict[RecordKind, SubscriptionRegistry] = {
            kind: SubscriptionRegistry(
                store,
                kind,
                self.paths,
                self.aggregators[kind].on_entity_snapshot,
                max_attempts=settings.subscribe_max_attempts,
                backoff=self._backoff,
                on_failure=self._record_entity_failure,
                on_recovered=self._record_entity_recovered,
            )
            for kind in RecordKind
        }
        self.scheduler = NotificationScheduler(
            store,
            self.aggregators[RecordKind.MEETINGS],
            self.paths,
            clock=clock,
            lead=timedelta(minutes=settings.reminder_lead_minutes),
            interval=settings.notification_interval_seconds,
            persist_attempts=settings.persist_attempts,
            backoff=Backoff(base=min(settings.retry_base_seconds, 1.0), cap=5.0),
            on_persistence_failure=self._record_persistence_failure,
        )
        self.tracker.add_listener(self._on_roster_event)
        self.tracker.add_error_listener(self._on_roster_error)
        self.scheduler.on_alert(self._record_alert)

        self._degraded: Dict[RecordKind, Dict[str, str]] = {kind: {} for kind in RecordKind}
        self._violations: Deque[Dict[str, str]] = deque(maxlen=100)
        self._persistence_failures = 0
        self._roster_task: Optional[asyncio.Task[None]] = None
        self._started = False
        self._stopping = False

    # region Lifecycle
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stopping = False
        for registry in self.registries.values():
            registry.reopen()
        self._roster_task = asyncio.create_task(self._connect_roster(), name="roster-connect")
        timeout = self.settings.startup_timeout_seconds
        if not await self.tracker.wait_ready(timeout):
            logger.warning("Roster not loaded within %.1fs; continuing in the background", timeout)
        for registry in self.registries.values():
            if not await registry.wait_idle(timeout):
                logger.warning("%s subscriptions still pending after %.1fs", registry.kind.value, timeout)
        self.scheduler.start()
        logger.info("Dashboard service started for admin %s", self.settings.admin_id)

    async def stop(self) -> None:
        self._stopping = True
        roster_task, self._roster_task = self._roster_task, None
        if roster_task is not None and not roster_task.done():
            roster_task.cancel()
            try:
                await roster_task
            except asyncio.CancelledError:
                pass
        await self.scheduler.stop()
        self.tracker.stop()
        for registry in self.registries.values():
            registry.close()
        self._started = False

    async def _connect_roster(self, delay: float = 0.0) -> None:
        if delay:
            await asyncio.sleep(delay)
        attempt = 0
        while not self._stopping:
            attempt += 1
            try:
                await self.tracker.start()
                return
            except StoreError as exc:
                wait = self._backoff.delay(attempt)
                logger.warning("Roster subscription failed (attempt %s), retrying in %.1fs: %s", attempt, wait, exc)
                await asyncio.sleep(wait)

    def _on_roster_event(self, event: RosterEvent) -> None:
        for registry in self.registries.values():
            registry.handle(event)

    def _on_roster_error(self, exc: BaseException) -> None:
        self.database.record_diagnostic("roster", str(exc))
        if self._stopping or not self._started:
            return
        self._roster_task = asyncio.create_task(
            self._connect_roster(delay=self._backoff.delay(1)), name="roster-reconnect"
        )

    # endregion

    # region Views
    def get_merged_view(self, kind: RecordKind) -> MergedView:
        return self.aggregators[kind].view

    def on_merged_view_changed(self, kind: RecordKind, listener: ViewListener) -> Callable[[], None]:
        return self.aggregators[kind].subscribe(listener)

    def on_alert(self, listener: AlertListener) -> Callable[[], None]:
        return self.scheduler.on_alert(listener)

    def list_records(
        self,
        kind: RecordKind,
        *,
        status: Optional[str] = None,
        search: Optional[str] = None,
        day: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        names = {entity_id: entity.name for entity_id, entity in self.tracker.entities.items()}
        term = search.strip().lower() if search else ""
        now = self.scheduler.now()
        rows: List[Dict[str, Any]] = []
        for record in self.get_merged_view(kind):
            if status and str(record.get("status", "")).lower() != status.lower():
                continue
            name = str(record.get("employeeName") or names.get(record.entity_id, ""))
            if term and term not in name.lower() and term not in record.entity_id.lower():
                continue
            if day and not self._on_day(kind, record, day):
                continue
            row = record.to_dict()
            row["employeeName"] = name or None
            if kind is RecordKind.LEAVES:
                row["days"] = self._leave_days(record)
            elif kind is RecordKind.MEETINGS:
                row["notificationState"] = self.scheduler.state(record, now).value
            rows.append(row)
        return rows

    def get_summary(self, kind: RecordKind) -> Dict[str, Any]:
        view = self.get_merged_view(kind)
        by_status = Counter(str(record.get("status") or "unknown").lower() for record in view)
        return {
            "kind": kind.value,
            "version": view.version,
            "total": len(view),
            "entities": len(self.aggregators[kind].entities()),
            "by_status": dict(by_status),
        }

    def _on_day(self, kind: RecordKind, record: Record, day: date) -> bool:
        """Leaves match every day they cover; other records match the day of their ordering instant."""

        if kind is RecordKind.LEAVES:
            span = leave_range(record.data, self.tz)
            if span is not None:
                return span[0] <= day <= span[1]
        return record.instant.astimezone(self.tz).date() == day

    def _leave_days(self, record: Record) -> Optional[int]:
        span = leave_range(record.data, self.tz)
        return leave_days(*span) if span is not None else None

    # endregion

    # region Mutations
    def _require(self, kind: RecordKind, entity_id: str, record_id: str) -> Record:
        record = self.get_merged_view(kind).find(entity_id, record_id)
        if record is None:
            raise LookupError(f"{kind.value} record {entity_id}/{record_id} not found")
        return record

    async def decide_leave(self, entity_id: str, record_id: str, decision: str) -> None:
        if decision not in LEAVE_DECISIONS:
            raise ValueError(f"decision must be one of: {', '.join(LEAVE_DECISIONS)}")
        self._require(RecordKind.LEAVES, entity_id, record_id)
        await self.store.patch(
            self.paths.record(entity_id, RecordKind.LEAVES, record_id),
            {"status": decision, LEAVE_DECISIONS[decision]: datetime.now(timezone.utc).isoformat()},
        )

    async def schedule_meeting(self, entity_id: str, fields: Dict[str, Any]) -> str:
        if entity_id not in self.tracker.entities:
            raise LookupError(f"entity {entity_id} is not on the roster")
        if not fields.get("title") or not fields.get("date") or not fields.get("time"):
            raise ValueError("title, date and time are required")
        meeting_id = uuid.uuid4().hex
        value = {name: fields[name] for name in MEETING_FIELDS if fields.get(name) not in (None, "")}
        value.update(
            {
                "status": "scheduled",
                "createdAt": datetime.now(timezone.utc).isoformat(),
                REMINDER_FLAG: False,
                START_FLAG: False,
            }
        )
        await self.store.write(self.paths.record(entity_id, RecordKind.MEETINGS, meeting_id), value)
        return meeting_id

    async def cancel_meeting(self, entity_id: str, record_id: str) -> None:
        self._require(RecordKind.MEETINGS, entity_id, record_id)
        await self.store.patch(
            self.paths.record(entity_id, RecordKind.MEETINGS, record_id),
            {"status": "cancelled", "cancelledAt": datetime.now(timezone.utc).isoformat()},
        )

    async def delete_meeting(self, entity_id: str, record_id: str) -> None:
        self._require(RecordKind.MEETINGS, entity_id, record_id)
        await self.store.delete(self.paths.record(entity_id, RecordKind.MEETINGS, record_id))

    async def run_notifications(self) -> List[Alert]:
        return await self.scheduler.tick()

    # endregion

    # region Diagnostics
    def _record_alert(self, alert: Alert) -> None:
        self.database.record_alert(alert)

    def _record_violation(self, violation: InvariantViolation) -> None:
        self._violations.append(
            {
                "kind": violation.kind,
                "entityId": violation.entity_id,
                "recordId": violation.record_id,
                "reason": violation.reason,
            }
        )
        self.database.record_diagnostic(
            "invariant",
            violation.reason,
            record_kind=violation.kind,
            entity_id=violation.entity_id,
            record_id=violation.record_id,
        )

    def _record_entity_failure(self, failure: PartialEntityFailure) -> None:
        self._degraded[RecordKind(failure.kind)][failure.entity_id] = str(failure.cause)
        self.database.record_diagnostic(
            "entity",
            str(failure),
            record_kind=failure.kind,
            entity_id=failure.entity_id,
        )

    def _record_entity_recovered(self, kind: RecordKind, entity_id: str) -> None:
        self._degraded[kind].pop(entity_id, None)

    def _record_persistence_failure(self, failure: PersistenceRaceError) -> None:
        self._persistence_failures += 1
        self.database.record_diagnostic(
            "persistence",
            str(failure),
            record_kind=RecordKind.MEETINGS.value,
            entity_id=failure.entity_id,
            record_id=failure.record_id,
        )

    def recent_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.database.get_alerts(limit)]

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "roster": {
                "active": self.tracker.active,
                "error": str(self.tracker.error) if self.tracker.error else None,
                "entities": len(self.tracker.entities),
            },
            "degraded": {
                kind.value: dict(entities) for kind, entities in self._degraded.items() if entities
            },
            "subscriptions": {
                kind.value: {"registered": len(registry.registered()), "live": len(registry.live())}
                for kind, registry in self.registries.items()
            },
            "views": {kind.value: self.get_merged_view(kind).version for kind in RecordKind},
            "recent_violations": list(self._violations),
            "persistence_failures": self._persistence_failures,
            "scheduler_running": self.scheduler.running,
            "totals": self.database.count_diagnostics(),
            "recent_events": [dict(row) for row in self.database.get_diagnostics(limit=20)],
        }

    # endregion


__all__ = ["DashboardService", "LEAVE_DECISIONS"]
