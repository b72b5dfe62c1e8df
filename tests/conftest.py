from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from hr_pulse.config import Settings
from hr_pulse.errors import TransientStoreError
from hr_pulse.store import InMemoryRecordStore, StorePaths

ADMIN_ID = "admin-1"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FlakyStore:
    """Wraps the in-memory store and fails chosen operations on demand.

    ``subscribe_failures`` maps a path to how many subscribe calls should fail
    (-1 fails forever). ``patch_failures`` counts down failing patch calls.
    """

    def __init__(self, inner: InMemoryRecordStore) -> None:
        self.inner = inner
        self.subscribe_failures: Dict[str, int] = {}
        self.patch_failures = 0
        self.subscribe_calls: List[str] = []
        self.patch_calls: List[Tuple[str, Dict[str, Any]]] = []
        self._error_callbacks: Dict[str, Callable[[BaseException], None]] = {}

    async def subscribe(self, path, on_snapshot, on_error=None):
        self.subscribe_calls.append(path)
        remaining = self.subscribe_failures.get(path, 0)
        if remaining:
            if remaining > 0:
                self.subscribe_failures[path] = remaining - 1
            raise TransientStoreError("subscribe", path, "unavailable")
        subscription = await self.inner.subscribe(path, on_snapshot, on_error)
        if on_error is not None:
            self._error_callbacks[path] = on_error
        return subscription

    def fail_stream(self, path: str, exc: Optional[BaseException] = None) -> None:
        self._error_callbacks[path](exc or TransientStoreError("subscribe", path, "stream closed by server"))

    async def read(self, path):
        return await self.inner.read(path)

    async def patch(self, path, fields):
        self.patch_calls.append((path, dict(fields)))
        if self.patch_failures:
            self.patch_failures -= 1
            raise TransientStoreError("patch", path, "unavailable")
        await self.inner.patch(path, fields)

    async def write(self, path, value):
        await self.inner.write(path, value)

    async def delete(self, path):
        await self.inner.delete(path)


def seed(employees: Dict[str, Any]) -> InMemoryRecordStore:
    return InMemoryRecordStore({"users": {ADMIN_ID: {"employees": employees}}})


@pytest.fixture
def paths() -> StorePaths:
    return StorePaths(ADMIN_ID)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        admin_id=ADMIN_ID,
        api_key="secret-key",
        store_backend="memory",
        database_path=tmp_path / "hr_pulse.db",
        notification_interval_seconds=3600.0,
        retry_base_seconds=0.0,
        retry_max_seconds=0.0,
        subscribe_max_attempts=3,
        persist_attempts=2,
        startup_timeout_seconds=2.0,
    )
