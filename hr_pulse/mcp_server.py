"""MCP server exposing HR Pulse views and notifications as tools."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .api import build_store
from .config import load_settings
from .db import Database
from .models import RecordKind
from .service import DashboardService

mcp = FastMCP("hr-pulse")

_settings = load_settings()
_database = Database(_settings.database_path)
_store = build_store(_settings)
_service = DashboardService(_settings, _store, _database)
_start_lock = asyncio.Lock()


async def _ensure_started() -> None:
    async with _start_lock:
        await _service.start()


def _ensure_kind(kind: str) -> RecordKind:
    try:
        return RecordKind(kind)
    except ValueError as exc:
        raise ValueError(f"kind must be one of: {', '.join(k.value for k in RecordKind)}") from exc


@mcp.tool()
async def get_merged_view(
    kind: str,
    status: Optional[str] = None,
    search: Optional[str] = None,
    date: Optional[str] = None,
) -> dict:
    """Return the merged, sorted records of one kind (attendance, leaves or meetings)."""

    record_kind = _ensure_kind(kind)
    day = datetime.strptime(date, "%Y-%m-%d").date() if date else None
    await _ensure_started()
    view = _service.get_merged_view(record_kind)
    return {
        "kind": record_kind.value,
        "version": view.version,
        "records": _service.list_records(record_kind, status=status, search=search, day=day),
    }


@mcp.tool()
async def get_summary(kind: str) -> dict:
    """Return totals and per-status counts for one record kind."""

    record_kind = _ensure_kind(kind)
    await _ensure_started()
    return _service.get_summary(record_kind)


@mcp.tool()
async def get_recent_alerts(limit: int = 20) -> dict:
    """Return the most recent meeting alerts."""

    await _ensure_started()
    return {"alerts": _service.recent_alerts(limit)}


@mcp.tool()
async def get_diagnostics() -> dict:
    """Return subscription health, degraded entities and recent invariant violations."""

    await _ensure_started()
    return _service.diagnostics()


__all__ = [
    "mcp",
    "get_merged_view",
    "get_summary",
    "get_recent_alerts",
    "get_diagnostics",
]
