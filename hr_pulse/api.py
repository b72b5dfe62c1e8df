"""FastAPI application exposing the HR Pulse REST API."""

from __future__ import annotations

import asyncio
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from .config import Settings, load_settings
from .db import Database
from .errors import StoreError, TransientStoreError
from .firebase_client import FirebaseRecordStore
from .models import Alert, MergedView, RecordKind
from .scheduler import Clock
from .service import DashboardService
from .store import InMemoryRecordStore, RecordStore


class MeetingIn(BaseModel):
    title: str = Field(min_length=1)
    date: str
    time: str
    duration: int = Field(default=60, ge=0)
    description: str = ""
    type: str = "common"
    department: str = ""
    meetingLink: str = ""
    agenda: str = ""


def build_store(settings: Settings) -> RecordStore:
    if settings.store_backend == "memory":
        return InMemoryRecordStore()
    if not settings.store_url:
        raise RuntimeError("STORE_URL must be configured for the firebase backend")
    return FirebaseRecordStore(settings.store_url, settings.store_auth_token)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[RecordStore] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or load_settings()
    store = store or build_store(settings)
    database = Database(settings.database_path)
    service = DashboardService(settings, store, database, clock=clock)

    async def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> None:
        if x_api_key != settings.api_key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")

    def kind_dependency(kind: str) -> RecordKind:
        try:
            return RecordKind(kind)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=f"unknown record kind {kind!r}") from exc

    def date_dependency(date_param: Optional[str] = Query(None, alias="date")) -> Optional[date]:
        if not date_param:
            return None
        try:
            return datetime.strptime(date_param, "%Y-%m-%d").date()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD") from exc

    async def guarded(operation: Callable[[], Any]) -> Any:
        try:
            return await operation()
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except TransientStoreError as exc:
            raise HTTPException(status_code=503, detail="record store unavailable, try again") from exc
        except StoreError as exc:
            raise HTTPException(status_code=502, detail=exc.detail) from exc

    app = FastAPI(title="HR Pulse API", version="1.0.0")
    app.state.service = service

    @app.on_event("startup")
    async def startup_event() -> None:
        await service.start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await service.stop()
        if isinstance(store, FirebaseRecordStore):
            await store.close()

    def get_service() -> DashboardService:
        return service

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/views/{kind}")
    async def get_view(
        kind: RecordKind = Depends(kind_dependency),
        status_param: Optional[str] = Query(None, alias="status"),
        search: Optional[str] = None,
        day: Optional[date] = Depends(date_dependency),
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> dict[str, object]:
        view = svc.get_merged_view(kind)
        records = svc.list_records(kind, status=status_param, search=search, day=day)
        return {"kind": kind.value, "version": view.version, "records": records}

    @app.get("/api/summary/{kind}")
    async def get_summary(
        kind: RecordKind = Depends(kind_dependency),
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> dict[str, object]:
        return svc.get_summary(kind)

    @app.post("/api/leaves/{entity_id}/{record_id}/{decision}", status_code=status.HTTP_204_NO_CONTENT)
    async def decide_leave(
        entity_id: str,
        record_id: str,
        decision: str,
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> Response:
        mapped = {"approve": "approved", "reject": "rejected"}.get(decision)
        if mapped is None:
            raise HTTPException(status_code=404, detail="decision must be approve or reject")
        await guarded(lambda: svc.decide_leave(entity_id, record_id, mapped))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/meetings/{entity_id}", status_code=status.HTTP_201_CREATED)
    async def schedule_meeting(
        entity_id: str,
        meeting: MeetingIn,
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> dict[str, object]:
        meeting_id = await guarded(lambda: svc.schedule_meeting(entity_id, meeting.model_dump()))
        return {"entityId": entity_id, "id": meeting_id}

    @app.post("/api/meetings/{entity_id}/{record_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
    async def cancel_meeting(
        entity_id: str,
        record_id: str,
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> Response:
        await guarded(lambda: svc.cancel_meeting(entity_id, record_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/api/meetings/{entity_id}/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_meeting(
        entity_id: str,
        record_id: str,
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> Response:
        await guarded(lambda: svc.delete_meeting(entity_id, record_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/notifications/tick")
    async def run_notifications(
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> dict[str, object]:
        alerts = await svc.run_notifications()
        return {"alerts": [alert.to_dict() for alert in alerts]}

    @app.get("/api/alerts")
    async def get_alerts(
        limit: int = Query(50, ge=1, le=500),
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> dict[str, List[Dict[str, Any]]]:
        return {"alerts": svc.recent_alerts(limit)}

    @app.get("/api/diagnostics")
    async def get_diagnostics(
        _: None = Depends(verify_api_key),
        svc: DashboardService = Depends(get_service),
    ) -> dict[str, object]:
        return svc.diagnostics()

    @app.websocket("/ws/events")
    async def events(websocket: WebSocket, api_key: str = Query("")) -> None:
        if api_key != settings.api_key:
            await websocket.close(code=4401)
            return
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

        def on_view(view: MergedView) -> None:
            queue.put_nowait({"type": "view", "kind": view.kind.value, "version": view.version, "total": len(view)})

        def on_alert(alert: Alert) -> None:
            queue.put_nowait({"type": "alert", **alert.to_dict()})

        unsubscribers = [service.on_merged_view_changed(kind, on_view) for kind in RecordKind]
        unsubscribers.append(service.on_alert(on_alert))

        async def pump() -> None:
            while True:
                await websocket.send_json(await queue.get())

        await websocket.accept()
        sender = asyncio.create_task(pump())
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            for unsubscribe in unsubscribers:
                unsubscribe()

    return app


__all__ = ["create_app", "build_store", "MeetingIn"]
