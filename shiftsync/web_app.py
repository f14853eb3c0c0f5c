from __future__ import annotations

import json
import logging
import os
import queue
from typing import Any, Iterator

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from shiftsync.access import AccessPolicy
from shiftsync.config_manager import ConfigManager
from shiftsync.errors import SyncError
from shiftsync.events import ChangeBroadcaster
from shiftsync.models import Failed
from shiftsync.registry import ExternalSyncRegistry
from shiftsync.scheduler import AutoSyncScheduler
from shiftsync.state_store import StateStore
from shiftsync.sync_engine import SyncEngine, SyncGate

logger = logging.getLogger(__name__)

FAILURE_STATUS = {
    "busy": 409,
    "not_found": 404,
    "transient": 502,
    "content": 400,
    "security": 400,
    "validation": 400,
}
STREAM_KEEPALIVE_SECONDS = 15


class ExternalSyncCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    calendar_id: Any = Field(default=None, alias="calendarId")
    name: Any = None
    calendar_url: Any = Field(default=None, alias="calendarUrl")
    ics_content: Any = Field(default=None, alias="icsContent")
    sync_type: Any = Field(default=None, alias="syncType")
    color: Any = None
    display_mode: Any = Field(default=None, alias="displayMode")
    auto_sync_interval: Any = Field(default=None, alias="autoSyncInterval")
    is_hidden: Any = Field(default=None, alias="isHidden")
    hide_from_stats: Any = Field(default=None, alias="hideFromStats")


class ExternalSyncUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Any = None
    calendar_url: Any = Field(default=None, alias="calendarUrl")
    color: Any = None
    display_mode: Any = Field(default=None, alias="displayMode")
    auto_sync_interval: Any = Field(default=None, alias="autoSyncInterval")
    is_hidden: Any = Field(default=None, alias="isHidden")
    hide_from_stats: Any = Field(default=None, alias="hideFromStats")


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.broadcaster = ChangeBroadcaster()
        self.sync_engine = SyncEngine(
            self.config_manager,
            self.state_store,
            broadcaster=self.broadcaster,
            gate=SyncGate(),
        )
        self.registry = ExternalSyncRegistry(
            self.state_store,
            self.broadcaster,
            security_provider=lambda: self.config_manager.load().security,
        )
        self.scheduler = AutoSyncScheduler(self.sync_engine, self.state_store, self.config_manager)


def _http_error(exc: SyncError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _require_calendar_id(calendar_id: str | None) -> str:
    value = str(calendar_id or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail="Calendar ID is required")
    return value


def create_app() -> FastAPI:
    config_path = os.getenv("SHIFTSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("SHIFTSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Shiftsync", version="0.1.0")
    app.state.context = context

    def _authorize(request: Request, calendar_id: str) -> str | None:
        policy = AccessPolicy(app.state.context.config_manager.load().auth)
        user_id = policy.authenticate(request.headers)
        if policy.config.enabled and user_id is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        if not policy.can_edit(user_id, calendar_id):
            raise HTTPException(status_code=403, detail="Insufficient permissions. Write access required.")
        return user_id

    def _load_sync(sync_id: str) -> Any:
        try:
            return app.state.context.registry.get(sync_id)
        except SyncError as exc:
            raise _http_error(exc) from exc

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"status": "ok", "scheduler": app.state.context.scheduler.running}

    @app.get("/api/config")
    def get_config(request: Request) -> dict[str, Any]:
        manager = app.state.context.config_manager
        policy = AccessPolicy(manager.load().auth)
        if policy.config.enabled and policy.authenticate(request.headers) is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        return {"config": manager.masked()}

    @app.get("/api/external-syncs")
    def list_external_syncs(
        request: Request,
        calendar_id: str | None = Query(default=None, alias="calendarId"),
    ) -> list[dict[str, Any]]:
        calendar_id = _require_calendar_id(calendar_id)
        _authorize(request, calendar_id)
        return [record.to_dict() for record in app.state.context.registry.list_for_calendar(calendar_id)]

    @app.post("/api/external-syncs", status_code=201)
    def create_external_sync(request: Request, body: ExternalSyncCreateRequest) -> dict[str, Any]:
        payload = body.model_dump(by_alias=True, exclude_unset=True)
        calendar_id = str(payload.get("calendarId") or "").strip()
        if calendar_id:
            _authorize(request, calendar_id)
        try:
            created = app.state.context.registry.create(payload)
        except SyncError as exc:
            raise _http_error(exc) from exc

        if not created.is_one_time_import:
            return created.to_dict()
        result = app.state.context.sync_engine.run(created.id, trigger="import")
        refreshed = app.state.context.state_store.get_external_sync(created.id) or created
        output = refreshed.to_dict()
        output["importResult"] = result.to_dict()
        return output

    @app.get("/api/external-syncs/{sync_id}")
    def get_external_sync(request: Request, sync_id: str) -> dict[str, Any]:
        record = _load_sync(sync_id)
        _authorize(request, record.calendar_id)
        return record.to_dict()

    @app.patch("/api/external-syncs/{sync_id}")
    def update_external_sync(request: Request, sync_id: str, body: ExternalSyncUpdateRequest) -> dict[str, Any]:
        record = _load_sync(sync_id)
        _authorize(request, record.calendar_id)
        try:
            updated = app.state.context.registry.update(
                sync_id, body.model_dump(by_alias=True, exclude_unset=True)
            )
        except SyncError as exc:
            raise _http_error(exc) from exc
        return updated.to_dict()

    @app.delete("/api/external-syncs/{sync_id}")
    def delete_external_sync(request: Request, sync_id: str) -> dict[str, Any]:
        record = _load_sync(sync_id)
        _authorize(request, record.calendar_id)
        if app.state.context.sync_engine.gate.is_syncing(sync_id):
            raise HTTPException(status_code=409, detail="Sync in progress, try again shortly")
        try:
            deleted_shifts = app.state.context.registry.delete(sync_id)
        except SyncError as exc:
            raise _http_error(exc) from exc
        return {"success": True, "deletedShifts": deleted_shifts}

    @app.post("/api/external-syncs/{sync_id}/sync")
    def trigger_sync(request: Request, sync_id: str) -> dict[str, Any]:
        record = _load_sync(sync_id)
        _authorize(request, record.calendar_id)
        result = app.state.context.scheduler.trigger_manual(sync_id)
        if isinstance(result, Failed):
            raise HTTPException(status_code=FAILURE_STATUS.get(result.kind, 500), detail=result.message)
        return {"success": True, "stats": result.to_dict()}

    @app.get("/api/shifts")
    def list_shifts(
        request: Request,
        calendar_id: str | None = Query(default=None, alias="calendarId"),
    ) -> list[dict[str, Any]]:
        calendar_id = _require_calendar_id(calendar_id)
        _authorize(request, calendar_id)
        return [shift.to_dict() for shift in app.state.context.state_store.list_shifts(calendar_id)]

    @app.get("/api/sync-logs")
    def list_sync_logs(
        request: Request,
        calendar_id: str | None = Query(default=None, alias="calendarId"),
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        calendar_id = _require_calendar_id(calendar_id)
        _authorize(request, calendar_id)
        return app.state.context.state_store.list_sync_logs(calendar_id, limit=limit)

    @app.patch("/api/sync-logs")
    def update_sync_logs(
        request: Request,
        calendar_id: str | None = Query(default=None, alias="calendarId"),
        action: str = "",
    ) -> dict[str, Any]:
        calendar_id = _require_calendar_id(calendar_id)
        _authorize(request, calendar_id)
        if action != "markErrorsAsRead":
            raise HTTPException(status_code=400, detail="Invalid action")
        updated = app.state.context.state_store.mark_error_logs_read(calendar_id)
        return {"success": True, "updated": updated}

    @app.delete("/api/sync-logs")
    def delete_sync_logs(
        request: Request,
        calendar_id: str | None = Query(default=None, alias="calendarId"),
    ) -> dict[str, Any]:
        calendar_id = _require_calendar_id(calendar_id)
        _authorize(request, calendar_id)
        deleted = app.state.context.state_store.delete_sync_logs(calendar_id)
        return {"success": True, "deleted": deleted}

    @app.get("/api/events/stream")
    def event_stream(
        request: Request,
        calendar_id: str | None = Query(default=None, alias="calendarId"),
    ) -> StreamingResponse:
        calendar_id = _require_calendar_id(calendar_id)
        _authorize(request, calendar_id)
        broadcaster: ChangeBroadcaster = app.state.context.broadcaster
        subscriber = broadcaster.subscribe(calendar_id)

        def _generate() -> Iterator[str]:
            try:
                yield "retry: 5000\n\n"
                while True:
                    try:
                        event = subscriber.get(timeout=STREAM_KEEPALIVE_SECONDS)
                    except queue.Empty:
                        yield ": keepalive\n\n"
                        continue
                    yield f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
            finally:
                broadcaster.unsubscribe(calendar_id, subscriber)
                logger.debug("Event stream for calendar %s closed", calendar_id)

        return StreamingResponse(_generate(), media_type="text/event-stream")

    return app
