"""FastAPI application exposing checklist, import/export, backup, and email APIs."""

from __future__ import annotations

import json
import logging
import queue
from collections.abc import AsyncIterator, Generator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

from fleetcheck.common.config import get_settings
from fleetcheck.common.errors import (
    ChecklistError,
    ChecklistNotFoundError,
    DuplicateKeyError,
    EmailError,
    FetchError,
    InvalidFormatError,
    OperationInProgressError,
    RemoteBackupError,
    TaskNotFoundError,
)
from fleetcheck.common.logging_setup import setup_logging
from fleetcheck.common.models import (
    ApiError,
    BackupRestoreRequest,
    Checklist,
    CreateChecklistRequest,
    CustomValueRequest,
    DateActionedRequest,
    ProgressReport,
    RenameRequest,
    SendEmailRequest,
    StatusUpdateRequest,
)
from fleetcheck.service.coordinator import EVENTS_CHANNEL, ChecklistCoordinator

logger = logging.getLogger(__name__)

_STATUS_CODES: dict[type[ChecklistError], int] = {
    ChecklistNotFoundError: 404,
    TaskNotFoundError: 404,
    DuplicateKeyError: 409,
    OperationInProgressError: 409,
    InvalidFormatError: 400,
    EmailError: 502,
    RemoteBackupError: 502,
    FetchError: 503,
}


def _status_for(exc: ChecklistError) -> int:
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 400


def get_coordinator(request: Request) -> ChecklistCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Checklist service is not initialized")
    return coordinator


def create_app(coordinator: ChecklistCoordinator | None = None) -> FastAPI:
    """Build the API. Without a coordinator one is wired from settings at startup."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "coordinator", None) is None:
            setup_logging(log_dir=settings.log_dir, console_level=settings.log_level)
            app.state.coordinator = ChecklistCoordinator.from_settings(settings)
        yield

    app = FastAPI(title="FleetCheck API", version="0.1.0", lifespan=lifespan)
    app.state.coordinator = coordinator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChecklistError)
    async def checklist_error_handler(request: Request, exc: ChecklistError) -> JSONResponse:
        body = ApiError(
            code=exc.code,
            message=exc.message,
            retryable=exc.retryable,
            details={"key": exc.key} if exc.key else {},
        )
        return JSONResponse(status_code=_status_for(exc), content=body.model_dump())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        body = ApiError(code="invalid_request", message=str(exc))
        return JSONResponse(status_code=400, content=body.model_dump())

    _register_routes(app)
    return app


def _checklist_body(checklist: Checklist) -> dict[str, Any]:
    return checklist.to_json_dict()


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "message": "FleetCheck API is running."}

    @app.post("/api/send-email")
    def send_email(
        request: SendEmailRequest,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, Any]:
        to = request.to if isinstance(request.to, list) else [request.to]
        return coordinator.send_email(sender=request.sender, to=to, subject=request.subject, body=request.body)

    @app.get("/api/template")
    def get_template(coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
        store = coordinator.store
        return {
            "tasks": [definition.to_json_dict() for definition in store.template],
            "phases": {phase: [d.task_id for d in defs] for phase, defs in store.phase_groups.items()},
        }

    @app.post("/api/catalog/reload")
    def reload_catalog(coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, int]:
        return {"tasks": coordinator.reload_catalog()}

    @app.get("/api/checklists")
    def list_checklists(coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
        return coordinator.list_checklists()

    @app.post("/api/checklists")
    def create_checklist(
        request: CreateChecklistRequest,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, Any]:
        return _checklist_body(coordinator.create_checklist(request.registration, request.switch_active))

    @app.get("/api/checklists/{key}")
    def get_checklist(key: str, coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
        return _checklist_body(coordinator.get_checklist(key))

    @app.delete("/api/checklists/{key}")
    def delete_checklist(key: str, coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, str]:
        return {"activeKey": coordinator.delete_checklist(key)}

    @app.post("/api/checklists/{key}/activate")
    def activate_checklist(key: str, coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
        return _checklist_body(coordinator.activate(key))

    @app.post("/api/checklists/{key}/reset")
    def reset_checklist(key: str, coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
        return _checklist_body(coordinator.reset_checklist(key))

    @app.patch("/api/checklists/{key}/header")
    def update_header(
        key: str,
        fields: dict[str, str] = Body(...),
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, Any]:
        new_key = coordinator.update_header(key, fields)
        return _checklist_body(coordinator.get_checklist(new_key))

    @app.post("/api/checklists/{key}/rename")
    def rename_checklist(
        key: str,
        request: RenameRequest,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, str]:
        return {"registration": coordinator.rename(key, request.new_registration)}

    @app.put("/api/checklists/{key}/tasks/{task_id}/status")
    def update_status(
        key: str,
        task_id: str,
        request: StatusUpdateRequest,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, Any]:
        if not coordinator.update_task_status(key, task_id, request.status):
            raise HTTPException(status_code=422, detail=f"Status not allowed for task {task_id}: {request.status}")
        checklist = coordinator.get_checklist(key)
        task = checklist.find_task(task_id)
        return {
            "task": task.to_json_dict() if task else None,
            "progress": coordinator.progress(key).to_json_dict(),
        }

    @app.put("/api/checklists/{key}/tasks/{task_id}/date")
    def update_date(
        key: str,
        task_id: str,
        request: DateActionedRequest,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, str]:
        coordinator.set_date_actioned(key, task_id, request.date_actioned)
        return {"status": "ok"}

    @app.put("/api/checklists/{key}/tasks/{task_id}/custom-value")
    def update_custom_value(
        key: str,
        task_id: str,
        request: CustomValueRequest,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, str]:
        coordinator.set_custom_value(key, task_id, request.value)
        return {"status": "ok"}

    @app.get("/api/checklists/{key}/progress", response_model=ProgressReport, response_model_by_alias=True)
    def get_progress(key: str, coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> ProgressReport:
        return coordinator.progress(key)

    @app.get("/api/checklists/{key}/export")
    def export_checklist(key: str, coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> Response:
        payload = coordinator.export_payload(key)
        filename = f"vehicle_{payload['header']['registration'] or 'NEW'}.json"
        return Response(
            content=json.dumps(payload, indent=2),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/import")
    async def import_checklist(
        file: UploadFile,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, Any]:
        content = await file.read()
        checklist = coordinator.import_file(content, source=file.filename or "upload")
        return _checklist_body(checklist)

    @app.get("/api/backups")
    def list_backups(coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, list[dict[str, str]]]:
        entries = coordinator.list_backups()
        return {"files": [{"name": entry.name, "path": entry.path} for entry in entries]}

    @app.post("/api/backups")
    def save_backup(
        key: str | None = None,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, Any]:
        target = key or coordinator.store.active_key
        if target is None:
            raise HTTPException(status_code=404, detail="No active checklist")
        return coordinator.save_backup(target)

    @app.post("/api/backups/restore")
    def restore_backup(
        request: BackupRestoreRequest,
        coordinator: ChecklistCoordinator = Depends(get_coordinator),
    ) -> dict[str, Any]:
        return _checklist_body(coordinator.restore_backup(request.path))

    @app.get("/api/activity")
    def activity(limit: int = 100, coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
        return {"events": coordinator.activity(limit)}

    @app.get("/api/events")
    def stream_events(coordinator: ChecklistCoordinator = Depends(get_coordinator)) -> StreamingResponse:
        bus = coordinator.event_bus
        events = bus.subscribe(EVENTS_CHANNEL)

        def gen() -> Generator[str, None, None]:
            try:
                while True:
                    try:
                        event = events.get(timeout=25)
                    except queue.Empty:
                        yield ": keepalive\n\n"
                        continue
                    yield f"data: {event}\n\n"
            finally:
                bus.unsubscribe(EVENTS_CHANNEL, events)

        return StreamingResponse(gen(), media_type="text/event-stream")


app = create_app()
