from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from unical.automation import dispatch_action
from unical.calendar_service import CalendarService
from unical.config_manager import ConfigManager
from unical.errors import PublishError, StoreError, ValidationError

logger = logging.getLogger(__name__)

EXPORT_FILENAME = "university_schedule.ics"


class EventCreateRequest(BaseModel):
    summary: str = Field(min_length=1, max_length=500)
    start: str
    end: str | None = None
    location: str = ""
    description: str = ""


class EventUpdateRequest(BaseModel):
    summary: str | None = None
    start: str | None = None
    end: str | None = None
    location: str | None = None
    description: str | None = None


class SummaryRequest(BaseModel):
    summary: str


class ImportRequest(BaseModel):
    content: str


class AutomationRequest(BaseModel):
    action: str = ""
    event: dict[str, Any] | None = None
    id: str | None = None
    query: str | None = None


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.service = CalendarService.from_config(self.config_manager.resolved())


def create_app() -> FastAPI:
    config_path = os.getenv("UNICAL_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)

    app = FastAPI(title="UniCal Manager", version="0.1.0")
    app.state.context = context

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.service.close()

    @app.exception_handler(ValidationError)
    def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(StoreError)
    def _store_error(request: Request, exc: StoreError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(PublishError)
    def _publish_error(request: Request, exc: PublishError) -> JSONResponse:
        logger.error("Publish request failed: %s", exc)
        return JSONResponse(status_code=502, content={"error": str(exc)})

    def service() -> CalendarService:
        return app.state.context.service

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/events")
    def list_events() -> dict[str, Any]:
        return service().snapshot().to_dict()

    @app.post("/api/events")
    def create_event(request: EventCreateRequest) -> dict[str, Any]:
        record = service().add_event(
            summary=request.summary,
            start=request.start,
            end=request.end,
            location=request.location,
            description=request.description,
        )
        return {"event": record.to_dict()}

    @app.put("/api/events/{event_id}")
    def update_event(event_id: str, request: EventUpdateRequest) -> dict[str, Any]:
        changes = {key: value for key, value in request.model_dump().items() if value is not None}
        if service().get_event(event_id) is None:
            raise HTTPException(status_code=404, detail="event not found")
        record = service().update_event(event_id, **changes)
        return {"event": record.to_dict()}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str) -> dict[str, Any]:
        return {"deleted": service().delete_event(event_id)}

    @app.post("/api/events/{event_id}/restore")
    def restore_event(event_id: str) -> dict[str, Any]:
        return {"restored": service().restore_event(event_id)}

    @app.delete("/api/trash/{event_id}")
    def purge_event(event_id: str) -> dict[str, Any]:
        return {"purged": service().purge_event(event_id)}

    @app.post("/api/events/by-summary/delete")
    def delete_by_summary(request: SummaryRequest) -> dict[str, Any]:
        return {"deleted": service().delete_by_summary(request.summary)}

    @app.post("/api/events/by-summary/restore")
    def restore_by_summary(request: SummaryRequest) -> dict[str, Any]:
        return {"restored": service().restore_by_summary(request.summary)}

    @app.post("/api/events/clear")
    def clear_events() -> dict[str, Any]:
        return {"cleared": service().clear_all()}

    @app.post("/api/import")
    def import_calendar(request: ImportRequest) -> dict[str, Any]:
        result = service().import_ics(request.content)
        return {"message": "import completed", "result": result.to_dict()}

    @app.get("/api/export")
    def export_calendar() -> Response:
        return Response(
            content=service().export_ics(),
            media_type="text/calendar",
            headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
        )

    @app.get("/api/publish")
    def published_link() -> dict[str, Any]:
        return {"url": service().published_url()}

    @app.post("/api/publish")
    def publish() -> dict[str, Any]:
        return {"url": service().publish()}

    @app.post("/api/publish/regenerate")
    def regenerate_link() -> dict[str, Any]:
        return {"url": service().regenerate_link()}

    @app.get("/feeds/{key}")
    def serve_feed(key: str) -> Response:
        current = service().publisher.current_key()
        if not current or key != current:
            raise HTTPException(status_code=404, detail="feed not found")
        try:
            data = service().publisher.object_store.download(key)
        except PublishError as exc:
            logger.warning("Feed %s is not in the object store: %s", key, exc)
            raise HTTPException(status_code=404, detail="feed not found") from exc
        return Response(content=data, media_type="text/calendar")

    @app.get("/api/analytics")
    def analytics() -> dict[str, Any]:
        return {"subjects": service().subject_hours()}

    @app.post("/api/automation")
    def automation(request: AutomationRequest) -> dict[str, Any]:
        return dispatch_action(service(), request.model_dump())

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        # Storage and codec settings are read at startup.
        return {"message": "config updated; restart to apply", "config": app.state.context.config_manager.masked()}

    return app

