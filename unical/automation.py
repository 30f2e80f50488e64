"""JSON action dispatch for external automation clients."""
from __future__ import annotations

import logging
from typing import Any

from unical.calendar_service import CalendarService
from unical.errors import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_ACTIONS = ("create", "delete", "search", "get_subjects")
SEARCH_LIMIT = 50


def _create(service: CalendarService, payload: dict[str, Any]) -> dict[str, Any]:
    event = payload.get("event")
    if not isinstance(event, dict) or not event.get("summary") or not event.get("start"):
        raise ValidationError("Missing event details (summary, start)")
    record = service.add_event(
        summary=str(event["summary"]),
        start=event["start"],
        end=event.get("end") or None,
        location=str(event.get("location") or ""),
        description=str(event.get("description") or ""),
    )
    return {"success": True, "event": record.to_dict()}


def _delete(service: CalendarService, payload: dict[str, Any]) -> dict[str, Any]:
    event_id = str(payload.get("id") or "").strip()
    if not event_id:
        raise ValidationError("Missing event id")
    deleted = service.delete_event(event_id)
    return {"success": True, "deleted": deleted, "message": "Event deleted"}


def _search(service: CalendarService, payload: dict[str, Any]) -> dict[str, Any]:
    query = str(payload.get("query") or "")
    return {"events": [record.to_dict() for record in service.search(query, limit=SEARCH_LIMIT)]}


def _get_subjects(service: CalendarService, payload: dict[str, Any]) -> dict[str, Any]:
    return {"subjects": service.subjects()}


HANDLERS = {
    "create": _create,
    "delete": _delete,
    "search": _search,
    "get_subjects": _get_subjects,
}


def dispatch_action(service: CalendarService, payload: dict[str, Any]) -> dict[str, Any]:
    action = str((payload or {}).get("action") or "")
    handler = HANDLERS.get(action)
    if handler is None:
        raise ValidationError(f"Invalid action. Supported actions: {', '.join(SUPPORTED_ACTIONS)}.")
    logger.info("Automation action %s for user %s", action, service.user_id)
    return handler(service, payload)
