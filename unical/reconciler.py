from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from unical.colorizer import subject_color
from unical.errors import ValidationError
from unical.models import (
    DEFAULT_EVENT_DURATION,
    EDITABLE_FIELDS,
    ORIGIN_IMPORTED,
    ORIGIN_MANUAL,
    CandidateEvent,
    EventRecord,
    parse_iso_datetime,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


def _clean_text(value: Any) -> str:
    # Published feeds drop carriage returns and readers trim lines.
    return str(value or "").replace("\r", "").strip()


@dataclass
class ImportPlan:
    to_insert: list[EventRecord] = field(default_factory=list)
    to_delete_ids: list[str] = field(default_factory=list)
    skipped_uids: list[str] = field(default_factory=list)


@dataclass
class EditOutcome:
    applied: bool
    reason: str
    event: EventRecord
    changed_fields: list[str]


def reconcile_import(
    candidates: Iterable[CandidateEvent],
    current_manual: Iterable[EventRecord],
    current_imported: Iterable[EventRecord],
    id_factory: Callable[[], str] = _new_id,
) -> ImportPlan:
    """Plan a full replacement of the imported records.

    Candidates whose uid belongs to a manual record are dropped. Every
    existing imported record is deleted whether or not the new feed still
    carries it; running the same feed twice gives the same uid set.
    """
    manual_uids = {record.uid for record in current_manual}
    plan = ImportPlan()
    for candidate in candidates:
        if candidate.uid in manual_uids:
            plan.skipped_uids.append(candidate.uid)
            continue
        plan.to_insert.append(
            EventRecord(
                id=id_factory(),
                uid=candidate.uid,
                summary=candidate.summary,
                start=candidate.start,
                end=candidate.end,
                location=candidate.location or "",
                description=candidate.description or "",
                origin=ORIGIN_IMPORTED,
                color_key=subject_color(candidate.summary),
                tombstone=None,
            )
        )
    plan.to_delete_ids = [record.id for record in current_imported if record.origin == ORIGIN_IMPORTED]
    if plan.skipped_uids:
        logger.info("Import skipped %d candidates shadowed by manual events", len(plan.skipped_uids))
    return plan


def _validate_span(start: datetime | None, end: datetime | None) -> None:
    if start is None:
        raise ValidationError("start is required")
    if end is not None and end <= start:
        raise ValidationError("end must be after start")


def new_manual_event(
    *,
    summary: str,
    start: datetime | str | None,
    end: datetime | str | None = None,
    location: str = "",
    description: str = "",
    id_factory: Callable[[], str] = _new_id,
) -> EventRecord:
    summary_text = _clean_text(summary)
    if not summary_text:
        raise ValidationError("summary is required")
    try:
        start_dt = parse_iso_datetime(start)
        end_dt = parse_iso_datetime(end)
    except ValueError as exc:
        raise ValidationError(f"invalid datetime: {exc}") from exc
    _validate_span(start_dt, end_dt)
    start_dt = start_dt.replace(microsecond=0)
    end_dt = end_dt.replace(microsecond=0) if end_dt is not None else start_dt + DEFAULT_EVENT_DURATION
    return EventRecord(
        id=id_factory(),
        uid=id_factory(),
        summary=summary_text,
        start=start_dt,
        end=end_dt,
        location=_clean_text(location),
        description=_clean_text(description),
        origin=ORIGIN_MANUAL,
        color_key=subject_color(summary_text),
        tombstone=None,
    )


def apply_edit(*, current_event: EventRecord, change: dict[str, Any]) -> EditOutcome:
    if current_event.origin != ORIGIN_MANUAL:
        raise ValidationError("imported events are replaced by the next import and cannot be edited")

    parsed_datetimes: dict[str, datetime | None] = {}
    for name in ("start", "end"):
        if name not in change:
            continue
        try:
            parsed_datetimes[name] = parse_iso_datetime(change.get(name))
        except ValueError as exc:
            raise ValidationError(f"invalid {name}: {exc}") from exc
        if parsed_datetimes[name] is None:
            raise ValidationError(f"{name} cannot be empty")

    updated = current_event.clone()
    changed: list[str] = []
    for name in EDITABLE_FIELDS:
        if name not in change:
            continue
        if name in parsed_datetimes:
            new_value: Any = parsed_datetimes[name].replace(microsecond=0)
        else:
            new_value = _clean_text(change.get(name))
        if getattr(updated, name) != new_value:
            setattr(updated, name, new_value)
            changed.append(name)

    if not updated.summary:
        raise ValidationError("summary is required")
    _validate_span(updated.start, updated.end)
    if "summary" in changed:
        updated.color_key = subject_color(updated.summary)

    return EditOutcome(
        applied=bool(changed),
        reason="applied" if changed else "no_changes",
        event=updated,
        changed_fields=changed,
    )


def ids_for_summary(records: Iterable[EventRecord], summary: str, *, active: bool) -> list[str]:
    """Ids sharing ``summary`` whose tombstone state matches ``active``."""
    return [record.id for record in records if record.summary == summary and record.is_active == active]
