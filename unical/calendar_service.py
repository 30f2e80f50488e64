from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable

from unical.colorizer import subject_color
from unical.errors import StoreError, ValidationError
from unical.event_store import EventStore, SqliteEventStore
from unical.ics_codec import IcsDecoder, IcsEncoder
from unical.models import (
    ORIGIN_IMPORTED,
    ORIGIN_MANUAL,
    AppConfig,
    CalendarSnapshot,
    EventRecord,
    ImportResult,
    utc_now,
)
from unical.object_store import ObjectStore, build_object_store
from unical.publish_sync import PublishSync
from unical.reconciler import apply_edit, ids_for_summary, new_manual_event, reconcile_import
from unical.trash_ledger import TrashLedger

logger = logging.getLogger(__name__)


class CalendarService:
    """Owns one user's record set.

    Every mutation goes through this object. The in-memory copy is updated
    before the store write; when the write fails the copy is thrown away and
    reloaded from the store, the error is kept in ``last_error`` and the
    exception is re-raised. Successful mutations queue a background
    republish of the live feed.
    """

    def __init__(
        self,
        *,
        store: EventStore,
        object_store: ObjectStore,
        user_id: str,
        decoder: IcsDecoder | None = None,
        encoder: IcsEncoder | None = None,
        publisher: PublishSync | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.decoder = decoder or IcsDecoder()
        self.encoder = encoder or IcsEncoder()
        self.clock = clock
        self.trash = TrashLedger(store, user_id, clock=clock)
        self.publisher = publisher or PublishSync(
            store=store,
            object_store=object_store,
            encoder=self.encoder,
            user_id=user_id,
        )
        self.last_error: str | None = None
        self._lock = threading.RLock()
        self._records: dict[str, EventRecord] = {}
        self.refresh()

    @classmethod
    def from_config(cls, config: AppConfig, user_id: str | None = None) -> "CalendarService":
        store = SqliteEventStore(config.store.db_path)
        object_store = build_object_store(config.publish)
        encoder = IcsEncoder(config.codec)
        owner = user_id or config.user.user_id
        publisher = PublishSync(
            store=store,
            object_store=object_store,
            encoder=encoder,
            user_id=owner,
            config=config.publish,
        )
        return cls(
            store=store,
            object_store=object_store,
            user_id=owner,
            decoder=IcsDecoder(config.codec),
            encoder=encoder,
            publisher=publisher,
        )

    # Reads

    def refresh(self) -> CalendarSnapshot:
        records = self.store.list_events(self.user_id)
        with self._lock:
            self._records = {record.id: record for record in records}
        return self.snapshot()

    def snapshot(self) -> CalendarSnapshot:
        with self._lock:
            records = list(self._records.values())
            last_error = self.last_error
        return CalendarSnapshot.from_records(records, last_error=last_error)

    def get_event(self, event_id: str) -> EventRecord | None:
        with self._lock:
            record = self._records.get(event_id)
            return record.clone() if record else None

    def active_events(self) -> list[EventRecord]:
        return list(self.snapshot().active)

    def search(self, query: str = "", limit: int = 50) -> list[EventRecord]:
        return self.store.search_active(self.user_id, query=query, limit=limit)

    def subjects(self) -> list[str]:
        return self.store.active_summaries(self.user_id)

    def subject_hours(self) -> list[dict[str, Any]]:
        totals: dict[str, float] = defaultdict(float)
        for record in self.active_events():
            hours = (record.end - record.start).total_seconds() / 3600
            totals[record.summary or "Unknown"] += hours
        rows = [
            {"name": name, "hours": round(hours, 1), "color": subject_color(name)}
            for name, hours in totals.items()
        ]
        rows.sort(key=lambda item: item["hours"], reverse=True)
        return rows

    def export_ics(self) -> str:
        return self.encoder.encode(self.active_events())

    # Mutations

    def _write(self, action: str, optimistic: Callable[[], None], commit: Callable[[], Any]) -> Any:
        with self._lock:
            self.last_error = None
            optimistic()
            try:
                result = commit()
            except StoreError as exc:
                self.last_error = f"Failed to {action}: {exc}"
                logger.warning("Store write for %s failed; reloading user %s", action, self.user_id)
                self._reload_after_failure()
                raise
        if result:
            self.publisher.trigger_republish()
        return result

    def _reload_after_failure(self) -> None:
        try:
            self.refresh()
        except StoreError:
            logger.exception("Reload after failed write also failed for user %s", self.user_id)
            self._records = {}

    def add_event(
        self,
        *,
        summary: str,
        start: datetime | str | None,
        end: datetime | str | None = None,
        location: str = "",
        description: str = "",
    ) -> EventRecord:
        record = new_manual_event(
            summary=summary,
            start=start,
            end=end,
            location=location,
            description=description,
        )

        def optimistic() -> None:
            self._records[record.id] = record

        self._write("save event", optimistic, lambda: self.store.insert_events(self.user_id, [record]))
        return record.clone()

    def update_event(self, event_id: str, **changes: Any) -> EventRecord:
        with self._lock:
            current = self._records.get(event_id)
        if current is None:
            raise ValidationError(f"unknown event: {event_id}")
        outcome = apply_edit(current_event=current, change=changes)
        if not outcome.applied:
            return outcome.event

        def optimistic() -> None:
            self._records[event_id] = outcome.event

        self._write("update event", optimistic, lambda: self.store.update_event(self.user_id, outcome.event))
        return outcome.event.clone()

    def delete_event(self, event_id: str) -> bool:
        when = self.clock()

        def optimistic() -> None:
            record = self._records.get(event_id)
            if record is not None and record.is_active:
                self._records[event_id] = record.with_updates(tombstone=when)

        return self._write("delete event", optimistic, lambda: self.trash.delete(event_id))

    def restore_event(self, event_id: str) -> bool:
        def optimistic() -> None:
            record = self._records.get(event_id)
            if record is not None and not record.is_active:
                self._records[event_id] = record.with_updates(tombstone=None)

        return self._write("restore event", optimistic, lambda: self.trash.restore(event_id))

    def purge_event(self, event_id: str) -> bool:
        with self._lock:
            self.last_error = None
            record = self._records.get(event_id)
            if record is not None and not record.is_active:
                del self._records[event_id]
            try:
                return self.trash.purge(event_id)
            except StoreError as exc:
                self.last_error = f"Failed to permanently delete: {exc}"
                self._reload_after_failure()
                raise

    def delete_by_summary(self, summary: str) -> list[str]:
        when = self.clock()

        def optimistic() -> None:
            for event_id in ids_for_summary(self._records.values(), summary, active=True):
                self._records[event_id] = self._records[event_id].with_updates(tombstone=when)

        return self._write("delete events", optimistic, lambda: self.trash.delete_by_summary(summary))

    def restore_by_summary(self, summary: str) -> list[str]:
        def optimistic() -> None:
            for event_id in ids_for_summary(self._records.values(), summary, active=False):
                self._records[event_id] = self._records[event_id].with_updates(tombstone=None)

        return self._write("restore events", optimistic, lambda: self.trash.restore_by_summary(summary))

    def purge_by_summary(self, summary: str) -> list[str]:
        with self._lock:
            self.last_error = None
            for event_id in ids_for_summary(self._records.values(), summary, active=False):
                del self._records[event_id]
            try:
                return self.trash.purge_by_summary(summary)
            except StoreError as exc:
                self.last_error = f"Failed to permanently delete: {exc}"
                self._reload_after_failure()
                raise

    def clear_all(self) -> int:
        when = self.clock()

        def optimistic() -> None:
            for event_id, record in list(self._records.items()):
                if record.is_active:
                    self._records[event_id] = record.with_updates(tombstone=when)

        return self._write("clear events", optimistic, self.trash.clear_all)

    def import_ics(self, text: str) -> ImportResult:
        candidates = self.decoder.decode(text)
        with self._lock:
            self.last_error = None
            try:
                # Manual set is read fresh inside the lock, never from the cache.
                manual = self.store.list_events(self.user_id, origin=ORIGIN_MANUAL)
                imported = self.store.list_events(self.user_id, origin=ORIGIN_IMPORTED)
                plan = reconcile_import(candidates, manual, imported)
                self.store.delete_events(self.user_id, plan.to_delete_ids)
                self.store.insert_events(self.user_id, plan.to_insert)
            except StoreError as exc:
                self.last_error = f"Import failed: {exc}"
                logger.error("Import failed for user %s: %s", self.user_id, exc)
                self._reload_after_failure()
                raise
            self.refresh()
        logger.info(
            "Imported %d events for user %s (replaced %d, skipped %d manual)",
            len(plan.to_insert),
            self.user_id,
            len(plan.to_delete_ids),
            len(plan.skipped_uids),
        )
        self.publisher.trigger_republish()
        return ImportResult(
            decoded=len(candidates),
            inserted=len(plan.to_insert),
            replaced=len(plan.to_delete_ids),
            skipped_manual=plan.skipped_uids,
        )

    # Publishing

    def publish(self) -> str:
        return self.publisher.publish(self.active_events())

    def regenerate_link(self) -> str:
        return self.publisher.regenerate(active_records=self.active_events())

    def published_url(self) -> str | None:
        return self.publisher.current_url()

    def wait_for_publish(self, timeout: float | None = None) -> bool:
        return self.publisher.wait(timeout)

    def close(self) -> None:
        self.publisher.wait(timeout=30)
        self.publisher.stop()
