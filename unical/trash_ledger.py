from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from unical.event_store import EventStore
from unical.models import utc_now
from unical.reconciler import ids_for_summary

logger = logging.getLogger(__name__)


class TrashLedger:
    """Soft-delete, restore and purge transitions for one user's records.

    Active -> Tombstoned (delete), Tombstoned -> Active (restore),
    Tombstoned -> Purged (purge). Calls on a record that is not in the
    expected source state change nothing and return ``False``.
    """

    def __init__(
        self,
        store: EventStore,
        user_id: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.clock = clock

    def delete(self, event_id: str) -> bool:
        return self.store.tombstone_event(self.user_id, event_id, self.clock()) > 0

    def restore(self, event_id: str) -> bool:
        return self.store.restore_event(self.user_id, event_id) > 0

    def purge(self, event_id: str) -> bool:
        return self.store.purge_event(self.user_id, event_id) > 0

    def delete_by_summary(self, summary: str) -> list[str]:
        ids = ids_for_summary(self.store.list_events(self.user_id, active=True), summary, active=True)
        return [event_id for event_id in ids if self.delete(event_id)]

    def restore_by_summary(self, summary: str) -> list[str]:
        ids = ids_for_summary(self.store.list_events(self.user_id, active=False), summary, active=False)
        return [event_id for event_id in ids if self.restore(event_id)]

    def purge_by_summary(self, summary: str) -> list[str]:
        ids = ids_for_summary(self.store.list_events(self.user_id, active=False), summary, active=False)
        return [event_id for event_id in ids if self.purge(event_id)]

    def clear_all(self) -> int:
        count = self.store.tombstone_all(self.user_id, self.clock())
        logger.info("Moved %d events to trash for user %s", count, self.user_id)
        return count
