from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Iterable, Optional

from unical.errors import PublishError
from unical.event_store import EventStore
from unical.ics_codec import IcsEncoder
from unical.models import EventRecord, PublishConfig
from unical.object_store import ObjectStore

logger = logging.getLogger(__name__)


class PublishSync:
    """Keeps the public copy of a user's active schedule in the object store.

    Explicit calls (``publish``, ``regenerate``) run inline and raise
    ``PublishError``. Republishes after mutations run on one background
    thread; requests that arrive while it is busy collapse into a single
    further upload of whatever the store holds at that point.
    """

    def __init__(
        self,
        *,
        store: EventStore,
        object_store: ObjectStore,
        encoder: IcsEncoder,
        user_id: str,
        config: PublishConfig | None = None,
        key_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.object_store = object_store
        self.encoder = encoder
        self.user_id = user_id
        self.config = config or PublishConfig()
        self._key_factory = key_factory or self._random_key
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._trigger_event = threading.Event()
        self._progress = threading.Condition()
        self._requested = 0
        self._completed = 0

    def _random_key(self) -> str:
        return f"{self.config.key_prefix}{uuid.uuid4()}.ics"

    def current_key(self) -> str | None:
        return self.store.get_publish_key(self.user_id)

    def current_url(self) -> str | None:
        key = self.current_key()
        if not key:
            return None
        return self.object_store.get_public_url(key)

    def _upload(self, key: str, records: Iterable[EventRecord]) -> int:
        active = [record for record in records if record.is_active]
        payload = self.encoder.encode(active).encode("utf-8")
        self.object_store.upload(
            key,
            payload,
            content_type=self.config.content_type,
            upsert=True,
            cache_control=self.config.cache_control,
        )
        logger.info("Published %d events for user %s to %s", len(active), self.user_id, key)
        return len(active)

    def _active_records(self, records: Iterable[EventRecord] | None) -> list[EventRecord]:
        if records is None:
            return self.store.list_events(self.user_id, active=True)
        return list(records)

    def publish(
        self,
        active_records: Iterable[EventRecord] | None = None,
        existing_key: str | None = None,
    ) -> str:
        key = existing_key or self.current_key()
        if not key:
            # Persist before the first upload so a retry reuses the same link.
            key = self._key_factory()
            self.store.set_publish_key(self.user_id, key)
            logger.info("Minted publish key for user %s", self.user_id)
        self._upload(key, self._active_records(active_records))
        return self.object_store.get_public_url(key)

    def regenerate(
        self,
        existing_key: str | None = None,
        active_records: Iterable[EventRecord] | None = None,
    ) -> str:
        old_key = existing_key or self.current_key()
        new_key = self._key_factory()
        self._upload(new_key, self._active_records(active_records))
        self.store.set_publish_key(self.user_id, new_key)
        if old_key and old_key != new_key:
            try:
                self.object_store.remove(old_key)
            except PublishError as exc:
                logger.warning("Failed to delete old calendar file %s: %s", old_key, exc)
        return self.object_store.get_public_url(new_key)

    # Background republish

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="unical-publish-sync", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_republish(self) -> None:
        """Queue a background upload; it does nothing until the user has published once."""
        with self._progress:
            self._requested += 1
        self.start()
        self._trigger_event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every republish requested so far has run."""
        with self._progress:
            return self._progress.wait_for(lambda: self._completed >= self._requested, timeout=timeout)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._trigger_event.wait()
            self._trigger_event.clear()
            if self._stop_event.is_set():
                break
            with self._progress:
                target = self._requested
            self.republish_now()
            with self._progress:
                self._completed = max(self._completed, target)
                self._progress.notify_all()

    def republish_now(self) -> bool:
        key = None
        try:
            key = self.current_key()
            if not key:
                return False
            self._upload(key, self.store.list_events(self.user_id, active=True))
            return True
        except Exception:
            logger.exception("Background sync to %s failed", key)
            return False
