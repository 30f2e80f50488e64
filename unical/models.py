from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


ORIGIN_MANUAL = "manual"
ORIGIN_IMPORTED = "imported"
ORIGINS = {ORIGIN_MANUAL, ORIGIN_IMPORTED}

DEFAULT_EVENT_DURATION = timedelta(hours=1)
EDITABLE_FIELDS = ("summary", "location", "description", "start", "end")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


@dataclass
class CodecConfig:
    utc_offset_minutes: int = 480
    tzid: str = "Asia/Hong_Kong"
    prodid: str = "-//UniCal Manager//EN"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CodecConfig":
        data = data or {}
        offset = int(data.get("utc_offset_minutes", 480))
        # Real-world offsets stay within -12:00..+14:00.
        offset = max(-12 * 60, min(14 * 60, offset))
        return cls(
            utc_offset_minutes=offset,
            tzid=str(data.get("tzid", "Asia/Hong_Kong")).strip() or "Asia/Hong_Kong",
            prodid=str(data.get("prodid", "-//UniCal Manager//EN")).strip() or "-//UniCal Manager//EN",
        )

    @property
    def offset(self) -> timedelta:
        return timedelta(minutes=self.utc_offset_minutes)


@dataclass
class StoreConfig:
    db_path: str = "data/unical.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StoreConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/unical.db")).strip() or "data/unical.db")


@dataclass
class PublishConfig:
    backend: str = "local"
    bucket: str = "calendars"
    local_root: str = "data/published"
    public_base_url: str = ""
    key_prefix: str = "private-"
    content_type: str = "text/calendar"
    cache_control: str = "max-age=60"
    region: str = ""
    endpoint_url: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PublishConfig":
        data = data or {}
        backend = str(data.get("backend", "local")).strip().lower()
        if backend not in {"local", "s3"}:
            backend = "local"
        return cls(
            backend=backend,
            bucket=str(data.get("bucket", "calendars")).strip() or "calendars",
            local_root=str(data.get("local_root", "data/published")).strip() or "data/published",
            public_base_url=str(data.get("public_base_url", "")).strip().rstrip("/"),
            key_prefix=str(data.get("key_prefix", "private-")).strip(),
            content_type=str(data.get("content_type", "text/calendar")).strip() or "text/calendar",
            cache_control=str(data.get("cache_control", "max-age=60")).strip(),
            region=str(data.get("region", "")).strip(),
            endpoint_url=str(data.get("endpoint_url", "")).strip(),
            access_key_id=str(data.get("access_key_id", "")).strip(),
            secret_access_key=str(data.get("secret_access_key", "")).strip(),
        )


@dataclass
class UserConfig:
    user_id: str = "local-user"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "UserConfig":
        data = data or {}
        return cls(user_id=str(data.get("user_id", "local-user")).strip() or "local-user")


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(
            level=str(data.get("level", "INFO")).strip().upper() or "INFO",
            json=bool(data.get("json", True)),
        )


@dataclass
class AppConfig:
    codec: CodecConfig = field(default_factory=CodecConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    user: UserConfig = field(default_factory=UserConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            codec=CodecConfig.from_dict(data.get("codec")),
            store=StoreConfig.from_dict(data.get("store")),
            publish=PublishConfig.from_dict(data.get("publish")),
            user=UserConfig.from_dict(data.get("user")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CandidateEvent:
    """One VEVENT block that survived decoding."""

    uid: str
    summary: str
    start: datetime
    end: datetime
    location: str = ""
    description: str = ""


@dataclass
class EventRecord:
    id: str
    uid: str
    summary: str
    start: datetime
    end: datetime
    location: str = ""
    description: str = ""
    origin: str = ORIGIN_MANUAL
    color_key: str = ""
    tombstone: datetime | None = None

    @property
    def is_manual(self) -> bool:
        return self.origin == ORIGIN_MANUAL

    @property
    def is_active(self) -> bool:
        return self.tombstone is None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["tombstone"] = serialize_datetime(self.tombstone)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventRecord":
        origin = str(data.get("origin", ORIGIN_MANUAL) or ORIGIN_MANUAL)
        return cls(
            id=str(data["id"]),
            uid=str(data.get("uid", "") or ""),
            summary=str(data.get("summary", "") or ""),
            start=parse_iso_datetime(data.get("start")),
            end=parse_iso_datetime(data.get("end")),
            location=str(data.get("location", "") or ""),
            description=str(data.get("description", "") or ""),
            origin=origin if origin in ORIGINS else ORIGIN_MANUAL,
            color_key=str(data.get("color_key", "") or ""),
            tombstone=parse_iso_datetime(data.get("tombstone")),
        )

    def clone(self) -> "EventRecord":
        return EventRecord(
            id=self.id,
            uid=self.uid,
            summary=self.summary,
            start=self.start,
            end=self.end,
            location=self.location,
            description=self.description,
            origin=self.origin,
            color_key=self.color_key,
            tombstone=self.tombstone,
        )

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass(frozen=True)
class CalendarSnapshot:
    """Read-only view of one user's record set, split by tombstone state."""

    active: tuple[EventRecord, ...] = ()
    deleted: tuple[EventRecord, ...] = ()
    last_error: str | None = None

    @classmethod
    def from_records(
        cls,
        records: list[EventRecord],
        last_error: str | None = None,
    ) -> "CalendarSnapshot":
        ordered = sorted(records, key=lambda item: (item.start, item.summary, item.id))
        return cls(
            active=tuple(item.clone() for item in ordered if item.is_active),
            deleted=tuple(item.clone() for item in ordered if not item.is_active),
            last_error=last_error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [item.to_dict() for item in self.active],
            "deleted_events": [item.to_dict() for item in self.deleted],
            "error": self.last_error,
        }


@dataclass
class ImportResult:
    decoded: int
    inserted: int
    replaced: int
    skipped_manual: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "decoded": self.decoded,
            "inserted": self.inserted,
            "replaced": self.replaced,
            "skipped_manual": list(self.skipped_manual),
            "run_at": serialize_datetime(self.run_at),
        }
