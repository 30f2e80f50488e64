"""Line-oriented iCalendar codec for schedule feeds.

Only the VEVENT subset the schedule needs is understood: ``UID``,
``SUMMARY``, ``LOCATION``, ``DESCRIPTION``, ``DTSTART`` and ``DTEND``.

Timezones are deliberately simplified. Values ending in ``Z`` are UTC; every
other value (including values tagged with a ``TZID`` parameter) is read as
wall-clock time in one fixed organizational offset taken from
:class:`~unical.models.CodecConfig`. There is no timezone database lookup.
Deployments for another organization change ``codec.utc_offset_minutes``.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, time, timezone
from typing import Any, Callable, Iterable

from icalendar.prop import vDate, vDatetime

from unical.errors import MalformedInput
from unical.models import DEFAULT_EVENT_DURATION, CandidateEvent, CodecConfig, _ensure_tz, utc_now

logger = logging.getLogger(__name__)

LINE_BREAK_PATTERN = re.compile(r"\r\n|\n|\r")
DATE_VALUE_PATTERN = re.compile(r"^(\d{8})(T\d{6})?(Z)?$")
UNESCAPE_PATTERN = re.compile(r"\\([,;nN\\])")
CRLF = "\r\n"

BEGIN_EVENT = "BEGIN:VEVENT"
END_EVENT = "END:VEVENT"
TEXT_KEYS = {"SUMMARY": "summary", "LOCATION": "location", "DESCRIPTION": "description"}


def unescape_text(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        char = match.group(1)
        if char in ("n", "N"):
            return "\n"
        return char

    return UNESCAPE_PATTERN.sub(_replace, value)


def escape_text(value: str | None) -> str:
    if not value:
        return ""
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\n", "\\n")
        .replace("\r", "")
    )


def parse_ics_datetime(value: str, config: CodecConfig) -> datetime:
    """Return the UTC instant for a ``YYYYMMDD[THHMMSS][Z]`` value."""
    text = value.strip()
    match = DATE_VALUE_PATTERN.match(text)
    if not match:
        raise MalformedInput(f"unsupported date-time value: {value!r}")
    digits = match.group(1) + (match.group(2) or "")
    try:
        if match.group(2):
            parsed = vDatetime.from_ical(digits)
        else:
            parsed = datetime.combine(vDate.from_ical(digits), time.min)
    except ValueError as exc:
        raise MalformedInput(f"invalid date-time value: {value!r}") from exc
    if not isinstance(parsed, datetime):
        raise MalformedInput(f"invalid date-time value: {value!r}")
    parsed = parsed.replace(tzinfo=None)
    if match.group(3):
        return parsed.replace(tzinfo=timezone.utc)
    return (parsed - config.offset).replace(tzinfo=timezone.utc)


def unfold_lines(text: str) -> list[str]:
    unfolded: list[str] = []
    for line in LINE_BREAK_PATTERN.split(text or ""):
        if line.startswith((" ", "\t")):
            if unfolded:
                unfolded[-1] += line.strip()
            continue
        unfolded.append(line.strip())
    return unfolded


def _value_separator(line: str) -> int:
    in_quotes = False
    for index, char in enumerate(line):
        if char == "\"":
            in_quotes = not in_quotes
        elif char == ":" and not in_quotes:
            return index
    return -1


def _split_content_line(line: str) -> tuple[str, str] | None:
    # Quoted parameter values such as TZID="(UTC+08:00) Hong Kong" may hold colons.
    separator = _value_separator(line)
    if separator == -1:
        return None
    key = line[:separator].split(";", 1)[0].strip().upper()
    return key, line[separator + 1 :]


class IcsDecoder:
    def __init__(self, config: CodecConfig | None = None) -> None:
        self.config = config or CodecConfig()

    def decode(self, text: str) -> list[CandidateEvent]:
        events: list[CandidateEvent] = []
        dropped = 0
        fields: dict[str, Any] | None = None
        # Components nested inside the open VEVENT, e.g. VALARM.
        nested = 0
        for line in unfold_lines(text):
            marker = line.upper()
            if marker == BEGIN_EVENT:
                if fields is not None:
                    dropped += 1
                    logger.debug("Dropping unterminated VEVENT block uid=%s", fields.get("uid"))
                fields = {}
                nested = 0
                continue
            if marker == END_EVENT:
                if fields is None:
                    continue
                event = self._build_event(fields)
                if event is None:
                    dropped += 1
                else:
                    events.append(event)
                fields = None
                nested = 0
                continue
            if fields is None:
                continue
            if marker.startswith("BEGIN:"):
                nested += 1
                continue
            if marker.startswith("END:"):
                nested = max(nested - 1, 0)
                continue
            if nested:
                continue
            parts = _split_content_line(line)
            if parts is None:
                continue
            self._apply_field(fields, *parts)
        if fields is not None:
            dropped += 1
        logger.info("Decoded %d events (%d blocks dropped)", len(events), dropped)
        return events

    def _apply_field(self, fields: dict[str, Any], key: str, value: str) -> None:
        if key == "UID":
            fields["uid"] = value
        elif key in TEXT_KEYS:
            fields[TEXT_KEYS[key]] = unescape_text(value)
        elif key in ("DTSTART", "DTEND"):
            try:
                fields[key.lower()] = parse_ics_datetime(value, self.config)
            except MalformedInput as exc:
                fields["malformed"] = str(exc)

    def _build_event(self, fields: dict[str, Any]) -> CandidateEvent | None:
        if fields.get("malformed"):
            logger.debug("Dropping VEVENT uid=%s: %s", fields.get("uid"), fields["malformed"])
            return None
        uid = fields.get("uid")
        start = fields.get("dtstart")
        summary = fields.get("summary")
        if not uid or start is None or not summary:
            logger.debug("Dropping VEVENT without uid, start or summary uid=%s", uid)
            return None
        end = fields.get("dtend") or start + DEFAULT_EVENT_DURATION
        return CandidateEvent(
            uid=uid,
            summary=summary,
            start=start,
            end=end,
            location=fields.get("location", ""),
            description=fields.get("description", ""),
        )


class IcsEncoder:
    def __init__(
        self,
        config: CodecConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or CodecConfig()
        self.clock = clock

    def format_local(self, value: datetime) -> str:
        local = _ensure_tz(value).astimezone(timezone.utc).replace(tzinfo=None) + self.config.offset
        return vDatetime(local.replace(microsecond=0)).to_ical().decode("ascii")

    def format_utc(self, value: datetime) -> str:
        stamp = _ensure_tz(value).astimezone(timezone.utc).replace(microsecond=0, tzinfo=None)
        return vDatetime(stamp).to_ical().decode("ascii") + "Z"

    def encode(self, records: Iterable[Any]) -> str:
        stamp = self.format_utc(self.clock())
        lines = [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            f"PRODID:{_single_line(self.config.prodid)}",
        ]
        count = 0
        for record in records:
            lines.extend(self._event_lines(record, stamp))
            count += 1
        lines.append("END:VCALENDAR")
        logger.debug("Encoded %d events", count)
        return CRLF.join(lines)

    def _event_lines(self, record: Any, stamp: str) -> list[str]:
        tzid = _single_line(self.config.tzid)
        end = record.end or record.start + DEFAULT_EVENT_DURATION
        lines = [
            BEGIN_EVENT,
            f"UID:{_single_line(record.uid)}",
            f"DTSTAMP:{stamp}",
            f"DTSTART;TZID={tzid}:{self.format_local(record.start)}",
            f"DTEND;TZID={tzid}:{self.format_local(end)}",
            f"SUMMARY:{escape_text(record.summary)}",
        ]
        if record.location:
            lines.append(f"LOCATION:{escape_text(record.location)}")
        if record.description:
            lines.append(f"DESCRIPTION:{escape_text(record.description)}")
        lines.append(END_EVENT)
        return lines


def _single_line(value: str) -> str:
    return LINE_BREAK_PATTERN.sub("", str(value or ""))


def decode(text: str, config: CodecConfig | None = None) -> list[CandidateEvent]:
    return IcsDecoder(config).decode(text)


def encode(records: Iterable[Any], config: CodecConfig | None = None) -> str:
    return IcsEncoder(config).encode(records)
