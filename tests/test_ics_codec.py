import unittest
from datetime import datetime, timedelta, timezone

from unical.ics_codec import IcsDecoder, IcsEncoder, escape_text, parse_ics_datetime, unescape_text
from unical.errors import MalformedInput
from unical.models import CodecConfig, EventRecord, ORIGIN_IMPORTED


FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _record(uid: str, summary: str, **kwargs) -> EventRecord:
    start = kwargs.pop("start", datetime(2024, 9, 1, 1, 0, tzinfo=timezone.utc))
    return EventRecord(
        id=f"id-{uid}",
        uid=uid,
        summary=summary,
        start=start,
        end=kwargs.pop("end", start + timedelta(hours=2)),
        origin=ORIGIN_IMPORTED,
        **kwargs,
    )


class DecoderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.decoder = IcsDecoder(CodecConfig())

    def test_single_block_defaults_end_to_one_hour(self) -> None:
        text = "BEGIN:VEVENT\nUID:a1\nSUMMARY:COMP3122 Lecture\nDTSTART:20240901T090000Z\nEND:VEVENT"
        events = self.decoder.decode(text)
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.uid, "a1")
        self.assertEqual(event.summary, "COMP3122 Lecture")
        self.assertEqual(event.start, datetime(2024, 9, 1, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(event.end, event.start + timedelta(hours=1))
        self.assertEqual(event.location, "")
        self.assertEqual(event.description, "")

    def test_floating_time_uses_organization_offset(self) -> None:
        text = (
            "BEGIN:VCALENDAR\r\n"
            "BEGIN:VEVENT\r\n"
            "UID:a2\r\n"
            "SUMMARY:Tutorial\r\n"
            "DTSTART;TZID=Asia/Hong_Kong:20240901T090000\r\n"
            "DTEND:20240901T103000\r\n"
            "END:VEVENT\r\n"
            "END:VCALENDAR"
        )
        event = self.decoder.decode(text)[0]
        self.assertEqual(event.start, datetime(2024, 9, 1, 1, 0, tzinfo=timezone.utc))
        self.assertEqual(event.end, datetime(2024, 9, 1, 2, 30, tzinfo=timezone.utc))

    def test_offset_is_configurable(self) -> None:
        decoder = IcsDecoder(CodecConfig(utc_offset_minutes=-300))
        text = "BEGIN:VEVENT\nUID:x\nSUMMARY:Standup\nDTSTART:20240901T090000\nEND:VEVENT"
        event = decoder.decode(text)[0]
        self.assertEqual(event.start, datetime(2024, 9, 1, 14, 0, tzinfo=timezone.utc))

    def test_date_only_value_is_local_midnight(self) -> None:
        text = "BEGIN:VEVENT\nUID:d1\nSUMMARY:Holiday\nDTSTART;VALUE=DATE:20240901\nEND:VEVENT"
        event = self.decoder.decode(text)[0]
        self.assertEqual(event.start, datetime(2024, 8, 31, 16, 0, tzinfo=timezone.utc))

    def test_unfolds_continuation_lines(self) -> None:
        text = (
            "BEGIN:VEVENT\r\n"
            "UID:f1\r\n"
            "SUMMARY:Long\r\n"
            "DESCRIPTION:First part\r\n"
            " second part\r\n"
            "\tthird\r\n"
            "DTSTART:20240901T090000Z\r\n"
            "END:VEVENT\r\n"
        )
        event = self.decoder.decode(text)[0]
        self.assertEqual(event.description, "First partsecond partthird")

    def test_tolerates_cr_only_line_endings(self) -> None:
        text = "BEGIN:VEVENT\rUID:cr\rSUMMARY:Old Mac\rDTSTART:20240901T090000Z\rEND:VEVENT\r"
        events = self.decoder.decode(text)
        self.assertEqual([event.uid for event in events], ["cr"])

    def test_drops_incomplete_blocks(self) -> None:
        text = "\n".join(
            [
                "BEGIN:VEVENT",
                "SUMMARY:No uid",
                "DTSTART:20240901T090000Z",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:no-start",
                "SUMMARY:No start",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:no-summary",
                "SUMMARY:",
                "DTSTART:20240901T090000Z",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:ok",
                "SUMMARY:Kept",
                "DTSTART:20240901T090000Z",
                "END:VEVENT",
            ]
        )
        events = self.decoder.decode(text)
        self.assertEqual([event.uid for event in events], ["ok"])

    def test_drops_block_with_invalid_date(self) -> None:
        text = "\n".join(
            [
                "BEGIN:VEVENT",
                "UID:bad",
                "SUMMARY:Bad date",
                "DTSTART:20240230T090000Z",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:bad-format",
                "SUMMARY:Bad format",
                "DTSTART:2024-09-01T09:00",
                "END:VEVENT",
            ]
        )
        self.assertEqual(self.decoder.decode(text), [])

    def test_ignores_lines_outside_blocks_and_unknown_keys(self) -> None:
        text = "\n".join(
            [
                "SUMMARY:outside",
                "BEGIN:VEVENT",
                "UID:k1",
                "X-CUSTOM:ignored",
                "no separator here",
                "SUMMARY:Inside",
                "DTSTART:20240901T090000Z",
                "END:VEVENT",
                "UID:after",
            ]
        )
        events = self.decoder.decode(text)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].summary, "Inside")

    def test_unterminated_block_is_dropped(self) -> None:
        text = "BEGIN:VEVENT\nUID:open\nSUMMARY:Open\nDTSTART:20240901T090000Z"
        self.assertEqual(self.decoder.decode(text), [])

    def test_text_values_are_unescaped(self) -> None:
        text = (
            "BEGIN:VEVENT\n"
            "UID:e1\n"
            "SUMMARY:Lab\\, Room 1\\; Group A\n"
            "LOCATION:Block Y\\\\Core\n"
            "DESCRIPTION:Line 1\\nLine 2\\NLine 3\n"
            "DTSTART:20240901T090000Z\n"
            "END:VEVENT"
        )
        event = self.decoder.decode(text)[0]
        self.assertEqual(event.summary, "Lab, Room 1; Group A")
        self.assertEqual(event.location, "Block Y\\Core")
        self.assertEqual(event.description, "Line 1\nLine 2\nLine 3")

    def test_quoted_parameter_may_contain_colon(self) -> None:
        text = (
            "BEGIN:VEVENT\n"
            "UID:q1\n"
            "SUMMARY:Seminar\n"
            'DTSTART;TZID="(UTC+08:00) Hong Kong":20240901T090000\n'
            "END:VEVENT"
        )
        events = self.decoder.decode(text)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].start, datetime(2024, 9, 1, 1, 0, tzinfo=timezone.utc))

    def test_nested_alarm_does_not_override_event_fields(self) -> None:
        text = "\n".join(
            [
                "BEGIN:VEVENT",
                "UID:n1",
                "SUMMARY:Lecture",
                "DESCRIPTION:Bring notes",
                "DTSTART:20240901T090000Z",
                "BEGIN:VALARM",
                "ACTION:DISPLAY",
                "DESCRIPTION:Reminder",
                "SUMMARY:Alarm",
                "TRIGGER:-PT15M",
                "END:VALARM",
                "LOCATION:Room 5",
                "END:VEVENT",
            ]
        )
        events = self.decoder.decode(text)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].summary, "Lecture")
        self.assertEqual(events[0].description, "Bring notes")
        self.assertEqual(events[0].location, "Room 5")


class TextEscapingTests(unittest.TestCase):
    def test_unescape_keeps_unknown_escapes(self) -> None:
        self.assertEqual(unescape_text("a\\,b\\;c\\\\d\\ne\\Nf\\x"), "a,b;c\\d\ne\nf\\x")

    def test_escape_strips_carriage_returns(self) -> None:
        self.assertEqual(escape_text("a\\b;c,d\r\ne"), "a\\\\b\\;c\\,d\\ne")
        self.assertEqual(escape_text(None), "")

    def test_escape_is_inverted_by_unescape(self) -> None:
        samples = ["plain", "a,b;c", "C:\\New\\dir", "x\\ny", "two\nlines\nhere", "\\,\\;\\\\", ";;,,\\\\"]
        for sample in samples:
            with self.subTest(sample=sample):
                self.assertEqual(unescape_text(escape_text(sample)), sample)

    def test_parse_datetime_rejects_garbage(self) -> None:
        with self.assertRaises(MalformedInput):
            parse_ics_datetime("tomorrow", CodecConfig())


class EncoderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.encoder = IcsEncoder(CodecConfig(), clock=lambda: FIXED_NOW)

    def test_layout_and_line_endings(self) -> None:
        output = self.encoder.encode([_record("u1", "COMP3122 Lecture")])
        self.assertTrue(output.startswith("BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//UniCal Manager//EN\r\n"))
        self.assertTrue(output.endswith("END:VEVENT\r\nEND:VCALENDAR"))
        lines = output.split("\r\n")
        self.assertNotIn("\n", "".join(lines))
        self.assertIn("UID:u1", lines)
        self.assertIn("DTSTAMP:20260102T030405Z", lines)
        self.assertIn("DTSTART;TZID=Asia/Hong_Kong:20240901T090000", lines)
        self.assertIn("DTEND;TZID=Asia/Hong_Kong:20240901T110000", lines)
        self.assertIn("SUMMARY:COMP3122 Lecture", lines)

    def test_optional_fields_only_when_present(self) -> None:
        output = self.encoder.encode([_record("u1", "A"), _record("u2", "B", location="Room 1", description="Bring laptop")])
        self.assertEqual(output.count("LOCATION:"), 1)
        self.assertIn("LOCATION:Room 1", output)
        self.assertIn("DESCRIPTION:Bring laptop", output)

    def test_empty_record_set(self) -> None:
        output = self.encoder.encode([])
        self.assertEqual(output, "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//UniCal Manager//EN\r\nEND:VCALENDAR")

    def test_field_values_cannot_inject_blocks(self) -> None:
        hostile = _record(
            "u1\r\nBEGIN:VEVENT",
            "Talk\nEND:VEVENT\nBEGIN:VEVENT\nUID:evil",
            location="Hall\r\nEND:VCALENDAR",
            description="x;y,z\\",
        )
        output = self.encoder.encode([hostile])
        lines = output.split("\r\n")
        self.assertEqual(lines.count("BEGIN:VEVENT"), 1)
        self.assertEqual(lines.count("END:VEVENT"), 1)
        self.assertEqual(lines.count("END:VCALENDAR"), 1)
        self.assertIn("DESCRIPTION:x\\;y\\,z\\\\", lines)

    def test_round_trip_preserves_fields(self) -> None:
        records = [
            _record("r1", "COMP3122 Lecture", location="Room A, Block B", description="Week 1; intro\nBring notes"),
            _record(
                "r2",
                "Lab \\ Practical",
                start=datetime(2024, 12, 31, 23, 30, tzinfo=timezone.utc),
                end=datetime(2025, 1, 1, 1, 0, tzinfo=timezone.utc),
                description="C:\\New\\dir, path;list",
            ),
            _record("r3", "Plain"),
        ]
        decoded = IcsDecoder(CodecConfig()).decode(self.encoder.encode(records))
        self.assertEqual(len(decoded), len(records))
        for original, event in zip(records, decoded):
            with self.subTest(uid=original.uid):
                self.assertEqual(event.uid, original.uid)
                self.assertEqual(event.summary, original.summary)
                self.assertEqual(event.location, original.location)
                self.assertEqual(event.description, original.description)
                self.assertEqual(event.start, original.start)
                self.assertEqual(event.end, original.end)

    def test_naive_datetimes_are_treated_as_utc(self) -> None:
        naive = datetime(2024, 9, 1, 1, 0)
        self.assertEqual(self.encoder.format_local(naive), "20240901T090000")
        self.assertEqual(self.encoder.format_utc(naive), "20240901T010000Z")
        aware = naive.replace(tzinfo=timezone.utc)
        self.assertEqual(self.encoder.format_local(naive), self.encoder.format_local(aware))

    def test_round_trip_with_other_offset(self) -> None:
        config = CodecConfig(utc_offset_minutes=-330, tzid="Custom/Zone")
        encoder = IcsEncoder(config, clock=lambda: FIXED_NOW)
        record = _record("o1", "Offset")
        output = encoder.encode([record])
        self.assertIn("DTSTART;TZID=Custom/Zone:20240831T193000", output)
        event = IcsDecoder(config).decode(output)[0]
        self.assertEqual(event.start, record.start)


if __name__ == "__main__":
    unittest.main()
