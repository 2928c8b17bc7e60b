from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from campus_portal.errors import MalformedCalendar, MalformedEntry
from campus_portal.models import RawCalendarEvent, RawTimetableRow, TimetableEntry
from campus_portal.normalizer import EntryNormalizer, deduplicate_and_sort

BERLIN = ZoneInfo("Europe/Berlin")
UTC = timezone.utc


@pytest.fixture
def normalizer():
    return EntryNormalizer(tz=BERLIN, default_slot=timedelta(minutes=90))


def _raw(line_number=1, params=None, **properties):
    return RawCalendarEvent(properties=properties, params=params or {}, line_number=line_number)


def _ics(*blocks):
    body = "\n".join(
        "BEGIN:VEVENT\n" + "\n".join(lines) + "\nEND:VEVENT" for lines in blocks
    )
    return f"BEGIN:VCALENDAR\n{body}\nEND:VCALENDAR\n"


class TestParseDatetime:
    def test_utc_basic(self, normalizer):
        parsed = normalizer.parse_datetime("20240115T090000Z")
        assert parsed == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
        assert parsed.utcoffset() == timedelta(hours=1)

    def test_utc_without_seconds(self, normalizer):
        assert normalizer.parse_datetime("20240115T0900Z") == datetime(2024, 1, 15, 9, tzinfo=UTC)

    def test_tzid_is_resolved(self, normalizer):
        parsed = normalizer.parse_datetime("20240715T100000", "America/New_York")
        assert parsed == datetime(2024, 7, 15, 14, 0, tzinfo=UTC)

    def test_unknown_tzid_falls_back_to_institution(self, normalizer):
        parsed = normalizer.parse_datetime("20240115T100000", "W. Europe Standard Time")
        assert parsed == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)

    def test_floating_uses_institutional_timezone(self, normalizer):
        parsed = normalizer.parse_datetime("20240715T100000")
        # CEST in summer
        assert parsed == datetime(2024, 7, 15, 8, 0, tzinfo=UTC)

    def test_date_only_is_local_midnight(self, normalizer):
        assert normalizer.parse_datetime("20240115") == datetime(2024, 1, 15, tzinfo=BERLIN)

    def test_rfc3339(self, normalizer):
        parsed = normalizer.parse_datetime("2024-01-15T10:00:00+01:00")
        assert parsed == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)

    @pytest.mark.parametrize("value", ["", "tomorrow", "2024-13-01", "20241315T090000Z"])
    def test_unparseable_raises(self, normalizer, value):
        with pytest.raises(MalformedEntry):
            normalizer.parse_datetime(value)


class TestFromEvent:
    def test_algorithms_example(self, normalizer):
        entry = normalizer.from_event(
            _raw(SUMMARY="Algorithms", DTSTART="20240115T090000Z", DTEND="20240115T103000Z")
        )
        assert entry.title == "Algorithms"
        assert entry.start == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
        assert entry.end == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)
        assert entry.location is None
        assert entry.note is None

    def test_text_fields_are_decoded_and_collapsed(self, normalizer):
        entry = normalizer.from_event(
            _raw(
                SUMMARY="  Theory &amp; Practice\n of   Compilers ",
                LOCATION="H&ouml;rsaal&nbsp;3",
                DESCRIPTION="Bring\n\nlaptop",
                DTSTART="20240115T090000Z",
            )
        )
        assert entry.title == "Theory & Practice of Compilers"
        assert entry.location == "Hörsaal 3"
        assert entry.note == "Bring laptop"

    def test_missing_end_uses_default_slot(self, normalizer):
        entry = normalizer.from_event(_raw(SUMMARY="Lab", DTSTART="20240115T090000Z"))
        assert entry.end - entry.start == timedelta(minutes=90)

    def test_duration_is_used_when_present(self, normalizer):
        entry = normalizer.from_event(
            _raw(SUMMARY="Lab", DTSTART="20240115T090000Z", DURATION="PT2H15M")
        )
        assert entry.end - entry.start == timedelta(hours=2, minutes=15)

    @pytest.mark.parametrize("duration", ["PT0S", "P", "-PT1H", "later"])
    def test_unusable_duration_is_malformed(self, normalizer, duration):
        with pytest.raises(MalformedEntry, match="DURATION") as info:
            normalizer.from_event(
                _raw(line_number=4, SUMMARY="Lab", DTSTART="20240115T090000Z", DURATION=duration)
            )
        assert info.value.reference == 4

    def test_all_day_event_lasts_one_day(self, normalizer):
        entry = normalizer.from_event(
            _raw(
                SUMMARY="Dies academicus",
                DTSTART="20240115",
                params={"DTSTART": {"VALUE": "DATE"}},
            )
        )
        assert entry.end - entry.start == timedelta(days=1)

    def test_recurrence_from_rrule(self, normalizer):
        entry = normalizer.from_event(
            _raw(SUMMARY="Seminar", DTSTART="20240115T090000Z", RRULE="FREQ=WEEKLY;BYDAY=MO")
        )
        assert entry.recurrence.frequency == "WEEKLY"
        assert str(entry.recurrence) == "Weekly"

    def test_blank_summary_is_malformed(self, normalizer):
        with pytest.raises(MalformedEntry, match="SUMMARY") as info:
            normalizer.from_event(_raw(line_number=7, SUMMARY="   ", DTSTART="20240115T090000Z"))
        assert info.value.reference == 7

    def test_bad_start_is_malformed(self, normalizer):
        with pytest.raises(MalformedEntry, match="unparseable"):
            normalizer.from_event(_raw(SUMMARY="x", DTSTART="soon"))

    def test_end_before_start_is_malformed(self, normalizer):
        with pytest.raises(MalformedEntry, match="after start"):
            normalizer.from_event(
                _raw(SUMMARY="x", DTSTART="20240115T100000Z", DTEND="20240115T090000Z")
            )


class TestFromRow:
    def test_row_with_date_and_range(self, normalizer):
        row = RawTimetableRow(cells=("15.01.2024", "10:15 - 11:45", "Analysis", "H 1", ""))
        entry = normalizer.from_row(row)
        assert entry.start == datetime(2024, 1, 15, 10, 15, tzinfo=BERLIN)
        assert entry.end == datetime(2024, 1, 15, 11, 45, tzinfo=BERLIN)
        assert entry.location == "H 1"
        assert entry.note is None

    def test_date_from_day_header(self, normalizer):
        row = RawTimetableRow(
            cells=("", "08:00-09:30 Uhr", "Physik", "", ""), day_header="Dienstag, 16.01.2024"
        )
        assert normalizer.from_row(row).start == datetime(2024, 1, 16, 8, 0, tzinfo=BERLIN)

    def test_date_from_header_attribute(self, normalizer):
        row = RawTimetableRow(
            cells=("", "08:00", "Physik", "", ""), day_header="Dienstag", header_date="2024-01-16"
        )
        entry = normalizer.from_row(row)
        assert entry.start == datetime(2024, 1, 16, 8, 0, tzinfo=BERLIN)
        assert entry.end - entry.start == timedelta(minutes=90)

    def test_overnight_range_ends_next_day(self, normalizer):
        row = RawTimetableRow(cells=("15.01.2024", "22:00 - 01:00", "Sternwarte", "", ""))
        entry = normalizer.from_row(row)
        assert entry.end == datetime(2024, 1, 16, 1, 0, tzinfo=BERLIN)

    def test_blank_row_yields_nothing(self, normalizer):
        assert normalizer.from_row(RawTimetableRow(cells=("", " ", ""))) is None

    def test_row_without_date_is_malformed(self, normalizer):
        with pytest.raises(MalformedEntry, match="no date"):
            normalizer.from_row(RawTimetableRow(cells=("", "10:00", "X", "", ""), row_index=4))

    def test_row_without_time_is_malformed(self, normalizer):
        with pytest.raises(MalformedEntry, match="no start time"):
            normalizer.from_row(RawTimetableRow(cells=("15.01.2024", "tba", "X", "", "")))

    def test_invalid_date_is_malformed(self, normalizer):
        with pytest.raises(MalformedEntry, match="invalid date"):
            normalizer.from_row(RawTimetableRow(cells=("31.02.2024", "10:00", "X", "", "")))

    def test_custom_column_layout(self):
        normalizer = EntryNormalizer(
            tz=BERLIN, columns=("title", "ignore", "start", "end", "date", "location")
        )
        row = RawTimetableRow(cells=("Chemie", "V", "09:00", "10:30", "2024-01-15", "C 2"))
        entry = normalizer.from_row(row)
        assert entry.title == "Chemie"
        assert entry.end == datetime(2024, 1, 15, 10, 30, tzinfo=BERLIN)
        assert entry.location == "C 2"


class TestBatches:
    def test_n_valid_events_give_n_sorted_entries(self, normalizer):
        text = _ics(
            ["SUMMARY:C", "DTSTART:20240117T090000Z"],
            ["SUMMARY:A", "DTSTART:20240115T090000Z"],
            ["SUMMARY:B", "DTSTART:20240116T090000Z"],
        )
        result = normalizer.normalize_calendar(text)
        assert [e.title for e in result.entries] == ["A", "B", "C"]
        assert result.skipped_count == 0
        assert result.source == "ics"

    def test_ties_are_broken_by_title(self, normalizer):
        text = _ics(
            ["SUMMARY:Beta", "DTSTART:20240115T090000Z"],
            ["SUMMARY:Alpha", "DTSTART:20240115T090000Z"],
        )
        assert [e.title for e in normalizer.normalize_calendar(text).entries] == ["Alpha", "Beta"]

    def test_duplicates_differing_only_in_description_collapse(self, normalizer):
        text = _ics(
            ["SUMMARY:Algorithms", "DTSTART:20240115T090000Z", "DTEND:20240115T103000Z",
             "DESCRIPTION:export one"],
            ["SUMMARY:Algorithms", "DTSTART:20240115T090000Z", "DTEND:20240115T103000Z",
             "DESCRIPTION:export two"],
        )
        result = normalizer.normalize_calendar(text)
        assert len(result.entries) == 1
        assert result.entries[0].note == "export one"

    def test_same_instant_in_other_zone_is_a_duplicate(self, normalizer):
        text = _ics(
            ["SUMMARY:Algorithms", "DTSTART:20240115T090000Z", "DTEND:20240115T103000Z"],
            ["SUMMARY:Algorithms", "DTSTART;TZID=Europe/Berlin:20240115T100000",
             "DTEND;TZID=Europe/Berlin:20240115T113000"],
        )
        assert len(normalizer.normalize_calendar(text).entries) == 1

    def test_bad_records_are_skipped_and_counted(self, normalizer):
        text = _ics(
            ["SUMMARY:No start"],
            ["SUMMARY:Fine", "DTSTART:20240115T090000Z"],
            ["SUMMARY:Bad start", "DTSTART:whenever"],
        )
        result = normalizer.normalize_calendar(text)
        assert [e.title for e in result.entries] == ["Fine"]
        assert result.skipped_count == 2
        assert {s.source for s in result.skipped} == {"ics"}
        assert [s.reference for s in result.skipped] == [2, 9]

    def test_structural_errors_are_fatal(self, normalizer):
        with pytest.raises(MalformedCalendar):
            normalizer.normalize_calendar("BEGIN:VEVENT\nSUMMARY:x\nDTSTART:20240115T090000Z\n")

    def test_rows_batch(self, normalizer):
        rows = [
            RawTimetableRow(cells=("16.01.2024", "10:00", "B", "", ""), row_index=1),
            RawTimetableRow(cells=("", "", "", "", ""), row_index=2),
            RawTimetableRow(cells=("15.01.2024", "10:00", "A", "", ""), row_index=3),
            RawTimetableRow(cells=("15.01.2024", "??", "C", "", ""), row_index=4),
        ]
        result = normalizer.normalize_rows(rows)
        assert [e.title for e in result.entries] == ["A", "B"]
        assert [(s.source, s.reference) for s in result.skipped] == [("html", 4)]


def test_deduplicate_and_sort_keeps_first_occurrence():
    start = datetime(2024, 1, 15, 9, tzinfo=UTC)
    first = TimetableEntry(title="X", start=start, end=start + timedelta(hours=1), note="1")
    second = TimetableEntry(title="X", start=start, end=start + timedelta(hours=1), note="2")
    earlier = TimetableEntry(
        title="Y", start=start - timedelta(hours=2), end=start - timedelta(hours=1)
    )
    assert deduplicate_and_sort([first, second, earlier]) == (earlier, first)
