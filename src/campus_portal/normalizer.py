"""Normalization of raw calendar events and table rows into TimetableEntry.

Both timetable sources end up here. Text fields from ICS are entity-decoded
and whitespace-collapsed; HTML cell text arrives decoded by the parser and is
only collapsed. Each record becomes zero or one entry;
a record that cannot be turned into a valid entry raises MalformedEntry,
which the batch methods catch and report as a SkippedRecord. A batch is
never aborted because of one bad record.

Datetime values are tried against these forms, in order:
  1. UTC basic            20240115T090000Z
  2. local with TZID      DTSTART;TZID=Europe/Berlin:20240115T100000
  3. floating local       20240115T100000 (institutional timezone)
  4. date only            20240115 (local midnight)
  5. RFC 3339             2024-01-15T10:00:00+01:00
"""

import re
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from campus_portal.config import PortalConfig
from campus_portal.errors import MalformedCalendar, MalformedEntry
from campus_portal.ics import iter_events
from campus_portal.logging import get_logger
from campus_portal.models import (
    RawCalendarEvent,
    RawTimetableRow,
    Recurrence,
    SkippedRecord,
    TimetableEntry,
    TimetableResult,
)
from campus_portal.utils import collapse_whitespace, normalize_text

log = get_logger(__name__)

_BASIC_FORMATS: tuple[str, ...] = ("%Y%m%dT%H%M%S", "%Y%m%dT%H%M")
_DATE_FORMAT = "%Y%m%d"

_DATE_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"\b\d{1,2}\.\d{1,2}\.\d{4}\b"), "%d.%m.%Y"),
    (re.compile(r"\b\d{4}-\d{2}-\d{2}\b"), "%Y-%m-%d"),
    (re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b"), "%d/%m/%Y"),
)
_TIME = r"(\d{1,2})[:.](\d{2})"
_TIME_RANGE = re.compile(rf"{_TIME}\s*(?:-|–|bis|to)\s*{_TIME}", re.IGNORECASE)
_SINGLE_TIME = re.compile(_TIME)
_DURATION = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


def deduplicate_and_sort(entries: Iterable[TimetableEntry]) -> tuple[TimetableEntry, ...]:
    """Drop entries repeating an earlier (title, start, end), then sort by (start, title)."""
    seen: set[tuple[str, datetime, datetime]] = set()
    unique: list[TimetableEntry] = []
    for entry in entries:
        if entry.dedup_key in seen:
            continue
        seen.add(entry.dedup_key)
        unique.append(entry)
    unique.sort(key=lambda e: e.sort_key)
    return tuple(unique)


def _parse_duration(value: str) -> timedelta | None:
    match = _DURATION.match(value.strip().lstrip("+").upper())
    if not match or not any(match.groupdict().values()):
        return None
    parts = {k: int(v) for k, v in match.groupdict().items() if v}
    return timedelta(**parts)


class EntryNormalizer:
    """Builds TimetableEntry objects in one institutional timezone.

    Args:
        tz: Timezone assumed for floating timestamps and used for output.
        default_slot: Duration given to events that have no end time.
        columns: Meaning of each HTML table column, in order.
    """

    def __init__(
        self,
        tz: ZoneInfo,
        default_slot: timedelta = timedelta(minutes=90),
        columns: Iterable[str] = ("date", "time", "title", "location", "note"),
    ) -> None:
        self.tz = tz
        self.default_slot = default_slot
        self.columns = tuple(columns)

    @classmethod
    def from_config(cls, config: PortalConfig) -> "EntryNormalizer":
        return cls(
            tz=config.tz,
            default_slot=timedelta(minutes=config.default_slot_minutes),
            columns=config.html_columns,
        )

    # ------------------------------------------------------------------
    # Date/time parsing
    # ------------------------------------------------------------------

    def _zone(self, tzid: str | None) -> ZoneInfo:
        if not tzid:
            return self.tz
        try:
            return ZoneInfo(tzid.strip().lstrip("/"))
        except (ZoneInfoNotFoundError, ValueError):
            log.warning("unknown_tzid", tzid=tzid, fallback=str(self.tz))
            return self.tz

    def parse_datetime(self, value: str | None, tzid: str | None = None) -> datetime:
        """Parse an ICS date-time value into an aware datetime.

        Raises:
            MalformedEntry: If value matches none of the known forms.
        """
        raw = (value or "").strip()
        if not raw:
            raise MalformedEntry("empty date-time value")

        if raw.upper().endswith("Z"):
            bare = raw[:-1]
            for fmt in _BASIC_FORMATS:
                try:
                    parsed = datetime.strptime(bare, fmt).replace(tzinfo=timezone.utc)
                except ValueError:
                    continue
                return parsed.astimezone(self.tz)

        zone = self._zone(tzid)
        for fmt in _BASIC_FORMATS:
            try:
                parsed = datetime.strptime(raw, fmt).replace(tzinfo=zone)
            except ValueError:
                continue
            return parsed.astimezone(self.tz)

        try:
            day = datetime.strptime(raw, _DATE_FORMAT).date()
        except ValueError:
            pass
        else:
            return datetime.combine(day, time.min, tzinfo=zone).astimezone(self.tz)

        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedEntry(f"unparseable date-time {raw!r}") from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=zone)
        return parsed.astimezone(self.tz)

    def _localize(
        self, day: date, hour: int, minute: int, reference: int | None = None
    ) -> datetime:
        try:
            return datetime.combine(day, time(hour, minute), tzinfo=self.tz)
        except ValueError:
            raise MalformedEntry(
                f"invalid time {hour:02d}:{minute:02d}", reference=reference
            ) from None

    # ------------------------------------------------------------------
    # Single records
    # ------------------------------------------------------------------

    def _build(self, reference: int | None, **fields) -> TimetableEntry:
        try:
            return TimetableEntry(**fields)
        except ValidationError as e:
            reason = "; ".join(err["msg"] for err in e.errors())
            raise MalformedEntry(reason, reference=reference) from e

    def from_event(self, event: RawCalendarEvent) -> TimetableEntry:
        """Normalize one calendar event.

        Raises:
            MalformedEntry: If the title or start is missing or unparseable.
        """
        ref = event.line_number
        title = normalize_text(event.get("SUMMARY"))
        if not title:
            raise MalformedEntry("missing SUMMARY", reference=ref)
        if not event.get("DTSTART"):
            raise MalformedEntry("missing DTSTART", reference=ref)

        try:
            start = self.parse_datetime(event.get("DTSTART"), event.tzid("DTSTART"))
            if event.get("DTEND"):
                end = self.parse_datetime(event.get("DTEND"), event.tzid("DTEND"))
            elif event.get("DURATION"):
                duration = _parse_duration(event.get("DURATION"))
                if duration is None or duration <= timedelta(0):
                    raise MalformedEntry(f"invalid DURATION {event.get('DURATION')!r}")
                end = start + duration
            elif event.param("DTSTART", "VALUE") == "DATE":
                end = start + timedelta(days=1)
            else:
                end = start + self.default_slot
        except MalformedEntry as e:
            raise MalformedEntry(str(e), reference=ref) from e

        return self._build(
            ref,
            title=title,
            start=start,
            end=end,
            location=normalize_text(event.get("LOCATION")) or None,
            note=normalize_text(event.get("DESCRIPTION")) or None,
            recurrence=Recurrence.from_rule(event.get("RRULE")),
        )

    def _row_date(self, value: str, row: RawTimetableRow) -> date:
        candidates = [value]
        if row.header_date:
            candidates.append(row.header_date)
        if row.day_header:
            candidates.append(row.day_header)
        for candidate in candidates:
            for pattern, fmt in _DATE_PATTERNS:
                match = pattern.search(candidate)
                if not match:
                    continue
                try:
                    return datetime.strptime(match.group(0), fmt).date()
                except ValueError:
                    raise MalformedEntry(
                        f"invalid date {match.group(0)!r}", reference=row.row_index
                    ) from None
        raise MalformedEntry("no date for row", reference=row.row_index)

    def from_row(self, row: RawTimetableRow) -> TimetableEntry | None:
        """Normalize one HTML table row; blank rows yield None.

        Raises:
            MalformedEntry: If the row has no title, date or start time.
        """
        ref = row.row_index
        fields: dict[str, str] = {}
        for idx, column in enumerate(self.columns):
            if column == "ignore" or column in fields:
                continue
            cell = row.cells[idx] if idx < len(row.cells) else ""
            # cell text was entity-decoded by the HTML parser already
            fields[column] = collapse_whitespace(cell)
        if not any(collapse_whitespace(cell) for cell in row.cells):
            return None

        title = fields.get("title", "")
        if not title:
            raise MalformedEntry("missing title", reference=ref)
        day = self._row_date(fields.get("date", ""), row)

        time_text = fields.get("time") or " - ".join(
            t for t in (fields.get("start", ""), fields.get("end", "")) if t
        )
        range_match = _TIME_RANGE.search(time_text)
        if range_match:
            h1, m1, h2, m2 = (int(g) for g in range_match.groups())
            start = self._localize(day, h1, m1, ref)
            end = self._localize(day, h2, m2, ref)
            if end < start:
                end = self._localize(day + timedelta(days=1), h2, m2, ref)
        else:
            single = _SINGLE_TIME.search(time_text)
            if not single:
                raise MalformedEntry(f"no start time in {time_text!r}", reference=ref)
            start = self._localize(day, int(single.group(1)), int(single.group(2)), ref)
            end = start + self.default_slot

        return self._build(
            ref,
            title=title,
            start=start,
            end=end,
            location=fields.get("location") or None,
            note=fields.get("note") or None,
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def normalize(
        self,
        records: Iterable[RawCalendarEvent | RawTimetableRow],
        *,
        source: str,
        skipped: list[SkippedRecord] | None = None,
    ) -> TimetableResult:
        """Normalize a batch, skipping bad records, then dedupe and sort.

        Args:
            records: Raw events or rows. May be a lazy iterator.
            source: "ics" or "html", recorded on skipped records.
            skipped: Records already dropped upstream; appended to in place.
        """
        skipped = skipped if skipped is not None else []
        entries: list[TimetableEntry] = []
        for record in records:
            try:
                if isinstance(record, RawCalendarEvent):
                    entry = self.from_event(record)
                else:
                    entry = self.from_row(record)
            except MalformedEntry as e:
                log.debug("record_skipped", source=source, reference=e.reference, reason=str(e))
                skipped.append(SkippedRecord(source=source, reference=e.reference, reason=str(e)))
                continue
            if entry is not None:
                entries.append(entry)

        unique = deduplicate_and_sort(entries)
        if len(unique) < len(entries):
            log.debug("duplicates_removed", source=source, count=len(entries) - len(unique))
        return TimetableResult(entries=unique, skipped=tuple(skipped), source=source)

    def normalize_calendar(self, text: str) -> TimetableResult:
        """Extract and normalize every VEVENT in an ICS payload.

        Blocks missing a mandatory property are skipped and counted.

        Raises:
            MalformedCalendar: If the payload is structurally broken.
        """
        skipped: list[SkippedRecord] = []

        def _skip(error: MalformedCalendar) -> None:
            log.debug("record_skipped", source="ics", reference=error.line_number, reason=str(error))
            skipped.append(
                SkippedRecord(source="ics", reference=error.line_number, reason=str(error))
            )

        return self.normalize(iter_events(text, on_invalid=_skip), source="ics", skipped=skipped)

    def normalize_rows(self, rows: Iterable[RawTimetableRow]) -> TimetableResult:
        return self.normalize(rows, source="html")
