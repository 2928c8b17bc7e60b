"""Pydantic models for portal and timetable data.

All data structures use Pydantic v2 for validation, serialization, and type
safety. TimetableEntry is the only model handed to callers; the raw models
are transient and consumed by the normalizer.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_FREQUENCY_LABELS: dict[str, str] = {
    "DAILY": "Daily",
    "WEEKLY": "Weekly",
    "MONTHLY": "Monthly",
    "YEARLY": "Yearly",
}


class Recurrence(BaseModel):
    """Repeat frequency of a timetable entry, taken from an RRULE FREQ part."""

    model_config = ConfigDict(frozen=True)

    frequency: str  # "DAILY", "WEEKLY", ... or a custom upper-cased token

    @classmethod
    def from_rule(cls, rule: str | None) -> "Recurrence | None":
        """Build a Recurrence from an RRULE value such as 'FREQ=WEEKLY;BYDAY=TU'."""
        if not rule:
            return None
        for part in rule.split(";"):
            key, _, value = part.partition("=")
            if key.strip().upper() == "FREQ":
                value = value.strip().upper()
                return cls(frequency=value) if value else None
        return None

    @property
    def label(self) -> str:
        return _FREQUENCY_LABELS.get(self.frequency, self.frequency)

    def __str__(self) -> str:
        return self.label


class TimetableEntry(BaseModel):
    """A single normalized timetable event.

    Instants are timezone-aware and expressed in the institutional timezone.
    Two entries with the same title, start and end describe the same event.
    """

    model_config = ConfigDict(frozen=True)

    title: str
    start: datetime
    end: datetime
    location: str | None = None
    note: str | None = None
    recurrence: Recurrence | None = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be empty")
        return value

    @field_validator("start", "end")
    @classmethod
    def _timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("timestamps must be timezone-aware")
        return value

    @model_validator(mode="after")
    def _end_after_start(self) -> "TimetableEntry":
        if self.end <= self.start:
            raise ValueError(
                f"end ({self.end.isoformat()}) must be after start ({self.start.isoformat()})"
            )
        return self

    @property
    def dedup_key(self) -> tuple[str, datetime, datetime]:
        return (self.title, self.start, self.end)

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.start, self.title)

    def __str__(self) -> str:
        line = f"{self.start:%Y-%m-%d %H:%M} - "
        if self.end.date() != self.start.date():
            line += f"{self.end:%Y-%m-%d} "
        line += f"{self.end:%H:%M} {self.title}"
        if self.location:
            line = f"{line} @ {self.location}"
        if self.recurrence:
            line = f"{line} • {self.recurrence}"
        return line


class LoginForm(BaseModel):
    """Credential form extracted from the login page.

    Exists only for the duration of one handshake.
    """

    action: str  # absolute submission URL
    hidden_fields: dict[str, str] = Field(default_factory=dict)
    username_field: str
    password_field: str

    def payload(self, username: str, password: str) -> dict[str, str]:
        """Hidden fields echoed verbatim plus the supplied credentials."""
        data = dict(self.hidden_fields)
        data[self.username_field] = username
        data[self.password_field] = password
        return data


class RawCalendarEvent(BaseModel):
    """Properties of one VEVENT block, values unescaped but not interpreted."""

    properties: dict[str, str] = Field(default_factory=dict)
    params: dict[str, dict[str, str]] = Field(default_factory=dict)
    line_number: int = 0  # line of the BEGIN:VEVENT in the unfolded input

    def get(self, name: str) -> str | None:
        return self.properties.get(name.upper())

    def param(self, name: str, param: str) -> str | None:
        return self.params.get(name.upper(), {}).get(param.upper())

    def tzid(self, name: str) -> str | None:
        return self.param(name, "TZID")


class RawTimetableRow(BaseModel):
    """Cell texts of one HTML timetable row plus its day-group context."""

    cells: tuple[str, ...]
    day_header: str | None = None  # text of the closest preceding day header row
    header_date: str | None = None  # data-date attribute of that header, if any
    row_index: int = 0


class SkippedRecord(BaseModel):
    """A record dropped by the normalizer, reported back to the caller."""

    model_config = ConfigDict(frozen=True)

    source: str  # "ics" or "html"
    reference: int | None = None  # ICS line number or table row index
    reason: str


class TimetableResult(BaseModel):
    """Outcome of one timetable retrieval.

    entries is sorted by (start, title) and free of duplicates; skipped lists
    every record that was dropped on the way.
    """

    model_config = ConfigDict(frozen=True)

    entries: tuple[TimetableEntry, ...] = ()
    skipped: tuple[SkippedRecord, ...] = ()
    source: str = "ics"

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


class PageSnapshot(BaseModel):
    """One fetched page: where the request ended up and what it returned."""

    url: str  # final URL after redirects
    status_code: int
    text: str
    content_type: str = ""

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    @property
    def is_calendar(self) -> bool:
        if "text/calendar" in self.content_type.lower():
            return True
        head = self.text.lstrip().upper()
        return head.startswith("BEGIN:VCALENDAR") or head.startswith("BEGIN:VEVENT")
