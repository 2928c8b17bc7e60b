"""ICS calendar extraction.

Turns iCalendar text (RFC 5545 subset) into RawCalendarEvent objects, one per
VEVENT block. Content lines are unfolded and split into name, parameters and
value by icalendar's parser; this module only adds the VEVENT framing and its
error rules. Interpreting dates and timezones is the normalizer's job.

Events are produced lazily: a structural error after the first block only
surfaces once iteration reaches it.
"""

from collections.abc import Callable, Iterator

from icalendar import vText
from icalendar.parser import Contentlines

from campus_portal.errors import MalformedCalendar
from campus_portal.logging import get_logger
from campus_portal.models import RawCalendarEvent

log = get_logger(__name__)

MANDATORY_PROPERTIES: tuple[str, ...] = ("DTSTART", "SUMMARY")


def text_value(value: str) -> str:
    r"""Undo TEXT escaping (\, \; \\ and the \n / \N line breaks)."""
    unescaped = str(vText.from_ical(value))
    return unescaped.replace("\\n", "\n").replace("\\N", "\n")


def content_lines(text: str) -> Iterator[tuple[int, str, dict[str, str], str]]:
    """Yield (line_number, NAME, params, raw_value) for each content line.

    line_number counts unfolded, non-blank content lines from 1. Lines that
    are not valid content lines are logged and skipped.

    Raises:
        MalformedCalendar: If the text cannot be split into content lines.
    """
    try:
        lines = Contentlines.from_ical(text)
    except ValueError as e:
        raise MalformedCalendar(f"not calendar text: {e}") from e

    number = 0
    for line in lines:
        if not line:
            continue
        number += 1
        try:
            name, params, value = line.parts()
        except ValueError:
            log.debug("ics_line_ignored", line_number=number)
            continue
        flat = {
            key.upper(): ",".join(val) if isinstance(val, list) else str(val)
            for key, val in params.items()
        }
        yield number, name.upper(), flat, value


def iter_events(
    text: str,
    *,
    on_invalid: Callable[[MalformedCalendar], None] | None = None,
) -> Iterator[RawCalendarEvent]:
    """Lazily yield one RawCalendarEvent per VEVENT block in text.

    The iterator is single-pass. Properties of components nested inside an
    event (VALARM and the like) are not merged into the event. Repeated
    properties keep their first value.

    Args:
        text: ICS payload.
        on_invalid: If given, a block missing DTSTART or SUMMARY is passed to
            this callback and skipped instead of aborting the iteration.

    Raises:
        MalformedCalendar: If a VEVENT is never closed, VEVENTs are nested, or
            (without on_invalid) a block lacks a mandatory property.
    """
    event: RawCalendarEvent | None = None
    # component names opened inside the current VEVENT
    nested: list[str] = []

    for number, name, params, raw_value in content_lines(text):
        if name == "BEGIN":
            component = raw_value.strip().upper()
            if component == "VEVENT":
                if event is not None:
                    raise MalformedCalendar(
                        f"VEVENT opened on line {number} inside the VEVENT from line "
                        f"{event.line_number}",
                        line_number=number,
                    )
                event = RawCalendarEvent(line_number=number)
            elif event is not None:
                nested.append(component)
            continue

        if name == "END":
            component = raw_value.strip().upper()
            if event is None:
                continue
            if nested:
                if component != nested[-1]:
                    raise MalformedCalendar(
                        f"END:{component} on line {number} while {nested[-1]} is open",
                        line_number=number,
                    )
                nested.pop()
                continue
            if component != "VEVENT":
                raise MalformedCalendar(
                    f"VEVENT from line {event.line_number} is never closed",
                    line_number=event.line_number,
                )
            missing = [p for p in MANDATORY_PROPERTIES if not event.get(p)]
            if missing:
                error = MalformedCalendar(
                    f"VEVENT on line {event.line_number} lacks {', '.join(missing)}",
                    line_number=event.line_number,
                )
                if on_invalid is None:
                    raise error
                on_invalid(error)
            else:
                yield event
            event = None
            continue

        if event is None or nested:
            continue
        if name in event.properties:
            continue
        event.properties[name] = text_value(raw_value)
        if params:
            event.params[name] = params

    if event is not None:
        raise MalformedCalendar(
            f"VEVENT from line {event.line_number} is never closed",
            line_number=event.line_number,
        )
