"""Shared helpers for request headers, URL resolution and text cleanup."""

import html
import re
from urllib.parse import urljoin, urlsplit

# Sent with every request so the portal serves the same markup a browser gets.
BROWSER_HEADERS: dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Connection": "keep-alive",
}

# Extra headers for top-level page navigations.
NAVIGATION_HEADERS: dict[str, str] = {
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "same-origin",
}

# Extra headers for form submissions.
FORM_HEADERS: dict[str, str] = {
    **NAVIGATION_HEADERS,
    "Sec-Fetch-User": "?1",
    "Pragma": "no-cache",
    "Cache-Control": "no-cache",
}

CALENDAR_HINTS: tuple[str, ...] = (
    "calendarexport",
    "timetablecalendar",
    "calendar",
    ".ics",
    "ical",
)

_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str | None) -> str:
    """Decode HTML entities, turn non-breaking spaces into spaces, collapse runs."""
    if not value:
        return ""
    decoded = html.unescape(value).replace("\u00a0", " ")
    return _WHITESPACE.sub(" ", decoded).strip()


def collapse_whitespace(value: str | None) -> str:
    """Collapse whitespace runs without touching entities (already-decoded text)."""
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value).strip()


def contains_calendar_hint(value: str) -> bool:
    lower = value.lower()
    return any(hint in lower for hint in CALENDAR_HINTS)


def resolve_url(candidate: str, base: str) -> str | None:
    """Resolve candidate against base; only http(s) results are accepted."""
    candidate = candidate.strip()
    if not candidate:
        return None
    resolved = urljoin(base, candidate)
    if urlsplit(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"
