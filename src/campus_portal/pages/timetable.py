"""TimetablePage - locates and reads the personal timetable after login.

Navigation (HISinOne-style portals):
  landing page
    a[href] -> timetable menu entry ("Stundenplan", ..._flowId=individualTimetableSchedule-flow)
  timetable entry page
    carries a _flowExecutionKey (hidden input, link, meta refresh, or redirect URL)
  full timetable page (entry URL + _flowExecutionKey)
    table.timetable           -> HTML listing, one tr per event
      tr.day-header th[colspan] -> "Montag, 15.01.2024" groups the rows below it
    textarea[id*='cal_add']   -> calendar feed URL for the ICS export

A configured ics_url skips the whole navigation for the ICS source.
"""

import html
import re
from urllib.parse import parse_qs, urlencode, urlsplit

from bs4 import Tag

from campus_portal import markup
from campus_portal.config import PortalConfig
from campus_portal.errors import MalformedCalendar, NotAuthenticated, UnexpectedResponse
from campus_portal.logging import get_logger
from campus_portal.models import PageSnapshot, RawTimetableRow
from campus_portal.session import Session
from campus_portal.utils import contains_calendar_hint, resolve_url

log = get_logger(__name__)

FLOW_KEY_PARAM = "_flowExecutionKey"
FLOW_ID_PARAM = "_flowId"

_FLOW_KEY_RE = re.compile(rf"{FLOW_KEY_PARAM}=([A-Za-z0-9]+)")
_URL_RE = re.compile(r"https?://[A-Za-z0-9\-._~:/?#\[\]@!$&'()*+,;=%]+")


def _flow_key_from_str(value: str) -> str | None:
    keys = parse_qs(urlsplit(value).query).get(FLOW_KEY_PARAM)
    if keys and keys[0].strip():
        return keys[0].strip()
    match = _FLOW_KEY_RE.search(value)
    return match.group(1) if match else None


class TimetablePage:
    """Personal timetable pages of the portal.

    Finds the timetable among the portal's menus, follows the flow key
    handshake, and extracts either the calendar feed URL or the HTML rows.
    """

    LINK_KEYWORDS = ("stundenplan", "timetable", "schedule")

    # Selectors seen on HISinOne timetable export pages
    FLOW_KEY_INPUTS = (f"input[name='{FLOW_KEY_PARAM}']", f"input#{FLOW_KEY_PARAM}")
    FLOW_KEY_LINK = f"a[href*='{FLOW_KEY_PARAM}=']"
    META_REFRESH = "meta[http-equiv]"
    CALENDAR_TEXTAREAS = (
        "textarea[id*='cal_add']",
        "textarea[id*='ical']",
        "textarea[id*='calendar']",
        "textarea[data-page-permalink]",
        "textarea[data-url]",
    )
    CALENDAR_ATTRIBUTES = (
        "data-page-permalink",
        "data-page-permalink-title",
        "data-url",
        "value",
    )
    ROWS = ":scope > thead > tr, :scope > tbody > tr, :scope > tfoot > tr, :scope > tr"

    def __init__(self, session: Session, config: PortalConfig) -> None:
        self.session = session
        self.config = config

    # ------------------------------------------------------------------
    # Discovery over a single page
    # ------------------------------------------------------------------

    def find_timetable_link(self, page: PageSnapshot) -> str | None:
        """Best timetable menu link on page, or None.

        Score 3: href carries the configured _flowId.
        Score 2: href contains the timetable link hint.
        Score 1: link text mentions a timetable keyword.
        """
        document = markup.parse_document(page.text)
        flow_id = (self.config.timetable_flow_id or "").lower()
        hint = self.config.timetable_link_hint.lower()

        best: tuple[int, str] | None = None
        for link in markup.select(document, "a[href]"):
            href = markup.attribute(link, "href").strip()
            if not href:
                continue
            href_lower = href.lower()
            text_lower = markup.text(link).lower()

            if flow_id and f"{FLOW_ID_PARAM.lower()}={flow_id}" in href_lower:
                score = 3
            elif hint and hint in href_lower:
                score = 2
            elif any(keyword in text_lower for keyword in self.LINK_KEYWORDS):
                score = 1
            else:
                continue

            url = resolve_url(href, page.url)
            if url and (best is None or score > best[0]):
                best = (score, url)

        return best[1] if best else None

    def extract_flow_key(self, page: PageSnapshot) -> str | None:
        """The _flowExecutionKey carried by page, or None."""
        document = markup.parse_document(page.text)

        for selector in self.FLOW_KEY_INPUTS:
            element = markup.select_first(document, selector)
            if element is not None:
                value = (markup.attribute_or(element, "value", "") or "").strip()
                if value:
                    return value

        link = markup.select_first(document, self.FLOW_KEY_LINK)
        if link is not None:
            key = _flow_key_from_str(markup.attribute(link, "href"))
            if key:
                return key

        for meta in markup.select(document, self.META_REFRESH):
            if (markup.attribute_or(meta, "http-equiv", "") or "").lower() != "refresh":
                continue
            content = markup.attribute_or(meta, "content", "") or ""
            idx = content.lower().find("url=")
            if idx >= 0:
                key = _flow_key_from_str(content[idx + 4 :])
                if key:
                    return key

        key = _flow_key_from_str(page.url)
        if key:
            return key
        match = _FLOW_KEY_RE.search(page.text)
        return match.group(1) if match else None

    def _calendar_url_from_values(self, values: list[str], base: str) -> str | None:
        for value in values:
            if value and contains_calendar_hint(value):
                url = resolve_url(value, base)
                if url:
                    return url
        return None

    def _node_values(self, element: Tag, attributes: tuple[str, ...]) -> list[str]:
        values = []
        for name in attributes:
            value = markup.attribute_or(element, name)
            if value:
                values.append(html.unescape(value).strip())
        return values

    def find_calendar_url(self, page: PageSnapshot) -> str | None:
        """Calendar feed URL advertised on page, or None.

        Looks at calendar textareas first, then any textarea or input, then
        links, and finally scans the raw markup for a URL with a calendar hint.
        """
        document = markup.parse_document(page.text)

        candidates: list[Tag] = []
        for selector in self.CALENDAR_TEXTAREAS:
            candidates.extend(markup.select(document, selector))
        candidates.extend(markup.select(document, "textarea"))
        candidates.extend(markup.select(document, "input"))
        for element in candidates:
            values = [markup.text(element)] + self._node_values(element, self.CALENDAR_ATTRIBUTES)
            url = self._calendar_url_from_values(values, page.url)
            if url:
                return url

        for link in markup.select(document, "a[href]"):
            values = self._node_values(link, ("href",)) + [markup.text(link)]
            url = self._calendar_url_from_values(values, page.url)
            if url:
                return url

        for match in _URL_RE.finditer(page.text):
            candidate = html.unescape(match.group(0)).strip()
            if contains_calendar_hint(candidate):
                return candidate
        return None

    def extract_rows(self, page: PageSnapshot) -> list[RawTimetableRow]:
        """Rows of the HTML timetable with their day-group context.

        Raises:
            NotFound: If the timetable table is missing.
            Ambiguous: If the table selector matches more than one table.
        """
        document = markup.parse_document(page.text)
        table = markup.select_one(document, self.config.timetable_table_selector)
        header_rows = {
            id(row) for row in markup.select(table, self.config.timetable_day_header_selector)
        }

        rows: list[RawTimetableRow] = []
        day_header: str | None = None
        header_date: str | None = None
        for index, tr in enumerate(markup.select(table, self.ROWS)):
            cells = [cell for cell in markup.children(tr) if cell.name in ("td", "th")]
            if not cells:
                continue

            only_th = all(cell.name == "th" for cell in cells)
            if id(tr) in header_rows or (only_th and len(cells) == 1):
                day_header = markup.text(tr) or None
                header_date = markup.attribute_or(tr, "data-date") or markup.attribute_or(
                    cells[0], "data-date"
                )
                continue
            if only_th:
                # column captions
                continue

            rows.append(
                RawTimetableRow(
                    cells=tuple(markup.raw_text(cell) for cell in cells),
                    day_header=day_header,
                    header_date=header_date,
                    row_index=index,
                )
            )

        log.debug("timetable_rows_extracted", rows=len(rows))
        return rows

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def timetable_url(self, flow_key: str | None = None) -> str:
        params: dict[str, str] = {}
        if self.config.timetable_flow_id:
            params[FLOW_ID_PARAM] = self.config.timetable_flow_id
        if flow_key:
            params[FLOW_KEY_PARAM] = flow_key
        url = self.session.url(self.config.timetable_path)
        return f"{url}?{urlencode(params)}" if params else url

    def _ensure_authenticated(self, page: PageSnapshot) -> None:
        # a login form on a timetable page means the portal dropped the session
        document = markup.parse_document(page.text)
        if markup.select(document, "input[type=password]"):
            self.session.mark_failed("session_expired")
            log.warning("session_expired", url=page.url)
            raise NotAuthenticated(f"portal returned a login form at {page.url}")

    def navigate(self) -> list[PageSnapshot]:
        """Walk from the landing page to the full timetable page.

        Returns:
            The pages visited, entry page first and full timetable page last.

        Raises:
            FetchError: If a page cannot be fetched.
            NotAuthenticated: If the portal asks for a login again.
        """
        landing = self.session.get(self.config.landing_path)
        self._ensure_authenticated(landing)

        entry_url = self.find_timetable_link(landing) or self.timetable_url()
        entry = self.session.get(entry_url, referer=landing.url)
        self._ensure_authenticated(entry)
        pages = [entry]

        flow_key = (
            self.extract_flow_key(entry)
            or _flow_key_from_str(entry.url)
            or _flow_key_from_str(entry_url)
        )
        if flow_key:
            full = self.session.get(self.timetable_url(flow_key), referer=landing.url)
            self._ensure_authenticated(full)
            pages.append(full)
        else:
            log.info("flow_key_missing", url=entry.url)

        log.info("timetable_page_navigated", url=pages[-1].url, flow_key=bool(flow_key))
        return pages

    def fetch_calendar(self) -> PageSnapshot:
        """Download the ICS feed.

        Raises:
            UnexpectedResponse: If no calendar URL can be found.
            MalformedCalendar: If the feed URL does not return calendar data.
            FetchError: If a page or the feed cannot be fetched.
        """
        if self.config.ics_url:
            ics_url = self.session.url(self.config.ics_url)
            referer = None
        else:
            pages = self.navigate()
            ics_url = None
            for page in reversed(pages):
                ics_url = self.find_calendar_url(page)
                if ics_url:
                    break
            if not ics_url:
                raise UnexpectedResponse("could not locate the calendar URL on the timetable pages")
            referer = pages[-1].url

        log.info("calendar_url_resolved", url=ics_url)
        feed = self.session.get(ics_url, referer=referer)
        if not feed.is_calendar:
            self._ensure_authenticated(feed)
            raise MalformedCalendar(
                f"{ics_url} returned {feed.content_type or 'unknown content'}, not a calendar"
            )
        return feed

    def fetch_rows(self) -> list[RawTimetableRow]:
        """Download the HTML timetable and extract its rows."""
        pages = self.navigate()
        return self.extract_rows(pages[-1])
