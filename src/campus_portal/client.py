"""PortalClient - one authenticated portal session and its timetable.

Typical use:
    config = PortalConfig()
    setup_logging(config.log_json, config.log_level)
    with PortalClient(config) as client:
        client.login(username, password)
        result = client.get_timetable()
        print(format_entries(result.entries))
        if result.skipped_count:
            ...  # some records could not be read
"""

from collections.abc import Sequence

import requests

from campus_portal.auth import LoginHandshake
from campus_portal.config import PortalConfig, get_config
from campus_portal.logging import get_logger
from campus_portal.models import TimetableEntry, TimetableResult
from campus_portal.normalizer import EntryNormalizer
from campus_portal.pages.timetable import TimetablePage
from campus_portal.session import AuthState, Session

log = get_logger(__name__)

EMPTY_TIMETABLE = "No timetable entries found."


def format_entries(entries: Sequence[TimetableEntry]) -> str:
    """Render entries one per line, in the order given.

    Output depends only on the entries (numeric dates, no locale names), so
    rendering the same sequence twice yields the same text.
    """
    if not entries:
        return EMPTY_TIMETABLE
    return "\n".join(str(entry) for entry in entries)


class PortalClient:
    """Façade over login, timetable retrieval and normalization.

    Each client owns exactly one Session. Use one client per account; clients
    share nothing, so several may live in the same process.

    Args:
        config: Portal configuration. Defaults to the environment-loaded config.
        http: requests.Session-compatible transport. A fresh requests.Session
            is created when omitted.
    """

    def __init__(
        self, config: PortalConfig | None = None, http: requests.Session | None = None
    ) -> None:
        self.config = config if config is not None else get_config()
        self.session = Session(
            self.config.base_url,
            http,
            timeout=self.config.request_timeout_seconds,
            user_agent=self.config.user_agent,
        )
        self.normalizer = EntryNormalizer.from_config(self.config)

    @property
    def state(self) -> AuthState:
        return self.session.state

    @property
    def failure_reason(self) -> str | None:
        return self.session.failure_reason

    def login(self, username: str, password: str) -> None:
        """Run the full login handshake.

        Always starts from the login page, whatever the current state.

        Raises:
            InvalidCredentials: If the portal rejects the credentials.
            LoginFormError: If the login page lacks the expected form/fields.
            UnexpectedResponse: If the login lands on an unrecognised page.
            FetchError: If the portal cannot be reached (retryable).
        """
        LoginHandshake(self.session, self.config).run(username, password)

    def get_timetable(self) -> TimetableResult:
        """Fetch and normalize the personal timetable.

        The source (ICS feed or HTML table) is chosen by
        config.timetable_source; both paths produce the same entry model.

        Returns:
            TimetableResult with sorted, de-duplicated entries and the
            records that had to be skipped.

        Raises:
            NotAuthenticated: If login() has not succeeded.
            MalformedCalendar: If the ICS payload is structurally broken.
            NotFound: If the HTML timetable table is missing.
            FetchError: If the portal cannot be reached (retryable).
        """
        self.session.require_authenticated()
        page = TimetablePage(self.session, self.config)

        if self.config.timetable_source == "ics":
            feed = page.fetch_calendar()
            result = self.normalizer.normalize_calendar(feed.text)
        else:
            result = self.normalizer.normalize_rows(page.fetch_rows())

        log.info(
            "timetable_fetched",
            source=result.source,
            entries=len(result.entries),
            skipped=result.skipped_count,
        )
        if result.skipped_count:
            log.warning(
                "records_skipped",
                source=result.source,
                count=result.skipped_count,
                reasons=sorted({s.reason for s in result.skipped}),
            )
        return result

    @staticmethod
    def format_entries(entries: Sequence[TimetableEntry]) -> str:
        return format_entries(entries)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "PortalClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
