"""Error hierarchy for portal access and timetable parsing.

Failures are split into transient ones (the caller may retry the whole
operation) and permanent ones (retrying will not help). Per-record problems
such as MalformedEntry are recovered by the normalizer; everything else is
raised to the caller.

Example usage with a caller-side retry:
    try:
        result = client.get_timetable()
    except TransientError:
        ...  # network hiccup, safe to call again
    except AuthenticationError:
        ...  # log in again
"""


class PortalError(Exception):
    """Base exception for all portal errors."""

    pass


class TransientError(PortalError):
    """Temporary failure that may succeed on retry."""

    pass


class FetchError(TransientError):
    """Transport failure: timeout, connection refused, 5xx response.

    Attributes:
        url: The URL that was being fetched, if known.
        status_code: The HTTP status code, if a response was received.
    """

    def __init__(
        self, message: str, *, url: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RateLimitError(FetchError):
    """Portal answered 429 Too Many Requests.

    Inherits from FetchError so it is still retryable, but lets the caller
    pick a longer backoff.
    """

    pass


class PermanentError(PortalError):
    """Failure that won't succeed on retry."""

    pass


class MarkupError(PermanentError):
    """Markup query contract violation (selector or page structure)."""

    pass


class NotFound(MarkupError):
    """No element (or attribute) matched where exactly one was required."""

    pass


class Ambiguous(MarkupError):
    """More than one element matched where exactly one was required."""

    pass


class SelectorError(MarkupError):
    """The selector expression itself could not be parsed."""

    pass


class MalformedCalendar(PermanentError):
    """Structurally broken ICS payload. Fatal to the fetch it came from."""

    def __init__(self, message: str, *, line_number: int | None = None) -> None:
        super().__init__(message)
        self.line_number = line_number


class MalformedEntry(PermanentError):
    """A single calendar event or table row that could not be normalized.

    Recovered by skipping the record; never aborts a batch.
    """

    def __init__(self, message: str, *, reference: int | None = None) -> None:
        super().__init__(message)
        self.reference = reference


class AuthenticationError(PermanentError):
    """Login failed or the session is not usable for data access."""

    pass


class InvalidCredentials(AuthenticationError):
    """Portal rejected the username/password pair."""

    pass


class UnexpectedResponse(AuthenticationError):
    """Portal answered with a page the handshake does not recognise."""

    pass


class LoginFormError(UnexpectedResponse):
    """The login page did not contain the expected form or hidden fields."""

    pass


class NotAuthenticated(AuthenticationError):
    """Data access attempted on a session that is not authenticated."""

    pass
