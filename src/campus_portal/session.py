"""Portal session: authentication state plus the HTTP transport.

A Session is owned by exactly one PortalClient. The cookie store belongs to
the underlying requests.Session and is only ever changed by the transport
while it processes a request/response pair.

State machine:
    UNAUTHENTICATED --login--> AUTHENTICATING --ok----> AUTHENTICATED
                               AUTHENTICATING --error-> FAILED(reason)
Calling login again from any state starts over at AUTHENTICATING.
"""

from enum import Enum

import requests

from campus_portal.errors import FetchError, NotAuthenticated, RateLimitError
from campus_portal.logging import get_logger
from campus_portal.models import PageSnapshot
from campus_portal.utils import (
    BROWSER_HEADERS,
    FORM_HEADERS,
    NAVIGATION_HEADERS,
    origin_of,
    resolve_url,
)

logger = get_logger(__name__)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class Session:
    """Authentication state and cookie-carrying HTTP access to one portal.

    Args:
        base_url: Portal base URL; relative paths are resolved against it.
        http: requests.Session (or compatible object) to send requests with.
        timeout: Per-request timeout in seconds.
        user_agent: User-Agent header to present.
    """

    def __init__(
        self,
        base_url: str,
        http: requests.Session | None = None,
        *,
        timeout: float = 60.0,
        user_agent: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.http = http if http is not None else requests.Session()
        self.timeout = timeout
        self.http.headers.update(BROWSER_HEADERS)
        if user_agent:
            self.http.headers["User-Agent"] = user_agent

        self.state = AuthState.UNAUTHENTICATED
        self.failure_reason: str | None = None

        logger.debug("session_initialized", base_url=self.base_url)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def begin_login(self) -> None:
        self.state = AuthState.AUTHENTICATING
        self.failure_reason = None

    def mark_authenticated(self) -> None:
        if self.state is not AuthState.AUTHENTICATING:
            raise RuntimeError(f"cannot authenticate from state {self.state.value}")
        self.state = AuthState.AUTHENTICATED

    def mark_failed(self, reason: str) -> None:
        self.state = AuthState.FAILED
        self.failure_reason = reason

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    def require_authenticated(self) -> None:
        """Raise NotAuthenticated unless the handshake has completed."""
        if not self.is_authenticated:
            detail = f" ({self.failure_reason})" if self.failure_reason else ""
            raise NotAuthenticated(f"session is {self.state.value}{detail}")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def url(self, path_or_url: str) -> str:
        resolved = resolve_url(path_or_url, self.base_url)
        if resolved is None:
            raise ValueError(f"Not an http(s) URL: {path_or_url!r}")
        return resolved

    def get(self, url: str, *, referer: str | None = None) -> PageSnapshot:
        """GET a page, following redirects.

        Raises:
            FetchError: On timeouts, connection errors and 5xx responses.
            RateLimitError: On 429 responses.
        """
        headers = dict(NAVIGATION_HEADERS)
        if referer:
            headers["Referer"] = referer
        return self._send("GET", self.url(url), headers=headers)

    def post_form(
        self, url: str, data: dict[str, str], *, referer: str | None = None
    ) -> PageSnapshot:
        """POST form-encoded data, following redirects.

        Raises:
            FetchError: On timeouts, connection errors and 5xx responses.
            RateLimitError: On 429 responses.
        """
        target = self.url(url)
        headers = dict(FORM_HEADERS)
        headers["Origin"] = origin_of(target)
        if referer:
            headers["Referer"] = referer
        return self._send("POST", target, headers=headers, data=data)

    def _send(self, method: str, url: str, **kwargs) -> PageSnapshot:
        # only method and url are logged; form bodies carry credentials
        logger.debug("http_request", method=method, url=url)
        try:
            response = self.http.request(
                method, url, timeout=self.timeout, allow_redirects=True, **kwargs
            )
        except requests.Timeout as e:
            logger.warning("http_timeout", method=method, url=url)
            raise FetchError(f"{method} {url} timed out", url=url) from e
        except requests.RequestException as e:
            logger.warning("http_error", method=method, url=url, error=type(e).__name__)
            raise FetchError(f"{method} {url} failed: {e}", url=url) from e

        status = response.status_code
        if status == 429:
            raise RateLimitError(f"{method} {url} rate limited", url=url, status_code=status)
        if status >= 500:
            raise FetchError(f"{method} {url} returned {status}", url=url, status_code=status)

        logger.debug("http_response", method=method, url=response.url, status=status)
        return PageSnapshot(
            url=response.url or url,
            status_code=status,
            text=response.text,
            content_type=response.headers.get("Content-Type", ""),
        )

    def close(self) -> None:
        self.http.close()
