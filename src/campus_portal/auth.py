"""Login handshake against a token-guarded HTML form.

The handshake is four strictly ordered steps:
  1. GET the login page.
  2. Extract the credential form: hidden anti-forgery fields (echoed back
     unmodified), the username/password field names, the submission URL.
  3. POST hidden fields plus credentials, form-encoded, following redirects.
  4. Validate the response against the configured failure/success markers.

extract_login_form and validate_login_response are pure functions over a
PageSnapshot, so every step can be tested without a network.
"""

from enum import Enum

from bs4 import Tag

from campus_portal import markup
from campus_portal.config import PortalConfig
from campus_portal.errors import (
    Ambiguous,
    FetchError,
    InvalidCredentials,
    LoginFormError,
    NotFound,
    UnexpectedResponse,
)
from campus_portal.logging import get_logger
from campus_portal.models import LoginForm, PageSnapshot
from campus_portal.session import Session
from campus_portal.utils import resolve_url

logger = get_logger(__name__)

_USERNAME_INPUT_TYPES: frozenset[str] = frozenset({"text", "email", ""})


class HandshakeStep(str, Enum):
    FETCH_LOGIN_PAGE = "fetch_login_page"
    EXTRACT_FORM = "extract_form"
    SUBMIT = "submit"
    VALIDATE = "validate"
    DONE = "done"


def _input_type(element: Tag) -> str:
    return (markup.attribute_or(element, "type", "") or "").strip().lower()


def find_credential_fields(form: Tag, config: PortalConfig) -> tuple[str, str]:
    """Names of the username and password inputs of a login form.

    The first text/email input and the first password input win; the
    configured names are used when the form does not reveal them.
    """
    user_field: str | None = None
    pass_field: str | None = None
    for element in markup.select(form, "input[name]"):
        input_type = _input_type(element)
        name = markup.attribute(element, "name")
        if input_type == "password" and pass_field is None:
            pass_field = name
        elif input_type in _USERNAME_INPUT_TYPES and user_field is None:
            user_field = name
    return user_field or config.username_field, pass_field or config.password_field


def extract_login_form(page: PageSnapshot, config: PortalConfig) -> LoginForm:
    """Read the credential form from the login page.

    Raises:
        LoginFormError: If the form is missing or ambiguous, or a required
            hidden field is absent or empty.
    """
    document = markup.parse_document(page.text)
    try:
        form = markup.select_one(document, config.login_form_selector)
    except NotFound as e:
        raise LoginFormError(
            f"login form {config.login_form_selector!r} not found on {page.url}"
        ) from e
    except Ambiguous as e:
        raise LoginFormError(str(e)) from e

    hidden: dict[str, str] = {}
    for element in markup.select(form, "input"):
        if _input_type(element) != "hidden":
            continue
        name = markup.attribute_or(element, "name")
        if not name:
            continue
        hidden[name] = markup.attribute_or(element, "value", "") or ""

    missing = [name for name in config.required_hidden_fields if not hidden.get(name)]
    if missing:
        raise LoginFormError(f"hidden field(s) {missing} not found on login form")

    action = resolve_url(markup.attribute_or(form, "action", "") or "", page.url) or page.url
    user_field, pass_field = find_credential_fields(form, config)

    return LoginForm(
        action=action,
        hidden_fields=hidden,
        username_field=user_field,
        password_field=pass_field,
    )


def validate_login_response(page: PageSnapshot, config: PortalConfig) -> None:
    """Check that the login POST landed on an authenticated page.

    Raises:
        InvalidCredentials: If the portal's failure marker is present.
        UnexpectedResponse: If the page is neither the failure page nor a
            recognised authenticated page.
    """
    document = markup.parse_document(page.text)

    marker = markup.select_first(document, config.invalid_credentials_selector)
    if marker is not None:
        fragment = config.invalid_credentials_text
        if not fragment or fragment.lower() in markup.text(marker).lower():
            raise InvalidCredentials("portal rejected the supplied credentials")

    if not page.ok:
        raise UnexpectedResponse(f"login returned HTTP {page.status_code} at {page.url}")

    if config.authenticated_url_fragment and config.authenticated_url_fragment not in page.url:
        raise UnexpectedResponse(f"login ended on unexpected page {page.url}")

    if config.authenticated_selector:
        if markup.select_first(document, config.authenticated_selector) is None:
            raise UnexpectedResponse(
                f"authenticated marker {config.authenticated_selector!r} missing on {page.url}"
            )
    elif not config.authenticated_url_fragment:
        if markup.select(document, config.login_form_selector):
            raise UnexpectedResponse(f"login form still present on {page.url}")


def failure_reason(error: BaseException) -> str:
    if isinstance(error, InvalidCredentials):
        return "invalid_credentials"
    if isinstance(error, LoginFormError):
        return "login_form_error"
    if isinstance(error, UnexpectedResponse):
        return "unexpected_response"
    if isinstance(error, FetchError):
        return "fetch_error"
    if isinstance(error, Exception):
        return type(error).__name__
    return "cancelled"


class LoginHandshake:
    """Drives one login attempt and records its progress in step.

    Args:
        session: Session to authenticate; its state is updated in place.
        config: Portal configuration with the form selector and markers.
    """

    def __init__(self, session: Session, config: PortalConfig) -> None:
        self.session = session
        self.config = config
        self.step = HandshakeStep.FETCH_LOGIN_PAGE

    def run(self, username: str, password: str) -> PageSnapshot:
        """Perform the full handshake from the first step.

        Any error, including interruption by the caller, leaves the session
        FAILED so a half-finished login is never treated as usable.

        Returns:
            The page the login POST ended on.

        Raises:
            InvalidCredentials, UnexpectedResponse, LoginFormError, FetchError
        """
        self.session.begin_login()
        self.step = HandshakeStep.FETCH_LOGIN_PAGE
        logger.info("login_started", base_url=self.session.base_url)

        try:
            login_page = self.session.get(self.config.login_path)

            self.step = HandshakeStep.EXTRACT_FORM
            form = extract_login_form(login_page, self.config)
            logger.debug(
                "login_form_extracted",
                action=form.action,
                hidden_fields=sorted(form.hidden_fields),
            )

            self.step = HandshakeStep.SUBMIT
            # credentials go in the body even if the form declares method="get"
            response = self.session.post_form(
                form.action, form.payload(username, password), referer=login_page.url
            )

            self.step = HandshakeStep.VALIDATE
            validate_login_response(response, self.config)
        except BaseException as e:
            reason = failure_reason(e)
            self.session.mark_failed(reason)
            logger.warning("login_failed", step=self.step.value, reason=reason)
            raise

        self.step = HandshakeStep.DONE
        self.session.mark_authenticated()
        logger.info("login_succeeded", url=response.url)
        return response
