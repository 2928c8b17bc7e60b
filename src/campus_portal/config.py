"""Portal configuration loaded from environment variables.

Every selector and marker the handshake and page objects rely on lives here,
so a portal layout change is a configuration change rather than a code change.
"""

from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

HTML_COLUMN_NAMES: frozenset[str] = frozenset(
    {"date", "time", "start", "end", "title", "location", "note", "ignore"}
)


class PortalConfig(BaseSettings):
    """Portal configuration loaded from environment variables.

    Settings are read from PORTAL_* environment variables with defaults that
    match a HISinOne campus portal. For local development, create a .env file
    in the project root.
    """

    # Portal endpoints
    base_url: str = Field(
        default="https://campusportal.ur.de",
        description="Institutional portal base URL",
    )
    login_path: str = Field(
        default="/qisserver/pages/cs/sys/portal/hisinoneStartPage.faces",
        description="Path of the page carrying the login form",
    )
    landing_path: str = Field(
        default="/qisserver/pages/cs/sys/portal/hisinoneStartPage.faces",
        description="Path of the page shown after login (holds the timetable menu)",
    )
    timetable_path: str = Field(
        default="/qisserver/pages/plan/individualTimetable.xhtml",
        description="Fallback timetable page path when no menu link is found",
    )
    timetable_flow_id: str | None = Field(
        default="individualTimetableSchedule-flow",
        description="Value of the _flowId query parameter for the timetable page",
    )
    timetable_link_hint: str = Field(
        default="individualtimetable",
        description="Substring identifying the timetable link href",
    )
    ics_url: str | None = Field(
        default=None,
        description="Known calendar feed URL; skips calendar URL discovery when set",
    )

    # Login form
    login_form_selector: str = Field(
        default="form:has(input[type=password])",
        description="CSS selector for the credential form on the login page",
    )
    username_field: str = Field(
        default="asdf",
        description="Username input name used when the form does not reveal one",
    )
    password_field: str = Field(
        default="fdsa",
        description="Password input name used when the form does not reveal one",
    )
    required_hidden_fields: list[str] = Field(
        default_factory=lambda: ["ajax-token"],
        description="Hidden inputs that must be present and non-empty",
    )

    # Login outcome markers
    invalid_credentials_selector: str = Field(
        default=".error, .alert-danger, #loginError",
        description="CSS selector for the 'invalid credentials' message",
    )
    invalid_credentials_text: str | None = Field(
        default=None,
        description="Optional text fragment the failure marker must contain",
    )
    authenticated_selector: str | None = Field(
        default="a[href*='logout'], #logoutButton",
        description="CSS selector present only on authenticated pages",
    )
    authenticated_url_fragment: str | None = Field(
        default=None,
        description="URL fragment identifying the authenticated landing page",
    )

    # Timetable
    timetable_source: Literal["ics", "html"] = Field(
        default="ics",
        description="Which timetable representation to fetch",
    )
    timetable_table_selector: str = Field(
        default="table.timetable",
        description="CSS selector for the HTML timetable table",
    )
    timetable_day_header_selector: str = Field(
        default="tr.day-header",
        description="CSS selector for day-group header rows inside the table",
    )
    html_columns: list[str] = Field(
        default_factory=lambda: ["date", "time", "title", "location", "note"],
        description="Meaning of each HTML table column, in order",
    )
    timezone: str = Field(
        default="Europe/Berlin",
        description="Institutional timezone for floating timestamps",
    )
    default_slot_minutes: int = Field(
        default=90,
        gt=0,
        description="Lecture slot length used when an event has no end time",
    )

    # Transport
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-request timeout passed to the HTTP client",
    )
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:128.0) "
            "Gecko/20100101 Firefox/128.0"
        ),
        description="User-Agent header sent with every request",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = {
        "env_prefix": "PORTAL_",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {value!r}") from e
        return value

    @field_validator("html_columns")
    @classmethod
    def _check_columns(cls, value: list[str]) -> list[str]:
        columns = [c.strip().lower() for c in value]
        unknown = [c for c in columns if c not in HTML_COLUMN_NAMES]
        if unknown:
            raise ValueError(
                f"Unknown html column(s) {unknown}. Valid: {sorted(HTML_COLUMN_NAMES)}"
            )
        if "title" not in columns:
            raise ValueError("html_columns must contain a 'title' column")
        return columns

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


_config: PortalConfig | None = None


def get_config() -> PortalConfig:
    """Get the portal configuration loaded from the environment.

    Returns:
        PortalConfig: Cached configuration instance
    """
    global _config
    if _config is None:
        _config = PortalConfig()
    return _config
