from pathlib import Path

import pytest
from requests.structures import CaseInsensitiveDict

from campus_portal.config import PortalConfig

FIXTURES = Path(__file__).parent / "fixtures"

BASE_URL = "https://portal.example.edu"
LOGIN_URL = f"{BASE_URL}/portal/login"
LOGIN_POST_URL = f"{BASE_URL}/portal/login/submit"
LANDING_URL = f"{BASE_URL}/portal/home"
TIMETABLE_ENTRY_URL = f"{BASE_URL}/plan/timetable?_flowId=timetable-flow"
TIMETABLE_FULL_URL = f"{BASE_URL}/plan/timetable?_flowId=timetable-flow&_flowExecutionKey=e1s1"
ICS_URL = f"{BASE_URL}/export/calendar.ics?user=abc&hash=xyz"


def load_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


class FakeResponse:
    def __init__(self, text="", status_code=200, url="", content_type="text/html; charset=utf-8"):
        self.text = text
        self.status_code = status_code
        self.url = url
        self.headers = CaseInsensitiveDict({"Content-Type": content_type})


class FakeHttp:
    """Stands in for requests.Session: canned responses keyed by (method, url)."""

    def __init__(self):
        self.headers = {}
        self.routes = {}
        self.calls = []
        self.closed = False

    def add(self, method, url, response=None, *, raises=None, **kwargs):
        if response is None and raises is None:
            response = FakeResponse(url=url, **kwargs)
        self.routes[(method, url)] = raises if raises is not None else response
        return self

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        route = self.routes.get((method, url))
        if route is None:
            return FakeResponse("not found", status_code=404, url=url)
        if isinstance(route, BaseException):
            raise route
        return route

    def close(self):
        self.closed = True

    def posted(self):
        return [kwargs.get("data") for method, _, kwargs in self.calls if method == "POST"]


@pytest.fixture
def config():
    return PortalConfig(
        _env_file=None,
        base_url=BASE_URL,
        login_path="/portal/login",
        landing_path="/portal/home",
        timetable_path="/plan/timetable",
        timetable_flow_id="timetable-flow",
        timetable_link_hint="plan/timetable",
        timezone="Europe/Berlin",
        default_slot_minutes=90,
    )


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def portal(http):
    """A FakeHttp wired as a complete, working portal."""
    http.add("GET", LOGIN_URL, text=load_fixture("login_page.html"))
    http.add(
        "POST",
        LOGIN_POST_URL,
        FakeResponse(load_fixture("landing_page.html"), url=LANDING_URL),
    )
    http.add("GET", LANDING_URL, text=load_fixture("landing_page.html"))
    http.add("GET", TIMETABLE_ENTRY_URL, text=load_fixture("timetable_entry.html"))
    http.add("GET", TIMETABLE_FULL_URL, text=load_fixture("timetable_full.html"))
    http.add(
        "GET",
        ICS_URL,
        text=load_fixture("timetable.ics"),
        content_type="text/calendar; charset=utf-8",
    )
    return http
