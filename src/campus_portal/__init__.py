"""Campus portal client: form login and personal timetable retrieval.

Logs in through the portal's token-guarded HTML form, keeps the cookie
session, and reads the timetable from either the ICS feed or the HTML
listing into TimetableEntry objects.
"""

from campus_portal.client import PortalClient, format_entries
from campus_portal.config import PortalConfig, get_config
from campus_portal.logging import setup_logging
from campus_portal.models import Recurrence, SkippedRecord, TimetableEntry, TimetableResult
from campus_portal.session import AuthState

__all__ = [
    "PortalClient",
    "PortalConfig",
    "get_config",
    "setup_logging",
    "format_entries",
    "TimetableEntry",
    "TimetableResult",
    "SkippedRecord",
    "Recurrence",
    "AuthState",
]
