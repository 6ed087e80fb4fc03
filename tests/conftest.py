"""Shared fakes for the CalDAV client and the feed HTTP session."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock
from urllib.parse import quote

import icalendar
import pytest
import requests

SCHOOL_URL = "https://dav.example.com/calendars/alice/school/"

MIDTERM_FEED = (
    b"BEGIN:VCALENDAR\r\n"
    b"VERSION:2.0\r\n"
    b"PRODID:-//eCampus//Schedule//EN\r\n"
    b"BEGIN:VEVENT\r\n"
    b"SUMMARY:Midterm Exam\r\n"
    b"DTSTART:20240315T090000Z\r\n"
    b"END:VEVENT\r\n"
    b"END:VCALENDAR\r\n"
)


class FakeEventObject:
    """Stands in for caldav.Event: a URL, a payload and save()."""

    def __init__(self, calendar: FakeCalendarHandle, url: str, data: str) -> None:
        self.calendar = calendar
        self.url = url
        self.data = data

    @property
    def icalendar_component(self):
        return icalendar.Calendar.from_ical(self.data).walk("VEVENT")[0]

    def save(self) -> FakeEventObject:
        self.calendar.check_failure(self.data)
        self.calendar.writes.append(("update", self.url, self.data))
        return self


class FakeCalendarHandle:
    """Stands in for caldav.Calendar and records every write."""

    def __init__(self, name: str | None, url: str) -> None:
        self.name = name
        self.url = url
        self.objects: dict[str, FakeEventObject] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.fail_summaries: set[str] = set()
        self.events_error: Exception | None = None

    def check_failure(self, payload: str) -> None:
        from caldav.lib.error import PutError

        for summary in self.fail_summaries:
            if f"SUMMARY:{summary}\r\n" in payload:
                raise PutError(reason=f"server refused {summary}")

    def save_event(self, payload: str) -> FakeEventObject:
        """Create like caldav: the resource lives at <calendar>/<UID>.ics.

        A payload without UID gets a generated one; a known UID overwrites.
        """
        self.check_failure(payload)
        vevent = icalendar.Calendar.from_ical(payload).walk("VEVENT")[0]
        uid = str(vevent.get("UID") or "")
        if not uid:
            uid = str(uuid.uuid4())
            payload = payload.replace("BEGIN:VEVENT\r\n", f"BEGIN:VEVENT\r\nUID:{uid}\r\n", 1)
        url = f"{self.url}{quote(uid)}.ics"
        obj = FakeEventObject(self, url, payload)
        self.objects[url] = obj
        self.writes.append(("create", url, payload))
        return obj

    def event_by_url(self, href: str) -> FakeEventObject:
        return self.objects[href]

    def events(self) -> list[FakeEventObject]:
        if self.events_error is not None:
            raise self.events_error
        return list(self.objects.values())


class FakeClientFactory:
    """Callable replacing caldav.DAVClient; remembers the arguments it got."""

    def __init__(self, calendars: list[FakeCalendarHandle], error: Exception | None = None) -> None:
        self.calendars = calendars
        self.error = error
        self.calls: list[dict] = []
        self.clients: list[MagicMock] = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        client = MagicMock()
        self.clients.append(client)
        if self.error is not None:
            client.principal.side_effect = self.error
        else:
            client.principal.return_value.calendars.return_value = self.calendars
        return client


def make_session(body: bytes = MIDTERM_FEED, status: int = 200, error: Exception | None = None):
    """Build a fake requests.Session whose get() returns ``body``."""
    session = MagicMock(spec=requests.Session)
    if error is not None:
        session.get.side_effect = error
        return session
    response = MagicMock()
    response.content = body
    response.status_code = status
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} Client Error")
    session.get.return_value = response
    return session


@pytest.fixture()
def school() -> FakeCalendarHandle:
    return FakeCalendarHandle("School", SCHOOL_URL)


@pytest.fixture()
def client_factory(school: FakeCalendarHandle) -> FakeClientFactory:
    work = FakeCalendarHandle("Work", "https://dav.example.com/calendars/alice/work/")
    return FakeClientFactory([work, school])
