#!/usr/bin/env python3
"""
eCampus CalDAV Sync Script

This script downloads an iCalendar feed (such as an eCampus schedule export)
and writes its events into a named calendar on a CalDAV server.
It runs once by default, or repeatedly when a sync interval is configured.
"""

import argparse
import hashlib
import logging
import os
import sys
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import caldav
import icalendar
import pytz
import requests
from caldav.lib.error import DAVError
from icalendar.parser import Contentline, Contentlines, Parameters

logger = logging.getLogger(__name__)

PRODID = "-//ecampus-caldav-sync//EN"
PLACEHOLDER_TITLE = "Untitled event"
SYNC_KEY_PROPERTY = "X-ECAMPUS-SYNC-KEY"
SOURCE_UID_PROPERTY = "X-ECAMPUS-SOURCE-UID"

# Names the destination server or this tool may interpret. They are copied
# through unchanged; renaming or rewriting them belongs in map_event.
# Property names keep the case used in the feed. Parameter names come out
# upper-cased because icalendar's Parameters is a case-insensitive dict.
RESERVED_PROPERTY_NAMES = frozenset({"UID", "DTSTAMP", "SEQUENCE", SYNC_KEY_PROPERTY, SOURCE_UID_PROPERTY})

IDENTITY_DEDUP = "dedup"
IDENTITY_ALWAYS_CREATE = "always_create"
IDENTITY_POLICIES = (IDENTITY_DEDUP, IDENTITY_ALWAYS_CREATE)

FAILURE_ABORT = "abort"
FAILURE_CONTINUE = "continue"
FAILURE_POLICIES = (FAILURE_ABORT, FAILURE_CONTINUE)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_FAILED = "failed"

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_CONFIG_FILE = "config.env"


# Configure logging with rotation
def setup_logging(max_bytes=10*1024*1024, backup_count=5, log_file='ecampus_sync.log'):
    """
    Setup logging with file rotation to prevent large log files.

    Args:
        max_bytes: Maximum size of each log file in bytes (default: 10MB)
        backup_count: Number of backup files to keep (default: 5)
        log_file: Name of the log file (default: ecampus_sync.log)
    """
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # Clear existing handlers to avoid duplicates when called again from main()
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG)

    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    return logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class SyncError(Exception):
    """Base error for everything that ends a sync run."""


class ConfigError(SyncError):
    """Raised when required settings are missing or malformed."""


class DiscoveryError(SyncError):
    """Raised when calendars cannot be listed on the CalDAV server."""


class CalendarNotFoundError(SyncError):
    """Raised when no calendar carries the requested display name."""

    def __init__(self, name: str, available: Sequence[str]):
        self.name = name
        self.available = list(available)
        listed = ", ".join(repr(n) for n in self.available) or "none"
        super().__init__(
            f"Calendar {name!r} was not found. Available calendars: {listed}"
        )


class FetchError(SyncError):
    """Raised when the source feed cannot be downloaded."""


class ParseError(SyncError):
    """Raised when the source feed is not a valid iCalendar document."""


class EmptyFeedError(SyncError):
    """Raised when the source feed parses but holds no calendar object."""


class PersistenceError(SyncError):
    """Raised when one event cannot be written to the destination calendar."""

    def __init__(self, summary: str, reason: str):
        self.summary = summary
        self.reason = reason
        self.report: Optional["SyncReport"] = None
        super().__init__(f"Unable to save event '{summary}': {reason}")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Property:
    """One iCalendar property; ``value`` is kept in its wire form."""
    name: str
    value: Optional[str]
    params: Tuple[Tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class ComponentGroup:
    """A nested component such as VALARM or VTIMEZONE."""
    name: str
    properties: Tuple[Property, ...] = ()
    children: Tuple["ComponentGroup", ...] = ()


@dataclass(frozen=True)
class SourceEvent:
    properties: Tuple[Property, ...] = ()
    children: Tuple[ComponentGroup, ...] = ()

    def find(self, name: str) -> Optional[Property]:
        """Return the first property called ``name`` (case-insensitive)."""
        wanted = name.upper()
        for prop in self.properties:
            if prop.name.upper() == wanted:
                return prop
        return None

    @property
    def summary(self) -> str:
        prop = self.find("SUMMARY")
        return prop.value if prop is not None and prop.value else PLACEHOLDER_TITLE


@dataclass(frozen=True)
class Feed:
    """The first calendar object of a parsed feed."""
    events: Tuple[SourceEvent, ...] = ()
    timezones: Tuple[ComponentGroup, ...] = ()


@dataclass(frozen=True)
class DestinationEvent:
    calendar_url: str
    properties: Tuple[Property, ...] = ()
    children: Tuple[ComponentGroup, ...] = ()
    identity: Optional[str] = None

    @property
    def summary(self) -> str:
        for prop in self.properties:
            if prop.name.upper() == "SUMMARY" and prop.value:
                return prop.value
        return PLACEHOLDER_TITLE


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Calendar:
    """A destination calendar found by discovery.

    ``handle`` is the caldav calendar object and ``client`` the DAVClient
    that owns its HTTP session.
    """
    name: str
    url: str
    handle: Any = field(default=None, repr=False, compare=False)
    client: Any = field(default=None, repr=False, compare=False)

    def close(self):
        if self.client is not None:
            self.client.close()


@dataclass
class ExistingEvents:
    """Event URLs already on the destination, by sync key and by UID."""
    by_key: Dict[str, str] = field(default_factory=dict)
    by_uid: Dict[str, str] = field(default_factory=dict)

    def lookup(self, key: str, uid: Optional[str]) -> Optional[str]:
        if key in self.by_key:
            return self.by_key[key]
        if uid:
            return self.by_uid.get(uid)
        return None


@dataclass
class EventOutcome:
    index: int
    summary: str
    action: str
    url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SyncReport:
    calendar: str
    outcomes: List[EventOutcome] = field(default_factory=list)

    def _count(self, action: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.action == action)

    @property
    def created(self) -> int:
        return self._count(ACTION_CREATED)

    @property
    def updated(self) -> int:
        return self._count(ACTION_UPDATED)

    @property
    def failed(self) -> int:
        return self._count(ACTION_FAILED)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def __str__(self) -> str:
        return (
            f"{len(self.outcomes)} events: {self.created} created, "
            f"{self.updated} updated, {self.failed} failed"
        )


@dataclass(frozen=True)
class SyncConfig:
    server_url: str
    credentials: Credentials
    calendar_name: str
    ics_url: str
    identity_policy: str = IDENTITY_DEDUP
    failure_policy: str = FAILURE_ABORT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    sync_interval: int = 0


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(config_file: str = DEFAULT_CONFIG_FILE) -> Dict[str, str]:
    """
    Load configuration from a file.

    Args:
        config_file: Path to the configuration file

    Returns:
        Dictionary containing configuration values
    """
    config = {}

    if not os.path.exists(config_file):
        logger.info(f"Config file {config_file} not found, using environment variables only")
        return config

    logger.info(f"Loading configuration from {config_file}")
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                # Skip empty lines and comments
                if not line or line.startswith('#'):
                    continue

                # Parse KEY=VALUE format
                if '=' in line:
                    key, value = line.split('=', 1)
                    key = key.strip()
                    value = value.strip()

                    # Remove quotes if present
                    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                        value = value[1:-1]

                    config[key] = value
    except OSError as e:
        raise ConfigError(f"Error reading config file {config_file}: {e}") from e

    logger.info(f"Loaded {len(config)} configuration values from {config_file}")
    return config


def build_config(args: argparse.Namespace, file_config: Dict[str, str],
                 environ: Optional[Dict[str, str]] = None) -> SyncConfig:
    """Merge command-line flags, config file values and environment variables.

    Flags win over the config file, which wins over the environment.
    """
    if environ is None:
        environ = dict(os.environ)

    def pick(attr: str, key: str, default: Optional[str] = None) -> Optional[str]:
        value = getattr(args, attr, None)
        if value not in (None, ''):
            return str(value)
        return file_config.get(key) or environ.get(key) or default

    values = {
        'CALDAV_URL': pick('server', 'CALDAV_URL'),
        'CALDAV_USERNAME': pick('username', 'CALDAV_USERNAME'),
        'CALDAV_PASSWORD': pick('password', 'CALDAV_PASSWORD'),
        'CALENDAR_NAME': pick('calendar', 'CALENDAR_NAME'),
        'ICS_URL': pick('ecampus_server', 'ICS_URL'),
    }
    missing = [key for key, value in values.items() if not value]
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    identity_policy = pick('identity_policy', 'IDENTITY_POLICY', IDENTITY_DEDUP)
    if identity_policy not in IDENTITY_POLICIES:
        raise ConfigError(
            f"IDENTITY_POLICY must be one of {', '.join(IDENTITY_POLICIES)}, got {identity_policy!r}"
        )
    failure_policy = pick('failure_policy', 'FAILURE_POLICY', FAILURE_ABORT)
    if failure_policy not in FAILURE_POLICIES:
        raise ConfigError(
            f"FAILURE_POLICY must be one of {', '.join(FAILURE_POLICIES)}, got {failure_policy!r}"
        )

    try:
        request_timeout = float(pick('timeout', 'REQUEST_TIMEOUT', str(DEFAULT_REQUEST_TIMEOUT)))
        sync_interval = int(pick('interval', 'SYNC_INTERVAL', '0'))
    except ValueError as e:
        raise ConfigError(f"Invalid numeric setting: {e}") from e

    return SyncConfig(
        server_url=values['CALDAV_URL'],
        credentials=Credentials(values['CALDAV_USERNAME'], values['CALDAV_PASSWORD']),
        calendar_name=values['CALENDAR_NAME'],
        ics_url=values['ICS_URL'],
        identity_policy=identity_policy,
        failure_policy=failure_policy,
        request_timeout=request_timeout,
        sync_interval=sync_interval,
    )


# ---------------------------------------------------------------------------
# Feed fetcher
# ---------------------------------------------------------------------------


def _wire_params(params) -> Tuple[Tuple[str, Any], ...]:
    if not params:
        return ()
    return tuple(
        (key, tuple(item) if isinstance(item, list) else item)
        for key, item in params.items()
    )


def _component_groups(data: bytes) -> List[ComponentGroup]:
    """Build the component tree from content lines, in document order.

    icalendar's Component keeps properties in a dict, which groups repeated
    names together; reading the lines directly keeps ATTENDEE, SUMMARY,
    ATTENDEE in that order.
    """
    roots = []
    # each entry: [name, properties, children]
    stack = []
    for line in Contentlines.from_ical(data):
        if not line:
            continue
        try:
            name, params, value = line.parts()
        except ValueError as e:
            # Calendar.from_ical already accepted the document, so this is a
            # line icalendar skips inside a lenient component; do the same
            logger.warning(f"Skipping unparseable feed line {line!r}: {e}")
            continue

        if name.upper() == 'BEGIN':
            stack.append([value.upper(), [], []])
        elif name.upper() == 'END':
            if not stack:
                raise ValueError(f"END:{value} without matching BEGIN")
            component_name, properties, children = stack.pop()
            group = ComponentGroup(component_name, tuple(properties), tuple(children))
            (stack[-1][2] if stack else roots).append(group)
        elif stack:
            stack[-1][1].append(Property(name, value, _wire_params(params)))
    return roots


def parse_feed(data: bytes) -> Feed:
    """Parse a feed body and keep its first calendar object."""
    try:
        components = icalendar.Calendar.from_ical(data, multiple=True)
        groups = _component_groups(data)
    except ValueError as e:
        raise ParseError(f"Feed is not a valid iCalendar document: {e}") from e

    calendars = [c for c in components if c.name == 'VCALENDAR']
    if len(calendars) > 1:
        logger.warning(f"Feed contains {len(calendars)} calendar objects, using the first one")
    calendar = next((g for g in groups if g.name == 'VCALENDAR'), None)
    if not calendars or calendar is None:
        raise EmptyFeedError("Feed does not contain a calendar object")

    events = []
    timezones = []
    for child in calendar.children:
        if child.name == 'VEVENT':
            events.append(SourceEvent(properties=child.properties, children=child.children))
        elif child.name == 'VTIMEZONE':
            timezones.append(child)

    logger.info(f"Parsed {len(events)} events and {len(timezones)} timezones from feed")
    return Feed(events=tuple(events), timezones=tuple(timezones))


def fetch_feed(url: str, session: Optional[requests.Session] = None,
               timeout: float = DEFAULT_REQUEST_TIMEOUT) -> Feed:
    """
    Download an iCalendar feed and parse its first calendar object.

    Args:
        url: Absolute URL of the feed
        session: HTTP session to reuse; a new one is created when omitted
        timeout: Request timeout in seconds

    Raises:
        FetchError: the download failed or returned a non-2xx status
        ParseError: the body is not iCalendar
        EmptyFeedError: the body holds no calendar object
    """
    session = session or requests.Session()
    logger.info(f"Downloading ICS feed from: {url}")
    try:
        response = session.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise FetchError(f"Unable to download feed from {url}: {e}") from e

    logger.debug(f"Downloaded {len(response.content)} bytes from {url}")
    return parse_feed(response.content)


# ---------------------------------------------------------------------------
# Calendar resolver
# ---------------------------------------------------------------------------


def _match_calendar(calendars, name: str):
    available = [c.name for c in calendars if c.name is not None]
    matches = [c for c in calendars if c.name == name]
    if not matches:
        raise CalendarNotFoundError(name, available)
    if len(matches) > 1:
        raise DiscoveryError(
            f"Calendar name {name!r} is ambiguous: {len(matches)} calendars carry it"
        )
    return matches[0]


def resolve_calendar(credentials: Credentials, server_url: str, name: str,
                     client_factory: Callable[..., Any] = caldav.DAVClient) -> Calendar:
    """Find the single calendar whose display name equals ``name`` exactly.

    The returned Calendar owns the client; call ``close()`` when done. On
    failure the client is closed here.
    """
    logger.info(f"Listing calendars on {server_url} as {credentials.username}")
    client = client_factory(
        url=server_url,
        username=credentials.username,
        password=credentials.password,
    )
    try:
        found = _match_calendar(client.principal().calendars(), name)
    except (DAVError, requests.exceptions.RequestException) as e:
        client.close()
        raise DiscoveryError(f"Unable to fetch calendars from {server_url}: {e}") from e
    except SyncError:
        client.close()
        raise

    logger.info(f"Found existing calendar: {name}")
    return Calendar(name=found.name, url=str(found.url), handle=found, client=client)


# ---------------------------------------------------------------------------
# Event mapper
# ---------------------------------------------------------------------------


def map_properties(properties: Sequence[Property]) -> Tuple[Property, ...]:
    """Copy properties in order, turning absent values into empty strings."""
    return tuple(
        Property(prop.name, prop.value if prop.value is not None else '', prop.params)
        for prop in properties
    )


def _map_group(group: ComponentGroup) -> ComponentGroup:
    return ComponentGroup(
        name=group.name,
        properties=map_properties(group.properties),
        children=tuple(_map_group(child) for child in group.children),
    )


def map_event(source: SourceEvent, calendar_url: str) -> DestinationEvent:
    """
    Map one source event to a destination event with no identity reference.

    Every property is copied by name and value. The title rule is the only
    rewrite: a missing SUMMARY is appended and an empty one is filled, both
    with PLACEHOLDER_TITLE. An event without properties stays empty.
    """
    properties = list(map_properties(source.properties))

    if properties:
        summaries = [i for i, prop in enumerate(properties) if prop.name.upper() == 'SUMMARY']
        if not summaries:
            properties.append(Property('SUMMARY', PLACEHOLDER_TITLE))
        elif not properties[summaries[0]].value:
            properties[summaries[0]] = replace(properties[summaries[0]], value=PLACEHOLDER_TITLE)

    return DestinationEvent(
        calendar_url=calendar_url,
        properties=tuple(properties),
        children=tuple(_map_group(child) for child in source.children),
    )


class _WireValue(str):
    """A value already in wire form, so Contentline must not escape it again."""

    def to_ical(self) -> bytes:
        return self.encode('utf-8')


def _content_line(prop: Property) -> str:
    line = Contentline.from_parts(
        prop.name,
        Parameters(dict(prop.params)),
        _WireValue(prop.value or ''),
        sorted=False,
    )
    folded = line.to_ical()
    return folded.decode('utf-8') if isinstance(folded, bytes) else folded


def _content_lines(name: str, properties: Sequence[Property],
                   children: Sequence[ComponentGroup]) -> List[str]:
    lines = [f"BEGIN:{name}"]
    for prop in properties:
        lines.append(_content_line(prop))
    for child in children:
        lines.extend(_content_lines(child.name, child.properties, child.children))
    lines.append(f"END:{name}")
    return lines


def _referenced_tzids(event: DestinationEvent) -> set:
    tzids = set()

    def collect(properties, children):
        for prop in properties:
            for key, value in prop.params:
                if key.upper() == 'TZID':
                    tzids.add(str(value))
        for child in children:
            collect(child.properties, child.children)

    collect(event.properties, event.children)
    return tzids


def render_event(event: DestinationEvent, timezones: Sequence[ComponentGroup] = ()) -> str:
    """Serialize a destination event into a VCALENDAR payload.

    Only the VTIMEZONE definitions the event refers to are included.
    """
    tzids = _referenced_tzids(event)
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", f"PRODID:{PRODID}"]
    for tz in timezones:
        tzid = next((p.value for p in tz.properties if p.name.upper() == 'TZID'), None)
        if tzid in tzids:
            lines.extend(_content_lines(tz.name, tz.properties, tz.children))
    lines.extend(_content_lines('VEVENT', event.properties, event.children))
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


# ---------------------------------------------------------------------------
# Sync driver
# ---------------------------------------------------------------------------


def _utc_stamp(prop: Optional[Property]) -> str:
    """Normalize a DTSTART/DTEND value so TZID-local and UTC forms compare equal."""
    if prop is None or not prop.value:
        return ''
    tzid = next((str(v) for k, v in prop.params if k.upper() == 'TZID'), None)
    if not tzid:
        return prop.value
    try:
        local = datetime.strptime(prop.value, '%Y%m%dT%H%M%S')
        utc = pytz.timezone(tzid).localize(local).astimezone(pytz.utc)
    except (ValueError, pytz.UnknownTimeZoneError):
        return f"{tzid}:{prop.value}"
    return utc.strftime('%Y%m%dT%H%M%SZ')


def dedup_key(source: SourceEvent, occurrence: int = 0) -> str:
    """Stable key for an event built from its UID, summary, start and end.

    ``occurrence`` tells apart events that agree on all four; the first
    keeps the plain key so existing keys stay valid.
    """
    uid = source.find('UID')
    summary = source.find('SUMMARY')
    parts = [
        uid.value if uid is not None and uid.value else '',
        summary.value if summary is not None and summary.value else '',
        _utc_stamp(source.find('DTSTART')),
        _utc_stamp(source.find('DTEND')),
    ]
    if occurrence:
        parts.append(str(occurrence))
    return hashlib.sha256('\x1f'.join(parts).encode('utf-8')).hexdigest()


def index_existing_events(calendar: Calendar) -> ExistingEvents:
    """Index the destination calendar's events by sync key and by UID."""
    index = ExistingEvents()
    try:
        existing = calendar.handle.events()
    except (DAVError, requests.exceptions.RequestException) as e:
        raise DiscoveryError(f"Unable to list events in calendar {calendar.name!r}: {e}") from e

    for obj in existing:
        component = obj.icalendar_component
        key = component.get(SYNC_KEY_PROPERTY)
        if key:
            index.by_key[str(key)] = str(obj.url)
        uid = component.get('UID')
        if uid:
            index.by_uid[str(uid)] = str(obj.url)
    logger.debug(
        f"Indexed {len(index.by_key)} previously synced events "
        f"and {len(index.by_uid)} UIDs in {calendar.name}"
    )
    return index


def save_event(calendar: Calendar, event: DestinationEvent,
               timezones: Sequence[ComponentGroup] = ()) -> str:
    """Create or update one event and return its URL on the server.

    caldav places a new event at ``<calendar>/<UID>.ics``, so a create whose
    UID is already on the server replaces that resource.
    """
    payload = render_event(event, timezones)
    try:
        if event.identity is None:
            saved = calendar.handle.save_event(payload)
        else:
            saved = calendar.handle.event_by_url(event.identity)
            saved.data = payload
            saved = saved.save()
    except (DAVError, requests.exceptions.RequestException) as e:
        raise PersistenceError(event.summary, str(e)) from e
    return str(saved.url)


def with_fresh_uid(event: DestinationEvent) -> DestinationEvent:
    """Give the event a new UID so a create lands on a new resource.

    The feed's UID is kept under SOURCE_UID_PROPERTY.
    """
    properties = []
    for prop in event.properties:
        if prop.name.upper() == 'UID':
            properties.append(Property(prop.name, str(uuid.uuid4()), prop.params))
            properties.append(Property(SOURCE_UID_PROPERTY, prop.value))
        else:
            properties.append(prop)
    return replace(event, properties=tuple(properties))


def _format_properties(source: SourceEvent) -> str:
    return "\n".join(f"  {prop.name}: {prop.value!r}" for prop in source.properties)


class CalendarSync:
    def __init__(self, config: SyncConfig, session: Optional[requests.Session] = None,
                 client_factory: Callable[..., Any] = caldav.DAVClient):
        """
        Initialize the CalendarSync instance.

        Args:
            config: Resolved settings for this sync
            session: HTTP session used to download the feed
            client_factory: Builds the CalDAV client (caldav.DAVClient by default)
        """
        self.config = config
        self.session = session or requests.Session()
        self.client_factory = client_factory

    def _enter(self, state: str):
        logger.debug(f"Sync state: {state}")

    def run(self) -> SyncReport:
        """
        Perform one sync: resolve the calendar, fetch the feed, then map and
        save every event in feed order.

        Returns:
            A report with one outcome per source event
        """
        self._enter('RESOLVING_CALENDAR')
        calendar = resolve_calendar(
            self.config.credentials,
            self.config.server_url,
            self.config.calendar_name,
            client_factory=self.client_factory,
        )
        try:
            return self._sync_into(calendar)
        finally:
            calendar.close()

    def _sync_into(self, calendar: Calendar) -> SyncReport:
        self._enter('FETCHING_FEED')
        feed = fetch_feed(self.config.ics_url, self.session, self.config.request_timeout)

        dedup = self.config.identity_policy == IDENTITY_DEDUP
        existing = index_existing_events(calendar) if dedup else ExistingEvents()
        seen_keys = Counter()

        report = SyncReport(calendar=calendar.name)
        for index, source in enumerate(feed.events):
            self._enter('MAPPING')
            event = map_event(source, calendar.url)
            if dedup:
                key = dedup_key(source)
                occurrence = seen_keys[key]
                seen_keys[key] += 1
                if occurrence:
                    logger.warning(
                        f"Event '{event.summary}' repeats an earlier event in the feed; "
                        f"keeping it apart as occurrence {occurrence + 1}"
                    )
                    key = dedup_key(source, occurrence)
                uid = source.find('UID')
                event = self._with_sync_key(event, key, existing, uid.value if uid is not None else None)
            else:
                event = with_fresh_uid(event)

            self._enter('PERSISTING')
            logger.info(f"-------\n{_format_properties(source)}")
            action = ACTION_CREATED if event.identity is None else ACTION_UPDATED
            try:
                url = save_event(calendar, event, feed.timezones)
            except PersistenceError as e:
                logger.error(str(e))
                report.outcomes.append(EventOutcome(index, event.summary, ACTION_FAILED, error=e.reason))
                if self.config.failure_policy == FAILURE_ABORT:
                    e.report = report
                    raise
                continue

            logger.info(f"{action.capitalize()} event: {event.summary}")
            report.outcomes.append(EventOutcome(index, event.summary, action, url=url))

        self._enter('DONE')
        logger.info(f"Sync completed for calendar {calendar.name}: {report}")
        return report

    @staticmethod
    def _with_sync_key(event: DestinationEvent, key: str, existing: ExistingEvents,
                       uid: Optional[str]) -> DestinationEvent:
        # A sync key carried over from the feed would shadow ours
        properties = tuple(p for p in event.properties if p.name.upper() != SYNC_KEY_PROPERTY)
        properties += (Property(SYNC_KEY_PROPERTY, key),)
        return replace(event, properties=properties, identity=existing.lookup(key, uid))

    def run_continuous_sync(self, interval_minutes: int):
        """Run sync repeatedly with the given interval."""
        logger.info(f"Starting continuous sync every {interval_minutes} minute(s)")

        try:
            while True:
                try:
                    self.run()
                except SyncError as e:
                    logger.error(f"Sync cycle failed: {e}")
                logger.info(f"Waiting {interval_minutes} minute(s) before next sync...")
                time.sleep(interval_minutes * 60)
        except KeyboardInterrupt:
            logger.info("Sync stopped by user")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Copy events from an iCalendar feed into a CalDAV calendar."
    )
    parser.add_argument('-s', '--server', help="CalDAV server URL (CALDAV_URL)")
    parser.add_argument('-u', '--username', help="CalDAV username (CALDAV_USERNAME)")
    parser.add_argument('-p', '--password', help="CalDAV password (CALDAV_PASSWORD)")
    parser.add_argument('-c', '--calendar', help="Destination calendar display name (CALENDAR_NAME)")
    parser.add_argument('-e', '--ecampus-server', help="iCalendar feed URL (ICS_URL)")
    parser.add_argument('--config', default=DEFAULT_CONFIG_FILE, help="KEY=VALUE config file")
    parser.add_argument('--identity-policy', choices=IDENTITY_POLICIES)
    parser.add_argument('--failure-policy', choices=FAILURE_POLICIES)
    parser.add_argument('--timeout', type=float, help="HTTP timeout in seconds")
    parser.add_argument('--interval', type=int, help="Minutes between syncs; 0 runs once")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main function to run the calendar sync."""
    global logger
    args = parse_args(argv)
    file_config = load_config(args.config)

    def setting(key, default):
        return file_config.get(key) or os.getenv(key, default)

    debug_mode = args.debug or setting('DEBUG_MODE', '').lower() == 'true'
    log_max_bytes = int(setting('LOG_MAX_BYTES', '10485760'))  # 10MB default
    log_backup_count = int(setting('LOG_BACKUP_COUNT', '5'))
    log_file = setting('LOG_FILE', 'ecampus_sync.log')

    logger = setup_logging(max_bytes=log_max_bytes, backup_count=log_backup_count, log_file=log_file)
    if debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.info("Debug mode enabled - detailed logging active")

    try:
        config = build_config(args, file_config)
        logger.info(f"Starting calendar sync for: {config.ics_url}")
        logger.info(f"Target calendar: {config.calendar_name} on {config.server_url}")
        logger.info(f"Identity policy: {config.identity_policy}, failure policy: {config.failure_policy}")

        sync = CalendarSync(config)
        if config.sync_interval > 0:
            sync.run_continuous_sync(config.sync_interval)
            return 0
        report = sync.run()
    except SyncError as e:
        logger.error(f"Fatal error: {e}")
        return 1

    if not report.ok:
        for outcome in report.outcomes:
            if outcome.action == ACTION_FAILED:
                logger.error(f"Event #{outcome.index} '{outcome.summary}' failed: {outcome.error}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
