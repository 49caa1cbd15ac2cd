from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from urllib.parse import quote

import caldav
from caldav.lib import error as caldav_error
from icalendar import Alarm as ICAlarm
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from calmirror.http import HttpClient, HttpError
from calmirror.mapper import APP_MARKER, DestinationPayload
from calmirror.models import AppConfig, ConfigError, DestinationConfig
from calmirror.retry import DEFAULT_MAX_ATTEMPTS, with_retry

logger = logging.getLogger(__name__)

GOOGLE_API_BASE = "https://www.googleapis.com/calendar/v3"
GONE_STATUSES = frozenset({404, 410})
METADATA_PREFIX = "X-CALMIRROR-"
CALDAV_STATUS_PATTERN = re.compile(r"^\s*([1-5]\d\d)\b")


class DestinationNotFoundError(LookupError):
    """The destination object referenced by a mapping no longer exists."""


@dataclass
class DestinationEvent:
    id: str
    etag: str | None = None
    private_metadata: dict[str, str] = field(default_factory=dict)


class Destination:
    kind = ""

    def create_event(self, calendar_id: str, payload: DestinationPayload) -> DestinationEvent:
        raise NotImplementedError

    def update_event(self, calendar_id: str, event_id: str, payload: DestinationPayload) -> DestinationEvent:
        raise NotImplementedError

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        raise NotImplementedError

    def list_managed_events(self, calendar_id: str, filters: Mapping[str, str] | None = None) -> list[DestinationEvent]:
        raise NotImplementedError

    def health_check(self, calendar_id: str) -> None:
        raise NotImplementedError


def _metadata_filters(filters: Mapping[str, str] | None) -> dict[str, str]:
    return {"app": APP_MARKER, **{str(key): str(value) for key, value in (filters or {}).items()}}


class GoogleCalendarDestination(Destination):
    kind = "google"

    def __init__(
        self,
        access_token: str,
        http: HttpClient | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_url: str = GOOGLE_API_BASE,
    ) -> None:
        self.access_token = access_token
        self.http = http or HttpClient()
        self.max_attempts = max_attempts
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _events_url(self, calendar_id: str, event_id: str = "") -> str:
        url = f"{self.base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def _call(self, operation_name: str, fn: Callable[[], Any]) -> Any:
        return with_retry(operation_name, fn, max_attempts=self.max_attempts)

    @staticmethod
    def _event(data: dict[str, Any]) -> DestinationEvent:
        private = (data.get("extendedProperties") or {}).get("private") or {}
        return DestinationEvent(id=str(data.get("id", "")), etag=data.get("etag"), private_metadata=dict(private))

    def create_event(self, calendar_id: str, payload: DestinationPayload) -> DestinationEvent:
        data = self._call(
            "google_create_event",
            lambda: self.http.request(
                "POST",
                self._events_url(calendar_id),
                params={"sendUpdates": "none"},
                json_body=payload.to_google_body(),
                headers=self._headers(),
            ).json(),
        )
        return self._event(data)

    def update_event(self, calendar_id: str, event_id: str, payload: DestinationPayload) -> DestinationEvent:
        try:
            data = self._call(
                "google_update_event",
                lambda: self.http.request(
                    "PUT",
                    self._events_url(calendar_id, event_id),
                    params={"sendUpdates": "none"},
                    json_body=payload.to_google_body(),
                    headers=self._headers(),
                ).json(),
            )
        except HttpError as exc:
            if exc.status in GONE_STATUSES:
                raise DestinationNotFoundError(event_id) from exc
            raise
        return self._event(data)

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        try:
            self._call(
                "google_delete_event",
                lambda: self.http.request(
                    "DELETE",
                    self._events_url(calendar_id, event_id),
                    params={"sendUpdates": "none"},
                    headers=self._headers(),
                ),
            )
        except HttpError as exc:
            if exc.status in GONE_STATUSES:
                return False
            raise
        return True

    def list_managed_events(self, calendar_id: str, filters: Mapping[str, str] | None = None) -> list[DestinationEvent]:
        properties = [f"{key}={value}" for key, value in _metadata_filters(filters).items()]
        events: list[DestinationEvent] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "maxResults": 2500,
                "showDeleted": "false",
                "singleEvents": "false",
                "fields": "items(id,etag,extendedProperties),nextPageToken",
                "privateExtendedProperty": properties,
            }
            if page_token:
                params["pageToken"] = page_token
            page = self._call(
                "google_list_managed_events",
                lambda: self.http.get_json(self._events_url(calendar_id), params=params, headers=self._headers()),
            )
            events.extend(self._event(item) for item in page.get("items") or [])
            page_token = page.get("nextPageToken")
            if not page_token:
                return events

    def health_check(self, calendar_id: str) -> None:
        self._call(
            "google_destination_health",
            lambda: self.http.get_json(
                f"{self.base_url}/calendars/{quote(calendar_id, safe='')}", headers=self._headers()
            ),
        )


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _metadata_property(key: str) -> str:
    return METADATA_PREFIX + key.upper().replace("_", "-")


def _read_metadata(vevent: ICEvent) -> dict[str, str]:
    metadata: dict[str, str] = {}
    for name, value in vevent.property_items(recursive=False):
        name = str(name).upper()
        if name.startswith(METADATA_PREFIX):
            key = name[len(METADATA_PREFIX):].lower().replace("-", "_")
            metadata[key] = str(value)
    return metadata


def destination_uid(payload: DestinationPayload) -> str:
    """Stable UID for a mirrored occurrence, so a re-create after data loss overwrites instead of duplicating."""
    metadata = payload.private_metadata
    seed = f"{metadata.get('subscription_id', '')}::{metadata.get('source_event_id', '')}"
    return f"{_data_hash(seed)}@{APP_MARKER}"


def _as_ical_value(value: date | datetime) -> date | datetime:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc)
    return value


def caldav_status(exc: caldav_error.DAVError) -> int | None:
    """HTTP status caldav folded into the error text, e.g. "503 Service Unavailable"."""
    for text in (exc.reason, exc.url):
        match = CALDAV_STATUS_PATTERN.match(str(text or ""))
        if match:
            return int(match.group(1))
    return None


def _caldav_call(fn: Callable[[], Any]) -> Callable[[], Any]:
    """Re-raise status-bearing caldav errors as HttpError so the retry policy can classify them."""

    def _call() -> Any:
        try:
            return fn()
        except caldav_error.NotFoundError:
            raise
        except caldav_error.DAVError as exc:
            status = caldav_status(exc)
            if status is None:
                raise
            raise HttpError(str(exc), status=status) from exc

    return _call


class CalDAVDestination(Destination):
    kind = "caldav"

    def __init__(
        self,
        config: DestinationConfig,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout_seconds: float = 20,
    ) -> None:
        self.config = config
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise ConfigError("CalDAV destination needs base_url and username.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
            timeout=self.timeout_seconds,
        )
        self._principal = with_retry("caldav_principal", _caldav_call(self._client.principal), max_attempts=self.max_attempts)

    def _get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        wanted = _normalize_calendar_id(calendar_id)
        if wanted in self._calendar_cache:
            return self._calendar_cache[wanted]
        for calendar in self._principal.calendars():
            calendar_url = _normalize_calendar_id(str(calendar.url))
            self._calendar_cache[calendar_url] = calendar
            name = _normalize_calendar_name(getattr(calendar, "name", "") or "")
            if name and name == _normalize_calendar_name(calendar_id):
                self._calendar_cache[wanted] = calendar
        if wanted not in self._calendar_cache:
            raise ConfigError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[wanted]

    def _build_ical(self, uid: str, payload: DestinationPayload) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", "-//calmirror//Calendar Mirror//EN")
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        vevent.add("SUMMARY", payload.title)
        if payload.description:
            vevent.add("DESCRIPTION", payload.description)
        if payload.location:
            vevent.add("LOCATION", payload.location)
        start = payload.start.date if payload.start.is_date else payload.start.instant
        end = payload.end.date if payload.end.is_date else payload.end.instant
        vevent.add("DTSTART", _as_ical_value(start))
        vevent.add("DTEND", _as_ical_value(end))
        for key, value in payload.private_metadata.items():
            vevent.add(_metadata_property(key), value)
        if payload.reminder_minutes is not None:
            alarm = ICAlarm()
            alarm.add("ACTION", "DISPLAY")
            alarm.add("DESCRIPTION", payload.title)
            alarm.add("TRIGGER", timedelta(minutes=-payload.reminder_minutes))
            vevent.add_component(alarm)
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def _find_resource(self, calendar: Any, uid: str) -> Any:
        try:
            resource = calendar.event_by_uid(uid)
        except caldav_error.NotFoundError:
            return None
        if isinstance(resource, list):
            return resource[0] if resource else None
        return resource

    def _parse_resource(self, resource: Any) -> DestinationEvent | None:
        raw_ical = _decode_raw_ical(resource.data)
        vevent = _first_vevent(ICalendar.from_ical(raw_ical))
        if vevent is None:
            return None
        return DestinationEvent(
            id=str(vevent.get("UID", "")).strip(),
            etag=_data_hash(raw_ical),
            private_metadata=_read_metadata(vevent),
        )

    def create_event(self, calendar_id: str, payload: DestinationPayload) -> DestinationEvent:
        calendar = self._get_calendar(calendar_id)
        uid = destination_uid(payload)
        raw_ical = self._build_ical(uid, payload)
        with_retry("caldav_create_event", _caldav_call(lambda: calendar.save_event(raw_ical)), max_attempts=self.max_attempts)
        return DestinationEvent(id=uid, etag=_data_hash(raw_ical), private_metadata=dict(payload.private_metadata))

    def update_event(self, calendar_id: str, event_id: str, payload: DestinationPayload) -> DestinationEvent:
        calendar = self._get_calendar(calendar_id)
        resource = self._find_resource(calendar, event_id)
        if resource is None:
            raise DestinationNotFoundError(event_id)
        raw_ical = self._build_ical(event_id, payload)
        resource.data = raw_ical
        try:
            with_retry("caldav_update_event", _caldav_call(resource.save), max_attempts=self.max_attempts)
        except caldav_error.NotFoundError as exc:
            raise DestinationNotFoundError(event_id) from exc
        except HttpError as exc:
            if exc.status in GONE_STATUSES:
                raise DestinationNotFoundError(event_id) from exc
            raise
        return DestinationEvent(id=event_id, etag=_data_hash(raw_ical), private_metadata=dict(payload.private_metadata))

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        calendar = self._get_calendar(calendar_id)
        resource = self._find_resource(calendar, event_id)
        if resource is None:
            return False
        try:
            with_retry("caldav_delete_event", _caldav_call(resource.delete), max_attempts=self.max_attempts)
        except caldav_error.NotFoundError:
            return False
        except HttpError as exc:
            if exc.status in GONE_STATUSES:
                return False
            raise
        return True

    def list_managed_events(self, calendar_id: str, filters: Mapping[str, str] | None = None) -> list[DestinationEvent]:
        calendar = self._get_calendar(calendar_id)
        wanted = _metadata_filters(filters)
        managed: list[DestinationEvent] = []
        for resource in with_retry("caldav_list_events", _caldav_call(calendar.events), max_attempts=self.max_attempts):
            event = self._parse_resource(resource)
            if event is None:
                continue
            if all(event.private_metadata.get(key) == value for key, value in wanted.items()):
                managed.append(event)
        return managed

    def health_check(self, calendar_id: str) -> None:
        self._get_calendar(calendar_id)


def build_destination(config: AppConfig) -> Destination:
    destination = config.destination
    if destination.kind == "caldav":
        return CalDAVDestination(
            destination,
            max_attempts=config.sync.max_attempts,
            timeout_seconds=config.sync.request_timeout_seconds,
        )
    if not destination.access_token:
        raise ConfigError("Google destination needs an access_token.")
    return GoogleCalendarDestination(
        destination.access_token,
        http=HttpClient(timeout_seconds=config.sync.request_timeout_seconds),
        max_attempts=config.sync.max_attempts,
    )
