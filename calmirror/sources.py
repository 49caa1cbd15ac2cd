from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import quote

from calmirror.http import HttpClient, HttpError
from calmirror.mapper import normalize_google_event, normalize_outlook_event
from calmirror.models import (
    AppConfig,
    CanonicalOccurrence,
    ConfigError,
    SubscriptionConfig,
    SyncWindow,
    format_instant,
)
from calmirror.recurrence import expand_feed
from calmirror.retry import DEFAULT_MAX_ATTEMPTS, with_retry
from calmirror.timezones import TemporalResolver

logger = logging.getLogger(__name__)

GOOGLE_API_BASE = "https://www.googleapis.com/calendar/v3"
GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
GOOGLE_SOURCE_FIELDS = (
    "items(id,iCalUID,recurringEventId,recurrence,summary,description,location,"
    "status,updated,start,end,reminders),nextPageToken"
)
GRAPH_SELECT_FIELDS = (
    "id",
    "iCalUId",
    "subject",
    "bodyPreview",
    "body",
    "location",
    "start",
    "end",
    "isAllDay",
    "isCancelled",
    "lastModifiedDateTime",
    "reminderMinutesBeforeStart",
    "type",
    "seriesMasterId",
)


@dataclass
class SourceBatch:
    fetched_count: int
    occurrences: list[CanonicalOccurrence] = field(default_factory=list)


class SourceClient:
    kind = ""

    def __init__(self, http: HttpClient | None = None, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self.http = http or HttpClient()
        self.max_attempts = max_attempts

    def _call(self, operation_name: str, fn: Callable[[], Any]) -> Any:
        return with_retry(operation_name, fn, max_attempts=self.max_attempts)

    def list_occurrences(self, window: SyncWindow) -> SourceBatch:
        raise NotImplementedError

    def health_check(self) -> None:
        raise NotImplementedError


class IcsSourceClient(SourceClient):
    kind = "ics"

    def __init__(
        self,
        url: str,
        resolver: TemporalResolver,
        http: HttpClient | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        super().__init__(http, max_attempts)
        self.url = url
        self.resolver = resolver

    def _fetch(self) -> str:
        return self._call("ics_fetch_feed", lambda: self.http.get_text(self.url))

    def list_occurrences(self, window: SyncWindow) -> SourceBatch:
        expansion = expand_feed(self._fetch(), window, self.resolver)
        logger.debug(
            "Feed %s: %d VEVENTs, %d occurrences in window",
            self.url,
            expansion.fetched_count,
            len(expansion.occurrences),
        )
        return SourceBatch(fetched_count=expansion.fetched_count, occurrences=expansion.occurrences)

    def health_check(self) -> None:
        text = self._fetch()
        if "BEGIN:VCALENDAR" not in text.upper():
            raise HttpError(f"{self.url} did not return an iCalendar document")


class GoogleSourceClient(SourceClient):
    kind = "google"

    def __init__(
        self,
        calendar_id: str,
        access_token: str,
        http: HttpClient | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_url: str = GOOGLE_API_BASE,
    ) -> None:
        super().__init__(http, max_attempts)
        self.calendar_id = calendar_id or "primary"
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _calendar_url(self) -> str:
        return f"{self.base_url}/calendars/{quote(self.calendar_id, safe='')}"

    def list_occurrences(self, window: SyncWindow) -> SourceBatch:
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "timeMin": format_instant(window.start),
                "timeMax": format_instant(window.end),
                "maxResults": 2500,
                "singleEvents": "true",
                "showDeleted": "true",
                "orderBy": "startTime",
                "timeZone": "UTC",
                "fields": GOOGLE_SOURCE_FIELDS,
            }
            if page_token:
                params["pageToken"] = page_token
            page = self._call(
                "google_list_calendar_view",
                lambda: self.http.get_json(f"{self._calendar_url()}/events", params=params, headers=self._headers()),
            )
            items.extend(page.get("items") or [])
            page_token = page.get("nextPageToken")
            if not page_token:
                break
        occurrences = [occurrence for occurrence in map(normalize_google_event, items) if occurrence is not None]
        return SourceBatch(fetched_count=len(items), occurrences=occurrences)

    def health_check(self) -> None:
        self._call("google_source_health", lambda: self.http.get_json(self._calendar_url(), headers=self._headers()))


class MicrosoftSourceClient(SourceClient):
    kind = "microsoft"

    def __init__(
        self,
        access_token: str,
        http: HttpClient | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_url: str = GRAPH_API_BASE,
    ) -> None:
        super().__init__(http, max_attempts)
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }

    def list_occurrences(self, window: SyncWindow) -> SourceBatch:
        items: list[dict[str, Any]] = []
        next_url: str | None = f"{self.base_url}/me/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": format_instant(window.start),
            "endDateTime": format_instant(window.end),
            "$top": 1000,
            "$select": ",".join(GRAPH_SELECT_FIELDS),
        }
        while next_url:
            url, page_params = next_url, params
            page = self._call(
                "graph_list_calendar_view",
                lambda: self.http.get_json(url, params=page_params, headers=self._headers()),
            )
            items.extend(page.get("value") or [])
            # nextLink already carries the query string.
            next_url = page.get("@odata.nextLink")
            params = None
        occurrences = [occurrence for occurrence in map(normalize_outlook_event, items) if occurrence is not None]
        return SourceBatch(fetched_count=len(items), occurrences=occurrences)

    def health_check(self) -> None:
        self._call(
            "graph_health",
            lambda: self.http.get_json(
                f"{self.base_url}/me", params={"$select": "id,userPrincipalName"}, headers=self._headers()
            ),
        )


def build_source_client(
    subscription: SubscriptionConfig,
    config: AppConfig,
    resolver: TemporalResolver,
) -> SourceClient:
    source = subscription.source
    http = HttpClient(timeout_seconds=config.sync.request_timeout_seconds)
    max_attempts = config.sync.max_attempts
    if source.kind == "ics":
        if not source.url:
            raise ConfigError(f"Subscription {subscription.id!r} has no feed url")
        return IcsSourceClient(source.url, resolver, http=http, max_attempts=max_attempts)
    if not source.access_token:
        raise ConfigError(f"Subscription {subscription.id!r} has no access token")
    if source.kind == "google":
        return GoogleSourceClient(source.calendar_id, source.access_token, http=http, max_attempts=max_attempts)
    if source.kind == "microsoft":
        return MicrosoftSourceClient(source.access_token, http=http, max_attempts=max_attempts)
    raise ConfigError(f"Unsupported source kind: {source.kind!r}")
