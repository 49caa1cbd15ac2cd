from __future__ import annotations

import hashlib
import html
import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from dateutil.parser import isoparse

from calmirror.ics_parser import NO_TITLE
from calmirror.models import CanonicalOccurrence, EventTime

APP_MARKER = "calmirror"
MAX_REMINDER_MINUTES = 40_320
SOURCE_LABELS = {
    "ics": "ics-feed",
    "google": "google-calendar",
    "microsoft": "microsoft-graph",
}

STYLE_PATTERN = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
SCRIPT_PATTERN = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
TAG_PATTERN = re.compile(r"<[^>]+>")
WHITESPACE_PATTERN = re.compile(r"\s+")
OFFSET_SUFFIX_PATTERN = re.compile(r"(?:[zZ]|[+-]\d\d:?\d\d)$")


def strip_html(content: str) -> str:
    text = STYLE_PATTERN.sub("", content)
    text = SCRIPT_PATTERN.sub("", text)
    text = TAG_PATTERN.sub(" ", text)
    text = html.unescape(text).replace("\xa0", " ")
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def _title(value: Any) -> str:
    return str(value or "").strip() or NO_TITLE


def _parse_api_instant(value: str) -> datetime:
    text = value.strip()
    if not OFFSET_SUFFIX_PATTERN.search(text):
        text = f"{text}Z"
    parsed = isoparse(text)
    return parsed.astimezone(timezone.utc)


def _parse_optional_instant(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return _parse_api_instant(str(value))
    except ValueError:
        return None


def _google_time(raw: dict[str, Any]) -> EventTime | None:
    if raw.get("date"):
        return EventTime.all_day(date.fromisoformat(str(raw["date"])[:10]))
    if raw.get("dateTime"):
        return EventTime.at(_parse_api_instant(str(raw["dateTime"])), str(raw.get("timeZone") or "UTC"))
    return None


def _google_reminder(raw: dict[str, Any] | None) -> int | None:
    if not raw or raw.get("useDefault", True):
        return None
    minutes = [
        int(item["minutes"])
        for item in raw.get("overrides") or []
        if isinstance(item, dict) and isinstance(item.get("minutes"), (int, float))
    ]
    return min(minutes) if minutes else None


def normalize_google_event(event: dict[str, Any]) -> CanonicalOccurrence | None:
    """Map one Calendar v3 event (listed with singleEvents=true) to a canonical occurrence."""
    event_id = str(event.get("id") or "").strip()
    if not event_id:
        return None
    if event.get("recurrence") and not event.get("recurringEventId"):
        return None
    is_cancelled = str(event.get("status") or "").lower() == "cancelled"
    start = _google_time(event.get("start") or {})
    end = _google_time(event.get("end") or {})
    if start is None or end is None:
        return None
    return CanonicalOccurrence(
        id=event_id,
        series_id=event.get("recurringEventId") or None,
        ical_uid=event.get("iCalUID") or None,
        title=_title(event.get("summary")),
        description=str(event.get("description") or ""),
        location=str(event.get("location") or "").strip(),
        start=start,
        end=end,
        is_all_day=start.is_date,
        is_cancelled=is_cancelled,
        last_modified=_parse_optional_instant(event.get("updated")),
        reminder_lead_minutes=_google_reminder(event.get("reminders")),
    )


def _outlook_description(event: dict[str, Any]) -> str:
    body = event.get("body") or {}
    content = body.get("content")
    if content:
        if str(body.get("contentType", "")).lower() == "text":
            return str(content)
        return strip_html(str(content))
    return str(event.get("bodyPreview") or "")


def _outlook_time(raw: dict[str, Any], is_all_day: bool) -> EventTime:
    value = str(raw.get("dateTime") or "")
    if is_all_day:
        return EventTime.all_day(date.fromisoformat(value[:10]))
    return EventTime.at(_parse_api_instant(value), "UTC")


def normalize_outlook_event(event: dict[str, Any]) -> CanonicalOccurrence | None:
    """Map one Graph calendarView entry to a canonical occurrence; series masters are dropped."""
    event_id = str(event.get("id") or "").strip()
    if not event_id or not event.get("start") or not event.get("end"):
        return None
    if event.get("type") == "seriesMaster":
        return None
    is_all_day = bool(event.get("isAllDay"))
    reminder = event.get("reminderMinutesBeforeStart")
    location = event.get("location") or {}
    return CanonicalOccurrence(
        id=event_id,
        series_id=event.get("seriesMasterId") or None,
        ical_uid=event.get("iCalUId") or None,
        title=_title(event.get("subject")),
        description=_outlook_description(event),
        location=str(location.get("displayName") or "").strip(),
        start=_outlook_time(event["start"], is_all_day),
        end=_outlook_time(event["end"], is_all_day),
        is_all_day=is_all_day,
        is_cancelled=bool(event.get("isCancelled")),
        last_modified=_parse_optional_instant(event.get("lastModifiedDateTime")),
        reminder_lead_minutes=int(reminder) if isinstance(reminder, (int, float)) else None,
    )


def clamp_reminder(minutes: int | None) -> int | None:
    """None or negative means "use the calendar default"; otherwise clamp to the destination limit."""
    if minutes is None or minutes < 0:
        return None
    return max(0, min(int(minutes), MAX_REMINDER_MINUTES))


@dataclass
class DestinationPayload:
    title: str
    start: EventTime
    end: EventTime
    description: str = ""
    location: str = ""
    is_all_day: bool = False
    reminder_minutes: int | None = None
    private_metadata: dict[str, str] = field(default_factory=dict)

    def reminders(self) -> dict[str, Any]:
        if self.reminder_minutes is None:
            return {"useDefault": True}
        return {"useDefault": False, "overrides": [{"method": "popup", "minutes": self.reminder_minutes}]}

    def to_google_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.title,
            "description": self.description,
            "start": self.start.to_payload(),
            "end": self.end.to_payload(),
            "reminders": self.reminders(),
            "extendedProperties": {"private": dict(self.private_metadata)},
        }
        if self.location:
            body["location"] = self.location
        return body

    def fingerprint(self) -> str:
        encoded = json.dumps(self.to_google_body(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha1(encoded.encode("utf-8")).hexdigest()  # nosec B324


def build_private_metadata(subscription_id: str, source_kind: str, source_event_id: str) -> dict[str, str]:
    return {
        "app": APP_MARKER,
        "source": SOURCE_LABELS.get(source_kind, source_kind),
        "source_mode": source_kind,
        "subscription_id": subscription_id,
        "source_event_id": source_event_id,
    }


def to_destination_payload(
    occurrence: CanonicalOccurrence, subscription_id: str, source_kind: str
) -> DestinationPayload:
    return DestinationPayload(
        title=occurrence.title,
        description=occurrence.description,
        location=occurrence.location,
        start=occurrence.start,
        end=occurrence.end,
        is_all_day=occurrence.is_all_day,
        reminder_minutes=clamp_reminder(occurrence.reminder_lead_minutes),
        private_metadata=build_private_metadata(subscription_id, source_kind, occurrence.id),
    )
