"""Line-level iCalendar parsing and per-VEVENT occurrence building.

Malformed lines and unusable events are dropped and logged at DEBUG level;
nothing in here raises on bad feed content.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone

from icalendar.prop import vDuration

from calmirror.models import CanonicalOccurrence, EventTime
from calmirror.timezones import TemporalResolver, identity_token, parse_floating

logger = logging.getLogger(__name__)

NO_TITLE = "(No title)"
DEFAULT_TIMED_DURATION = timedelta(minutes=30)
DEFAULT_ALL_DAY_DURATION = timedelta(days=1)

ESCAPE_PATTERN = re.compile(r"\\([\\;,nN])")


@dataclass
class IcsProperty:
    name: str
    params: dict[str, str]
    value: str
    component: str = "VEVENT"


PropertyBlock = list[IcsProperty]


def unfold_lines(text: str) -> list[str]:
    raw_lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    lines: list[str] = []
    for raw_line in raw_lines:
        if raw_line[:1] in (" ", "\t") and lines:
            lines[-1] += raw_line[1:]
            continue
        lines.append(raw_line)
    return lines


def _split_unquoted(text: str, separator: str, maxsplit: int = -1) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    quoted = False
    for char in text:
        if char == '"':
            quoted = not quoted
        if char == separator and not quoted and (maxsplit < 0 or len(parts) < maxsplit):
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return parts


def parse_property(line: str) -> IcsProperty | None:
    pieces = _split_unquoted(line, ":", maxsplit=1)
    if len(pieces) < 2:
        return None
    head, value = pieces
    raw_name, *raw_params = _split_unquoted(head, ";")
    name = raw_name.strip().upper()
    if not name:
        return None
    params: dict[str, str] = {}
    for raw_param in raw_params:
        key, sep, raw_value = raw_param.partition("=")
        if not sep:
            continue
        params[key.strip().upper()] = raw_value.strip().strip('"')
    return IcsProperty(name=name, params=params, value=value)


def parse_feed(text: str) -> list[PropertyBlock]:
    """Split raw feed text into one property list per VEVENT."""
    blocks: list[PropertyBlock] = []
    current: PropertyBlock | None = None
    nested: list[str] = []
    for line in unfold_lines(text):
        stripped = line.strip()
        upper = stripped.upper()
        if upper == "BEGIN:VEVENT" and current is None:
            current = []
            nested = []
            continue
        if current is None:
            continue
        if upper == "END:VEVENT" and not nested:
            blocks.append(current)
            current = None
            continue
        if upper.startswith("BEGIN:"):
            nested.append(upper[len("BEGIN:"):])
            continue
        if upper.startswith("END:"):
            if nested:
                nested.pop()
            continue
        parsed = parse_property(stripped)
        if parsed is None:
            logger.debug("Dropping malformed feed line: %r", line[:80])
            continue
        if nested:
            parsed.component = nested[-1]
        current.append(parsed)
    return blocks


def unescape_text(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        char = match.group(1)
        return "\n" if char in "nN" else char

    return ESCAPE_PATTERN.sub(_replace, value)


def parse_duration(value: str) -> timedelta | None:
    text = value.strip().upper()
    # A bare designator carries no length.
    if text.lstrip("+-") in {"P", "PT"}:
        return None
    try:
        return vDuration.from_ical(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class Temporal:
    value: date | datetime
    floating: datetime
    zone_name: str | None
    is_date: bool

    @property
    def instant(self) -> datetime:
        if isinstance(self.value, datetime):
            return self.value
        return datetime.combine(self.value, time.min, tzinfo=timezone.utc)

    @property
    def token(self) -> str:
        return identity_token(self.value)

    def shifted(self, delta: timedelta) -> "Temporal":
        if isinstance(self.value, datetime):
            return replace(self, value=self.value + delta, floating=self.floating + delta)
        return replace(self, value=self.value + timedelta(days=delta.days), floating=self.floating + delta)

    def to_event_time(self) -> EventTime:
        if isinstance(self.value, datetime):
            return EventTime.at(self.value, self.zone_name or "UTC")
        return EventTime.all_day(self.value)


def temporal_from_date(value: date) -> Temporal:
    return Temporal(value=value, floating=datetime.combine(value, time.min), zone_name=None, is_date=True)


def temporal_from_instant(instant: datetime, floating: datetime, zone_name: str | None) -> Temporal:
    return Temporal(value=instant.astimezone(timezone.utc), floating=floating, zone_name=zone_name, is_date=False)


def _parse_temporal_value(
    raw_value: str, params: dict[str, str], resolver: TemporalResolver
) -> Temporal | None:
    zone_param = params.get("TZID")
    resolved = resolver.resolve_local(raw_value, zone_param, params.get("VALUE"))
    if resolved is None:
        return None
    if not isinstance(resolved, datetime):
        return temporal_from_date(resolved)
    floating = parse_floating(raw_value)
    if floating is not None and not floating[1]:
        return temporal_from_instant(resolved, floating[0], resolver.display_zone(zone_param))
    return temporal_from_instant(resolved, resolved.astimezone(timezone.utc).replace(tzinfo=None), "UTC")


def parse_temporal(prop: IcsProperty, resolver: TemporalResolver) -> Temporal | None:
    return _parse_temporal_value(prop.value, prop.params, resolver)


def parse_temporal_list(prop: IcsProperty, resolver: TemporalResolver) -> list[Temporal]:
    values: list[Temporal] = []
    for raw_value in prop.value.split(","):
        if not raw_value.strip():
            continue
        parsed = _parse_temporal_value(raw_value, prop.params, resolver)
        if parsed is None:
            logger.debug("Skipping unparseable %s value %r", prop.name, raw_value)
            continue
        values.append(parsed)
    return values


def _first(block: PropertyBlock, name: str) -> IcsProperty | None:
    for prop in block:
        if prop.name == name and prop.component == "VEVENT":
            return prop
    return None


def _all(block: PropertyBlock, name: str) -> list[IcsProperty]:
    return [prop for prop in block if prop.name == name and prop.component == "VEVENT"]


def _reminder_minutes(block: PropertyBlock) -> int | None:
    leads: list[int] = []
    for prop in block:
        if prop.component != "VALARM" or prop.name != "TRIGGER":
            continue
        if prop.params.get("VALUE", "").upper() == "DATE-TIME":
            continue
        if prop.params.get("RELATED", "START").upper() != "START":
            continue
        delta = parse_duration(prop.value)
        if delta is None or delta > timedelta(0):
            continue
        leads.append(int(-delta.total_seconds() // 60))
    return min(leads) if leads else None


@dataclass
class IntermediateOccurrence:
    id: str
    uid: str
    start: Temporal
    end: Temporal
    title: str = NO_TITLE
    description: str = ""
    location: str = ""
    is_cancelled: bool = False
    last_modified: datetime | None = None
    rrule: str | None = None
    recurrence_token: str | None = None
    exdate_tokens: frozenset[str] = frozenset()
    rdates: tuple[Temporal, ...] = ()
    reminder_lead_minutes: int | None = None
    series_id: str | None = None

    @property
    def is_all_day(self) -> bool:
        return self.start.is_date

    @property
    def is_override(self) -> bool:
        return self.recurrence_token is not None

    @property
    def is_master(self) -> bool:
        return bool(self.rrule or self.rdates) and not self.is_override

    @property
    def start_instant(self) -> datetime:
        return self.start.instant

    @property
    def end_instant(self) -> datetime:
        return self.end.instant

    @property
    def duration(self) -> timedelta:
        return self.end_instant - self.start_instant

    def to_canonical(self) -> CanonicalOccurrence:
        end_time = self.end.to_event_time()
        if self.is_all_day and not self.end.is_date:
            end_date = self.end_instant.date()
            if end_date <= self.start.value:
                end_date = self.start.value + DEFAULT_ALL_DAY_DURATION
            end_time = EventTime.all_day(end_date)
        return CanonicalOccurrence(
            id=self.id,
            series_id=self.series_id,
            ical_uid=self.uid,
            title=self.title,
            description=self.description,
            location=self.location,
            start=self.start.to_event_time(),
            end=end_time,
            is_all_day=self.is_all_day,
            is_cancelled=self.is_cancelled,
            last_modified=self.last_modified,
            reminder_lead_minutes=self.reminder_lead_minutes,
        )


def _exclusion_token(value: Temporal, as_date: bool) -> str:
    if as_date and isinstance(value.value, datetime):
        return value.floating.date().isoformat()
    return value.token


def build_occurrence(block: PropertyBlock, resolver: TemporalResolver) -> IntermediateOccurrence | None:
    """Build one intermediate occurrence from a VEVENT property block, or None when unusable."""
    uid_prop = _first(block, "UID")
    uid = uid_prop.value.strip() if uid_prop else ""
    start_prop = _first(block, "DTSTART")
    if not uid or start_prop is None:
        logger.debug("Skipping VEVENT without UID or DTSTART")
        return None
    start = parse_temporal(start_prop, resolver)
    if start is None:
        logger.debug("Skipping VEVENT %s: unparseable DTSTART %r", uid, start_prop.value)
        return None

    end_prop = _first(block, "DTEND")
    duration_prop = _first(block, "DURATION")
    if end_prop is not None:
        end = parse_temporal(end_prop, resolver)
        if end is None:
            logger.debug("Skipping VEVENT %s: unparseable DTEND %r", uid, end_prop.value)
            return None
    elif duration_prop is not None and parse_duration(duration_prop.value) is not None:
        end = start.shifted(parse_duration(duration_prop.value))
    elif start.is_date:
        end = start.shifted(DEFAULT_ALL_DAY_DURATION)
    else:
        end = start.shifted(DEFAULT_TIMED_DURATION)

    if end.instant <= start.instant:
        logger.debug("Skipping VEVENT %s: end is not after start", uid)
        return None

    recurrence_prop = _first(block, "RECURRENCE-ID")
    recurrence = parse_temporal(recurrence_prop, resolver) if recurrence_prop else None
    recurrence_token = recurrence.token if recurrence else None

    rrule_prop = _first(block, "RRULE")
    rrule = rrule_prop.value.strip() if rrule_prop and not recurrence_token else None

    exdate_tokens = {
        _exclusion_token(value, start.is_date)
        for prop in _all(block, "EXDATE")
        for value in parse_temporal_list(prop, resolver)
    }
    rdates: tuple[Temporal, ...] = ()
    if not recurrence_token:
        rdates = tuple(value for prop in _all(block, "RDATE") for value in parse_temporal_list(prop, resolver))

    last_modified = None
    for name in ("LAST-MODIFIED", "DTSTAMP"):
        stamp_prop = _first(block, name)
        stamp = parse_temporal(stamp_prop, resolver) if stamp_prop else None
        if stamp is not None and not stamp.is_date:
            last_modified = stamp.instant
            break

    status_prop = _first(block, "STATUS")
    summary_prop = _first(block, "SUMMARY")
    description_prop = _first(block, "DESCRIPTION")
    location_prop = _first(block, "LOCATION")

    return IntermediateOccurrence(
        id=f"{uid}::{recurrence_token}" if recurrence_token else uid,
        uid=uid,
        start=start,
        end=end,
        title=(unescape_text(summary_prop.value).strip() if summary_prop else "") or NO_TITLE,
        description=unescape_text(description_prop.value) if description_prop else "",
        location=unescape_text(location_prop.value) if location_prop else "",
        is_cancelled=bool(status_prop and status_prop.value.strip().upper() == "CANCELLED"),
        last_modified=last_modified,
        rrule=rrule,
        recurrence_token=recurrence_token,
        exdate_tokens=frozenset(exdate_tokens),
        rdates=rdates,
        reminder_lead_minutes=_reminder_minutes(block),
        series_id=uid if recurrence_token else None,
    )
