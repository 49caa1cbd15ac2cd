from __future__ import annotations

import logging
import os
import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo

from dateutil import tz

from calmirror.models import parse_iso_datetime

logger = logging.getLogger(__name__)

# Offsets never flip more often than this while converging on a local wall clock.
CONVERGENCE_ITERATIONS = 4

DATE_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
DATETIME_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})?(Z)?$", re.IGNORECASE)
ZONE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_+\-]+(?:/[A-Za-z0-9_+\-]+)*$")

# Windows / Outlook zone names mapped to IANA identifiers.
WINDOWS_ZONES = {
    "Dateline Standard Time": "Etc/GMT+12",
    "UTC-11": "Etc/GMT+11",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "Alaskan Standard Time": "America/Anchorage",
    "Alaska Standard Time": "America/Anchorage",
    "Pacific Standard Time": "America/Los_Angeles",
    "Pacific Daylight Time": "America/Los_Angeles",
    "US Mountain Standard Time": "America/Phoenix",
    "Mountain Standard Time": "America/Denver",
    "Mountain Daylight Time": "America/Denver",
    "Central America Standard Time": "America/Guatemala",
    "Central Standard Time": "America/Chicago",
    "Central Daylight Time": "America/Chicago",
    "Canada Central Standard Time": "America/Regina",
    "SA Pacific Standard Time": "America/Bogota",
    "Eastern Standard Time": "America/New_York",
    "Eastern Daylight Time": "America/New_York",
    "US Eastern Standard Time": "America/Indianapolis",
    "Venezuela Standard Time": "America/Caracas",
    "Atlantic Standard Time": "America/Halifax",
    "Newfoundland Standard Time": "America/St_Johns",
    "E. South America Standard Time": "America/Sao_Paulo",
    "Argentina Standard Time": "America/Buenos_Aires",
    "UTC": "UTC",
    "Coordinated Universal Time": "UTC",
    "GMT Standard Time": "Europe/London",
    "Greenwich Standard Time": "Atlantic/Reykjavik",
    "W. Europe Standard Time": "Europe/Berlin",
    "Central Europe Standard Time": "Europe/Budapest",
    "Central European Standard Time": "Europe/Warsaw",
    "Romance Standard Time": "Europe/Paris",
    "W. Central Africa Standard Time": "Africa/Lagos",
    "GTB Standard Time": "Europe/Bucharest",
    "E. Europe Standard Time": "Europe/Chisinau",
    "FLE Standard Time": "Europe/Kiev",
    "Israel Standard Time": "Asia/Jerusalem",
    "South Africa Standard Time": "Africa/Johannesburg",
    "Egypt Standard Time": "Africa/Cairo",
    "Turkey Standard Time": "Europe/Istanbul",
    "Russian Standard Time": "Europe/Moscow",
    "Arab Standard Time": "Asia/Riyadh",
    "Arabian Standard Time": "Asia/Dubai",
    "Iran Standard Time": "Asia/Tehran",
    "Pakistan Standard Time": "Asia/Karachi",
    "India Standard Time": "Asia/Kolkata",
    "Nepal Standard Time": "Asia/Katmandu",
    "Bangladesh Standard Time": "Asia/Dhaka",
    "SE Asia Standard Time": "Asia/Bangkok",
    "China Standard Time": "Asia/Shanghai",
    "Singapore Standard Time": "Asia/Singapore",
    "Taipei Standard Time": "Asia/Taipei",
    "W. Australia Standard Time": "Australia/Perth",
    "Tokyo Standard Time": "Asia/Tokyo",
    "Korea Standard Time": "Asia/Seoul",
    "Cen. Australia Standard Time": "Australia/Adelaide",
    "AUS Central Standard Time": "Australia/Darwin",
    "E. Australia Standard Time": "Australia/Brisbane",
    "AUS Eastern Standard Time": "Australia/Sydney",
    "Tasmania Standard Time": "Australia/Hobart",
    "New Zealand Standard Time": "Pacific/Auckland",
}
_WINDOWS_ZONES_FOLDED = {key.casefold(): value for key, value in WINDOWS_ZONES.items()}


@dataclass(frozen=True)
class WallClock:
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int

    def to_floating(self) -> datetime:
        return datetime(self.year, self.month, self.day, self.hour, self.minute, self.second)


def parse_date_value(value: str) -> date | None:
    match = DATE_PATTERN.match(value.strip())
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_floating(value: str) -> tuple[datetime, bool] | None:
    """Parse a basic-format date-time into a naive wall clock plus a flag for an explicit UTC marker."""
    match = DATETIME_PATTERN.match(value.strip())
    if not match:
        return None
    year, month, day, hour, minute, second, zulu = match.groups()
    try:
        parsed = datetime(int(year), int(month), int(day), int(hour), int(minute), int(second or 0))
    except ValueError:
        return None
    return parsed, bool(zulu)


def identity_token(value: date | datetime) -> str:
    if isinstance(value, datetime):
        utc_value = value.astimezone(timezone.utc) if value.tzinfo else value
        return utc_value.strftime("%Y%m%dT%H%M%SZ")
    return value.isoformat()


class TemporalResolver:
    """Converts feed-local wall clocks to absolute instants and back.

    Zone lookups are memoised per resolver in a bounded LRU map, so a resolver
    should be created once per process (or per sync batch) and passed around.
    """

    def __init__(self, default_zone: str = "UTC", cache_size: int = 256) -> None:
        self.cache_size = max(1, int(cache_size))
        self._zones: OrderedDict[str, tuple[str, tzinfo] | None] = OrderedDict()
        resolved = self._lookup(default_zone) if default_zone else None
        if resolved is None:
            logger.warning("Unknown default time zone %r, falling back to UTC", default_zone)
            resolved = ("UTC", timezone.utc)
        self.default_zone_name, self.default_zone = resolved

    def _remember(self, key: str, value: tuple[str, tzinfo] | None) -> tuple[str, tzinfo] | None:
        self._zones[key] = value
        self._zones.move_to_end(key)
        while len(self._zones) > self.cache_size:
            self._zones.popitem(last=False)
        return value

    def _lookup(self, name: str | None) -> tuple[str, tzinfo] | None:
        key = str(name or "").strip().strip('"')
        if not key:
            return None
        if key in self._zones:
            self._zones.move_to_end(key)
            return self._zones[key]
        return self._remember(key, self._resolve_zone_name(key))

    @staticmethod
    def _gettz(candidate: str) -> tzinfo | None:
        if candidate.upper() in {"UTC", "GMT", "Z", "ETC/UTC"}:
            return timezone.utc
        if not ZONE_ID_PATTERN.match(candidate) or os.path.isabs(candidate):
            return None
        return tz.gettz(candidate)

    def _resolve_zone_name(self, name: str) -> tuple[str, tzinfo] | None:
        mapped = _WINDOWS_ZONES_FOLDED.get(name.casefold())
        if mapped:
            zone = self._gettz(mapped)
            if zone is not None:
                return mapped, zone

        zone = self._gettz(name)
        if zone is not None:
            return ("UTC" if zone is timezone.utc else name), zone

        # /vendor/version/Region/City degrades to Region/City.
        parts = [part for part in name.split("/") if part]
        for index in range(1, len(parts)):
            candidate = "/".join(parts[index:])
            zone = self._gettz(candidate)
            if zone is not None:
                return ("UTC" if zone is timezone.utc else candidate), zone

        folded = name.casefold()
        if len(folded) >= 4:
            for windows_name, iana_name in _WINDOWS_ZONES_FOLDED.items():
                if windows_name in folded or folded in windows_name:
                    zone = self._gettz(iana_name)
                    if zone is not None:
                        return iana_name, zone
        return None

    def lookup_zone(self, name: str | None) -> tzinfo | None:
        resolved = self._lookup(name)
        return resolved[1] if resolved else None

    def canonical_zone_name(self, name: str | None) -> str | None:
        resolved = self._lookup(name)
        return resolved[0] if resolved else None

    def _zone_or_default(self, name: str | None) -> tuple[str, tzinfo]:
        resolved = self._lookup(name)
        if resolved is None:
            if name:
                logger.debug("Unknown time zone %r, using %s", name, self.default_zone_name)
            return self.default_zone_name, self.default_zone
        return resolved

    def display_zone(self, name: str | None) -> str:
        return self._zone_or_default(name)[0]

    @staticmethod
    def _offset(zone: tzinfo, instant: datetime) -> timedelta:
        return instant.astimezone(zone).utcoffset() or timedelta(0)

    def zone_offset_at(self, zone_name: str | None, instant: datetime) -> timedelta:
        _, zone = self._zone_or_default(zone_name)
        return self._offset(zone, instant)

    def wall_clock_at(self, instant: datetime, zone_name: str | None) -> WallClock:
        _, zone = self._zone_or_default(zone_name)
        local = instant.astimezone(zone)
        return WallClock(local.year, local.month, local.day, local.hour, local.minute, local.second)

    def to_floating(self, instant: datetime, zone_name: str | None) -> datetime:
        return self.wall_clock_at(instant, zone_name).to_floating()

    def from_floating(self, wall_clock: datetime, zone_name: str | None) -> datetime:
        _, zone = self._zone_or_default(zone_name)
        wall_as_utc = wall_clock.replace(tzinfo=timezone.utc)
        offset = self._offset(zone, wall_as_utc)
        instant = wall_as_utc - offset
        for _ in range(CONVERGENCE_ITERATIONS):
            next_offset = self._offset(zone, instant)
            if next_offset == offset:
                break
            offset = next_offset
            instant = wall_as_utc - offset
        return instant

    def resolve_local(
        self,
        value: str,
        zone_name: str | None = None,
        value_type: str | None = None,
    ) -> date | datetime | None:
        """Resolve an iCalendar date or date-time value to a date or an aware UTC instant."""
        text = str(value or "").strip()
        if not text:
            return None
        if (value_type or "").upper() == "DATE" or DATE_PATTERN.match(text):
            return parse_date_value(text)
        floating = parse_floating(text)
        if floating is None:
            try:
                parsed = parse_iso_datetime(text)
            except ValueError:
                return None
            return parsed.astimezone(timezone.utc) if parsed else None
        wall_clock, is_utc = floating
        if is_utc:
            return wall_clock.replace(tzinfo=timezone.utc)
        return self.from_floating(wall_clock, zone_name)
