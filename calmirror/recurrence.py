"""Recurrence expansion for feed events.

Zone-qualified series are expanded on the floating (naive) local wall clock
and every generated wall clock is re-anchored to an absolute instant on its
own, which keeps "every Tuesday 11:30 America/Toronto" at 11:30 local on both
sides of a DST change. Expanding on fixed-offset instants and converting
afterwards would drift by the DST delta.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable

from dateutil.rrule import rruleset, rrulestr

from calmirror.ics_parser import (
    IntermediateOccurrence,
    Temporal,
    build_occurrence,
    parse_feed,
    temporal_from_date,
    temporal_from_instant,
)
from calmirror.models import CanonicalOccurrence, SyncWindow
from calmirror.timezones import TemporalResolver

logger = logging.getLogger(__name__)

UNTIL_PATTERN = re.compile(r"(UNTIL=)(\d{8}T\d{6})Z", re.IGNORECASE)
# Longest each month can be; February counts its leap day.
MONTH_LENGTHS = {1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31}
MAX_CANDIDATES = 5000
# Floating and absolute bounds differ by at most one UTC offset.
SEARCH_PADDING = timedelta(days=1)
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class FeedExpansion:
    fetched_count: int
    occurrences: list[CanonicalOccurrence]


def _modified_key(occurrence: IntermediateOccurrence) -> datetime:
    return occurrence.last_modified or _OLDEST


def deduplicate(occurrences: Iterable[IntermediateOccurrence]) -> list[IntermediateOccurrence]:
    """Keep one record per id: the later last-modified wins, ties keep the earlier record."""
    kept: dict[str, IntermediateOccurrence] = {}
    for occurrence in occurrences:
        existing = kept.get(occurrence.id)
        if existing is None or _modified_key(occurrence) > _modified_key(existing):
            kept[occurrence.id] = occurrence
    return list(kept.values())


def sort_occurrences(occurrences: Iterable[IntermediateOccurrence]) -> list[IntermediateOccurrence]:
    return sorted(occurrences, key=lambda item: (item.start_instant, item.id))


def _rule_parts(rule: str) -> dict[str, str]:
    body = rule.split(":", 1)[1] if rule.upper().startswith("RRULE:") else rule
    parts: dict[str, str] = {}
    for item in body.split(";"):
        name, sep, value = item.partition("=")
        if sep:
            parts[name.strip().upper()] = value.strip()
    return parts


def _int_list(value: str) -> list[int]:
    return [int(item) for item in value.split(",") if item.strip()]


def check_rule(rule: str) -> None:
    """Reject rules dateutil accepts but can never finish expanding.

    A zero INTERVAL never advances, and a BYMONTHDAY that exists in none of the
    selected months makes dateutil scan every year up to 9999.
    """
    parts = _rule_parts(rule)
    for name in ("INTERVAL", "COUNT"):
        if name in parts and int(parts[name]) < 1:
            raise ValueError(f"{name} must be positive, got {parts[name]!r}")
    if "BYMONTHDAY" in parts:
        months = _int_list(parts["BYMONTH"]) if "BYMONTH" in parts else list(MONTH_LENGTHS)
        longest = max((MONTH_LENGTHS.get(month, 0) for month in months), default=0)
        if not any(0 < abs(day) <= longest for day in _int_list(parts["BYMONTHDAY"])):
            raise ValueError("BYMONTHDAY never occurs in the selected months")


class RecurrenceExpander:
    def __init__(self, resolver: TemporalResolver) -> None:
        self.resolver = resolver

    def _localized_rule(self, master: IntermediateOccurrence) -> str:
        rule = master.rrule or ""
        zone_name = master.start.zone_name
        if master.is_all_day or not zone_name:
            return rule

        def _to_local(match: re.Match[str]) -> str:
            until = datetime.strptime(match.group(2), "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)
            local = self.resolver.to_floating(until, zone_name)
            return match.group(1) + local.strftime("%Y%m%dT%H%M%S")

        return UNTIL_PATTERN.sub(_to_local, rule)

    def _floating_rdate(self, master: IntermediateOccurrence, value: Temporal) -> datetime:
        if value.is_date or master.is_all_day:
            return value.floating
        return self.resolver.to_floating(value.instant, master.start.zone_name)

    def _floating_bounds(self, master: IntermediateOccurrence, window: SyncWindow) -> tuple[datetime, datetime]:
        lower = window.start - master.duration
        if master.is_all_day:
            return (
                lower.replace(tzinfo=None) - SEARCH_PADDING,
                window.end.replace(tzinfo=None) + SEARCH_PADDING,
            )
        zone_name = master.start.zone_name
        return (
            self.resolver.to_floating(lower, zone_name) - SEARCH_PADDING,
            self.resolver.to_floating(window.end, zone_name) + SEARCH_PADDING,
        )

    def candidates(self, master: IntermediateOccurrence, window: SyncWindow) -> list[datetime]:
        """Floating start wall clocks the rule generates around the window."""
        if master.rrule:
            check_rule(master.rrule)
            rules = rrulestr(
                self._localized_rule(master),
                dtstart=master.start.floating,
                forceset=True,
                ignoretz=True,
            )
        else:
            rules = rruleset()
        rules.rdate(master.start.floating)
        for value in master.rdates:
            rules.rdate(self._floating_rdate(master, value))
        lower, upper = self._floating_bounds(master, window)
        found: list[datetime] = []
        for floating in rules.xafter(lower, inc=True):
            if floating > upper:
                break
            if len(found) >= MAX_CANDIDATES:
                logger.warning("RRULE on %s yields more than %d instances; truncating", master.uid, MAX_CANDIDATES)
                break
            found.append(floating)
        return found

    def instance(self, master: IntermediateOccurrence, floating: datetime) -> tuple[str, IntermediateOccurrence]:
        duration = master.duration
        if master.is_all_day:
            start = temporal_from_date(floating.date())
            end = start.shifted(duration)
        else:
            zone_name = master.start.zone_name
            instant = self.resolver.from_floating(floating, zone_name)
            end_instant = instant + duration
            start = temporal_from_instant(instant, floating, zone_name)
            end = temporal_from_instant(end_instant, self.resolver.to_floating(end_instant, zone_name), zone_name)
        token = start.token
        occurrence = replace(
            master,
            id=f"{master.uid}::{token}",
            start=start,
            end=end,
            rrule=None,
            rdates=(),
            exdate_tokens=frozenset(),
            series_id=master.uid,
        )
        return token, occurrence

    def expand(
        self,
        master: IntermediateOccurrence,
        window: SyncWindow,
        overrides: Iterable[IntermediateOccurrence] = (),
    ) -> list[IntermediateOccurrence]:
        try:
            candidates = self.candidates(master, window)
        except (ValueError, TypeError) as exc:
            logger.warning(
                "Unparseable RRULE %r on %s (%s); mirroring only its first occurrence",
                master.rrule,
                master.uid,
                exc,
            )
            candidates = [master.start.floating]

        by_token: dict[str, IntermediateOccurrence] = {}
        for override in deduplicate(overrides):
            if override.recurrence_token is not None:
                by_token[override.recurrence_token] = replace(override, series_id=master.uid)

        expanded: list[IntermediateOccurrence] = []
        matched: set[str] = set()
        for floating in candidates:
            token, occurrence = self.instance(master, floating)
            if token in master.exdate_tokens:
                continue
            if not window.overlaps(occurrence.start_instant, occurrence.end_instant):
                continue
            matched.add(token)
            override = by_token.get(token)
            if override is None:
                expanded.append(occurrence)
            elif window.overlaps(override.start_instant, override.end_instant):
                expanded.append(override)

        for token, override in by_token.items():
            if token in matched:
                continue
            if window.overlaps(override.start_instant, override.end_instant):
                expanded.append(override)
        return expanded


def expand_feed(text: str, window: SyncWindow, resolver: TemporalResolver) -> FeedExpansion:
    """Parse a feed and return every in-window occurrence, recurrences expanded."""
    intermediates = [
        occurrence
        for occurrence in (build_occurrence(block, resolver) for block in parse_feed(text))
        if occurrence is not None
    ]

    masters: dict[str, IntermediateOccurrence] = {}
    overrides: dict[str, list[IntermediateOccurrence]] = defaultdict(list)
    singles: list[IntermediateOccurrence] = []
    for occurrence in intermediates:
        if occurrence.is_override:
            overrides[occurrence.uid].append(occurrence)
        elif occurrence.is_master:
            existing = masters.get(occurrence.uid)
            if existing is None or _modified_key(occurrence) > _modified_key(existing):
                masters[occurrence.uid] = occurrence
        else:
            singles.append(occurrence)

    expander = RecurrenceExpander(resolver)
    emitted: list[IntermediateOccurrence] = []
    for uid, master in masters.items():
        emitted.extend(expander.expand(master, window, overrides.pop(uid, [])))
    for orphans in overrides.values():
        emitted.extend(
            orphan for orphan in orphans if window.overlaps(orphan.start_instant, orphan.end_instant)
        )
    emitted.extend(single for single in singles if window.overlaps(single.start_instant, single.end_instant))

    ordered = sort_occurrences(deduplicate(emitted))
    return FeedExpansion(
        fetched_count=len(intermediates),
        occurrences=[occurrence.to_canonical() for occurrence in ordered],
    )
