from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


SOURCE_KINDS = ("ics", "google", "microsoft")
DESTINATION_KINDS = ("google", "caldav")


class InvalidWindowError(ValueError):
    """Raised when sync window bounds are missing, unparseable or inverted."""


class ConfigError(RuntimeError):
    pass


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def format_instant(value: datetime) -> str:
    """Render an instant as UTC ISO-8601 with millisecond precision, e.g. 2026-03-01T15:00:00.000Z."""
    utc_value = _ensure_tz(value).astimezone(timezone.utc)
    return utc_value.strftime("%Y-%m-%dT%H:%M:%S") + f".{utc_value.microsecond // 1000:03d}Z"


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _clean_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()


@dataclass
class SyncConfig:
    lookback_days: int = 7
    lookahead_days: int = 15
    interval_seconds: int = 300
    timezone: str = "UTC"
    request_timeout_seconds: int = 20
    max_attempts: int = 5

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            lookback_days=max(0, int(data.get("lookback_days", 7))),
            lookahead_days=max(0, int(data.get("lookahead_days", 15))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            timezone=_clean_str(data.get("timezone"), "UTC") or "UTC",
            request_timeout_seconds=max(1, int(data.get("request_timeout_seconds", 20))),
            max_attempts=max(1, int(data.get("max_attempts", 5))),
        )


@dataclass
class DestinationConfig:
    kind: str = "google"
    calendar_id: str = ""
    access_token: str = ""
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DestinationConfig":
        data = data or {}
        kind = _clean_str(data.get("kind"), "google").lower()
        if kind not in DESTINATION_KINDS:
            kind = "google"
        return cls(
            kind=kind,
            calendar_id=_clean_str(data.get("calendar_id")),
            access_token=_clean_str(data.get("access_token")),
            base_url=_clean_str(data.get("base_url")),
            username=_clean_str(data.get("username")),
            password=_clean_str(data.get("password")),
        )


@dataclass
class SourceConfig:
    kind: str = "ics"
    url: str = ""
    calendar_id: str = ""
    access_token: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SourceConfig":
        data = data or {}
        kind = _clean_str(data.get("kind"), "ics").lower()
        if kind not in SOURCE_KINDS:
            raise ConfigError(f"Unsupported source kind: {kind!r}")
        return cls(
            kind=kind,
            url=_clean_str(data.get("url")),
            calendar_id=_clean_str(data.get("calendar_id")) or ("primary" if kind == "google" else ""),
            access_token=_clean_str(data.get("access_token")),
        )


@dataclass
class SubscriptionConfig:
    id: str
    source: SourceConfig = field(default_factory=SourceConfig)
    target_calendar_id: str = ""
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SubscriptionConfig":
        return cls(
            id=_clean_str(data.get("id")),
            source=SourceConfig.from_dict(data.get("source")),
            target_calendar_id=_clean_str(data.get("target_calendar_id")),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    subscriptions: list[SubscriptionConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        subscriptions: list[SubscriptionConfig] = []
        seen: set[str] = set()
        raw_subscriptions = data.get("subscriptions") or []
        if isinstance(raw_subscriptions, list):
            for item in raw_subscriptions:
                if not isinstance(item, dict):
                    continue
                subscription = SubscriptionConfig.from_dict(item)
                if not subscription.id or subscription.id in seen:
                    continue
                seen.add(subscription.id)
                subscriptions.append(subscription)
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            destination=DestinationConfig.from_dict(data.get("destination")),
            subscriptions=subscriptions,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def target_calendar_id(self, subscription: SubscriptionConfig) -> str:
        target = subscription.target_calendar_id or self.destination.calendar_id
        if not target:
            raise ConfigError(f"No target calendar configured for subscription {subscription.id!r}")
        return target


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class EventTime:
    """Either a calendar date (all-day) or an absolute instant with a display zone."""

    date: date | None = None
    date_time: datetime | None = None
    time_zone: str = "UTC"

    @classmethod
    def all_day(cls, value: date) -> "EventTime":
        return cls(date=value)

    @classmethod
    def at(cls, instant: datetime, time_zone: str = "UTC") -> "EventTime":
        return cls(date_time=_ensure_tz(instant).astimezone(timezone.utc), time_zone=time_zone or "UTC")

    @property
    def is_date(self) -> bool:
        return self.date is not None

    @property
    def instant(self) -> datetime:
        if self.date is not None:
            return datetime.combine(self.date, time.min, tzinfo=timezone.utc)
        if self.date_time is None:
            raise ValueError("EventTime has neither date nor date_time")
        return self.date_time

    def to_payload(self) -> dict[str, str]:
        if self.date is not None:
            return {"date": self.date.isoformat()}
        return {"dateTime": format_instant(self.instant), "timeZone": self.time_zone}


@dataclass
class CanonicalOccurrence:
    id: str
    title: str
    start: EventTime
    end: EventTime
    description: str = ""
    location: str = ""
    series_id: str | None = None
    ical_uid: str | None = None
    is_all_day: bool = False
    is_cancelled: bool = False
    last_modified: datetime | None = None
    reminder_lead_minutes: int | None = None

    @property
    def start_instant(self) -> datetime:
        return self.start.instant

    @property
    def end_instant(self) -> datetime:
        return self.end.instant

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "series_id": self.series_id,
            "ical_uid": self.ical_uid,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start": self.start.to_payload(),
            "end": self.end.to_payload(),
            "is_all_day": self.is_all_day,
            "is_cancelled": self.is_cancelled,
            "last_modified": serialize_datetime(self.last_modified),
            "reminder_lead_minutes": self.reminder_lead_minutes,
        }


@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise InvalidWindowError("Sync window bounds must be datetimes")
        object.__setattr__(self, "start", _ensure_tz(self.start).astimezone(timezone.utc))
        object.__setattr__(self, "end", _ensure_tz(self.end).astimezone(timezone.utc))
        if self.end <= self.start:
            raise InvalidWindowError("Sync window end must be later than start")

    @classmethod
    def from_iso(cls, start: str, end: str) -> "SyncWindow":
        try:
            start_dt = parse_iso_datetime(start)
            end_dt = parse_iso_datetime(end)
        except (TypeError, ValueError) as exc:
            raise InvalidWindowError(f"Invalid sync window: {start!r} - {end!r}") from exc
        if start_dt is None or end_dt is None:
            raise InvalidWindowError("Sync window bounds are required")
        return cls(start_dt, end_dt)

    @classmethod
    def around(cls, now: datetime, lookback_days: int, lookahead_days: int) -> "SyncWindow":
        now_utc = _ensure_tz(now).astimezone(timezone.utc)
        return cls(now_utc - timedelta(days=lookback_days), now_utc + timedelta(days=lookahead_days))

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return end > self.start and start < self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": format_instant(self.start), "end": format_instant(self.end)}


@dataclass
class MappingRecord:
    subscription_id: str
    source_event_id: str
    destination_event_id: str
    destination_etag: str | None = None
    series_id: str | None = None
    source_last_modified: str | None = None
    payload_hash: str = ""
    last_synced_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncMetrics:
    fetched: int = 0
    considered: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class CycleResult:
    subscription_id: str
    source_kind: str
    target_calendar_id: str
    window: SyncWindow
    metrics: SyncMetrics

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "source_kind": self.source_kind,
            "target_calendar_id": self.target_calendar_id,
            "window": self.window.to_dict(),
            "metrics": self.metrics.to_dict(),
        }


@dataclass
class SubscriptionOutcome:
    subscription_id: str
    status: str
    message: str = ""
    result: CycleResult | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "status": self.status,
            "message": self.message,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    failures: int
    trigger: str
    outcomes: list[SubscriptionOutcome] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.failures == 0 and self.status != "error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "failures": self.failures,
            "trigger": self.trigger,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "run_at": serialize_datetime(self.run_at),
        }
