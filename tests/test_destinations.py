import unittest
from datetime import date, datetime, timezone
from types import SimpleNamespace
from unittest import mock

from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar

from calmirror.destinations import (
    CalDAVDestination,
    DestinationNotFoundError,
    GoogleCalendarDestination,
    build_destination,
    caldav_status,
    destination_uid,
)
from calmirror.http import HttpError
from calmirror.mapper import DestinationPayload, build_private_metadata
from calmirror.models import AppConfig, ConfigError, DestinationConfig, EventTime


def _payload(reminder: int | None = 15, source_event_id: str = "evt-1") -> DestinationPayload:
    return DestinationPayload(
        title="Team, Sync",
        start=EventTime.at(datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)),
        end=EventTime.at(datetime(2026, 3, 1, 15, 30, tzinfo=timezone.utc)),
        description="Line1\nLine2",
        location="Room;A",
        reminder_minutes=reminder,
        private_metadata=build_private_metadata("team", "ics", source_event_id),
    )


class GoogleDestinationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.http = mock.Mock()
        self.destination = GoogleCalendarDestination("token", http=self.http, max_attempts=1)

    def test_create_event(self) -> None:
        self.http.request.return_value.json.return_value = {
            "id": "g-1",
            "etag": '"e1"',
            "extendedProperties": {"private": {"app": "calmirror"}},
        }

        event = self.destination.create_event("mirror@example.com", _payload())

        self.assertEqual((event.id, event.etag), ("g-1", '"e1"'))
        method, url = self.http.request.call_args.args
        kwargs = self.http.request.call_args.kwargs
        self.assertEqual(method, "POST")
        self.assertEqual(url, "https://www.googleapis.com/calendar/v3/calendars/mirror%40example.com/events")
        self.assertEqual(kwargs["params"], {"sendUpdates": "none"})
        self.assertEqual(kwargs["json_body"]["extendedProperties"]["private"]["source_event_id"], "evt-1")
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer token"})

    def test_update_missing_event_raises_not_found(self) -> None:
        self.http.request.side_effect = HttpError("gone", status=404)
        with self.assertRaises(DestinationNotFoundError):
            self.destination.update_event("mirror", "g-1", _payload())

    def test_update_other_errors_propagate(self) -> None:
        self.http.request.side_effect = HttpError("forbidden", status=403)
        with self.assertRaises(HttpError):
            self.destination.update_event("mirror", "g-1", _payload())

    def test_delete_tolerates_gone_events(self) -> None:
        self.assertTrue(self.destination.delete_event("mirror", "g-1"))
        self.http.request.side_effect = HttpError("gone", status=410)
        self.assertFalse(self.destination.delete_event("mirror", "g-1"))

    def test_list_managed_events_filters_on_private_properties(self) -> None:
        self.http.get_json.side_effect = [
            {"items": [{"id": "g-1", "extendedProperties": {"private": {"source_event_id": "a"}}}], "nextPageToken": "p2"},
            {"items": [{"id": "g-2"}]},
        ]

        events = self.destination.list_managed_events("mirror", {"subscription_id": "team"})

        self.assertEqual([event.id for event in events], ["g-1", "g-2"])
        self.assertEqual(events[0].private_metadata, {"source_event_id": "a"})
        first_params = self.http.get_json.call_args_list[0].kwargs["params"]
        self.assertEqual(first_params["privateExtendedProperty"], ["app=calmirror", "subscription_id=team"])
        self.assertEqual(self.http.get_json.call_args_list[1].kwargs["params"]["pageToken"], "p2")


class CalDAVDestinationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.destination = CalDAVDestination(
            DestinationConfig(kind="caldav", base_url="https://dav.example.com", username="u", password="p"),
            max_attempts=1,
        )
        self.calendar = mock.Mock()
        patcher = mock.patch.object(self.destination, "_get_calendar", return_value=self.calendar)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_build_and_parse_round_trip(self) -> None:
        payload = _payload()
        uid = destination_uid(payload)
        raw_ical = self.destination._build_ical(uid, payload)

        self.assertIn("TRIGGER:-PT15M", raw_ical)
        self.assertIn("X-CALMIRROR-SOURCE-EVENT-ID:evt-1", raw_ical)
        vevent = ICalendar.from_ical(raw_ical).walk("VEVENT")[0]
        self.assertEqual(str(vevent.get("SUMMARY")), "Team, Sync")
        self.assertEqual(vevent.decoded("DTSTART"), datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc))

        event = self.destination._parse_resource(SimpleNamespace(data=raw_ical.encode("utf-8")))
        self.assertEqual(event.id, uid)
        self.assertEqual(event.private_metadata, payload.private_metadata)

    def test_all_day_payload_uses_dates(self) -> None:
        payload = DestinationPayload(
            title="Day Off",
            start=EventTime.all_day(date(2026, 3, 2)),
            end=EventTime.all_day(date(2026, 3, 3)),
            is_all_day=True,
        )
        raw_ical = self.destination._build_ical("uid-1", payload)
        self.assertIn("DTSTART;VALUE=DATE:20260302", raw_ical)
        self.assertNotIn("BEGIN:VALARM", raw_ical)

    def test_uid_is_stable_per_source_event(self) -> None:
        self.assertEqual(destination_uid(_payload()), destination_uid(_payload(reminder=None)))
        self.assertNotEqual(destination_uid(_payload()), destination_uid(_payload(source_event_id="evt-2")))
        self.assertTrue(destination_uid(_payload()).endswith("@calmirror"))

    def test_create_saves_event(self) -> None:
        event = self.destination.create_event("Mirror", _payload())
        raw_ical = self.calendar.save_event.call_args.args[0]
        self.assertIn(f"UID:{event.id}", raw_ical)
        self.assertTrue(event.etag)

    def test_update_existing_resource(self) -> None:
        resource = mock.Mock()
        self.calendar.event_by_uid.return_value = resource

        event = self.destination.update_event("Mirror", "uid-1", _payload(reminder=5))

        resource.save.assert_called_once()
        self.assertIn("TRIGGER:-PT5M", resource.data)
        self.assertEqual(event.id, "uid-1")

    def test_update_missing_resource_raises_not_found(self) -> None:
        self.calendar.event_by_uid.side_effect = caldav_error.NotFoundError()
        with self.assertRaises(DestinationNotFoundError):
            self.destination.update_event("Mirror", "uid-1", _payload())

    def test_delete(self) -> None:
        resource = mock.Mock()
        self.calendar.event_by_uid.return_value = resource
        self.assertTrue(self.destination.delete_event("Mirror", "uid-1"))
        resource.delete.assert_called_once()

        self.calendar.event_by_uid.side_effect = caldav_error.NotFoundError()
        self.assertFalse(self.destination.delete_event("Mirror", "uid-1"))

    def test_server_busy_save_is_retried(self) -> None:
        self.destination.max_attempts = 5
        self.calendar.save_event.side_effect = [caldav_error.PutError("503 Service Unavailable"), None]

        with mock.patch("calmirror.retry.time.sleep") as sleep, self.assertLogs("calmirror.retry", level="WARNING"):
            event = self.destination.create_event("Mirror", _payload())

        self.assertEqual(self.calendar.save_event.call_count, 2)
        sleep.assert_called_once()
        self.assertTrue(event.id.endswith("@calmirror"))

    def test_client_errors_are_not_retried(self) -> None:
        self.destination.max_attempts = 5
        self.calendar.save_event.side_effect = caldav_error.PutError("403 Forbidden")

        with mock.patch("calmirror.retry.time.sleep") as sleep, self.assertRaises(HttpError) as ctx:
            self.destination.create_event("Mirror", _payload())

        self.assertEqual(ctx.exception.status, 403)
        self.calendar.save_event.assert_called_once()
        sleep.assert_not_called()

    def test_gone_status_on_save_and_delete(self) -> None:
        resource = mock.Mock()
        resource.save.side_effect = caldav_error.PutError("410 Gone")
        resource.delete.side_effect = caldav_error.DeleteError("404 Not Found")
        self.calendar.event_by_uid.return_value = resource

        with self.assertRaises(DestinationNotFoundError):
            self.destination.update_event("Mirror", "uid-1", _payload())
        self.assertFalse(self.destination.delete_event("Mirror", "uid-1"))

    def test_caldav_status(self) -> None:
        self.assertEqual(caldav_status(caldav_error.PutError("429 Too Many Requests\n\nslow down")), 429)
        self.assertEqual(caldav_status(caldav_error.DAVError(url="https://dav/x", reason="502 Bad Gateway")), 502)
        self.assertIsNone(caldav_status(caldav_error.DAVError(url="https://dav:8443/500/x")))

    def test_list_managed_events_matches_metadata(self) -> None:
        personal = DestinationPayload(
            title="Personal",
            start=EventTime.at(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)),
            end=EventTime.at(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)),
        )
        mine = self.destination._build_ical("uid-1", _payload())
        foreign = self.destination._build_ical("uid-2", personal)
        self.calendar.events.return_value = [SimpleNamespace(data=mine), SimpleNamespace(data=foreign)]

        events = self.destination.list_managed_events("Mirror", {"subscription_id": "team"})

        self.assertEqual([event.id for event in events], ["uid-1"])
        self.assertEqual(self.destination.list_managed_events("Mirror", {"subscription_id": "other"}), [])


class BuildDestinationTests(unittest.TestCase):
    def test_kinds(self) -> None:
        caldav_config = AppConfig.from_dict({"destination": {"kind": "caldav", "base_url": "https://dav"}})
        self.assertIsInstance(build_destination(caldav_config), CalDAVDestination)
        google_config = AppConfig.from_dict({"destination": {"kind": "google", "access_token": "t"}})
        self.assertIsInstance(build_destination(google_config), GoogleCalendarDestination)

    def test_google_requires_token(self) -> None:
        with self.assertRaises(ConfigError):
            build_destination(AppConfig.from_dict({"destination": {"kind": "google"}}))


if __name__ == "__main__":
    unittest.main()
