import unittest
from datetime import date, datetime, timedelta, timezone

from calmirror.timezones import TemporalResolver, WallClock, identity_token, parse_floating


class TemporalResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = TemporalResolver()

    def test_utc_suffix_bypasses_zone(self) -> None:
        resolved = self.resolver.resolve_local("20260301T150000Z", "America/Toronto")
        self.assertEqual(resolved, datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc))

    def test_date_value_returns_date(self) -> None:
        self.assertEqual(self.resolver.resolve_local("20260302", None, "DATE"), date(2026, 3, 2))
        self.assertEqual(self.resolver.resolve_local("20260302"), date(2026, 3, 2))

    def test_local_time_uses_offset_of_its_own_date(self) -> None:
        before = self.resolver.resolve_local("20260303T113000", "America/Toronto")
        after = self.resolver.resolve_local("20260310T113000", "America/Toronto")
        self.assertEqual(before, datetime(2026, 3, 3, 16, 30, tzinfo=timezone.utc))
        self.assertEqual(after, datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc))

    def test_windows_zone_name_is_mapped(self) -> None:
        self.assertEqual(self.resolver.canonical_zone_name("Eastern Standard Time"), "America/New_York")
        resolved = self.resolver.resolve_local("20260115T090000", "Eastern Standard Time")
        self.assertEqual(resolved, datetime(2026, 1, 15, 14, 0, tzinfo=timezone.utc))

    def test_vendor_prefixed_zone_degrades_to_region_city(self) -> None:
        name = "/freeassociation.sourceforge.net/Tzfile/Europe/London"
        self.assertEqual(self.resolver.canonical_zone_name(name), "Europe/London")

    def test_unknown_zone_falls_back_to_default(self) -> None:
        self.assertIsNone(self.resolver.lookup_zone("Mars/Olympus_Mons"))
        resolved = self.resolver.resolve_local("20260301T100000", "Mars/Olympus_Mons")
        self.assertEqual(resolved, datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))

    def test_configured_default_zone_applies_to_floating_times(self) -> None:
        resolver = TemporalResolver(default_zone="Europe/Berlin")
        resolved = resolver.resolve_local("20260115T090000")
        self.assertEqual(resolved, datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc))

    def test_invalid_default_zone_falls_back_to_utc(self) -> None:
        resolver = TemporalResolver(default_zone="Nowhere/Special")
        self.assertEqual(resolver.default_zone_name, "UTC")

    def test_wall_clock_and_offset(self) -> None:
        instant = datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc)
        self.assertEqual(
            self.resolver.wall_clock_at(instant, "America/Toronto"),
            WallClock(2026, 3, 10, 11, 30, 0),
        )
        self.assertEqual(
            self.resolver.zone_offset_at("America/Toronto", datetime(2026, 7, 1, tzinfo=timezone.utc)),
            timedelta(hours=-4),
        )

    def test_floating_round_trip(self) -> None:
        instant = datetime(2026, 11, 20, 18, 45, tzinfo=timezone.utc)
        floating = self.resolver.to_floating(instant, "Australia/Sydney")
        self.assertIsNone(floating.tzinfo)
        self.assertEqual(self.resolver.from_floating(floating, "Australia/Sydney"), instant)

    def test_zone_cache_is_bounded(self) -> None:
        resolver = TemporalResolver(cache_size=2)
        for name in ("Europe/Paris", "Asia/Tokyo", "America/Chicago"):
            resolver.lookup_zone(name)
        self.assertLessEqual(len(resolver._zones), 2)

    def test_unparseable_value(self) -> None:
        self.assertIsNone(self.resolver.resolve_local("not-a-date"))
        self.assertIsNone(parse_floating("20261340T990000"))


class IdentityTokenTests(unittest.TestCase):
    def test_tokens(self) -> None:
        self.assertEqual(identity_token(date(2026, 3, 3)), "2026-03-03")
        self.assertEqual(
            identity_token(datetime(2026, 3, 3, 16, 30, tzinfo=timezone.utc)),
            "20260303T163000Z",
        )


if __name__ == "__main__":
    unittest.main()
