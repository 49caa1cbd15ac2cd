import threading
import unittest
from types import SimpleNamespace
from unittest import mock

from calmirror.models import SyncResult
from calmirror.scheduler import SyncScheduler


def _result(trigger: str) -> SyncResult:
    return SyncResult(
        status="success",
        message="1/1 subscriptions synced",
        duration_ms=1,
        changes_applied=0,
        failures=0,
        trigger=trigger,
    )


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.addCleanup(self.release.set)

        def run_once(trigger: str = "manual") -> SyncResult:
            self.started.set()
            self.release.wait(timeout=5)
            return _result(trigger)

        self.engine = mock.Mock()
        self.engine.run_once.side_effect = run_once
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = SimpleNamespace(sync=SimpleNamespace(interval_seconds=300))
        self.scheduler = SyncScheduler(self.engine, self.config_manager, poll_interval=0.01)

    def test_trigger_while_busy_is_skipped(self) -> None:
        self.assertTrue(self.scheduler.trigger_manual())
        self.assertTrue(self.started.wait(timeout=2))
        self.assertTrue(self.scheduler.is_busy)

        with self.assertLogs("calmirror.scheduler", level="WARNING"):
            self.assertFalse(self.scheduler.trigger("scheduled"))
        self.assertEqual(self.scheduler.skipped_triggers, 1)

        self.release.set()
        self.assertTrue(self.scheduler.stop(timeout=2))
        self.assertFalse(self.scheduler.is_busy)
        self.assertEqual(self.engine.run_once.call_count, 1)
        self.assertEqual(self.scheduler.last_result.trigger, "manual")

    def test_stop_times_out_while_batch_runs(self) -> None:
        self.scheduler.trigger_manual()
        self.assertTrue(self.started.wait(timeout=2))

        self.assertFalse(self.scheduler.stop(timeout=0.05))

        self.release.set()
        self.assertTrue(self.scheduler.stop(timeout=2))

    def test_start_runs_immediately_and_stops(self) -> None:
        self.release.set()
        self.scheduler.start()
        self.assertTrue(self.started.wait(timeout=2))
        self.assertTrue(self.scheduler.is_running)

        self.assertTrue(self.scheduler.stop(timeout=2))
        self.assertFalse(self.scheduler.is_running)
        self.engine.run_once.assert_called_once_with(trigger="startup")

    def test_failed_batch_releases_busy_flag(self) -> None:
        self.engine.run_once.side_effect = RuntimeError("boom")
        with self.assertLogs("calmirror.scheduler", level="ERROR"):
            self.scheduler.trigger_manual()
            self.assertTrue(self.scheduler.stop(timeout=2))
        self.assertFalse(self.scheduler.is_busy)
        self.assertIsNone(self.scheduler.last_result)


if __name__ == "__main__":
    unittest.main()
