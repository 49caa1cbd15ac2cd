from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from calmirror.config_manager import ConfigManager
from calmirror.models import SyncResult
from calmirror.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.25
DEFAULT_INTERVAL_SECONDS = 300


class SyncScheduler:
    """Fires sync batches on a fixed cadence; a trigger that arrives while a batch runs is dropped."""

    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.poll_interval = poll_interval
        self.last_result: Optional[SyncResult] = None
        self.skipped_triggers = 0
        self._thread: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._busy = False
        self._busy_lock = threading.Lock()
        self._interval_seconds = DEFAULT_INTERVAL_SECONDS

    @property
    def is_busy(self) -> bool:
        with self._busy_lock:
            return self._busy

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self, run_immediately: bool = True) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(run_immediately,),
            name="calmirror-sync-scheduler",
            daemon=True,
        )
        self._thread.start()

    def trigger(self, trigger: str) -> bool:
        with self._busy_lock:
            if self._busy:
                self.skipped_triggers += 1
                logger.warning("Skipping %s sync trigger: previous batch still running", trigger)
                return False
            self._busy = True
        self._worker = threading.Thread(
            target=self._run,
            args=(trigger,),
            name="calmirror-sync-worker",
            daemon=True,
        )
        self._worker.start()
        return True

    def trigger_manual(self) -> bool:
        return self.trigger("manual")

    def _run(self, trigger: str) -> None:
        try:
            self.last_result = self.sync_engine.run_once(trigger=trigger)
        except Exception:
            logger.exception("Unexpected failure in %s sync batch", trigger)
        finally:
            with self._busy_lock:
                self._busy = False

    def _current_interval(self) -> int:
        try:
            self._interval_seconds = max(30, int(self.config_manager.load().sync.interval_seconds))
        except Exception as exc:
            logger.warning("Could not reload sync interval, keeping %ss: %s", self._interval_seconds, exc)
        return self._interval_seconds

    def _loop(self, run_immediately: bool) -> None:
        if run_immediately:
            self.trigger("startup")
        next_fire = time.monotonic() + self._current_interval()
        while not self._stop_event.is_set():
            if self._stop_event.wait(timeout=max(0.0, next_fire - time.monotonic())):
                break
            self.trigger("scheduled")
            now = time.monotonic()
            next_fire += self._current_interval()
            if next_fire <= now:
                next_fire = now + self._interval_seconds

    def stop(self, timeout: float | None = None) -> bool:
        """Stop future triggers, then wait for the in-flight batch. Returns False if ``timeout`` ran out first."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.is_busy:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)
        return True
