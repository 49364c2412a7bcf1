from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional

import yaml

from epacta.config_manager import ConfigManager
from epacta.models import SyncResult, serialize_datetime
from epacta.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    """Refreshes every registered calendar on a fixed interval.

    One refresh runs as soon as the thread starts. After that the loop sleeps
    for ``sync.interval_seconds`` (re-read from config on every pass) unless
    ``trigger_manual`` wakes it early.
    """

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._status_lock = threading.Lock()
        self._last_trigger: str | None = None
        self._last_run_at: datetime | None = None
        self._last_results: list[SyncResult] = []
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._wake_event.clear()
        self._thread = threading.Thread(target=self._loop, name="epacta-calendar-refresh", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._wake_event.set()

    def status(self) -> dict[str, Any]:
        with self._status_lock:
            results = list(self._last_results)
            return {
                "running": self.running,
                "last_trigger": self._last_trigger,
                "last_run_at": serialize_datetime(self._last_run_at),
                "last_error": self._last_error,
                "calendars": len(results),
                "failed_calendars": [result.calendar_id for result in results if result.status == "error"],
            }

    def run_now(self, trigger: str) -> list[SyncResult]:
        results: list[SyncResult] = []
        error: str | None = None
        try:
            results = self.sync_engine.refresh_all(trigger=trigger)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Calendar refresh (%s) failed", trigger)
        with self._status_lock:
            self._last_trigger = trigger
            self._last_run_at = datetime.now(timezone.utc)
            self._last_results = results
            self._last_error = error
        return results

    def _interval_seconds(self) -> int:
        try:
            return self.config_manager.load().sync.interval_seconds
        except (OSError, ValueError, yaml.YAMLError):
            logger.exception("Could not read refresh interval; keeping the default")
            return 3600

    def _loop(self) -> None:
        self.run_now("startup")
        while True:
            woken = self._wake_event.wait(timeout=self._interval_seconds())
            self._wake_event.clear()
            if self._stop_event.is_set():
                return
            self.run_now("manual" if woken else "scheduled")
