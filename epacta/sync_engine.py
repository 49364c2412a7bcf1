from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from epacta.config_manager import ConfigManager
from epacta.feed_expander import expand
from epacta.feed_fetcher import FeedFetcher
from epacta.ics_decoder import decode_calendar
from epacta.models import CalendarSource, EpactaMetadata, SyncResult
from epacta.reconciler import reconcile, set_override
from epacta.state_store import StateStore


logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        fetcher: FeedFetcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.fetcher = fetcher
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _calendar_lock(self, calendar_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(calendar_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[calendar_id] = lock
            return lock

    def refresh_calendar(self, source: CalendarSource, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        lock = self._calendar_lock(source.calendar_id)
        if not lock.acquire(blocking=False):
            message = "Refresh already running for this calendar. Skipped."
            logger.info("Calendar %s: %s", source.calendar_id, message)
            return SyncResult(
                calendar_id=source.calendar_id,
                status="skipped",
                message=message,
                duration_ms=0,
                fetched=0,
                upserted=0,
                deleted=0,
                trigger=trigger,
            )

        try:
            return self._refresh_locked(source, trigger, started_at)
        finally:
            lock.release()

    def _refresh_locked(self, source: CalendarSource, trigger: str, started_at: datetime) -> SyncResult:
        run_id = self.state_store.start_sync_run(calendar_id=source.calendar_id, trigger=trigger)
        fetched = 0
        try:
            config = self.config_manager.load()
            fetcher = self.fetcher or FeedFetcher(config.fetch)
            ics_text = fetcher.fetch(source.url)
            # A feed that fails to decode leaves the cached events untouched.
            decoded = decode_calendar(ics_text)
            events = expand(
                decoded,
                source.is_epacta,
                now=self.clock(),
                calendar_id=source.calendar_id,
                past_years=config.sync.past_years,
                future_years=config.sync.future_years,
                max_occurrences=config.sync.max_occurrences,
            )
            fetched = len(events)
            outcome = reconcile(
                source.calendar_id,
                events,
                self.state_store,
                batch_size=config.sync.batch_size,
            )
            duration_ms = _elapsed_ms(started_at)
            message = (
                f"Fetched {fetched} events, upserted {outcome.upserted}, deleted {outcome.deleted}, "
                f"kept {outcome.preserved_overrides} overrides."
            )
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                fetched=fetched,
                upserted=outcome.upserted,
                deleted=outcome.deleted,
            )
            logger.info("Calendar %s (%s): %s", source.calendar_id, source.name, message)
            return SyncResult(
                calendar_id=source.calendar_id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                fetched=fetched,
                upserted=outcome.upserted,
                deleted=outcome.deleted,
                trigger=trigger,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error("Calendar %s (%s) refresh failed: %s", source.calendar_id, source.name, error_message)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                fetched=fetched,
                upserted=0,
                deleted=0,
            )
            return SyncResult(
                calendar_id=source.calendar_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                fetched=fetched,
                upserted=0,
                deleted=0,
                trigger=trigger,
            )

    def refresh_all(self, trigger: str = "manual") -> list[SyncResult]:
        results = [self.refresh_calendar(source, trigger=trigger) for source in self.state_store.list_calendars()]
        failed = sum(1 for result in results if result.status == "error")
        logger.info("Refreshed %d calendars (%d failed), trigger=%s", len(results), failed, trigger)
        return results

    def update_event_override(self, event_id: str, text: str | None) -> EpactaMetadata:
        row = self.state_store.get_event(event_id)
        if row is None:
            raise LookupError(f"Event not found: {event_id}")
        # Serialized with refresh_calendar for the same calendar.
        with self._calendar_lock(str(row["calendar_id"])):
            return set_override(event_id, text, self.state_store)
