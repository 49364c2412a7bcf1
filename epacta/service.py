from __future__ import annotations

import os
from typing import Any

from epacta.config_manager import ConfigManager
from epacta.log import setup_logging
from epacta.models import CalendarEvent, CalendarSource, EpactaMetadata, SyncResult
from epacta.scheduler import SyncScheduler
from epacta.state_store import StateStore
from epacta.sync_engine import SyncEngine


class CalendarService:
    def __init__(self, config_path: str | os.PathLike[str] | None = None, configure_logging: bool = False) -> None:
        if config_path is None:
            self.config_manager = ConfigManager.from_env()
        else:
            self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        if configure_logging:
            setup_logging(config.logging.level)
        self.state_store = StateStore(config.storage.db_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)

    def get_calendars(self) -> list[CalendarSource]:
        return self.state_store.list_calendars()

    def add_calendar(self, name: str, url: str, is_epacta: bool = False, color: str = "#3b82f6") -> CalendarSource:
        if not str(name).strip() or not str(url).strip():
            raise ValueError("Calendar name and url are required.")
        return self.state_store.add_calendar(name=name, url=url, is_epacta=is_epacta, color=color)

    def delete_calendar(self, calendar_id: str) -> bool:
        return self.state_store.delete_calendar(calendar_id)

    def get_cached_events(self, calendar_ids: list[str] | None = None) -> list[CalendarEvent]:
        if calendar_ids is None:
            calendar_ids = [source.calendar_id for source in self.get_calendars()]
        return self.state_store.cached_events(calendar_ids)

    def refresh(self, calendar_id: str | None = None, trigger: str = "manual") -> list[SyncResult]:
        if calendar_id is None:
            return self.sync_engine.refresh_all(trigger=trigger)
        source = self.state_store.get_calendar(calendar_id)
        if source is None:
            raise LookupError(f"Calendar not found: {calendar_id}")
        return [self.sync_engine.refresh_calendar(source, trigger=trigger)]

    def update_event_override(self, event_id: str, description_override: str | None) -> EpactaMetadata:
        return self.sync_engine.update_event_override(event_id, description_override)

    def sync_history(self, limit: int = 20, calendar_id: str | None = None) -> list[dict[str, Any]]:
        return self.state_store.recent_sync_runs(limit=limit, calendar_id=calendar_id)

    def scheduler_status(self) -> dict[str, Any]:
        return self.scheduler.status()

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
