import tempfile
import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from epacta.annotations import parse_epacta_description
from epacta.config_manager import ConfigManager
from epacta.feed_fetcher import FeedFetchError
from epacta.state_store import StateStore
from epacta.sync_engine import SyncEngine


NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)

EPACTA_FEED = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Epacta//Tests//ES
BEGIN:VEVENT
UID:misa-1
SUMMARY:Misa
DESCRIPTION:mo / Misal / Lecc / Pref - Pleg / [Aviso]
DTSTART:20260610T080000Z
DTEND:20260610T090000Z
END:VEVENT
BEGIN:VEVENT
UID:laudes
SUMMARY:Laudes
DTSTART:20260601T063000Z
RRULE:FREQ=DAILY;COUNT=3
END:VEVENT
END:VCALENDAR
"""


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        root = Path(self._temp_dir.name)
        self.config_manager = ConfigManager(root / "config.yaml")
        self.store = StateStore(str(root / "state.db"))
        self.fetcher = mock.Mock()
        self.engine = SyncEngine(self.config_manager, self.store, fetcher=self.fetcher, clock=lambda: NOW)

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def test_refresh_calendar_populates_cache(self) -> None:
        source = self.store.add_calendar(name="Epacta", url="https://e.org/epacta.ics", is_epacta=True)
        self.fetcher.fetch.return_value = EPACTA_FEED

        result = self.engine.refresh_calendar(source, trigger="manual")

        self.assertEqual(result.status, "success")
        self.assertEqual(result.fetched, 4)
        self.assertEqual(result.upserted, 4)
        self.fetcher.fetch.assert_called_once_with("https://e.org/epacta.ics")
        row = self.store.get_event_by_uid(source.calendar_id, "misa-1")
        self.assertEqual(
            row["metadata"],
            parse_epacta_description("mo / Misal / Lecc / Pref - Pleg / [Aviso]").to_dict(),
        )
        runs = self.store.recent_sync_runs(calendar_id=source.calendar_id)
        self.assertEqual(runs[0]["status"], "success")
        self.assertEqual(runs[0]["upserted"], 4)

    def test_override_kept_across_refreshes(self) -> None:
        source = self.store.add_calendar(name="Epacta", url="https://e.org/epacta.ics", is_epacta=True)
        self.fetcher.fetch.return_value = EPACTA_FEED
        self.engine.refresh_calendar(source)
        event_id = self.store.get_event_by_uid(source.calendar_id, "misa-1")["id"]
        self.engine.update_event_override(event_id, "bl / Misal corregido")

        result = self.engine.refresh_calendar(source)

        row = self.store.get_event(event_id)
        self.assertEqual(result.deleted, 0)
        self.assertEqual(row["description_override"], "bl / Misal corregido")
        self.assertEqual(row["metadata"], {"color": "bl", "misal": "Misal corregido"})

    def test_override_during_refresh_waits_for_reconcile(self) -> None:
        source = self.store.add_calendar(name="Epacta", url="https://e.org/epacta.ics", is_epacta=True)
        self.fetcher.fetch.return_value = EPACTA_FEED
        self.engine.refresh_calendar(source)
        event_id = self.store.get_event_by_uid(source.calendar_id, "misa-1")["id"]

        editor_started = threading.Event()
        edits = []

        def edit() -> None:
            editor_started.set()
            edits.append(self.engine.update_event_override(event_id, "ro / Corregido"))

        editor = threading.Thread(target=edit)
        list_by_calendar = self.store.list_by_calendar
        blocked = []

        def list_then_edit(calendar_id: str) -> list:
            rows = list_by_calendar(calendar_id)
            editor.start()
            editor_started.wait(timeout=5)
            editor.join(timeout=0.2)
            blocked.append(editor.is_alive())
            return rows

        with mock.patch.object(self.store, "list_by_calendar", side_effect=list_then_edit):
            result = self.engine.refresh_calendar(source)
        editor.join(timeout=5)

        self.assertEqual(result.status, "success")
        self.assertEqual(blocked, [True])
        self.assertFalse(editor.is_alive())
        self.assertEqual(edits[0].color, "ro")
        row = self.store.get_event(event_id)
        self.assertEqual(row["description_override"], "ro / Corregido")
        self.assertEqual(row["metadata"], {"color": "ro", "misal": "Corregido"})

    def test_override_for_unknown_event_raises(self) -> None:
        with self.assertRaises(LookupError):
            self.engine.update_event_override("missing", "bl / Misal")

    def test_undecodable_feed_keeps_cached_events(self) -> None:
        source = self.store.add_calendar(name="Epacta", url="https://e.org/epacta.ics", is_epacta=True)
        self.fetcher.fetch.return_value = EPACTA_FEED
        self.engine.refresh_calendar(source)
        self.fetcher.fetch.return_value = "<html>maintenance</html>"

        result = self.engine.refresh_calendar(source)

        self.assertEqual(result.status, "error")
        self.assertIn("ValueError", result.message)
        self.assertEqual(len(self.store.list_by_calendar(source.calendar_id)), 4)

    def test_refresh_all_continues_past_failing_calendar(self) -> None:
        broken = self.store.add_calendar(name="A roto", url="https://e.org/broken.ics")
        good = self.store.add_calendar(name="B bueno", url="https://e.org/good.ics", is_epacta=True)

        def fetch(url: str) -> str:
            if url.endswith("broken.ics"):
                raise FeedFetchError("All download attempts failed")
            return EPACTA_FEED

        self.fetcher.fetch.side_effect = fetch

        with self.assertLogs("epacta.sync_engine", level="ERROR"):
            results = self.engine.refresh_all(trigger="scheduled")

        by_calendar = {result.calendar_id: result for result in results}
        self.assertEqual(by_calendar[broken.calendar_id].status, "error")
        self.assertIn("FeedFetchError", by_calendar[broken.calendar_id].message)
        self.assertEqual(by_calendar[good.calendar_id].status, "success")
        self.assertEqual(len(self.store.list_by_calendar(good.calendar_id)), 4)

    def test_concurrent_refresh_of_same_calendar_is_skipped(self) -> None:
        source = self.store.add_calendar(name="Epacta", url="https://e.org/epacta.ics", is_epacta=True)
        lock = self.engine._calendar_lock(source.calendar_id)
        lock.acquire()
        try:
            result = self.engine.refresh_calendar(source)
        finally:
            lock.release()
        self.assertEqual(result.status, "skipped")
        self.fetcher.fetch.assert_not_called()

    def test_window_settings_come_from_config(self) -> None:
        self.config_manager.update({"sync": {"max_occurrences": 2}})
        source = self.store.add_calendar(name="Epacta", url="https://e.org/epacta.ics")
        self.fetcher.fetch.return_value = EPACTA_FEED

        result = self.engine.refresh_calendar(source)

        self.assertEqual(result.fetched, 3)


if __name__ == "__main__":
    unittest.main()
