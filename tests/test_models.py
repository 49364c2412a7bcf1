import unittest
from datetime import datetime, timezone

from epacta.models import (
    AppConfig,
    CalendarEvent,
    EpactaMetadata,
    ExternalLink,
    FetchConfig,
    SyncConfig,
    epoch_millis,
    feed_window,
    parse_iso_datetime,
)


class ModelsTests(unittest.TestCase):
    def test_sync_config_defaults_and_bounds(self) -> None:
        cfg = SyncConfig.from_dict({})
        self.assertEqual(cfg.batch_size, 100)
        self.assertEqual(cfg.max_occurrences, 5000)
        self.assertEqual(cfg.past_years, 1)
        self.assertEqual(cfg.future_years, 2)

        clamped = SyncConfig.from_dict({"batch_size": 0, "interval_seconds": 5, "max_occurrences": -1})
        self.assertEqual(clamped.batch_size, 1)
        self.assertEqual(clamped.interval_seconds, 60)
        self.assertEqual(clamped.max_occurrences, 1)

    def test_fetch_config_cleans_proxies(self) -> None:
        cfg = FetchConfig.from_dict({"proxies": [" https://proxy.test/?", ""], "timeout_seconds": 0})
        self.assertEqual(cfg.proxies, ["https://proxy.test/?"])
        self.assertEqual(cfg.timeout_seconds, 1)
        self.assertEqual(FetchConfig.from_dict({"proxies": "nope"}).proxies, [])

    def test_app_config_round_trip(self) -> None:
        cfg = AppConfig.from_dict({"storage": {"db_path": "x.db"}, "logging": {"level": "debug"}})
        self.assertEqual(cfg.storage.db_path, "x.db")
        self.assertEqual(cfg.logging.level, "DEBUG")
        self.assertEqual(AppConfig.from_dict(cfg.to_dict()), cfg)

    def test_metadata_serializes_only_present_fields(self) -> None:
        metadata = EpactaMetadata(
            color="mo",
            flores=True,
            alerts=[],
            external_links=[ExternalLink(url="https://e.org", text="Enlace")],
        )
        payload = metadata.to_dict()
        self.assertEqual(
            payload,
            {
                "color": "mo",
                "flores": True,
                "alerts": [],
                "externalLinks": [{"url": "https://e.org", "text": "Enlace"}],
            },
        )
        self.assertEqual(EpactaMetadata.from_dict(payload), metadata)

    def test_metadata_from_dict_tolerates_garbage(self) -> None:
        self.assertEqual(EpactaMetadata.from_dict(None), EpactaMetadata())
        self.assertEqual(EpactaMetadata.from_dict({"exposicion": "Otra"}).exposicion, None)
        self.assertEqual(EpactaMetadata.from_dict({}).to_dict(), {})

    def test_feed_window_uses_calendar_years(self) -> None:
        now = datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
        start, end = feed_window(now, 1, 2)
        self.assertEqual(start, datetime(2023, 2, 28, 12, 0, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc))

    def test_epoch_millis(self) -> None:
        self.assertEqual(epoch_millis(datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)), 1000)
        self.assertEqual(epoch_millis(datetime(1970, 1, 1, 0, 0, 1)), 1000)
        self.assertEqual(epoch_millis(parse_iso_datetime("2026-01-01T00:00:00Z")), 1767225600000)

    def test_effective_description_prefers_override(self) -> None:
        event = CalendarEvent(id="uid-1", raw_description="upstream")
        self.assertEqual(event.effective_description, "upstream")
        event.description_override = "fixed"
        self.assertEqual(event.effective_description, "fixed")
        event.description_override = ""
        self.assertEqual(event.effective_description, "upstream")


if __name__ == "__main__":
    unittest.main()
