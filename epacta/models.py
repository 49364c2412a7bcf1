from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from dateutil.relativedelta import relativedelta


EXPOSICION_VALUES = ("Simple", "Solemne")
DEFAULT_PROXIES = ["https://corsproxy.io/?", "https://api.allorigins.win/raw?url="]


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
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def epoch_millis(value: datetime) -> int:
    delta = _ensure_tz(value) - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return delta // timedelta(milliseconds=1)


def feed_window(now: datetime, past_years: int = 1, future_years: int = 2) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc - relativedelta(years=past_years), now_utc + relativedelta(years=future_years)


@dataclass
class ExternalLink:
    url: str
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "text": self.text}


@dataclass
class EpactaMetadata:
    color: str | None = None
    misal: str | None = None
    leccionario: str | None = None
    prefacio: str | None = None
    plegaria: str | None = None
    flores: bool | None = None
    exposicion: str | None = None
    alerts: list[str] | None = None
    external_links: list[ExternalLink] | None = None
    otros: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key in ("color", "misal", "leccionario", "prefacio", "plegaria", "flores", "exposicion"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.alerts is not None:
            payload["alerts"] = list(self.alerts)
        if self.external_links is not None:
            payload["externalLinks"] = [link.to_dict() for link in self.external_links]
        if self.otros is not None:
            payload["otros"] = list(self.otros)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EpactaMetadata":
        if not isinstance(data, dict):
            return cls()

        def _text(key: str) -> str | None:
            value = data.get(key)
            return None if value is None else str(value)

        def _texts(key: str) -> list[str] | None:
            value = data.get(key)
            if not isinstance(value, list):
                return None
            return [str(item) for item in value]

        links = data.get("externalLinks")
        external_links = None
        if isinstance(links, list):
            external_links = [
                ExternalLink(url=str(item.get("url", "")), text=str(item.get("text", "")))
                for item in links
                if isinstance(item, dict)
            ]
        exposicion = data.get("exposicion")
        flores = data.get("flores")
        return cls(
            color=_text("color"),
            misal=_text("misal"),
            leccionario=_text("leccionario"),
            prefacio=_text("prefacio"),
            plegaria=_text("plegaria"),
            flores=None if flores is None else bool(flores),
            exposicion=exposicion if exposicion in EXPOSICION_VALUES else None,
            alerts=_texts("alerts"),
            external_links=external_links,
            otros=_texts("otros"),
        )


@dataclass
class CalendarEvent:
    id: str
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    location: str = ""
    description: str = ""
    raw_description: str = ""
    description_override: str | None = None
    metadata: EpactaMetadata | None = None
    calendar_id: str = ""

    @property
    def effective_description(self) -> str:
        if self.description_override:
            return self.description_override
        return self.raw_description

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "all_day": self.all_day,
            "location": self.location,
            "description": self.description,
            "raw_description": self.raw_description,
            "description_override": self.description_override,
            "metadata": self.metadata.to_dict() if self.metadata is not None else None,
            "calendar_id": self.calendar_id,
        }


@dataclass
class CalendarSource:
    calendar_id: str
    name: str
    url: str
    color: str = "#3b82f6"
    is_epacta: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StorageConfig:
    db_path: str = "data/epacta.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/epacta.db")).strip() or "data/epacta.db")


@dataclass
class FetchConfig:
    timeout_seconds: int = 30
    proxies: list[str] = field(default_factory=lambda: list(DEFAULT_PROXIES))
    user_agent: str = "epacta-calendar/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FetchConfig":
        data = data or {}
        raw_proxies = data.get("proxies", DEFAULT_PROXIES)
        if not isinstance(raw_proxies, list):
            raw_proxies = []
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            proxies=[str(x).strip() for x in raw_proxies if str(x).strip()],
            user_agent=str(data.get("user_agent", "epacta-calendar/0.1")).strip() or "epacta-calendar/0.1",
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 3600
    past_years: int = 1
    future_years: int = 2
    max_occurrences: int = 5000
    batch_size: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(60, int(data.get("interval_seconds", 3600))),
            past_years=max(0, int(data.get("past_years", 1))),
            future_years=max(0, int(data.get("future_years", 2))),
            max_occurrences=max(1, int(data.get("max_occurrences", 5000))),
            batch_size=max(1, int(data.get("batch_size", 100))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            fetch=FetchConfig.from_dict(data.get("fetch")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    calendar_id: str
    status: str
    message: str
    duration_ms: int
    fetched: int
    upserted: int
    deleted: int
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "fetched": self.fetched,
            "upserted": self.upserted,
            "deleted": self.deleted,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
