from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Iterator

from dateutil.rrule import rruleset, rrulestr
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from epacta.models import date_to_datetime, epoch_millis


logger = logging.getLogger(__name__)


@dataclass
class OccurrenceDetails:
    start: datetime
    end: datetime
    summary: str
    description: str
    location: str


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _text(component: ICEvent, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _decoded(component: ICEvent, name: str) -> Any:
    if component.get(name) is None:
        return None
    return component.decoded(name)


def _is_date_only(value: Any) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _localize(naive: datetime, zone: tzinfo) -> datetime:
    if hasattr(zone, "localize"):
        return zone.localize(naive)
    return naive.replace(tzinfo=zone)


def _wall_clock(value: date | datetime, zone: tzinfo) -> datetime:
    if _is_date_only(value):
        return datetime.combine(value, datetime.min.time())
    if value.tzinfo is None:
        return value
    return value.astimezone(zone).replace(tzinfo=None)


def _wall_until(rule: Any, zone: tzinfo) -> datetime | None:
    values = _as_list(rule.get("UNTIL"))
    if not values or not isinstance(values[0], datetime) or values[0].tzinfo is None:
        return None
    return _wall_clock(values[0], zone)


def _date_values(component: ICEvent, name: str) -> list[date | datetime]:
    values: list[date | datetime] = []
    for prop in _as_list(component.get(name)):
        for item in getattr(prop, "dts", []):
            dt = item.dt
            if isinstance(dt, tuple):
                dt = dt[0]
            values.append(dt)
    return values


class DecodedEvent:
    def __init__(self, component: ICEvent) -> None:
        self.component = component
        self.uid = _text(component, "UID")
        self.summary = _text(component, "SUMMARY")
        self.description = _text(component, "DESCRIPTION")
        self.location = _text(component, "LOCATION")

        dtstart_raw = _decoded(component, "DTSTART")
        if dtstart_raw is None:
            raise ValueError(f"VEVENT {self.uid or '<no uid>'} has no DTSTART.")
        self.all_day = _is_date_only(dtstart_raw)
        self.start = date_to_datetime(dtstart_raw)
        self._zone = self.start.tzinfo or timezone.utc
        self._wall_start = _wall_clock(dtstart_raw, self._zone)

        dtend_raw = _decoded(component, "DTEND")
        if dtend_raw is not None:
            self.end = date_to_datetime(dtend_raw)
        else:
            duration = _decoded(component, "DURATION")
            if isinstance(duration, timedelta):
                self.end = self.start + duration
            elif self.all_day:
                self.end = self.start + timedelta(days=1)
            else:
                self.end = self.start
        self.duration = self.end - self.start
        self.overrides: dict[int, "DecodedEvent"] = {}

    @property
    def is_recurring(self) -> bool:
        return self.component.get("RRULE") is not None or self.component.get("RDATE") is not None

    def _ruleset(self) -> rruleset:
        ruleset = rruleset()
        # DTSTART is always the first instance, even when the rule does not match it.
        ruleset.rdate(self._wall_start)
        for rule in _as_list(self.component.get("RRULE")):
            rule_text = _decode_raw_ical(rule.to_ical())
            parsed = rrulestr(f"RRULE:{rule_text}", dtstart=self._wall_start, ignoretz=True)
            # UNTIL is compared in the same wall-clock time as DTSTART.
            until = _wall_until(rule, self._zone)
            if until is not None:
                parsed = parsed.replace(until=until)
            ruleset.rrule(parsed)
        for value in _date_values(self.component, "RDATE"):
            ruleset.rdate(_wall_clock(value, self._zone))
        for value in _date_values(self.component, "EXDATE"):
            ruleset.exdate(_wall_clock(value, self._zone))
        return ruleset

    def iter_occurrences(self) -> Iterator[datetime]:
        if not self.is_recurring:
            yield self.start
            return
        for occurrence in self._ruleset():
            yield _localize(occurrence, self._zone)

    def occurrence_details(self, occurrence: datetime) -> OccurrenceDetails:
        override = self.overrides.get(epoch_millis(occurrence))
        if override is not None:
            return OccurrenceDetails(
                start=override.start,
                end=override.end,
                summary=override.summary or self.summary,
                description=override.description or self.description,
                location=override.location or self.location,
            )
        return OccurrenceDetails(
            start=occurrence,
            end=occurrence + self.duration,
            summary=self.summary,
            description=self.description,
            location=self.location,
        )


@dataclass
class DecodedCalendar:
    events: list[DecodedEvent] = field(default_factory=list)
    name: str = ""


def decode_calendar(ics_text: str | bytes) -> DecodedCalendar:
    raw_ical = _decode_raw_ical(ics_text)
    if "BEGIN:VCALENDAR" not in raw_ical.upper():
        raise ValueError("Feed is not an iCalendar document.")
    calendar_obj = ICalendar.from_ical(raw_ical)

    masters: dict[str, DecodedEvent] = {}
    exceptions: list[tuple[str, date | datetime, DecodedEvent]] = []
    events: list[DecodedEvent] = []
    for component in calendar_obj.walk("VEVENT"):
        try:
            event = DecodedEvent(component)
        except ValueError as exc:
            logger.warning("Skipping unusable VEVENT: %s", exc)
            continue
        recurrence_id = _decoded(component, "RECURRENCE-ID")
        if recurrence_id is not None:
            exceptions.append((event.uid, recurrence_id, event))
            continue
        masters[event.uid] = event
        events.append(event)

    for uid, recurrence_id, event in exceptions:
        master = masters.get(uid)
        if master is None or not master.is_recurring:
            events.append(event)
            continue
        master.overrides[epoch_millis(date_to_datetime(recurrence_id))] = event

    return DecodedCalendar(events=events, name=str(calendar_obj.get("X-WR-CALNAME", "")).strip())
