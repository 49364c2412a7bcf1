from __future__ import annotations

import logging
from datetime import datetime, timezone

from epacta.annotations import parse_epacta_description
from epacta.ics_decoder import DecodedCalendar, DecodedEvent, decode_calendar
from epacta.models import CalendarEvent, epoch_millis, feed_window


logger = logging.getLogger(__name__)

MAX_OCCURRENCES = 5000
PAST_YEARS = 1
FUTURE_YEARS = 2


def occurrence_id(uid: str, occurrence: datetime) -> str:
    return f"{uid}_{epoch_millis(occurrence)}"


def _build_event(
    *,
    event_id: str,
    title: str,
    description: str,
    location: str,
    start: datetime,
    end: datetime | None,
    all_day: bool,
    is_epacta: bool,
    calendar_id: str,
) -> CalendarEvent:
    metadata = None
    if is_epacta and description:
        metadata = parse_epacta_description(description)
    return CalendarEvent(
        id=event_id,
        title=title,
        start=start,
        end=end,
        all_day=all_day,
        location=location,
        description=description,
        raw_description=description,
        description_override=None,
        metadata=metadata,
        calendar_id=calendar_id,
    )


def _expand_recurring(
    event: DecodedEvent,
    *,
    min_date: datetime,
    max_date: datetime,
    max_occurrences: int,
    is_epacta: bool,
    calendar_id: str,
) -> list[CalendarEvent]:
    output: list[CalendarEvent] = []
    count = 0
    for occurrence in event.iter_occurrences():
        if count >= max_occurrences:
            logger.warning("Recurring event %s hit the %d occurrence cap", event.uid, max_occurrences)
            break
        if occurrence > max_date:
            break
        count += 1
        if occurrence < min_date:
            continue
        details = event.occurrence_details(occurrence)
        output.append(
            _build_event(
                event_id=occurrence_id(event.uid, occurrence),
                title=details.summary,
                description=details.description,
                location=details.location,
                start=details.start,
                end=details.end,
                all_day=event.all_day,
                is_epacta=is_epacta,
                calendar_id=calendar_id,
            )
        )
    return output


def _expand_single(
    event: DecodedEvent,
    *,
    min_date: datetime,
    max_date: datetime,
    is_epacta: bool,
    calendar_id: str,
) -> list[CalendarEvent]:
    if event.start < min_date or event.start > max_date:
        return []
    return [
        _build_event(
            event_id=event.uid,
            title=event.summary,
            description=event.description,
            location=event.location,
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            is_epacta=is_epacta,
            calendar_id=calendar_id,
        )
    ]


def expand(
    decoded: DecodedCalendar,
    is_epacta: bool,
    *,
    now: datetime | None = None,
    calendar_id: str = "",
    past_years: int = PAST_YEARS,
    future_years: int = FUTURE_YEARS,
    max_occurrences: int = MAX_OCCURRENCES,
) -> list[CalendarEvent]:
    min_date, max_date = feed_window(now or datetime.now(timezone.utc), past_years, future_years)

    events: list[CalendarEvent] = []
    seen_ids: set[str] = set()
    for source_event in decoded.events:
        try:
            if source_event.is_recurring:
                expanded = _expand_recurring(
                    source_event,
                    min_date=min_date,
                    max_date=max_date,
                    max_occurrences=max_occurrences,
                    is_epacta=is_epacta,
                    calendar_id=calendar_id,
                )
            else:
                expanded = _expand_single(
                    source_event,
                    min_date=min_date,
                    max_date=max_date,
                    is_epacta=is_epacta,
                    calendar_id=calendar_id,
                )
        except Exception:
            logger.exception("Failed to expand event %s; skipping it", source_event.uid)
            continue
        for item in expanded:
            if item.id in seen_ids:
                logger.debug("Dropping duplicate event id %s", item.id)
                continue
            seen_ids.add(item.id)
            events.append(item)

    events.sort(key=lambda item: item.start)
    return events


def expand_feed(
    ics_text: str | bytes,
    is_epacta: bool,
    *,
    now: datetime | None = None,
    calendar_id: str = "",
    past_years: int = PAST_YEARS,
    future_years: int = FUTURE_YEARS,
    max_occurrences: int = MAX_OCCURRENCES,
) -> list[CalendarEvent]:
    try:
        decoded = decode_calendar(ics_text)
    except Exception:
        logger.exception("Could not decode calendar feed %s", calendar_id or "<unnamed>")
        return []
    events = expand(
        decoded,
        is_epacta,
        now=now,
        calendar_id=calendar_id,
        past_years=past_years,
        future_years=future_years,
        max_occurrences=max_occurrences,
    )
    logger.info("Expanded %d events from feed %s", len(events), calendar_id or "<unnamed>")
    return events
