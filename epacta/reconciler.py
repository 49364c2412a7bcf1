from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from epacta.annotations import parse_epacta_description
from epacta.models import CalendarEvent, EpactaMetadata, serialize_datetime


logger = logging.getLogger(__name__)

BATCH_SIZE = 100


class EventStore(Protocol):
    def list_by_calendar(self, calendar_id: str) -> list[dict[str, Any]]: ...

    def upsert_batch(self, rows: list[dict[str, Any]]) -> None: ...

    def delete_where_uid_not_in(self, calendar_id: str, external_uids: Iterable[str]) -> int: ...

    def get_event(self, event_id: str) -> dict[str, Any] | None: ...

    def update_override(
        self,
        event_id: str,
        description_override: str | None,
        metadata: dict[str, Any] | None,
    ) -> None: ...


@dataclass
class ReconcileOutcome:
    calendar_id: str
    upserted: int
    deleted: int
    preserved_overrides: int


def build_row(calendar_id: str, event: CalendarEvent, metadata: EpactaMetadata | None) -> dict[str, Any]:
    return {
        "calendar_id": calendar_id,
        "external_uid": event.id,
        "title": event.title,
        "description": event.raw_description,
        "start_time": serialize_datetime(event.start),
        "end_time": serialize_datetime(event.end),
        "all_day": bool(event.all_day),
        "location": event.location,
        "metadata": metadata.to_dict() if metadata is not None else None,
    }


def _batches(rows: list[dict[str, Any]], size: int) -> Iterable[list[dict[str, Any]]]:
    for index in range(0, len(rows), size):
        yield rows[index : index + size]


def reconcile(
    calendar_id: str,
    fresh_events: list[CalendarEvent],
    store: EventStore,
    *,
    batch_size: int = BATCH_SIZE,
) -> ReconcileOutcome:
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1.")

    existing = store.list_by_calendar(calendar_id)
    overrides = {
        str(row["external_uid"]): row.get("description_override")
        for row in existing
        if row.get("external_uid") is not None
    }
    fresh_uids = [event.id for event in fresh_events]

    rows: list[dict[str, Any]] = []
    preserved = 0
    for event in fresh_events:
        override = overrides.get(event.id)
        if override:
            metadata = parse_epacta_description(override)
            preserved += 1
        else:
            metadata = event.metadata
        rows.append(build_row(calendar_id, event, metadata))

    for batch in _batches(rows, batch_size):
        store.upsert_batch(batch)
    deleted = store.delete_where_uid_not_in(calendar_id, fresh_uids)

    logger.info(
        "Reconciled calendar %s: %d upserted, %d deleted, %d overrides kept",
        calendar_id,
        len(rows),
        deleted,
        preserved,
    )
    return ReconcileOutcome(
        calendar_id=calendar_id,
        upserted=len(rows),
        deleted=deleted,
        preserved_overrides=preserved,
    )


def set_override(event_id: str, text: str | None, store: EventStore) -> EpactaMetadata:
    row = store.get_event(event_id)
    if row is None:
        raise LookupError(f"Event not found: {event_id}")

    override = text if text and text.strip() else None
    effective_description = override if override is not None else str(row.get("description") or "")
    metadata = parse_epacta_description(effective_description)
    store.update_override(event_id, override, metadata.to_dict())
    return metadata
