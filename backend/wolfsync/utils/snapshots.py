"""Conversions between stored event rows, remote events and snapshots."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..models import CalendarEvent, EventStatus
from ..schemas import EventData, EventDateTime, EventSnapshot, RemoteEvent

CONTENT_FIELDS = (
    "summary",
    "description",
    "location",
    "start",
    "end",
    "start_at",
    "recurrence",
    "recurring_event_id",
    "original_start_time",
    "attendees",
    "attachments",
    "status",
    "created_at",
    "updated_at",
)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _dump_datetime(value: Optional[EventDateTime]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    return value.model_dump(mode="json", exclude_none=True)


def _load_datetime(value: Optional[Dict[str, Any]]) -> Optional[EventDateTime]:
    if not value:
        return None
    return EventDateTime.model_validate(value)


def snapshot_from_remote(remote: RemoteEvent, account_id: str, calendar_id: str) -> EventSnapshot:
    """Attach ownership to a provider event so it can be stored or compared."""
    return EventSnapshot(
        **remote.model_dump(exclude={"id", "created", "updated"}),
        id=remote.id,
        account_id=account_id,
        calendar_id=calendar_id,
        created_at=remote.created,
        updated_at=remote.updated,
    )


def snapshot_from_event(event: CalendarEvent) -> EventSnapshot:
    return EventSnapshot(
        id=event.id,
        account_id=event.account_id,
        calendar_id=event.calendar_id,
        summary=event.summary,
        description=event.description,
        location=event.location,
        start=_load_datetime(event.start),
        end=_load_datetime(event.end),
        recurrence=event.recurrence or [],
        recurring_event_id=event.recurring_event_id,
        original_start_time=_load_datetime(event.original_start_time),
        attendees=event.attendees or [],
        attachments=event.attachments or [],
        status=event.status or EventStatus.CONFIRMED,
        created_at=event.created_at,
        updated_at=event.updated_at,
    )


def content_values(data: EventData) -> Dict[str, Any]:
    """Column values for the content fields of ``data``."""
    values: Dict[str, Any] = {
        "summary": data.summary,
        "description": data.description,
        "location": data.location,
        "start": _dump_datetime(data.start),
        "end": _dump_datetime(data.end),
        "start_at": data.start.instant() if data.start is not None else None,
        "recurrence": list(data.recurrence) or None,
        "attendees": [attendee.model_dump(mode="json") for attendee in data.attendees] or None,
        "attachments": [item.model_dump(mode="json") for item in data.attachments] or None,
        "status": data.status,
    }
    if isinstance(data, EventSnapshot):
        values.update(
            recurring_event_id=data.recurring_event_id,
            original_start_time=_dump_datetime(data.original_start_time),
            created_at=as_naive_utc(data.created_at),
            updated_at=as_naive_utc(data.updated_at),
        )
    return values


def apply_snapshot(event: CalendarEvent, snapshot: EventData) -> CalendarEvent:
    for field, value in content_values(snapshot).items():
        setattr(event, field, value)
    return event


def event_from_snapshot(snapshot: EventSnapshot, **extra: Any) -> CalendarEvent:
    event = CalendarEvent(
        id=snapshot.id,
        account_id=snapshot.account_id,
        calendar_id=snapshot.calendar_id,
        has_conflict=False,
        pending_sync=False,
        deleted=False,
    )
    apply_snapshot(event, snapshot)
    for field, value in extra.items():
        setattr(event, field, value)
    return event


def event_matches(event: CalendarEvent, snapshot: EventSnapshot) -> bool:
    """True when the stored row already carries exactly the snapshot's content."""
    candidate = content_values(snapshot)
    for field in CONTENT_FIELDS:
        current = getattr(event, field)
        if field == "status" and current is not None:
            current = EventStatus(current)
        if current != candidate[field]:
            return False
    return True


def dump_snapshot(snapshot: EventSnapshot) -> Dict[str, Any]:
    return snapshot.model_dump(mode="json")


def load_snapshot(payload: Optional[Dict[str, Any]]) -> Optional[EventSnapshot]:
    if not payload:
        return None
    return EventSnapshot.model_validate(payload)
