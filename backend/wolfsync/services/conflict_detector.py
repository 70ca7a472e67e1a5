"""Detection and manual resolution of concurrent local and remote edits."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from ..models import CalendarEvent, ChangeOperation, ConflictKind, EventStatus, PendingChange
from ..schemas import EventData, EventSnapshot
from ..utils.snapshots import as_naive_utc, dump_snapshot, load_snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictInfo:
    has_conflict: bool
    reason: Optional[str] = None
    kind: Optional[ConflictKind] = None


NO_CONFLICT = ConflictInfo(has_conflict=False)


def _after(value: Optional[datetime], reference: Optional[datetime]) -> bool:
    if reference is None:
        return True
    value = as_naive_utc(value)
    return value is not None and value > reference


class ConflictDetector:
    """Classifies a remote version against the stored local version of an event.

    A conflict needs modifications on both sides since the last successful
    sync of the calendar. The local side counts as modified when it was
    updated after that point or still has queued changes. A remote version
    without a modification timestamp is treated as modified.
    """

    def detect(
        self,
        local: CalendarEvent,
        remote: EventSnapshot,
        last_sync_at: Optional[datetime],
        pending_changes: Sequence[PendingChange] = (),
    ) -> ConflictInfo:
        last_sync_at = as_naive_utc(last_sync_at)
        own_changes = [change for change in pending_changes if change.event_id == local.id]
        local_modified = bool(own_changes) or _after(local.updated_at, last_sync_at)
        remote_modified = remote.updated_at is None or _after(remote.updated_at, last_sync_at)
        if not (local_modified and remote_modified):
            return NO_CONFLICT

        if remote.status == EventStatus.CANCELLED:
            return ConflictInfo(
                True, "Remote event deleted while local event was modified", ConflictKind.DELETE_UPDATE
            )
        if local.deleted or any(change.operation == ChangeOperation.DELETE for change in own_changes):
            return ConflictInfo(
                True, "Local event deleted while remote event was modified", ConflictKind.UPDATE_DELETE
            )
        return ConflictInfo(
            True, "Both local and remote versions modified since last sync", ConflictKind.UPDATE_UPDATE
        )


def _moment(value) -> Optional[str]:
    return value.comparable() if value is not None else None


def events_are_different(first: EventData, second: EventData) -> bool:
    """True when two versions differ in a field users care about."""
    if (first.summary, first.description, first.location) != (
        second.summary,
        second.description,
        second.location,
    ):
        return True
    if _moment(first.start) != _moment(second.start) or _moment(first.end) != _moment(second.end):
        return True
    emails_first = sorted(attendee.email for attendee in first.attendees)
    emails_second = sorted(attendee.email for attendee in second.attendees)
    return emails_first != emails_second


def mark_conflict(
    event: CalendarEvent, local: EventSnapshot, remote: EventSnapshot, info: ConflictInfo
) -> CalendarEvent:
    """Stash both versions on ``event`` and flag it for a user decision."""
    event.has_conflict = True
    event.conflict_kind = info.kind
    event.conflict_reason = info.reason
    event.local_version = dump_snapshot(local)
    event.remote_version = dump_snapshot(remote)
    logger.warning("Conflict on event %s: %s", event.id, info.reason)
    return event


def clear_conflict(event: CalendarEvent) -> CalendarEvent:
    event.has_conflict = False
    event.conflict_kind = None
    event.conflict_reason = None
    event.local_version = None
    event.remote_version = None
    return event


def resolve_with_local(event: CalendarEvent) -> EventSnapshot:
    snapshot = load_snapshot(event.local_version)
    if snapshot is None:
        raise ValueError(f"No local version available to resolve conflict on {event.id}")
    return snapshot


def resolve_with_remote(event: CalendarEvent) -> EventSnapshot:
    snapshot = load_snapshot(event.remote_version)
    if snapshot is None:
        raise ValueError(f"No remote version available to resolve conflict on {event.id}")
    return snapshot
