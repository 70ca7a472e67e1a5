from datetime import datetime, timedelta
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:  # pragma: no cover - test bootstrap code
    sys.path.insert(0, str(ROOT))

from backend.wolfsync.models import CalendarEvent, ChangeOperation, ConflictKind, EventStatus, PendingChange
from backend.wolfsync.schemas import Attendee, EventSnapshot
from backend.wolfsync.services.conflict_detector import (
    ConflictDetector,
    clear_conflict,
    events_are_different,
    mark_conflict,
    resolve_with_local,
    resolve_with_remote,
)
from backend.wolfsync.utils.snapshots import event_from_snapshot, snapshot_from_event

T = datetime(2024, 5, 1, 12, 0, 0)


def _snapshot(**overrides) -> EventSnapshot:
    values = {
        "id": "evt-1",
        "account_id": "acc-1",
        "calendar_id": "cal-1",
        "summary": "Review",
        "start": {"date_time": "2024-05-02T09:00:00"},
        "end": {"date_time": "2024-05-02T10:00:00"},
    }
    values.update(overrides)
    return EventSnapshot(**values)


def _local(updated_at: datetime, **overrides) -> CalendarEvent:
    return event_from_snapshot(_snapshot(updated_at=updated_at, **overrides))


def _change(operation: ChangeOperation, event_id: str = "evt-1") -> PendingChange:
    return PendingChange(id=f"chg-{operation.value}", operation=operation, event_id=event_id, retry_count=0)


def test_remote_cancellation_during_local_edit_is_delete_update() -> None:
    local = _local(T + timedelta(seconds=1))
    remote = _snapshot(updated_at=T + timedelta(seconds=2), status=EventStatus.CANCELLED)

    info = ConflictDetector().detect(local, remote, T)

    assert info.has_conflict
    assert info.kind == ConflictKind.DELETE_UPDATE


def test_concurrent_edits_are_update_update() -> None:
    local = _local(T + timedelta(seconds=1))
    remote = _snapshot(updated_at=T + timedelta(seconds=2), summary="Moved")

    info = ConflictDetector().detect(local, remote, T)

    assert info.has_conflict
    assert info.kind == ConflictKind.UPDATE_UPDATE


def test_pending_delete_with_remote_edit_is_update_delete() -> None:
    local = _local(T - timedelta(hours=1))
    remote = _snapshot(updated_at=T + timedelta(minutes=5), summary="Moved")

    info = ConflictDetector().detect(local, remote, T, [_change(ChangeOperation.DELETE)])

    assert info.has_conflict
    assert info.kind == ConflictKind.UPDATE_DELETE


def test_open_pending_change_counts_as_local_modification() -> None:
    local = _local(T - timedelta(hours=1))
    remote = _snapshot(updated_at=T + timedelta(minutes=5))

    info = ConflictDetector().detect(local, remote, T, [_change(ChangeOperation.UPDATE)])

    assert info.kind == ConflictKind.UPDATE_UPDATE


def test_changes_for_other_events_are_ignored() -> None:
    local = _local(T - timedelta(hours=1))
    remote = _snapshot(updated_at=T + timedelta(minutes=5))

    info = ConflictDetector().detect(local, remote, T, [_change(ChangeOperation.UPDATE, "evt-2")])

    assert not info.has_conflict


@pytest.mark.parametrize(
    "local_offset, remote_offset",
    [(timedelta(seconds=1), -timedelta(seconds=1)), (-timedelta(seconds=1), timedelta(seconds=1))],
)
def test_one_sided_modifications_do_not_conflict(local_offset, remote_offset) -> None:
    local = _local(T + local_offset)
    remote = _snapshot(updated_at=T + remote_offset)

    assert not ConflictDetector().detect(local, remote, T).has_conflict


def test_events_are_different_ignores_cosmetic_changes() -> None:
    first = _snapshot(attendees=[Attendee(email="b@example.org"), Attendee(email="a@example.org")])
    second = _snapshot(
        attendees=[
            Attendee(email="a@example.org", response_status="accepted"),
            Attendee(email="b@example.org"),
        ],
        recurrence=["RRULE:FREQ=WEEKLY"],
    )

    assert not events_are_different(first, second)
    assert events_are_different(first, _snapshot(location="Room 4"))
    assert events_are_different(first, _snapshot(end={"date_time": "2024-05-02T11:00:00"}))


def test_mark_and_resolve_conflict_round_trip() -> None:
    local_snapshot = _snapshot(summary="Local title")
    remote_snapshot = _snapshot(summary="Remote title")
    event = event_from_snapshot(local_snapshot)

    mark_conflict(event, local_snapshot, remote_snapshot, ConflictDetector().detect(
        _local(T + timedelta(seconds=1)), _snapshot(updated_at=T + timedelta(seconds=2)), T
    ))

    assert event.has_conflict
    assert resolve_with_local(event).summary == "Local title"
    assert resolve_with_remote(event).summary == "Remote title"
    assert snapshot_from_event(event).summary == "Local title"

    clear_conflict(event)
    assert not event.has_conflict
    with pytest.raises(ValueError):
        resolve_with_remote(event)
