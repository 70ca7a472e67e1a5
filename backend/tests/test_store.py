from datetime import timedelta
from pathlib import Path
import sys

import pytest
from sqlalchemy.exc import OperationalError

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:  # pragma: no cover - test bootstrap code
    sys.path.insert(0, str(ROOT))

from backend.tests.fakes import event_data, remote_event
from backend.wolfsync.models import (
    Calendar,
    ChangeOperation,
    ErrorType,
    PendingChange,
    SyncMetadata,
    SyncStatus,
    utcnow,
)
from backend.wolfsync.services.offline_queue import OfflineQueue
from backend.wolfsync.utils.snapshots import event_from_snapshot, snapshot_from_remote

ACCOUNT_ID = "acc-1"
CALENDAR_ID = "cal-1"


def _change(change_id: str, event_id: str = "g-1") -> PendingChange:
    return PendingChange(
        id=change_id,
        operation=ChangeOperation.DELETE,
        account_id=ACCOUNT_ID,
        calendar_id=CALENDAR_ID,
        event_id=event_id,
    )


def test_pending_changes_get_strictly_increasing_timestamps(account, store) -> None:
    for index in range(5):
        store.add_pending_change(_change(f"chg-{index}"))

    changes = store.pending_changes_ordered()

    assert [change.id for change in changes] == [f"chg-{index}" for index in range(5)]
    assert all(earlier.created_at < later.created_at for earlier, later in zip(changes, changes[1:]))
    assert all(change.retry_count == 0 for change in changes)


def test_complete_create_retargets_later_changes(account, store) -> None:
    queue = OfflineQueue(store)
    temp = queue.create_event(ACCOUNT_ID, CALENDAR_ID, event_data("Draft"))
    queue.update_event(temp.id, event_data("Draft v2"))
    create, update = store.pending_changes_ordered()
    confirmed = event_from_snapshot(snapshot_from_remote(remote_event("g-1", "Draft"), ACCOUNT_ID, CALENDAR_ID))

    assert store.complete_create(create, confirmed)

    assert store.get_event(temp.id) is None
    stored = store.get_event("g-1")
    assert stored.pending_sync
    assert stored.summary == "Draft v2"
    [remaining] = store.pending_changes_ordered()
    assert remaining.id == update.id
    assert remaining.event_id == "g-1"


def test_delete_account_cascades(account, store) -> None:
    store.put_event(event_from_snapshot(snapshot_from_remote(remote_event("g-1"), ACCOUNT_ID, CALENDAR_ID)))
    store.put_sync_metadata(
        SyncMetadata(calendar_id=CALENDAR_ID, account_id=ACCOUNT_ID, last_sync_status=SyncStatus.SUCCESS)
    )
    store.add_pending_change(_change("chg-1"))

    assert store.delete_account(ACCOUNT_ID)

    assert store.get_account(ACCOUNT_ID) is None
    assert store.list_calendars() == []
    assert store.list_events(include_deleted=True) == []
    assert store.sync_metadata_by_account() == []
    assert store.pending_changes_ordered() == []
    assert not store.delete_account(ACCOUNT_ID)


def test_list_calendars_filters_visibility(account, store) -> None:
    store.put_calendar(Calendar(id="cal-0", account_id=ACCOUNT_ID, summary="Hidden", visible=False))

    assert [calendar.id for calendar in store.list_calendars(ACCOUNT_ID)] == ["cal-0", CALENDAR_ID]
    assert [calendar.id for calendar in store.list_calendars(ACCOUNT_ID, visible_only=True)] == [CALENDAR_ID]


def test_error_log_is_newest_first_and_clearable(account, store) -> None:
    old = store.log_error(ErrorType.NETWORK_ERROR, "offline", account_id=ACCOUNT_ID)
    new = store.log_error(ErrorType.API_ERROR, "rejected", account_id=ACCOUNT_ID, details={"status": 400})

    assert [entry.id for entry in store.list_error_logs()] == [new.id, old.id]
    assert [entry.id for entry in store.list_error_logs(error_type=ErrorType.NETWORK_ERROR)] == [old.id]
    assert store.list_error_logs(account_id="someone-else") == []

    assert store.clear_error_logs(before=utcnow() - timedelta(days=1)) == 0
    assert store.clear_error_logs() == 2


def test_error_log_failures_do_not_propagate(account, store, db_engine) -> None:
    with db_engine.begin() as connection:
        connection.exec_driver_sql("DROP TABLE error_log")

    assert store.log_error(ErrorType.OTHER, "lost") is None


def test_prune_tombstones_counts_removed_rows(account, store) -> None:
    store.put_event(event_from_snapshot(snapshot_from_remote(remote_event("g-1"), ACCOUNT_ID, CALENDAR_ID)))
    OfflineQueue(store).delete_event("g-1")

    assert store.prune_tombstones(utcnow() - timedelta(days=1)) == 0
    assert store.prune_tombstones(utcnow() + timedelta(seconds=1)) == 1
    assert store.list_tombstones() == []


def test_missing_table_surfaces_store_errors(account, store, db_engine) -> None:
    with db_engine.begin() as connection:
        connection.exec_driver_sql("DROP TABLE pending_changes")

    with pytest.raises(OperationalError):
        store.pending_changes_ordered()


def test_completion_of_a_withdrawn_change_is_a_no_op(account, store) -> None:
    store.put_event(event_from_snapshot(snapshot_from_remote(remote_event("g-1", "Kept"), ACCOUNT_ID, CALENDAR_ID)))
    confirmed = event_from_snapshot(snapshot_from_remote(remote_event("g-1", "Stale"), ACCOUNT_ID, CALENDAR_ID))

    assert not store.complete_update(_change("chg-gone"), confirmed)
    assert not store.complete_delete(_change("chg-gone"))

    assert store.get_event("g-1").summary == "Kept"
