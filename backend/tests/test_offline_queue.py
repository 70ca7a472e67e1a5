from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:  # pragma: no cover - test bootstrap code
    sys.path.insert(0, str(ROOT))

from backend.tests.fakes import event_data, remote_event
from backend.wolfsync.models import ChangeOperation, ConflictKind, EventStatus
from backend.wolfsync.services.conflict_detector import ConflictInfo, mark_conflict
from backend.wolfsync.services.offline_queue import OfflineQueue, QueueError, TEMP_ID_PREFIX
from backend.wolfsync.utils.snapshots import event_from_snapshot, snapshot_from_event, snapshot_from_remote

ACCOUNT_ID = "acc-1"
CALENDAR_ID = "cal-1"


@pytest.fixture
def queue(store) -> OfflineQueue:
    return OfflineQueue(store)


def _synced_event(store, event_id: str = "g-1", summary: str = "Original"):
    snapshot = snapshot_from_remote(remote_event(event_id, summary), ACCOUNT_ID, CALENDAR_ID)
    return store.put_event(event_from_snapshot(snapshot))


def _conflicted_event(store, kind: ConflictKind, *, deleted: bool = False):
    event = _synced_event(store)
    base = snapshot_from_event(event)
    local = base.model_copy(update={"summary": "Local"})
    remote_status = EventStatus.CANCELLED if kind == ConflictKind.DELETE_UPDATE else EventStatus.CONFIRMED
    remote = base.model_copy(update={"summary": "Remote", "status": remote_status})
    event.deleted = deleted
    mark_conflict(event, local, remote, ConflictInfo(True, "both sides changed", kind))
    return store.put_event(event)


def test_create_event_stores_temporary_event_and_queues_create(account, store, queue) -> None:
    event = queue.create_event(ACCOUNT_ID, CALENDAR_ID, event_data("Offline meeting"))

    assert event.id.startswith(TEMP_ID_PREFIX)
    stored = store.get_event(event.id)
    assert stored.summary == "Offline meeting"
    assert stored.pending_sync
    changes = queue.list_changes()
    assert [(change.operation, change.event_id) for change in changes] == [(ChangeOperation.CREATE, event.id)]
    assert changes[0].event_data["summary"] == "Offline meeting"
    assert changes[0].retry_count == 0


def test_changes_are_listed_in_admission_order(account, store, queue) -> None:
    _synced_event(store)
    first = queue.create_event(ACCOUNT_ID, CALENDAR_ID, event_data("First"))
    queue.update_event("g-1", event_data("Second"))
    queue.update_event(first.id, event_data("Third"))

    changes = queue.list_changes()

    assert [change.event_data["summary"] for change in changes] == ["First", "Second", "Third"]
    timestamps = [change.created_at for change in changes]
    assert timestamps == sorted(timestamps)
    assert len(set(timestamps)) == 3


def test_update_event_applies_locally_and_queues_update(account, store, queue) -> None:
    _synced_event(store)

    queue.update_event("g-1", event_data("Renamed", location="Room 4"))

    stored = store.get_event("g-1")
    assert stored.summary == "Renamed"
    assert stored.location == "Room 4"
    assert stored.pending_sync
    assert [change.operation for change in store.pending_changes_for_event("g-1")] == [ChangeOperation.UPDATE]


def test_update_of_unknown_or_deleted_event_is_rejected(account, store, queue) -> None:
    with pytest.raises(QueueError):
        queue.update_event("missing", event_data())

    _synced_event(store)
    queue.delete_event("g-1")
    with pytest.raises(QueueError):
        queue.update_event("g-1", event_data())


def test_delete_of_synced_event_soft_deletes_with_tombstone(account, store, queue) -> None:
    _synced_event(store)

    queue.delete_event("g-1")

    stored = store.get_event("g-1")
    assert stored.deleted
    assert stored.pending_sync
    assert store.get_tombstone("g-1") is not None
    assert [change.operation for change in queue.list_changes()] == [ChangeOperation.DELETE]
    assert [event.id for event in store.list_events(ACCOUNT_ID)] == []
    assert [event.id for event in store.list_events(ACCOUNT_ID, include_deleted=True)] == ["g-1"]


def test_delete_of_unsent_event_drops_it_entirely(account, store, queue) -> None:
    event = queue.create_event(ACCOUNT_ID, CALENDAR_ID, event_data("Never sent"))
    queue.update_event(event.id, event_data("Still never sent"))

    queue.delete_event(event.id)

    assert store.get_event(event.id) is None
    assert store.get_tombstone(event.id) is None
    assert queue.list_changes() == []


@pytest.mark.parametrize(
    "operation, kwargs",
    [
        (ChangeOperation.CREATE, {}),
        (ChangeOperation.UPDATE, {"event_id": "g-1"}),
        (ChangeOperation.DELETE, {}),
    ],
)
def test_enqueue_rejects_incomplete_operations(account, queue, operation, kwargs) -> None:
    with pytest.raises(QueueError):
        queue.enqueue(operation, ACCOUNT_ID, CALENDAR_ID, **kwargs)


def test_enqueue_accepts_operation_names(account, queue) -> None:
    change_id = queue.enqueue("delete", ACCOUNT_ID, CALENDAR_ID, event_id="g-9")

    [change] = queue.list_changes()
    assert change.id == change_id
    assert change.operation == ChangeOperation.DELETE
    assert change.event_data is None


def test_retry_change_resets_attempts(account, store, queue) -> None:
    change_id = queue.enqueue_delete(ACCOUNT_ID, CALENDAR_ID, "g-9")
    store.record_change_failure(change_id, 3, "FAILED after 3 attempts: boom")

    queue.retry_change(change_id)

    change = store.get_pending_change(change_id)
    assert change.retry_count == 0
    assert change.last_error is None
    with pytest.raises(QueueError):
        queue.retry_change("unknown")


def test_discard_delete_restores_event(account, store, queue) -> None:
    _synced_event(store)
    queue.delete_event("g-1")
    [change] = queue.list_changes()

    queue.discard_change(change.id)

    stored = store.get_event("g-1")
    assert not stored.deleted
    assert not stored.pending_sync
    assert store.get_tombstone("g-1") is None
    assert queue.list_changes() == []


def test_discard_create_drops_event_and_follow_up_changes(account, store, queue) -> None:
    event = queue.create_event(ACCOUNT_ID, CALENDAR_ID, event_data("Draft"))
    queue.update_event(event.id, event_data("Draft v2"))
    create = queue.list_changes()[0]

    queue.discard_change(create.id)

    assert store.get_event(event.id) is None
    assert queue.list_changes() == []


def test_discard_update_keeps_other_changes_pending(account, store, queue) -> None:
    _synced_event(store)
    queue.update_event("g-1", event_data("One"))
    queue.update_event("g-1", event_data("Two"))
    first = queue.list_changes()[0]

    queue.discard_change(first.id)

    assert store.get_event("g-1").pending_sync
    assert len(queue.list_changes()) == 1


def test_keep_local_update_update_queues_update(account, store, queue) -> None:
    _conflicted_event(store, ConflictKind.UPDATE_UPDATE)

    resolved = queue.resolve_conflict("g-1", "local")

    assert resolved.summary == "Local"
    stored = store.get_event("g-1")
    assert not stored.has_conflict
    assert stored.local_version is None and stored.remote_version is None
    assert stored.pending_sync
    [change] = queue.list_changes()
    assert change.operation == ChangeOperation.UPDATE
    assert change.event_data["summary"] == "Local"


def test_keep_remote_update_update_drops_local_changes(account, store, queue) -> None:
    _synced_event(store)
    queue.update_event("g-1", event_data("Local"))
    event = store.get_event("g-1")
    base = snapshot_from_event(event)
    mark_conflict(
        event,
        base,
        base.model_copy(update={"summary": "Remote"}),
        ConflictInfo(True, "both sides changed", ConflictKind.UPDATE_UPDATE),
    )
    store.put_event(event)

    queue.resolve_conflict("g-1", "remote")

    stored = store.get_event("g-1")
    assert stored.summary == "Remote"
    assert not stored.has_conflict
    assert not stored.pending_sync
    assert queue.list_changes() == []


def test_keep_local_update_delete_deletes_again(account, store, queue) -> None:
    _conflicted_event(store, ConflictKind.UPDATE_DELETE)

    queue.resolve_conflict("g-1", "local")

    stored = store.get_event("g-1")
    assert stored.deleted
    assert store.get_tombstone("g-1") is not None
    assert [change.operation for change in queue.list_changes()] == [ChangeOperation.DELETE]


def test_keep_local_delete_update_recreates_remotely(account, store, queue) -> None:
    _conflicted_event(store, ConflictKind.DELETE_UPDATE)

    queue.resolve_conflict("g-1", "local")

    stored = store.get_event("g-1")
    assert stored.status == EventStatus.CONFIRMED
    [change] = queue.list_changes()
    assert change.operation == ChangeOperation.CREATE
    assert change.event_id == "g-1"
    assert change.event_data["status"] == "confirmed"


def test_keep_remote_delete_update_removes_event(account, store, queue) -> None:
    _conflicted_event(store, ConflictKind.DELETE_UPDATE)

    assert queue.resolve_conflict("g-1", "remote") is None
    assert store.get_event("g-1") is None


def test_resolve_rejects_unknown_winner_and_missing_conflict(account, store, queue) -> None:
    _synced_event(store)

    with pytest.raises(QueueError):
        queue.resolve_conflict("g-1", "local")
    with pytest.raises(QueueError):
        queue.resolve_conflict("g-1", "both")
