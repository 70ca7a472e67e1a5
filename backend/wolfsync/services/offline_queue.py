"""Durable queue of local mutations awaiting remote confirmation.

Local edits are applied to the store immediately (optimistic apply) and
recorded as :class:`PendingChange` rows in the same transaction, so the UI
reflects the edit at once and the change survives restarts until the queue
processor replays it.
"""
from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..models import (
    CalendarEvent,
    ChangeOperation,
    ConflictKind,
    EventStatus,
    PendingChange,
    Tombstone,
    utcnow,
)
from ..schemas import EventData
from ..store import LocalStore
from ..utils.snapshots import apply_snapshot
from .conflict_detector import clear_conflict, resolve_with_local, resolve_with_remote

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"


class QueueError(ValueError):
    """Raised for queue requests that cannot be honoured."""


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


def _payload(data: Optional[EventData]) -> Optional[dict]:
    return data.model_dump(mode="json") if data is not None else None


class OfflineQueue:
    def __init__(self, store: LocalStore) -> None:
        self.store = store

    # ------------------------------------------------------------------ #
    # Raw queue records                                                  #
    # ------------------------------------------------------------------ #

    def _append(
        self,
        session: Session,
        operation: ChangeOperation,
        account_id: str,
        calendar_id: str,
        event_id: Optional[str],
        payload: Optional[EventData],
    ) -> PendingChange:
        change = PendingChange(
            id=str(uuid.uuid4()),
            operation=operation,
            entity_type="event",
            account_id=account_id,
            calendar_id=calendar_id,
            event_id=event_id,
            event_data=_payload(payload),
            retry_count=0,
        )
        self.store.add_pending_change(change, session=session)
        logger.info("Added %s operation to queue: %s", operation.value, change.id)
        return change

    def enqueue_create(
        self,
        account_id: str,
        calendar_id: str,
        payload: EventData,
        event_id: Optional[str] = None,
    ) -> str:
        with self.store.session() as session:
            return self._append(session, ChangeOperation.CREATE, account_id, calendar_id, event_id, payload).id

    def enqueue_update(self, account_id: str, calendar_id: str, event_id: str, payload: EventData) -> str:
        with self.store.session() as session:
            return self._append(session, ChangeOperation.UPDATE, account_id, calendar_id, event_id, payload).id

    def enqueue_delete(self, account_id: str, calendar_id: str, event_id: str) -> str:
        with self.store.session() as session:
            return self._append(session, ChangeOperation.DELETE, account_id, calendar_id, event_id, None).id

    def enqueue(
        self,
        operation: ChangeOperation,
        account_id: str,
        calendar_id: str,
        event_id: Optional[str] = None,
        payload: Optional[EventData] = None,
    ) -> str:
        """Append any operation after checking the fields it requires."""
        operation = ChangeOperation(operation)
        if operation == ChangeOperation.CREATE:
            if payload is None:
                raise QueueError("payload is required for create operation")
            return self.enqueue_create(account_id, calendar_id, payload, event_id)
        if operation == ChangeOperation.UPDATE:
            if not event_id or payload is None:
                raise QueueError("event_id and payload are required for update operation")
            return self.enqueue_update(account_id, calendar_id, event_id, payload)
        if not event_id:
            raise QueueError("event_id is required for delete operation")
        return self.enqueue_delete(account_id, calendar_id, event_id)

    # ------------------------------------------------------------------ #
    # Optimistic local mutations                                         #
    # ------------------------------------------------------------------ #

    def create_event(self, account_id: str, calendar_id: str, data: EventData) -> CalendarEvent:
        now = utcnow()
        event = CalendarEvent(
            id=new_temp_id(),
            account_id=account_id,
            calendar_id=calendar_id,
            has_conflict=False,
            pending_sync=True,
            deleted=False,
            created_at=now,
        )
        apply_snapshot(event, data)
        event.updated_at = now
        with self.store.session() as session:
            session.add(event)
            self._append(session, ChangeOperation.CREATE, account_id, calendar_id, event.id, data)
        logger.info("Created local event %s in calendar %s", event.id, calendar_id)
        return event

    def update_event(self, event_id: str, data: EventData) -> CalendarEvent:
        with self.store.session() as session:
            event = self._editable(session, event_id)
            apply_snapshot(event, data)
            event.updated_at = utcnow()
            event.pending_sync = True
            self._append(session, ChangeOperation.UPDATE, event.account_id, event.calendar_id, event.id, data)
        logger.info("Updated local event %s", event_id)
        return event

    def delete_event(self, event_id: str) -> None:
        """Soft delete an event, or drop it entirely when it never reached the provider."""
        with self.store.session() as session:
            event = self._editable(session, event_id)
            changes = self._changes_for(session, event_id)
            if any(change.operation == ChangeOperation.CREATE for change in changes):
                session.execute(delete(PendingChange).where(PendingChange.event_id == event_id))
                session.delete(event)
                logger.info("Dropped unsynced local event %s", event_id)
                return

            now = utcnow()
            event.deleted = True
            event.updated_at = now
            event.pending_sync = True
            tombstone = session.get(Tombstone, event_id)
            if tombstone is None:
                session.add(
                    Tombstone(
                        id=event_id,
                        account_id=event.account_id,
                        calendar_id=event.calendar_id,
                        deleted_at=now,
                    )
                )
            self._append(session, ChangeOperation.DELETE, event.account_id, event.calendar_id, event_id, None)
        logger.info("Event %s soft-deleted with tombstone", event_id)

    @staticmethod
    def _editable(session: Session, event_id: str) -> CalendarEvent:
        event = session.get(CalendarEvent, event_id)
        if event is None or event.deleted:
            raise QueueError(f"Event {event_id} not found")
        return event

    @staticmethod
    def _changes_for(session: Session, event_id: str) -> List[PendingChange]:
        return list(
            session.execute(
                select(PendingChange)
                .where(PendingChange.event_id == event_id)
                .order_by(PendingChange.created_at)
            ).scalars()
        )

    # ------------------------------------------------------------------ #
    # Queue management                                                   #
    # ------------------------------------------------------------------ #

    def list_changes(self) -> List[PendingChange]:
        return self.store.pending_changes_ordered()

    def retry_change(self, change_id: str) -> PendingChange:
        """Give a failed change a fresh set of attempts."""
        with self.store.session() as session:
            change = session.get(PendingChange, change_id)
            if change is None:
                raise QueueError(f"Pending change {change_id} not found")
            change.retry_count = 0
            change.last_error = None
        logger.info("Reset retries of pending change %s", change_id)
        return change

    def discard_change(self, change_id: str) -> None:
        """Drop a change and revert its optimistic effect on the local event."""
        with self.store.session() as session:
            change = session.get(PendingChange, change_id)
            if change is None:
                raise QueueError(f"Pending change {change_id} not found")
            event = session.get(CalendarEvent, change.event_id) if change.event_id else None

            if change.operation == ChangeOperation.CREATE and change.event_id:
                # Later changes target an event that will never exist remotely.
                session.execute(delete(PendingChange).where(PendingChange.event_id == change.event_id))
                if event is not None:
                    session.delete(event)
            else:
                session.delete(change)
                session.flush()
                if change.operation == ChangeOperation.DELETE and event is not None:
                    event.deleted = False
                    session.execute(delete(Tombstone).where(Tombstone.id == event.id))
                if event is not None:
                    event.pending_sync = bool(self._changes_for(session, event.id))
                    event.sync_error = None
        logger.info("Discarded pending change %s", change_id)

    # ------------------------------------------------------------------ #
    # Conflict resolution                                                #
    # ------------------------------------------------------------------ #

    def resolve_conflict(self, event_id: str, winner: str) -> Optional[CalendarEvent]:
        """Keep one side of a conflict; the other snapshot is discarded.

        Returns the resolved event, or ``None`` when the remote deletion won
        and the event no longer exists locally.
        """
        if winner not in ("local", "remote"):
            raise QueueError(f"Unknown conflict winner {winner!r}")
        with self.store.session() as session:
            event = session.get(CalendarEvent, event_id)
            if event is None or not event.has_conflict:
                raise QueueError(f"Event {event_id} has no conflict to resolve")
            kind = ConflictKind(event.conflict_kind) if event.conflict_kind else ConflictKind.UPDATE_UPDATE
            if winner == "local":
                self._keep_local(session, event, kind)
                result: Optional[CalendarEvent] = event
            else:
                result = self._keep_remote(session, event, kind)
            if result is not None:
                clear_conflict(result)
        logger.info("Resolved %s conflict on %s in favour of the %s version", kind.value, event_id, winner)
        return result

    def _keep_local(self, session: Session, event: CalendarEvent, kind: ConflictKind) -> None:
        local = resolve_with_local(event)
        now = utcnow()
        changes = self._changes_for(session, event.id)
        apply_snapshot(event, local)
        event.updated_at = now

        if kind == ConflictKind.UPDATE_DELETE:
            event.deleted = True
            tombstone = session.get(Tombstone, event.id)
            if tombstone is None:
                session.add(
                    Tombstone(id=event.id, account_id=event.account_id, calendar_id=event.calendar_id, deleted_at=now)
                )
            else:
                # The remote edit that caused the conflict is now older than the deletion.
                tombstone.deleted_at = now
            if not any(change.operation == ChangeOperation.DELETE for change in changes):
                self._append(session, ChangeOperation.DELETE, event.account_id, event.calendar_id, event.id, None)
        elif kind == ConflictKind.DELETE_UPDATE:
            # The remote copy is gone; recreate it from the local version.
            event.status = EventStatus.CONFIRMED
            event.deleted = False
            session.execute(delete(PendingChange).where(PendingChange.event_id == event.id))
            data = EventData(**local.model_dump(include=set(EventData.model_fields)))
            data.status = EventStatus.CONFIRMED
            self._append(session, ChangeOperation.CREATE, event.account_id, event.calendar_id, event.id, data)
        elif not any(change.operation == ChangeOperation.UPDATE for change in changes):
            data = EventData(**local.model_dump(include=set(EventData.model_fields)))
            self._append(session, ChangeOperation.UPDATE, event.account_id, event.calendar_id, event.id, data)
        event.pending_sync = True

    def _keep_remote(self, session: Session, event: CalendarEvent, kind: ConflictKind) -> Optional[CalendarEvent]:
        remote = resolve_with_remote(event)
        session.execute(delete(PendingChange).where(PendingChange.event_id == event.id))
        session.execute(delete(Tombstone).where(Tombstone.id == event.id))
        if kind == ConflictKind.DELETE_UPDATE:
            session.delete(event)
            return None
        apply_snapshot(event, remote)
        event.deleted = False
        event.pending_sync = False
        event.sync_error = None
        event.last_synced_at = utcnow()
        return event
