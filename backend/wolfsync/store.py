"""Data access for the local replica.

Every public method of :class:`LocalStore` runs inside its own transaction, so
each call is atomic.  The few transitions that must touch several collections
at once (confirming a queued create, for example) are exposed as single
methods instead of being composed by callers.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope
from .models import (
    Account,
    Calendar,
    CalendarEvent,
    ErrorLog,
    ErrorType,
    PendingChange,
    SyncMetadata,
    Tombstone,
    utcnow,
)
from .utils.snapshots import CONTENT_FIELDS

logger = logging.getLogger(__name__)


class LocalStore:
    """Keyed, indexed collections backing the offline calendar."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        with session_scope(self._session_factory) as session:
            yield session

    # ------------------------------------------------------------------ #
    # Accounts                                                           #
    # ------------------------------------------------------------------ #

    def add_account(self, account: Account) -> Account:
        with self.session() as session:
            session.add(account)
        logger.info("Stored account %s", account.id)
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self.session() as session:
            return session.get(Account, account_id)

    def list_accounts(self) -> List[Account]:
        with self.session() as session:
            return list(session.execute(select(Account).order_by(Account.created_at)).scalars())

    def delete_account(self, account_id: str) -> bool:
        """Remove an account together with everything it owns."""
        with self.session() as session:
            account = session.get(Account, account_id)
            if account is None:
                return False
            for model in (CalendarEvent, SyncMetadata, PendingChange, Tombstone, Calendar):
                session.execute(delete(model).where(model.account_id == account_id))
            session.delete(account)
        logger.info("Deleted account %s and its calendars", account_id)
        return True

    # ------------------------------------------------------------------ #
    # Calendars                                                          #
    # ------------------------------------------------------------------ #

    def put_calendar(self, calendar: Calendar) -> Calendar:
        with self.session() as session:
            return session.merge(calendar)

    def get_calendar(self, calendar_id: str) -> Optional[Calendar]:
        with self.session() as session:
            return session.get(Calendar, calendar_id)

    def list_calendars(
        self, account_id: Optional[str] = None, visible_only: bool = False
    ) -> List[Calendar]:
        query = select(Calendar)
        if account_id is not None:
            query = query.where(Calendar.account_id == account_id)
        if visible_only:
            query = query.where(Calendar.visible.is_(True))
        with self.session() as session:
            return list(session.execute(query.order_by(Calendar.id)).scalars())

    def delete_calendar(self, calendar_id: str) -> None:
        """Remove a calendar with its events, metadata and queued work."""
        with self.session() as session:
            for model in (CalendarEvent, PendingChange, Tombstone):
                session.execute(delete(model).where(model.calendar_id == calendar_id))
            session.execute(delete(SyncMetadata).where(SyncMetadata.calendar_id == calendar_id))
            session.execute(delete(Calendar).where(Calendar.id == calendar_id))

    # ------------------------------------------------------------------ #
    # Events                                                             #
    # ------------------------------------------------------------------ #

    def get_event(self, event_id: str) -> Optional[CalendarEvent]:
        with self.session() as session:
            return session.get(CalendarEvent, event_id)

    def put_event(self, event: CalendarEvent) -> CalendarEvent:
        with self.session() as session:
            return session.merge(event)

    def delete_event(self, event_id: str) -> bool:
        with self.session() as session:
            result = session.execute(delete(CalendarEvent).where(CalendarEvent.id == event_id))
            return result.rowcount > 0

    def events_by_calendar(self, calendar_id: str) -> List[CalendarEvent]:
        with self.session() as session:
            return list(
                session.execute(
                    select(CalendarEvent).where(CalendarEvent.calendar_id == calendar_id)
                ).scalars()
            )

    def list_events(
        self,
        account_id: Optional[str] = None,
        calendar_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[CalendarEvent]:
        query = select(CalendarEvent)
        if account_id is not None:
            query = query.where(CalendarEvent.account_id == account_id)
        if calendar_id is not None:
            query = query.where(CalendarEvent.calendar_id == calendar_id)
        if not include_deleted:
            query = query.where(CalendarEvent.deleted.is_(False))
        with self.session() as session:
            return list(session.execute(query.order_by(CalendarEvent.start_at)).scalars())

    def conflicted_events(self) -> List[CalendarEvent]:
        with self.session() as session:
            return list(
                session.execute(
                    select(CalendarEvent).where(CalendarEvent.has_conflict.is_(True))
                ).scalars()
            )

    # ------------------------------------------------------------------ #
    # Sync metadata                                                      #
    # ------------------------------------------------------------------ #

    def get_sync_metadata(self, calendar_id: str) -> Optional[SyncMetadata]:
        with self.session() as session:
            return session.get(SyncMetadata, calendar_id)

    def put_sync_metadata(self, metadata: SyncMetadata) -> SyncMetadata:
        with self.session() as session:
            return session.merge(metadata)

    def sync_metadata_by_account(self, account_id: Optional[str] = None) -> List[SyncMetadata]:
        query = select(SyncMetadata)
        if account_id is not None:
            query = query.where(SyncMetadata.account_id == account_id)
        with self.session() as session:
            return list(session.execute(query.order_by(SyncMetadata.calendar_id)).scalars())

    # ------------------------------------------------------------------ #
    # Pending changes                                                    #
    # ------------------------------------------------------------------ #

    def add_pending_change(
        self, change: PendingChange, session: Optional[Session] = None
    ) -> PendingChange:
        """Append a change with a creation timestamp later than every queued one."""
        if session is None:
            with self.session() as own_session:
                return self.add_pending_change(change, session=own_session)
        latest = session.execute(select(func.max(PendingChange.created_at))).scalar_one_or_none()
        created_at = utcnow()
        if latest is not None and created_at <= latest:
            created_at = latest + timedelta(microseconds=1)
        change.created_at = created_at
        change.retry_count = change.retry_count or 0
        session.add(change)
        session.flush()
        return change

    def get_pending_change(self, change_id: str) -> Optional[PendingChange]:
        with self.session() as session:
            return session.get(PendingChange, change_id)

    def pending_changes_ordered(self) -> List[PendingChange]:
        """All queued changes in admission (FIFO) order."""
        with self.session() as session:
            return list(
                session.execute(
                    select(PendingChange).order_by(PendingChange.created_at, PendingChange.id)
                ).scalars()
            )

    def pending_changes_for_event(self, event_id: str) -> List[PendingChange]:
        with self.session() as session:
            return list(
                session.execute(
                    select(PendingChange)
                    .where(PendingChange.event_id == event_id)
                    .order_by(PendingChange.created_at)
                ).scalars()
            )

    def update_pending_change(self, change: PendingChange) -> PendingChange:
        with self.session() as session:
            return session.merge(change)

    def delete_pending_change(self, change_id: str) -> None:
        with self.session() as session:
            session.execute(delete(PendingChange).where(PendingChange.id == change_id))

    def record_change_failure(
        self, change_id: str, retry_count: int, last_error: str, event_error: Optional[str] = None
    ) -> None:
        """Persist a failed replay on the change and on its placeholder event."""
        with self.session() as session:
            change = session.get(PendingChange, change_id)
            if change is None:
                return
            change.retry_count = retry_count
            change.last_error = last_error
            if change.event_id:
                event = session.get(CalendarEvent, change.event_id)
                if event is not None:
                    event.sync_error = event_error or last_error

    def complete_create(self, change: PendingChange, confirmed: CalendarEvent) -> bool:
        """Swap a temporary event for its provider-confirmed version.

        Removing the placeholder, inserting the confirmed row, retargeting
        later queued changes and dropping the change share one transaction so
        readers never see both representations of the event.  Returns
        ``False`` without touching the store when the change was discarded
        while its remote call was in flight.
        """
        with self.session() as session:
            if session.get(PendingChange, change.id) is None:
                return False
            temp_id = change.event_id
            if temp_id:
                self._keep_newer_local_content(session, temp_id, change.id, confirmed)
            if temp_id and temp_id != confirmed.id:
                session.execute(delete(CalendarEvent).where(CalendarEvent.id == temp_id))
                later = session.execute(
                    select(PendingChange).where(
                        PendingChange.event_id == temp_id, PendingChange.id != change.id
                    )
                ).scalars()
                for other in later:
                    other.event_id = confirmed.id
                session.flush()
            session.execute(delete(PendingChange).where(PendingChange.id == change.id))
            confirmed.pending_sync = self._has_open_changes(session, confirmed.id)
            confirmed.sync_error = None
            session.merge(confirmed)
        return True

    def complete_update(self, change: PendingChange, confirmed: CalendarEvent) -> bool:
        with self.session() as session:
            if session.get(PendingChange, change.id) is None:
                return False
            self._keep_newer_local_content(session, confirmed.id, change.id, confirmed)
            session.execute(delete(PendingChange).where(PendingChange.id == change.id))
            confirmed.pending_sync = self._has_open_changes(session, confirmed.id)
            confirmed.sync_error = None
            session.merge(confirmed)
        return True

    def complete_delete(self, change: PendingChange) -> bool:
        with self.session() as session:
            if session.get(PendingChange, change.id) is None:
                return False
            event_id = change.event_id
            session.execute(delete(CalendarEvent).where(CalendarEvent.id == event_id))
            session.execute(delete(Tombstone).where(Tombstone.id == event_id))
            session.execute(delete(PendingChange).where(PendingChange.id == change.id))
        return True

    @staticmethod
    def _keep_newer_local_content(
        session: Session, event_id: str, change_id: str, confirmed: CalendarEvent
    ) -> None:
        """Carry local edits queued after ``change_id`` over to the confirmed row."""
        newer = session.execute(
            select(func.count())
            .select_from(PendingChange)
            .where(PendingChange.event_id == event_id, PendingChange.id != change_id)
        ).scalar_one()
        local = session.get(CalendarEvent, event_id) if newer else None
        if local is None:
            return
        for field in CONTENT_FIELDS:
            setattr(confirmed, field, getattr(local, field))
        confirmed.deleted = local.deleted

    @staticmethod
    def _has_open_changes(session: Session, event_id: str) -> bool:
        count = session.execute(
            select(func.count()).select_from(PendingChange).where(PendingChange.event_id == event_id)
        ).scalar_one()
        return count > 0

    # ------------------------------------------------------------------ #
    # Tombstones                                                         #
    # ------------------------------------------------------------------ #

    def get_tombstone(self, event_id: str) -> Optional[Tombstone]:
        with self.session() as session:
            return session.get(Tombstone, event_id)

    def list_tombstones(self) -> List[Tombstone]:
        with self.session() as session:
            return list(session.execute(select(Tombstone)).scalars())

    def delete_tombstone(self, event_id: str) -> None:
        with self.session() as session:
            session.execute(delete(Tombstone).where(Tombstone.id == event_id))

    def prune_tombstones(self, older_than: datetime) -> int:
        with self.session() as session:
            result = session.execute(delete(Tombstone).where(Tombstone.deleted_at < older_than))
            return result.rowcount

    # ------------------------------------------------------------------ #
    # Error log                                                          #
    # ------------------------------------------------------------------ #

    def log_error(
        self,
        error_type: ErrorType,
        error_message: str,
        *,
        account_id: Optional[str] = None,
        calendar_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[ErrorLog]:
        """Append a diagnostic entry; a failing write never masks the caller's error."""
        entry = ErrorLog(
            id=str(uuid.uuid4()),
            timestamp=utcnow(),
            error_type=error_type,
            account_id=account_id,
            calendar_id=calendar_id,
            error_message=error_message,
            error_details=details,
        )
        try:
            with self.session() as session:
                session.add(entry)
        except SQLAlchemyError:
            logger.exception("Failed to write %s entry to the error log", error_type.value)
            return None
        logger.debug("Logged %s: %s", error_type.value, error_message)
        return entry

    def list_error_logs(
        self, account_id: Optional[str] = None, error_type: Optional[ErrorType] = None
    ) -> List[ErrorLog]:
        query = select(ErrorLog)
        if account_id is not None:
            query = query.where(ErrorLog.account_id == account_id)
        if error_type is not None:
            query = query.where(ErrorLog.error_type == error_type)
        with self.session() as session:
            return list(session.execute(query.order_by(ErrorLog.timestamp.desc())).scalars())

    def clear_error_logs(self, before: Optional[datetime] = None) -> int:
        statement = delete(ErrorLog)
        if before is not None:
            statement = statement.where(ErrorLog.timestamp < before)
        with self.session() as session:
            return session.execute(statement).rowcount
