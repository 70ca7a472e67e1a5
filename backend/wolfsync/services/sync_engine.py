"""Pull synchronization of remote calendars into the local store."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, NamedTuple, Optional

from ..models import (
    Calendar,
    CalendarEvent,
    ConflictKind,
    ErrorType,
    EventStatus,
    SyncMetadata,
    SyncStatus,
    utcnow,
)
from ..schemas import AccountSyncResult, CalendarSyncError, EventSnapshot, RemoteEvent, SyncResult
from ..store import LocalStore
from ..utils.snapshots import (
    apply_snapshot,
    as_naive_utc,
    dump_snapshot,
    event_from_snapshot,
    event_matches,
    load_snapshot,
    snapshot_from_event,
    snapshot_from_remote,
)
from .conflict_detector import ConflictDetector, ConflictInfo, events_are_different, mark_conflict
from .remote_client import RemoteCalendarClient, SyncTokenExpiredError

logger = logging.getLogger(__name__)

# Half width of the rolling window kept locally.
SYNC_WINDOW_SPAN = timedelta(days=45)


class SyncWindow(NamedTuple):
    time_min: datetime
    time_max: datetime

    def contains(self, instant: Optional[datetime]) -> bool:
        return instant is not None and self.time_min <= instant <= self.time_max


class SyncEngine:
    """Mirrors remote calendars into the local store.

    Each calendar is pulled incrementally when a sync token is stored and in
    full (bounded by the sync window) otherwise. Events drifting out of the
    window are pruned after every pass.
    """

    def __init__(
        self,
        client: RemoteCalendarClient,
        store: LocalStore,
        conflict_detector: Optional[ConflictDetector] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self.conflict_detector = conflict_detector
        self._clock = clock

    def sync_window(self) -> SyncWindow:
        now = self._clock()
        return SyncWindow(now - SYNC_WINDOW_SPAN, now + SYNC_WINDOW_SPAN)

    # ------------------------------------------------------------------ #
    # Calendar discovery                                                 #
    # ------------------------------------------------------------------ #

    def discover_calendars(self, account_id: str) -> List[Calendar]:
        """Refresh the calendar list of an account from the provider."""
        try:
            remote_calendars = self.client.list_calendars(account_id)
        except Exception as exc:
            self.store.log_error(
                ErrorType.API_ERROR,
                f"Calendar discovery failed: {exc}",
                account_id=account_id,
                details={"exception": exc.__class__.__name__},
            )
            raise

        known = {calendar.id: calendar for calendar in self.store.list_calendars(account_id)}
        for info in remote_calendars:
            calendar = known.pop(info.id, None)
            if calendar is None:
                calendar = Calendar(id=info.id, account_id=account_id, visible=True)
                logger.info("Discovered calendar %s for account %s", info.id, account_id)
            calendar.summary = info.summary
            calendar.description = info.description
            calendar.color = info.color
            calendar.primary = info.primary
            self.store.put_calendar(calendar)

        for stale in known.values():
            logger.info("Calendar %s disappeared remotely, removing it", stale.id)
            self.store.delete_calendar(stale.id)
        return self.store.list_calendars(account_id)

    # ------------------------------------------------------------------ #
    # Pull synchronization                                               #
    # ------------------------------------------------------------------ #

    def sync_account(self, account_id: str) -> AccountSyncResult:
        """Sync every visible calendar of an account, continuing past failures."""
        account_result = AccountSyncResult(account_id=account_id)
        calendars = self.store.list_calendars(account_id, visible_only=True)
        if not calendars:
            logger.info("No calendars found for account %s", account_id)
            return account_result

        logger.info("Syncing %s calendars for account %s", len(calendars), account_id)
        for calendar in calendars:
            try:
                result = self.sync_calendar(account_id, calendar.id)
            except Exception as exc:
                # Already logged and persisted by sync_calendar.
                account_result.errors.append(
                    CalendarSyncError(calendar_id=calendar.id, error=str(exc) or exc.__class__.__name__)
                )
                continue
            account_result.calendars_processed += 1
            account_result.total_events_added += result.events_added
            account_result.total_events_updated += result.events_updated
            account_result.total_events_deleted += result.events_deleted

        logger.info(
            "Account sync complete: %s calendars, +%s ~%s -%s events",
            account_result.calendars_processed,
            account_result.total_events_added,
            account_result.total_events_updated,
            account_result.total_events_deleted,
        )
        return account_result

    def sync_calendar(self, account_id: str, calendar_id: str) -> SyncResult:
        result = SyncResult(calendar_id=calendar_id, account_id=account_id)
        metadata = self.store.get_sync_metadata(calendar_id)
        last_sync_at = metadata.last_sync_at if metadata else None
        token = metadata.sync_token if metadata else None
        first_sync = metadata is None
        window = self.sync_window()

        try:
            if token:
                logger.info("Incremental sync for calendar %s", calendar_id)
                try:
                    self._pull(account_id, calendar_id, window, token, last_sync_at, result, first_sync)
                except SyncTokenExpiredError as exc:
                    token = None
                    self._handle_expired_token(account_id, calendar_id, metadata, exc)
                    result.full_sync = True
                    self._pull(account_id, calendar_id, window, None, last_sync_at, result, first_sync)
            else:
                logger.info("Full sync for calendar %s", calendar_id)
                result.full_sync = True
                self._pull(account_id, calendar_id, window, None, last_sync_at, result, first_sync)

            if result.sync_token is None:
                result.sync_token = token
            result.events_deleted += self._prune_events(calendar_id, window)
            pruned_tombstones = self.store.prune_tombstones(window.time_min)
            if pruned_tombstones:
                logger.info("Pruned %s tombstones outside the sync window", pruned_tombstones)

            self.store.put_sync_metadata(
                SyncMetadata(
                    calendar_id=calendar_id,
                    account_id=account_id,
                    sync_token=result.sync_token,
                    last_sync_at=self._clock(),
                    last_sync_status=SyncStatus.SUCCESS,
                    error_message=None,
                )
            )
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            result.error = message
            logger.exception("Sync failed for calendar %s", calendar_id)
            self.store.put_sync_metadata(
                SyncMetadata(
                    calendar_id=calendar_id,
                    account_id=account_id,
                    sync_token=token,
                    last_sync_at=self._clock(),
                    last_sync_status=SyncStatus.ERROR,
                    error_message=message,
                )
            )
            self.store.log_error(
                ErrorType.SYNC_FAILURE,
                message,
                account_id=account_id,
                calendar_id=calendar_id,
                details={"exception": exc.__class__.__name__, "full_sync": result.full_sync},
            )
            raise

        logger.info(
            "Sync complete for calendar %s: +%s ~%s -%s",
            calendar_id,
            result.events_added,
            result.events_updated,
            result.events_deleted,
        )
        return result

    def _handle_expired_token(
        self,
        account_id: str,
        calendar_id: str,
        metadata: Optional[SyncMetadata],
        exc: SyncTokenExpiredError,
    ) -> None:
        logger.warning("Sync token for calendar %s expired, falling back to full sync", calendar_id)
        self.store.put_sync_metadata(
            SyncMetadata(
                calendar_id=calendar_id,
                account_id=account_id,
                sync_token=None,
                last_sync_at=metadata.last_sync_at if metadata else None,
                last_sync_status=SyncStatus.IN_PROGRESS,
                error_message=None,
            )
        )
        self.store.log_error(
            ErrorType.SYNC_FAILURE,
            f"Sync token expired: {exc}",
            account_id=account_id,
            calendar_id=calendar_id,
            details={"status": exc.status, "fallback": "full_sync"},
        )

    def _pull(
        self,
        account_id: str,
        calendar_id: str,
        window: SyncWindow,
        sync_token: Optional[str],
        last_sync_at: Optional[datetime],
        result: SyncResult,
        first_sync: bool = False,
    ) -> None:
        page_token: Optional[str] = None
        while True:
            page = self.client.list_events(
                account_id,
                calendar_id,
                window.time_min,
                window.time_max,
                sync_token=sync_token,
                page_token=page_token,
            )
            for item in page.items:
                self._apply_item(account_id, calendar_id, item, last_sync_at, result, first_sync)
            if page.next_sync_token:
                result.sync_token = page.next_sync_token
            page_token = page.next_page_token
            if not page_token:
                break

    def _apply_item(
        self,
        account_id: str,
        calendar_id: str,
        item: RemoteEvent,
        last_sync_at: Optional[datetime],
        result: SyncResult,
        first_sync: bool = False,
    ) -> None:
        remote = snapshot_from_remote(item, account_id, calendar_id)
        existing = self.store.get_event(item.id)

        tombstone = self.store.get_tombstone(item.id)
        if tombstone is not None and item.status != EventStatus.CANCELLED:
            self._apply_tombstoned(existing, remote, tombstone.deleted_at, result)
            return

        if item.status == EventStatus.CANCELLED:
            if existing is not None and not existing.deleted:
                info = self._detect(existing, remote, last_sync_at)
                if info.has_conflict:
                    self._store_conflict(existing, remote, info)
                    result.events_updated += 1
                    return
            if existing is not None:
                self.store.delete_event(item.id)
                result.events_deleted += 1
            elif first_sync:
                # Counted once so a first listing reports what the provider removed.
                result.events_deleted += 1
            return

        if existing is None:
            self.store.put_event(event_from_snapshot(remote, last_synced_at=self._clock()))
            result.events_added += 1
            return

        if existing.has_conflict:
            if load_snapshot(existing.remote_version) != remote:
                existing.remote_version = dump_snapshot(remote)
                self.store.put_event(existing)
                result.events_updated += 1
            return

        if event_matches(existing, remote):
            logger.debug("Event %s unchanged", item.id)
            return

        info = self._detect(existing, remote, last_sync_at)
        if info.has_conflict and events_are_different(snapshot_from_event(existing), remote):
            self._store_conflict(existing, remote, info)
            result.events_updated += 1
            return

        if existing.pending_sync:
            # The queued change carries the local state to the provider.
            logger.debug("Keeping local version of %s until its queued changes are sent", item.id)
            return

        self.store.put_event(event_from_snapshot(remote, last_synced_at=self._clock()))
        result.events_updated += 1

    def _apply_tombstoned(
        self,
        existing: Optional[CalendarEvent],
        remote: EventSnapshot,
        deleted_at: datetime,
        result: SyncResult,
    ) -> None:
        remote_updated = as_naive_utc(remote.updated_at)
        conflicting = (
            self.conflict_detector is not None
            and remote_updated is not None
            and remote_updated > deleted_at
            and not (existing is not None and existing.has_conflict)
        )
        if not conflicting:
            logger.debug("Skipping event %s - locally deleted", remote.id)
            return

        info = ConflictInfo(
            True, "Local event deleted while remote event was modified", ConflictKind.UPDATE_DELETE
        )
        if existing is None:
            row = event_from_snapshot(remote)
            mark_conflict(row, remote, remote, info)
            row.last_synced_at = self._clock()
            self.store.put_event(row)
            result.events_added += 1
        else:
            self._store_conflict(existing, remote, info)
            result.events_updated += 1

    def _detect(
        self, existing: CalendarEvent, remote: EventSnapshot, last_sync_at: Optional[datetime]
    ) -> ConflictInfo:
        if self.conflict_detector is None:
            return ConflictInfo(False)
        try:
            return self.conflict_detector.detect(
                existing, remote, last_sync_at, self.store.pending_changes_for_event(existing.id)
            )
        except Exception as exc:
            logger.exception("Conflict detection failed for event %s", existing.id)
            self.store.log_error(
                ErrorType.CONFLICT_DETECTION,
                f"Conflict detection failed for event {existing.id}: {exc}",
                account_id=existing.account_id,
                calendar_id=existing.calendar_id,
            )
            return ConflictInfo(False)

    def _store_conflict(self, existing: CalendarEvent, remote: EventSnapshot, info: ConflictInfo) -> None:
        local = snapshot_from_event(existing)
        if info.kind == ConflictKind.UPDATE_DELETE:
            # Show the surviving remote content until the user decides.
            apply_snapshot(existing, remote)
            existing.deleted = False
        mark_conflict(existing, local, remote, info)
        existing.last_synced_at = self._clock()
        self.store.put_event(existing)

    def _prune_events(self, calendar_id: str, window: SyncWindow) -> int:
        pruned = 0
        for event in self.store.events_by_calendar(calendar_id):
            # Queued changes outlive the row; their confirmation re-inserts it.
            if window.contains(event.start_at):
                continue
            self.store.delete_event(event.id)
            pruned += 1
        if pruned:
            logger.info("Pruned %s events outside the sync window from %s", pruned, calendar_id)
        return pruned
