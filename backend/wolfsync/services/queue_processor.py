"""Replays queued local changes against the remote provider."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from ..models import CalendarEvent, ChangeOperation, ErrorType, PendingChange, utcnow
from ..schemas import EventData, ProcessResult, QueueProcessResult, RemoteEvent
from ..store import LocalStore
from ..utils.snapshots import event_from_snapshot, snapshot_from_remote
from .offline_queue import QueueError
from .remote_client import RemoteCalendarClient, RemoteEventNotFoundError

logger = logging.getLogger(__name__)

# Attempts per change before it is left in the queue as permanently failed.
MAX_RETRIES = 3


class QueueProcessor:
    """Drains the pending change queue in FIFO order.

    A failing change never stops its siblings, but later changes for the
    same event wait for the next pass so causal order is preserved.
    """

    def __init__(
        self,
        client: RemoteCalendarClient,
        store: LocalStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self._clock = clock

    def process_queue(self) -> QueueProcessResult:
        result = QueueProcessResult()
        changes = self.store.pending_changes_ordered()
        logger.info("Processing %s pending changes", len(changes))

        blocked: Set[str] = set()
        confirmed_ids: Dict[str, str] = {}
        for change in changes:
            if change.event_id in confirmed_ids:
                # Retargeted in the store when the create was confirmed.
                change.event_id = confirmed_ids[change.event_id]

            if change.retry_count >= MAX_RETRIES:
                logger.info("Skipping change %s - max retries reached", change.id)
                outcome = ProcessResult(
                    change_id=change.id,
                    operation=change.operation,
                    success=False,
                    error=change.last_error or "Max retries reached",
                )
                if change.event_id:
                    blocked.add(change.event_id)
            elif change.event_id and self._has_conflict(change.event_id):
                logger.info("Deferring change %s until the conflict on %s is resolved", change.id, change.event_id)
                outcome = ProcessResult(
                    change_id=change.id,
                    operation=change.operation,
                    success=False,
                    error="Deferred: the event has an unresolved conflict",
                    deferred=True,
                )
                blocked.add(change.event_id)
            elif change.event_id and change.event_id in blocked:
                logger.info("Deferring change %s until earlier changes of %s succeed", change.id, change.event_id)
                outcome = ProcessResult(
                    change_id=change.id,
                    operation=change.operation,
                    success=False,
                    error="Deferred: an earlier change for this event failed",
                    deferred=True,
                )
            else:
                outcome = self._process_change(change, confirmed_ids)
                if not outcome.success and change.event_id:
                    blocked.add(change.event_id)

            result.total_processed += 1
            if outcome.success:
                result.successful += 1
            else:
                result.failed += 1
            result.results.append(outcome)

        logger.info(
            "Queue processing complete: %s successful, %s failed", result.successful, result.failed
        )
        return result

    def _process_change(self, change: PendingChange, confirmed_ids: Dict[str, str]) -> ProcessResult:
        outcome = ProcessResult(change_id=change.id, operation=change.operation, success=False)
        try:
            if change.operation == ChangeOperation.CREATE:
                created = self.client.create_event(
                    change.account_id,
                    change.calendar_id,
                    self._payload(change),
                    idempotency_key=change.id,
                )
                if self.store.complete_create(change, self._confirmed_row(change, created)):
                    if change.event_id:
                        confirmed_ids[change.event_id] = created.id
                    logger.info("Successfully created event %s", created.id)
                else:
                    logger.info("Change %s was discarded in flight, not storing event %s", change.id, created.id)
            elif change.operation == ChangeOperation.UPDATE:
                if not change.event_id:
                    raise QueueError("event_id is required for update operation")
                updated = self.client.update_event(
                    change.account_id, change.calendar_id, change.event_id, self._payload(change)
                )
                if self.store.complete_update(change, self._confirmed_row(change, updated)):
                    logger.info("Successfully updated event %s", change.event_id)
                else:
                    logger.info("Change %s was discarded in flight, keeping local event %s", change.id, change.event_id)
            elif change.operation == ChangeOperation.DELETE:
                if not change.event_id:
                    raise QueueError("event_id is required for delete operation")
                try:
                    self.client.delete_event(change.account_id, change.calendar_id, change.event_id)
                except RemoteEventNotFoundError:
                    logger.info("Event %s was already gone remotely", change.event_id)
                if self.store.complete_delete(change):
                    logger.info("Successfully deleted event %s", change.event_id)
                else:
                    logger.info("Change %s was discarded in flight, keeping local event %s", change.id, change.event_id)
            else:
                raise QueueError(f"Unknown operation: {change.operation}")
            outcome.success = True
        except SQLAlchemyError:
            # Local store failures are not retried.
            raise
        except Exception as exc:
            outcome.error = str(exc) or exc.__class__.__name__
            logger.exception("Failed to process change %s", change.id)
            self._record_failure(change, outcome.error)
        return outcome

    def _has_conflict(self, event_id: str) -> bool:
        event = self.store.get_event(event_id)
        return event is not None and event.has_conflict

    @staticmethod
    def _payload(change: PendingChange) -> EventData:
        if not change.event_data:
            raise QueueError(f"payload is required for {change.operation.value} operation")
        return EventData.model_validate(change.event_data)

    def _confirmed_row(self, change: PendingChange, remote: RemoteEvent) -> CalendarEvent:
        """Local row for a provider-confirmed event, keeping local-only state."""
        confirmed = event_from_snapshot(
            snapshot_from_remote(remote, change.account_id, change.calendar_id),
            last_synced_at=self._clock(),
        )
        existing: Optional[CalendarEvent] = (
            self.store.get_event(change.event_id) if change.event_id else None
        )
        if existing is not None:
            confirmed.deleted = existing.deleted
            confirmed.has_conflict = existing.has_conflict
            confirmed.conflict_kind = existing.conflict_kind
            confirmed.conflict_reason = existing.conflict_reason
            confirmed.local_version = existing.local_version
            confirmed.remote_version = existing.remote_version
        return confirmed

    def _record_failure(self, change: PendingChange, message: str) -> None:
        retry_count = change.retry_count + 1
        if retry_count >= MAX_RETRIES:
            last_error = f"FAILED after {MAX_RETRIES} attempts: {message}"
            logger.error("Max retries (%s) reached for change %s", MAX_RETRIES, change.id)
            self.store.log_error(
                ErrorType.API_ERROR,
                last_error,
                account_id=change.account_id,
                calendar_id=change.calendar_id,
                details={
                    "change_id": change.id,
                    "operation": change.operation.value,
                    "event_id": change.event_id,
                },
            )
        else:
            last_error = message
        self.store.record_change_failure(change.id, retry_count, last_error, event_error=message)
