"""Pydantic schemas shared by the sync services and the API."""
from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import ChangeOperation, ConflictKind, ErrorType, EventStatus, SyncStatus


class EventDateTime(BaseModel):
    """Either a precise instant (with optional zone name) or a whole day."""

    date_time: Optional[datetime] = None
    date_only: Optional[date] = None
    time_zone: Optional[str] = None

    def instant(self) -> Optional[datetime]:
        """Naive UTC instant used for window checks; all-day values start at midnight UTC."""
        if self.date_time is not None:
            value = self.date_time
            if value.tzinfo is None:
                return value
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        if self.date_only is not None:
            return datetime.combine(self.date_only, time.min)
        return None

    def comparable(self) -> Optional[str]:
        value = self.instant()
        if value is None:
            return None
        if self.date_only is not None and self.date_time is None:
            return self.date_only.isoformat()
        return value.isoformat()


class Attendee(BaseModel):
    email: str
    display_name: Optional[str] = None
    response_status: str = "needsAction"
    organizer: bool = False


class Attachment(BaseModel):
    title: str
    file_url: str


class EventData(BaseModel):
    """User-editable event content, used for queued payloads and remote writes."""

    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[EventDateTime] = None
    end: Optional[EventDateTime] = None
    recurrence: List[str] = Field(default_factory=list)
    attendees: List[Attendee] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    status: EventStatus = EventStatus.CONFIRMED


class RemoteEvent(EventData):
    """Event as returned by the remote calendar provider."""

    id: str
    recurring_event_id: Optional[str] = None
    original_start_time: Optional[EventDateTime] = None
    created: Optional[datetime] = None
    updated: Optional[datetime] = None


class EventSnapshot(EventData):
    """Frozen copy of one side of a conflict, stored on the event row."""

    id: str
    account_id: str
    calendar_id: str
    recurring_event_id: Optional[str] = None
    original_start_time: Optional[EventDateTime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EventPage(BaseModel):
    """One page of a remote event listing."""

    items: List[RemoteEvent] = Field(default_factory=list)
    next_sync_token: Optional[str] = None
    next_page_token: Optional[str] = None


class RemoteCalendarInfo(BaseModel):
    id: str
    summary: str
    description: Optional[str] = None
    color: Optional[str] = None
    primary: bool = False


class SyncResult(BaseModel):
    calendar_id: str
    account_id: str
    events_added: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    sync_token: Optional[str] = None
    full_sync: bool = False
    error: Optional[str] = None


class CalendarSyncError(BaseModel):
    calendar_id: str
    error: str


class AccountSyncResult(BaseModel):
    account_id: str
    calendars_processed: int = 0
    total_events_added: int = 0
    total_events_updated: int = 0
    total_events_deleted: int = 0
    errors: List[CalendarSyncError] = Field(default_factory=list)


class ProcessResult(BaseModel):
    change_id: str
    operation: ChangeOperation
    success: bool
    error: Optional[str] = None
    deferred: bool = False


class QueueProcessResult(BaseModel):
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    results: List[ProcessResult] = Field(default_factory=list)


class AccountFailure(BaseModel):
    account_id: str
    error: str


class SyncPassResult(BaseModel):
    queue: QueueProcessResult
    accounts: List[AccountSyncResult] = Field(default_factory=list)
    failures: List[AccountFailure] = Field(default_factory=list)
    started_at: datetime
    finished_at: Optional[datetime] = None


class SchedulerState(BaseModel):
    is_running: bool
    is_syncing: bool
    is_online: bool


class AccountCreate(BaseModel):
    email: str
    settings: dict[str, Any]
    color: Optional[str] = None
    token_expiry: Optional[datetime] = None


class AccountRead(BaseModel):
    id: str
    email: str
    color: Optional[str] = None
    token_expiry: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CalendarRead(BaseModel):
    id: str
    account_id: str
    summary: str
    description: Optional[str] = None
    color: Optional[str] = None
    visible: bool
    primary: bool

    model_config = ConfigDict(from_attributes=True)


class CalendarUpdate(BaseModel):
    visible: bool


class CalendarEventRead(BaseModel):
    id: str
    account_id: str
    calendar_id: str
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[EventDateTime] = None
    end: Optional[EventDateTime] = None
    recurrence: Optional[List[str]] = None
    attendees: Optional[List[Attendee]] = None
    status: EventStatus
    has_conflict: bool = False
    conflict_kind: Optional[ConflictKind] = None
    conflict_reason: Optional[str] = None
    local_version: Optional[EventSnapshot] = None
    remote_version: Optional[EventSnapshot] = None
    pending_sync: bool = False
    sync_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EventCreateRequest(BaseModel):
    account_id: str
    calendar_id: str
    event: EventData


class ConflictResolutionRequest(BaseModel):
    winner: str = Field(pattern="^(local|remote)$")


class PendingChangeRead(BaseModel):
    id: str
    operation: ChangeOperation
    account_id: str
    calendar_id: str
    event_id: Optional[str] = None
    created_at: datetime
    retry_count: int
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SyncMetadataRead(BaseModel):
    calendar_id: str
    account_id: str
    has_sync_token: bool
    last_sync_at: Optional[datetime] = None
    last_sync_status: SyncStatus
    error_message: Optional[str] = None


class ErrorLogRead(BaseModel):
    id: str
    timestamp: datetime
    error_type: ErrorType
    account_id: Optional[str] = None
    calendar_id: Optional[str] = None
    error_message: str
    error_details: Optional[dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class ConnectivityUpdate(BaseModel):
    online: bool


class SyncJobStatus(BaseModel):
    job_id: str
    status: str
    detail: Optional[dict[str, Any]] = None
    message: Optional[str] = None


class AutoSyncStatus(BaseModel):
    enabled: bool
    interval_minutes: int
    state: SchedulerState


class AutoSyncRequest(BaseModel):
    enabled: bool
    interval_minutes: int = Field(default=20, ge=1, le=720)
