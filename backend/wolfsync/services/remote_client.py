"""Contract of the remote calendar provider consumed by the sync services."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from ..schemas import EventData, EventPage, RemoteCalendarInfo, RemoteEvent


class RemoteCalendarError(RuntimeError):
    """Raised when the remote provider rejects or fails a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SyncTokenExpiredError(RemoteCalendarError):
    """The incremental sync cursor is no longer accepted; a full listing is required."""

    def __init__(self, message: str = "Sync token is no longer valid", status: Optional[int] = 410):
        super().__init__(message, status)


class RemoteUnavailableError(RemoteCalendarError):
    """Transient failure: the provider is unreachable, overloaded or rate limiting."""

    def __init__(self, message: str = "Remote provider temporarily unavailable", status: Optional[int] = None):
        super().__init__(message, status)


class RemoteEventNotFoundError(RemoteCalendarError):
    """The targeted event does not exist (anymore) on the remote side."""

    def __init__(self, message: str = "Remote event not found", status: Optional[int] = 404):
        super().__init__(message, status)


class RemoteCalendarClient(Protocol):
    """Authenticated provider operations, scoped per account."""

    def list_calendars(self, account_id: str) -> List[RemoteCalendarInfo]:
        ...

    def list_events(
        self,
        account_id: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> EventPage:
        ...

    def create_event(
        self,
        account_id: str,
        calendar_id: str,
        payload: EventData,
        idempotency_key: Optional[str] = None,
    ) -> RemoteEvent:
        ...

    def update_event(
        self, account_id: str, calendar_id: str, event_id: str, payload: EventData
    ) -> RemoteEvent:
        ...

    def delete_event(self, account_id: str, calendar_id: str, event_id: str) -> None:
        ...
