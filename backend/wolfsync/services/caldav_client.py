"""Remote calendar client speaking CalDAV."""
from __future__ import annotations

import functools
import logging
import posixpath
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from urllib.parse import unquote, urlparse

from caldav import DAVClient
from caldav.lib import error as caldav_error
from caldav.objects import Calendar
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..models import EventStatus
from ..schemas import EventData, EventPage, RemoteCalendarInfo, RemoteEvent
from ..security import decrypt_account_settings
from ..store import LocalStore
from ..utils.ics_parser import build_ical, parse_ics_payload
from .remote_client import (
    RemoteCalendarError,
    RemoteEventNotFoundError,
    RemoteUnavailableError,
    SyncTokenExpiredError,
)

logger = logging.getLogger(__name__)

# Attempts per remote call before a transient failure is surfaced.
REMOTE_CALL_ATTEMPTS = 3

_HTTP_STATUS = re.compile(r"\b([1-5]\d\d)\b")


@dataclass
class CalDavSettings:
    url: str
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_account_settings(cls, settings: dict) -> "CalDavSettings":
        url = settings.get("url")
        if not url:
            raise RemoteCalendarError("Account settings do not contain a CalDAV url")
        return cls(url=url, username=settings.get("username"), password=settings.get("password"))


class CalDavConnection:
    """Context manager for CalDAV operations."""

    def __init__(self, settings: CalDavSettings):
        self.settings = settings
        self._client: Optional[DAVClient] = None

    def __enter__(self) -> DAVClient:
        logger.debug("Connecting to CalDAV endpoint %s", self.settings.url)
        self._client = DAVClient(
            url=self.settings.url,
            username=self.settings.username,
            password=self.settings.password,
        )
        return self._client

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client is not None:
            self._client.close()
        logger.debug("Leaving CalDAV context")


def _object_id(url) -> str:
    name = posixpath.basename(unquote(urlparse(str(url)).path.rstrip("/")))
    return name[:-4] if name.endswith(".ics") else name


def _in_window(event: RemoteEvent, time_min: datetime, time_max: datetime) -> bool:
    start = event.start.instant() if event.start else None
    if start is None:
        return False
    end = event.end.instant() if event.end else None
    return start <= time_max and (end or start) >= time_min


def _status_of(exc: caldav_error.DAVError) -> Optional[int]:
    match = _HTTP_STATUS.search(str(getattr(exc, "reason", None) or ""))
    return int(match.group(1)) if match else None


def _remote_error(message: str, exc: caldav_error.DAVError) -> RemoteCalendarError:
    """Map a CalDAV failure, singling out rate limiting and server errors as transient."""
    status = _status_of(exc)
    if status is not None and (status == 429 or status >= 500):
        return RemoteUnavailableError(message, status=status)
    return RemoteCalendarError(message, status=status)


def remote_call(func):
    """Retry a client operation on transient failures with jittered exponential backoff."""

    @functools.wraps(func)
    def translated(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OSError as exc:
            # requests and socket level errors: connection refused, reset, timeouts.
            raise RemoteUnavailableError(f"CalDAV server unreachable: {exc}") from exc

    return retry(
        retry=retry_if_exception_type(RemoteUnavailableError),
        stop=stop_after_attempt(REMOTE_CALL_ATTEMPTS),
        wait=wait_exponential_jitter(initial=1, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )(translated)


class CalDavCalendarClient:
    """Implements the remote calendar contract on top of a CalDAV server.

    Calendars are identified by their collection URL. Listings are never
    paginated; incremental listings use the RFC 6578 sync collection report.
    """

    def __init__(self, store: LocalStore):
        self._store = store

    def _settings(self, account_id: str) -> CalDavSettings:
        account = self._store.get_account(account_id)
        if account is None:
            raise RemoteCalendarError(f"Unknown account {account_id}", status=404)
        return CalDavSettings.from_account_settings(decrypt_account_settings(account.settings or {}))

    def _calendar(self, client: DAVClient, calendar_id: str) -> Calendar:
        try:
            return client.principal().calendar(cal_url=calendar_id)
        except caldav_error.DAVError as exc:
            raise _remote_error(f"Opening calendar {calendar_id} failed: {exc}", exc) from exc

    @remote_call
    def list_calendars(self, account_id: str) -> List[RemoteCalendarInfo]:
        try:
            with CalDavConnection(self._settings(account_id)) as client:
                calendars = client.principal().calendars()
                result = [
                    RemoteCalendarInfo(
                        id=str(calendar.url),
                        summary=getattr(calendar, "name", None) or str(calendar.url),
                        primary=index == 0,
                    )
                    for index, calendar in enumerate(calendars)
                ]
        except caldav_error.DAVError as exc:
            raise _remote_error(f"Calendar discovery failed: {exc}", exc) from exc
        logger.info("Discovered %s CalDAV calendars for account %s", len(result), account_id)
        return result

    @remote_call
    def list_events(
        self,
        account_id: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> EventPage:
        with CalDavConnection(self._settings(account_id)) as client:
            calendar = self._calendar(client, calendar_id)
            try:
                objects = calendar.objects_by_sync_token(sync_token, load_objects=True)
            except caldav_error.ReportError as exc:
                failure = _remote_error(f"Listing {calendar_id} failed: {exc}", exc)
                if sync_token and not isinstance(failure, RemoteUnavailableError):
                    raise SyncTokenExpiredError(f"Server rejected sync token: {exc}") from exc
                raise failure from exc
            except caldav_error.DAVError as exc:
                raise _remote_error(f"Listing {calendar_id} failed: {exc}", exc) from exc

            items: List[RemoteEvent] = []
            for obj in objects:
                if obj.data is None:
                    # Resource vanished since the token was issued.
                    items.append(RemoteEvent(id=_object_id(obj.url), status=EventStatus.CANCELLED))
                    continue
                items.extend(parse_ics_payload(obj.data))

        if not sync_token:
            items = [item for item in items if _in_window(item, time_min, time_max)]
        logger.debug(
            "Fetched %s items from %s (%s)", len(items), calendar_id, "incremental" if sync_token else "full"
        )
        return EventPage(items=items, next_sync_token=objects.sync_token)

    def create_event(
        self,
        account_id: str,
        calendar_id: str,
        payload: EventData,
        idempotency_key: Optional[str] = None,
    ) -> RemoteEvent:
        # Replays reuse the key as UID and therefore overwrite the same resource.
        uid = idempotency_key or str(uuid.uuid4())
        return self._upload(account_id, calendar_id, uid, payload)

    @remote_call
    def _upload(self, account_id: str, calendar_id: str, uid: str, payload: EventData) -> RemoteEvent:
        ical = build_ical(uid, payload)
        with CalDavConnection(self._settings(account_id)) as client:
            calendar = self._calendar(client, calendar_id)
            try:
                calendar.save_event(ical.to_ical())
            except caldav_error.DAVError as exc:
                raise _remote_error(f"Creating event {uid} failed: {exc}", exc) from exc
        logger.info("Uploaded event %s to %s", uid, calendar_id)
        return parse_ics_payload(ical.to_ical())[0]

    @remote_call
    def update_event(
        self, account_id: str, calendar_id: str, event_id: str, payload: EventData
    ) -> RemoteEvent:
        ical = build_ical(event_id, payload)
        with CalDavConnection(self._settings(account_id)) as client:
            calendar = self._calendar(client, calendar_id)
            try:
                resource = calendar.event_by_uid(event_id)
            except caldav_error.NotFoundError as exc:
                raise RemoteEventNotFoundError(f"Event {event_id} not found in {calendar_id}") from exc
            except caldav_error.DAVError as exc:
                raise _remote_error(f"Looking up event {event_id} failed: {exc}", exc) from exc
            try:
                resource.data = ical.to_ical()
                resource.save()
            except caldav_error.DAVError as exc:
                raise _remote_error(f"Updating event {event_id} failed: {exc}", exc) from exc
        logger.info("Updated event %s in %s", event_id, calendar_id)
        return parse_ics_payload(ical.to_ical())[0]

    @remote_call
    def delete_event(self, account_id: str, calendar_id: str, event_id: str) -> None:
        with CalDavConnection(self._settings(account_id)) as client:
            calendar = self._calendar(client, calendar_id)
            try:
                resource = calendar.event_by_uid(event_id)
            except caldav_error.NotFoundError as exc:
                raise RemoteEventNotFoundError(f"Event {event_id} not found in {calendar_id}") from exc
            except caldav_error.DAVError as exc:
                raise _remote_error(f"Looking up event {event_id} failed: {exc}", exc) from exc
            try:
                resource.delete()
            except caldav_error.NotFoundError as exc:
                raise RemoteEventNotFoundError(f"Event {event_id} not found in {calendar_id}") from exc
            except caldav_error.DAVError as exc:
                raise _remote_error(f"Deleting event {event_id} failed: {exc}", exc) from exc
        logger.info("Removed event %s from %s", event_id, calendar_id)
