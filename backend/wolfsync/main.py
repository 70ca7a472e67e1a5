"""FastAPI application for wolfsync."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from .config import SyncSettings, load_sync_settings
from .database import Base, apply_schema_upgrades, engine
from .models import Account, ErrorType, utcnow
from .schemas import (
    AccountCreate,
    AccountRead,
    AccountSyncResult,
    AutoSyncRequest,
    AutoSyncStatus,
    CalendarEventRead,
    CalendarRead,
    CalendarUpdate,
    ConflictResolutionRequest,
    ConnectivityUpdate,
    ErrorLogRead,
    EventCreateRequest,
    EventData,
    PendingChangeRead,
    QueueProcessResult,
    SchedulerState,
    SyncJobStatus,
    SyncMetadataRead,
    SyncResult,
)
from .security import SecretEncryptionError, encrypt_account_settings
from .services.caldav_client import CalDavCalendarClient
from .services.conflict_detector import ConflictDetector
from .services.job_tracker import SyncJobRegistry
from .services.offline_queue import OfflineQueue, QueueError
from .services.queue_processor import QueueProcessor
from .services.remote_client import RemoteCalendarClient, RemoteCalendarError
from .services.scheduler import SyncScheduler
from .services.sync_engine import SyncEngine
from .store import LocalStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Components wired together by :func:`create_app`."""

    store: LocalStore
    queue: OfflineQueue
    processor: QueueProcessor
    engine: SyncEngine
    scheduler: SyncScheduler
    jobs: SyncJobRegistry


def build_services(
    store: LocalStore,
    client: RemoteCalendarClient,
    settings: Optional[SyncSettings] = None,
    background_scheduler: Optional[BackgroundScheduler] = None,
) -> Services:
    processor = QueueProcessor(client, store)
    sync_engine = SyncEngine(client, store, conflict_detector=ConflictDetector())
    scheduler = SyncScheduler(
        store,
        processor,
        sync_engine,
        settings=settings or load_sync_settings(),
        scheduler=background_scheduler,
    )
    return Services(
        store=store,
        queue=OfflineQueue(store),
        processor=processor,
        engine=sync_engine,
        scheduler=scheduler,
        jobs=SyncJobRegistry(),
    )


def _prepare_database(bind: Engine) -> None:
    if bind.url.get_backend_name() == "sqlite":
        database = bind.url.database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=bind)
    apply_schema_upgrades(bind)


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


def _remote_call(operation: Callable[[], Any]) -> Any:
    try:
        return operation()
    except RemoteCalendarError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


def _exclusive(services: Services, operation: Callable[[], Any]) -> Any:
    """Run a sync operation under the scheduler's single-flight guard."""
    outcome = services.scheduler.run_exclusively(lambda: {"value": _remote_call(operation)})
    if outcome is None:
        raise HTTPException(status_code=409, detail="A sync pass is already running")
    return outcome["value"]


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------- #
# Accounts and calendars                                                 #
# ---------------------------------------------------------------------- #


@router.get("/accounts", response_model=List[AccountRead])
def list_accounts(services: Services = Depends(get_services)):
    return services.store.list_accounts()


@router.post("/accounts", response_model=AccountRead)
def create_account(payload: AccountCreate, services: Services = Depends(get_services)):
    try:
        settings = encrypt_account_settings(payload.settings)
    except SecretEncryptionError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    now = utcnow()
    account = Account(
        id=str(uuid.uuid4()),
        email=payload.email,
        settings=settings,
        color=payload.color,
        token_expiry=payload.token_expiry,
        created_at=now,
        updated_at=now,
    )
    try:
        services.store.add_account(account)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Account already exists") from exc

    try:
        services.engine.discover_calendars(account.id)
    except Exception:
        # Discovery is retried through the refresh endpoint once reachable.
        logger.warning("Calendar discovery for new account %s failed", account.id, exc_info=True)
    return account


@router.delete("/accounts/{account_id}")
def delete_account(account_id: str, services: Services = Depends(get_services)) -> dict[str, bool]:
    if not services.store.delete_account(account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    return {"deleted": True}


def _require_account(services: Services, account_id: str) -> Account:
    account = services.store.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.post("/accounts/{account_id}/calendars/refresh", response_model=List[CalendarRead])
def refresh_calendars(account_id: str, services: Services = Depends(get_services)):
    _require_account(services, account_id)
    return _remote_call(lambda: services.engine.discover_calendars(account_id))


@router.post("/accounts/{account_id}/sync", response_model=AccountSyncResult)
def sync_account(account_id: str, services: Services = Depends(get_services)):
    _require_account(services, account_id)
    return _exclusive(services, lambda: services.engine.sync_account(account_id))


@router.get("/calendars", response_model=List[CalendarRead])
def list_calendars(account_id: Optional[str] = None, services: Services = Depends(get_services)):
    return services.store.list_calendars(account_id)


@router.patch("/calendars/{calendar_id}", response_model=CalendarRead)
def update_calendar(
    calendar_id: str, payload: CalendarUpdate, services: Services = Depends(get_services)
):
    calendar = services.store.get_calendar(calendar_id)
    if calendar is None:
        raise HTTPException(status_code=404, detail="Calendar not found")
    calendar.visible = payload.visible
    return services.store.put_calendar(calendar)


@router.post("/calendars/{calendar_id}/sync", response_model=SyncResult)
def sync_calendar(calendar_id: str, services: Services = Depends(get_services)):
    calendar = services.store.get_calendar(calendar_id)
    if calendar is None:
        raise HTTPException(status_code=404, detail="Calendar not found")
    return _exclusive(services, lambda: services.engine.sync_calendar(calendar.account_id, calendar_id))


@router.get("/sync-metadata", response_model=List[SyncMetadataRead])
def list_sync_metadata(account_id: Optional[str] = None, services: Services = Depends(get_services)):
    return [
        SyncMetadataRead(
            calendar_id=metadata.calendar_id,
            account_id=metadata.account_id,
            has_sync_token=bool(metadata.sync_token),
            last_sync_at=metadata.last_sync_at,
            last_sync_status=metadata.last_sync_status,
            error_message=metadata.error_message,
        )
        for metadata in services.store.sync_metadata_by_account(account_id)
    ]


# ---------------------------------------------------------------------- #
# Events                                                                 #
# ---------------------------------------------------------------------- #


@router.get("/events", response_model=List[CalendarEventRead])
def list_events(
    account_id: Optional[str] = None,
    calendar_id: Optional[str] = None,
    include_deleted: bool = False,
    services: Services = Depends(get_services),
):
    return services.store.list_events(account_id, calendar_id, include_deleted=include_deleted)


@router.post("/events", response_model=CalendarEventRead)
def create_event(payload: EventCreateRequest, services: Services = Depends(get_services)):
    calendar = services.store.get_calendar(payload.calendar_id)
    if calendar is None or calendar.account_id != payload.account_id:
        raise HTTPException(status_code=404, detail="Calendar not found")
    return services.queue.create_event(payload.account_id, payload.calendar_id, payload.event)


@router.put("/events/{event_id}", response_model=CalendarEventRead)
def update_event(event_id: str, payload: EventData, services: Services = Depends(get_services)):
    try:
        return services.queue.update_event(event_id, payload)
    except QueueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.delete("/events/{event_id}")
def delete_event(event_id: str, services: Services = Depends(get_services)) -> dict[str, bool]:
    try:
        services.queue.delete_event(event_id)
    except QueueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": True}


@router.get("/conflicts", response_model=List[CalendarEventRead])
def list_conflicts(services: Services = Depends(get_services)):
    return services.store.conflicted_events()


@router.post("/events/{event_id}/resolve", response_model=Optional[CalendarEventRead])
def resolve_conflict(
    event_id: str, payload: ConflictResolutionRequest, services: Services = Depends(get_services)
):
    try:
        return services.queue.resolve_conflict(event_id, payload.winner)
    except QueueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# ---------------------------------------------------------------------- #
# Offline queue                                                          #
# ---------------------------------------------------------------------- #


@router.get("/queue", response_model=List[PendingChangeRead])
def list_queue(services: Services = Depends(get_services)):
    return services.queue.list_changes()


@router.post("/queue/process", response_model=QueueProcessResult)
def process_queue(services: Services = Depends(get_services)):
    return _exclusive(services, services.processor.process_queue)


@router.post("/queue/{change_id}/retry", response_model=PendingChangeRead)
def retry_change(change_id: str, services: Services = Depends(get_services)):
    try:
        return services.queue.retry_change(change_id)
    except QueueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.delete("/queue/{change_id}")
def discard_change(change_id: str, services: Services = Depends(get_services)) -> dict[str, bool]:
    try:
        services.queue.discard_change(change_id)
    except QueueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"discarded": True}


# ---------------------------------------------------------------------- #
# Sync control                                                           #
# ---------------------------------------------------------------------- #


@router.get("/sync/status", response_model=SchedulerState)
def sync_status(services: Services = Depends(get_services)):
    return services.scheduler.state()


@router.post("/sync/run", response_model=SyncJobStatus)
def run_sync(background_tasks: BackgroundTasks, services: Services = Depends(get_services)):
    if services.scheduler.is_syncing:
        raise HTTPException(status_code=409, detail="A sync pass is already running")
    job = services.jobs.submit()
    background_tasks.add_task(services.jobs.run, job.job_id, services.scheduler.perform_sync)
    return job.to_status()


@router.get("/jobs/{job_id}", response_model=SyncJobStatus)
def get_job_status(job_id: str, services: Services = Depends(get_services)):
    job = services.jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_status()


@router.post("/sync/connectivity", response_model=SchedulerState)
def update_connectivity(payload: ConnectivityUpdate, services: Services = Depends(get_services)):
    services.scheduler.set_online(payload.online)
    return services.scheduler.state()


def _auto_sync_status(services: Services) -> AutoSyncStatus:
    settings = services.scheduler.settings
    return AutoSyncStatus(
        enabled=settings.auto_sync,
        interval_minutes=settings.sync_interval_minutes,
        state=services.scheduler.state(),
    )


@router.get("/sync/auto-sync", response_model=AutoSyncStatus)
def auto_sync_status(services: Services = Depends(get_services)):
    return _auto_sync_status(services)


@router.post("/sync/auto-sync", response_model=AutoSyncStatus)
def configure_auto_sync(payload: AutoSyncRequest, services: Services = Depends(get_services)):
    services.scheduler.reconfigure(
        SyncSettings(auto_sync=payload.enabled, sync_interval_minutes=payload.interval_minutes)
    )
    return _auto_sync_status(services)


# ---------------------------------------------------------------------- #
# Error log                                                              #
# ---------------------------------------------------------------------- #


@router.get("/errors", response_model=List[ErrorLogRead])
def list_errors(
    account_id: Optional[str] = None,
    error_type: Optional[ErrorType] = None,
    services: Services = Depends(get_services),
):
    return services.store.list_error_logs(account_id, error_type)


@router.delete("/errors")
def clear_errors(services: Services = Depends(get_services)) -> Dict[str, int]:
    return {"deleted": services.store.clear_error_logs()}


def create_app(
    store: Optional[LocalStore] = None,
    client: Optional[RemoteCalendarClient] = None,
    *,
    bind: Optional[Engine] = None,
    settings: Optional[SyncSettings] = None,
    background_scheduler: Optional[BackgroundScheduler] = None,
) -> FastAPI:
    """Composition root: wires the store, sync services and scheduler into an app."""
    bind = bind or engine
    store = store or LocalStore()
    client = client or CalDavCalendarClient(store)
    services = build_services(store, client, settings, background_scheduler)

    application = FastAPI(title="wolfsync", version="0.1.0")
    application.state.services = services
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(router)

    @application.on_event("startup")
    def startup_event() -> None:
        _prepare_database(bind)
        services.scheduler.start()

    @application.on_event("shutdown")
    def shutdown_event() -> None:
        services.scheduler.shutdown()

    return application


app = create_app()
