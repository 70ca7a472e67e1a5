"""Periodic driver for sync passes."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from apscheduler.schedulers.background import BackgroundScheduler

from ..config import SyncSettings
from ..models import utcnow
from ..schemas import AccountFailure, SchedulerState, SyncPassResult
from ..store import LocalStore
from .queue_processor import QueueProcessor
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

AUTO_SYNC_JOB_ID = "auto-sync"

T = TypeVar("T")


class SyncScheduler:
    """Runs the queue processor and then every account sync, one pass at a time.

    ``running`` means the interval job is armed; ``syncing`` means a pass is
    executing. A pass requested while another one runs is dropped, not
    queued. Offline ticks are skipped.
    """

    def __init__(
        self,
        store: LocalStore,
        queue_processor: QueueProcessor,
        sync_engine: SyncEngine,
        settings: Optional[SyncSettings] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.store = store
        self.queue_processor = queue_processor
        self.sync_engine = sync_engine
        self._settings = settings or SyncSettings()
        self._scheduler = scheduler or BackgroundScheduler()
        self._pass_lock = threading.Lock()
        self._armed = False
        self._online = True

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        if not self._scheduler.running:
            logger.info("Starting background scheduler")
            self._scheduler.start()
        if not self._settings.auto_sync:
            logger.info("Auto-sync disabled, not scheduling sync passes")
            return
        self._arm()

    def stop(self) -> None:
        if self._armed:
            self._scheduler.remove_job(AUTO_SYNC_JOB_ID)
            self._armed = False
            logger.info("Cancelled job %s", AUTO_SYNC_JOB_ID)

    def shutdown(self) -> None:
        self.stop()
        if self._scheduler.running:
            logger.info("Shutting down background scheduler")
            self._scheduler.shutdown(wait=False)

    def reconfigure(self, settings: SyncSettings) -> None:
        """Apply new auto-sync settings, re-arming or disarming the timer."""
        self._settings = settings
        if not settings.auto_sync:
            self.stop()
            return
        if self._scheduler.running:
            self._arm()

    def _arm(self) -> None:
        # Re-adding with the same id replaces the previous interval.
        self._scheduler.add_job(
            self._tick,
            "interval",
            minutes=self._settings.sync_interval_minutes,
            id=AUTO_SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._armed = True
        logger.info("Scheduled job %s every %s minutes", AUTO_SYNC_JOB_ID, self._settings.sync_interval_minutes)

    # ------------------------------------------------------------------ #
    # State                                                              #
    # ------------------------------------------------------------------ #

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._online = online

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_running(self) -> bool:
        return self._armed

    @property
    def is_syncing(self) -> bool:
        return self._pass_lock.locked()

    def state(self) -> SchedulerState:
        return SchedulerState(is_running=self.is_running, is_syncing=self.is_syncing, is_online=self.is_online)

    # ------------------------------------------------------------------ #
    # Sync pass                                                          #
    # ------------------------------------------------------------------ #

    def _tick(self) -> None:
        try:
            self.perform_sync()
        except Exception:
            logger.exception("Scheduled sync pass failed")

    def run_exclusively(self, operation: Callable[[], T]) -> Optional[T]:
        """Run ``operation`` under the single-flight guard, or drop it when busy."""
        if not self._pass_lock.acquire(blocking=False):
            logger.warning("Sync already in progress, skipping this invocation")
            return None
        try:
            return operation()
        finally:
            self._pass_lock.release()

    def perform_sync(self) -> Optional[SyncPassResult]:
        """Run one pass; returns ``None`` when the request was dropped."""
        return self.run_exclusively(self._run_pass)

    def _run_pass(self) -> Optional[SyncPassResult]:
        if not self._online:
            logger.warning("Offline, skipping sync pass")
            return None
        started_at = utcnow()
        logger.info("Starting sync pass")
        queue_result = self.queue_processor.process_queue()
        result = SyncPassResult(queue=queue_result, started_at=started_at)
        for account in self.store.list_accounts():
            try:
                result.accounts.append(self.sync_engine.sync_account(account.id))
            except Exception as exc:
                logger.exception("Failed to sync account %s", account.id)
                result.failures.append(
                    AccountFailure(account_id=account.id, error=str(exc) or exc.__class__.__name__)
                )
        result.finished_at = utcnow()
        logger.info(
            "Sync pass finished: %s queued changes processed, %s accounts synced, %s failed",
            queue_result.total_processed,
            len(result.accounts),
            len(result.failures),
        )
        return result
