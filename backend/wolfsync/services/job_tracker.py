"""Bookkeeping for sync passes started in the background through the API."""
from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..models import utcnow
from ..schemas import SyncJobStatus, SyncPassResult

logger = logging.getLogger(__name__)

# Finished jobs beyond this count are forgotten, oldest first.
MAX_TRACKED_JOBS = 50


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SyncJob:
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    result: Optional[SyncPassResult] = None
    message: Optional[str] = None
    queued_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.SKIPPED)

    def to_status(self) -> SyncJobStatus:
        return SyncJobStatus(
            job_id=self.job_id,
            status=self.status.value,
            detail=self.result.model_dump(mode="json") if self.result is not None else None,
            message=self.message,
        )


class SyncJobRegistry:
    """Thread-safe record of background sync passes and their outcome."""

    def __init__(self, capacity: int = MAX_TRACKED_JOBS) -> None:
        self._lock = threading.Lock()
        self._jobs: "OrderedDict[str, SyncJob]" = OrderedDict()
        self._capacity = capacity

    def submit(self) -> SyncJob:
        job = SyncJob(job_id=f"sync-{uuid.uuid4().hex}")
        with self._lock:
            self._jobs[job.job_id] = job
            self._evict()
        return job

    def get(self, job_id: str) -> Optional[SyncJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def run(self, job_id: str, operation: Callable[[], Optional[SyncPassResult]]) -> None:
        """Execute ``operation`` for a submitted job and record how it ended."""
        self._transition(job_id, JobStatus.RUNNING)
        try:
            result = operation()
        except Exception:
            logger.exception("Sync job %s failed", job_id)
            self._transition(job_id, JobStatus.FAILED, message="Sync pass failed")
            return
        if result is None:
            self._transition(
                job_id, JobStatus.SKIPPED, message="Sync pass skipped (offline or already running)"
            )
            return
        self._transition(job_id, JobStatus.COMPLETED, result=result)

    def _transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        message: Optional[str] = None,
        result: Optional[SyncPassResult] = None,
    ) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.status = status
            job.message = message
            job.result = result
            if job.finished:
                job.finished_at = utcnow()
        logger.info("Sync job %s is %s", job_id, status.value)

    def _evict(self) -> None:
        while len(self._jobs) > self._capacity:
            oldest = next((job_id for job_id, job in self._jobs.items() if job.finished), None)
            if oldest is None:
                break
            del self._jobs[oldest]
