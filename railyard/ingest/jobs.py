"""
Railyard - Batch Job Tracker

In-memory, process-lifetime map of job id -> status. Each job is written only
by the task that owns it; readers may be on any thread. Records are frozen
and replaced wholesale under a lock, so a reader never sees a half-updated
status.

Usage:
    tracker = JobTracker()
    status = tracker.create()
    tracker.update_progress(status.job_id, 40)
    tracker.get(status.job_id).progress   # 40
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from railyard.core.logging import get_logger

logger = get_logger(__name__)


class JobState(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.RUNNING


@dataclass(frozen=True, slots=True)
class BatchResult:
    job_id: str
    status: JobState
    message: str = ""
    processed_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    duplicate_records: int = 0
    errors: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class JobStatus:
    job_id: str
    status: JobState = JobState.RUNNING
    progress: int = 0
    message: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    result: Optional[BatchResult] = None


class JobTracker:
    """Thread-safe job map with atomic per-entry replace."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, JobStatus] = {}
        self._cancel_flags: dict[str, threading.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Writers (owning task only)
    # ------------------------------------------------------------------

    def create(self) -> JobStatus:
        status = JobStatus(job_id=str(uuid.uuid4()))
        with self._lock:
            self._jobs[status.job_id] = status
            self._cancel_flags[status.job_id] = threading.Event()
        logger.info("Job created", extra={"job_id": status.job_id})
        return status

    def _replace(self, job_id: str, **changes) -> Optional[JobStatus]:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            if current.status.is_terminal:
                return current
            updated = replace(current, **changes)
            self._jobs[job_id] = updated
            return updated

    def update_progress(self, job_id: str, progress: int) -> None:
        self._replace(job_id, progress=max(0, min(100, progress)))

    def complete(self, result: BatchResult) -> Optional[JobStatus]:
        """Move the job to its terminal state. Later calls are ignored."""
        changes: dict = {
            "status": result.status,
            "message": result.message,
            "completed_at": datetime.now(timezone.utc),
            "result": result,
        }
        if result.status is JobState.COMPLETED:
            changes["progress"] = 100
        return self._replace(result.job_id, **changes)

    # ------------------------------------------------------------------
    # Background task supervision
    # ------------------------------------------------------------------

    def track(self, job_id: str, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_task_done(job_id, t))

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks.pop(job_id, None)
        if task.cancelled():
            self.complete(BatchResult(job_id, JobState.CANCELLED, "Processing was cancelled"))
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Job task crashed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"job_id": job_id},
            )
            self.complete(
                BatchResult(job_id, JobState.FAILED, f"Processing failed: {exc}", errors=(str(exc),))
            )

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[JobStatus]:
        with self._lock:
            return self._jobs.get(job_id)

    def result(self, job_id: str) -> Optional[BatchResult]:
        """The job's result, only once it has Completed."""
        status = self.get(job_id)
        if status is None or status.status is not JobState.COMPLETED:
            return None
        return status.result

    def request_cancel(self, job_id: str) -> bool:
        """Ask a running job to stop at the next row boundary."""
        with self._lock:
            status = self._jobs.get(job_id)
            flag = self._cancel_flags.get(job_id)
        if status is None or flag is None or status.status.is_terminal:
            return False
        flag.set()
        logger.info("Job cancellation requested", extra={"job_id": job_id})
        return True

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            flag = self._cancel_flags.get(job_id)
        return flag is not None and flag.is_set()

    async def wait(self, job_id: str) -> Optional[JobStatus]:
        """Wait for the job's task to finish and return the final status."""
        with self._lock:
            task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self.get(job_id)
