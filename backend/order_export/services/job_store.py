"""
Job Store: registry of export jobs keyed by job id.

Job records are immutable: every change builds a new ExportJob and
replaces the stored one, so concurrent pollers always see a complete
record. Writers on the same id are serialized by that job's own lock;
unrelated jobs never contend with each other.

The store sits behind BaseJobStore so the orchestrator can be given a
persistent implementation instead of the in-memory default.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from order_export.core.exceptions import (
    DuplicateJobError,
    IllegalJobTransitionError,
    JobNotFoundError,
)
from order_export.schemas.export import ExportStatus

ALLOWED_TRANSITIONS = {
    ExportStatus.PENDING: {ExportStatus.PROCESSING},
    ExportStatus.PROCESSING: {ExportStatus.COMPLETED, ExportStatus.FAILED},
    ExportStatus.COMPLETED: set(),
    ExportStatus.FAILED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ExportJob:
    """Tracks the state of a single export job."""

    job_id: str
    status: ExportStatus = ExportStatus.PENDING
    total_row_estimate: Optional[int] = None
    processed_rows: int = 0
    result_location: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (ExportStatus.COMPLETED, ExportStatus.FAILED)

    def _transition(self, target: ExportStatus, **changes) -> "ExportJob":
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise IllegalJobTransitionError(self.job_id, self.status.value, target.value)
        return replace(self, status=target, **changes)

    def start(self) -> "ExportJob":
        return self._transition(ExportStatus.PROCESSING)

    def with_progress(self, processed_rows: int) -> "ExportJob":
        if self.status != ExportStatus.PROCESSING:
            raise IllegalJobTransitionError(self.job_id, self.status.value, "progress")
        # Pollers must never see the counter go backwards
        return replace(self, processed_rows=max(self.processed_rows, processed_rows))

    def complete(self, result_location: str) -> "ExportJob":
        if not result_location:
            raise ValueError("A completed job needs a result location")
        return self._transition(
            ExportStatus.COMPLETED,
            result_location=result_location,
            completed_at=_utcnow(),
        )

    def fail(self, error_detail: str) -> "ExportJob":
        return self._transition(
            ExportStatus.FAILED,
            error_detail=error_detail or "Export failed",
            completed_at=_utcnow(),
        )


class BaseJobStore(ABC):
    """Contract for job persistence used by the export orchestrator."""

    @abstractmethod
    def create(self, job: ExportJob) -> ExportJob:
        """Store a new job. Raises DuplicateJobError if the id already exists."""
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[ExportJob]:
        """Return the current record, or None for an unknown id."""
        pass

    @abstractmethod
    def replace(self, job: ExportJob) -> ExportJob:
        """Replace the whole record for an existing id."""
        pass

    @abstractmethod
    def update(self, job_id: str, change: Callable[[ExportJob], ExportJob]) -> ExportJob:
        """
        Atomically read the current record, apply change, and store the result.
        Writers on the same id are serialized.
        """
        pass

    @abstractmethod
    def delete(self, job_id: str) -> None:
        """Drop a record that was never handed to a worker. Unknown ids are ignored."""
        pass


class InMemoryJobStore(BaseJobStore):
    """Process-local job store. Everything is lost on restart."""

    def __init__(self):
        self._jobs: Dict[str, ExportJob] = {}
        self._job_locks: Dict[str, threading.Lock] = {}
        # Only guards id registration, never held while a job is mutated
        self._registry_lock = threading.Lock()

    def create(self, job: ExportJob) -> ExportJob:
        with self._registry_lock:
            if job.job_id in self._jobs:
                raise DuplicateJobError(f"Export job '{job.job_id}' already exists.")
            self._job_locks[job.job_id] = threading.Lock()
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> Optional[ExportJob]:
        return self._jobs.get(job_id)

    def replace(self, job: ExportJob) -> ExportJob:
        lock = self._lock_for(job.job_id)
        with lock:
            self._jobs[job.job_id] = job
        return job

    def update(self, job_id: str, change: Callable[[ExportJob], ExportJob]) -> ExportJob:
        lock = self._lock_for(job_id)
        with lock:
            updated = change(self._jobs[job_id])
            if updated.job_id != job_id:
                raise ValueError("A job update must not change the job id")
            self._jobs[job_id] = updated
        return updated

    def delete(self, job_id: str) -> None:
        with self._registry_lock:
            self._jobs.pop(job_id, None)
            self._job_locks.pop(job_id, None)

    def __len__(self) -> int:
        return len(self._jobs)

    def _lock_for(self, job_id: str) -> threading.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            raise JobNotFoundError(job_id)
        return lock
