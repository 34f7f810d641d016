"""
Error taxonomy for the export engine.

The HTTP layer maps these to status codes in one place (see main.py).
"""

from typing import Iterable, Optional


class ExportError(Exception):
    """Base class for every error raised by the export engine."""


class JobNotFoundError(ExportError):
    def __init__(self, job_id: str):
        super().__init__(f"Export job '{job_id}' not found.")
        self.job_id = job_id


class ExportNotReadyError(ExportError):
    """Raised when a download is requested for a job that is not completed."""

    def __init__(self, job_id: str, status: str):
        super().__init__(
            f"Export job '{job_id}' is '{status}'. The file is only available once the job is completed."
        )
        self.job_id = job_id
        self.status = status


class ExportFileMissingError(ExportError):
    def __init__(self, job_id: str, path: Optional[str] = None):
        super().__init__(f"Export file for job '{job_id}' has been removed.")
        self.job_id = job_id
        self.path = path


class IllegalJobTransitionError(ExportError):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Illegal transition for job '{job_id}': {current} -> {target}"
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class DuplicateJobError(ExportError):
    pass


class ExportQueueFullError(ExportError):
    """Backpressure signal: every worker slot and backlog slot is taken."""

    def __init__(self, capacity: int):
        super().__init__(
            f"EXPORT_QUEUE_FULL: {capacity} exports are already running or queued. Please try again later."
        )
        self.capacity = capacity


class DataSourceUnavailableError(ExportError):
    """The data source cannot hand out a connection (unreachable or pool exhausted)."""


class UnknownColumnError(ExportError):
    """A requested column key is not declared for the order export."""

    def __init__(self, unknown: Iterable[str]):
        self.unknown = sorted(unknown)
        super().__init__(f"Unknown export column(s): {', '.join(self.unknown)}")


class WriterClosedError(ExportError):
    pass


class CursorNotAdvancingError(ExportError):
    """The data source returned a page whose ids do not move past the cursor."""
