"""
Export Service: orchestrates order exports to .xlsx.

Both delivery modes run the same chunked keyset-pagination loop:
  - Sync: the loop runs on the calling thread and the finished workbook
    is written to the caller's sink. No job is created.
  - Async: a job is registered, the loop runs on a bounded worker pool
    writing to <export_dir>/<job_id>.xlsx, and the job record carries
    progress and the outcome. Pollers only ever observe the job record.

Routing: an explicit async request always goes async without a routing
count; otherwise the filter is counted and anything above sync_threshold
goes async. Every async job records the count taken at submission.

There is no retry, timeout or cancellation anywhere in this module.
A failed chunk fetch aborts the whole export.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Sequence

from order_export.core.config import Settings
from order_export.core.constants import PROGRESS_LOG_INTERVAL
from order_export.core.exceptions import (
    CursorNotAdvancingError,
    ExportFileMissingError,
    ExportNotReadyError,
    JobNotFoundError,
)
from order_export.core.metrics import ExportMetrics, get_export_metrics
from order_export.db.base import BaseOrderDataSource
from order_export.schemas.export import ExportMode, ExportStatus
from order_export.schemas.order import ExportFilter, ExportRequest
from order_export.services.columns import ExportColumn, select_columns
from order_export.services.excel_writer import ExcelExportWriter
from order_export.services.job_store import (
    BaseJobStore,
    ExportJob,
    InMemoryJobStore,
    new_job_id,
)
from order_export.services.worker_pool import ExportWorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportPlan:
    """Routing decision for one request. row_estimate is set only when a count was taken."""

    mode: ExportMode
    row_estimate: Optional[int] = None


class ExportService:
    def __init__(
        self,
        data_source: BaseOrderDataSource,
        export_dir: str = "./exports",
        chunk_size: int = 1000,
        max_rows_per_sheet: int = 1_000_000,
        sync_threshold: int = 100_000,
        window_rows: int = 100,
        max_cell_length: int = 32767,
        sheet_name: str = "Orders",
        job_store: Optional[BaseJobStore] = None,
        worker_pool: Optional[ExportWorkerPool] = None,
        metrics: Optional[ExportMetrics] = None,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.data_source = data_source
        self.export_dir = Path(export_dir)
        self.chunk_size = chunk_size
        self.max_rows_per_sheet = max_rows_per_sheet
        self.sync_threshold = sync_threshold
        self.window_rows = window_rows
        self.max_cell_length = max_cell_length
        self.sheet_name = sheet_name
        self.jobs = job_store if job_store is not None else InMemoryJobStore()
        self.worker_pool = worker_pool if worker_pool is not None else ExportWorkerPool()
        self.metrics = metrics if metrics is not None else ExportMetrics()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        data_source: BaseOrderDataSource,
        metrics: Optional[ExportMetrics] = None,
    ) -> "ExportService":
        return cls(
            data_source=data_source,
            export_dir=settings.EXPORT_DIRECTORY,
            chunk_size=settings.EXPORT_CHUNK_SIZE,
            max_rows_per_sheet=settings.EXPORT_MAX_ROWS_PER_SHEET,
            sync_threshold=settings.EXPORT_SYNC_THRESHOLD,
            window_rows=settings.EXPORT_MEMORY_ROWS_IN_WINDOW,
            max_cell_length=settings.EXPORT_MAX_CELL_LENGTH,
            sheet_name=settings.EXPORT_SHEET_NAME,
            worker_pool=ExportWorkerPool(
                max_workers=settings.EXPORT_WORKER_COUNT,
                queue_max=settings.EXPORT_QUEUE_MAX,
            ),
            metrics=metrics or get_export_metrics(),
        )

    # ── routing ──

    def plan_export(self, request: ExportRequest) -> ExportPlan:
        """Decide sync vs. async. Count failures propagate; there is no fallback."""
        select_columns(request.filter.columns)
        if request.async_export:
            return ExportPlan(ExportMode.ASYNC)

        row_count = self.data_source.count(request.filter)
        mode = ExportMode.ASYNC if row_count > self.sync_threshold else ExportMode.SYNC
        logger.info(
            f"Export routed {mode.value}: {row_count} matching rows (threshold {self.sync_threshold})"
        )
        return ExportPlan(mode, row_count)

    def export(self, request: ExportRequest, sink: BinaryIO) -> Optional[ExportJob]:
        """
        Plan and dispatch a request.
        Returns the job for async exports, or None once sink holds the sync result.
        """
        plan = self.plan_export(request)
        if plan.mode == ExportMode.ASYNC:
            return self.submit_async_export(request, plan.row_estimate)
        self.stream_export(request, sink)
        return None

    # ── sync path ──

    def stream_export(self, request: ExportRequest, sink: BinaryIO) -> int:
        """
        Run the whole export on the calling thread and write the workbook to sink.
        Returns the number of data rows written.
        """
        columns = select_columns(request.filter.columns)
        export_filter = request.filter
        logger.info(
            f"Starting sync export: from_date={export_filter.from_date}, "
            f"to_date={export_filter.to_date}, status={export_filter.status}"
        )

        start = time.perf_counter()
        writer = self._new_writer(columns)
        try:
            with writer:
                rows = self._run_chunk_loop(export_filter, writer)
                writer.finalize(sink)
        except Exception as e:
            self.metrics.record_error(ExportMode.SYNC.value)
            logger.error(
                f"Sync export failed at row {writer.rows_written}: {e}", exc_info=True
            )
            raise

        elapsed = time.perf_counter() - start
        self.metrics.observe_duration(ExportMode.SYNC.value, elapsed)
        self.metrics.add_rows(ExportMode.SYNC.value, rows)
        logger.info(
            f"Sync export completed: {rows} rows in {len(writer.sheets)} sheets ({elapsed:.2f}s)"
        )
        return rows

    # ── async path ──

    def submit_async_export(self, request: ExportRequest, row_estimate: Optional[int] = None) -> ExportJob:
        """
        Register a pending job and hand the export to the worker pool.

        The job carries the row count taken at submission; when the caller
        has none yet it is counted here, and a count failure propagates
        before any job exists. Raises ExportQueueFullError, also before any
        job exists, when the pool is saturated.
        """
        select_columns(request.filter.columns)
        if row_estimate is None:
            row_estimate = self.data_source.count(request.filter)

        reservation = self.worker_pool.reserve()
        try:
            job = self.jobs.create(
                ExportJob(job_id=new_job_id(), total_row_estimate=row_estimate)
            )
        except BaseException:
            reservation.release()
            raise

        try:
            self.worker_pool.submit(reservation, self._process_async_export, job.job_id, request)
        except BaseException:
            # No worker will ever pick this job up
            reservation.release()
            self.jobs.delete(job.job_id)
            logger.error(f"Export job {job.job_id} could not be queued; record dropped")
            raise

        logger.info(f"Export job {job.job_id} queued (estimated rows: {row_estimate})")
        return job

    def _process_async_export(self, job_id: str, request: ExportRequest) -> None:
        """Pool task. Every outcome lands in the job record; nothing escapes into the pool."""
        start = time.perf_counter()
        file_path = self.result_path(job_id)
        try:
            self.jobs.update(job_id, lambda job: job.start())
        except Exception:
            logger.exception(f"Export job {job_id} could not be started")
            return

        logger.info(f"Starting async export job: {job_id}")
        try:
            columns = select_columns(request.filter.columns)
            os.makedirs(self.export_dir, exist_ok=True)
            with open(file_path, "wb") as sink:
                with self._new_writer(columns) as writer:
                    rows = self._run_chunk_loop(
                        request.filter,
                        writer,
                        on_chunk=lambda processed: self._record_progress(job_id, processed),
                    )
                    writer.finalize(sink)

            self.jobs.update(job_id, lambda job: job.complete(str(file_path)))
            elapsed = time.perf_counter() - start
            self.metrics.observe_duration(ExportMode.ASYNC.value, elapsed)
            self.metrics.add_rows(ExportMode.ASYNC.value, rows)
            logger.info(
                f"Export job {job_id} complete: {rows} rows in {len(writer.sheets)} sheets -> {file_path}"
            )

        except Exception as e:
            self.metrics.record_error(ExportMode.ASYNC.value)
            logger.exception(f"Async export failed: job_id={job_id}, error={e}")
            detail = str(e) or type(e).__name__
            # The partial file stays on disk for inspection
            self.jobs.update(job_id, lambda job: job.fail(detail))

    def _record_progress(self, job_id: str, processed: int) -> None:
        self.jobs.update(job_id, lambda job: job.with_progress(processed))

    # ── job queries ──

    def get_job(self, job_id: str) -> ExportJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_download_path(self, job_id: str) -> Path:
        """Path of the finished file. Only completed jobs have one."""
        job = self.get_job(job_id)
        if job.status != ExportStatus.COMPLETED:
            raise ExportNotReadyError(job_id, job.status.value)

        path = Path(job.result_location)
        if not path.is_file():
            raise ExportFileMissingError(job_id, job.result_location)
        return path

    def result_path(self, job_id: str) -> Path:
        return self.export_dir / f"{job_id}.xlsx"

    def refresh_pool_metrics(self) -> None:
        """Copy the data source's pool counts into the metrics sink."""
        stats = self.data_source.pool_stats()
        if stats:
            self.metrics.set_pool_stats(stats)

    def shutdown(self, wait: bool = True) -> None:
        self.worker_pool.shutdown(wait=wait)

    # ── internals ──

    def _new_writer(self, columns: Sequence[ExportColumn]) -> ExcelExportWriter:
        return ExcelExportWriter(
            columns=columns,
            max_rows_per_sheet=self.max_rows_per_sheet,
            window_rows=self.window_rows,
            max_cell_length=self.max_cell_length,
            sheet_name=self.sheet_name,
        )

    def _run_chunk_loop(
        self,
        export_filter: ExportFilter,
        writer: ExcelExportWriter,
        on_chunk: Optional[Callable[[int], None]] = None,
    ) -> int:
        """
        Page through the data source after the cursor until a short page.
        Progress is reported once per chunk. Returns rows processed.
        """
        cursor = 0
        processed = 0
        while True:
            page = self.data_source.fetch_page(cursor, self.chunk_size, export_filter)
            for order in page:
                writer.write_row(order)

            if page:
                next_cursor = max(order.id for order in page)
                if next_cursor <= cursor:
                    raise CursorNotAdvancingError(
                        f"Data source returned ids at or below cursor {cursor}"
                    )
                cursor = next_cursor

                previous = processed
                processed += len(page)
                if on_chunk is not None:
                    on_chunk(processed)
                if processed // PROGRESS_LOG_INTERVAL > previous // PROGRESS_LOG_INTERVAL:
                    logger.info(f"Export progress: {processed} rows written")

            if len(page) < self.chunk_size:
                return processed


_SERVICE_INSTANCE: Optional[ExportService] = None
_SERVICE_LOCK = threading.Lock()


def get_export_service() -> ExportService:
    """Process-wide service built from settings on first use."""
    global _SERVICE_INSTANCE
    with _SERVICE_LOCK:
        if _SERVICE_INSTANCE is None:
            from order_export.core.config import get_settings
            from order_export.db.factory import get_data_source

            _SERVICE_INSTANCE = ExportService.from_settings(get_settings(), get_data_source())
        return _SERVICE_INSTANCE


def shutdown_export_service(wait: bool = False) -> None:
    global _SERVICE_INSTANCE
    with _SERVICE_LOCK:
        if _SERVICE_INSTANCE is not None:
            _SERVICE_INSTANCE.shutdown(wait=wait)
            _SERVICE_INSTANCE = None
