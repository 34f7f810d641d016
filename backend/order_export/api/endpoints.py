import logging
import tempfile
from datetime import datetime
from typing import Iterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from order_export.core.constants import (
    DOWNLOAD_FILENAME_PATTERN,
    STREAM_BUFFER_SIZE,
    XLSX_MEDIA_TYPE,
)
from order_export.core.rate_limit import export_rate_limit, limiter
from order_export.schemas.export import ExportJobResponse, ExportMode, ExportStatus
from order_export.schemas.order import ExportFilter, ExportRequest
from order_export.services.export_service import ExportService, get_export_service
from order_export.services.job_store import ExportJob

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

# Sync workbooks stay in memory up to this size before spilling to disk
SPOOL_MAX_BYTES = 8 * 1024 * 1024

router = APIRouter()


# Dependency
def get_service() -> ExportService:
    return get_export_service()


def get_export_filter(
    from_date: Optional[datetime] = Query(None, description="Inclusive lower bound on created_at"),
    to_date: Optional[datetime] = Query(None, description="Inclusive upper bound on created_at"),
    status: Optional[str] = Query(None, description="Order status to match"),
    columns: Optional[List[str]] = Query(
        None, description="Column keys to export; repeat the parameter or separate with commas"
    ),
) -> ExportFilter:
    if columns:
        columns = [part.strip() for value in columns for part in value.split(",") if part.strip()]
    try:
        return ExportFilter(from_date=from_date, to_date=to_date, status=status, columns=columns)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
        )


def job_to_response(job: ExportJob) -> ExportJobResponse:
    download_url = None
    if job.status == ExportStatus.COMPLETED:
        download_url = f"{API_PREFIX}/orders/export/download/{job.job_id}"

    return ExportJobResponse(
        job_id=job.job_id,
        status=job.status,
        total_rows=job.total_row_estimate,
        processed_rows=job.processed_rows,
        download_url=download_url,
        error_message=job.error_detail,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


@router.get("/orders/export")
@limiter.limit(export_rate_limit)
def export_orders(
    request: Request,  # Required by slowapi
    export_filter: ExportFilter = Depends(get_export_filter),
    async_export: bool = Query(False, alias="async"),
    service: ExportService = Depends(get_service),
):
    """
    Export orders matching the filter as .xlsx.

    Routing:
      - async=true:                 background job (202 + job handle)
      - matching rows > threshold:  background job (202 + job handle)
      - otherwise:                  workbook streamed in the response
    """
    export_request = ExportRequest(filter=export_filter, async_export=async_export)
    plan = service.plan_export(export_request)

    if plan.mode == ExportMode.ASYNC:
        job = service.submit_async_export(export_request, plan.row_estimate)
        return _accepted(job)
    return _sync_excel_response(service, export_request)


@router.get("/orders/export/sync")
@limiter.limit(export_rate_limit)
def export_orders_sync(
    request: Request,  # Required by slowapi
    export_filter: ExportFilter = Depends(get_export_filter),
    service: ExportService = Depends(get_service),
):
    """Always stream the workbook, regardless of size."""
    return _sync_excel_response(service, ExportRequest(filter=export_filter))


@router.post("/orders/export/async", status_code=202, response_model=ExportJobResponse)
@limiter.limit(export_rate_limit)
def export_orders_async(
    request: Request,  # Required by slowapi
    export_request: ExportRequest,
    service: ExportService = Depends(get_service),
):
    """Always run the export as a background job."""
    job = service.submit_async_export(export_request)
    return job_to_response(job)


@router.get("/orders/export/status/{job_id}", response_model=ExportJobResponse)
def get_export_status(job_id: str, service: ExportService = Depends(get_service)):
    """
    Poll the status of an async export job.
    Returns progress and the download URL once the job is completed.
    """
    return job_to_response(service.get_job(job_id))


@router.get("/orders/export/download/{job_id}")
def download_export(job_id: str, service: ExportService = Depends(get_service)):
    """
    Serve the completed workbook.
    The file is left in place; retention is handled outside this service.
    """
    file_path = service.get_download_path(job_id)
    job = service.get_job(job_id)

    # Stream the file from disk
    def file_iterator():
        with open(file_path, "rb") as f:
            while chunk := f.read(STREAM_BUFFER_SIZE):
                yield chunk

    response = StreamingResponse(file_iterator(), media_type=XLSX_MEDIA_TYPE)
    response.headers["Content-Disposition"] = (
        f"attachment; filename={job.created_at.strftime(DOWNLOAD_FILENAME_PATTERN)}"
    )
    return response


# ═══════════════════════════════════════════════════════════
# Internal Export Helpers
# ═══════════════════════════════════════════════════════════


def _accepted(job: ExportJob) -> JSONResponse:
    return JSONResponse(status_code=202, content=jsonable_encoder(job_to_response(job)))


def _iter_and_close(fh) -> Iterator[bytes]:
    try:
        while chunk := fh.read(STREAM_BUFFER_SIZE):
            yield chunk
    finally:
        fh.close()


def _sync_excel_response(service: ExportService, export_request: ExportRequest) -> StreamingResponse:
    """Run the export on this worker thread, then stream the finished workbook."""
    output = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES)
    try:
        service.stream_export(export_request, output)
    except Exception:
        output.close()
        raise
    output.seek(0)

    response = StreamingResponse(_iter_and_close(output), media_type=XLSX_MEDIA_TYPE)
    response.headers["Content-Disposition"] = (
        f"attachment; filename={datetime.now().strftime(DOWNLOAD_FILENAME_PATTERN)}"
    )
    return response
