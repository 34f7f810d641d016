"""
Export-related request/response schemas for the order export API.
"""

from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum


class ExportStatus(str, Enum):
    """Lifecycle states for an async export job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"


class ExportJobResponse(BaseModel):
    """Job handle returned on submission and when polling /orders/export/status/{job_id}."""

    job_id: str = Field(..., description="Unique identifier for the export job")
    status: ExportStatus
    total_rows: Optional[int] = Field(
        None, description="Row count taken at submission, when one was taken"
    )
    processed_rows: int = Field(0, ge=0, description="Rows written so far")
    download_url: Optional[str] = Field(
        None, description="URL to download the file once the job is completed"
    )
    error_message: Optional[str] = Field(None, description="Error detail if the job failed")
    created_at: datetime
    completed_at: Optional[datetime] = None
